"""
Error taxonomy for the render pipeline.

Every stage raises a RenderError subclass; the job manager turns them into a
failed job. `transient` marks errors worth one more attempt.
"""


class RenderError(Exception):
    """Base class for all pipeline failures."""

    transient = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.message


class ProbeError(RenderError):
    """A media file is missing, unreadable or not decodable."""


class InsufficientScenesError(RenderError):
    """There are no scenes to render."""


class SceneOrderError(RenderError):
    """Scene numbers are not unique and strictly increasing."""


class UnsupportedImageError(RenderError):
    """A scene image could not be loaded or decoded."""


class EncodingError(RenderError):
    """The encoder process exited with a non-zero status."""

    transient = True

    def __init__(self, message: str, returncode: int = None, stderr: str = "", transient: bool = True):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.transient = transient


class EmptyInputError(RenderError):
    """The assembler was handed no clips."""


class MissingAudioError(RenderError):
    """The narration track does not exist."""


class AssemblyError(RenderError):
    """The final video could not be produced or failed verification."""


class RenderTimeoutError(RenderError):
    """An external process exceeded its wall-clock limit and was killed."""


class RenderCancelledError(RenderError):
    """The job was cancelled by the user."""


class ProjectNotFoundError(RenderError):
    """The project referenced by a render request does not exist."""


class JobStateError(RenderError):
    """The requested transition is not allowed from the job's current state."""
