"""
Pan/zoom motion patterns for still images.

Each pattern is a pair of zoompan expressions over the output frame number `on`.
Zoom never drops below 1 and pans only travel the slack `iw - iw/zoom`, so the
sampling window stays inside the (pre-scaled) image for every frame.
"""

from enum import Enum
from typing import Dict, Tuple

from config import UPSCALE_FACTOR, ZOOM_RANGE


class MotionPattern(str, Enum):
    ZOOM_IN = "zoom_in"
    PAN_LEFT_TO_RIGHT = "pan_left_to_right"
    PAN_RIGHT_TO_LEFT = "pan_right_to_left"
    ZOOM_OUT = "zoom_out"


PATTERN_CYCLE = (
    MotionPattern.ZOOM_IN,
    MotionPattern.PAN_LEFT_TO_RIGHT,
    MotionPattern.PAN_RIGHT_TO_LEFT,
    MotionPattern.ZOOM_OUT,
)

CENTER_X = "iw/2-(iw/zoom/2)"
CENTER_Y = "ih/2-(ih/zoom/2)"


def pattern_for_scene(scene_index: int) -> MotionPattern:
    """Consecutive scenes get different moves without per-scene authoring."""
    return PATTERN_CYCLE[scene_index % len(PATTERN_CYCLE)]


def frame_count(duration_seconds: float, fps: int) -> int:
    return max(1, int(round(duration_seconds * fps)))


def zoom_ceiling(intensity: str) -> float:
    return 1.0 + ZOOM_RANGE[intensity]


def upscaled_size(width: int, height: int) -> Tuple[int, int]:
    # libx264 wants even dimensions all the way through the graph
    def even(value):
        value = int(round(value * UPSCALE_FACTOR))
        return value + (value % 2)
    return even(width), even(height)


def _fmt(value: float) -> str:
    return f"{value:.4f}".rstrip("0").rstrip(".")


def zoompan_expressions(pattern: MotionPattern, frames: int, intensity: str) -> Dict[str, str]:
    """Return the z/x/y expressions for one pattern over `frames` output frames."""
    zoom_max = zoom_ceiling(intensity)
    zoom_delta = _fmt(zoom_max - 1.0)
    span = max(frames - 1, 1)
    progress = f"on/{span}"

    if pattern == MotionPattern.ZOOM_IN:
        return {"z": f"1+{zoom_delta}*{progress}", "x": CENTER_X, "y": CENTER_Y}
    if pattern == MotionPattern.ZOOM_OUT:
        return {"z": f"{_fmt(zoom_max)}-{zoom_delta}*{progress}", "x": CENTER_X, "y": CENTER_Y}
    if pattern == MotionPattern.PAN_LEFT_TO_RIGHT:
        return {"z": _fmt(zoom_max), "x": f"(iw-iw/zoom)*{progress}", "y": CENTER_Y}
    if pattern == MotionPattern.PAN_RIGHT_TO_LEFT:
        return {"z": _fmt(zoom_max), "x": f"(iw-iw/zoom)*(1-{progress})", "y": CENTER_Y}
    raise ValueError(f"Unknown motion pattern: {pattern}")


def window_origin(pattern: MotionPattern, frame: int, frames: int, intensity: str,
                  image_width: float, image_height: float) -> Tuple[float, float, float]:
    """
    Evaluate a pattern in Python for one frame: returns (zoom, x, y).
    Mirrors zoompan_expressions and is used to check the window stays in bounds.
    """
    zoom_max = zoom_ceiling(intensity)
    progress = frame / max(frames - 1, 1)
    if pattern == MotionPattern.ZOOM_IN:
        zoom = 1.0 + (zoom_max - 1.0) * progress
    elif pattern == MotionPattern.ZOOM_OUT:
        zoom = zoom_max - (zoom_max - 1.0) * progress
    else:
        zoom = zoom_max

    slack_x = image_width - image_width / zoom
    if pattern == MotionPattern.PAN_LEFT_TO_RIGHT:
        x = slack_x * progress
    elif pattern == MotionPattern.PAN_RIGHT_TO_LEFT:
        x = slack_x * (1 - progress)
    else:
        x = image_width / 2 - image_width / zoom / 2
    y = image_height / 2 - image_height / zoom / 2
    return zoom, x, y
