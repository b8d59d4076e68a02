"""
Read-side adapter over the project/scene tables owned by the project service.
"""

import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from config import ASSET_ROOT
from errors import InsufficientScenesError, MissingAudioError, ProjectNotFoundError
from models import Project, Scene
from timing import SceneInput, count_words


@dataclass(frozen=True)
class RenderInputs:
    scenes: List[SceneInput]
    narration_path: str


def resolve_asset_path(reference: str) -> str:
    """Map a stored reference like '/uploads/audio/x.mp3' onto the asset root."""
    if os.path.isabs(reference) and os.path.exists(reference):
        return reference
    return os.path.join(ASSET_ROOT, reference.lstrip("/"))


class SqlSceneStore:
    """Loads the ordered scene list and narration track for a project."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def load(self, project_id: int, scene_range: Optional[Tuple[int, int]] = None) -> RenderInputs:
        db = self.session_factory()
        try:
            project = db.query(Project).filter(Project.id == project_id).first()
            if not project:
                raise ProjectNotFoundError(f"Project {project_id} not found.")
            if not project.narration_audio_path:
                raise MissingAudioError(f"Project {project_id} has no narration track.")

            query = db.query(Scene).filter(Scene.project_id == project_id, Scene.image_url.isnot(None))
            if scene_range:
                start, end = scene_range
                query = query.filter(Scene.scene_number >= start, Scene.scene_number <= end)
            rows = query.order_by(Scene.scene_number).all()

            scenes = [
                SceneInput(scene_number=row.scene_number, image=row.image_url, word_count=count_words(row.text))
                for row in rows
                if row.image_url
            ]
            if not scenes:
                raise InsufficientScenesError(f"Project {project_id} has no scenes with images.")

            return RenderInputs(scenes=scenes, narration_path=resolve_asset_path(project.narration_audio_path))
        finally:
            db.close()
