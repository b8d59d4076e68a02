# models.py

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from database import Base


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Project(Base):
    """Read-only view of a storyboard project owned by the project service."""

    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=True)
    narration_audio_path = Column(String, nullable=True)


class Scene(Base):
    """Read-only view of one storyboard scene."""

    __tablename__ = "scenes"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), index=True, nullable=False)
    scene_number = Column(Integer, nullable=False)
    image_url = Column(Text, nullable=True)  # local path, http(s) URL or data URL
    text = Column(Text, nullable=True)


class RenderJob(Base):
    """Render job model for tracking video assembly."""

    __tablename__ = "render_jobs"

    id = Column(String, primary_key=True, index=True)
    project_id = Column(Integer, index=True, nullable=False)
    status = Column(String, default="pending", index=True)  # pending, processing, completed, failed
    progress = Column(Integer, default=0, nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    output_url = Column(String, nullable=True)
    output_path = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    error = Column(Text, nullable=True)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    worker_id = Column(String, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
