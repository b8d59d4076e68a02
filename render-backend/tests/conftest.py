# render-backend/tests/conftest.py

import os
import sys
import tempfile

import pytest

# Point storage at a throwaway directory before config is imported anywhere
_TEST_ROOT = tempfile.mkdtemp(prefix="render-backend-tests-")
os.environ.setdefault("PROJECT_ROOT", _TEST_ROOT)
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_ROOT, 'render_jobs.db')}")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

# Add the parent directory to the Python path so we can import from it
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from jobs import SqlJobRepository
from models import Project, Scene
from store import SqlSceneStore


@pytest.fixture
def session_factory():
    """An isolated in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return SqlJobRepository(session_factory)


@pytest.fixture
def scene_store(session_factory):
    return SqlSceneStore(session_factory)


@pytest.fixture
def narration_file(tmp_path):
    path = tmp_path / "narration.mp3"
    path.write_bytes(b"not really audio, the prober is faked")
    return str(path)


@pytest.fixture
def make_project(session_factory, narration_file):
    """Insert a project with scenes; `texts` gives one scene per entry."""

    def _make(project_id=1, texts=("one two three", "four five", "six"), narration=narration_file, images=None):
        db = session_factory()
        try:
            db.add(Project(id=project_id, title=f"Project {project_id}", narration_audio_path=narration))
            for number, text in enumerate(texts, start=1):
                image = images[number - 1] if images else f"/uploads/scene_{number}.png"
                db.add(Scene(project_id=project_id, scene_number=number, image_url=image, text=text))
            db.commit()
        finally:
            db.close()
        return project_id

    return _make
