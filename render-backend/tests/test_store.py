# render-backend/tests/test_store.py

import json
import os

import pytest
from sqlalchemy import create_engine, inspect

from errors import InsufficientScenesError, MissingAudioError, ProjectNotFoundError
from init_db import init_database
from models import Scene
from notifications import RedisJobNotifier, job_event
from store import resolve_asset_path


def test_load_returns_scenes_in_order_with_word_counts(scene_store, make_project, narration_file):
    """
    Scenes come back ordered by scene number with the word count of their text.
    """
    project_id = make_project(texts=("one two three", "four", "five six"))

    inputs = scene_store.load(project_id)

    assert [s.scene_number for s in inputs.scenes] == [1, 2, 3]
    assert [s.word_count for s in inputs.scenes] == [3, 1, 2]
    assert inputs.scenes[0].image == "/uploads/scene_1.png"
    assert inputs.narration_path == narration_file


def test_load_skips_scenes_without_images(scene_store, make_project, session_factory):
    project_id = make_project()
    db = session_factory()
    db.add(Scene(project_id=project_id, scene_number=4, image_url=None, text="no picture yet"))
    db.add(Scene(project_id=project_id, scene_number=5, image_url="", text="empty picture"))
    db.commit()
    db.close()

    inputs = scene_store.load(project_id)

    assert [s.scene_number for s in inputs.scenes] == [1, 2, 3]


def test_load_filters_by_scene_range(scene_store, make_project):
    project_id = make_project(texts=("a", "b", "c", "d", "e"))

    inputs = scene_store.load(project_id, (2, 4))

    assert [s.scene_number for s in inputs.scenes] == [2, 3, 4]


def test_load_rejects_unknown_or_incomplete_projects(scene_store, make_project):
    with pytest.raises(ProjectNotFoundError):
        scene_store.load(42)

    with pytest.raises(MissingAudioError):
        scene_store.load(make_project(project_id=1, narration=None))

    with pytest.raises(InsufficientScenesError):
        scene_store.load(make_project(project_id=2, texts=()))


def test_asset_references_resolve_under_asset_root(tmp_path, monkeypatch):
    monkeypatch.setattr("store.ASSET_ROOT", str(tmp_path))
    existing = tmp_path / "narration.mp3"
    existing.write_bytes(b"x")

    assert resolve_asset_path(str(existing)) == str(existing)
    assert resolve_asset_path("/uploads/audio/voice.mp3") == os.path.join(str(tmp_path), "uploads/audio/voice.mp3")


def test_init_database_creates_tables_and_directories(tmp_path):
    engine = create_engine("sqlite://")
    directories = [str(tmp_path / "media"), str(tmp_path / "media" / "renders"), str(tmp_path / "work")]

    init_database(bind=engine, directories=directories)
    init_database(bind=engine, directories=directories)

    assert {"projects", "scenes", "render_jobs"} <= set(inspect(engine).get_table_names())
    assert all(os.path.isdir(d) for d in directories)


def test_job_event_and_unreachable_broker(repository, caplog):
    """A notifier that cannot reach Redis logs and carries on."""
    job = repository.create(7, {"fps": 30})
    notifier = RedisJobNotifier(url="redis://127.0.0.1:1/0")

    notifier.publish(job)

    event = job_event(job)
    assert json.loads(json.dumps(event)) == {
        "id": job.id, "project_id": 7, "status": "pending", "progress": 0, "error": None, "output_url": None,
    }
    assert "Could not publish render event" in caplog.text
