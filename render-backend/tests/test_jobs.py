# render-backend/tests/test_jobs.py

import os
import sys
import asyncio
import logging
import socket
import subprocess
from datetime import timedelta

import pytest

from errors import EncodingError, JobStateError, RenderTimeoutError, UnsupportedImageError
from jobs import (
    CANCELLED_MESSAGE,
    INTERRUPTED_MESSAGE,
    JobProgress,
    RenderJobManager,
    RenderWorkspace,
    local_worker_alive,
)
from models import utcnow
from motion import PATTERN_CYCLE, MotionPattern
from schemas import RenderSettings
from services import AssemblyResult, ProbeResult, ProcessRunner


class FakeProber:
    def __init__(self, duration=60.0, has_audio=True):
        self.duration = duration
        self.has_audio = has_audio

    async def probe(self, path):
        return ProbeResult(duration_seconds=self.duration, has_audio=self.has_audio, has_video=False)


class FakeSynthesizer:
    """Writes a placeholder clip per scene and records how it was called."""

    def __init__(self, delays=None, failures=None, block=False):
        self.delays = delays or {}
        self.failures = failures or {}
        self.block = block
        self.attempts = {}
        self.patterns = {}
        self.active = 0
        self.max_active = 0
        self.started = None

    async def synthesize(self, image, duration_seconds, pattern, workspace_dir, settings, scene_index=0):
        self.attempts[scene_index] = self.attempts.get(scene_index, 0) + 1
        self.patterns[scene_index] = MotionPattern(pattern)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.started is not None:
                self.started.set()
            if self.block:
                await asyncio.sleep(30)
            await asyncio.sleep(self.delays.get(scene_index, 0.01))
            pending = self.failures.get(scene_index)
            if pending:
                raise pending.pop(0)
            path = os.path.join(workspace_dir, f"clip_{scene_index:04d}.mp4")
            with open(path, "wb") as f:
                f.write(b"clip")
            return path
        finally:
            self.active -= 1


class FakeAssembler:
    def __init__(self):
        self.clips = None

    async def assemble(self, clips, narration_path, output_path, total_seconds, settings,
                       on_progress=None, on_verify=None):
        self.clips = list(clips)
        if on_progress:
            on_progress(0.5)
            on_progress(1.0)
        with open(output_path, "wb") as f:
            f.write(b"v" * 2048)
        if on_verify:
            on_verify(0.5)
            on_verify(1.0)
        return AssemblyResult(output_path=output_path, file_size_bytes=2048, duration_seconds=total_seconds)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, job):
        self.events.append((job.status, job.progress))


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def assembler():
    return FakeAssembler()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def manager_factory(repository, scene_store, synthesizer, assembler, notifier, tmp_path):
    def _build(**overrides):
        options = dict(
            prober=FakeProber(),
            synthesizer=synthesizer,
            assembler=assembler,
            notifier=notifier,
            workspace_root=str(tmp_path / "workspaces"),
            output_dir=str(tmp_path / "renders"),
            worker_id="test-worker",
        )
        options.update(overrides)
        return RenderJobManager(repository, scene_store, **options)

    return _build


def workspace_of(manager, job_id):
    return RenderWorkspace(manager.workspace_root, job_id)


def test_successful_render_publishes_verified_output(manager_factory, make_project, notifier):
    """
    A completed job has progress 100, a file at its output path, and no
    leftover workspace.
    """
    manager = manager_factory()
    job_id = manager.submit(make_project())

    # Action: run the job to completion
    job = asyncio.run(manager.run(job_id))

    # Assert: terminal state, output published, workspace gone
    assert job.status == "completed"
    assert job.progress == 100
    assert job.error is None
    assert job.output_path == manager.output_path_for(job_id)
    assert os.path.getsize(job.output_path) == 2048
    assert job.file_size_bytes == 2048
    assert job.duration_seconds == pytest.approx(60.0)
    assert job.output_url.endswith(f"video_{job_id}.mp4") or job.output_url == f"/renders/{job_id}/video"
    assert not workspace_of(manager, job_id).exists()

    progress = [p for _, p in notifier.events]
    assert progress == sorted(progress)
    assert notifier.events[0] == ("pending", 0)
    assert notifier.events[-1] == ("completed", 100)
    # verification reports inside its own band, before the job completes
    assert ("processing", 97) in notifier.events


def test_clips_are_assembled_in_scene_order(manager_factory, make_project, assembler):
    """Scenes that finish out of order are still concatenated in order."""
    synthesizer = FakeSynthesizer(delays={0: 0.2, 1: 0.1, 2: 0.01})
    manager = manager_factory(synthesizer=synthesizer)
    job_id = manager.submit(make_project())

    job = asyncio.run(manager.run(job_id))

    assert job.status == "completed"
    assert [os.path.basename(c) for c in assembler.clips] == ["clip_0000.mp4", "clip_0001.mp4", "clip_0002.mp4"]


def test_patterns_rotate_unless_fixed(manager_factory, make_project):
    rotating = FakeSynthesizer()
    manager = manager_factory(synthesizer=rotating)
    asyncio.run(manager.run(manager.submit(make_project(project_id=1, texts=("a",) * 5))))

    fixed = FakeSynthesizer()
    manager = manager_factory(synthesizer=fixed)
    asyncio.run(manager.run(manager.submit(make_project(project_id=2), RenderSettings(motion_pattern="zoom_out"))))

    assert [rotating.patterns[i] for i in range(5)] == list(PATTERN_CYCLE) + [PATTERN_CYCLE[0]]
    assert set(fixed.patterns.values()) == {MotionPattern.ZOOM_OUT}


def test_scene_range_limits_rendered_scenes(manager_factory, make_project, assembler):
    manager = manager_factory()
    job_id = manager.submit(make_project(texts=("a", "b", "c", "d")), RenderSettings(scene_range=(2, 3)))

    job = asyncio.run(manager.run(job_id))

    assert job.status == "completed"
    assert len(assembler.clips) == 2


def test_failed_scene_fails_job_and_cleans_up(manager_factory, make_project):
    synthesizer = FakeSynthesizer(failures={1: [UnsupportedImageError("Scene 2: image not found")]})
    manager = manager_factory(synthesizer=synthesizer)
    job_id = manager.submit(make_project())

    job = asyncio.run(manager.run(job_id))

    assert job.status == "failed"
    assert "image not found" in job.error
    assert job.progress < 100
    assert job.output_url is None
    assert not os.path.exists(manager.output_path_for(job_id))
    assert not workspace_of(manager, job_id).exists()


def test_transient_encoding_failure_is_retried_once(manager_factory, make_project):
    synthesizer = FakeSynthesizer(failures={0: [EncodingError("ffmpeg exited with code 1: glitch", returncode=1)]})
    manager = manager_factory(synthesizer=synthesizer)

    job = asyncio.run(manager.run(manager.submit(make_project())))

    assert job.status == "completed"
    assert synthesizer.attempts[0] == 2


def test_permanent_failures_are_not_retried(manager_factory, make_project):
    synthesizer = FakeSynthesizer(failures={
        0: [EncodingError("ffmpeg is not installed or not on PATH.", transient=False)],
    })
    manager = manager_factory(synthesizer=synthesizer)

    job = asyncio.run(manager.run(manager.submit(make_project())))

    assert job.status == "failed"
    assert synthesizer.attempts[0] == 1


def test_retries_are_bounded(manager_factory, make_project):
    glitches = [EncodingError("glitch", returncode=1) for _ in range(3)]
    synthesizer = FakeSynthesizer(failures={2: glitches})
    manager = manager_factory(synthesizer=synthesizer)

    job = asyncio.run(manager.run(manager.submit(make_project())))

    assert job.status == "failed"
    assert synthesizer.attempts[2] == 2


class HangingSynthesizer(FakeSynthesizer):
    """Runs a real process that never finishes within its time limit."""

    async def synthesize(self, image, duration_seconds, pattern, workspace_dir, settings, scene_index=0):
        self.attempts[scene_index] = self.attempts.get(scene_index, 0) + 1
        await ProcessRunner().run([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.3)


def test_encoder_timeout_fails_job_without_output(manager_factory, make_project):
    synthesizer = HangingSynthesizer()
    manager = manager_factory(synthesizer=synthesizer)
    job_id = manager.submit(make_project(texts=("only scene",)))

    job = asyncio.run(manager.run(job_id))

    assert job.status == "failed"
    assert "timeout" in job.error.lower()
    assert synthesizer.attempts[0] == 1
    assert not RenderTimeoutError.transient
    assert not os.path.exists(manager.output_path_for(job_id))
    assert not workspace_of(manager, job_id).exists()


def test_missing_narration_fails_job(manager_factory, make_project, tmp_path):
    manager = manager_factory()
    job_id = manager.submit(make_project(narration=str(tmp_path / "gone.mp3")))

    job = asyncio.run(manager.run(job_id))

    assert job.status == "failed"
    assert "Narration" in job.error


def test_narration_without_audio_stream_fails_job(manager_factory, make_project):
    manager = manager_factory(prober=FakeProber(has_audio=False))

    job = asyncio.run(manager.run(manager.submit(make_project())))

    assert job.status == "failed"
    assert "no audio" in job.error


def test_encode_concurrency_is_bounded(manager_factory, make_project):
    synthesizer = FakeSynthesizer(delays={i: 0.05 for i in range(6)})
    manager = manager_factory(synthesizer=synthesizer, max_concurrent_encodes=2)

    job = asyncio.run(manager.run(manager.submit(make_project(texts=("x",) * 6))))

    assert job.status == "completed"
    assert synthesizer.max_active == 2


def test_cancel_pending_job(manager_factory, make_project, synthesizer):
    manager = manager_factory()
    job_id = manager.submit(make_project())

    cancelled = manager.cancel(job_id)
    job = asyncio.run(manager.run(job_id))

    assert cancelled.status == "failed"
    assert cancelled.error == CANCELLED_MESSAGE
    assert job.status == "failed"
    assert synthesizer.attempts == {}


def test_cancel_running_job_in_process(manager_factory, make_project):
    synthesizer = FakeSynthesizer(block=True)
    manager = manager_factory(synthesizer=synthesizer)
    job_id = manager.submit(make_project())

    async def scenario():
        synthesizer.started = asyncio.Event()
        task = asyncio.ensure_future(manager.run(job_id))
        await synthesizer.started.wait()
        manager.cancel(job_id)
        return await asyncio.wait_for(task, timeout=10)

    job = asyncio.run(scenario())

    assert job.status == "failed"
    assert job.error == CANCELLED_MESSAGE
    assert synthesizer.active == 0
    assert not os.path.exists(manager.output_path_for(job_id))
    assert not workspace_of(manager, job_id).exists()


def test_cancel_requested_from_another_process(manager_factory, make_project, repository):
    """A cancel flag written by the API process is picked up by the heartbeat."""
    synthesizer = FakeSynthesizer(block=True)
    manager = manager_factory(synthesizer=synthesizer, heartbeat_interval=0.05)
    job_id = manager.submit(make_project())

    async def scenario():
        synthesizer.started = asyncio.Event()
        task = asyncio.ensure_future(manager.run(job_id))
        await synthesizer.started.wait()
        assert repository.request_cancel(job_id)
        return await asyncio.wait_for(task, timeout=10)

    job = asyncio.run(scenario())

    assert job.status == "failed"
    assert job.error == CANCELLED_MESSAGE


def test_finished_jobs_are_immutable(manager_factory, make_project, repository):
    manager = manager_factory()
    job_id = manager.submit(make_project())
    asyncio.run(manager.run(job_id))

    with pytest.raises(JobStateError):
        manager.cancel(job_id)
    assert not repository.fail(job_id, "late failure")
    assert not repository.advance_progress(job_id, 50)
    assert asyncio.run(manager.run(job_id)).status == "completed"
    assert manager.cancel("no-such-job") is None


def test_orphaned_jobs_are_failed_and_swept(manager_factory, make_project, repository):
    """
    Processing jobs with a stale heartbeat are failed, never resumed, and
    workspaces that no live job owns are removed.
    """
    manager = manager_factory(orphan_timeout=60)
    project_id = make_project()
    orphan_id = manager.submit(project_id)
    live_id = manager.submit(project_id)
    waiting_id = manager.submit(project_id)
    repository.start(orphan_id, "dead-worker")
    repository.start(live_id, "other-worker")
    repository._update(orphan_id, {"heartbeat_at": utcnow() - timedelta(minutes=10)})

    for job_id in (orphan_id, live_id, waiting_id, "unknown-job"):
        workspace_of(manager, job_id).create()

    # Action: sweep as a restarted worker would
    recovered = manager.recover_orphans()

    # Assert: only the stale job is failed, only unowned workspaces are removed
    assert recovered == [orphan_id]
    orphan = repository.get(orphan_id)
    assert orphan.status == "failed"
    assert orphan.error == INTERRUPTED_MESSAGE
    assert repository.get(live_id).status == "processing"
    assert not workspace_of(manager, orphan_id).exists()
    assert not workspace_of(manager, "unknown-job").exists()
    assert workspace_of(manager, live_id).exists()
    assert workspace_of(manager, waiting_id).exists()


def dead_local_worker_id():
    """A worker id on this host whose process has already exited."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return f"{socket.gethostname()}:{process.pid}"


def test_recently_orphaned_job_is_failed_on_restart(manager_factory, make_project, repository):
    """A worker restarted within a minute still fails the job its predecessor left behind."""
    manager = manager_factory()
    job_id = manager.submit(make_project())
    repository.start(job_id, "dead-worker")
    repository._update(job_id, {"heartbeat_at": utcnow() - timedelta(seconds=30)})

    recovered = manager.recover_orphans()

    assert recovered == [job_id]
    job = repository.get(job_id)
    assert job.status == "failed"
    assert job.error == INTERRUPTED_MESSAGE


def test_dead_local_worker_is_orphaned_despite_fresh_heartbeat(manager_factory, make_project, repository):
    manager = manager_factory()
    project_id = make_project()
    dead_id = manager.submit(project_id)
    alive_id = manager.submit(project_id)
    repository.start(dead_id, dead_local_worker_id())
    repository.start(alive_id, f"{socket.gethostname()}:{os.getpid()}")

    recovered = manager.recover_orphans()

    assert recovered == [dead_id]
    assert repository.get(dead_id).status == "failed"
    assert repository.get(alive_id).status == "processing"


def test_local_worker_liveness():
    assert local_worker_alive(f"{socket.gethostname()}:{os.getpid()}") is True
    assert local_worker_alive(dead_local_worker_id()) is False
    assert local_worker_alive("elsewhere.example:1234") is None
    assert local_worker_alive("test-worker") is None
    assert local_worker_alive(None) is None


def test_cancel_job_whose_worker_is_gone(manager_factory, make_project, repository):
    """Nobody is left to honor the cancel flag, so the job fails right away."""
    manager = manager_factory()
    job_id = manager.submit(make_project())
    repository.start(job_id, dead_local_worker_id())
    workspace_of(manager, job_id).create()

    job = manager.cancel(job_id)

    assert job.status == "failed"
    assert job.error == CANCELLED_MESSAGE
    assert not workspace_of(manager, job_id).exists()


def test_cancel_job_of_live_remote_worker_only_flags_it(manager_factory, make_project, repository):
    manager = manager_factory()
    job_id = manager.submit(make_project())
    repository.start(job_id, "other-worker")

    job = manager.cancel(job_id)

    assert job.status == "processing"
    assert job.cancel_requested


def test_periodic_sweep_task_recovers_orphans(manager_factory, make_project, repository, monkeypatch):
    import tasks

    manager = manager_factory()
    job_id = manager.submit(make_project())
    repository.start(job_id, dead_local_worker_id())
    monkeypatch.setattr(tasks, "build_manager", lambda: manager)

    recovered = tasks.sweep_orphaned_jobs()

    assert recovered == [job_id]
    assert repository.get(job_id).status == "failed"
    schedule = tasks.celery.conf.beat_schedule["sweep-orphaned-renders"]
    assert schedule["task"] == "tasks.sweep_orphaned_jobs"


def test_sparse_storyboard_logs_warning(manager_factory, make_project, caplog):
    """60s of narration over 3 scenes is below one scene per 10 seconds."""
    manager = manager_factory()

    with caplog.at_level(logging.WARNING):
        sparse = asyncio.run(manager.run(manager.submit(make_project(project_id=1))))
    sparse_warnings = [r for r in caplog.records if "recommended" in r.getMessage()]
    caplog.clear()

    with caplog.at_level(logging.WARNING):
        dense = asyncio.run(manager.run(manager.submit(make_project(project_id=2, texts=("x",) * 6))))
    dense_warnings = [r for r in caplog.records if "recommended" in r.getMessage()]

    assert sparse.status == "completed"
    assert dense.status == "completed"
    assert len(sparse_warnings) == 1
    assert "at least 6" in sparse_warnings[0].getMessage()
    assert dense_warnings == []


def test_progress_never_moves_backwards():
    reported = []
    progress = JobProgress(reported.append)
    clips = progress.stage((10, 75))

    clips(0.5)
    clips(0.2)
    progress.stage((0, 10))(1.0)
    progress.stage((75, 95))(2.0)

    assert reported == [42, 95]
