"""
Render job lifecycle: persistence, progress, workspace ownership and the
orchestration of probe -> timing -> clips -> assembly -> verification.

Jobs move pending -> processing -> completed | failed and never leave a terminal
state. All writes to a job record go through SqlJobRepository, whose updates are
conditional on the current status so concurrent writers cannot race a job out of
its lifecycle.
"""

import os
import math
import uuid
import shutil
import socket
import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from config import (
    WORKSPACE_ROOT,
    OUTPUT_DIR,
    MEDIA_DIR,
    MEDIA_URL_PREFIX,
    MAX_CONCURRENT_JOBS,
    MAX_CONCURRENT_ENCODES,
    SCENE_ENCODE_RETRIES,
    HEARTBEAT_INTERVAL_SECONDS,
    ORPHAN_TIMEOUT_SECONDS,
    MIN_SCENE_SECONDS,
    MAX_SCENE_SECONDS,
    SECONDS_PER_SCENE_HINT,
    PROGRESS_PROBE,
    PROGRESS_CLIPS,
    PROGRESS_ASSEMBLY,
    PROGRESS_VERIFY,
)
from database import SessionLocal
from errors import JobStateError, MissingAudioError, ProbeError, RenderCancelledError, RenderError
from models import RenderJob, utcnow
from motion import pattern_for_scene
from notifications import LoggingJobNotifier
from schemas import JobStatus, RenderSettings, TERMINAL_STATUSES
from services import FrameEffectSynthesizer, MediaProber, VideoAssembler
from timing import SceneInput, SceneTiming, allocate

PENDING = JobStatus.PENDING.value
PROCESSING = JobStatus.PROCESSING.value
COMPLETED = JobStatus.COMPLETED.value
FAILED = JobStatus.FAILED.value

CANCELLED_MESSAGE = "Render cancelled by user."
INTERRUPTED_MESSAGE = "Render interrupted: the worker stopped before finishing."


class SqlJobRepository:
    """Single write path for render job records."""

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory
        self._lock = threading.Lock()

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def create(self, project_id: int, settings: dict) -> RenderJob:
        job = RenderJob(
            id=str(uuid.uuid4()),
            project_id=project_id,
            status=PENDING,
            progress=0,
            settings=settings,
        )
        with self._lock, self._session() as db:
            db.add(job)
            db.commit()
            db.refresh(job)
        return job

    def get(self, job_id: str) -> Optional[RenderJob]:
        with self._session() as db:
            return db.query(RenderJob).filter(RenderJob.id == job_id).first()

    def list(self, project_id: int = None) -> List[RenderJob]:
        with self._session() as db:
            query = db.query(RenderJob)
            if project_id is not None:
                query = query.filter(RenderJob.project_id == project_id)
            return query.order_by(RenderJob.created_at.desc()).all()

    def _update(self, job_id: str, values: dict, *conditions) -> bool:
        values = dict(values, updated_at=utcnow())
        with self._lock, self._session() as db:
            count = (
                db.query(RenderJob)
                .filter(RenderJob.id == job_id, *conditions)
                .update(values, synchronize_session=False)
            )
            db.commit()
            return count == 1

    def start(self, job_id: str, worker_id: str) -> Optional[RenderJob]:
        started = self._update(
            job_id,
            {"status": PROCESSING, "progress": 0, "worker_id": worker_id, "heartbeat_at": utcnow()},
            RenderJob.status == PENDING,
        )
        return self.get(job_id) if started else None

    def advance_progress(self, job_id: str, progress: int) -> bool:
        return self._update(
            job_id,
            {"progress": min(int(progress), 100)},
            RenderJob.status == PROCESSING,
            RenderJob.progress < int(progress),
        )

    def heartbeat(self, job_id: str) -> bool:
        """Record that the worker is alive; returns True if cancellation was requested."""
        self._update(job_id, {"heartbeat_at": utcnow()}, RenderJob.status == PROCESSING)
        job = self.get(job_id)
        return bool(job and job.cancel_requested)

    def request_cancel(self, job_id: str) -> bool:
        return self._update(job_id, {"cancel_requested": True}, RenderJob.status == PROCESSING)

    def complete(self, job_id: str, output_url: str, output_path: str,
                 file_size_bytes: int, duration_seconds: float) -> bool:
        return self._update(
            job_id,
            {
                "status": COMPLETED,
                "progress": 100,
                "output_url": output_url,
                "output_path": output_path,
                "file_size_bytes": file_size_bytes,
                "duration_seconds": duration_seconds,
                "completed_at": utcnow(),
            },
            RenderJob.status == PROCESSING,
        )

    def fail(self, job_id: str, error: str, from_statuses: Sequence[str] = (PENDING, PROCESSING)) -> bool:
        return self._update(
            job_id,
            {"status": FAILED, "error": error or "Unknown render error", "completed_at": utcnow()},
            RenderJob.status.in_(list(from_statuses)),
        )

    def find_processing(self) -> List[RenderJob]:
        with self._session() as db:
            return db.query(RenderJob).filter(RenderJob.status == PROCESSING).all()


def local_worker_alive(worker_id: Optional[str]) -> Optional[bool]:
    """
    Whether the process behind a "host:pid" worker id is still running.
    Returns None when the worker lives on another host and cannot be checked here.
    """
    host, _, pid = (worker_id or "").rpartition(":")
    if host != socket.gethostname() or not pid.isdigit():
        return None
    try:
        os.kill(int(pid), 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True


class RenderWorkspace:
    """Scratch directory exclusively owned by one job."""

    PREFIX = "job_"

    def __init__(self, root: str, job_id: str):
        self.job_id = job_id
        self.path = os.path.join(root, f"{self.PREFIX}{job_id}")

    @classmethod
    def job_id_for(cls, dirname: str) -> Optional[str]:
        return dirname[len(cls.PREFIX):] if dirname.startswith(cls.PREFIX) else None

    def create(self) -> str:
        if os.path.exists(self.path):
            # leftover from a crashed attempt with the same id
            shutil.rmtree(self.path)
        os.makedirs(self.path)
        return self.path

    def file(self, name: str) -> str:
        return os.path.join(self.path, name)

    def destroy(self):
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning(f"Could not remove workspace {self.path}: {e}")

    def exists(self) -> bool:
        return os.path.isdir(self.path)


class JobProgress:
    """
    Maps fractional progress within a stage onto the job's overall percentage.
    Only ever moves forward, so late or out-of-order reports are ignored.
    """

    def __init__(self, report: Callable[[int], None]):
        self._report = report
        self.current = 0

    def set(self, percent: float):
        percent = int(percent)
        if percent > self.current:
            self.current = percent
            self._report(percent)

    def stage(self, bounds: Tuple[int, int]) -> Callable[[float], None]:
        start, end = bounds

        def update(fraction: float):
            fraction = min(max(fraction, 0.0), 1.0)
            self.set(start + (end - start) * fraction)

        return update


@dataclass
class CompletedRender:
    output_path: str
    output_url: str
    file_size_bytes: int
    duration_seconds: float


class RenderJobManager:
    """Submits, runs, cancels and recovers render jobs."""

    def __init__(
        self,
        repository: SqlJobRepository,
        scene_store,
        prober: MediaProber = None,
        synthesizer: FrameEffectSynthesizer = None,
        assembler: VideoAssembler = None,
        notifier=None,
        workspace_root: str = WORKSPACE_ROOT,
        output_dir: str = OUTPUT_DIR,
        max_concurrent_jobs: int = MAX_CONCURRENT_JOBS,
        max_concurrent_encodes: int = MAX_CONCURRENT_ENCODES,
        scene_retries: int = SCENE_ENCODE_RETRIES,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        orphan_timeout: float = ORPHAN_TIMEOUT_SECONDS,
        min_scene_seconds: float = MIN_SCENE_SECONDS,
        max_scene_seconds: float = MAX_SCENE_SECONDS,
        worker_id: str = None,
    ):
        self.repository = repository
        self.scene_store = scene_store
        self.prober = prober or MediaProber()
        self.synthesizer = synthesizer or FrameEffectSynthesizer(self.prober)
        self.assembler = assembler or VideoAssembler(self.prober)
        self.notifier = notifier or LoggingJobNotifier()
        self.workspace_root = workspace_root
        self.output_dir = output_dir
        self.max_concurrent_jobs = max_concurrent_jobs
        self.max_concurrent_encodes = max_concurrent_encodes
        self.scene_retries = scene_retries
        self.heartbeat_interval = heartbeat_interval
        self.orphan_timeout = orphan_timeout
        self.min_scene_seconds = min_scene_seconds
        self.max_scene_seconds = max_scene_seconds
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"

        self._running: Dict[str, asyncio.Task] = {}
        self._cancelled = set()
        self._limits_loop = None
        self._job_slots = None
        self._encode_slots = None

    # --- Submission & queries ---

    def submit(self, project_id: int, settings: RenderSettings = None) -> str:
        settings = settings or RenderSettings()
        job = self.repository.create(project_id, settings.model_dump(mode="json"))
        logging.info(f"✨ Render job {job.id} created for project {project_id}")
        self._notify(job)
        return job.id

    def output_path_for(self, job_id: str) -> str:
        return os.path.join(self.output_dir, f"video_{job_id}.mp4")

    def output_url_for(self, job_id: str) -> str:
        relative = os.path.relpath(self.output_path_for(job_id), MEDIA_DIR)
        if relative.startswith(".."):
            return f"/renders/{job_id}/video"
        return f"{MEDIA_URL_PREFIX}/{relative.replace(os.sep, '/')}"

    # --- Execution ---

    def _limits(self):
        # asyncio primitives belong to one loop; each asyncio.run gets fresh ones
        loop = asyncio.get_running_loop()
        if self._limits_loop is not loop:
            self._limits_loop = loop
            self._job_slots = asyncio.Semaphore(self.max_concurrent_jobs)
            self._encode_slots = asyncio.Semaphore(self.max_concurrent_encodes)
        return self._job_slots, self._encode_slots

    async def run(self, job_id: str) -> Optional[RenderJob]:
        """Run one job to a terminal state. Never raises for pipeline failures."""
        job_slots, _ = self._limits()
        async with job_slots:
            job = self.repository.start(job_id, self.worker_id)
            if job is None:
                logging.warning(f"Render job {job_id} is not pending; nothing to do.")
                return self.repository.get(job_id)
            self._notify(job)
            logging.info(f"🎬 Render job {job_id} started on {self.worker_id}")

            workspace = RenderWorkspace(self.workspace_root, job_id)
            progress = JobProgress(lambda percent: self._report_progress(job_id, percent))
            pipeline = asyncio.ensure_future(self._execute(job, workspace, progress))
            self._running[job_id] = pipeline
            watcher = asyncio.ensure_future(self._watch(job_id, pipeline))

            try:
                result = await pipeline
            except asyncio.CancelledError:
                if job_id in self._cancelled:
                    self._finish_failed(job_id, str(RenderCancelledError(CANCELLED_MESSAGE)))
                else:
                    self._finish_failed(job_id, INTERRUPTED_MESSAGE)
                    raise
            except RenderError as e:
                self._finish_failed(job_id, str(e))
            except Exception as e:
                logging.exception(f"Unexpected failure in render job {job_id}")
                self._finish_failed(job_id, f"Unexpected error: {e}")
            else:
                self._finish_completed(job_id, result)
            finally:
                watcher.cancel()
                self._running.pop(job_id, None)
                self._cancelled.discard(job_id)
                workspace.destroy()

        return self.repository.get(job_id)

    async def _execute(self, job: RenderJob, workspace: RenderWorkspace, progress: JobProgress) -> CompletedRender:
        settings = RenderSettings(**(job.settings or {}))
        workspace.create()

        # Probe
        probe_stage = progress.stage(PROGRESS_PROBE)
        inputs = self.scene_store.load(job.project_id, settings.scene_range)
        if not os.path.isfile(inputs.narration_path):
            raise MissingAudioError(f"Narration track not found: {inputs.narration_path}")
        narration = await self.prober.probe(inputs.narration_path)
        if not narration.has_audio:
            raise ProbeError("Narration file has no audio stream.")
        total_seconds = narration.duration_seconds
        probe_stage(1.0)

        # Timing
        plan = allocate(inputs.scenes, total_seconds, self.min_scene_seconds, self.max_scene_seconds)
        logging.info(
            f"⏱️ Job {job.id}: {len(plan)} scenes over {total_seconds:.2f}s -> "
            + ", ".join(f"#{t.scene_number}={t.duration_seconds:.2f}s" for t in plan)
        )
        recommended = math.ceil(total_seconds / SECONDS_PER_SCENE_HINT)
        if len(plan) < recommended:
            logging.warning(
                f"⚠️ Job {job.id}: {len(plan)} scenes for {total_seconds:.2f}s of narration; "
                f"at least {recommended} are recommended"
            )

        # Clips
        clips = await self._synthesize_clips(inputs.scenes, plan, settings, workspace, progress.stage(PROGRESS_CLIPS))

        # Assembly, then verification of the assembled file
        assembled = await self.assembler.assemble(
            clips,
            inputs.narration_path,
            workspace.file(f"video_{job.id}.mp4"),
            total_seconds,
            settings,
            on_progress=progress.stage(PROGRESS_ASSEMBLY),
            on_verify=progress.stage(PROGRESS_VERIFY),
        )

        # Publish the verified file
        final_path = self.output_path_for(job.id)
        os.makedirs(self.output_dir, exist_ok=True)
        shutil.move(assembled.output_path, final_path)
        return CompletedRender(
            output_path=final_path,
            output_url=self.output_url_for(job.id),
            file_size_bytes=os.path.getsize(final_path),
            duration_seconds=assembled.duration_seconds,
        )

    async def _synthesize_clips(self, scenes: List[SceneInput], plan: List[SceneTiming],
                                settings: RenderSettings, workspace: RenderWorkspace,
                                on_fraction: Callable[[float], None]) -> List[str]:
        _, encode_slots = self._limits()
        completed = 0

        async def render_scene(index: int, scene: SceneInput, timing: SceneTiming) -> str:
            nonlocal completed
            pattern = settings.motion_pattern or pattern_for_scene(index)
            async with encode_slots:
                clip = await self._synthesize_with_retry(index, scene, timing, pattern, settings, workspace)
            # a counter, not a per-worker percentage, so parallel scenes cannot overwrite each other
            completed += 1
            on_fraction(completed / len(scenes))
            return clip

        tasks = [
            asyncio.ensure_future(render_scene(index, scene, timing))
            for index, (scene, timing) in enumerate(zip(scenes, plan))
        ]
        try:
            return list(await asyncio.gather(*tasks))
        finally:
            # one failed scene fails the job; stop the encoders still running
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _synthesize_with_retry(self, index, scene, timing, pattern, settings, workspace) -> str:
        attempt = 0
        while True:
            try:
                return await self.synthesizer.synthesize(
                    scene.image, timing.duration_seconds, pattern, workspace.path, settings, index
                )
            except RenderError as e:
                if not e.transient or attempt >= self.scene_retries:
                    raise
                attempt += 1
                logging.warning(
                    f"🔁 Scene {scene.scene_number} failed ({e}); retry {attempt}/{self.scene_retries}"
                )

    async def _watch(self, job_id: str, pipeline: asyncio.Future):
        """Heartbeat for orphan detection, and the cancellation poll for out-of-process requests."""
        while not pipeline.done():
            await asyncio.sleep(self.heartbeat_interval)
            if self.repository.heartbeat(job_id) and not pipeline.done():
                logging.warning(f"🛑 Cancellation requested for render job {job_id}")
                self._cancelled.add(job_id)
                pipeline.cancel()
                return

    # --- Terminal transitions ---

    def _finish_completed(self, job_id: str, result: CompletedRender):
        if self.repository.complete(job_id, result.output_url, result.output_path,
                                    result.file_size_bytes, result.duration_seconds):
            logging.info(
                f"✅ Render job {job_id} completed: {result.output_path} "
                f"({result.file_size_bytes / 1024 / 1024:.2f}MB, {result.duration_seconds:.2f}s)"
            )
            self._notify(self.repository.get(job_id))
        else:
            # Someone else terminated the job (orphan sweep); never surface the file
            logging.warning(f"Render job {job_id} was terminated elsewhere; discarding its output.")
            self._discard_output(job_id)

    def _finish_failed(self, job_id: str, message: str):
        logging.error(f"❌ Render job {job_id} failed: {message}")
        self._discard_output(job_id)
        if self.repository.fail(job_id, message):
            self._notify(self.repository.get(job_id))

    def _discard_output(self, job_id: str):
        path = self.output_path_for(job_id)
        if os.path.exists(path):
            os.remove(path)

    # --- Cancellation & recovery ---

    def cancel(self, job_id: str) -> Optional[RenderJob]:
        """Cancel a job. Returns None for an unknown id, raises JobStateError for a finished job."""
        job = self.repository.get(job_id)
        if job is None:
            return None
        if job.status in TERMINAL_STATUSES:
            raise JobStateError(f"Render job {job_id} is already {job.status}.")

        if self.repository.fail(job_id, CANCELLED_MESSAGE, from_statuses=(PENDING,)):
            logging.info(f"🛑 Pending render job {job_id} cancelled")
            job = self.repository.get(job_id)
            self._notify(job)
            return job

        if self.repository.request_cancel(job_id):
            task = self._running.get(job_id)
            if task is not None:
                self._cancelled.add(job_id)
                task.cancel()
            elif self._is_orphaned(job, self._orphan_cutoff()):
                # nobody is left to notice the flag
                self._fail_orphan(job_id, CANCELLED_MESSAGE)
                logging.info(f"🛑 Render job {job_id} cancelled; its worker is gone")
                return self.repository.get(job_id)
            logging.info(f"🛑 Cancellation requested for render job {job_id}")
            return self.repository.get(job_id)

        raise JobStateError(f"Render job {job_id} finished before it could be cancelled.")

    def _orphan_cutoff(self):
        return utcnow() - timedelta(seconds=self.orphan_timeout)

    def _is_orphaned(self, job: RenderJob, cutoff) -> bool:
        if job.id in self._running:
            return False
        if local_worker_alive(job.worker_id) is False:
            return True
        return job.heartbeat_at is None or job.heartbeat_at < cutoff

    def _fail_orphan(self, job_id: str, message: str) -> bool:
        failed = self.repository.fail(job_id, message, from_statuses=(PROCESSING,))
        if failed:
            self._notify(self.repository.get(job_id))
        RenderWorkspace(self.workspace_root, job_id).destroy()
        self._discard_output(job_id)
        return failed

    def recover_orphans(self) -> List[str]:
        """
        Fail processing jobs whose worker is gone and sweep workspaces that no live
        job owns. A worker is gone when its heartbeat is older than orphan_timeout,
        or when it ran on this host and its process no longer exists. External
        encoder state cannot be resumed, so orphans are never restarted.
        """
        cutoff = self._orphan_cutoff()
        recovered = []
        for job in self.repository.find_processing():
            if not self._is_orphaned(job, cutoff):
                continue
            if self._fail_orphan(job.id, INTERRUPTED_MESSAGE):
                logging.warning(f"🧹 Orphaned render job {job.id} (worker {job.worker_id}) marked failed")
                recovered.append(job.id)

        if os.path.isdir(self.workspace_root):
            for name in os.listdir(self.workspace_root):
                job_id = RenderWorkspace.job_id_for(name)
                if job_id is None:
                    continue
                job = self.repository.get(job_id)
                if job is None or job.status in TERMINAL_STATUSES:
                    RenderWorkspace(self.workspace_root, job_id).destroy()
        return recovered

    # --- Notifications ---

    def _report_progress(self, job_id: str, percent: int):
        if self.repository.advance_progress(job_id, percent):
            self._notify(self.repository.get(job_id))

    def _notify(self, job: Optional[RenderJob]):
        if job is not None:
            self.notifier.publish(job)
