# tasks.py

import asyncio
import logging

from celery import Celery
from celery.signals import worker_ready

from config import LOG_LEVEL, MAX_CONCURRENT_JOBS, ORPHAN_SWEEP_INTERVAL_SECONDS, REDIS_URL
from database import SessionLocal
from jobs import RenderJobManager, SqlJobRepository
from notifications import RedisJobNotifier
from store import SqlSceneStore

celery = Celery('tasks', broker=REDIS_URL, backend=REDIS_URL)
# One job per worker process; the pool size is the cap on concurrent renders
celery.conf.update(
    worker_concurrency=MAX_CONCURRENT_JOBS,
    worker_prefetch_multiplier=1,
    task_acks_late=False,
    # Runs under `celery -A tasks beat` or `worker -B`
    beat_schedule={
        "sweep-orphaned-renders": {
            "task": "tasks.sweep_orphaned_jobs",
            "schedule": ORPHAN_SWEEP_INTERVAL_SECONDS,
        },
    },
)
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(levelname)s - %(message)s")

notifier = RedisJobNotifier()


def build_manager() -> RenderJobManager:
    return RenderJobManager(
        repository=SqlJobRepository(SessionLocal),
        scene_store=SqlSceneStore(SessionLocal),
        notifier=notifier,
    )


@celery.task(name="tasks.render_video_task")
def render_video_task(job_id: str):
    """
    Background task that runs one render job to completion or failure.
    The manager records every outcome on the job itself.
    """
    logging.info(f"📝 Worker received render job {job_id}")
    job = asyncio.run(build_manager().run(job_id))
    if job is not None:
        logging.info(f"Worker finished render job {job_id} with status '{job.status}'")
        return job.status
    return None


@worker_ready.connect
def recover_orphaned_jobs(**kwargs):
    """Jobs left in processing by a dead worker are failed, never resumed."""
    recovered = build_manager().recover_orphans()
    if recovered:
        logging.warning(f"🧹 Recovered {len(recovered)} orphaned render job(s): {', '.join(recovered)}")


@celery.task(name="tasks.sweep_orphaned_jobs")
def sweep_orphaned_jobs():
    """Periodic counterpart of the startup sweep."""
    recovered = build_manager().recover_orphans()
    if recovered:
        logging.warning(f"🧹 Periodic sweep failed {len(recovered)} orphaned render job(s): {', '.join(recovered)}")
    return recovered
