"""
Router for render job endpoints.
Handles render submission, status polling, listing, cancellation and video download.
"""

import os
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from database import SessionLocal
from errors import InsufficientScenesError, JobStateError, MissingAudioError, ProjectNotFoundError
from jobs import RenderJobManager, SqlJobRepository
from notifications import RedisJobNotifier
from schemas import JobStatus, RenderJobResponse, RenderListResponse, RenderRequest, RenderSubmitResponse
from store import SqlSceneStore
from tasks import render_video_task


# Create the router
router = APIRouter(prefix="/renders", tags=["renders"])


# Shared by every request: one write lock for job records and one Redis connection pool
job_repository = SqlJobRepository(SessionLocal)
scene_store = SqlSceneStore(SessionLocal)
notifier = RedisJobNotifier()


def get_job_manager() -> RenderJobManager:
    return RenderJobManager(repository=job_repository, scene_store=scene_store, notifier=notifier)


@router.post("", response_model=RenderSubmitResponse, status_code=202)
async def create_render(request: RenderRequest, manager: RenderJobManager = Depends(get_job_manager)):
    """
    Validates the project, creates a pending render job, sends it to Celery,
    and immediately returns the job ID.
    """
    try:
        manager.scene_store.load(request.project_id, request.settings.scene_range)
    except ProjectNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (MissingAudioError, InsufficientScenesError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    job_id = manager.submit(request.project_id, request.settings)
    try:
        render_video_task.delay(job_id)
    except Exception as e:
        logging.error(f"Failed to submit render job {job_id} to Celery: {e}")
        manager.repository.fail(job_id, "Could not dispatch the render job to a worker.")
        raise HTTPException(status_code=500, detail="Failed to start the render job.")

    logging.info(f"✨ Render job {job_id} submitted for project {request.project_id}")
    return {"id": job_id, "status": JobStatus.PENDING.value}


@router.get("", response_model=RenderListResponse)
async def list_renders(project_id: Optional[int] = None, manager: RenderJobManager = Depends(get_job_manager)):
    """Lists render jobs, newest first, optionally for one project."""
    jobs = manager.repository.list(project_id=project_id)
    return {"renders": [RenderJobResponse.model_validate(job) for job in jobs]}


@router.get("/{job_id}", response_model=RenderJobResponse)
async def get_render(job_id: str, manager: RenderJobManager = Depends(get_job_manager)):
    """Checks the status of a render job."""
    job = manager.repository.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Render job not found.")
    return RenderJobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=RenderJobResponse)
async def cancel_render(job_id: str, manager: RenderJobManager = Depends(get_job_manager)):
    """Cancels a pending or running render job."""
    try:
        job = manager.cancel(job_id)
    except JobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not job:
        raise HTTPException(status_code=404, detail="Render job not found.")
    return RenderJobResponse.model_validate(job)


@router.get("/{job_id}/video")
async def get_render_video(job_id: str, manager: RenderJobManager = Depends(get_job_manager)):
    """Serves the finished video of a completed render job."""
    job = manager.repository.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Render job not found.")
    if job.status != JobStatus.COMPLETED.value:
        raise HTTPException(status_code=409, detail=f"Render job is {job.status}, not completed.")
    if not job.output_path or not os.path.exists(job.output_path):
        raise HTTPException(status_code=404, detail="Video file not found.")

    return FileResponse(job.output_path, media_type="video/mp4", filename=os.path.basename(job.output_path))
