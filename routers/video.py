"""
Router for talking-video endpoints.
Handles job start/status, chunk stitching and serving stored media.
"""

import logging
import mimetypes

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse, JSONResponse
from sqlalchemy.orm import Session

from database import get_db
from errors import InputValidationError, NotFoundError, StorageError, TalkingFiguresError
from schemas import StitchRequest, VideoActionRequest
from services import DittoClient, VideoStitcher, check_video_job, create_video_job, update_job
from storage import ObjectStorage, storage
from tasks import generate_talking_video_task

router = APIRouter(tags=["video"])


def get_ditto() -> DittoClient:
    return DittoClient()


def get_storage() -> ObjectStorage:
    return storage


@router.post("/ditto-generate-video")
def ditto_generate_video(request: VideoActionRequest, db: Session = Depends(get_db),
                         ditto: DittoClient = Depends(get_ditto),
                         store: ObjectStorage = Depends(get_storage)):
    """
    `start` records a job, hands it to the Celery worker and returns the job id
    right away. `status` reports the job and polls Ditto once if it is pending.
    """
    if request.action == "status":
        if not request.job_id:
            raise InputValidationError("jobId is required for status checks")
        try:
            return check_video_job(db, request.job_id, ditto=ditto, store=store)
        except NotFoundError as e:
            return JSONResponse(status_code=404, content={"status": "error", "error": e.message})

    if not request.image_url or not request.audio_url:
        raise InputValidationError("imageUrl and audioUrl are required")

    job = create_video_job(db, request.image_url, request.audio_url, request.figure_id, request.figure_name)
    try:
        generate_talking_video_task.delay(job.id, request.image_url, request.audio_url)
    except Exception as e:
        logging.error(f"Failed to submit task to Celery: {e}")
        update_job(db, job, status="failed", error="Failed to start the video generation job.")
        raise TalkingFiguresError("Failed to start the video generation job.")

    logging.info(f"✨ Job {job.id} submitted for {request.figure_name or 'unknown figure'}")
    return {"status": "processing", "jobId": job.id}


@router.post("/stitch-chunks")
def stitch_chunks(request: StitchRequest, store: ObjectStorage = Depends(get_storage)):
    """Merges ordered chunk videos into one mp4 and returns its URL."""
    stored = VideoStitcher(store).stitch(request.video_urls)
    return {"video": stored.public_url, "key": stored.key}


@router.get("/media/{key:path}")
def get_media(key: str, store: ObjectStorage = Depends(get_storage)):
    if not store.exists(key):
        raise StorageError("Media not found.", status_code=404)
    media_type, _ = mimetypes.guess_type(key)
    return FileResponse(store.path_for(key), media_type=media_type or "application/octet-stream")
