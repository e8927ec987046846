# tasks.py

from celery import Celery
import logging

from config import REDIS_URL
from database import SessionLocal
from services import process_video_generation

celery = Celery('tasks', broker=REDIS_URL, backend=REDIS_URL)
logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")


@celery.task
def generate_talking_video_task(job_id: str, image_url: str, audio_url: str):
    """
    Background task for one video job. The job row is the only channel back to
    the client, which polls it through the status action.
    """
    db = SessionLocal()
    try:
        logging.info(f"📝 Worker received video job {job_id}")
        job = process_video_generation(db, job_id, image_url, audio_url)
        if job is not None:
            logging.info(f"🏁 Worker finished job {job_id} with status {job.status}")
    finally:
        db.close()
