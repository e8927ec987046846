"""
Service classes for the Talking Figures backend.
Contains the Ditto provider client, the video job lifecycle and the chunk merger.
"""

import os
import time
import uuid
import logging
import tempfile
import traceback
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import ffmpeg
import requests
from sqlalchemy.orm import Session

from config import (
    DITTO_API_URL,
    DITTO_REQUEST_TIMEOUT,
    JOB_AUDIO_URL_MAX,
    JOB_IMAGE_URL_MAX,
    MERGED_PREFIX,
    VIDEO_PREFIX,
    WAV_BYTES_PER_SECOND,
)
from chunker import parse_data_url
from errors import (
    AudioParseError,
    InputValidationError,
    MediaFetchError,
    NotFoundError,
    ProviderResponseError,
    TalkingFiguresError,
    provider_error_for_status,
)
from models import VideoJob, utcnow
from polling import RetryPolicy, call_with_retry
from storage import ObjectStorage, StoredObject, storage

STREAM_CONTENT_TYPES = ("text/event-stream", "application/octet-stream")


def load_media(source: str, label: str = "media", timeout: float = 60) -> Tuple[bytes, str]:
    """Return (bytes, content type) for a URL or an inline base64 data URL."""
    if source.startswith("data:"):
        try:
            mime, data = parse_data_url(source)
        except AudioParseError as e:
            raise MediaFetchError(f"Failed to decode {label}: {e.message}", status_code=400)
        return data, mime

    try:
        response = requests.get(source, timeout=timeout)
    except requests.RequestException as e:
        raise MediaFetchError(f"Failed to fetch {label}: {e}")
    if not response.ok:
        raise MediaFetchError(f"Failed to fetch {label}: {response.status_code}")
    return response.content, response.headers.get("content-type", "application/octet-stream")


# --- Ditto response shapes ---

@dataclass(frozen=True)
class DittoVideo:
    """The provider answered with the finished video."""
    content: bytes


@dataclass(frozen=True)
class DittoAccepted:
    """The provider queued the job; poll /download/<request_id>."""
    request_id: str


DittoResult = Union[DittoVideo, DittoAccepted]


def parse_generate_response(response: requests.Response) -> DittoResult:
    if not response.ok:
        raise provider_error_for_status(response.status_code, f"Ditto API error: {response.status_code}")

    content_type = response.headers.get("content-type", "").lower()
    logging.info(f"📨 Ditto response content-type: {content_type}")

    if "video" in content_type:
        return DittoVideo(response.content)

    if any(t in content_type for t in STREAM_CONTENT_TYPES):
        logging.info("🌊 Streaming response detected, collecting video chunks...")
        data = b"".join(chunk for chunk in response.iter_content(chunk_size=64 * 1024) if chunk)
        if not data:
            raise ProviderResponseError("Empty video stream")
        logging.info(f"🎥 Streaming complete! Total size: {len(data)} bytes")
        return DittoVideo(data)

    try:
        payload = response.json()
    except ValueError:
        raise ProviderResponseError("Unexpected API response")

    request_id = payload.get("request_id") if isinstance(payload, dict) else None
    if isinstance(request_id, str) and request_id:
        return DittoAccepted(request_id)

    logging.error(f"❓ Unexpected Ditto response: {payload}")
    raise ProviderResponseError("Unexpected API response")


class DittoClient:
    """Talks to the Ditto talking-avatar model server."""

    def __init__(self, base_url: str = DITTO_API_URL, session: Optional[requests.Session] = None,
                 timeout: float = DITTO_REQUEST_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    @staticmethod
    def _form(audio_bytes: bytes, image_bytes: bytes):
        # audio must come before image
        files = [
            ("audio_file", ("audio.wav", audio_bytes, "audio/wav")),
            ("image_file", ("portrait.jpg", image_bytes, "image/jpeg")),
        ]
        data = {"model_type": "trt", "streaming": "true", "fade_in": "-1", "fade_out": "-1"}
        return data, files

    def generate(self, audio_bytes: bytes, image_bytes: bytes, policy: RetryPolicy,
                 sleep=time.sleep) -> DittoResult:
        data, files = self._form(audio_bytes, image_bytes)
        logging.info("📤 Sending to Ditto API with streaming + TRT...")
        response = call_with_retry(
            lambda: self.session.post(
                f"{self.base_url}/generate", data=data, files=files, timeout=self.timeout, stream=True
            ),
            policy,
            label="Ditto generate",
            sleep=sleep,
        )
        return parse_generate_response(response)

    def download(self, request_id: str) -> Optional[DittoVideo]:
        """One poll of a queued job; None while the video is not ready yet."""
        response = self.session.get(f"{self.base_url}/download/{request_id}", timeout=self.timeout)
        content_type = response.headers.get("content-type", "").lower()
        if response.ok and "video" in content_type:
            return DittoVideo(response.content)
        return None


# --- Video job lifecycle ---

def create_video_job(db: Session, image_url: str, audio_url: str,
                     figure_id: Optional[str] = None, figure_name: Optional[str] = None) -> VideoJob:
    job = VideoJob(
        id=str(uuid.uuid4()),
        status="initiating",
        image_url=image_url[:JOB_IMAGE_URL_MAX],
        audio_url=audio_url[:JOB_AUDIO_URL_MAX],
        figure_id=figure_id,
        figure_name=figure_name,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logging.info(f"📝 Job created: {job.id}")
    return job


def update_job(db: Session, job: VideoJob, **fields) -> VideoJob:
    """Apply a state change unless the job already reached a terminal state."""
    if job.is_terminal:
        logging.warning(f"⚠️ Ignoring update to terminal job {job.id} ({job.status})")
        return job
    for name, value in fields.items():
        setattr(job, name, value)
    job.updated_at = utcnow()
    db.commit()
    return job


def process_video_generation(db: Session, job_id: str, image_url: str, audio_url: str,
                             ditto: Optional[DittoClient] = None,
                             store: Optional[ObjectStorage] = None,
                             sleep=time.sleep) -> Optional[VideoJob]:
    """
    Background half of a generation request: fetch inputs, submit to Ditto and
    record either the finished video or the provider request id to poll.
    """
    ditto = ditto or DittoClient()
    store = store or storage

    job = db.query(VideoJob).filter(VideoJob.id == job_id).first()
    if not job:
        logging.error(f"❌ Job {job_id} not found, nothing to process")
        return None

    try:
        logging.info(f"🔄 Background processing started for job: {job_id}")
        image_bytes, _ = load_media(image_url, label="image")
        audio_bytes, audio_mime = load_media(audio_url, label="audio")
        logging.info(f"✅ Inputs ready, image {len(image_bytes)} bytes, audio {len(audio_bytes)} bytes ({audio_mime})")

        estimated_duration = len(audio_bytes) / WAV_BYTES_PER_SECOND
        policy = RetryPolicy.scaled_to_duration(estimated_duration)
        logging.info(f"⏱️ Estimated audio duration: {estimated_duration:.1f}s, {policy.max_attempts} submit attempts")

        update_job(db, job, status="generating")
        result = ditto.generate(audio_bytes, image_bytes, policy, sleep=sleep)

        if isinstance(result, DittoVideo):
            logging.info("🎥 Video returned directly! Uploading to storage...")
            stored = store.upload(result.content, prefix=VIDEO_PREFIX)
            update_job(db, job, status="completed", video_url=stored.public_url)
            logging.info(f"✅ Video ready: {stored.public_url}")
        else:
            update_job(db, job, status="processing", provider_job_id=result.request_id)
            logging.info(f"⏳ Video processing started, request_id: {result.request_id}")

    except Exception as e:
        logging.error(f"❌ Background processing error for job {job_id}: {e}")
        traceback.print_exc()
        message = e.message if isinstance(e, TalkingFiguresError) else (str(e) or "Unknown error")
        db.rollback()
        update_job(db, job, status="failed", error=message)

    return job


def job_response(job: VideoJob) -> dict:
    if job.status == "completed":
        return {"status": "completed", "video": job.video_url, "jobId": job.id}
    if job.status == "failed":
        return {"status": "failed", "error": job.error, "jobId": job.id}
    return {"status": "processing", "jobId": job.id}


def check_video_job(db: Session, job_id: str,
                    ditto: Optional[DittoClient] = None,
                    store: Optional[ObjectStorage] = None) -> dict:
    """Status mode: report terminal jobs, otherwise poll the provider once."""
    job = db.query(VideoJob).filter(VideoJob.id == job_id).first()
    if not job:
        raise NotFoundError("Job not found")

    if job.is_terminal or not job.provider_job_id:
        return job_response(job)

    ditto = ditto or DittoClient()
    store = store or storage
    logging.info(f"🔄 Polling Ditto for request: {job.provider_job_id}")
    try:
        video = ditto.download(job.provider_job_id)
        if video is not None:
            logging.info("🎥 Video ready! Uploading to storage...")
            stored = store.upload(video.content, prefix=VIDEO_PREFIX)
            update_job(db, job, status="completed", video_url=stored.public_url)
            logging.info(f"✅ Video uploaded and job completed: {stored.public_url}")
    except (TalkingFiguresError, requests.RequestException) as e:
        # the provider keeps the result, the next poll retries the download
        logging.info(f"⏳ Still processing or poll error: {e}")

    return job_response(job)


class VideoStitcher:
    """Merges ordered chunk videos into one mp4 and stores it."""

    def __init__(self, store: Optional[ObjectStorage] = None):
        self.store = store or storage

    def _materialize(self, url: str, directory: str, index: int) -> str:
        key = self.store.key_from_url(url)
        data = self.store.read(key) if key else load_media(url, label="video")[0]
        path = os.path.join(directory, f"chunk_{index:04d}.mp4")
        with open(path, "wb") as f:
            f.write(data)
        return path

    def stitch(self, video_urls: List[str]) -> StoredObject:
        if not video_urls:
            raise InputValidationError("No video URLs provided.")

        logging.info(f"Stitching {len(video_urls)} clips...")
        with tempfile.TemporaryDirectory() as work_dir:
            paths = [self._materialize(url, work_dir, i) for i, url in enumerate(video_urls)]
            if len(paths) == 1:
                output_path = paths[0]
            else:
                output_path = os.path.join(work_dir, "merged.mp4")
                streams = []
                for path in paths:
                    clip = ffmpeg.input(path)
                    streams.extend([clip.video, clip.audio])
                try:
                    joined = ffmpeg.concat(*streams, v=1, a=1).node
                    ffmpeg.output(joined[0], joined[1], output_path).run(
                        overwrite_output=True, capture_stdout=True, capture_stderr=True
                    )
                except ffmpeg.Error as e:
                    error_details = e.stderr.decode("utf8") if e.stderr else "Unknown FFmpeg error"
                    logging.error(f"FFmpeg stitching failed: {error_details}")
                    raise TalkingFiguresError(f"Failed to stitch video: {error_details[-300:]}")

            with open(output_path, "rb") as f:
                merged = f.read()

        stored = self.store.upload(merged, prefix=MERGED_PREFIX)
        logging.info(f"Successfully stitched story to {stored.key}")
        return stored
