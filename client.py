"""
Python client for the talking-video endpoints.
Mirrors what the web frontend does: start a job, poll it, preload idle videos.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import requests

from config import API_BASE_URL, API_TIMEOUT
from errors import TalkingFiguresError, TalkingVideoError, provider_error_for_status
from pipeline import JobHandle, JobRegistry
from polling import RetryPolicy, VideoFailed, VideoOutcome, VideoReady, VideoTimedOut, poll_until

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Submission:
    status: str
    job_id: Optional[str] = None
    video_url: Optional[str] = None

    @property
    def is_immediate(self) -> bool:
        return self.status == "completed" and bool(self.video_url)


@dataclass(frozen=True)
class JobStatus:
    status: str
    video_url: Optional[str] = None
    error: Optional[str] = None

    def as_result(self, job_id: str):
        """Terminal result for this status, None while still processing."""
        if self.status == "completed" and self.video_url:
            return VideoReady(video_url=self.video_url, job_id=job_id)
        if self.status == "failed":
            return VideoFailed(error=self.error or "Video generation failed", job_id=job_id)
        return None


class TalkingVideoClient:
    """Calls the ditto-generate-video endpoint of the backend."""

    endpoint = "/ditto-generate-video"

    def __init__(self, base_url: str = API_BASE_URL, session: Optional[requests.Session] = None,
                 timeout: float = API_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _invoke(self, body: dict) -> dict:
        try:
            response = self.session.post(f"{self.base_url}{self.endpoint}", json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise TalkingVideoError(f"Video API unreachable: {e}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok:
            message = data.get("error") if isinstance(data, dict) else None
            message = message or f"Video API error: {response.status_code}"
            if response.status_code in (402, 429):
                raise provider_error_for_status(response.status_code, message)
            raise TalkingVideoError(message, status_code=response.status_code)
        if not isinstance(data, dict):
            raise TalkingVideoError("Video API returned an unexpected body")
        return data

    def start(self, image_url: str, audio_url: str, figure_id: Optional[str] = None,
              figure_name: Optional[str] = None) -> Submission:
        data = self._invoke({
            "action": "start",
            "imageUrl": image_url,
            "audioUrl": audio_url,
            "figureId": figure_id,
            "figureName": figure_name,
        })
        submission = Submission(status=data.get("status", ""), job_id=data.get("jobId"), video_url=data.get("video"))
        if not submission.is_immediate and not submission.job_id:
            raise TalkingVideoError(data.get("error") or "No job ID returned")
        return submission

    def status(self, job_id: str) -> JobStatus:
        data = self._invoke({"action": "status", "jobId": job_id})
        return JobStatus(status=data.get("status", ""), video_url=data.get("video"), error=data.get("error"))

    def generate_video(self, image_url: str, audio_url: str, figure_id: Optional[str] = None,
                       figure_name: Optional[str] = None, policy: RetryPolicy = RetryPolicy(),
                       sleep: Callable[[float], None] = time.sleep) -> VideoOutcome:
        """Start one video and poll it to a terminal result."""
        logger.info("🎬 Starting video generation...")
        try:
            submission = self.start(image_url, audio_url, figure_id, figure_name)
        except TalkingFiguresError as e:
            logger.error(f"❌ Video generation error: {e}")
            return VideoFailed(error=e.message)

        if submission.is_immediate:
            logger.info(f"✅ Video ready immediately: {submission.video_url}")
            return VideoReady(video_url=submission.video_url, job_id=submission.job_id)

        job_id = submission.job_id
        logger.info(f"⏳ Video processing, starting poll for job: {job_id}")
        sleep(policy.interval)
        try:
            return poll_until(lambda: self.status(job_id).as_result(job_id), policy, sleep=sleep, job_id=job_id)
        except TalkingFiguresError as e:
            logger.error(f"❌ Status check failed for job {job_id}: {e}")
            return VideoFailed(error=e.message, job_id=job_id)


class VideoPreloader:
    """
    Preloads one idle/greeting video per figure. A figure with a video in flight
    is never submitted twice; finished results are kept until cleared.
    """

    def __init__(self, client: TalkingVideoClient, registry: Optional[JobRegistry] = None,
                 poll_policy: RetryPolicy = RetryPolicy()):
        self.client = client
        self.registry = registry if registry is not None else JobRegistry()
        self.poll_policy = poll_policy
        self._results: Dict[str, VideoOutcome] = {}
        self._attempts: Dict[str, int] = {}

    @staticmethod
    def key_for(figure_id: str) -> str:
        return f"preload:{figure_id}"

    def preload(self, figure_id: str, image_url: str, audio_url: str,
                figure_name: Optional[str] = None) -> str:
        key = self.key_for(figure_id)
        if key in self._results or self.registry.get(key) is not None:
            return key

        try:
            submission = self.client.start(image_url, audio_url, figure_id, figure_name)
        except TalkingFiguresError as e:
            logger.error(f"❌ Preload failed for {figure_id}: {e}")
            self._results[key] = VideoFailed(error=e.message)
            return key

        if submission.is_immediate:
            self._results[key] = VideoReady(video_url=submission.video_url, job_id=submission.job_id)
        else:
            self.registry.register(JobHandle(key=key, job_id=submission.job_id, figure_id=figure_id))
            self._attempts[key] = 0
        return key

    def is_generating(self, figure_id: str) -> bool:
        return self.registry.get(self.key_for(figure_id)) is not None

    def result(self, figure_id: str) -> Optional[VideoOutcome]:
        """Cached result, or one status poll for an in-flight video (None while pending)."""
        key = self.key_for(figure_id)
        if key in self._results:
            return self._results[key]
        handle = self.registry.get(key)
        if handle is None:
            return None

        self._attempts[key] += 1
        try:
            outcome = self.client.status(handle.job_id).as_result(handle.job_id)
        except TalkingFiguresError as e:
            logger.warning(f"🔄 Preload poll failed for {figure_id}: {e}")
            outcome = None

        if outcome is None and self._attempts[key] >= self.poll_policy.max_attempts:
            outcome = VideoTimedOut(job_id=handle.job_id, attempts=self._attempts[key])
        if outcome is not None:
            self._results[key] = outcome
            self.registry.deregister(key)
            self._attempts.pop(key, None)
        return outcome

    def cached_url(self, figure_id: str) -> Optional[str]:
        outcome = self._results.get(self.key_for(figure_id))
        return outcome.video_url if isinstance(outcome, VideoReady) else None

    def clear_cache(self, figure_id: str):
        key = self.key_for(figure_id)
        self._results.pop(key, None)
        self._attempts.pop(key, None)
        self.registry.clear_figure(figure_id)

    def clear_all(self):
        self._results.clear()
        self._attempts.clear()
        self.registry.clear()
