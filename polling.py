"""
Retry policies and the generic poll loop used by every job flow.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, Union

import requests

from config import MAX_POLL_ATTEMPTS, POLL_INTERVAL_SEC, RETRYABLE_STATUSES


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling plus the delay between attempts (flat unless backoff_factor > 1)."""

    max_attempts: int = MAX_POLL_ATTEMPTS
    interval: float = POLL_INTERVAL_SEC
    backoff_factor: float = 1.0
    max_interval: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.interval < 0:
            raise ValueError("interval must not be negative")

    def delay_for(self, attempt: int) -> float:
        """delay after the given 1-based attempt"""
        delay = self.interval * (self.backoff_factor ** (attempt - 1))
        if self.max_interval is not None:
            delay = min(delay, self.max_interval)
        return delay

    @property
    def worst_case_seconds(self) -> float:
        return sum(self.delay_for(a) for a in range(1, self.max_attempts))

    @classmethod
    def scaled_to_duration(cls, duration_sec: float) -> "RetryPolicy":
        """Submission policy for the avatar provider; longer audio means a slower cold start."""
        return cls(
            max_attempts=max(5, math.ceil(duration_sec / 10)),
            interval=max(5.0, duration_sec * 0.2),
            backoff_factor=2.0,
            max_interval=max(30.0, duration_sec * 1.0),
        )


# --- Result union ---

@dataclass(frozen=True)
class VideoReady:
    video_url: str
    job_id: Optional[str] = None


@dataclass(frozen=True)
class VideoFailed:
    error: str
    job_id: Optional[str] = None


@dataclass(frozen=True)
class VideoTimedOut:
    job_id: Optional[str] = None
    attempts: int = 0

    @property
    def error(self) -> str:
        return "Video generation timed out"


VideoOutcome = Union[VideoReady, VideoFailed, VideoTimedOut]
TerminalResult = Union[VideoReady, VideoFailed]


def poll_until(
    check: Callable[[], Optional[TerminalResult]],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
    transient_errors: Tuple[Type[BaseException], ...] = (),
    job_id: Optional[str] = None,
) -> VideoOutcome:
    """
    Call `check` until it returns a terminal result or the attempt budget runs out.
    `check` returns None while the job is still pending. Errors listed in
    `transient_errors` count as a pending attempt; anything else propagates.
    """
    for attempt in range(1, policy.max_attempts + 1):
        try:
            result = check()
        except transient_errors as e:
            logging.warning(f"🔄 Poll attempt {attempt}/{policy.max_attempts} failed: {e}")
            result = None

        if result is not None:
            return result

        if attempt < policy.max_attempts:
            sleep(policy.delay_for(attempt))

    logging.warning(f"⏰ Max poll attempts reached ({policy.max_attempts})")
    return VideoTimedOut(job_id=job_id, attempts=policy.max_attempts)


def is_retryable_status(status: int) -> bool:
    # Cloudflare / transient gateway errors, including cold starts
    return status in RETRYABLE_STATUSES


def call_with_retry(
    make_request: Callable[[], requests.Response],
    policy: RetryPolicy,
    is_retryable: Callable[[int], bool] = is_retryable_status,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "request",
) -> requests.Response:
    """
    Retry a provider request on retryable statuses and connection errors.
    The last response is returned as-is once the budget is spent, so the
    caller decides how to report a non-2xx answer.
    """
    for attempt in range(1, policy.max_attempts + 1):
        last_attempt = attempt == policy.max_attempts
        try:
            response = make_request()
        except requests.RequestException as e:
            if last_attempt:
                raise
            logging.error(f"❌ {label} raised (attempt {attempt}/{policy.max_attempts}): {e}")
        else:
            if response.ok or not is_retryable(response.status_code) or last_attempt:
                return response
            logging.error(
                f"❌ {label} retryable status {response.status_code} "
                f"(attempt {attempt}/{policy.max_attempts}): {response.text[:400]}"
            )

        delay = policy.delay_for(attempt)
        logging.info(f"⏳ Retrying {label} in {delay:.1f}s...")
        sleep(delay)

    raise RuntimeError(f"{label} failed")  # unreachable, the loop always returns or raises
