# tests/test_client.py

import os
import sys

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from client import TalkingVideoClient, VideoPreloader
from errors import QuotaExceededError, RateLimitedError, TalkingVideoError
from pipeline import JobRegistry
from polling import RetryPolicy, VideoFailed, VideoReady, VideoTimedOut


class FakeSession:
    """Replays canned responses for POSTs to the video endpoint."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.bodies = []

    def post(self, url, json=None, timeout=None):
        self.bodies.append(json)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_client(fake_response, *bodies):
    responses = [b if isinstance(b, Exception) else fake_response(b[0], json_data=b[1]) for b in bodies]
    session = FakeSession(responses)
    return TalkingVideoClient(base_url="http://api", session=session), session


def test_generate_video_polls_until_completed(fake_response):
    client, session = make_client(
        fake_response,
        (200, {"status": "processing", "jobId": "j1"}),
        (200, {"status": "processing", "jobId": "j1"}),
        (200, {"status": "completed", "video": "https://v/1.mp4", "jobId": "j1"}),
    )
    delays = []

    result = client.generate_video("img", "aud", "lincoln", "Lincoln",
                                   policy=RetryPolicy(max_attempts=5, interval=3), sleep=delays.append)

    assert result == VideoReady(video_url="https://v/1.mp4", job_id="j1")
    assert delays == [3, 3]
    assert session.bodies[0]["action"] == "start"
    assert session.bodies[1] == {"action": "status", "jobId": "j1"}


def test_immediate_video_needs_no_polling(fake_response):
    client, session = make_client(fake_response, (200, {"status": "completed", "video": "https://v/2.mp4"}))

    result = client.generate_video("img", "aud", sleep=lambda _: None)

    assert result == VideoReady(video_url="https://v/2.mp4")
    assert len(session.bodies) == 1


def test_failed_job_is_reported(fake_response):
    client, _ = make_client(
        fake_response,
        (200, {"status": "processing", "jobId": "j1"}),
        (200, {"status": "failed", "error": "Ditto API error: 500", "jobId": "j1"}),
    )

    result = client.generate_video("img", "aud", sleep=lambda _: None)

    assert result == VideoFailed(error="Ditto API error: 500", job_id="j1")


def test_poll_gives_up_after_attempt_ceiling(fake_response):
    client, _ = make_client(fake_response, *[(200, {"status": "processing", "jobId": "j1"})] * 4)

    result = client.generate_video("img", "aud", policy=RetryPolicy(max_attempts=3, interval=0),
                                   sleep=lambda _: None)

    assert isinstance(result, VideoTimedOut)


def test_missing_job_id_fails(fake_response):
    client, _ = make_client(fake_response, (200, {"status": "processing"}))

    result = client.generate_video("img", "aud", sleep=lambda _: None)

    assert result == VideoFailed(error="No job ID returned")


def test_unreachable_api(fake_response):
    client, _ = make_client(fake_response, requests.ConnectionError("refused"))

    with pytest.raises(TalkingVideoError, match="unreachable"):
        client.start("img", "aud")


@pytest.mark.parametrize("status, error", [(402, QuotaExceededError), (429, RateLimitedError)])
def test_quota_and_rate_limit(fake_response, status, error):
    client, _ = make_client(fake_response, (status, {"success": False, "error": "slow down"}))

    with pytest.raises(error, match="slow down"):
        client.start("img", "aud")


def test_server_error_message_is_kept(fake_response):
    client, _ = make_client(fake_response, (500, {"success": False, "error": "Failed to start the video generation job."}))

    with pytest.raises(TalkingVideoError) as excinfo:
        client.start("img", "aud")
    assert excinfo.value.status_code == 500
    assert excinfo.value.message == "Failed to start the video generation job."


def test_preloader_deduplicates_in_flight_requests(fake_response):
    client, session = make_client(
        fake_response,
        (200, {"status": "processing", "jobId": "j1"}),
        (200, {"status": "processing", "jobId": "j1"}),
        (200, {"status": "completed", "video": "https://v/idle.mp4", "jobId": "j1"}),
    )
    registry = JobRegistry()
    preloader = VideoPreloader(client, registry=registry)

    preloader.preload("lincoln", "img", "aud")
    preloader.preload("lincoln", "img", "aud")

    assert len(session.bodies) == 1
    assert preloader.is_generating("lincoln")
    assert preloader.result("lincoln") is None
    assert preloader.result("lincoln") == VideoReady(video_url="https://v/idle.mp4", job_id="j1")
    assert not preloader.is_generating("lincoln")
    assert preloader.cached_url("lincoln") == "https://v/idle.mp4"
    assert len(registry) == 0

    # cached results are not regenerated
    preloader.preload("lincoln", "img", "aud")
    assert len(session.bodies) == 3


def test_preloader_times_out(fake_response):
    client, _ = make_client(fake_response, *[(200, {"status": "processing", "jobId": "j1"})] * 3)
    preloader = VideoPreloader(client, poll_policy=RetryPolicy(max_attempts=2, interval=0))

    preloader.preload("curie", "img", "aud")
    assert preloader.result("curie") is None

    assert isinstance(preloader.result("curie"), VideoTimedOut)
    assert preloader.cached_url("curie") is None


def test_preloader_clear_cache(fake_response):
    client, session = make_client(
        fake_response,
        (200, {"status": "completed", "video": "https://v/a.mp4"}),
        (200, {"status": "processing", "jobId": "j2"}),
    )
    preloader = VideoPreloader(client)

    preloader.preload("lincoln", "img", "aud")
    assert preloader.cached_url("lincoln") == "https://v/a.mp4"

    preloader.clear_cache("lincoln")
    assert preloader.cached_url("lincoln") is None

    preloader.preload("lincoln", "img", "aud")
    assert preloader.is_generating("lincoln")

    preloader.clear_all()
    assert not preloader.is_generating("lincoln")


def test_rate_limit_on_start_is_a_failed_result(fake_response):
    client, _ = make_client(fake_response, (429, {"success": False, "error": "slow down"}))

    result = client.generate_video("img", "aud", sleep=lambda _: None)

    assert result == VideoFailed(error="slow down")


def test_network_error_while_polling_is_a_failed_result(fake_response):
    client, _ = make_client(
        fake_response,
        (200, {"status": "processing", "jobId": "j1"}),
        requests.ConnectionError("blip"),
    )

    result = client.generate_video("img", "aud", sleep=lambda _: None)

    assert isinstance(result, VideoFailed)
    assert result.job_id == "j1"
    assert result.error.startswith("Video API unreachable")


def test_preload_quota_error_is_cached_as_failure(fake_response):
    client, _ = make_client(fake_response, (402, {"success": False, "error": "out of credits"}))
    preloader = VideoPreloader(client)

    preloader.preload("lincoln", "img", "aud")

    assert preloader.result("lincoln") == VideoFailed(error="out of credits")
