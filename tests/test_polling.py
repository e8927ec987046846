# tests/test_polling.py

import os
import sys

import pytest
import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from polling import RetryPolicy, VideoFailed, VideoReady, VideoTimedOut, call_with_retry, poll_until


class Recorder:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


def test_poll_returns_first_terminal_result():
    answers = iter([None, None, VideoReady(video_url="https://v/1.mp4", job_id="j1")])
    sleep = Recorder()

    result = poll_until(lambda: next(answers), RetryPolicy(max_attempts=5, interval=3), sleep=sleep)

    assert result == VideoReady(video_url="https://v/1.mp4", job_id="j1")
    assert sleep.delays == [3, 3]


def test_poll_times_out_within_budget():
    policy = RetryPolicy(max_attempts=4, interval=3)
    sleep = Recorder()
    calls = []

    result = poll_until(lambda: calls.append(1), policy, sleep=sleep, job_id="j2")

    assert isinstance(result, VideoTimedOut)
    assert result.job_id == "j2"
    assert result.error == "Video generation timed out"
    assert len(calls) == 4
    assert sum(sleep.delays) <= policy.max_attempts * policy.interval
    assert sum(sleep.delays) == policy.worst_case_seconds


def test_failed_result_is_terminal():
    result = poll_until(lambda: VideoFailed(error="boom"), RetryPolicy(max_attempts=3), sleep=Recorder())

    assert result == VideoFailed(error="boom")


def test_transient_errors_count_as_pending():
    answers = iter([ConnectionError("reset"), VideoReady(video_url="u")])

    def check():
        answer = next(answers)
        if isinstance(answer, Exception):
            raise answer
        return answer

    result = poll_until(check, RetryPolicy(max_attempts=3, interval=0), sleep=Recorder(),
                        transient_errors=(ConnectionError,))

    assert result == VideoReady(video_url="u")


def test_other_errors_propagate():
    def check():
        raise KeyError("bad")

    with pytest.raises(KeyError):
        poll_until(check, RetryPolicy(max_attempts=3, interval=0), sleep=Recorder())


def test_duration_scaled_policy_backs_off():
    policy = RetryPolicy.scaled_to_duration(100)

    assert policy.max_attempts == 10
    assert policy.delay_for(1) == 20
    assert policy.delay_for(2) == 40
    assert policy.delay_for(5) == 100  # capped at max_interval


def test_call_with_retry_retries_gateway_errors(fake_response):
    responses = iter([fake_response(503), fake_response(524), fake_response(200)])
    sleep = Recorder()

    response = call_with_retry(lambda: next(responses), RetryPolicy(max_attempts=5, interval=1), sleep=sleep)

    assert response.status_code == 200
    assert sleep.delays == [1, 1]


def test_call_with_retry_does_not_retry_client_errors(fake_response):
    calls = []

    def make_request():
        calls.append(1)
        return fake_response(402)

    response = call_with_retry(make_request, RetryPolicy(max_attempts=5, interval=1), sleep=Recorder())

    assert response.status_code == 402
    assert len(calls) == 1


def test_call_with_retry_raises_after_last_connection_error():
    def make_request():
        raise requests.ConnectionError("refused")

    with pytest.raises(requests.ConnectionError):
        call_with_retry(make_request, RetryPolicy(max_attempts=2, interval=0), sleep=Recorder())


def test_call_with_retry_uses_custom_retry_predicate(fake_response):
    responses = iter([fake_response(409), fake_response(200)])

    response = call_with_retry(lambda: next(responses), RetryPolicy(max_attempts=3, interval=0),
                               is_retryable=lambda status: status == 409, sleep=Recorder())

    assert response.status_code == 200
