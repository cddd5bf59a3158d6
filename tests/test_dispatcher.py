from __future__ import annotations

import requests

from conftest import FakeResponse, FakeSession, scripted
from orchestrator.dispatcher import RetryingDispatcher, backoff_schedule


def test_backoff_schedule_doubles_and_clamps():
    assert backoff_schedule(5, 1, 10) == [1, 2, 4, 8, 10]
    assert backoff_schedule(3, 2, 3) == [2, 3, 3]
    assert backoff_schedule(0, 1, 10) == []


def _dispatcher(session, sleeps: list[float], **kwargs) -> RetryingDispatcher:
    return RetryingDispatcher(
        endpoint_url="http://processor.test/explain",
        session=session,
        sleep=sleeps.append,
        stage="explanation",
        **kwargs,
    )


def test_success_on_first_attempt_posts_payload_as_json():
    session = FakeSession(scripted(200))
    sleeps: list[float] = []

    result = _dispatcher(session, sleeps, request_timeout_s=15).dispatch({"lecture_id": "L1", "slide_number": 1})

    assert result.success is True
    assert result.attempts == 1
    assert sleeps == []
    assert session.calls == [
        {
            "url": "http://processor.test/explain",
            "json": {"lecture_id": "L1", "slide_number": 1},
            "headers": {"Content-Type": "application/json"},
            "timeout": 15.0,
        }
    ]


def test_exhausts_retries_sleeping_only_between_attempts():
    session = FakeSession(scripted(500))
    sleeps: list[float] = []

    result = _dispatcher(session, sleeps).dispatch({"lecture_id": "L1", "slide_number": 2})

    assert result.success is False
    assert result.attempts == 5
    assert result.status_code == 500
    assert result.last_error == "status 500: boom"
    assert len(session.calls) == 5
    assert sleeps == [1.0, 2.0, 4.0, 8.0]


def test_recovers_after_transient_failures():
    session = FakeSession(scripted(503, requests.exceptions.ConnectionError("refused"), 201))
    sleeps: list[float] = []

    result = _dispatcher(session, sleeps).dispatch({"lecture_id": "L1", "slide_number": 3})

    assert result.success is True
    assert result.attempts == 3
    assert result.status_code == 201
    assert sleeps == [1.0, 2.0]


def test_timeout_counts_as_failed_attempt():
    session = FakeSession(scripted(requests.exceptions.ReadTimeout("slow")))
    sleeps: list[float] = []

    result = _dispatcher(session, sleeps, max_retries=2, request_timeout_s=0.5).dispatch(
        {"lecture_id": "L1", "slide_number": 1}
    )

    assert result.success is False
    assert result.attempts == 2
    assert result.status_code is None
    assert "timed out" in result.last_error
    assert sleeps == [1.0]


def test_error_body_is_truncated_and_response_closed():
    responses: list[FakeResponse] = []

    def _handler(_call):
        response = FakeResponse(422, text="x" * 2000)
        responses.append(response)
        return response

    result = _dispatcher(FakeSession(_handler), [], max_retries=1).dispatch({"lecture_id": "L1", "slide_number": 1})

    assert result.success is False
    assert result.last_error == "status 422: " + "x" * 500
    assert all(r.closed for r in responses)
