import json
import pathlib
import sys
from collections.abc import Callable
from typing import Any

import pytest
import requests

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from orchestrator.queue_backend import InMemoryQueueBackend
from orchestrator.repositories.lecture_state import InMemoryLectureStateRepository
from orchestrator.settings import load_stage_config


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)


class FakeResponse:
    def __init__(self, status_code: int, text: str = "") -> None:
        self.status_code = status_code
        self.text = text
        self.closed = False

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; ``handler`` returns a status, a response or raises."""

    def __init__(self, handler: Callable[[dict[str, Any]], Any]) -> None:
        self._handler = handler
        self.calls: list[dict[str, Any]] = []

    def post(self, url: str, data=None, headers=None, timeout=None):
        call = {
            "url": url,
            "json": json.loads(data),
            "headers": dict(headers or {}),
            "timeout": timeout,
        }
        self.calls.append(call)
        outcome = self._handler(call)
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, int):
            return FakeResponse(outcome, text="ok" if outcome < 300 else "boom")
        return outcome


def scripted(*outcomes: Any) -> Callable[[dict[str, Any]], Any]:
    remaining = list(outcomes)

    def _handler(_call: dict[str, Any]) -> Any:
        if len(remaining) > 1:
            return remaining.pop(0)
        return remaining[0]

    return _handler


class RecordingQueue(InMemoryQueueBackend):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.deleted: list[tuple[str, list[int]]] = []
        self.sent: list[tuple[str, Any]] = []

    def delete(self, queue_name, message_ids):
        ids = [int(x) for x in message_ids]
        self.deleted.append((queue_name, ids))
        return super().delete(queue_name, ids)

    def send(self, queue_name, payload):
        self.sent.append((queue_name, payload))
        return super().send(queue_name, payload)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def queue(clock: FakeClock) -> RecordingQueue:
    return RecordingQueue(clock=clock, sleep=clock.sleep)


@pytest.fixture
def state_store() -> InMemoryLectureStateRepository:
    return InMemoryLectureStateRepository()


@pytest.fixture
def explanation_config():
    return load_stage_config(
        "explanation",
        {
            "PYTHON_SERVICE_BASE_URL": "http://processor.test/",
            "EXPLANATION_POLL_TIMEOUT_SEC": "5",
            "EXPLANATION_VISIBILITY_TIMEOUT_SEC": "30",
            "EXPLANATION_MAX_RETRIES": "5",
            "EXPLANATION_BACKOFF_INITIAL_SEC": "1",
            "EXPLANATION_BACKOFF_MAX_SEC": "10",
            "EXPLANATION_REQUEST_TIMEOUT_SEC": "15",
        },
    )


@pytest.fixture
def connection_error() -> requests.exceptions.ConnectionError:
    return requests.exceptions.ConnectionError("connection refused")
