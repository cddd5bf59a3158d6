from __future__ import annotations

import json
import threading
import time
from dataclasses import replace

import pytest

from conftest import FakeSession, scripted
from orchestrator.queue_backend import InMemoryQueueBackend
from orchestrator.settings import load_stage_config
from orchestrator.stage_runtime import StageOrchestrator, StageRunStats


def _orchestrator(config, queue, state_store, clock, session) -> StageOrchestrator:
    return StageOrchestrator(
        config=config,
        queue_backend=queue,
        state_store=state_store,
        session=session,
        sleep=clock.sleep,
    )


def test_successful_job_is_acked_once(explanation_config, queue, state_store, clock):
    session = FakeSession(scripted(200))
    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, session)
    msg_id = queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})

    stats = orchestrator.run_once()

    assert stats["processed"] == 1
    assert stats["succeeded"] == 1
    assert stats["dead_lettered"] == 0
    assert queue.deleted == [("explanation", [msg_id])]
    assert queue.pending_count("explanation-dlq") == 0
    assert session.calls[0]["url"] == "http://processor.test/explain"
    assert session.calls[0]["timeout"] == 15.0


def test_out_of_order_steps_are_dispatched_in_order(explanation_config, queue, state_store, clock):
    dispatched: list[int] = []

    def _processing_service(call):
        job = call["json"]
        n = job["slide_number"]
        if n > 1:
            assert state_store.result_exists(
                result_table="explanations", lecture_id=job["lecture_id"], slide_number=n - 1
            )
        dispatched.append(n)
        state_store.record_result(result_table="explanations", lecture_id=job["lecture_id"], slide_number=n)
        return 200

    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, FakeSession(_processing_service))
    for n in (3, 1, 2):
        queue.send("explanation", {"lecture_id": "L1", "slide_number": n})

    totals = orchestrator.run_forever(stop_after_iterations=20)

    assert dispatched == [1, 2, 3]
    assert totals["succeeded"] == 3
    assert totals["deferred"] >= 1
    assert totals["dead_lettered"] == 0
    assert queue.pending_count("explanation") == 0
    assert orchestrator.totals() == totals


def test_exhausted_retries_dead_letter_original_payload(explanation_config, queue, state_store, clock):
    state_store.create_lecture(lecture_id="L1", status="processing")
    session = FakeSession(scripted(500))
    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, session)
    original = {"lecture_id": "L1", "slide_number": 1, "slide_id": "s-1", "prompt_version": "v3"}
    msg_id = queue.send("explanation", original)

    stats = orchestrator.run_once()

    assert stats["dead_lettered"] == 1
    assert stats["succeeded"] == 0
    assert len(session.calls) == 5
    assert clock.sleeps == [1.0, 2.0, 4.0, 8.0]
    dead = queue.peek("explanation-dlq")
    assert len(dead) == 1
    assert json.loads(dead[0].body) == original
    assert queue.deleted == [("explanation", [msg_id])]
    assert queue.pending_count("explanation") == 0
    row = state_store.get_lecture(lecture_id="L1")
    assert row["status"] == "failed"
    assert row["error_details"]["stage"] == "explanation"
    assert row["error_details"]["message"] == "status 500: boom"


@pytest.mark.parametrize(
    "body",
    ["this is not json", '{"lecture_id": "L1"}', "[1, 2, 3]", '{"lecture_id": "", "slide_number": 1}'],
)
def test_poison_message_is_discarded_without_dispatch(explanation_config, queue, state_store, clock, body):
    session = FakeSession(scripted(200))
    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, session)
    msg_id = queue.send("explanation", body)

    stats = orchestrator.run_once()

    assert stats["discarded"] == 1
    assert session.calls == []
    assert queue.deleted == [("explanation", [msg_id])]
    assert queue.pending_count("explanation") == 0
    assert queue.pending_count("explanation-dlq") == 0


def test_deferred_job_is_left_on_queue(explanation_config, queue, state_store, clock):
    session = FakeSession(scripted(200))
    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, session)
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 2})

    stats = orchestrator.run_once()

    assert stats["deferred"] == 1
    assert session.calls == []
    assert queue.deleted == []
    assert queue.pending_count("explanation") == 1
    assert clock.sleeps == [1.0]


def test_unordered_stage_dispatches_without_predecessor(queue, state_store, clock):
    config = load_stage_config("summary", {"PYTHON_SERVICE_BASE_URL": "http://processor.test"})
    session = FakeSession(scripted(200))
    orchestrator = _orchestrator(config, queue, state_store, clock, session)
    queue.send("summary", {"lecture_id": "L1", "slide_number": 9})

    stats = orchestrator.run_once()

    assert stats["succeeded"] == 1
    assert session.calls[0]["url"] == "http://processor.test/summarize"


def test_poll_error_sleeps_and_keeps_running(explanation_config, state_store, clock):
    class FailingQueue:
        def poll(self, *_args, **_kwargs):
            raise ConnectionError("queue unavailable")

    orchestrator = _orchestrator(explanation_config, FailingQueue(), state_store, clock, FakeSession(scripted(200)))

    totals = orchestrator.run_forever(stop_after_iterations=3)

    assert totals["poll_errors"] == 3
    assert clock.sleeps == [1.0, 1.0, 1.0]


def test_ack_failure_after_success_is_counted(explanation_config, queue, state_store, clock, monkeypatch):
    def _broken_delete(queue_name, message_ids):
        raise ConnectionError("queue unavailable")

    session = FakeSession(scripted(200))
    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, session)
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})
    monkeypatch.setattr(queue, "delete", _broken_delete)

    stats = orchestrator.run_once()

    assert stats["succeeded"] == 1
    assert stats["ack_errors"] == 1
    assert queue.pending_count("explanation-dlq") == 0


def test_unexpected_error_keeps_loop_alive(explanation_config, queue, state_store, clock):
    class ReadyStore:
        def result_exists(self, **_kwargs):
            return True

    class ExplodingDispatcher:
        def dispatch(self, _payload):
            raise RuntimeError("bug")

    orchestrator = StageOrchestrator(
        config=explanation_config,
        queue_backend=queue,
        state_store=ReadyStore(),
        dispatcher=ExplodingDispatcher(),
        sleep=clock.sleep,
    )
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})

    stats = orchestrator.run_once()

    assert stats["polled"] == 1
    assert queue.pending_count("explanation") == 1


def test_stop_before_start_runs_nothing(explanation_config, queue, state_store, clock):
    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, FakeSession(scripted(200)))
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})
    orchestrator.stop()

    totals = orchestrator.run_forever()

    assert totals == StageRunStats().as_dict()
    assert orchestrator.stopped is True
    assert queue.pending_count("explanation") == 1


def test_stop_finishes_in_flight_job_then_exits(explanation_config, queue, state_store, clock):
    holder: dict[str, StageOrchestrator] = {}

    def _processing_service(_call):
        holder["orchestrator"].stop()
        return 200

    orchestrator = _orchestrator(explanation_config, queue, state_store, clock, FakeSession(_processing_service))
    holder["orchestrator"] = orchestrator
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 2})

    totals = orchestrator.run_forever()

    assert totals["succeeded"] == 1
    assert queue.pending_count("explanation") == 1


def _slow_processing_service(hold_s: float):
    guard = threading.Lock()
    counters = {"in_flight": 0, "peak": 0}

    def _handler(_call):
        with guard:
            counters["in_flight"] += 1
            counters["peak"] = max(counters["peak"], counters["in_flight"])
        time.sleep(hold_s)
        with guard:
            counters["in_flight"] -= 1
        return 200

    return _handler, counters


def test_concurrent_run_once_calls_keep_one_message_in_flight(explanation_config, state_store):
    handler, counters = _slow_processing_service(0.2)
    queue = InMemoryQueueBackend(poll_interval_s=0.01)
    orchestrator = StageOrchestrator(
        config=replace(explanation_config, poll_timeout_s=0),
        queue_backend=queue,
        state_store=state_store,
        session=FakeSession(handler),
    )
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})
    queue.send("explanation", {"lecture_id": "L2", "slide_number": 1})

    workers = [threading.Thread(target=orchestrator.run_once) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=5.0)

    assert counters["peak"] == 1
    assert orchestrator.totals()["succeeded"] == 2
    assert queue.pending_count("explanation") == 0


def test_try_run_once_declines_while_stage_is_busy(explanation_config, state_store):
    entered = threading.Event()
    release = threading.Event()

    def _blocking_service(_call):
        entered.set()
        release.wait(timeout=5.0)
        return 200

    queue = InMemoryQueueBackend(poll_interval_s=0.01)
    orchestrator = StageOrchestrator(
        config=replace(explanation_config, poll_timeout_s=0),
        queue_backend=queue,
        state_store=state_store,
        session=FakeSession(_blocking_service),
    )
    queue.send("explanation", {"lecture_id": "L1", "slide_number": 1})
    worker = threading.Thread(target=orchestrator.run_once)
    worker.start()
    try:
        assert entered.wait(timeout=5.0)
        assert orchestrator.try_run_once() is None
    finally:
        release.set()
        worker.join(timeout=5.0)

    assert orchestrator.try_run_once() == StageRunStats().as_dict()
    assert orchestrator.totals()["succeeded"] == 1
