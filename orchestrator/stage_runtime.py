from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, fields
from typing import Any

import requests

from orchestrator.dispatcher import RetryingDispatcher
from orchestrator.errors import PayloadDecodeError
from orchestrator.failure_router import FailureRouter
from orchestrator.ordering import OrderingGate
from orchestrator.queue_backend import QueueMessage
from orchestrator.schemas import decode_job_payload
from orchestrator.settings import StageConfig

logger = logging.getLogger(__name__)


@dataclass
class StageRunStats:
    polled: int = 0
    processed: int = 0
    succeeded: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    discarded: int = 0
    poll_errors: int = 0
    ack_errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return {f.name: int(getattr(self, f.name)) for f in fields(self)}

    def merge(self, other: StageRunStats | dict[str, int]) -> None:
        values = other.as_dict() if isinstance(other, StageRunStats) else other
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + int(values.get(f.name, 0)))


class StageOrchestrator:
    """Poll/process/ack loop for one stage; one message in flight at a time."""

    def __init__(
        self,
        *,
        config: StageConfig,
        queue_backend: Any,
        state_store: Any,
        dispatcher: RetryingDispatcher | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config
        self.queue_backend = queue_backend
        self.state_store = state_store
        self._sleep = sleep or time.sleep
        self.gate = OrderingGate(state_store=state_store, result_table=config.result_table, stage=config.stage)
        self.dispatcher = dispatcher or RetryingDispatcher.from_config(config, session=session, sleep=self._sleep)
        self.failure_router = FailureRouter(
            stage=config.stage,
            queue_name=config.queue_name,
            dead_letter_queue_name=config.dead_letter_queue_name,
            queue_backend=queue_backend,
            state_store=state_store,
        )
        self._stop_event = threading.Event()
        # Held for the whole of run_once, and by run_forever for its lifetime.
        self._run_lock = threading.RLock()
        self._totals_lock = threading.Lock()
        self._totals = StageRunStats()

    @property
    def stage(self) -> str:
        return self.config.stage

    def stop(self) -> None:
        self._stop_event.set()

    def reset_stop_signal(self) -> None:
        self._stop_event.clear()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def totals(self) -> dict[str, int]:
        with self._totals_lock:
            return self._totals.as_dict()

    def _ack(self, message: QueueMessage, stats: StageRunStats) -> bool:
        try:
            self.queue_backend.delete(self.config.queue_name, [message.message_id])
        except Exception as exc:
            logger.error("error deleting message stage=%s msg_id=%s: %s", self.stage, message.message_id, exc)
            stats.ack_errors += 1
            return False
        return True

    def _handle_message(self, message: QueueMessage, stats: StageRunStats) -> None:
        stats.processed += 1
        logger.info(
            "received job stage=%s msg_id=%s read_count=%s",
            self.stage,
            message.message_id,
            message.read_count,
        )
        try:
            payload = decode_job_payload(message.body)
        except PayloadDecodeError as exc:
            logger.error(
                "undecodable payload; deleting message stage=%s msg_id=%s: %s",
                self.stage,
                message.message_id,
                exc.message,
            )
            self._ack(message, stats)
            stats.discarded += 1
            return

        decision = self.gate.check_predecessor(payload.lecture_id, payload.slide_number)
        if not decision.ready:
            # Left un-acked: the queue hands it out again once its visibility timeout lapses.
            stats.deferred += 1
            self._sleep(self.config.defer_interval_s)
            return

        result = self.dispatcher.dispatch(payload.to_wire())
        if result.success:
            self._ack(message, stats)
            stats.succeeded += 1
            return

        self.failure_router.route_to_dead_letter(
            message=message,
            payload=payload,
            error=result.last_error or "dispatch failed",
        )
        stats.dead_lettered += 1

    def run_once(self) -> dict[str, int]:
        with self._run_lock:
            return self._run_iteration()

    def try_run_once(self) -> dict[str, int] | None:
        """Run one iteration unless another caller is already running this stage."""
        if not self._run_lock.acquire(blocking=False):
            return None
        try:
            return self._run_iteration()
        finally:
            self._run_lock.release()

    def _run_iteration(self) -> dict[str, int]:
        stats = StageRunStats()
        try:
            messages = self.queue_backend.poll(
                self.config.queue_name,
                max_wait_s=self.config.poll_timeout_s,
                max_messages=self.config.poll_max_messages,
                visibility_timeout_s=self.config.visibility_timeout_s,
            )
        except Exception as exc:
            logger.error("error reading queue stage=%s queue=%s: %s", self.stage, self.config.queue_name, exc)
            stats.poll_errors += 1
            self._sleep(self.config.poll_error_sleep_s)
        else:
            if messages:
                stats.polled += len(messages)
                try:
                    self._handle_message(messages[0], stats)
                except Exception:
                    # Keep the loop alive; the message reappears after its visibility timeout.
                    logger.exception("unexpected error handling message stage=%s msg_id=%s", self.stage, messages[0].message_id)
        with self._totals_lock:
            self._totals.merge(stats)
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = StageRunStats()
        iterations = 0
        logger.info(
            "starting stage orchestrator stage=%s queue=%s endpoint=%s",
            self.stage,
            self.config.queue_name,
            self.config.endpoint_url,
        )
        with self._run_lock:
            while not self._stop_event.is_set():
                aggregate.merge(self._run_iteration())
                iterations += 1
                if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                    break
        logger.info("shutting down stage orchestrator stage=%s iterations=%s", self.stage, iterations)
        return aggregate.as_dict()
