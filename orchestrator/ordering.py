"""Per-lecture ordering gate.

Step ``n`` of a lecture may only be dispatched once the result row for step
``n - 1`` exists. The gate only answers the question; deferring (sleeping and
leaving the message un-acked) is up to the caller. There is no cap on how
often a job can be deferred.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateDecision:
    ready: bool
    should_retry_later: bool
    reason: str


READY_FIRST_STEP = GateDecision(ready=True, should_retry_later=False, reason="first_step")
READY_UNORDERED = GateDecision(ready=True, should_retry_later=False, reason="unordered_stage")
READY_PREDECESSOR_DONE = GateDecision(ready=True, should_retry_later=False, reason="predecessor_done")
DEFER_PREDECESSOR_PENDING = GateDecision(ready=False, should_retry_later=True, reason="predecessor_pending")
DEFER_QUERY_ERROR = GateDecision(ready=False, should_retry_later=True, reason="query_error")


class OrderingGate:
    def __init__(self, *, state_store: Any, result_table: str | None, stage: str = "") -> None:
        self.state_store = state_store
        self.result_table = result_table
        self.stage = stage

    def check_predecessor(self, lecture_id: str, slide_number: int) -> GateDecision:
        if slide_number <= 1:
            return READY_FIRST_STEP
        if not self.result_table:
            return READY_UNORDERED
        previous = slide_number - 1
        try:
            exists = self.state_store.result_exists(
                result_table=self.result_table,
                lecture_id=lecture_id,
                slide_number=previous,
            )
        except Exception as exc:
            logger.error(
                "predecessor check failed stage=%s lecture_id=%s slide_number=%s: %s",
                self.stage,
                lecture_id,
                slide_number,
                exc,
            )
            return DEFER_QUERY_ERROR
        if exists:
            return READY_PREDECESSOR_DONE
        logger.info(
            "previous step not ready stage=%s lecture_id=%s slide_number=%s",
            self.stage,
            lecture_id,
            slide_number,
        )
        return DEFER_PREDECESSOR_PENDING
