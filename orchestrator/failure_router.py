from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from orchestrator.queue_backend import QueueMessage
from orchestrator.schemas import JobPayload

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterOutcome:
    status_updated: bool = False
    dead_lettered: bool = False
    acked: bool = False

    def as_dict(self) -> dict[str, bool]:
        return {
            "status_updated": self.status_updated,
            "dead_lettered": self.dead_lettered,
            "acked": self.acked,
        }


class FailureRouter:
    """Terminal handling for a job whose retries are exhausted.

    The three steps run independently; a failure in one is logged and the
    next is still attempted. The delete always runs so the job is never
    redelivered.
    """

    def __init__(
        self,
        *,
        stage: str,
        queue_name: str,
        dead_letter_queue_name: str,
        queue_backend: Any,
        state_store: Any,
    ) -> None:
        self.stage = stage
        self.queue_name = queue_name
        self.dead_letter_queue_name = dead_letter_queue_name
        self.queue_backend = queue_backend
        self.state_store = state_store

    def route_to_dead_letter(self, *, message: QueueMessage, payload: JobPayload, error: str) -> DeadLetterOutcome:
        outcome = DeadLetterOutcome()
        lecture_id = payload.lecture_id

        try:
            updated = self.state_store.mark_failed(
                lecture_id=lecture_id,
                error_details={"stage": self.stage, "message": error},
            )
        except Exception as exc:
            logger.error("failed to mark lecture failed stage=%s lecture_id=%s: %s", self.stage, lecture_id, exc)
        else:
            outcome.status_updated = bool(updated)
            if not updated:
                logger.warning("no lecture row to mark failed stage=%s lecture_id=%s", self.stage, lecture_id)

        try:
            self.queue_backend.send(self.dead_letter_queue_name, payload.to_wire())
        except Exception as exc:
            logger.error(
                "failed to send message to dead-letter queue stage=%s dlq=%s msg_id=%s: %s",
                self.stage,
                self.dead_letter_queue_name,
                message.message_id,
                exc,
            )
        else:
            outcome.dead_lettered = True

        try:
            self.queue_backend.delete(self.queue_name, [message.message_id])
        except Exception as exc:
            logger.error(
                "failed to delete message after exhausting retries stage=%s msg_id=%s: %s",
                self.stage,
                message.message_id,
                exc,
            )
        else:
            outcome.acked = True

        logger.warning(
            "exhausted retries; moved job to dead-letter queue stage=%s lecture_id=%s slide_number=%s msg_id=%s error=%s",
            self.stage,
            lecture_id,
            payload.slide_number,
            message.message_id,
            error,
        )
        return outcome
