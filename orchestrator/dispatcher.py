from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import requests

from orchestrator.errors import DispatchError
from orchestrator.settings import StageConfig

logger = logging.getLogger(__name__)

_ERROR_BODY_LIMIT = 500


def backoff_schedule(max_retries: int, initial_backoff_s: float, max_backoff_s: float) -> list[float]:
    """Delay computed after each failed attempt: doubling, clamped to the ceiling.

    The dispatcher only sleeps between attempts, so it uses the first
    ``max_retries - 1`` entries.
    """
    ceiling = max(float(initial_backoff_s), float(max_backoff_s))
    delay = max(0.0, float(initial_backoff_s))
    out: list[float] = []
    for _ in range(max(0, int(max_retries))):
        out.append(min(delay, ceiling))
        delay = min(delay * 2, ceiling)
    return out


@dataclass
class DispatchResult:
    success: bool
    attempts: int
    last_error: str | None = None
    status_code: int | None = None


class RetryingDispatcher:
    """POSTs a job to the processing service with bounded retry and backoff.

    Touches nothing but the network and the clock.
    """

    def __init__(
        self,
        *,
        endpoint_url: str,
        max_retries: int = 5,
        initial_backoff_s: float = 1.0,
        max_backoff_s: float = 10.0,
        request_timeout_s: float = 60.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
        stage: str = "",
    ) -> None:
        self.endpoint_url = endpoint_url
        self.max_retries = max(1, int(max_retries))
        self.initial_backoff_s = float(initial_backoff_s)
        self.max_backoff_s = float(max_backoff_s)
        self.request_timeout_s = float(request_timeout_s)
        self.stage = stage
        self._session = session or requests.Session()
        self._sleep = sleep or time.sleep

    @classmethod
    def from_config(
        cls,
        config: StageConfig,
        *,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> RetryingDispatcher:
        return cls(
            endpoint_url=config.endpoint_url,
            max_retries=config.max_retries,
            initial_backoff_s=config.initial_backoff_s,
            max_backoff_s=config.max_backoff_s,
            request_timeout_s=config.request_timeout_s,
            session=session,
            sleep=sleep,
            stage=config.stage,
        )

    def _attempt(self, body: bytes) -> int:
        try:
            response = self._session.post(
                self.endpoint_url,
                data=body,
                headers={"Content-Type": "application/json"},
                timeout=self.request_timeout_s,
            )
        except requests.exceptions.Timeout as exc:
            raise DispatchError(f"request timed out after {self.request_timeout_s}s: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise DispatchError(f"request failed: {exc}") from exc
        try:
            if not 200 <= response.status_code < 300:
                raise DispatchError(
                    f"status {response.status_code}: {response.text[:_ERROR_BODY_LIMIT]}",
                    status_code=response.status_code,
                )
            return response.status_code
        finally:
            response.close()

    def dispatch(self, payload: dict[str, Any]) -> DispatchResult:
        body = json.dumps(payload, ensure_ascii=True).encode("utf-8")
        delays = backoff_schedule(self.max_retries, self.initial_backoff_s, self.max_backoff_s)
        last_error: str | None = None
        last_status: int | None = None
        for attempt in range(1, self.max_retries + 1):
            started = time.monotonic()
            try:
                status_code = self._attempt(body)
            except DispatchError as exc:
                last_error = exc.message
                last_status = exc.status_code
                logger.error(
                    "processing service call failed stage=%s attempt=%s/%s endpoint=%s: %s",
                    self.stage,
                    attempt,
                    self.max_retries,
                    self.endpoint_url,
                    exc.message,
                )
            else:
                logger.info(
                    "processing service succeeded stage=%s attempt=%s duration_ms=%s",
                    self.stage,
                    attempt,
                    int((time.monotonic() - started) * 1000),
                )
                return DispatchResult(success=True, attempts=attempt, status_code=status_code)
            if attempt < self.max_retries:
                self._sleep(delays[attempt - 1])
        return DispatchResult(
            success=False,
            attempts=self.max_retries,
            last_error=last_error,
            status_code=last_status,
        )
