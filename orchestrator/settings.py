"""Stage configuration.

Every orchestrator loop receives an explicit ``StageConfig``; nothing inside
the loop reads the environment.

Configuration via environment variables (``<S>`` is the upper-case stage):
  <S>_QUEUE_NAME                = <stage>
  <S>_DEAD_LETTER_QUEUE_NAME    = <queue>-dlq
  <S>_POLL_TIMEOUT_SEC          = 5
  <S>_POLL_MAX_MSG              = 1
  <S>_VISIBILITY_TIMEOUT_SEC    = 30
  <S>_MAX_RETRIES               = 5
  <S>_BACKOFF_INITIAL_SEC       = 1
  <S>_BACKOFF_MAX_SEC           = 10
  <S>_REQUEST_TIMEOUT_SEC       = 60
  <S>_ENDPOINT_VERB             = ingest | embed | explain | summarize
  <S>_RESULT_TABLE              = explanations (explanation only; "none" disables ordering)
  PYTHON_SERVICE_BASE_URL       = http://localhost:8000
  ORCH_DEFER_INTERVAL_SEC       = 1
  ORCH_POLL_ERROR_SLEEP_SEC     = 1
  ORCH_STAGES                   = ingestion,embedding,explanation,summary
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(frozen=True)
class StageDefinition:
    name: str
    endpoint_verb: str
    result_table: str | None = None


STAGE_DEFINITIONS: dict[str, StageDefinition] = {
    "ingestion": StageDefinition(name="ingestion", endpoint_verb="ingest"),
    "embedding": StageDefinition(name="embedding", endpoint_verb="embed"),
    "explanation": StageDefinition(name="explanation", endpoint_verb="explain", result_table="explanations"),
    "summary": StageDefinition(name="summary", endpoint_verb="summarize"),
}

DEFAULT_SERVICE_BASE_URL = "http://localhost:8000"


@dataclass(frozen=True)
class StageConfig:
    stage: str
    queue_name: str
    dead_letter_queue_name: str
    endpoint_verb: str
    base_url: str = DEFAULT_SERVICE_BASE_URL
    result_table: str | None = None
    poll_timeout_s: int = 5
    poll_max_messages: int = 1
    visibility_timeout_s: int = 30
    max_retries: int = 5
    initial_backoff_s: float = 1.0
    max_backoff_s: float = 10.0
    request_timeout_s: float = 60.0
    defer_interval_s: float = 1.0
    poll_error_sleep_s: float = 1.0

    @property
    def endpoint_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/{self.endpoint_verb.strip('/')}"

    @property
    def ordered(self) -> bool:
        return bool(self.result_table)


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_str(env: Mapping[str, str], name: str, *, default: str) -> str:
    raw = str(env.get(name, "")).strip()
    return raw or default


def load_stage_config(stage: str, environ: Mapping[str, str] | None = None) -> StageConfig:
    env = os.environ if environ is None else environ
    key = stage.strip().lower()
    definition = STAGE_DEFINITIONS.get(key)
    if definition is None:
        raise ValueError(f"unknown stage: {stage}")
    prefix = key.upper()

    queue_name = _env_str(env, f"{prefix}_QUEUE_NAME", default=key)
    result_table_raw = _env_str(env, f"{prefix}_RESULT_TABLE", default=definition.result_table or "")
    result_table = None if result_table_raw.lower() in {"", "none"} else result_table_raw
    initial_backoff_s = _env_float(env, f"{prefix}_BACKOFF_INITIAL_SEC", default=1.0)
    max_backoff_s = _env_float(env, f"{prefix}_BACKOFF_MAX_SEC", default=10.0)

    return StageConfig(
        stage=key,
        queue_name=queue_name,
        dead_letter_queue_name=_env_str(env, f"{prefix}_DEAD_LETTER_QUEUE_NAME", default=f"{queue_name}-dlq"),
        endpoint_verb=_env_str(env, f"{prefix}_ENDPOINT_VERB", default=definition.endpoint_verb),
        base_url=_env_str(env, "PYTHON_SERVICE_BASE_URL", default=DEFAULT_SERVICE_BASE_URL).rstrip("/"),
        result_table=result_table,
        poll_timeout_s=_env_int(env, f"{prefix}_POLL_TIMEOUT_SEC", default=5),
        poll_max_messages=_env_int(env, f"{prefix}_POLL_MAX_MSG", default=1, minimum=1),
        visibility_timeout_s=_env_int(env, f"{prefix}_VISIBILITY_TIMEOUT_SEC", default=30),
        max_retries=_env_int(env, f"{prefix}_MAX_RETRIES", default=5, minimum=1),
        initial_backoff_s=initial_backoff_s,
        max_backoff_s=max(initial_backoff_s, max_backoff_s),
        request_timeout_s=_env_float(env, f"{prefix}_REQUEST_TIMEOUT_SEC", default=60.0, minimum=0.1),
        defer_interval_s=_env_float(env, "ORCH_DEFER_INTERVAL_SEC", default=1.0),
        poll_error_sleep_s=_env_float(env, "ORCH_POLL_ERROR_SLEEP_SEC", default=1.0),
    )


def enabled_stages(environ: Mapping[str, str] | None = None) -> list[str]:
    env = os.environ if environ is None else environ
    raw = str(env.get("ORCH_STAGES", "")).strip()
    if not raw:
        return list(STAGE_DEFINITIONS)
    stages: list[str] = []
    for item in raw.split(","):
        name = item.strip().lower()
        if not name:
            continue
        if name not in STAGE_DEFINITIONS:
            raise ValueError(f"unknown stage: {name}")
        if name not in stages:
            stages.append(name)
    return stages
