from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, ValidationError

from orchestrator.errors import PayloadDecodeError


class JobPayload(BaseModel):
    """Stage job body; stage-specific extra fields are carried through untouched."""

    model_config = ConfigDict(extra="allow", frozen=True)

    lecture_id: StrictStr = Field(min_length=1)
    slide_number: StrictInt
    slide_id: StrictStr | None = None

    def to_wire(self) -> dict[str, Any]:
        # Only the fields the producer actually sent.
        return self.model_dump(mode="json", exclude_unset=True)


def decode_job_payload(body: str | bytes | dict[str, Any]) -> JobPayload:
    if isinstance(body, dict):
        data: Any = body
    else:
        try:
            data = json.loads(body)
        except (TypeError, ValueError) as exc:
            raise PayloadDecodeError(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadDecodeError(f"payload must be a JSON object, got {type(data).__name__}")
    try:
        return JobPayload.model_validate(data)
    except ValidationError as exc:
        fields = ",".join(".".join(str(x) for x in err.get("loc", ())) for err in exc.errors())
        raise PayloadDecodeError(f"payload failed validation: {fields or exc}") from exc


def encode_job_payload(payload: JobPayload | dict[str, Any]) -> str:
    data = payload.to_wire() if isinstance(payload, JobPayload) else payload
    return json.dumps(data, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
