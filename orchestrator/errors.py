from __future__ import annotations


class OrchestratorError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int = 500,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class PayloadDecodeError(OrchestratorError):
    """Queue message body that cannot be interpreted as a job; never retried."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="JOB_PAYLOAD_INVALID",
            message=message,
            error_class="poison",
            retryable=False,
            http_status=422,
        )


class DispatchError(OrchestratorError):
    """One failed call to the processing service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(
            code="DISPATCH_FAILED",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )
        self.status_code = status_code
