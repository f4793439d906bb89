from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class CacheUnavailableError(RuntimeError):
    """The shared cache could not be reached or rejected the command."""


class BrokerPublishError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class OperationTimeoutError(TimeoutError):
    """Raised when a timeout race fires; the underlying outcome is unknown."""

    def __init__(self, *, label: str, timeout_s: float) -> None:
        super().__init__(f"{label} timed out after {timeout_s:.3f}s")
        self.label = label
        self.timeout_s = timeout_s
