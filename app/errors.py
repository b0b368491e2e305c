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
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class FileRetrievalError(Exception):
    """Raised when the object store has no bytes for a job's file_path."""

    def __init__(self, path: str, reason: str = "object not found") -> None:
        super().__init__(f"failed to fetch file '{path}': {reason}")
        self.path = path
        self.reason = reason


class WebhookTransportError(Exception):
    """Raised when the webhook POST never produced an HTTP response."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(reason)
        self.url = url
        self.reason = reason
