"""
Client-side backend errors.

Every error carries a machine-readable ``code`` so callers never have to
match on message text.
"""

from typing import Any, Optional


STATUS_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
}


def code_for_status(status_code: int) -> str:
    if status_code >= 500:
        return "SERVER_ERROR"
    return STATUS_CODES.get(status_code, "HTTP_ERROR")


class BackendError(Exception):
    """The backend answered with an error, or could not be reached."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    @property
    def is_auth_failure(self) -> bool:
        """401/403: credentials rejected. Never retried."""
        return self.status_code in (401, 403)

    @property
    def is_transient(self) -> bool:
        """Worth one more attempt."""
        return self.status_code is None or self.status_code >= 500

    def detail(self, key: str) -> Any:
        if isinstance(self.details, dict):
            return self.details.get(key)
        return None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status_code={self.status_code!r})"


class BackendTimeoutError(BackendError):
    def __init__(self, message: str = "Request timed out"):
        super().__init__(message, code="TIMEOUT")


class NetworkError(BackendError):
    def __init__(self, message: str = "Network unavailable"):
        super().__init__(message, code="NETWORK_ERROR")


class InvalidResponseError(BackendError):
    """2xx response whose body does not match the expected shape."""

    def __init__(self, message: str = "Unexpected response from server", status_code: Optional[int] = None):
        super().__init__(message, code="INVALID_RESPONSE", status_code=status_code)
