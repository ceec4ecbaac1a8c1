"""
Backend API access - client, paths and error types.
"""

from session_core.api.client import BackendClient
from session_core.api.errors import (
    BackendError,
    BackendTimeoutError,
    InvalidResponseError,
    NetworkError,
)

__all__ = [
    "BackendClient",
    "BackendError",
    "BackendTimeoutError",
    "InvalidResponseError",
    "NetworkError",
]
