"""
Utilities module - Common helpers for API responses and exceptions.
"""

from common.utils.responses import (
    success_response,
    error_response,
    unwrap_response,
    extract_error,
)
from common.utils.exceptions import (
    APIException,
    BadRequestException,
    UnauthorizedException,
    ForbiddenException,
    NotFoundException,
)

__all__ = [
    "success_response",
    "error_response",
    "unwrap_response",
    "extract_error",
    "APIException",
    "BadRequestException",
    "UnauthorizedException",
    "ForbiddenException",
    "NotFoundException",
]
