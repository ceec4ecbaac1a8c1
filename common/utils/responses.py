"""
Standard API response envelopes.

Every backend answer is wrapped the same way so a client can unwrap it
without knowing the endpoint:

    {"success": true, "data": {...}, "message": "..."}
    {"success": false, "error": {"message": "...", "code": "...", "details": ...}}
"""

from typing import Any, Optional, Dict


def success_response(
    data: Any = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a standard success response.

    Args:
        data: The response data (can be dict, list, or any serializable type)
        message: Optional success message

    Returns:
        Dictionary with success=True and optional data/message
    """
    response: Dict[str, Any] = {"success": True}

    if data is not None:
        response["data"] = data

    if message:
        response["message"] = message

    return response


def error_response(
    message: str,
    code: Optional[str] = None,
    details: Optional[Any] = None,
) -> Dict[str, Any]:
    """
    Create a standard error response.

    Args:
        message: Human-readable error message
        code: Machine-readable error code (e.g., "INVALID_CREDENTIALS")
        details: Additional error details

    Returns:
        Dictionary with success=False and error info
    """
    error: Dict[str, Any] = {"message": message}

    if code:
        error["code"] = code

    if details is not None:
        error["details"] = details

    return {"success": False, "error": error}


def unwrap_response(body: Any) -> Any:
    """
    Return the payload of a success envelope.

    Bodies that are not envelopes are returned unchanged.
    """
    if isinstance(body, dict) and body.get("success") is True and "data" in body:
        return body["data"]
    return body


def extract_error(body: Any) -> Dict[str, Any]:
    """
    Pull ``{"message", "code", "details"}`` out of an error body.

    Understands the error envelope above and FastAPI's ``{"detail": ...}``
    shape. Missing keys are simply absent from the result.
    """
    if not isinstance(body, dict):
        return {}

    error = body.get("error")
    if isinstance(error, dict):
        return error

    detail = body.get("detail")
    if isinstance(detail, dict):
        return detail
    if isinstance(detail, str):
        return {"message": detail}

    if "message" in body or "code" in body:
        return {k: body[k] for k in ("message", "code", "details") if k in body}

    return {}
