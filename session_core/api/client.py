"""
HTTP client for the auth backend.

Wraps httpx with a bounded timeout, a single retry for transient failures
and error envelopes mapped to BackendError codes.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from common.utils import extract_error, unwrap_response
from session_core.api.errors import (
    BackendError,
    BackendTimeoutError,
    InvalidResponseError,
    NetworkError,
    code_for_status,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class BackendClient:
    """
    Async client for the session/login endpoints.

    401/403 and other 4xx responses raise immediately. Timeouts, connection
    failures and 5xx responses are retried ``max_retries`` times after a
    fixed backoff, then raised.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        max_retries: int = 1,
        retry_backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize BackendClient.

        Args:
            base_url: Backend root URL
            timeout_seconds: Per-attempt timeout
            max_retries: Extra attempts for transient failures
            retry_backoff_seconds: Wait before each retry
            transport: Optional httpx transport (e.g. ASGITransport in tests)
            sleep: Backoff sleep function
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff_seconds
        self._transport = transport
        self._sleep = sleep

    async def get(self, path: str, access_token: Optional[str] = None) -> Any:
        return await self.request("GET", path, access_token=access_token)

    async def post(
        self,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        return await self.request("POST", path, json=json, access_token=access_token)

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> Any:
        """
        Perform a request and return the unwrapped payload.

        Args:
            method: HTTP method
            path: Path relative to the base URL
            json: Optional JSON body
            access_token: Bearer token to send

        Returns:
            The ``data`` of a success envelope, or the raw JSON body

        Raises:
            BackendError: Error response (code from the envelope)
            BackendTimeoutError: Timed out on every attempt
            NetworkError: Could not connect on every attempt
        """
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._send(method, path, json, headers)
            except BackendError as e:
                if not e.is_transient or attempt == attempts:
                    raise
                logger.warning(
                    f"{method} {path} failed with {e.code} "
                    f"(attempt {attempt}/{attempts}), retrying in {self._retry_backoff}s"
                )
                await self._sleep(self._retry_backoff)

        # Unreachable: the loop either returns or raises
        raise NetworkError()

    async def request_model(
        self,
        model: Type[ModelT],
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        access_token: Optional[str] = None,
    ) -> ModelT:
        """Like request(), validated into ``model``."""
        payload = await self.request(method, path, json=json, access_token=access_token)
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            logger.error(f"{method} {path} returned an unexpected body: {e.error_count()} errors")
            raise InvalidResponseError()

    async def _send(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]],
        headers: Dict[str, str],
    ) -> Any:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException:
            raise BackendTimeoutError()
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e.__class__.__name__}")

        if response.is_success:
            if not response.content:
                return None
            try:
                return unwrap_response(response.json())
            except ValueError:
                raise InvalidResponseError(status_code=response.status_code)

        raise self._error_from_response(response)

    @staticmethod
    def _error_from_response(response: httpx.Response) -> BackendError:
        try:
            body = response.json()
        except ValueError:
            body = None

        error = extract_error(body)
        status = response.status_code
        return BackendError(
            message=error.get("message") or f"Request failed with status {status}",
            code=error.get("code") or code_for_status(status),
            status_code=status,
            details=error.get("details"),
        )
