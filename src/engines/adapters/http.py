"""Vendor HTTP client with circuit breaker and retry.

Shared by the REST-based adapters (OpenAI, ElevenLabs, Azure). Each
adapter owns one client bound to its credentials, and each client owns its
circuit breaker: one credential set failing never opens the circuit for
another. Client errors (4xx other than 429) are not breaker failures.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import aiohttp
from aiobreaker import CircuitBreaker, CircuitBreakerError

from src.errors import MissingCredentials, VendorUnreachable
from src.monitoring.metrics import vendor_api_errors_total, vendor_circuit_breaker_state

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

# Retry config
_MAX_RETRIES = 2
_RETRY_DELAYS = [0.5, 1.5]  # exponential backoff
_RETRYABLE_STATUSES = {429, 500, 502, 503}

_BREAKER_FAIL_MAX = 5
_BREAKER_RESET = timedelta(seconds=30)


class VendorAPIError(Exception):
    """Raised when a vendor API call returns an error status."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"Vendor API {status}: {message}")

    @property
    def is_client_error(self) -> bool:
        """Rejected request (bad credentials, bad input); the vendor itself is up."""
        return 400 <= self.status < 500 and self.status != 429


def _is_client_error(exc: Exception) -> bool:
    return isinstance(exc, VendorAPIError) and exc.is_client_error


class VendorHTTPClient:
    """aiohttp session wrapper for one vendor and one credential set.

    Features:
      - Circuit breaker (aiobreaker: fail_max=5, timeout=30s) per client,
        ignoring 4xx client errors
      - Retry with exponential backoff for 429/5xx and connection errors
      - X-Request-Id header for tracing
      - Streaming responses yielded chunk by chunk
    """

    def __init__(
        self,
        engine_id: str,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: int = 20,
    ) -> None:
        self._engine_id = engine_id
        self._base_url = base_url.rstrip("/")
        self._headers = headers or {}
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: aiohttp.ClientSession | None = None
        self._breaker = CircuitBreaker(
            fail_max=_BREAKER_FAIL_MAX, timeout_duration=_BREAKER_RESET, exclude=[_is_client_error]
        )

    async def open(self) -> None:
        """Open the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout, headers=self._headers)

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        resp = await self._open_response("GET", path, params=params)
        try:
            return await resp.json(content_type=None)
        finally:
            resp.release()

    async def post_json(self, path: str, json_data: Any = None, **kwargs: Any) -> Any:
        resp = await self._open_response("POST", path, json_data=json_data, **kwargs)
        try:
            return await resp.json(content_type=None)
        finally:
            resp.release()

    async def post_bytes(self, path: str, **kwargs: Any) -> bytes:
        resp = await self._open_response("POST", path, **kwargs)
        try:
            return await resp.read()
        finally:
            resp.release()

    async def post_stream(self, path: str, chunk_size: int = 4096, **kwargs: Any) -> AsyncIterator[bytes]:
        """POST and yield the response body as it arrives."""
        resp = await self._open_response("POST", path, **kwargs)
        try:
            async for chunk in resp.content.iter_chunked(chunk_size):
                if chunk:
                    yield chunk
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise VendorUnreachable(self._engine_id, f"stream interrupted: {exc}") from exc
        finally:
            resp.release()

    # --- HTTP helpers ---

    async def _open_response(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> aiohttp.ClientResponse:
        """Open a response with circuit breaker and retry; caller releases it."""
        if self._session is None:
            raise RuntimeError("VendorHTTPClient not opened; call open() first")

        url = path if path.startswith("http") else f"{self._base_url}{path}"
        request_id = str(uuid.uuid4())
        try:
            resp = await self._breaker.call_async(
                self._request_with_retry,
                method,
                url,
                request_id,
                params=params,
                json_data=json_data,
                data=data,
                headers=headers,
            )
        except CircuitBreakerError as exc:
            vendor_circuit_breaker_state.labels(engine=self._engine_id).set(1)
            logger.error("Circuit breaker OPEN for %s API", self._engine_id)
            raise VendorUnreachable(self._engine_id, "temporarily unavailable (circuit open)") from exc
        except VendorAPIError as exc:
            if exc.status >= 500 or exc.status == 429:
                raise VendorUnreachable(self._engine_id, exc.message) from exc
            raise
        except (aiohttp.ClientError, TimeoutError) as exc:
            raise VendorUnreachable(self._engine_id, str(exc) or exc.__class__.__name__) from exc

        vendor_circuit_breaker_state.labels(engine=self._engine_id).set(0)
        return resp

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        request_id: str,
        **kwargs: Any,
    ) -> aiohttp.ClientResponse:
        """Execute request with retry for retryable statuses and connection errors."""
        last_exc: Exception | None = None

        for attempt in range(_MAX_RETRIES + 1):
            try:
                return await self._do_request(method, url, request_id, **kwargs)
            except VendorAPIError as exc:
                last_exc = exc
                if exc.status not in _RETRYABLE_STATUSES:
                    raise
            except (aiohttp.ClientConnectionError, TimeoutError) as exc:
                last_exc = exc
            if attempt < _MAX_RETRIES:
                delay = _RETRY_DELAYS[attempt]
                logger.warning(
                    "%s API error, retry %d/%d in %.1fs: %s",
                    self._engine_id,
                    attempt + 1,
                    _MAX_RETRIES,
                    delay,
                    last_exc,
                )
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    async def _do_request(
        self,
        method: str,
        url: str,
        request_id: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> aiohttp.ClientResponse:
        """Execute a single HTTP request; error bodies are read and released here."""
        session = self._session
        if session is None:
            raise RuntimeError("VendorHTTPClient closed during request")

        request_headers = {"X-Request-Id": request_id, **(headers or {})}
        resp = await session.request(
            method, url, params=params, json=json_data, data=data, headers=request_headers
        )
        if resp.status >= 400:
            body = await resp.text()
            resp.release()
            vendor_api_errors_total.labels(engine=self._engine_id, status=str(resp.status)).inc()
            if resp.status in (401, 403):
                logger.error("%s API authentication failed, check credentials", self._engine_id)
            raise VendorAPIError(resp.status, body[:200])
        return resp


def require_credential(engine_id: str, credentials: dict[str, str] | None, name: str) -> str:
    """Return one credential value or raise MissingCredentials."""
    value = (credentials or {}).get(name)
    if not value:
        raise MissingCredentials(engine_id)
    return value
