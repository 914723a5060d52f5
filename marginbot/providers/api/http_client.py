"""Async HTTP client for the consult provider.

Wraps :class:`httpx.AsyncClient` with:

* **Status pass-through** — every HTTP response is returned to the caller
  as-is, whatever its status.  The consult pipeline classifies 2xx / 400 /
  other statuses itself.
* **Connection retries** — failures to *establish* a connection
  (``ConnectError``, ``ConnectTimeout``) are retried with exponential
  back-off plus random jitter via :mod:`tenacity`.  Those requests never
  reached the server, so retrying cannot create a consult twice.  Nothing
  else is retried.
* **Structured error mapping** — any transport failure left after retries
  (including read timeouts on a request the server may have received) is
  raised as :class:`~marginbot.core.exceptions.ProviderTransportError`.

Typical usage::

    from marginbot.providers.api.http_client import ProviderHttpClient

    async with ProviderHttpClient(base_url="https://api.example.com") as client:
        response = await client.get("/consult", params={"search": "123"})
        response.status_code, response.json()
"""

from __future__ import annotations

import logging
import random
from types import TracebackType
from typing import Any, Final

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from marginbot.core.exceptions import ProviderTransportError

__all__ = ["ProviderHttpClient"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Transport errors raised before any byte of the request was sent.
_RETRYABLE_ERRORS: Final[tuple[type[Exception], ...]] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
)

#: Default total request timeout in seconds.
_DEFAULT_TIMEOUT: Final[float] = 30.0

#: Default total attempts (1 initial + 2 retries).
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

#: Hard cap on exponential back-off base before adding jitter (seconds).
_MAX_BACKOFF_BASE: Final[float] = 30.0

#: Upper bound on jitter added on top of the exponential base (seconds).
_MAX_BACKOFF_JITTER: Final[float] = 5.0


def _connect_wait(retry_state: RetryCallState) -> float:
    """Exponential back-off (1 s, 2 s, 4 s, …) with random jitter."""
    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    jitter = random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))
    return base + jitter


# ---------------------------------------------------------------------------
# Public client
# ---------------------------------------------------------------------------


class ProviderHttpClient:
    """Async HTTP client with connection retries and transport-error mapping.

    Use as an ``async with`` context manager to guarantee the underlying
    connection pool is closed on exit.

    Args:
        base_url: Base URL prepended to all relative request paths.
        headers: Default headers merged into every request.
        timeout: Total per-request timeout in seconds.
        max_attempts: Total attempts for connection failures (≥ 1).
        transport: Optional custom :class:`httpx.AsyncBaseTransport` (tests
            pass an :class:`httpx.MockTransport`).
        label: Short name used in log lines and raised errors.

    Raises:
        ValueError: If ``max_attempts`` is less than 1.
    """

    def __init__(
        self,
        *,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout: float = _DEFAULT_TIMEOUT,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        transport: httpx.AsyncBaseTransport | None = None,
        label: str = "consult",
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")

        self._base_url = base_url
        self._default_headers: dict[str, str] = headers or {}
        self._max_attempts = max_attempts
        self._timeout = httpx.Timeout(timeout)
        self._transport = transport
        self._label = label
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ProviderHttpClient:
        await self._ensure_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public request methods
    # ------------------------------------------------------------------

    async def get(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform an HTTP GET and return the response, whatever its status.

        Raises:
            ProviderTransportError: No response could be obtained.
        """
        return await self._request_with_retry("GET", url, params=params, extra_headers=headers)

    async def post(
        self,
        url: str,
        *,
        json: Any | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Perform an HTTP POST and return the response, whatever its status.

        Raises:
            ProviderTransportError: No response could be obtained.
        """
        return await self._request_with_retry(
            "POST", url, json=json, params=params, extra_headers=headers
        )

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call multiple times."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("ProviderHttpClient HTTP session closed.")
        self._http = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Accept": "application/json, text/plain, */*",
                    **self._default_headers,
                },
            )
            logger.debug(
                "ProviderHttpClient session opened (base_url=%r).", self._base_url or "(none)"
            )
        return self._http

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "HTTP %s %s — attempt %d/%d could not connect (%s). Retrying…",
                method,
                url,
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
            )

        response: httpx.Response | None = None
        try:
            async for attempt in AsyncRetrying(
                wait=_connect_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type(_RETRYABLE_ERRORS),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    response = await self._single_request(
                        method=method,
                        url=url,
                        params=params,
                        json=json,
                        extra_headers=extra_headers,
                    )
        except httpx.TransportError as exc:
            raise ProviderTransportError(
                self._label,
                f"{method} {url} failed: {type(exc).__name__}: {exc}",
            ) from exc

        assert response is not None, "tenacity exited without a response or exception"
        return response

    async def _single_request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json: Any | None,
        extra_headers: dict[str, str] | None,
    ) -> httpx.Response:
        client = await self._ensure_client()

        logger.debug("HTTP %s %s", method, url)
        response = await client.request(
            method=method,
            url=url,
            params=params,
            json=json,
            headers=extra_headers,
        )
        logger.debug(
            "HTTP %s %s → %d (%d bytes)",
            method,
            url,
            response.status_code,
            len(response.content),
        )
        return response
