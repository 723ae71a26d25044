"""HTTP fetch primitive used by the caching CDN.

The CDN only needs "GET this URL, tell me the status, the final URL after
redirects, the body and its content type". Anything that satisfies the
``Fetcher`` protocol can be injected, which is how tests serve an in-memory
CDN. ``HttpFetcher`` is the aiohttp-backed default with a bounded timeout and
retry policy.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import aiohttp

from ..constants import Constants
from ..errors import FetchError
from .logging_utils import Timer, extra_context, is_debug_enabled, safe_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CdnResponse:
    """A fully read HTTP response."""
    status: int
    url: str
    text: str
    content_type: Optional[str] = None


class Fetcher(Protocol):
    """Callable that performs one GET request and follows redirects."""

    async def __call__(self, url: str) -> CdnResponse:
        ...


def _decode_body(body: bytes, charset: Optional[str]) -> str:
    """Decode a response body, falling back to UTF-8 for unknown charsets."""
    try:
        return body.decode(charset or "utf-8", errors="replace")
    except LookupError:
        logger.debug("Unknown charset %r, decoding as utf-8", charset)
        return body.decode("utf-8", errors="replace")


class HttpFetcher:
    """aiohttp-backed ``Fetcher`` with timeout and retries.

    Timeouts, connection errors and 5xx responses are retried with exponential
    backoff. A 5xx on the last attempt is returned as is; any other failure on
    the last attempt raises ``FetchError`` with status 0.
    """

    def __init__(
        self,
        timeout: float = Constants.REQUEST_TIMEOUT,
        retries: int = Constants.HTTP_RETRY_MAX,
        retry_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the fetcher.

        Args:
            timeout: Total timeout per attempt, in seconds.
            retries: Maximum number of attempts per URL.
            retry_delay: Base delay before the second attempt; doubles after.
            session: Optional externally managed session. It is not closed
                by ``stop()``.
        """
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._retries = max(1, retries)
        self._retry_delay = retry_delay
        self._session = session
        self._owns_session = session is None
        self.failed_requests = 0

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

    async def stop(self) -> None:
        """Stop the HTTP session if this fetcher created it."""
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "HttpFetcher":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def __call__(self, url: str) -> CdnResponse:
        if self._session is None:
            await self.start()
        assert self._session is not None
        target = safe_url(url)
        last_error = None

        for attempt in range(self._retries):
            is_last = attempt + 1 >= self._retries
            with Timer() as timer:
                try:
                    if is_debug_enabled(logger):
                        logger.debug(
                            "HTTP request",
                            extra=extra_context(
                                event="http_request",
                                component="http_client",
                                action="GET",
                                target=target,
                                attempt=attempt + 1,
                            ),
                        )
                    async with self._session.get(url, timeout=self._timeout) as response:
                        body = await response.read()
                        text = _decode_body(body, response.charset)
                        if response.status >= 500 and not is_last:
                            last_error = f"HTTP {response.status}"
                        else:
                            if is_debug_enabled(logger):
                                logger.debug(
                                    "HTTP response",
                                    extra=extra_context(
                                        event="http_response",
                                        component="http_client",
                                        action="GET",
                                        status_code=response.status,
                                        duration_ms=timer.duration_ms(),
                                        target=target,
                                    ),
                                )
                            return CdnResponse(
                                status=response.status,
                                url=str(response.url),
                                text=text,
                                content_type=response.headers.get("Content-Type"),
                            )
                except asyncio.TimeoutError:
                    last_error = "timeout"
                except aiohttp.ClientError as exc:
                    last_error = str(exc) or exc.__class__.__name__

            logger.debug(
                "HTTP attempt failed",
                extra=extra_context(
                    event="http_exception",
                    component="http_client",
                    action="GET",
                    outcome=last_error,
                    attempt=attempt + 1,
                    target=target,
                ),
            )
            if not is_last:
                await asyncio.sleep(self._retry_delay * (2 ** attempt))

        self.failed_requests += 1
        logger.warning("GET %s failed after %d attempts: %s", target, self._retries, last_error)
        raise FetchError(0, f"Request failed after {self._retries} attempts: {last_error}")
