"""Tests for the aiohttp fetch primitive."""

import asyncio
from contextlib import asynccontextmanager

import aiohttp
import pytest

from barecdn.common.http_client import HttpFetcher
from barecdn.errors import FetchError


class _DummyResponse:
    def __init__(self, status, body, url, charset="utf-8", content_type="text/javascript; charset=utf-8"):
        self.status = status
        self._body = body
        self.url = url
        self.charset = charset
        self.headers = {"Content-Type": content_type}

    async def read(self):
        return self._body


class _DummySession:
    """Replays a scripted list of responses or exceptions."""

    def __init__(self, script):
        self.script = list(script)
        self.calls = []
        self.closed = False

    @asynccontextmanager
    async def _respond(self, url):
        self.calls.append(url)
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        yield step

    def get(self, url, timeout=None):
        return self._respond(url)

    async def close(self):
        self.closed = True


def _fetch(script, retries=3):
    session = _DummySession(script)
    fetcher = HttpFetcher(retries=retries, retry_delay=0, session=session)

    async def _run():
        return await fetcher("https://cdn.test/foo@^1/index.js")

    return asyncio.run(_run()), session


class TestHttpFetcher:
    """Response mapping and retry policy."""

    def test_success(self):
        """Status, final URL, text and content type are passed through."""
        response, session = _fetch([
            _DummyResponse(200, b"export {};", "https://cdn.test/foo@1.2.3/index.js"),
        ])
        assert response.status == 200
        assert response.url == "https://cdn.test/foo@1.2.3/index.js"
        assert response.text == "export {};"
        assert response.content_type == "text/javascript; charset=utf-8"
        assert len(session.calls) == 1

    def test_not_found_is_not_retried(self):
        """4xx answers are returned to the caller immediately."""
        response, session = _fetch([_DummyResponse(404, b"Not Found", "https://cdn.test/x")])
        assert response.status == 404
        assert response.text == "Not Found"
        assert len(session.calls) == 1

    def test_server_error_retried(self):
        """5xx answers are retried until one succeeds."""
        response, session = _fetch([
            _DummyResponse(503, b"busy", "https://cdn.test/x"),
            _DummyResponse(200, b"ok", "https://cdn.test/x"),
        ])
        assert response.text == "ok"
        assert len(session.calls) == 2

    def test_last_server_error_returned(self):
        """A 5xx on the final attempt is returned as is."""
        response, session = _fetch([
            _DummyResponse(500, b"a", "https://cdn.test/x"),
            _DummyResponse(502, b"b", "https://cdn.test/x"),
        ], retries=2)
        assert response.status == 502
        assert len(session.calls) == 2

    def test_connection_errors_exhaust_retries(self):
        """Persistent client errors raise FetchError with status 0."""
        session = _DummySession([aiohttp.ClientError("refused")] * 3)
        fetcher = HttpFetcher(retries=3, retry_delay=0, session=session)
        with pytest.raises(FetchError) as excinfo:
            asyncio.run(fetcher("https://cdn.test/x"))
        assert excinfo.value.status == 0
        assert "after 3 attempts" in str(excinfo.value)
        assert fetcher.failed_requests == 1

    def test_timeout_retried(self):
        """Timeouts count as retryable failures."""
        response, session = _fetch([
            asyncio.TimeoutError(),
            _DummyResponse(200, b"ok", "https://cdn.test/x"),
        ])
        assert response.text == "ok"
        assert len(session.calls) == 2

    def test_undecodable_body_replaced(self):
        """Invalid bytes do not abort the request."""
        response, _ = _fetch([_DummyResponse(200, b"ok \xff", "https://cdn.test/x", charset=None)])
        assert response.text.startswith("ok ")

    def test_unknown_charset_decoded_as_utf8(self):
        """An unknown charset falls back to UTF-8 instead of failing."""
        response, session = _fetch([_DummyResponse(200, "café".encode("utf-8"), "https://cdn.test/x",
                                                   charset="x-bogus")])
        assert response.status == 200
        assert response.text == "café"
        assert len(session.calls) == 1

    def test_external_session_not_closed(self):
        """stop() leaves a caller-owned session open."""
        session = _DummySession([])
        fetcher = HttpFetcher(session=session)
        asyncio.run(fetcher.stop())
        assert session.closed is False
