"""Tests for the caching CDN layer."""

import asyncio

import pytest

from barecdn.cdn import CachingCdn
from barecdn.common.http_client import CdnResponse
from barecdn.errors import FetchError, ParseError
from barecdn.models import NpmFileLocation

from fake_cdn import FakeCdn, package

DATA = {
    "foo": package({
        "1.0.0": {"index.js": "foo1", "lib/util.js": "util1"},
        "1.5.0": {"index.js": "foo15", "lib/util.js": "util15"},
        "2.0.0": {"index.js": "foo2", "package.json": '{"main": "main.js"}', "main.js": "main2"},
    }),
}


def _run(coro_factory, data=None):
    fake = FakeCdn(DATA if data is None else data)

    async def _inner():
        cdn = CachingCdn(fake.prefix, fake)
        return await coro_factory(cdn)

    return asyncio.run(_inner()), fake


class TestFetch:
    """File fetching and caching."""

    def test_fetch_exact(self):
        """An exact location is fetched as is."""
        result, fake = _run(lambda cdn: cdn.fetch(NpmFileLocation("foo", "1.0.0", "index.js")))
        assert result.content == "foo1"
        assert result.content_type == "text/javascript; charset=utf-8"
        assert fake.requests == [fake.prefix + "foo@1.0.0/index.js"]

    def test_fetch_range(self):
        """A range is resolved by the CDN."""
        result, _ = _run(lambda cdn: cdn.fetch(NpmFileLocation("foo", "^1.0.0", "index.js")))
        assert result.content == "foo15"

    def test_fetch_not_found(self):
        """Non-200 answers raise FetchError with status and body."""
        with pytest.raises(FetchError) as excinfo:
            _run(lambda cdn: cdn.fetch(NpmFileLocation("nope", "1.0.0", "index.js")))
        assert excinfo.value.status == 404
        assert str(excinfo.value) == "CDN 404 error: Not Found"

    def test_concurrent_fetches_coalesce(self):
        """Concurrent requests for one range share one network request."""

        async def _fetch_twice(cdn):
            return await asyncio.gather(
                cdn.fetch(NpmFileLocation("foo", "^1.0.0", "index.js")),
                cdn.fetch(NpmFileLocation("foo", "^1.0.0", "index.js")),
            )

        results, fake = _run(_fetch_twice)
        assert [r.content for r in results] == ["foo15", "foo15"]
        assert len(fake.requests) == 1

    def test_version_resolution_is_reused(self):
        """Once a range is resolved, other files use the exact version."""

        async def _fetch_two_files(cdn):
            await cdn.fetch(NpmFileLocation("foo", "^1.0.0", "index.js"))
            return await cdn.fetch(NpmFileLocation("foo", "^1.0.0", "lib/util.js"))

        result, fake = _run(_fetch_two_files)
        assert result.content == "util15"
        assert fake.requests[-1] == fake.prefix + "foo@1.5.0/lib/util.js"

    def test_canonical_location_is_cached(self):
        """A redirected request also fills the cache for its final location."""

        async def _fetch_both(cdn):
            await cdn.fetch(NpmFileLocation("foo", "latest", "index.js"))
            return await cdn.fetch(NpmFileLocation("foo", "2.0.0", "index.js"))

        result, fake = _run(_fetch_both)
        assert result.content == "foo2"
        assert len(fake.requests) == 1

    def test_failed_resolution_can_be_retried_by_other_ranges(self):
        """A failed range does not poison other ranges of the package."""

        async def _fetch(cdn):
            with pytest.raises(FetchError):
                await cdn.fetch(NpmFileLocation("foo", "^9.0.0", "index.js"))
            return await cdn.fetch(NpmFileLocation("foo", "^2.0.0", "index.js"))

        result, _ = _run(_fetch)
        assert result.content == "foo2"


class TestCanonicalize:
    """Resolution to exact version and concrete path."""

    def test_exact_with_extension_needs_no_request(self):
        """Canonical locations are returned without network activity."""
        location = NpmFileLocation("foo", "1.0.0", "index.js")
        result, fake = _run(lambda cdn: cdn.canonicalize(location))
        assert result == location
        assert fake.requests == []

    def test_range_resolved(self):
        """A range is replaced by the exact version."""
        result, _ = _run(lambda cdn: cdn.canonicalize(NpmFileLocation("foo", "^1.0.0", "lib/util.js")))
        assert result == NpmFileLocation("foo", "1.5.0", "lib/util.js")

    def test_extensionless_path_resolved(self):
        """An extension-less path gets the file the CDN serves."""
        result, _ = _run(lambda cdn: cdn.canonicalize(NpmFileLocation("foo", "1.0.0", "lib/util")))
        assert result == NpmFileLocation("foo", "1.0.0", "lib/util.js")

    def test_default_entry_resolved(self):
        """An empty path resolves to the package entry."""
        result, _ = _run(lambda cdn: cdn.canonicalize(NpmFileLocation("foo", "", "")))
        assert result == NpmFileLocation("foo", "2.0.0", "main.js")

    def test_unexpected_final_url(self):
        """A final URL outside the CDN prefix cannot be parsed."""

        async def _redirect_elsewhere(url):
            return CdnResponse(status=200, url="https://elsewhere.test/x.js", text="x")

        async def _inner():
            cdn = CachingCdn("https://fake-cdn.test/", _redirect_elsewhere)
            return await cdn.canonicalize(NpmFileLocation("foo", "^1.0.0", "index.js"))

        with pytest.raises(ParseError):
            asyncio.run(_inner())


class TestFetchPackageJson:
    """package.json retrieval."""

    def test_parsed(self):
        """The manifest is returned as a dict."""
        result, _ = _run(lambda cdn: cdn.fetch_package_json("foo", "2.0.0"))
        assert result == {"main": "main.js"}

    def test_invalid_json(self):
        """Unparsable manifests raise ParseError naming the URL."""
        data = {"bad": package({"1.0.0": {"package.json": "INVALID JSON"}})}
        with pytest.raises(ParseError) as excinfo:
            _run(lambda cdn: cdn.fetch_package_json("bad", "1.0.0"), data=data)
        assert "bad@1.0.0/package.json" in str(excinfo.value)

    def test_non_object_json(self):
        """A JSON value that is not an object is rejected."""
        data = {"bad": package({"1.0.0": {"package.json": "[1, 2]"}})}
        with pytest.raises(ParseError):
            _run(lambda cdn: cdn.fetch_package_json("bad", "1.0.0"), data=data)
