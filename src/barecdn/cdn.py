"""Version-resolving, content-addressed cache in front of an npm CDN.

URLs follow the unpkg convention ``<prefix><pkg>@<version-or-range>/<path>``.
When the CDN redirects an inexact request (a range, a dist-tag, a missing or
extension-less path), the final URL is parsed back into a location to learn
the exact version and canonical path.

All caches hold futures rather than values, so concurrent callers asking for
the same range or file share one network request.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import Dict, Optional, Tuple

from .common.http_client import Fetcher, HttpFetcher
from .constants import Constants
from .errors import FetchError, ParseError
from .models import CdnFile, NpmFileLocation, PackageJson
from .specifiers import (
    file_extension,
    is_exact_version,
    parse_npm_style_specifier,
    pkg_version,
    pkg_version_path,
)

logger = logging.getLogger(__name__)

_FetchResult = Tuple[str, CdnFile]


class CachingCdn:
    """Fetches package files from the CDN, caching by resolved location.

    One instance belongs to one build or type-fetch session.
    """

    def __init__(
        self,
        url_prefix: str = Constants.CDN_URL_PREFIX,
        fetcher: Optional[Fetcher] = None,
        close_fetcher: bool = False,
    ):
        """Initialize the CDN cache.

        Args:
            url_prefix: CDN base URL, e.g. ``https://unpkg.com/``.
            fetcher: HTTP primitive; an ``HttpFetcher`` is created when omitted.
            close_fetcher: Stop the given ``HttpFetcher`` on ``close()``.
        """
        self._url_prefix = url_prefix if url_prefix.endswith("/") else url_prefix + "/"
        self._owns_fetcher = fetcher is None or close_fetcher
        self._fetcher: Fetcher = fetcher if fetcher is not None else HttpFetcher()
        # pkg@range -> future of the exact version (None when resolution failed)
        self._version_cache: Dict[str, asyncio.Future] = {}
        # pkg@version/path -> future of (final url, file)
        self._file_cache: Dict[str, asyncio.Future] = {}

    @property
    def url_prefix(self) -> str:
        return self._url_prefix

    async def close(self) -> None:
        """Release the default fetcher, if this instance created it."""
        if self._owns_fetcher and isinstance(self._fetcher, HttpFetcher):
            await self._fetcher.stop()

    async def __aenter__(self) -> "CachingCdn":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def fetch(self, location: NpmFileLocation) -> CdnFile:
        """Fetch one file, resolving its version first if needed.

        Raises:
            FetchError: The CDN did not answer 200.
        """
        _, file = await self._fetch(location)
        return file

    async def canonicalize(self, location: NpmFileLocation) -> NpmFileLocation:
        """Return the location with an exact version and a concrete file path.

        Locations that are already exact and have an extension are returned
        unchanged without any network activity.
        """
        location, exact = await self._apply_version_cache(location)
        if not exact or file_extension(location.path) == "":
            url, _ = await self._fetch(location)
            location = self._parse_cdn_url(url)
        return location

    async def fetch_package_json(self, pkg: str, version: str) -> PackageJson:
        """Fetch and parse ``package.json`` for a package version.

        Raises:
            FetchError: The CDN did not answer 200.
            ParseError: The body is not a JSON object.
        """
        url, file = await self._fetch(NpmFileLocation(pkg, version, Constants.PACKAGE_JSON_FILE))
        try:
            data = json.loads(file.content)
        except json.JSONDecodeError as exc:
            raise ParseError(f"JSON error from {url}: {file.content}") from exc
        if not isinstance(data, dict):
            raise ParseError(f"JSON error from {url}: {file.content}")
        return data  # type: ignore[return-value]

    async def _apply_version_cache(self, location: NpmFileLocation) -> Tuple[NpmFileLocation, bool]:
        """Substitute an already resolved (or resolving) exact version."""
        if is_exact_version(location.version):
            return location, True
        while True:
            pending = self._version_cache.get(pkg_version(location))
            if pending is None:
                return location, False
            resolved = await asyncio.shield(pending)
            if resolved is not None:
                return replace(location, version=resolved), True
            # The in-flight resolution failed and was dropped; look again in
            # case another caller has started a new one meanwhile.

    async def _fetch(self, location: NpmFileLocation) -> _FetchResult:
        location, exact = await self._apply_version_cache(location)
        key = pkg_version_path(location)
        pending = self._file_cache.get(key)
        if pending is None:
            version_future: Optional[asyncio.Future] = None
            if not exact:
                version_future = asyncio.get_running_loop().create_future()
                self._version_cache[pkg_version(location)] = version_future
            pending = asyncio.ensure_future(self._download(location, key, version_future))
            self._file_cache[key] = pending
        return await asyncio.shield(pending)

    async def _download(
        self,
        location: NpmFileLocation,
        key: str,
        version_future: Optional[asyncio.Future],
    ) -> _FetchResult:
        url = self._url_prefix + key
        try:
            logger.debug("Fetching %s", url)
            response = await self._fetcher(url)
            if response.status != 200:
                raise FetchError(response.status, response.text)
            result = (
                response.url,
                CdnFile(
                    content=response.text,
                    content_type=response.content_type or Constants.DEFAULT_CONTENT_TYPE,
                ),
            )
            canonical: Optional[NpmFileLocation] = None
            if version_future is not None:
                canonical = self._parse_cdn_url(response.url)
                version_future.set_result(canonical.version)
            elif response.url != url and response.url.startswith(self._url_prefix):
                canonical = parse_npm_style_specifier(response.url[len(self._url_prefix):])
            if canonical is not None:
                self._remember(pkg_version_path(canonical), result)
            return result
        finally:
            if version_future is not None and not version_future.done():
                range_key = pkg_version(location)
                if self._version_cache.get(range_key) is version_future:
                    del self._version_cache[range_key]
                version_future.set_result(None)

    def _remember(self, key: str, result: _FetchResult) -> None:
        """Also cache a result under its canonical key."""
        if key in self._file_cache:
            return
        future = asyncio.get_running_loop().create_future()
        future.set_result(result)
        self._file_cache[key] = future

    def _parse_cdn_url(self, url: str) -> NpmFileLocation:
        if url.startswith(self._url_prefix):
            parsed = parse_npm_style_specifier(url[len(self._url_prefix):])
            if parsed is not None:
                return parsed
        raise ParseError(f"Unexpected CDN URL format: {url}")
