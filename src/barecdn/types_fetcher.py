"""Fetches TypeScript declaration files for bare module imports.

Starting from project sources, declaration files are crawled through the
CDN together with the ``package.json`` files that resolution needs. Every
package is pinned to an exact version and the edges between package versions
are recorded, so that ``get_files`` can lay them out as a nested
``node_modules`` tree in which conflicting versions coexist.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .cdn import CachingCdn
from .constants import Constants, SpecifierKind
from .errors import BareModuleError
from .import_map import ModuleResolver
from .lexer import preprocess_file
from .models import DependencyGraph, NpmFileLocation, PackageJson, PackageVersion
from .node_modules_layout import NodeModulesDirectory, NodeModulesLayoutMaker
from .specifiers import (
    change_file_extension,
    classify_specifier,
    file_extension,
    is_exact_version,
    normalize_package_path,
    parse_npm_style_specifier,
    resolve_url_path,
)

logger = logging.getLogger(__name__)

PackageJsonGetter = Callable[[], Awaitable[Optional[PackageJson]]]

_DECLARATION_EXTENSION = "d.ts"


def types_package_name(pkg: str) -> str:
    """DefinitelyTyped package for ``pkg``, e.g. ``@scope/name`` -> ``@types/scope__name``."""
    if pkg.startswith("@"):
        pkg = pkg[1:].replace("/", "__", 1)
    return f"{Constants.TYPES_SCOPE}/{pkg}"


def _declaration_path(package_json: Optional[PackageJson]) -> str:
    """Declaration entry of a package: typings, types, main as d.ts, index.d.ts."""
    package_json = package_json or {}
    for field_name in ("typings", "types"):
        value = package_json.get(field_name)
        if isinstance(value, str) and normalize_package_path(value):
            return normalize_package_path(value)
    main = package_json.get("main")
    if isinstance(main, str) and normalize_package_path(main):
        return change_file_extension(normalize_package_path(main), _DECLARATION_EXTENSION)
    return Constants.DEFAULT_TYPINGS


def _subpath_declaration(path: str) -> str:
    if path.endswith("." + _DECLARATION_EXTENSION):
        return path
    return change_file_extension(path, _DECLARATION_EXTENSION)


def _dependency_range(package_json: Optional[PackageJson], pkg: str) -> Optional[str]:
    dependencies = (package_json or {}).get("dependencies")
    if not isinstance(dependencies, dict):
        return None
    version = dependencies.get(pkg)
    return version if isinstance(version, str) and version else None


def _log_failures(results: List[Any], what: str) -> None:
    for result in results:
        if isinstance(result, Exception):
            logger.warning("%s failed: %s", what, result, exc_info=result)


class TypesFetcher:
    """Crawls declaration files for one type-checking session.

    The ``add_*`` methods schedule crawls on the running event loop and
    return immediately; ``get_files`` waits for all of them.
    """

    def __init__(self, cdn: CachingCdn, module_resolver: Optional[ModuleResolver] = None):
        self._cdn = cdn
        self._module_resolver = module_resolver or ModuleResolver()
        self._entrypoint_tasks: List[asyncio.Future] = []
        self._handled: Set[NpmFileLocation] = set()
        # Declaration and package.json contents; None for failed fetches.
        self._fetch_results: Dict[NpmFileLocation, asyncio.Future] = {}
        self._root_dependencies: Dict[str, str] = {}
        self._dependency_graph: DependencyGraph = {}

    @property
    def root_dependencies(self) -> Dict[str, str]:
        return dict(self._root_dependencies)

    @property
    def dependency_graph(self) -> DependencyGraph:
        return {
            pkg: {version: dict(deps) for version, deps in versions.items()}
            for pkg, versions in self._dependency_graph.items()
        }

    def add_bare_module_typings(self, source_text: str, get_package_json: PackageJsonGetter) -> None:
        """Start crawling typings for the bare imports of a project source.

        Relative imports are ignored; project files have no declarations on
        the CDN.
        """
        info = preprocess_file(source_text)
        for specifier in info.imported_files + info.type_reference_directives:
            if classify_specifier(specifier) is SpecifierKind.BARE:
                self._schedule(self._handle_bare_specifier(specifier, get_package_json, None))
        for lib in info.lib_reference_directives:
            self._schedule(self._add_lib_typings(lib, get_package_json))

    def add_lib_typings(self, lib: str, get_package_json: PackageJsonGetter) -> None:
        """Start crawling a TypeScript standard library such as ``dom``."""
        self._schedule(self._add_lib_typings(lib, get_package_json))

    async def get_files(self) -> Dict[str, str]:
        """Wait for all crawls and return the laid out files.

        Returns:
            Physical path to content, e.g. ``foo/index.d.ts`` or
            ``foo/node_modules/bar/index.d.ts``.
        """
        # Crawls never schedule entrypoints, but callers may add more while
        # we wait.
        joined = 0
        while joined < len(self._entrypoint_tasks):
            pending = self._entrypoint_tasks[joined:]
            joined = len(self._entrypoint_tasks)
            _log_failures(await asyncio.gather(*pending, return_exceptions=True), "Typings crawl")

        packages: Dict[Tuple[str, str], Dict[str, str]] = {}
        for location, pending_fetch in self._fetch_results.items():
            content = await pending_fetch
            if content is None:
                # A missing file surfaces as a type error on the import.
                continue
            packages.setdefault((location.pkg, location.version), {})[location.path] = content

        layout = NodeModulesLayoutMaker().layout(self._root_dependencies, self._dependency_graph)
        files: Dict[str, str] = {}
        self._emit(layout, "", packages, files)
        return files

    def _emit(
        self,
        directory: NodeModulesDirectory,
        prefix: str,
        packages: Dict[Tuple[str, str], Dict[str, str]],
        files: Dict[str, str],
    ) -> None:
        for pkg, placed in directory.items():
            base = f"{prefix}{pkg}/"
            contents = packages.get((pkg, placed.version), {})
            for path, content in contents.items():
                files[base + path] = content
            if Constants.PACKAGE_JSON_FILE not in contents:
                files[base + Constants.PACKAGE_JSON_FILE] = Constants.PACKAGE_JSON_STUB
            self._emit(placed.node_modules, f"{base}{Constants.NODE_MODULES_DIR}/", packages, files)

    def _schedule(self, crawl: Awaitable[None]) -> None:
        self._entrypoint_tasks.append(asyncio.ensure_future(crawl))

    async def _add_lib_typings(self, lib: str, get_package_json: PackageJsonGetter) -> None:
        await self._handle_bare_specifier(
            Constants.TYPESCRIPT_LIB_SPECIFIER.format(lib=lib.lower()), get_package_json, None
        )

    async def _handle_bare_and_relative_specifiers(
        self,
        source_text: str,
        referrer: NpmFileLocation,
        get_package_json: PackageJsonGetter,
    ) -> None:
        info = preprocess_file(source_text)
        referrer_package = PackageVersion(referrer.pkg, referrer.version)
        crawls: List[Awaitable[None]] = []
        for specifier in info.imported_files + info.type_reference_directives:
            kind = classify_specifier(specifier)
            if kind is SpecifierKind.BARE:
                crawls.append(self._handle_bare_specifier(specifier, get_package_json, referrer_package))
            elif kind is SpecifierKind.RELATIVE:
                crawls.append(self._handle_relative_specifier(specifier, referrer, get_package_json))
        for path in info.referenced_files:
            if classify_specifier(path) is SpecifierKind.URL:
                continue
            if classify_specifier(path) is SpecifierKind.BARE:
                path = "./" + path
            crawls.append(self._handle_relative_specifier(path, referrer, get_package_json))
        for lib in info.lib_reference_directives:
            crawls.append(self._add_lib_typings(lib, get_package_json))
        _log_failures(await asyncio.gather(*crawls, return_exceptions=True), f"Typings crawl from {referrer.pkg}")

    async def _handle_bare_specifier(
        self,
        bare: str,
        get_package_json: PackageJsonGetter,
        referrer: Optional[PackageVersion],
    ) -> None:
        if self._module_resolver.resolve(bare) is not None:
            return
        location = parse_npm_style_specifier(bare)
        if location is None:
            logger.warning("Ignoring invalid module specifier %r", bare)
            return
        pkg = location.pkg
        version = location.version or _dependency_range(await get_package_json(), pkg) or Constants.DEFAULT_VERSION
        try:
            version = await self._resolve_version(pkg, version)
        except BareModuleError as exc:
            logger.debug("Could not resolve %s@%s: %s", pkg, version, exc)
            if not location.path:
                await self._handle_types_package(pkg, get_package_json, referrer)
            return
        self._record_dependency(referrer, pkg, version)

        if location.path:
            dts_path = _subpath_declaration(location.path)
        else:
            dts_path = _declaration_path(await self._fetch_package_json(pkg, version))
        dts = NpmFileLocation(pkg, version, dts_path)
        if dts in self._handled:
            return
        self._handled.add(dts)

        content = await self._fetch_asset(dts)
        if content is None:
            if not location.path:
                await self._handle_types_package(pkg, get_package_json, referrer)
            return
        await self._handle_bare_and_relative_specifiers(content, dts, self._package_json_getter(pkg, version))

    async def _handle_types_package(
        self,
        pkg: str,
        get_package_json: PackageJsonGetter,
        referrer: Optional[PackageVersion],
    ) -> None:
        if pkg.startswith(Constants.TYPES_SCOPE + "/"):
            return
        await self._handle_bare_specifier(types_package_name(pkg), get_package_json, referrer)

    async def _handle_relative_specifier(
        self,
        relative: str,
        referrer: NpmFileLocation,
        get_package_json: PackageJsonGetter,
    ) -> None:
        if relative.endswith("." + _DECLARATION_EXTENSION):
            candidates = [relative]
        elif relative in (".", "..") or relative.endswith("/"):
            candidates = [relative.rstrip("/") + "/" + Constants.DEFAULT_TYPINGS]
        elif file_extension(relative) == "":
            # Presumed .js; may also name a directory.
            candidates = [f"{relative}.{_DECLARATION_EXTENSION}", f"{relative}/{Constants.DEFAULT_TYPINGS}"]
        elif file_extension(relative) in Constants.JS_EXTENSIONS:
            candidates = [change_file_extension(relative, _DECLARATION_EXTENSION)]
        else:
            return

        for candidate in candidates:
            path = resolve_url_path(referrer.path, candidate)[1:]
            dts = NpmFileLocation(referrer.pkg, referrer.version, path)
            content = await self._fetch_asset(dts)
            if content is None:
                continue
            if dts in self._handled:
                return
            self._handled.add(dts)
            await self._handle_bare_and_relative_specifiers(content, dts, get_package_json)
            return

    async def _resolve_version(self, pkg: str, version: str) -> str:
        if is_exact_version(version):
            return version
        canonical = await self._cdn.canonicalize(NpmFileLocation(pkg, version, Constants.PACKAGE_JSON_FILE))
        return canonical.version

    def _record_dependency(self, referrer: Optional[PackageVersion], pkg: str, version: str) -> None:
        if referrer is None:
            existing = self._root_dependencies.setdefault(pkg, version)
            if existing != version:
                logger.warning(
                    "Conflicting root versions of %s: keeping %s, ignoring %s", pkg, existing, version
                )
            return
        if referrer.pkg == pkg:
            return
        self._dependency_graph.setdefault(referrer.pkg, {}).setdefault(referrer.version, {})[pkg] = version

    async def _fetch_asset(self, location: NpmFileLocation) -> Optional[str]:
        pending = self._fetch_results.get(location)
        if pending is None:
            pending = asyncio.ensure_future(self._download(location))
            self._fetch_results[location] = pending
        return await asyncio.shield(pending)

    async def _download(self, location: NpmFileLocation) -> Optional[str]:
        try:
            return (await self._cdn.fetch(location)).content
        except BareModuleError as exc:
            logger.debug("Could not fetch %s@%s/%s: %s", location.pkg, location.version, location.path, exc)
            return None
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Unexpected error fetching %s@%s/%s: %s", location.pkg, location.version, location.path, exc)
            return None

    async def _fetch_package_json(self, pkg: str, version: str) -> Optional[PackageJson]:
        content = await self._fetch_asset(NpmFileLocation(pkg, version, Constants.PACKAGE_JSON_FILE))
        if content is None:
            return None
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.debug("Ignoring invalid package.json of %s@%s", pkg, version)
            return None
        return data if isinstance(data, dict) else None  # type: ignore[return-value]

    def _package_json_getter(self, pkg: str, version: str) -> PackageJsonGetter:
        async def get_package_json() -> Optional[PackageJson]:
            return await self._fetch_package_json(pkg, version)

        return get_package_json
