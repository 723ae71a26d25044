"""Rewrites bare module specifiers in JavaScript build outputs.

Every JS file of a build is scanned for import specifiers. Bare specifiers
are resolved against the CDN and rewritten to relative URLs under
``node_modules/<pkg>@<version>/<path>``; each such dependency file is fetched,
emitted and run through the same rewriting, until no new files turn up.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import replace
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable, List, Optional, Set, Tuple, Union

from .cdn import CachingCdn
from .constants import Constants, SpecifierKind
from .errors import InvalidSpecifierError, ModuleLexerError
from .import_map import ModuleResolver
from .lexer import ImportSpecifier, parse_module_specifiers
from .merge import MergedAsyncIterables
from .models import (
    BuildOutput,
    Diagnostic,
    DiagnosticBuildOutput,
    FileBuildOutput,
    NpmFileLocation,
    PackageJson,
    Position,
    Range,
    SampleFile,
)
from .specifiers import (
    char_to_line_and_char,
    classify_specifier,
    file_extension,
    is_exact_version,
    normalize_package_path,
    parse_npm_style_specifier,
    relative_url_path,
    resolve_url_path,
)

logger = logging.getLogger(__name__)

PackageJsonGetter = Callable[[], Awaitable[Optional[PackageJson]]]

_NODE_MODULES_PREFIX = Constants.NODE_MODULES_DIR + "/"
_LEXER_POSITION_RE = re.compile(r"@:(\d+):(\d+)$")


async def _no_package_json() -> Optional[PackageJson]:
    return None


def _is_javascript(output: BuildOutput) -> bool:
    return isinstance(output, FileBuildOutput) and file_extension(output.file.name) in Constants.JS_EXTENSIONS


def _dependency_range(package_json: Optional[PackageJson], pkg: str) -> Optional[str]:
    dependencies = (package_json or {}).get("dependencies")
    if not isinstance(dependencies, dict):
        return None
    version = dependencies.get(pkg)
    return version if isinstance(version, str) and version else None


def _entry_path(package_json: PackageJson) -> str:
    for field_name in ("module", "main"):
        value = package_json.get(field_name)
        if isinstance(value, str):
            path = normalize_package_path(value)
            if path:
                return path
    return Constants.DEFAULT_ENTRY


async def _iterate(results: Union[AsyncIterable[BuildOutput], Iterable[BuildOutput]]) -> AsyncIterator[BuildOutput]:
    if hasattr(results, "__aiter__"):
        async for result in results:  # type: ignore[union-attr]
            yield result
    else:
        for result in results:  # type: ignore[union-attr]
            yield result


class BareModuleTransformer:
    """Resolves and rewrites bare module specifiers for one build."""

    def __init__(self, cdn: CachingCdn, module_resolver: Optional[ModuleResolver] = None):
        """Initialize the transformer.

        Args:
            cdn: CDN cache for this build.
            module_resolver: Import map consulted before the CDN.
        """
        self._cdn = cdn
        self._module_resolver = module_resolver or ModuleResolver()
        self._already_handled: Set[str] = set()

    async def process(
        self, results: Union[AsyncIterable[BuildOutput], Iterable[BuildOutput]]
    ) -> AsyncIterator[BuildOutput]:
        """Transform a stream of build outputs.

        Non-JS outputs pass through. The returned stream also contains every
        fetched dependency file and any diagnostics, in no particular order.
        """
        merged: MergedAsyncIterables[BuildOutput] = MergedAsyncIterables()
        merged.add(self._process(results, merged))
        async for output in merged:
            yield output

    async def _process(
        self,
        results: Union[AsyncIterable[BuildOutput], Iterable[BuildOutput]],
        merged: MergedAsyncIterables[BuildOutput],
    ) -> AsyncIterator[BuildOutput]:
        package_json: asyncio.Future = asyncio.get_running_loop().create_future()

        async def get_package_json() -> Optional[PackageJson]:
            return await asyncio.shield(package_json)

        try:
            async for result in _iterate(results):
                if _is_javascript(result):
                    merged.add(self._transform_bare_module_specifiers(result, get_package_json, merged))
                    continue
                if (
                    isinstance(result, FileBuildOutput)
                    and result.file.name == Constants.PACKAGE_JSON_FILE
                    and not package_json.done()
                ):
                    package_json.set_result(self._parse_project_package_json(result.file.content))
                yield result
        finally:
            if not package_json.done():
                package_json.set_result(None)

    @staticmethod
    def _parse_project_package_json(content: str) -> Optional[PackageJson]:
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            logger.warning("Invalid package.json: %s", exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Invalid package.json: expected an object")
            return None
        return data  # type: ignore[return-value]

    async def _transform_bare_module_specifiers(
        self,
        file: FileBuildOutput,
        get_package_json: PackageJsonGetter,
        merged: MergedAsyncIterables[BuildOutput],
    ) -> AsyncIterator[BuildOutput]:
        js = file.file.content
        name = file.file.name
        try:
            specifiers = parse_module_specifiers(js)
        except ModuleLexerError as exc:
            yield file
            diagnostic = self._make_diagnostic(exc, name)
            if diagnostic is not None:
                yield diagnostic
            return

        # Resolve everything concurrently, then splice back to front so the
        # recorded offsets of earlier specifiers stay valid.
        transforms: List[Tuple[ImportSpecifier, asyncio.Future]] = []
        for info in reversed(specifiers):
            if info.name is None:
                # A dynamic import of a computed expression; nothing to do.
                continue
            transforms.append(
                (info, asyncio.ensure_future(self._transform_specifier(info.name, name, get_package_json, merged)))
            )

        for info, pending in transforms:
            try:
                new_specifier = await pending
            except Exception as exc:  # pylint: disable=broad-exception-caught
                yield DiagnosticBuildOutput(
                    filename=name,
                    diagnostic=Diagnostic(
                        message=f'Could not resolve module "{info.name}": {exc}',
                        range=Range(
                            start=char_to_line_and_char(js, info.start),
                            end=char_to_line_and_char(js, info.end),
                        ),
                    ),
                )
                continue
            if new_specifier == info.name:
                continue
            replacement = f"'{new_specifier}'" if info.dynamic else new_specifier
            js = js[:info.start] + replacement + js[info.end:]

        yield FileBuildOutput(file=replace(file.file, content=js))

    async def _transform_specifier(
        self,
        specifier: str,
        referrer: str,
        get_package_json: PackageJsonGetter,
        merged: MergedAsyncIterables[BuildOutput],
    ) -> str:
        kind = classify_specifier(specifier)
        if kind is SpecifierKind.URL:
            return specifier
        if kind is SpecifierKind.BARE:
            mapped = self._module_resolver.resolve(specifier)
            if mapped is not None:
                return mapped
            return await self._transform_bare_specifier(specifier, referrer, get_package_json, merged)

        if not referrer.startswith(_NODE_MODULES_PREFIX):
            # Project-local file.
            return specifier
        absolute = resolve_url_path(referrer, specifier)
        bare = absolute[len("/" + _NODE_MODULES_PREFIX):]
        if not file_extension(specifier):
            # "./bar" may mean "./bar.js" or "./bar/index.js"; only the CDN
            # knows. The version is already in the path, so no package.json.
            return await self._transform_bare_specifier(bare, referrer, _no_package_json, merged)
        location = parse_npm_style_specifier(bare)
        if location is None:
            raise InvalidSpecifierError(f"Invalid specifier: {specifier}")
        await self._cdn.fetch(location)
        merged.add(self._handle_dependency(location, merged))
        return specifier

    async def _transform_bare_specifier(
        self,
        specifier: str,
        referrer: str,
        get_package_json: PackageJsonGetter,
        merged: MergedAsyncIterables[BuildOutput],
    ) -> str:
        location = parse_npm_style_specifier(specifier)
        if location is None:
            raise InvalidSpecifierError(f"Invalid specifier: {specifier}")
        if not location.version:
            version = _dependency_range(await get_package_json(), location.pkg)
            location = replace(location, version=version or Constants.DEFAULT_VERSION)
        if not location.path:
            package_json = await self._cdn.fetch_package_json(location.pkg, location.version)
            location = replace(location, path=_entry_path(package_json))
        if not file_extension(location.path) or not is_exact_version(location.version):
            location = await self._cdn.canonicalize(location)
        await self._cdn.fetch(location)
        merged.add(self._handle_dependency(location, merged))
        absolute = f"{_NODE_MODULES_PREFIX}{location.pkg}@{location.version}/{location.path}"
        return relative_url_path(referrer, absolute)

    async def _handle_dependency(
        self, location: NpmFileLocation, merged: MergedAsyncIterables[BuildOutput]
    ) -> AsyncIterator[BuildOutput]:
        key = f"{location.pkg}@{location.version}/{location.path}"
        if key in self._already_handled:
            return
        self._already_handled.add(key)
        try:
            asset = await self._cdn.fetch(location)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            logger.warning("Could not fetch dependency %s: %s", key, exc)
            return
        dependency = FileBuildOutput(
            file=SampleFile(
                name=_NODE_MODULES_PREFIX + key,
                content=asset.content,
                content_type=asset.content_type,
            )
        )
        async for output in self._transform_bare_module_specifiers(
            dependency, self._dependency_package_json(location), merged
        ):
            yield output

    def _dependency_package_json(self, location: NpmFileLocation) -> PackageJsonGetter:
        """Lazily fetched, shared package.json of a dependency.

        Fetch and parse failures are treated as an absent manifest.
        """
        pending: Optional[asyncio.Future] = None

        async def load() -> Optional[PackageJson]:
            try:
                return await self._cdn.fetch_package_json(location.pkg, location.version)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                logger.debug("No usable package.json for %s@%s: %s", location.pkg, location.version, exc)
                return None

        async def get_package_json() -> Optional[PackageJson]:
            nonlocal pending
            if pending is None:
                pending = asyncio.ensure_future(load())
            return await asyncio.shield(pending)

        return get_package_json

    @staticmethod
    def _make_diagnostic(exc: ModuleLexerError, filename: str) -> Optional[DiagnosticBuildOutput]:
        match = _LEXER_POSITION_RE.search(str(exc))
        if match is None:
            return None
        line = int(match.group(1)) - 1
        character = int(match.group(2)) - 1
        return DiagnosticBuildOutput(
            filename=filename,
            diagnostic=Diagnostic(
                message=f"Module syntax error: {exc}",
                range=Range(
                    start=Position(line=line, character=character),
                    end=Position(line=line, character=character + 1),
                ),
            ),
        )
