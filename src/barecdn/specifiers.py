"""Specifier classification, npm-style location parsing and path helpers.

Everything here is pure string manipulation; nothing touches the network.
"""

from __future__ import annotations

import posixpath
import re
from typing import Optional
from urllib.parse import urljoin, urlsplit

import semantic_version

from .constants import Constants, SpecifierKind
from .models import NpmFileLocation, Position

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

# [@scope/]name[@version][/path]
_NPM_SPECIFIER_RE = re.compile(
    r"^(?P<pkg>(?:@[^/\\%@]+/)?[^/\\%@]+)(?:@(?P<version>[^/\\%]+))?(?:/(?P<path>.*))?$"
)

_RESOLVE_BASE = "https://resolve.invalid/"


def classify_specifier(specifier: str) -> SpecifierKind:
    """Return whether a module specifier is a URL, bare or relative."""
    if _SCHEME_RE.match(specifier) or specifier.startswith("/"):
        return SpecifierKind.URL
    if specifier.startswith(("./", "../")) or specifier in (".", ".."):
        return SpecifierKind.RELATIVE
    return SpecifierKind.BARE


def parse_npm_style_specifier(specifier: str) -> Optional[NpmFileLocation]:
    """Parse ``[@scope/]name[@version][/path]`` into a location.

    Returns None when the specifier does not have that shape.
    """
    match = _NPM_SPECIFIER_RE.match(specifier)
    if match is None:
        return None
    return NpmFileLocation(
        pkg=match.group("pkg"),
        version=match.group("version") or "",
        path=match.group("path") or "",
    )


def is_exact_version(version: str) -> bool:
    """True for a full semver version such as ``1.2.3`` or ``1.0.0-rc.1``."""
    try:
        semantic_version.Version(version)
    except ValueError:
        return False
    return True


def pkg_version(location: NpmFileLocation) -> str:
    """Format ``pkg@version``, defaulting the version to ``latest``."""
    return f"{location.pkg}@{location.version or Constants.DEFAULT_VERSION}"


def pkg_version_path(location: NpmFileLocation) -> str:
    """Format ``pkg@version/path`` as used in CDN URLs and cache keys."""
    path = location.path[1:] if location.path.startswith("/") else location.path
    key = f"{pkg_version(location)}/{path}"
    return key[:-1] if key.endswith("/") else key


def file_extension(path: str) -> str:
    """Extension of the last path segment without the dot, or ''."""
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[1]


def change_file_extension(path: str, new_extension: str) -> str:
    """Replace (or add) the extension of a path. ``.d.ts`` counts as one."""
    if path.endswith(".d.ts"):
        stem = path[: -len(".d.ts")]
    else:
        extension = file_extension(path)
        stem = path[: -(len(extension) + 1)] if extension else path
    return f"{stem}.{new_extension}"


def normalize_package_path(path: str) -> str:
    """Normalize a path taken from package.json, e.g. ``./lib/main.js``."""
    path = path.strip().lstrip("/")
    if not path:
        return ""
    normalized = posixpath.normpath(path)
    return "" if normalized == "." else normalized


def resolve_url_path(referrer: str, specifier: str) -> str:
    """Resolve a relative specifier against a referrer path.

    The result is always absolute, e.g. ``/node_modules/foo@1.0.0/bar.js``.
    """
    base = _RESOLVE_BASE + referrer.lstrip("/")
    return urlsplit(urljoin(base, specifier)).path


def relative_url_path(from_path: str, to_path: str) -> str:
    """Relative URL that reaches ``to_path`` from the file ``from_path``.

    Both paths are taken relative to the same root. The result always starts
    with ``./`` or ``../`` so that browsers treat it as relative.
    """
    from_dir = posixpath.dirname("/" + from_path.lstrip("/"))
    relative = posixpath.relpath("/" + to_path.lstrip("/"), from_dir)
    if relative.startswith("../"):
        return relative
    return "./" + relative


def char_to_line_and_char(text: str, offset: int) -> Position:
    """Convert a character offset into a zero-based line/character position."""
    line = text.count("\n", 0, offset)
    line_start = text.rfind("\n", 0, offset) + 1
    return Position(line=line, character=offset - line_start)
