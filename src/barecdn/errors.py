"""Exception types raised while resolving and fetching modules."""

from __future__ import annotations


class BareModuleError(Exception):
    """Base class for all barecdn errors."""


class FetchError(BareModuleError):
    """The CDN answered with a non-200 status, or could not be reached.

    A status of 0 means no HTTP response was received at all.
    """

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        if status:
            super().__init__(f"CDN {status} error: {body}")
        else:
            super().__init__(body)


class ParseError(BareModuleError):
    """Malformed JSON, specifier or CDN URL."""


class InvalidSpecifierError(ParseError):
    """A specifier that cannot be parsed as an npm-style location."""


class ModuleLexerError(BareModuleError):
    """A JavaScript module could not be scanned for imports.

    When the position is known the message ends with ``@:<line>:<column>``
    (1-based).
    """

    def __init__(self, message: str, line: int | None = None, column: int | None = None):
        self.line = line
        self.column = column
        if line is not None and column is not None:
            message = f"{message} @:{line}:{column}"
        super().__init__(message)
