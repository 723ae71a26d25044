"""Scanning JavaScript and TypeScript sources for module specifiers.

Both scanners are built on tree-sitter. ``parse_module_specifiers`` is used
to rewrite executable JavaScript, so it reports exact character offsets and
refuses sources with syntax errors. ``preprocess_file`` only enumerates what
a TypeScript file depends on (imports and triple-slash directives) and
tolerates broken input.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator, List, Optional

import tree_sitter as ts
import tree_sitter_javascript as tsjs
import tree_sitter_typescript as tsts

from .errors import ModuleLexerError

JS_LANGUAGE = ts.Language(tsjs.language())
TS_LANGUAGE = ts.Language(tsts.language_typescript())

_js_parser: Optional[ts.Parser] = None
_ts_parser: Optional[ts.Parser] = None

_TRIPLE_SLASH_RE = re.compile(
    r"""^///\s*<reference\s+(?P<kind>path|types|lib)\s*=\s*(?P<quote>["'])(?P<value>.*?)(?P=quote)"""
)


def _get_js_parser() -> ts.Parser:
    global _js_parser
    if _js_parser is None:
        _js_parser = ts.Parser(JS_LANGUAGE)
    return _js_parser


def _get_ts_parser() -> ts.Parser:
    global _ts_parser
    if _ts_parser is None:
        _ts_parser = ts.Parser(TS_LANGUAGE)
    return _ts_parser


@dataclass(frozen=True)
class ImportSpecifier:
    """One module specifier occurrence.

    For static imports and re-exports ``start``/``end`` span the specifier
    text without its quotes. For dynamic imports they span the whole string
    literal, quotes included. ``name`` is None for a dynamic import whose
    argument is not a string literal.
    """
    name: Optional[str]
    start: int
    end: int
    dynamic: bool = False


@dataclass
class FileInfo:
    """Dependencies declared by a TypeScript source file."""
    imported_files: List[str] = field(default_factory=list)
    referenced_files: List[str] = field(default_factory=list)
    type_reference_directives: List[str] = field(default_factory=list)
    lib_reference_directives: List[str] = field(default_factory=list)


class _Source:
    """Source text with byte offset to character offset conversion."""

    def __init__(self, text: str):
        self.text = text
        self.data = text.encode("utf-8")
        self._ascii = len(self.data) == len(text)

    def char_offset(self, byte_offset: int) -> int:
        if self._ascii:
            return byte_offset
        return len(self.data[:byte_offset].decode("utf-8", errors="replace"))


def _walk(node: ts.Node) -> Iterator[ts.Node]:
    """Pre-order traversal in source order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def _first_error(root: ts.Node) -> ts.Node:
    for node in _walk(root):
        if node.type == "ERROR" or node.is_missing:
            return node
    return root


def _is_import_call(node: ts.Node) -> bool:
    function = node.child_by_field_name("function")
    return function is not None and function.type == "import"


def _is_require_call(node: ts.Node) -> bool:
    function = node.child_by_field_name("function")
    return function is not None and function.type == "identifier" and function.text == b"require"


def _first_argument(node: ts.Node) -> Optional[ts.Node]:
    arguments = node.child_by_field_name("arguments")
    if arguments is None or not arguments.named_children:
        return None
    return arguments.named_children[0]


def _is_plain_literal(node: ts.Node) -> bool:
    if node.type == "string":
        return True
    if node.type == "template_string":
        return not any(child.type == "template_substitution" for child in node.named_children)
    return False


def parse_module_specifiers(source_text: str) -> List[ImportSpecifier]:
    """Find import, export-from and dynamic import specifiers in JavaScript.

    Raises:
        ModuleLexerError: The source contains a syntax error.
    """
    source = _Source(source_text)
    tree = _get_js_parser().parse(source.data)
    root = tree.root_node
    if root.has_error:
        error = _first_error(root)
        start = source.char_offset(error.start_byte)
        line = source_text.count("\n", 0, start)
        column = start - (source_text.rfind("\n", 0, start) + 1)
        raise ModuleLexerError("Unexpected syntax", line + 1, column + 1)

    specifiers: List[ImportSpecifier] = []
    for node in _walk(root):
        if node.type in ("import_statement", "export_statement"):
            string = node.child_by_field_name("source")
            if string is None:
                continue
            start = source.char_offset(string.start_byte) + 1
            end = source.char_offset(string.end_byte) - 1
            specifiers.append(ImportSpecifier(source_text[start:end], start, end))
        elif node.type == "call_expression" and _is_import_call(node):
            argument = _first_argument(node)
            if argument is None:
                continue
            start = source.char_offset(argument.start_byte)
            end = source.char_offset(argument.end_byte)
            name = source_text[start + 1:end - 1] if _is_plain_literal(argument) else None
            specifiers.append(ImportSpecifier(name, start, end, dynamic=True))
    return specifiers


def _string_value(node: Optional[ts.Node]) -> Optional[str]:
    if node is None or not _is_plain_literal(node):
        return None
    return node.text.decode("utf-8", errors="replace")[1:-1]


def preprocess_file(source_text: str) -> FileInfo:
    """Enumerate imports and triple-slash references of a TypeScript file."""
    tree = _get_ts_parser().parse(source_text.encode("utf-8"))
    root = tree.root_node
    info = FileInfo()

    # Triple-slash directives only count before the first statement.
    for child in root.children:
        if child.type != "comment":
            break
        match = _TRIPLE_SLASH_RE.match(child.text.decode("utf-8", errors="replace"))
        if match is None:
            continue
        kind, value = match.group("kind"), match.group("value")
        if kind == "path":
            info.referenced_files.append(value)
        elif kind == "types":
            info.type_reference_directives.append(value)
        else:
            info.lib_reference_directives.append(value)

    for node in _walk(root):
        value = None
        if node.type in ("import_statement", "export_statement", "import_require_clause"):
            value = _string_value(node.child_by_field_name("source"))
        elif node.type == "call_expression" and (_is_import_call(node) or _is_require_call(node)):
            value = _string_value(_first_argument(node))
        elif node.type == "string" and node.parent is not None and node.parent.type == "ERROR":
            # Recovered statements such as ``declare export * from "x"``.
            previous = node.prev_sibling
            if previous is not None and previous.type in ("from", "import"):
                value = _string_value(node)
        if value:
            info.imported_files.append(value)

    info.imported_files = list(dict.fromkeys(info.imported_files))
    info.referenced_files = list(dict.fromkeys(info.referenced_files))
    info.type_reference_directives = list(dict.fromkeys(info.type_reference_directives))
    info.lib_reference_directives = list(dict.fromkeys(info.lib_reference_directives))
    return info
