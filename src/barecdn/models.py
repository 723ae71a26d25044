"""Data models for locations, manifests and build outputs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TypedDict, Union


@dataclass(frozen=True)
class NpmFileLocation:
    """A file inside an npm package as served by the CDN.

    ``version`` may be empty, a range, a dist-tag or an exact version; ``path``
    may be empty when the entry module has not been discovered yet.
    """
    pkg: str
    version: str = ""
    path: str = ""


@dataclass(frozen=True)
class PackageVersion:
    """A package pinned to one exact version."""
    pkg: str
    version: str


class PackageJson(TypedDict, total=False):
    """The subset of package.json fields that drive resolution."""
    dependencies: Dict[str, str]
    main: str
    module: str
    types: str
    typings: str


@dataclass(frozen=True)
class CdnFile:
    """File content as returned by the CDN."""
    content: str
    content_type: str


@dataclass
class SampleFile:
    """A named project or dependency file."""
    name: str
    content: str
    content_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "content": self.content}
        if self.content_type is not None:
            data["contentType"] = self.content_type
        return data


@dataclass(frozen=True)
class Position:
    """Zero-based line and character."""
    line: int
    character: int

    def to_dict(self) -> Dict[str, int]:
        return {"line": self.line, "character": self.character}


@dataclass(frozen=True)
class Range:
    """Half-open range between two positions."""
    start: Position
    end: Position

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start.to_dict(), "end": self.end.to_dict()}


@dataclass(frozen=True)
class Diagnostic:
    """A problem attached to a range of a file."""
    message: str
    range: Range
    code: Optional[int] = None
    severity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message, "range": self.range.to_dict()}
        if self.code is not None:
            data["code"] = self.code
        if self.severity is not None:
            data["severity"] = self.severity
        return data


@dataclass
class FileBuildOutput:
    """A file emitted by the build."""
    file: SampleFile
    kind: str = field(default="file", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "file": self.file.to_dict()}


@dataclass
class DiagnosticBuildOutput:
    """A diagnostic emitted by the build."""
    filename: str
    diagnostic: Diagnostic
    kind: str = field(default="diagnostic", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "filename": self.filename,
            "diagnostic": self.diagnostic.to_dict(),
        }


BuildOutput = Union[FileBuildOutput, DiagnosticBuildOutput]

# pkg -> version -> (dependency pkg -> dependency version)
DependencyGraph = Dict[str, Dict[str, Dict[str, str]]]
