"""barecdn: run npm-style bare imports straight from a package CDN.

This package rewrites bare module specifiers (``import "lodash"``) in
JavaScript to relative URLs of files fetched from an unpkg-style CDN, and
collects the TypeScript declaration files needed to type-check such imports,
without a package manager or install step.
"""

from .cdn import CachingCdn
from .config import BuildConfig
from .errors import BareModuleError, FetchError, InvalidSpecifierError, ModuleLexerError, ParseError
from .import_map import ModuleResolver
from .merge import MergedAsyncIterables
from .models import (
    CdnFile,
    Diagnostic,
    DiagnosticBuildOutput,
    FileBuildOutput,
    NpmFileLocation,
    Position,
    Range,
    SampleFile,
)
from .node_modules_layout import NodeModulesLayoutMaker, PackageDirectory
from .transformer import BareModuleTransformer
from .types_fetcher import TypesFetcher

__all__ = [
    "CachingCdn",
    "BuildConfig",
    "BareModuleError",
    "FetchError",
    "InvalidSpecifierError",
    "ModuleLexerError",
    "ParseError",
    "ModuleResolver",
    "MergedAsyncIterables",
    "CdnFile",
    "Diagnostic",
    "DiagnosticBuildOutput",
    "FileBuildOutput",
    "NpmFileLocation",
    "Position",
    "Range",
    "SampleFile",
    "NodeModulesLayoutMaker",
    "PackageDirectory",
    "BareModuleTransformer",
    "TypesFetcher",
]
