"""Command line interface for barecdn.

``barecdn build`` rewrites the bare imports of a project directory and writes
it, together with every fetched dependency file, to an output directory.
``barecdn types`` collects the declaration files needed to type-check the
bare imports of some TypeScript sources.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .common.logging_utils import configure_logging, extra_context, is_debug_enabled
from .config import BuildConfig
from .constants import Constants, ExitCodes
from .models import BuildOutput, DiagnosticBuildOutput, FileBuildOutput, PackageJson, SampleFile
from .transformer import BareModuleTransformer
from .types_fetcher import TypesFetcher

logger = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-o", "--output",
                        dest="OUTPUT",
                        help="Output directory",
                        action="store", type=str,
                        required=True)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="YAML or JSON config file",
                        action="store", type=str)
    parser.add_argument("--cdn-url",
                        dest="CDN_URL",
                        help=f"CDN base URL (default: {Constants.CDN_URL_PREFIX})",
                        action="store", type=str)
    parser.add_argument("--timeout",
                        dest="TIMEOUT",
                        help=f"Timeout per HTTP request in seconds (default: {Constants.REQUEST_TIMEOUT})",
                        action="store", type=float)
    parser.add_argument("--retries",
                        dest="RETRIES",
                        help=f"Attempts per HTTP request (default: {Constants.HTTP_RETRY_MAX})",
                        action="store", type=int)
    parser.add_argument("--import-map",
                        dest="IMPORT_MAP",
                        help="JSON import map whose entries bypass the CDN",
                        action="store", type=str)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store", type=str.upper,
                        choices=LOG_LEVELS)
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store", type=str)
    parser.add_argument("--error-on-warnings",
                        dest="ERROR_ON_WARNINGS",
                        help="Exit with a non-zero status code if diagnostics are present.",
                        action="store_true")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="barecdn",
        description="Resolve bare module imports against a package CDN",
        add_help=True,
    )
    subparsers = parser.add_subparsers(dest="COMMAND", required=True)

    build = subparsers.add_parser("build", help="Rewrite bare imports of a project directory")
    build.add_argument("SOURCE", help="Project directory", type=str)
    _add_common_arguments(build)

    types = subparsers.add_parser("types", help="Fetch declaration files for bare imports")
    types.add_argument("FILES", help="TypeScript sources", nargs="+", type=str)
    types.add_argument("--package-json",
                       dest="PACKAGE_JSON",
                       help="package.json whose dependencies pin versions",
                       action="store", type=str)
    types.add_argument("--lib",
                       dest="LIBS",
                       help="TypeScript standard library to include, e.g. dom (repeatable)",
                       action="append", type=str,
                       default=[])
    _add_common_arguments(types)

    return parser.parse_args(argv)


def _setup_logging(config: BuildConfig) -> None:
    """Configure logging from the effective config."""
    configure_logging(config.log_level)

    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_barecdn_file_handler", False):
            root.removeHandler(handler)
            handler.close()

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        file_handler.setFormatter(formatter)
        file_handler._barecdn_file_handler = True  # type: ignore[attr-defined]
        root.addHandler(file_handler)
        logger.info("Logging to file: %s", config.log_file)


def load_project(source_dir: str, skip_dir: Optional[str] = None) -> List[SampleFile]:
    """Read every text file below ``source_dir``.

    ``node_modules`` directories and ``skip_dir`` are not descended into.
    Files that are not valid UTF-8 are skipped with a warning.
    """
    skip = os.path.abspath(skip_dir) if skip_dir else None
    files: List[SampleFile] = []
    for dirpath, dirnames, filenames in os.walk(source_dir):
        dirnames[:] = sorted(
            d for d in dirnames
            if d != Constants.NODE_MODULES_DIR and os.path.abspath(os.path.join(dirpath, d)) != skip
        )
        for filename in sorted(filenames):
            path = os.path.join(dirpath, filename)
            name = os.path.relpath(path, source_dir).replace(os.sep, "/")
            try:
                with open(path, "r", encoding="utf-8") as f:
                    content = f.read()
            except UnicodeDecodeError:
                logger.warning("Skipping non-text file: %s", name)
                continue
            files.append(SampleFile(name=name, content=content))
    return files


def write_files(output_dir: str, files: Dict[str, str]) -> None:
    """Write ``name -> content`` pairs below ``output_dir``."""
    root = os.path.abspath(output_dir)
    for name, content in files.items():
        path = os.path.abspath(os.path.join(root, *name.split("/")))
        if os.path.commonpath([root, path]) != root:
            logger.warning("Refusing to write outside the output directory: %s", name)
            continue
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)


def format_diagnostic(output: DiagnosticBuildOutput) -> str:
    """Render a diagnostic as ``file:line:col: message`` (1-based)."""
    start = output.diagnostic.range.start
    return f"{output.filename}:{start.line + 1}:{start.character + 1}: {output.diagnostic.message}"


async def run_build(
    config: BuildConfig, source_dir: str, output_dir: str
) -> Tuple[Dict[str, str], List[DiagnosticBuildOutput], int]:
    """Transform a project directory.

    Returns:
        Emitted files, diagnostics and the number of CDN requests that failed
        at the connection level.
    """
    project = load_project(source_dir, skip_dir=output_dir)
    fetcher = config.create_fetcher()
    files: Dict[str, str] = {}
    diagnostics: List[DiagnosticBuildOutput] = []
    async with config.create_cdn(fetcher) as cdn:
        transformer = BareModuleTransformer(cdn, config.create_module_resolver())
        inputs: List[BuildOutput] = [FileBuildOutput(file=file) for file in project]
        async for output in transformer.process(inputs):
            if isinstance(output, FileBuildOutput):
                files[output.file.name] = output.file.content
            else:
                diagnostics.append(output)
    return files, diagnostics, fetcher.failed_requests


async def run_types(
    config: BuildConfig,
    sources: List[str],
    package_json: Optional[PackageJson],
    libs: List[str],
) -> Tuple[Dict[str, str], int]:
    """Fetch typings for the given source texts and libs."""
    fetcher = config.create_fetcher()

    async def get_package_json() -> Optional[PackageJson]:
        return package_json

    async with config.create_cdn(fetcher) as cdn:
        fetcher_session = TypesFetcher(cdn, config.create_module_resolver())
        for source in sources:
            fetcher_session.add_bare_module_typings(source, get_package_json)
        for lib in libs:
            fetcher_session.add_lib_typings(lib, get_package_json)
        files = await fetcher_session.get_files()
    return files, fetcher.failed_requests


def _read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _build_command(args: Any, config: BuildConfig) -> ExitCodes:
    if not os.path.isdir(args.SOURCE):
        logger.error("Source directory not found: %s", args.SOURCE)
        return ExitCodes.FILE_ERROR
    try:
        files, diagnostics, failed = asyncio.run(run_build(config, args.SOURCE, args.OUTPUT))
        write_files(args.OUTPUT, files)
    except OSError as e:
        logger.error("File error: %s", e)
        return ExitCodes.FILE_ERROR

    for diagnostic in diagnostics:
        sys.stderr.write(format_diagnostic(diagnostic) + "\n")
    logger.info("Wrote %d files to %s (%d diagnostics)", len(files), args.OUTPUT, len(diagnostics))

    if failed:
        logger.error("%d CDN requests failed; check connectivity to %s", failed, config.cdn_url)
        return ExitCodes.CONNECTION_ERROR
    if diagnostics and args.ERROR_ON_WARNINGS:
        return ExitCodes.EXIT_WARNINGS
    return ExitCodes.SUCCESS


def _types_command(args: Any, config: BuildConfig) -> ExitCodes:
    try:
        sources = [_read_text(path) for path in args.FILES]
        package_json: Optional[PackageJson] = None
        if args.PACKAGE_JSON:
            package_json = json.loads(_read_text(args.PACKAGE_JSON))  # type: ignore[assignment]
            if not isinstance(package_json, dict):
                logger.warning("Ignoring %s: expected an object", args.PACKAGE_JSON)
                package_json = None
    except OSError as e:
        logger.error("File error: %s", e)
        return ExitCodes.FILE_ERROR
    except json.JSONDecodeError as e:
        logger.warning("Ignoring invalid %s: %s", args.PACKAGE_JSON, e)
        package_json = None

    try:
        files, failed = asyncio.run(run_types(config, sources, package_json, args.LIBS))
        write_files(args.OUTPUT, files)
    except OSError as e:
        logger.error("File error: %s", e)
        return ExitCodes.FILE_ERROR

    logger.info("Wrote %d typings files to %s", len(files), args.OUTPUT)
    if failed:
        logger.error("%d CDN requests failed; check connectivity to %s", failed, config.cdn_url)
        return ExitCodes.CONNECTION_ERROR
    return ExitCodes.SUCCESS


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function of the program."""
    args = parse_args(argv)
    config = BuildConfig.from_args(args)
    _setup_logging(config)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND),
        )

    if args.COMMAND == "build":
        code = _build_command(args, config)
    else:
        code = _types_command(args, config)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(event="function_exit", component="cli", action=args.COMMAND, outcome=code.name),
        )
    return code.value


if __name__ == "__main__":
    sys.exit(main())
