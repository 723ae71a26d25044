"""Tests for the command line interface."""

import json
import logging
from unittest.mock import patch

import pytest

from barecdn import cli
from barecdn.config import BuildConfig
from barecdn.constants import ExitCodes
from barecdn.models import Diagnostic, DiagnosticBuildOutput, Position, Range

from fake_cdn import PREFIX, FakeCdn, package

CDN_DATA = {
    "foo": package({"1.0.0": {"index.js": "export const foo = 1;", "index.d.ts": "export declare const foo: 1;"}}),
}


def _write(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class TestParseArgs:
    """Argument parsing."""

    def test_build_arguments(self):
        args = cli.parse_args(["build", "src", "-o", "out", "--cdn-url", "https://x/", "--retries", "2"])
        assert args.COMMAND == "build"
        assert args.SOURCE == "src"
        assert args.OUTPUT == "out"
        assert args.CDN_URL == "https://x/"
        assert args.RETRIES == 2
        assert args.ERROR_ON_WARNINGS is False

    def test_types_arguments(self):
        args = cli.parse_args(["types", "a.ts", "b.ts", "-o", "out", "--lib", "dom", "--lib", "es2020",
                               "--loglevel", "debug"])
        assert args.FILES == ["a.ts", "b.ts"]
        assert args.LIBS == ["dom", "es2020"]
        assert args.LOG_LEVEL == "DEBUG"

    def test_output_required(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["build", "src"])


class TestHelpers:
    """File loading, writing and diagnostic rendering."""

    def test_load_project_skips_node_modules_and_output(self, tmp_path):
        _write(tmp_path / "index.js", "1")
        _write(tmp_path / "lib" / "a.js", "2")
        _write(tmp_path / "node_modules" / "x" / "index.js", "3")
        _write(tmp_path / "out" / "index.js", "4")
        (tmp_path / "logo.png").write_bytes(b"\x89PNG\xff\xfe")
        files = cli.load_project(str(tmp_path), skip_dir=str(tmp_path / "out"))
        assert [(f.name, f.content) for f in files] == [("index.js", "1"), ("lib/a.js", "2")]

    def test_write_files_stays_inside_output(self, tmp_path):
        cli.write_files(str(tmp_path / "out"), {"a/b.js": "b", "../evil.js": "x"})
        assert (tmp_path / "out" / "a" / "b.js").read_text(encoding="utf-8") == "b"
        assert not (tmp_path / "evil.js").exists()

    def test_format_diagnostic(self):
        output = DiagnosticBuildOutput(
            filename="index.js",
            diagnostic=Diagnostic(message="boom", range=Range(Position(0, 7), Position(0, 9))),
        )
        assert cli.format_diagnostic(output) == "index.js:1:8: boom"


class TestMain:
    """End-to-end command runs against the fake CDN."""

    def _main(self, argv, data=CDN_DATA):
        fake = FakeCdn(data)
        with patch.object(BuildConfig, "create_fetcher", return_value=fake):
            code = cli.main(argv + ["--cdn-url", PREFIX])
        return code, fake

    def test_build(self, tmp_path):
        _write(tmp_path / "src" / "index.js", 'import "foo";')
        code, _ = self._main(["build", str(tmp_path / "src"), "-o", str(tmp_path / "out")])
        assert code == ExitCodes.SUCCESS.value
        out = tmp_path / "out"
        assert (out / "index.js").read_text(encoding="utf-8") == 'import "./node_modules/foo@1.0.0/index.js";'
        assert (out / "node_modules" / "foo@1.0.0" / "index.js").read_text(encoding="utf-8") == "export const foo = 1;"

    def test_build_reports_diagnostics(self, tmp_path, capsys):
        _write(tmp_path / "src" / "index.js", 'import "missing";')
        code, _ = self._main(["build", str(tmp_path / "src"), "-o", str(tmp_path / "out"), "--error-on-warnings"])
        assert code == ExitCodes.EXIT_WARNINGS.value
        assert 'index.js:1:9: Could not resolve module "missing"' in capsys.readouterr().err

    def test_build_diagnostics_without_flag_succeed(self, tmp_path):
        _write(tmp_path / "src" / "index.js", 'import "missing";')
        code, _ = self._main(["build", str(tmp_path / "src"), "-o", str(tmp_path / "out")])
        assert code == ExitCodes.SUCCESS.value

    def test_build_missing_source(self, tmp_path):
        code, fake = self._main(["build", str(tmp_path / "nope"), "-o", str(tmp_path / "out")])
        assert code == ExitCodes.FILE_ERROR.value
        assert fake.requests == []

    def test_build_connection_failures(self, tmp_path):
        _write(tmp_path / "src" / "index.js", 'import "foo";')
        fake = FakeCdn(CDN_DATA)
        fake.failed_requests = 1
        with patch.object(BuildConfig, "create_fetcher", return_value=fake):
            code = cli.main(["build", str(tmp_path / "src"), "-o", str(tmp_path / "out"), "--cdn-url", PREFIX])
        assert code == ExitCodes.CONNECTION_ERROR.value

    def test_repeated_runs_keep_one_log_file_handler(self, tmp_path):
        """A second run replaces and closes the previous log file handler."""
        _write(tmp_path / "src" / "index.js", 'import "foo";')
        argv = ["build", str(tmp_path / "src"), "-o", str(tmp_path / "out"), "--logfile", str(tmp_path / "a.log")]
        self._main(argv)
        first = [h for h in logging.getLogger().handlers if getattr(h, "_barecdn_file_handler", False)]
        argv[-1] = str(tmp_path / "b.log")
        self._main(argv)
        handlers = [h for h in logging.getLogger().handlers if getattr(h, "_barecdn_file_handler", False)]
        assert len(first) == 1
        assert len(handlers) == 1
        assert handlers[0] is not first[0]
        assert first[0].stream is None
        assert handlers[0].baseFilename == str(tmp_path / "b.log")

    def test_types(self, tmp_path):
        _write(tmp_path / "main.ts", "import {foo} from 'foo';")
        _write(tmp_path / "package.json", json.dumps({"dependencies": {"foo": "^1.0.0"}}))
        code, _ = self._main([
            "types", str(tmp_path / "main.ts"), "-o", str(tmp_path / "types"),
            "--package-json", str(tmp_path / "package.json"),
        ])
        assert code == ExitCodes.SUCCESS.value
        types = tmp_path / "types"
        assert (types / "foo" / "index.d.ts").read_text(encoding="utf-8") == "export declare const foo: 1;"
        assert (types / "foo" / "package.json").read_text(encoding="utf-8") == "{}"

    def test_types_missing_source(self, tmp_path):
        code, _ = self._main(["types", str(tmp_path / "nope.ts"), "-o", str(tmp_path / "types")])
        assert code == ExitCodes.FILE_ERROR.value
