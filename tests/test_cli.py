"""Tests for the CLI helpers and the inspect/extract/package commands."""

import json
import signal
import threading
from pathlib import Path
from typing import Any

import pytest
import typer
from pdb_builder import sample_image
from rich.console import Console
from typer.testing import CliRunner

from pdbrecon.cli import error_exit, json_print, print_diagnostics
from pdbrecon.errors import Diagnostic, FatalInputError
from pdbrecon.extract import install_cancel_handler, restore_cancel_handler
from pdbrecon.main import app as main_app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated(tmp_path: Path, monkeypatch: Any) -> None:
    """No stray pdbrecon.toml."""
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestErrorExit:
    def test_plain_stderr_and_exit(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(typer.Exit) as exc_info:
            error_exit("something broke")
        assert exc_info.value.exit_code == 1
        captured = capsys.readouterr()
        assert "something broke" in captured.err
        assert captured.out == ""

    def test_json_mode_stdout(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(typer.Exit) as exc_info:
            error_exit("bad input", json_mode=True, code=130)
        assert exc_info.value.exit_code == 130
        assert json.loads(capsys.readouterr().out) == {"error": "bad input"}


class TestJsonPrint:
    def test_dict_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        json_print({"status": "ok", "count": 2})
        assert json.loads(capsys.readouterr().out) == {"status": "ok", "count": 2}


class TestPrintDiagnostics:
    def test_lines(self) -> None:
        console = Console(record=True, width=120)
        print_diagnostics(console, [Diagnostic("warning", "sources", "C.cs: HTTP 404")])
        assert "warning" in console.export_text()
        assert "sources: C.cs: HTTP 404" in console.export_text()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestInspect:
    def test_json(self, tmp_path: Path, monkeypatch: Any) -> None:
        path = tmp_path / "Lib.dll"
        monkeypatch.setattr("pdbrecon.inspect_cmd.load_assembly", lambda p: sample_image(path))
        result = runner.invoke(main_app, ["inspect", str(path), "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["classification"]["kind"] == "embedded"
        assert data["debug_flags"] == ["/debug:embedded"]
        assert data["pdb"]["origin"] == "embedded"
        assert data["identity"]["assembly_name"] == "Lib"

    def test_lists_decompilers(self, tmp_path: Path, monkeypatch: Any) -> None:
        path = tmp_path / "Lib.dll"
        monkeypatch.setattr("pdbrecon.inspect_cmd.load_assembly", lambda p: sample_image(path))
        monkeypatch.setattr(
            "pdbrecon.decompiler.shutil.which",
            lambda name: "/usr/bin/dotnet" if name == "dotnet" else None,
        )
        result = runner.invoke(main_app, ["inspect", str(path), "--json"])
        assert json.loads(result.stdout)["decompilers"] == ["dotnet-ilspycmd"]

    def test_rich_output(self, tmp_path: Path, monkeypatch: Any) -> None:
        path = tmp_path / "Lib.dll"
        image = sample_image(path, embedded=False)
        monkeypatch.setattr("pdbrecon.inspect_cmd.load_assembly", lambda p: image)
        result = runner.invoke(main_app, ["inspect", str(path)])
        assert result.exit_code == 0
        assert "portable-external" in result.output
        assert "not found" in result.output

    def test_not_a_pe(self, tmp_path: Path, monkeypatch: Any) -> None:
        def fail(path: Path) -> None:
            raise FatalInputError(f"Not a PE image: {path}")

        monkeypatch.setattr("pdbrecon.inspect_cmd.load_assembly", fail)
        result = runner.invoke(main_app, ["inspect", str(tmp_path / "x.txt"), "--json"])
        assert result.exit_code == 1
        assert "Not a PE image" in json.loads(result.stdout)["error"]


class TestCancelHandler:
    def test_sigint_sets_event_and_handler_is_restored(self) -> None:
        before = signal.getsignal(signal.SIGINT)
        event = threading.Event()
        previous = install_cancel_handler(event)
        try:
            signal.raise_signal(signal.SIGINT)
            assert event.is_set()
        finally:
            restore_cancel_handler(previous)
        assert signal.getsignal(signal.SIGINT) is before

    def test_commands_restore_handler(self, tmp_path: Path, monkeypatch: Any) -> None:
        path = tmp_path / "Lib.dll"
        monkeypatch.setattr("pdbrecon.pipeline.load_assembly", lambda p: sample_image(path))
        before = signal.getsignal(signal.SIGINT)
        runner.invoke(main_app, ["extract", str(path), "--no-download", "--json"])
        assert signal.getsignal(signal.SIGINT) is before
        runner.invoke(main_app, ["extract", str(tmp_path / "nope.dll"), "--json"])
        assert signal.getsignal(signal.SIGINT) is before


class TestExtract:
    def test_writes_record(self, tmp_path: Path, monkeypatch: Any) -> None:
        path = tmp_path / "Lib.dll"
        monkeypatch.setattr("pdbrecon.pipeline.load_assembly", lambda p: sample_image(path))
        out = tmp_path / "out"
        result = runner.invoke(
            main_app, ["extract", str(path), "-o", str(out), "--no-download", "--json"]
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["record"]["compiler_arguments"][-1] == "/debug:embedded"
        assert (out / "compiler-arguments.txt").exists()
        assert (out / "sources" / "A.cs").read_text() == "class A {}"

    def test_summary(self, tmp_path: Path, monkeypatch: Any) -> None:
        path = tmp_path / "Lib.dll"
        monkeypatch.setattr("pdbrecon.pipeline.load_assembly", lambda p: sample_image(path))
        result = runner.invoke(main_app, ["extract", str(path), "--no-download"])
        assert result.exit_code == 0
        assert "Lib.dll" in result.output
        assert "references: 3 (1 framework, 1 package)" in result.output

    def test_missing_assembly(self, tmp_path: Path) -> None:
        result = runner.invoke(main_app, ["extract", str(tmp_path / "nope.dll"), "--json"])
        assert result.exit_code == 1
        assert "not found" in json.loads(result.stdout)["error"]

    def test_bad_config(self, tmp_path: Path) -> None:
        result = runner.invoke(
            main_app, ["extract", "Lib.dll", "--config", str(tmp_path / "missing.toml"), "--json"]
        )
        assert result.exit_code == 1
        assert "Config not found" in json.loads(result.stdout)["error"]


class TestPackage:
    def test_requires_extracted(self, tmp_path: Path) -> None:
        result = runner.invoke(main_app, ["package", str(tmp_path), "--json"])
        assert result.exit_code == 1
        assert "extracted/" in json.loads(result.stdout)["error"]

    def test_package(self, tmp_path: Path, monkeypatch: Any) -> None:
        dll = tmp_path / "extracted" / "lib" / "net8.0" / "Lib.dll"
        dll.parent.mkdir(parents=True)
        dll.write_bytes(b"MZ")
        monkeypatch.setattr("pdbrecon.pipeline.load_assembly", sample_image)
        out = tmp_path / "out"
        result = runner.invoke(
            main_app, ["package", str(tmp_path), "-o", str(out), "--no-download", "--json"]
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["target_framework"] == "net8.0"
        assert (out / "Lib" / "record.json").exists()
