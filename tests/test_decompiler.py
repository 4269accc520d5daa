"""Tests for pdbrecon.decompiler backend dispatch and helpers."""

import subprocess
from pathlib import Path
from unittest.mock import patch

from pdbrecon.decompiler import (
    _BACKEND_MAP,
    BACKENDS,
    _clean_output,
    _strip_ansi,
    available_backends,
    fetch_decompilation,
    fetch_dotnet_ilspycmd,
    fetch_ilspycmd,
)


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestStripAnsi:
    def test_basic_escape(self) -> None:
        assert _strip_ansi("\x1b[31mclass\x1b[0m") == "class"

    def test_no_escape(self) -> None:
        assert _strip_ansi("plain text") == "plain text"


class TestCleanOutput:
    def test_strips_and_trims(self) -> None:
        text = "\n\n\x1b[32mpublic class A\x1b[0m\n{\n}\n\n"
        assert _clean_output(text) == "public class A\n{\n}"

    def test_only_whitespace(self) -> None:
        assert _clean_output("\n  \n") is None


class TestBackends:
    def test_backends_list(self) -> None:
        assert BACKENDS == ("ilspycmd", "dotnet-ilspycmd")
        assert set(_BACKEND_MAP) == set(BACKENDS)

    @patch("pdbrecon.decompiler.shutil.which", return_value=None)
    def test_ilspycmd_missing(self, _mock_which, tmp_path: Path) -> None:
        assembly = tmp_path / "A.dll"
        assembly.write_bytes(b"MZ")
        assert fetch_ilspycmd(assembly) is None

    @patch("pdbrecon.decompiler.shutil.which", return_value="/usr/bin/ilspycmd")
    def test_missing_assembly(self, _mock_which, tmp_path: Path) -> None:
        assert fetch_ilspycmd(tmp_path / "missing.dll") is None

    @patch("pdbrecon.decompiler.shutil.which", return_value="/usr/bin/ilspycmd")
    @patch("pdbrecon.decompiler.subprocess.run")
    def test_ilspycmd_runs(self, mock_run, _mock_which, tmp_path: Path) -> None:
        assembly = tmp_path / "A.dll"
        assembly.write_bytes(b"MZ")
        mock_run.return_value = _completed("\nusing System;\npublic class A {}\n")
        assert fetch_ilspycmd(assembly, timeout=5) == "using System;\npublic class A {}"
        args, kwargs = mock_run.call_args
        assert args[0] == ["/usr/bin/ilspycmd", str(assembly)]
        assert kwargs["timeout"] == 5

    @patch("pdbrecon.decompiler.shutil.which", return_value="/usr/bin/dotnet")
    @patch("pdbrecon.decompiler.subprocess.run")
    def test_dotnet_tool_run(self, mock_run, _mock_which, tmp_path: Path) -> None:
        assembly = tmp_path / "A.dll"
        assembly.write_bytes(b"MZ")
        mock_run.return_value = _completed("class A {}")
        assert fetch_dotnet_ilspycmd(assembly) == "class A {}"
        assert mock_run.call_args[0][0][:4] == ["/usr/bin/dotnet", "tool", "run", "ilspycmd"]

    @patch("pdbrecon.decompiler.shutil.which", return_value="/usr/bin/ilspycmd")
    @patch("pdbrecon.decompiler.subprocess.run")
    def test_nonzero_exit(self, mock_run, _mock_which, tmp_path: Path, caplog) -> None:
        assembly = tmp_path / "A.dll"
        assembly.write_bytes(b"MZ")
        mock_run.return_value = _completed(returncode=1, stderr="boom")
        assert fetch_ilspycmd(assembly) is None
        assert "exited with 1" in caplog.text

    @patch("pdbrecon.decompiler.shutil.which", return_value="/usr/bin/ilspycmd")
    @patch(
        "pdbrecon.decompiler.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="ilspycmd", timeout=1),
    )
    def test_timeout(self, _mock_run, _mock_which, tmp_path: Path) -> None:
        assembly = tmp_path / "A.dll"
        assembly.write_bytes(b"MZ")
        assert fetch_ilspycmd(assembly, timeout=1) is None

    @patch(
        "pdbrecon.decompiler.shutil.which",
        side_effect=lambda name: "/usr/bin/dotnet" if name == "dotnet" else None,
    )
    def test_available_backends(self, _mock_which) -> None:
        assert available_backends() == ["dotnet-ilspycmd"]


class TestFetchDecompilation:
    def test_unknown_backend(self, caplog) -> None:
        code, name = fetch_decompilation("jadx", Path("/f.dll"))
        assert code is None
        assert name == "jadx"
        assert "unknown backend" in caplog.text

    def test_auto_uses_first_success(self) -> None:
        with patch.dict(
            "pdbrecon.decompiler._BACKEND_MAP",
            {"ilspycmd": lambda p, t: None, "dotnet-ilspycmd": lambda p, t: "class A {}"},
        ):
            assert fetch_decompilation("auto", Path("/f.dll")) == ("class A {}", "dotnet-ilspycmd")

    def test_auto_all_fail(self) -> None:
        with patch.dict(
            "pdbrecon.decompiler._BACKEND_MAP",
            {"ilspycmd": lambda p, t: None, "dotnet-ilspycmd": lambda p, t: None},
        ):
            assert fetch_decompilation("auto", Path("/f.dll")) == (None, "auto")

    def test_explicit_backend(self) -> None:
        with patch.dict("pdbrecon.decompiler._BACKEND_MAP", {"ilspycmd": lambda p, t: "x"}):
            assert fetch_decompilation("ilspycmd", Path("/f.dll")) == ("x", "ilspycmd")
