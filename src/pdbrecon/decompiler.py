"""decompiler.py - Pluggable IL decompiler backend for the source fallback.

When a PDB document has neither embedded source nor a working Source Link
URL, the assembly can be decompiled back to C# instead.  The result is
approximate: it is regenerated from IL, not recovered, and it covers the
whole module rather than the one file the PDB named.

Backends are external tools found on PATH:

- ``ilspycmd``: the ILSpy command line, installed as a global .NET tool.
- ``dotnet-ilspycmd``: the same tool run as a local .NET tool through
  ``dotnet tool run``.

Usage (internal)::

    from pdbrecon.decompiler import fetch_decompilation

    code, backend = fetch_decompilation("auto", assembly_path)
    if code:
        print(code)
"""

import logging
import re
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

log = logging.getLogger(__name__)

# ANSI escape code stripper
_ANSI_RE = re.compile(r"\x1B\[[0-9;]*[a-zA-Z]")

DEFAULT_TIMEOUT = 300

# Known backends in auto-probe order
BACKENDS = ("ilspycmd", "dotnet-ilspycmd")


def _strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def _clean_output(text: str) -> str | None:
    """Strip ANSI codes and trim blank leading/trailing lines."""
    text = _strip_ansi(text)
    lines = text.splitlines()
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return "\n".join(lines) if lines else None


def _run_tool(command: list[str], timeout: int) -> str | None:
    """Run a decompiler command line and return cleaned stdout."""
    try:
        result = subprocess.run(
            command,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError, subprocess.SubprocessError) as exc:
        log.warning("decompiler: %s failed: %s", command[0], exc)
        return None
    if result.returncode != 0:
        log.warning(
            "decompiler: %s exited with %d: %s",
            command[0],
            result.returncode,
            (result.stderr or "").strip()[:200],
        )
        return None
    return _clean_output(result.stdout) if result.stdout else None


def fetch_ilspycmd(assembly: Path, timeout: int = DEFAULT_TIMEOUT) -> str | None:
    """Decompile the whole module with a globally installed ``ilspycmd``."""
    tool = shutil.which("ilspycmd")
    if tool is None or not assembly.exists():
        return None
    return _run_tool([tool, str(assembly)], timeout)


def fetch_dotnet_ilspycmd(assembly: Path, timeout: int = DEFAULT_TIMEOUT) -> str | None:
    """Decompile the whole module with ``ilspycmd`` run as a local .NET tool."""
    dotnet = shutil.which("dotnet")
    if dotnet is None or not assembly.exists():
        return None
    return _run_tool([dotnet, "tool", "run", "ilspycmd", str(assembly)], timeout)


_BACKEND_MAP: dict[str, Callable[[Path, int], str | None]] = {
    "ilspycmd": fetch_ilspycmd,
    "dotnet-ilspycmd": fetch_dotnet_ilspycmd,
}


def available_backends() -> list[str]:
    """Backends whose executable is on PATH, in probe order."""
    found = []
    if shutil.which("ilspycmd"):
        found.append("ilspycmd")
    if shutil.which("dotnet"):
        found.append("dotnet-ilspycmd")
    return found


def fetch_decompilation(
    backend: str,
    assembly_path: Path,
    timeout: int = DEFAULT_TIMEOUT,
) -> tuple[str | None, str]:
    """Decompile *assembly_path* with the specified backend.

    Args:
        backend: One of ``"ilspycmd"``, ``"dotnet-ilspycmd"`` or ``"auto"``.
        assembly_path: Path to the managed assembly.
        timeout: Seconds before the tool is killed.

    Returns:
        A tuple of ``(decompiled_code, backend_name)`` where backend_name is
        the name of the backend that produced the output (useful for ``auto``).
        If decompilation failed, ``(None, backend_name)`` is returned.
    """
    if backend == "auto":
        for name in BACKENDS:
            fn = _BACKEND_MAP[name]
            result = fn(assembly_path, timeout)
            if result:
                return result, name
        return None, "auto"

    fn = _BACKEND_MAP.get(backend)
    if fn is None:
        log.warning(
            "decompiler: unknown backend '%s'. Available: %s, auto", backend, ", ".join(_BACKEND_MAP)
        )
        return None, backend

    return fn(assembly_path, timeout), backend
