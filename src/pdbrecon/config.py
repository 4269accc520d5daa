"""Configuration loader for pdbrecon.

Reads an optional ``pdbrecon.toml`` found by walking up from the working
directory (the way ``git`` locates ``.git/``).  Every setting has a default,
so running without a config file is the normal case.

Example ``pdbrecon.toml``::

    [download]
    max_workers = 5
    timeout = 30.0
    user_agent = "pdbrecon/0.1"

    [decompile]
    enabled = false
    backend = "auto"        # "auto", "ilspycmd" or "dotnet-ilspycmd"
    timeout = 300

    [references]
    format = "portable-pdb"  # or "compressed-prefixed"

    [output]
    write_sources = true

Usage::

    from pdbrecon.config import load_config

    cfg = load_config()
    print(cfg.download_timeout)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pdbrecon.decompiler import BACKENDS
from pdbrecon.references import ReferenceBlobFormat
from pdbrecon.sources import DEFAULT_MAX_WORKERS, DEFAULT_TIMEOUT, DEFAULT_USER_AGENT, MAX_WORKERS

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]

CONFIG_FILE_NAME = "pdbrecon.toml"


@dataclass
class ReconConfig:
    """Parsed pdbrecon settings."""

    # [download]
    max_workers: int = DEFAULT_MAX_WORKERS
    download_timeout: float = DEFAULT_TIMEOUT
    user_agent: str = DEFAULT_USER_AGENT
    # [decompile]
    decompile_enabled: bool = False
    decompile_backend: str = "auto"
    decompile_timeout: int = 300
    # [references]
    reference_format: ReferenceBlobFormat = ReferenceBlobFormat.PORTABLE_PDB
    # [output]
    write_sources: bool = True

    source: Optional[Path] = None  # file the values came from, if any


def _find_config(start: Optional[Path] = None) -> Optional[Path]:
    """Walk up from *start* (or cwd) to the nearest ``pdbrecon.toml``."""
    candidate = (start or Path.cwd()).resolve()
    while True:
        path = candidate / CONFIG_FILE_NAME
        if path.is_file():
            return path
        if candidate == candidate.parent:
            return None
        candidate = candidate.parent


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ValueError(f"[{name}] must be a table")
    return value


def _get(section: dict[str, Any], key: str, kind: type | tuple[type, ...], default: Any) -> Any:
    value = section.get(key, default)
    # bool is an int subclass; never accept it for numeric keys
    if isinstance(value, bool) and bool not in (kind if isinstance(kind, tuple) else (kind,)):
        raise ValueError(f"{key} must not be a boolean")
    if not isinstance(value, kind):
        raise ValueError(f"{key} has invalid type {type(value).__name__}")
    return value


def parse_config(raw: dict[str, Any], source: Optional[Path] = None) -> ReconConfig:
    """Build a :class:`ReconConfig` from a parsed TOML document.

    Raises:
        ValueError: A value has the wrong type or is out of range; the
            message names the offending key.
    """
    download = _section(raw, "download")
    decompile = _section(raw, "decompile")
    references = _section(raw, "references")
    output = _section(raw, "output")

    max_workers = _get(download, "max_workers", int, DEFAULT_MAX_WORKERS)
    if not 1 <= max_workers <= MAX_WORKERS:
        raise ValueError(f"download.max_workers must be between 1 and {MAX_WORKERS}")
    timeout = float(_get(download, "timeout", (int, float), DEFAULT_TIMEOUT))
    if timeout <= 0:
        raise ValueError("download.timeout must be positive")
    user_agent = _get(download, "user_agent", str, DEFAULT_USER_AGENT)

    backend = _get(decompile, "backend", str, "auto")
    if backend != "auto" and backend not in BACKENDS:
        raise ValueError(
            f"decompile.backend must be one of: auto, {', '.join(BACKENDS)} (got {backend!r})"
        )
    decompile_timeout = _get(decompile, "timeout", int, 300)
    if decompile_timeout <= 0:
        raise ValueError("decompile.timeout must be positive")

    fmt = _get(references, "format", str, ReferenceBlobFormat.PORTABLE_PDB.value)
    try:
        reference_format = ReferenceBlobFormat(fmt)
    except ValueError:
        choices = ", ".join(f.value for f in ReferenceBlobFormat)
        raise ValueError(f"references.format must be one of: {choices} (got {fmt!r})") from None

    return ReconConfig(
        max_workers=max_workers,
        download_timeout=timeout,
        user_agent=user_agent,
        decompile_enabled=_get(decompile, "enabled", bool, False),
        decompile_backend=backend,
        decompile_timeout=decompile_timeout,
        reference_format=reference_format,
        write_sources=_get(output, "write_sources", bool, True),
        source=source,
    )


def load_config(path: Optional[Path] = None, start: Optional[Path] = None) -> ReconConfig:
    """Load settings from *path*, or from the nearest ``pdbrecon.toml``.

    Args:
        path: Explicit config file.  Must exist when given.
        start: Directory to start the upward search from (default: cwd).

    Returns defaults when no file is given and none is found.
    """
    if path is None:
        path = _find_config(start)
        if path is None:
            return ReconConfig()
    elif not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ValueError(f"{path}: invalid TOML: {exc}") from None
    return parse_config(raw, source=path)
