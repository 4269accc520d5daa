"""Shared utilities for pdbrecon."""

import contextlib
import os
import re
from pathlib import Path

_UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def atomic_write_bytes(filepath: Path, data: bytes) -> None:
    """Write bytes to a file atomically; no partial file survives a failure."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = filepath.with_suffix(filepath.suffix + ".tmp")
    try:
        tmp_path.write_bytes(data)
        os.replace(tmp_path, filepath)
    except BaseException:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise


def atomic_write_text(filepath: Path, text: str, encoding: str = "utf-8") -> None:
    """Write text to a file atomically to prevent corruption on crash."""
    atomic_write_bytes(filepath, text.encode(encoding))


def sanitize_file_name(name: str) -> str:
    """Replace characters that are not valid in a file name with ``_``."""
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name).strip(" .")
    return cleaned or "_"
