"""errors.py – Error taxonomy and collected diagnostics.

Structural problems inside a single record (a truncated blob, a bad
document row) are *collected* as :class:`Diagnostic` entries and processing
continues with partial results.  Only :class:`FatalInputError` stops the
processing of an assembly, and only that one assembly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Severity = Literal["info", "warning", "error"]


class ReconError(Exception):
    """Base class for all pdbrecon errors."""


class StructuralFormatError(ReconError, ValueError):
    """Malformed PE, PDB, or blob contents."""

    def __init__(self, message: str, offset: int | None = None) -> None:
        self.offset = offset
        if offset is not None:
            message = f"{message} (at offset 0x{offset:X})"
        super().__init__(message)


class FatalInputError(ReconError):
    """The input is not a PE image at all; the assembly must be skipped."""


class NetworkFailure(ReconError):
    """A per-document source download failed."""

    def __init__(self, url: str, reason: str) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}")


class OperationCancelled(ReconError):
    """Cancellation was requested while a long operation was running."""


@dataclass(frozen=True)
class Diagnostic:
    """A recorded, non-fatal observation about one assembly."""

    severity: Severity
    component: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"severity": self.severity, "component": self.component, "message": self.message}

    def __str__(self) -> str:
        return f"[{self.severity}] {self.component}: {self.message}"
