"""frameworks.py – Pick the target framework to reconstruct from a package.

A package ships one build per target framework moniker (TFM) under
``lib/<tfm>/`` or ``ref/<tfm>/``.  Assemblies are grouped by that path
segment and the newest, most modern group wins:

====================================  ========
Family                                Priority
====================================  ========
.NET 5 and later (``net8.0``)         3
.NET Standard / .NET Core App         2
.NET Framework (``net462``, ``net48``)  1
anything else                         0
====================================  ========

Ties within a family are broken by (major, minor), descending; a complete
tie keeps the first group seen.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generic, TypeVar

UNKNOWN_FRAMEWORK = "unknown"

PRIORITY_MODERN = 3
PRIORITY_STANDARD = 2
PRIORITY_FRAMEWORK = 1
PRIORITY_UNKNOWN = 0

T = TypeVar("T")


def parse_version(text: str) -> tuple[int, int]:
    """``"8.0"`` → (8, 0); ``"462"`` → (46, 2); ``"48"`` → (4, 8); junk → (0, 0)."""
    text = text.lstrip("v")
    if not text:
        return 0, 0
    parts = text.split(".")
    if len(parts) >= 2:
        if parts[0].isdigit() and parts[1].isdigit():
            return int(parts[0]), int(parts[1])
        return 0, 0
    if not text.isdigit():
        return 0, 0
    value = int(text)
    if value >= 10:
        return value // 10, value % 10
    return value, 0


@dataclass(frozen=True, order=True)
class TargetFrameworkInfo:
    priority: int
    major: int
    minor: int
    moniker: str = field(compare=False)

    @classmethod
    def parse(cls, tfm: str) -> TargetFrameworkInfo:
        # "net8.0-windows" ranks as "net8.0"
        base = tfm.lower().split("-", 1)[0]
        if base.startswith("netstandard"):
            return cls(PRIORITY_STANDARD, *parse_version(base[len("netstandard") :]), tfm)
        if base.startswith("netcoreapp"):
            return cls(PRIORITY_STANDARD, *parse_version(base[len("netcoreapp") :]), tfm)
        if base.startswith("net"):
            version = base[3:].replace("framework", "")
            if version[:1].isdigit():
                major, minor = parse_version(version)
                if "." in version:
                    modern = major >= 5
                else:
                    modern = len(version) == 1 and major >= 5
                priority = PRIORITY_MODERN if modern else PRIORITY_FRAMEWORK
                return cls(priority, major, minor, tfm)
        return cls(PRIORITY_UNKNOWN, 0, 0, tfm)

    @property
    def sort_key(self) -> tuple[int, int, int]:
        return self.priority, self.major, self.minor


def framework_of(assembly: Path, extract_root: Path) -> str:
    """Second path segment of *assembly* relative to *extract_root* (``lib/<tfm>/X.dll``)."""
    try:
        relative = Path(os.path.relpath(assembly, extract_root))
    except ValueError:
        return UNKNOWN_FRAMEWORK
    parts = relative.parts
    return parts[1] if len(parts) > 2 else UNKNOWN_FRAMEWORK


def group_by_framework(assemblies: Iterable[Path], extract_root: Path) -> dict[str, list[Path]]:
    groups: dict[str, list[Path]] = {}
    for assembly in assemblies:
        groups.setdefault(framework_of(assembly, extract_root), []).append(assembly)
    return groups


@dataclass
class FrameworkSelection(Generic[T]):
    group: str
    moniker: str | None  # None for the "unknown" group
    items: list[T]


def select_target_framework(groups: Mapping[str, Sequence[T]]) -> FrameworkSelection[T] | None:
    """Choose the best group; ``None`` when there are no groups."""
    if not groups:
        return None
    if len(groups) == 1:
        key = next(iter(groups))
    else:
        key = max(groups, key=lambda k: TargetFrameworkInfo.parse(k).sort_key)
    moniker = None if key == UNKNOWN_FRAMEWORK else key
    return FrameworkSelection(group=key, moniker=moniker, items=list(groups[key]))
