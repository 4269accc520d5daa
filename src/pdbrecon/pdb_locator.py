"""pdb_locator.py – Find the Portable PDB that belongs to an assembly.

Search order, first hit wins:

1. the PDB embedded in the PE debug directory;
2. beside the assembly: the file named by the CodeView record, then
   ``<assembly base name>.pdb``;
3. ``<work>/symbols/**``: a name match whose relative path contains the
   assembly's TFM, then any name match;
4. ``<work>/extracted/**``: same rule as the symbols directory.

Not finding a PDB is the common case, not an error: the search result then
has no location and lists everything that was looked at.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PureWindowsPath

from pdbrecon.binary_loader import AssemblyImage
from pdbrecon.debug_info import (
    DebugEntryType,
    decode_codeview,
    decode_embedded_pdb,
    find_entry,
)
from pdbrecon.errors import Diagnostic, StructuralFormatError
from pdbrecon.frameworks import UNKNOWN_FRAMEWORK, framework_of

log = logging.getLogger(__name__)

EXTRACTED_DIR = "extracted"
SYMBOLS_DIR = "symbols"


class PdbOrigin(Enum):
    EMBEDDED = "embedded"
    ASSEMBLY_DIRECTORY = "assembly-directory"
    SYMBOLS_PACKAGE = "symbols-package"
    PACKAGE = "package"


@dataclass(frozen=True)
class PdbLocation:
    origin: PdbOrigin
    path: Path | None = None
    data: bytes | None = None  # set for embedded PDBs

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return self.data
        assert self.path is not None
        return self.path.read_bytes()

    def describe(self) -> str:
        return self.origin.value if self.path is None else f"{self.origin.value}: {self.path}"


@dataclass
class PdbSearch:
    location: PdbLocation | None = None
    searched: list[str] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.location is not None


def _codeview_file_name(image: AssemblyImage) -> str | None:
    entry = find_entry(image, DebugEntryType.CODEVIEW)
    if entry is None or not entry.payload:
        return None
    try:
        path = decode_codeview(entry.payload).path
    except StructuralFormatError:
        return None
    # CodeView paths are usually Windows paths
    return PureWindowsPath(path).name or None


def _candidates(root: Path, expected_name: str) -> list[Path]:
    wanted = expected_name.lower()
    return sorted(p for p in root.rglob("*") if p.is_file() and p.name.lower() == wanted)


def _pick(root: Path, expected_name: str, tfm: str | None) -> Path | None:
    candidates = _candidates(root, expected_name)
    if tfm:
        for candidate in candidates:
            if tfm.lower() in candidate.relative_to(root).as_posix().lower():
                return candidate
    return candidates[0] if candidates else None


def assembly_framework(assembly: Path, work_dir: Path) -> str | None:
    """TFM segment of an assembly under ``<work>/extracted``, if any."""
    extracted = work_dir / EXTRACTED_DIR
    try:
        assembly.resolve().relative_to(extracted.resolve())
    except ValueError:
        return None
    tfm = framework_of(assembly.resolve(), extracted.resolve())
    return None if tfm == UNKNOWN_FRAMEWORK else tfm


def locate_pdb(image: AssemblyImage, work_dir: Path | None = None) -> PdbSearch:
    """Locate the PDB for *image*; see the module docstring for the order."""
    search = PdbSearch()

    entry = find_entry(image, DebugEntryType.EMBEDDED_PORTABLE_PDB)
    search.searched.append("embedded debug directory entry")
    if entry is not None:
        try:
            search.location = PdbLocation(PdbOrigin.EMBEDDED, data=decode_embedded_pdb(entry.payload))
            return search
        except StructuralFormatError as exc:
            search.diagnostics.append(
                Diagnostic("warning", "pdb-locator", f"embedded PDB unreadable: {exc}")
            )

    assembly = Path(image.path)
    base_name = f"{assembly.stem}.pdb"
    codeview_name = _codeview_file_name(image)
    expected_name = codeview_name or base_name

    for name in dict.fromkeys(n for n in (codeview_name, base_name) if n):
        candidate = assembly.parent / name
        search.searched.append(str(candidate))
        if candidate.is_file():
            search.location = PdbLocation(PdbOrigin.ASSEMBLY_DIRECTORY, path=candidate)
            return search

    if work_dir is not None:
        tfm = assembly_framework(assembly, work_dir)
        for subdir, origin in (
            (SYMBOLS_DIR, PdbOrigin.SYMBOLS_PACKAGE),
            (EXTRACTED_DIR, PdbOrigin.PACKAGE),
        ):
            root = work_dir / subdir
            if not root.is_dir():
                continue
            search.searched.append(f"{root}/**/{expected_name}")
            found = _pick(root, expected_name, tfm)
            if found is not None:
                search.location = PdbLocation(origin, path=found)
                return search

    log.debug("no PDB for %s; searched %s", assembly.name, search.searched)
    return search
