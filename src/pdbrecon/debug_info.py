"""debug_info.py – Debug-directory classification of an assembly.

Derives how the assembly's PDB was produced (none, external portable,
embedded portable, embedded with checksum) from the PE debug directory and
maps that onto the compiler debug flags that reproduce it.

Also decodes the payloads of the debug entries that matter here: CodeView
(``RSDS``), PDB checksum, and the embedded Portable PDB (``MPDB``).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum, IntEnum

from pdbrecon.binary_loader import AssemblyImage, DebugDirectoryEntry
from pdbrecon.errors import StructuralFormatError
from pdbrecon.metadata import ByteReader, inflate_exact

IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA = 0x0020

CODEVIEW_SIGNATURE = 0x53445352  # "RSDS"
EMBEDDED_PDB_SIGNATURE = 0x4244504D  # "MPDB"

DEFAULT_CHECKSUM_ALGORITHM = "SHA256"


class DebugEntryType(IntEnum):
    CODEVIEW = 2
    REPRODUCIBLE = 16
    EMBEDDED_PORTABLE_PDB = 17
    PDB_CHECKSUM = 19


class DebugKind(Enum):
    NONE = "none"
    PORTABLE_EXTERNAL = "portable-external"
    PORTABLE_EMBEDDED = "portable-embedded"
    EMBEDDED = "embedded"


# ---------------------------------------------------------------------------
# Payload decoders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CodeViewInfo:
    guid: uuid.UUID
    age: int
    path: str


def decode_codeview(payload: bytes) -> CodeViewInfo:
    """Decode an ``RSDS`` CodeView record."""
    r = ByteReader(payload)
    signature = r.read_u32()
    if signature != CODEVIEW_SIGNATURE:
        raise StructuralFormatError(f"bad CodeView signature 0x{signature:08X}", 0)
    guid = r.read_guid()
    age = r.read_u32()
    raw_path = r.read_until_nul() if r.remaining else b""
    return CodeViewInfo(guid=guid, age=age, path=raw_path.decode("utf-8", errors="replace"))


@dataclass(frozen=True)
class PdbChecksum:
    algorithm: str
    checksum: bytes


def decode_pdb_checksum(payload: bytes) -> PdbChecksum:
    """Decode a PDB checksum entry: NUL-terminated algorithm name + hash bytes."""
    r = ByteReader(payload)
    name = r.read_until_nul().decode("utf-8", errors="replace")
    return PdbChecksum(algorithm=name, checksum=r.read_rest())


def decode_embedded_pdb(payload: bytes) -> bytes:
    """Inflate an embedded Portable PDB (``MPDB`` + size + raw DEFLATE)."""
    r = ByteReader(payload)
    signature = r.read_u32()
    if signature != EMBEDDED_PDB_SIGNATURE:
        raise StructuralFormatError(f"bad embedded PDB signature 0x{signature:08X}", 0)
    expected = r.read_u32()
    return inflate_exact(r.read_rest(), expected, "embedded PDB", 8)


def find_entry(image: AssemblyImage, entry_type: int) -> DebugDirectoryEntry | None:
    for entry in image.debug_entries:
        if entry.type == entry_type:
            return entry
    return None


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def determine_debug_kind(has_code_view: bool, has_embedded_pdb: bool, has_pdb_checksum: bool) -> DebugKind:
    """Map debug-directory presence flags to a :class:`DebugKind` (first match wins)."""
    if has_embedded_pdb and has_pdb_checksum:
        return DebugKind.EMBEDDED
    if has_embedded_pdb:
        return DebugKind.PORTABLE_EMBEDDED
    if has_code_view:
        return DebugKind.PORTABLE_EXTERNAL
    return DebugKind.NONE


@dataclass(frozen=True)
class DebugClassification:
    """Debug configuration of one assembly, derived from its PE headers."""

    kind: DebugKind
    has_code_view: bool = False
    has_embedded_pdb: bool = False
    has_pdb_checksum: bool = False
    has_reproducible_marker: bool = False
    checksum_algorithm: str | None = None
    referenced_pdb_path: str | None = None
    high_entropy_va: bool = False
    debug_entry_count: int = 0

    def to_compiler_flags(self, pdb_output_path: str | None = None) -> list[str]:
        """Compiler debug flags that reproduce this configuration.

        The external case leads with ``/debug-`` and states ``/embed-``
        explicitly so the PDB stays external and no earlier debug flag
        survives.
        """
        flags: list[str] = []
        if self.kind is DebugKind.EMBEDDED:
            flags.append("/debug:embedded")
        elif self.kind is DebugKind.PORTABLE_EMBEDDED:
            flags += ["/debug:portable", "/embed"]
        elif self.kind is DebugKind.PORTABLE_EXTERNAL:
            flags += ["/debug-", "/debug:portable", "/embed-"]
            if pdb_output_path:
                flags.append(f"/pdb:{pdb_output_path}")

        if self.high_entropy_va:
            flags.append("/highentropyva+")
        return flags

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "has_code_view": self.has_code_view,
            "has_embedded_pdb": self.has_embedded_pdb,
            "has_pdb_checksum": self.has_pdb_checksum,
            "has_reproducible_marker": self.has_reproducible_marker,
            "checksum_algorithm": self.checksum_algorithm,
            "referenced_pdb_path": self.referenced_pdb_path,
            "high_entropy_va": self.high_entropy_va,
            "debug_entry_count": self.debug_entry_count,
        }

    def __str__(self) -> str:
        return (
            f"DebugType: {self.kind.value}, Entries: {self.debug_entry_count}, "
            f"CodeView: {self.has_code_view}, EmbeddedPdb: {self.has_embedded_pdb}, "
            f"PdbChecksum: {self.has_pdb_checksum}, HighEntropyVA: {self.high_entropy_va}, "
            f"Reproducible: {self.has_reproducible_marker}"
        )


def classify(image: AssemblyImage) -> DebugClassification:
    """Classify the debug configuration of *image*.

    Payload decoding problems do not change the classification, which only
    depends on which entry types are present; an unreadable CodeView path or
    checksum name is simply left unset.
    """
    types = {entry.type for entry in image.debug_entries}
    has_code_view = DebugEntryType.CODEVIEW in types
    has_embedded_pdb = DebugEntryType.EMBEDDED_PORTABLE_PDB in types
    has_pdb_checksum = DebugEntryType.PDB_CHECKSUM in types

    pdb_path: str | None = None
    codeview = find_entry(image, DebugEntryType.CODEVIEW)
    if codeview is not None:
        try:
            pdb_path = decode_codeview(codeview.payload).path or None
        except StructuralFormatError:
            pdb_path = None

    algorithm: str | None = None
    checksum = find_entry(image, DebugEntryType.PDB_CHECKSUM)
    if checksum is not None:
        try:
            algorithm = decode_pdb_checksum(checksum.payload).algorithm or None
        except StructuralFormatError:
            algorithm = None
        algorithm = algorithm or DEFAULT_CHECKSUM_ALGORITHM

    return DebugClassification(
        kind=determine_debug_kind(has_code_view, has_embedded_pdb, has_pdb_checksum),
        has_code_view=has_code_view,
        has_embedded_pdb=has_embedded_pdb,
        has_pdb_checksum=has_pdb_checksum,
        has_reproducible_marker=DebugEntryType.REPRODUCIBLE in types,
        checksum_algorithm=algorithm,
        referenced_pdb_path=pdb_path,
        high_entropy_va=bool(image.dll_characteristics & IMAGE_DLLCHARACTERISTICS_HIGH_ENTROPY_VA),
        debug_entry_count=len(image.debug_entries),
    )
