"""PE image loader for managed assemblies.

Backed by LIEF for header, section and data-directory parsing.  The debug
directory and the CLI (COR20) header are decoded here from the raw file bytes
so that every payload the rest of pdbrecon needs is available on a single
:class:`AssemblyImage`.

Usage::

    from pdbrecon.binary_loader import load_assembly

    image = load_assembly(Path("lib/net8.0/Example.dll"))
    for entry in image.debug_entries:
        print(entry.type, len(entry.payload))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import lief

from pdbrecon.errors import FatalInputError, StructuralFormatError
from pdbrecon.metadata import ByteReader

# Data directory slots used by managed images
DEBUG_DIRECTORY_INDEX = 6
CLR_RUNTIME_HEADER_INDEX = 14

DEBUG_ENTRY_SIZE = 28

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass
class SectionInfo:
    """Placement of a single PE section."""

    name: str
    rva: int  # relative virtual address
    size: int  # virtual size (mapped)
    file_offset: int  # offset in the file on disk
    raw_size: int  # size on disk (may differ from virtual size)


@dataclass(frozen=True)
class DebugDirectoryEntry:
    """One IMAGE_DEBUG_DIRECTORY record plus the bytes it points at."""

    type: int
    major_version: int = 0
    minor_version: int = 0
    stamp: int = 0
    payload: bytes = b""


@dataclass
class AssemblyImage:
    """The parts of a PE image needed to recover a compilation."""

    path: Path
    timestamp: int = 0
    dll_characteristics: int = 0
    sections: dict[str, SectionInfo] = field(default_factory=dict)
    debug_entries: list[DebugDirectoryEntry] = field(default_factory=list)

    # CLI metadata root and managed resources blob (None for native images)
    metadata: bytes | None = None
    resources: bytes | None = None

    @property
    def is_managed(self) -> bool:
        return self.metadata is not None


# ---------------------------------------------------------------------------
# Address mapping
# ---------------------------------------------------------------------------


def rva_to_file_offset(sections: dict[str, SectionInfo], rva: int) -> int | None:
    """Convert an RVA to a raw file offset, or ``None`` if unmapped."""
    for section in sections.values():
        if section.rva <= rva < section.rva + max(section.size, section.raw_size):
            delta = rva - section.rva
            if delta >= section.raw_size:
                return None
            return section.file_offset + delta
    return None


def read_rva(data: bytes, sections: dict[str, SectionInfo], rva: int, size: int) -> bytes | None:
    """Read *size* bytes at *rva*, or ``None`` if the range is not in the file."""
    offset = rva_to_file_offset(sections, rva)
    if offset is None or size < 0 or offset + size > len(data):
        return None
    return data[offset : offset + size]


# ---------------------------------------------------------------------------
# Directory decoding
# ---------------------------------------------------------------------------


def parse_debug_directory(
    data: bytes, sections: dict[str, SectionInfo], rva: int, size: int
) -> list[DebugDirectoryEntry]:
    """Decode the IMAGE_DEBUG_DIRECTORY array at *rva*.

    Payloads that point outside the file are returned empty; the consumer
    decides whether an empty payload is a structural problem for that entry
    type.
    """
    if rva == 0 or size == 0:
        return []
    raw = read_rva(data, sections, rva, size)
    if raw is None:
        raise StructuralFormatError(f"debug directory RVA 0x{rva:X} is not mapped")

    entries: list[DebugDirectoryEntry] = []
    r = ByteReader(raw)
    while r.remaining >= DEBUG_ENTRY_SIZE:
        r.skip(4)  # characteristics
        stamp = r.read_u32()
        major = r.read_u16()
        minor = r.read_u16()
        entry_type = r.read_u32()
        data_size = r.read_u32()
        data_rva = r.read_u32()
        data_pointer = r.read_u32()

        payload = b""
        if data_size:
            if data_pointer and data_pointer + data_size <= len(data):
                payload = data[data_pointer : data_pointer + data_size]
            elif data_rva:
                payload = read_rva(data, sections, data_rva, data_size) or b""
        entries.append(
            DebugDirectoryEntry(
                type=entry_type,
                major_version=major,
                minor_version=minor,
                stamp=stamp,
                payload=payload,
            )
        )
    return entries


@dataclass(frozen=True)
class CliHeader:
    """Fields of the COR20 header that locate metadata and resources."""

    runtime_major: int
    runtime_minor: int
    metadata_rva: int
    metadata_size: int
    flags: int
    resources_rva: int
    resources_size: int


def parse_cli_header(raw: bytes) -> CliHeader:
    r = ByteReader(raw)
    r.skip(4)  # cb
    runtime_major = r.read_u16()
    runtime_minor = r.read_u16()
    metadata_rva = r.read_u32()
    metadata_size = r.read_u32()
    flags = r.read_u32()
    r.skip(4)  # entry point token / RVA
    resources_rva = r.read_u32()
    resources_size = r.read_u32()
    return CliHeader(
        runtime_major=runtime_major,
        runtime_minor=runtime_minor,
        metadata_rva=metadata_rva,
        metadata_size=metadata_size,
        flags=flags,
        resources_rva=resources_rva,
        resources_size=resources_size,
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _section_name(raw_name: object) -> str:
    name = (
        raw_name.decode("utf-8", errors="replace")
        if isinstance(raw_name, bytes)
        else str(raw_name)
    )
    return name.rstrip("\x00")


def load_assembly(path: Path) -> AssemblyImage:
    """Parse a PE file into an :class:`AssemblyImage`.

    Raises:
        FileNotFoundError: If the file does not exist.
        FatalInputError: If the file is not a PE image.
        StructuralFormatError: If the debug directory or CLI header is
            malformed.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Assembly not found: {path}")

    spath = str(path)
    if not lief.is_pe(spath):
        raise FatalInputError(f"Not a PE image: {path}")
    binary = lief.PE.parse(spath)
    if binary is None:
        raise FatalInputError(f"Failed to parse PE: {path}")

    data = path.read_bytes()
    sections: dict[str, SectionInfo] = {}
    for section in binary.sections:
        name = _section_name(section.name)
        sections[name] = SectionInfo(
            name=name,
            rva=section.virtual_address,
            size=section.virtual_size,
            file_offset=section.pointerto_raw_data,
            raw_size=section.sizeof_raw_data,
        )

    directories = binary.data_directories
    debug_dir = directories[DEBUG_DIRECTORY_INDEX]
    clr_dir = directories[CLR_RUNTIME_HEADER_INDEX]

    image = AssemblyImage(
        path=path,
        timestamp=int(binary.header.time_date_stamps),
        dll_characteristics=int(binary.optional_header.dll_characteristics),
        sections=sections,
        debug_entries=parse_debug_directory(data, sections, debug_dir.rva, debug_dir.size),
    )

    if clr_dir.rva and clr_dir.size:
        raw_header = read_rva(data, sections, clr_dir.rva, clr_dir.size)
        if raw_header is None:
            raise StructuralFormatError(f"CLI header RVA 0x{clr_dir.rva:X} is not mapped")
        header = parse_cli_header(raw_header)
        image.metadata = read_rva(data, sections, header.metadata_rva, header.metadata_size)
        if image.metadata is None:
            raise StructuralFormatError(f"metadata RVA 0x{header.metadata_rva:X} is not mapped")
        if header.resources_rva and header.resources_size:
            image.resources = read_rva(
                data, sections, header.resources_rva, header.resources_size
            )

    return image
