"""Test-only builders for Portable PDB and assembly metadata bytes.

Produces metadata roots that follow ECMA-335 II.24 and the Portable PDB
format closely enough for :class:`pdbrecon.metadata.MetadataReader`, plus
the blob encodings the decoders consume (reference blobs, embedded source,
document names, debug-directory payloads).
"""

from __future__ import annotations

import struct
import uuid
import zlib
from dataclasses import dataclass, field
from pathlib import Path

from pdbrecon.binary_loader import AssemblyImage, DebugDirectoryEntry
from pdbrecon.cdi import KIND_GUIDS, CdiKind
from pdbrecon.debug_info import DebugEntryType
from pdbrecon.metadata import (
    HAS_CUSTOM_DEBUG_INFORMATION,
    SCHEMAS,
    CodedIndex,
    TableId,
)

# ---------------------------------------------------------------------------
# Primitive encodings
# ---------------------------------------------------------------------------


def compress_uint(value: int) -> bytes:
    if value <= 0x7F:
        return bytes([value])
    if value <= 0x3FFF:
        return bytes([0x80 | (value >> 8), value & 0xFF])
    if value <= 0x1FFFFFFF:
        return bytes(
            [0xC0 | (value >> 24), (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF]
        )
    raise ValueError(value)


def deflate_raw(data: bytes) -> bytes:
    compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
    return compressor.compress(data) + compressor.flush()


def deflate_zeros(total: int, chunk: int = 1 << 20) -> bytes:
    """Raw DEFLATE stream of *total* zero bytes, built without holding them in memory."""
    compressor = zlib.compressobj(9, zlib.DEFLATED, -zlib.MAX_WBITS)
    zeros = bytes(chunk)
    parts = [compressor.compress(zeros) for _ in range(total // chunk)]
    parts.append(compressor.compress(bytes(total % chunk)))
    return b"".join(parts) + compressor.flush()


def _pad4(data: bytes) -> bytes:
    return data + b"\x00" * (-len(data) % 4)


def encode_coded(coded: CodedIndex, table: TableId, row: int) -> int:
    return (row << coded.tag_bits) | coded.tables.index(table)


# ---------------------------------------------------------------------------
# Blob payloads
# ---------------------------------------------------------------------------


def portable_reference(
    file_name: str,
    aliases: str = "",
    *,
    assembly: bool = True,
    embed_interop: bool = False,
    timestamp: int = 0,
    image_size: int = 0,
    mvid: uuid.UUID = uuid.UUID(int=0),
) -> bytes:
    properties = (1 if assembly else 0) | (2 if embed_interop else 0)
    return (
        file_name.encode("utf-8")
        + b"\x00"
        + aliases.encode("utf-8")
        + b"\x00"
        + bytes([properties])
        + struct.pack("<ii", timestamp, image_size)
        + mvid.bytes_le
    )


def prefixed_references(entries: list[tuple[str, list[str], bool]]) -> bytes:
    """Count-prefixed encoding: (file name, aliases, embed interop types)."""
    out = bytearray(compress_uint(len(entries)))
    for name, aliases, embed in entries:
        raw = name.encode("utf-8")
        out += compress_uint(len(raw)) + raw
        out += compress_uint(len(aliases))
        for alias in aliases:
            raw_alias = alias.encode("utf-8")
            out += compress_uint(len(raw_alias)) + raw_alias
        out.append(1 if embed else 0)
    return bytes(out)


def embedded_source(text: str | bytes, *, compress: bool = True) -> bytes:
    raw = text.encode("utf-8") if isinstance(text, str) else text
    if not compress:
        return struct.pack("<i", 0) + raw
    return struct.pack("<i", len(raw)) + deflate_raw(raw)


def options_blob(tokens: list[str]) -> bytes:
    return b"".join(t.encode("utf-8") + b"\x00" for t in tokens)


def codeview_payload(path: str, guid: uuid.UUID | None = None, age: int = 1) -> bytes:
    guid = guid or uuid.UUID("11111111-2222-3333-4444-555555555555")
    return b"RSDS" + guid.bytes_le + struct.pack("<I", age) + path.encode("utf-8") + b"\x00"


def checksum_payload(algorithm: str = "SHA256", digest: bytes = b"\xab" * 32) -> bytes:
    return algorithm.encode("ascii") + b"\x00" + digest


def embedded_pdb_payload(pdb: bytes) -> bytes:
    return b"MPDB" + struct.pack("<I", len(pdb)) + deflate_raw(pdb)


# ---------------------------------------------------------------------------
# Metadata root builder
# ---------------------------------------------------------------------------


@dataclass
class MetadataBuilder:
    pdb: bool = False
    pdb_id: bytes = bytes(range(20))
    entry_point: int = 0
    referenced_counts: dict[TableId, int] = field(default_factory=dict)
    version: str = "PDB v1.0"

    def __post_init__(self) -> None:
        self.strings = bytearray(b"\x00")
        self._string_index: dict[str, int] = {"": 0}
        self.blobs = bytearray(b"\x00")
        self.guids: list[bytes] = []
        self.tables: dict[TableId, list[dict[str, int]]] = {}

    # -- heaps --------------------------------------------------------------

    def string(self, value: str) -> int:
        if value not in self._string_index:
            self._string_index[value] = len(self.strings)
            self.strings += value.encode("utf-8") + b"\x00"
        return self._string_index[value]

    def blob(self, data: bytes) -> int:
        if not data:
            return 0
        index = len(self.blobs)
        self.blobs += compress_uint(len(data)) + data
        return index

    def guid(self, value: uuid.UUID | str) -> int:
        if isinstance(value, str):
            value = uuid.UUID(value)
        self.guids.append(value.bytes_le)
        return len(self.guids)

    # -- tables -------------------------------------------------------------

    def add_row(self, table: TableId, **values: int) -> int:
        rows = self.tables.setdefault(table, [])
        rows.append(values)
        return len(rows)

    def document_name(self, path: str, separator: str = "/") -> int:
        parts = path.split(separator) if separator else [path]
        encoded = bytearray(separator.encode("ascii") if separator else b"\x00")
        for part in parts:
            encoded += compress_uint(self.blob(part.encode("utf-8")))
        return self.blob(bytes(encoded))

    def add_cdi(self, parent: TableId, parent_row: int, kind: CdiKind | str, value: bytes) -> int:
        guid = KIND_GUIDS[kind] if isinstance(kind, CdiKind) else kind
        return self.add_row(
            TableId.CUSTOM_DEBUG_INFORMATION,
            Parent=encode_coded(HAS_CUSTOM_DEBUG_INFORMATION, parent, parent_row),
            Kind=self.guid(guid),
            Value=self.blob(value),
        )

    # -- serialization ------------------------------------------------------

    def _counts(self) -> dict[TableId, int]:
        counts = dict(self.referenced_counts)
        counts.update({t: len(rows) for t, rows in self.tables.items()})
        return counts

    @staticmethod
    def _width(kind: object, counts: dict[TableId, int]) -> int:
        if isinstance(kind, CodedIndex):
            largest = max((counts.get(t, 0) for t in kind.tables if t is not None), default=0)
            return 2 if largest < (1 << (16 - kind.tag_bits)) else 4
        if isinstance(kind, TableId):
            return 2 if counts.get(kind, 0) < 0x10000 else 4
        if kind in ("string", "guid", "blob"):
            return 2
        assert isinstance(kind, int)
        return kind

    def _table_stream(self) -> bytes:
        counts = self._counts()
        present = sorted(self.tables)
        valid = sum(1 << int(t) for t in present)
        out = bytearray(struct.pack("<IBBBBQQ", 0, 2, 0, 0, 1, valid, 0))
        for table in present:
            out += struct.pack("<I", len(self.tables[table]))
        for table in present:
            for row in self.tables[table]:
                for name, kind in SCHEMAS[table]:
                    width = self._width(kind, counts)
                    value = row.get(name, 0)
                    out += value.to_bytes(width, "little")
        return bytes(out)

    def _pdb_stream(self) -> bytes:
        mask = sum(1 << int(t) for t in self.referenced_counts)
        out = bytearray(self.pdb_id + struct.pack("<IQ", self.entry_point, mask))
        for table in sorted(self.referenced_counts):
            out += struct.pack("<I", self.referenced_counts[table])
        return bytes(out)

    def build(self) -> bytes:
        streams: list[tuple[str, bytes]] = []
        if self.pdb:
            streams.append(("#Pdb", self._pdb_stream()))
        streams += [
            ("#~", self._table_stream()),
            ("#Strings", bytes(self.strings)),
            ("#US", b"\x00"),
            ("#GUID", b"".join(self.guids)),
            ("#Blob", bytes(self.blobs)),
        ]
        version = _pad4(self.version.encode("ascii") + b"\x00")
        header = struct.pack("<IHHII", 0x424A5342, 1, 1, 0, len(version)) + version
        header += struct.pack("<HH", 0, len(streams))

        directory_size = sum(8 + len(_pad4(name.encode("ascii") + b"\x00")) for name, _ in streams)
        offset = len(header) + directory_size
        directory = bytearray()
        body = bytearray()
        for name, data in streams:
            padded = _pad4(data)
            directory += struct.pack("<II", offset, len(padded))
            directory += _pad4(name.encode("ascii") + b"\x00")
            body += padded
            offset += len(padded)
        return bytes(header + directory + body)


# ---------------------------------------------------------------------------
# Convenience builders
# ---------------------------------------------------------------------------

CSHARP_LANGUAGE = uuid.UUID("3f5162f8-07c6-11d3-9053-00c04fa302a1")
SHA256_HASH = uuid.UUID("8829d00f-11b8-4213-878b-770e8597ac16")


def build_pdb(
    *,
    options: list[str] | bytes | None = None,
    references: bytes | None = None,
    source_link: str | None = None,
    documents: list[tuple[str, bytes | None]] | None = None,
    extra_module_cdi: list[tuple[str, bytes]] | None = None,
    referenced_counts: dict[TableId, int] | None = None,
) -> bytes:
    """A Portable PDB with the given module CDI records and documents.

    *documents* pairs each document path with its EmbeddedSource blob (or
    ``None`` for an external document).
    """
    b = MetadataBuilder(pdb=True, referenced_counts=referenced_counts or {TableId.MODULE: 1})
    if options is not None:
        raw = options if isinstance(options, bytes) else options_blob(options)
        b.add_cdi(TableId.MODULE, 1, CdiKind.COMPILATION_OPTIONS, raw)
    if references is not None:
        b.add_cdi(TableId.MODULE, 1, CdiKind.METADATA_REFERENCES, references)
    if source_link is not None:
        b.add_cdi(TableId.MODULE, 1, CdiKind.SOURCE_LINK, source_link.encode("utf-8"))
    for guid, value in extra_module_cdi or []:
        b.add_cdi(TableId.MODULE, 1, guid, value)
    for path, blob in documents or []:
        rid = b.add_row(
            TableId.DOCUMENT,
            Name=b.document_name(path),
            HashAlgorithm=b.guid(SHA256_HASH),
            Hash=b.blob(b"\x01" * 32),
            Language=b.guid(CSHARP_LANGUAGE),
        )
        if blob is not None:
            b.add_cdi(TableId.DOCUMENT, rid, CdiKind.EMBEDDED_SOURCE, blob)
    return b.build()


def build_assembly_metadata(
    *,
    mvid: uuid.UUID = uuid.UUID("0f0e0d0c-0b0a-0908-0706-050403020100"),
    name: str = "Example",
    version: tuple[int, int, int, int] = (1, 2, 3, 4),
    public_key: bytes = b"",
    resources: list[tuple[str, int, int, int]] | None = None,
) -> bytes:
    """Assembly metadata with Module, Assembly and ManifestResource rows.

    *resources* entries are ``(name, offset, flags, implementation)``.
    """
    b = MetadataBuilder(pdb=False, version="v4.0.30319")
    b.add_row(TableId.MODULE, Name=b.string(f"{name}.dll"), Mvid=b.guid(mvid))
    b.add_row(
        TableId.ASSEMBLY,
        HashAlgId=0x8004,
        MajorVersion=version[0],
        MinorVersion=version[1],
        BuildNumber=version[2],
        RevisionNumber=version[3],
        PublicKey=b.blob(public_key),
        Name=b.string(name),
    )
    for res_name, offset, flags, implementation in resources or []:
        b.add_row(
            TableId.MANIFEST_RESOURCE,
            Offset=offset,
            Flags=flags,
            Name=b.string(res_name),
            Implementation=implementation,
        )
    return b.build()


def resources_section(blobs: list[bytes]) -> tuple[bytes, list[int]]:
    """Concatenate ``u32 length + data`` records; returns (bytes, offsets)."""
    out = bytearray()
    offsets = []
    for blob in blobs:
        offsets.append(len(out))
        out += struct.pack("<I", len(blob)) + blob
        out += b"\x00" * (-len(out) % 8)
    return bytes(out), offsets


# ---------------------------------------------------------------------------
# Sample assembly
# ---------------------------------------------------------------------------

SAMPLE_SOURCE_LINK = '{"documents": {"/_/src/*": "https://raw.example/repo/abc123/src/*"}}'
SAMPLE_LINKED_URL = "https://raw.example/repo/abc123/src/Lib/C.cs"
SAMPLE_REFERENCES = (
    "System.Runtime.dll",
    "/home/dev/.nuget/packages/newtonsoft.json/13.0.3/lib/net6.0/Newtonsoft.Json.dll",
    "Lib.Core.dll",
)


def sample_pdb() -> bytes:
    """Release build of a net8.0 library with two embedded and one linked document."""
    return build_pdb(
        options=[
            "language", "C#",
            "output-kind", "DynamicallyLinkedLibrary",
            "optimization", "release",
            "define", "TRACE;RELEASE;NET8_0",
        ],  # fmt: skip
        references=b"".join(portable_reference(name) for name in SAMPLE_REFERENCES),
        source_link=SAMPLE_SOURCE_LINK,
        documents=[
            ("/_/src/Lib/A.cs", embedded_source("class A {}")),
            ("/_/src/Lib/B.cs", embedded_source("class B {}", compress=False)),
            ("/_/src/Lib/C.cs", None),
        ],
    )


def sample_image(
    path: Path | str, pdb: bytes | None = None, *, embedded: bool = True
) -> AssemblyImage:
    """An :class:`AssemblyImage` for *path*.

    With *embedded* the PDB travels in the debug directory together with a
    reproducible marker and a PDB checksum; otherwise only a CodeView record
    naming ``<stem>.pdb`` is present.
    """
    path = Path(path)
    entries = [
        DebugDirectoryEntry(
            DebugEntryType.CODEVIEW, payload=codeview_payload(f"D:\\a\\obj\\{path.stem}.pdb")
        )
    ]
    if embedded:
        entries += [
            DebugDirectoryEntry(DebugEntryType.REPRODUCIBLE),
            DebugDirectoryEntry(
                DebugEntryType.EMBEDDED_PORTABLE_PDB,
                payload=embedded_pdb_payload(pdb if pdb is not None else sample_pdb()),
            ),
            DebugDirectoryEntry(DebugEntryType.PDB_CHECKSUM, payload=checksum_payload()),
        ]
    section, offsets = resources_section([b"resource-bytes"])
    return AssemblyImage(
        path=path,
        timestamp=0x1234ABCD,
        debug_entries=entries,
        metadata=build_assembly_metadata(
            name=path.stem, resources=[(f"{path.stem}.Strings.resources", offsets[0], 1, 0)]
        ),
        resources=section,
    )
