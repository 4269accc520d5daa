"""metadata.py – ECMA-335 metadata reader for assemblies and Portable PDBs.

Parses a metadata root (``BSJB`` signature), its stream directory, the
compressed table stream (``#~``/``#-``), the ``#Strings``/``#Blob``/``#GUID``
heaps and, for Portable PDBs, the ``#Pdb`` stream.  Row sizes, heap index
widths and coded-index widths are computed from the full table schema so that
any table can be located exactly, even when only a handful are read.

All reads go through :class:`ByteReader`, which is bounded to a byte range
and raises :class:`~pdbrecon.errors.StructuralFormatError` instead of reading
past it.

Usage::

    from pdbrecon.metadata import MetadataReader, TableId

    md = MetadataReader(pdb_bytes)
    for row in md.rows(TableId.DOCUMENT):
        print(md.document_name(row["Name"]))
"""

from __future__ import annotations

import struct
import uuid
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum
from typing import Union

from pdbrecon.errors import StructuralFormatError

METADATA_SIGNATURE = 0x424A5342  # "BSJB"

# ---------------------------------------------------------------------------
# Bounded reader
# ---------------------------------------------------------------------------


class ByteReader:
    """Little-endian cursor over ``data[start:end]`` that never reads past *end*."""

    __slots__ = ("_data", "_start", "_end", "_pos")

    def __init__(self, data: bytes, start: int = 0, end: int | None = None) -> None:
        if end is None:
            end = len(data)
        if not 0 <= start <= end <= len(data):
            raise StructuralFormatError(
                f"range [{start}, {end}) lies outside a buffer of {len(data)} bytes", start
            )
        self._data = data
        self._start = start
        self._end = end
        self._pos = start

    @property
    def offset(self) -> int:
        """Absolute position in the underlying buffer."""
        return self._pos

    @property
    def position(self) -> int:
        """Position relative to the start of the range."""
        return self._pos - self._start

    @property
    def remaining(self) -> int:
        return self._end - self._pos

    @property
    def at_end(self) -> bool:
        return self._pos >= self._end

    def _take(self, n: int) -> int:
        if n < 0 or n > self._end - self._pos:
            raise StructuralFormatError(
                f"need {n} bytes but only {self._end - self._pos} remain", self._pos
            )
        pos = self._pos
        self._pos += n
        return pos

    def read_bytes(self, n: int) -> bytes:
        pos = self._take(n)
        return self._data[pos : pos + n]

    def read_rest(self) -> bytes:
        return self.read_bytes(self.remaining)

    def skip(self, n: int) -> None:
        self._take(n)

    def seek(self, position: int) -> None:
        """Move to *position*, relative to the start of the range."""
        if not 0 <= position <= self._end - self._start:
            raise StructuralFormatError(f"seek to {position} outside range", self._start + position)
        self._pos = self._start + position

    def align(self, boundary: int) -> None:
        """Advance to the next multiple of *boundary* relative to the range start."""
        misalign = self.position % boundary
        if misalign:
            self.skip(boundary - misalign)

    def read_u8(self) -> int:
        pos = self._take(1)
        return self._data[pos]

    def read_u16(self) -> int:
        pos = self._take(2)
        return struct.unpack_from("<H", self._data, pos)[0]

    def read_u32(self) -> int:
        pos = self._take(4)
        return struct.unpack_from("<I", self._data, pos)[0]

    def read_i32(self) -> int:
        pos = self._take(4)
        return struct.unpack_from("<i", self._data, pos)[0]

    def read_u64(self) -> int:
        pos = self._take(8)
        return struct.unpack_from("<Q", self._data, pos)[0]

    def read_uint(self, size: int) -> int:
        """Read a 2- or 4-byte unsigned index."""
        return self.read_u16() if size == 2 else self.read_u32()

    def read_compressed_uint(self) -> int:
        """Read an ECMA-335 compressed unsigned integer (1, 2 or 4 bytes)."""
        start = self._pos
        first = self.read_u8()
        if first & 0x80 == 0:
            return first
        if first & 0xC0 == 0x80:
            return ((first & 0x3F) << 8) | self.read_u8()
        if first & 0xE0 == 0xC0:
            rest = self.read_bytes(3)
            return ((first & 0x1F) << 24) | (rest[0] << 16) | (rest[1] << 8) | rest[2]
        raise StructuralFormatError(f"invalid compressed integer lead byte 0x{first:02X}", start)

    def read_until_nul(self) -> bytes:
        """Read bytes up to a NUL terminator (consumed, not returned)."""
        nul = self._data.find(b"\x00", self._pos, self._end)
        if nul < 0:
            raise StructuralFormatError("unterminated string", self._pos)
        value = self._data[self._pos : nul]
        self._pos = nul + 1
        return value

    def read_guid(self) -> uuid.UUID:
        return uuid.UUID(bytes_le=self.read_bytes(16))


def inflate_exact(data: bytes, size: int, what: str, offset: int = 0) -> bytes:
    """Inflate raw DEFLATE *data* that must produce exactly *size* bytes.

    Output is capped at ``size + 1`` bytes so a stream that expands past its
    declared size is rejected without being inflated in full.
    """
    inflater = zlib.decompressobj(-zlib.MAX_WBITS)
    try:
        raw = inflater.decompress(data, size + 1)
    except zlib.error as exc:
        raise StructuralFormatError(f"{what} does not inflate: {exc}", offset) from None
    if len(raw) > size or inflater.unconsumed_tail:
        raise StructuralFormatError(f"{what} inflates past its declared {size} bytes", offset)
    if not inflater.eof:
        raise StructuralFormatError(f"{what} is a truncated DEFLATE stream", offset)
    if len(raw) != size:
        raise StructuralFormatError(
            f"{what} inflated to {len(raw)} bytes, expected {size}", offset
        )
    return raw


# ---------------------------------------------------------------------------
# Table schema
# ---------------------------------------------------------------------------


class TableId(IntEnum):
    MODULE = 0x00
    TYPE_REF = 0x01
    TYPE_DEF = 0x02
    FIELD_PTR = 0x03
    FIELD = 0x04
    METHOD_PTR = 0x05
    METHOD_DEF = 0x06
    PARAM_PTR = 0x07
    PARAM = 0x08
    INTERFACE_IMPL = 0x09
    MEMBER_REF = 0x0A
    CONSTANT = 0x0B
    CUSTOM_ATTRIBUTE = 0x0C
    FIELD_MARSHAL = 0x0D
    DECL_SECURITY = 0x0E
    CLASS_LAYOUT = 0x0F
    FIELD_LAYOUT = 0x10
    STAND_ALONE_SIG = 0x11
    EVENT_MAP = 0x12
    EVENT_PTR = 0x13
    EVENT = 0x14
    PROPERTY_MAP = 0x15
    PROPERTY_PTR = 0x16
    PROPERTY = 0x17
    METHOD_SEMANTICS = 0x18
    METHOD_IMPL = 0x19
    MODULE_REF = 0x1A
    TYPE_SPEC = 0x1B
    IMPL_MAP = 0x1C
    FIELD_RVA = 0x1D
    ENC_LOG = 0x1E
    ENC_MAP = 0x1F
    ASSEMBLY = 0x20
    ASSEMBLY_PROCESSOR = 0x21
    ASSEMBLY_OS = 0x22
    ASSEMBLY_REF = 0x23
    ASSEMBLY_REF_PROCESSOR = 0x24
    ASSEMBLY_REF_OS = 0x25
    FILE = 0x26
    EXPORTED_TYPE = 0x27
    MANIFEST_RESOURCE = 0x28
    NESTED_CLASS = 0x29
    GENERIC_PARAM = 0x2A
    METHOD_SPEC = 0x2B
    GENERIC_PARAM_CONSTRAINT = 0x2C
    # Portable PDB tables
    DOCUMENT = 0x30
    METHOD_DEBUG_INFORMATION = 0x31
    LOCAL_SCOPE = 0x32
    LOCAL_VARIABLE = 0x33
    LOCAL_CONSTANT = 0x34
    IMPORT_SCOPE = 0x35
    STATE_MACHINE_METHOD = 0x36
    CUSTOM_DEBUG_INFORMATION = 0x37


@dataclass(frozen=True)
class CodedIndex:
    """A coded-index family: tag width plus the tables selectable by tag."""

    name: str
    tag_bits: int
    tables: tuple[TableId | None, ...]

    def decode(self, value: int) -> tuple[TableId | None, int]:
        tag = value & ((1 << self.tag_bits) - 1)
        table = self.tables[tag] if tag < len(self.tables) else None
        return table, value >> self.tag_bits


T = TableId

TYPE_DEF_OR_REF = CodedIndex("TypeDefOrRef", 2, (T.TYPE_DEF, T.TYPE_REF, T.TYPE_SPEC))
HAS_CONSTANT = CodedIndex("HasConstant", 2, (T.FIELD, T.PARAM, T.PROPERTY))
_HAS_CA_TABLES: tuple[TableId | None, ...] = (
    T.METHOD_DEF, T.FIELD, T.TYPE_REF, T.TYPE_DEF, T.PARAM, T.INTERFACE_IMPL, T.MEMBER_REF,
    T.MODULE, T.DECL_SECURITY, T.PROPERTY, T.EVENT, T.STAND_ALONE_SIG, T.MODULE_REF,
    T.TYPE_SPEC, T.ASSEMBLY, T.ASSEMBLY_REF, T.FILE, T.EXPORTED_TYPE, T.MANIFEST_RESOURCE,
    T.GENERIC_PARAM, T.GENERIC_PARAM_CONSTRAINT, T.METHOD_SPEC,
)  # fmt: skip
HAS_CUSTOM_ATTRIBUTE = CodedIndex("HasCustomAttribute", 5, _HAS_CA_TABLES)
HAS_FIELD_MARSHAL = CodedIndex("HasFieldMarshal", 1, (T.FIELD, T.PARAM))
HAS_DECL_SECURITY = CodedIndex("HasDeclSecurity", 2, (T.TYPE_DEF, T.METHOD_DEF, T.ASSEMBLY))
MEMBER_REF_PARENT = CodedIndex(
    "MemberRefParent", 3, (T.TYPE_DEF, T.TYPE_REF, T.MODULE_REF, T.METHOD_DEF, T.TYPE_SPEC)
)
HAS_SEMANTICS = CodedIndex("HasSemantics", 1, (T.EVENT, T.PROPERTY))
METHOD_DEF_OR_REF = CodedIndex("MethodDefOrRef", 1, (T.METHOD_DEF, T.MEMBER_REF))
MEMBER_FORWARDED = CodedIndex("MemberForwarded", 1, (T.FIELD, T.METHOD_DEF))
IMPLEMENTATION = CodedIndex("Implementation", 2, (T.FILE, T.ASSEMBLY_REF, T.EXPORTED_TYPE))
CUSTOM_ATTRIBUTE_TYPE = CodedIndex(
    "CustomAttributeType", 3, (None, None, T.METHOD_DEF, T.MEMBER_REF, None)
)
RESOLUTION_SCOPE = CodedIndex(
    "ResolutionScope", 2, (T.MODULE, T.MODULE_REF, T.ASSEMBLY_REF, T.TYPE_REF)
)
TYPE_OR_METHOD_DEF = CodedIndex("TypeOrMethodDef", 1, (T.TYPE_DEF, T.METHOD_DEF))
HAS_CUSTOM_DEBUG_INFORMATION = CodedIndex(
    "HasCustomDebugInformation",
    5,
    _HAS_CA_TABLES
    + (T.DOCUMENT, T.LOCAL_SCOPE, T.LOCAL_VARIABLE, T.LOCAL_CONSTANT, T.IMPORT_SCOPE),
)

# Column kinds: fixed widths (1/2/4), heap names, a TableId (simple index) or
# a CodedIndex.
ColumnKind = Union[int, str, TableId, CodedIndex]
U8, U16, U32 = 1, 2, 4
STR, GUID, BLOB = "string", "guid", "blob"

SCHEMAS: dict[TableId, tuple[tuple[str, ColumnKind], ...]] = {
    T.MODULE: (("Generation", U16), ("Name", STR), ("Mvid", GUID), ("EncId", GUID), ("EncBaseId", GUID)),
    T.TYPE_REF: (("ResolutionScope", RESOLUTION_SCOPE), ("TypeName", STR), ("TypeNamespace", STR)),
    T.TYPE_DEF: (
        ("Flags", U32), ("TypeName", STR), ("TypeNamespace", STR),
        ("Extends", TYPE_DEF_OR_REF), ("FieldList", T.FIELD), ("MethodList", T.METHOD_DEF),
    ),
    T.FIELD_PTR: (("Field", T.FIELD),),
    T.FIELD: (("Flags", U16), ("Name", STR), ("Signature", BLOB)),
    T.METHOD_PTR: (("Method", T.METHOD_DEF),),
    T.METHOD_DEF: (
        ("RVA", U32), ("ImplFlags", U16), ("Flags", U16),
        ("Name", STR), ("Signature", BLOB), ("ParamList", T.PARAM),
    ),
    T.PARAM_PTR: (("Param", T.PARAM),),
    T.PARAM: (("Flags", U16), ("Sequence", U16), ("Name", STR)),
    T.INTERFACE_IMPL: (("Class", T.TYPE_DEF), ("Interface", TYPE_DEF_OR_REF)),
    T.MEMBER_REF: (("Class", MEMBER_REF_PARENT), ("Name", STR), ("Signature", BLOB)),
    T.CONSTANT: (("Type", U8), ("Padding", U8), ("Parent", HAS_CONSTANT), ("Value", BLOB)),
    T.CUSTOM_ATTRIBUTE: (("Parent", HAS_CUSTOM_ATTRIBUTE), ("Type", CUSTOM_ATTRIBUTE_TYPE), ("Value", BLOB)),
    T.FIELD_MARSHAL: (("Parent", HAS_FIELD_MARSHAL), ("NativeType", BLOB)),
    T.DECL_SECURITY: (("Action", U16), ("Parent", HAS_DECL_SECURITY), ("PermissionSet", BLOB)),
    T.CLASS_LAYOUT: (("PackingSize", U16), ("ClassSize", U32), ("Parent", T.TYPE_DEF)),
    T.FIELD_LAYOUT: (("Offset", U32), ("Field", T.FIELD)),
    T.STAND_ALONE_SIG: (("Signature", BLOB),),
    T.EVENT_MAP: (("Parent", T.TYPE_DEF), ("EventList", T.EVENT)),
    T.EVENT_PTR: (("Event", T.EVENT),),
    T.EVENT: (("EventFlags", U16), ("Name", STR), ("EventType", TYPE_DEF_OR_REF)),
    T.PROPERTY_MAP: (("Parent", T.TYPE_DEF), ("PropertyList", T.PROPERTY)),
    T.PROPERTY_PTR: (("Property", T.PROPERTY),),
    T.PROPERTY: (("Flags", U16), ("Name", STR), ("Type", BLOB)),
    T.METHOD_SEMANTICS: (("Semantics", U16), ("Method", T.METHOD_DEF), ("Association", HAS_SEMANTICS)),
    T.METHOD_IMPL: (
        ("Class", T.TYPE_DEF), ("MethodBody", METHOD_DEF_OR_REF), ("MethodDeclaration", METHOD_DEF_OR_REF),
    ),
    T.MODULE_REF: (("Name", STR),),
    T.TYPE_SPEC: (("Signature", BLOB),),
    T.IMPL_MAP: (
        ("MappingFlags", U16), ("MemberForwarded", MEMBER_FORWARDED),
        ("ImportName", STR), ("ImportScope", T.MODULE_REF),
    ),
    T.FIELD_RVA: (("RVA", U32), ("Field", T.FIELD)),
    T.ENC_LOG: (("Token", U32), ("FuncCode", U32)),
    T.ENC_MAP: (("Token", U32),),
    T.ASSEMBLY: (
        ("HashAlgId", U32), ("MajorVersion", U16), ("MinorVersion", U16),
        ("BuildNumber", U16), ("RevisionNumber", U16), ("Flags", U32),
        ("PublicKey", BLOB), ("Name", STR), ("Culture", STR),
    ),
    T.ASSEMBLY_PROCESSOR: (("Processor", U32),),
    T.ASSEMBLY_OS: (("OSPlatformId", U32), ("OSMajorVersion", U32), ("OSMinorVersion", U32)),
    T.ASSEMBLY_REF: (
        ("MajorVersion", U16), ("MinorVersion", U16), ("BuildNumber", U16), ("RevisionNumber", U16),
        ("Flags", U32), ("PublicKeyOrToken", BLOB), ("Name", STR), ("Culture", STR), ("HashValue", BLOB),
    ),
    T.ASSEMBLY_REF_PROCESSOR: (("Processor", U32), ("AssemblyRef", T.ASSEMBLY_REF)),
    T.ASSEMBLY_REF_OS: (
        ("OSPlatformId", U32), ("OSMajorVersion", U32), ("OSMinorVersion", U32),
        ("AssemblyRef", T.ASSEMBLY_REF),
    ),
    T.FILE: (("Flags", U32), ("Name", STR), ("HashValue", BLOB)),
    T.EXPORTED_TYPE: (
        ("Flags", U32), ("TypeDefId", U32), ("TypeName", STR),
        ("TypeNamespace", STR), ("Implementation", IMPLEMENTATION),
    ),
    T.MANIFEST_RESOURCE: (("Offset", U32), ("Flags", U32), ("Name", STR), ("Implementation", IMPLEMENTATION)),
    T.NESTED_CLASS: (("NestedClass", T.TYPE_DEF), ("EnclosingClass", T.TYPE_DEF)),
    T.GENERIC_PARAM: (("Number", U16), ("Flags", U16), ("Owner", TYPE_OR_METHOD_DEF), ("Name", STR)),
    T.METHOD_SPEC: (("Method", METHOD_DEF_OR_REF), ("Instantiation", BLOB)),
    T.GENERIC_PARAM_CONSTRAINT: (("Owner", T.GENERIC_PARAM), ("Constraint", TYPE_DEF_OR_REF)),
    T.DOCUMENT: (("Name", BLOB), ("HashAlgorithm", GUID), ("Hash", BLOB), ("Language", GUID)),
    T.METHOD_DEBUG_INFORMATION: (("Document", T.DOCUMENT), ("SequencePoints", BLOB)),
    T.LOCAL_SCOPE: (
        ("Method", T.METHOD_DEF), ("ImportScope", T.IMPORT_SCOPE), ("VariableList", T.LOCAL_VARIABLE),
        ("ConstantList", T.LOCAL_CONSTANT), ("StartOffset", U32), ("Length", U32),
    ),
    T.LOCAL_VARIABLE: (("Attributes", U16), ("Index", U16), ("Name", STR)),
    T.LOCAL_CONSTANT: (("Name", STR), ("Signature", BLOB)),
    T.IMPORT_SCOPE: (("Parent", T.IMPORT_SCOPE), ("Imports", BLOB)),
    T.STATE_MACHINE_METHOD: (("MoveNextMethod", T.METHOD_DEF), ("KickoffMethod", T.METHOD_DEF)),
    T.CUSTOM_DEBUG_INFORMATION: (("Parent", HAS_CUSTOM_DEBUG_INFORMATION), ("Kind", GUID), ("Value", BLOB)),
}  # fmt: skip

del T

Row = dict[str, int]

# ---------------------------------------------------------------------------
# Stream structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StreamHeader:
    name: str
    offset: int
    size: int


@dataclass(frozen=True)
class PdbStreamInfo:
    """Contents of the ``#Pdb`` stream of a Portable PDB."""

    pdb_id: bytes  # 20 bytes: 16-byte GUID + 4-byte stamp
    entry_point: int
    referenced_row_counts: dict[TableId, int]

    @property
    def guid(self) -> uuid.UUID:
        return uuid.UUID(bytes_le=self.pdb_id[:16])

    @property
    def stamp(self) -> int:
        return struct.unpack_from("<I", self.pdb_id, 16)[0]


@dataclass(frozen=True)
class TableLayout:
    table: TableId
    row_count: int
    row_size: int
    offset: int  # absolute offset of row 1 in the metadata buffer
    columns: tuple[tuple[str, ColumnKind, int], ...]  # (name, kind, width)


def _parse_pdb_stream(data: bytes, header: StreamHeader) -> PdbStreamInfo:
    r = ByteReader(data, header.offset, header.offset + header.size)
    pdb_id = r.read_bytes(20)
    entry_point = r.read_u32()
    referenced = r.read_u64()
    counts: dict[TableId, int] = {}
    for bit in range(64):
        if referenced >> bit & 1:
            count = r.read_u32()
            try:
                counts[TableId(bit)] = count
            except ValueError:
                raise StructuralFormatError(
                    f"#Pdb stream references unknown table 0x{bit:02X}", r.offset
                ) from None
    return PdbStreamInfo(pdb_id=pdb_id, entry_point=entry_point, referenced_row_counts=counts)


# ---------------------------------------------------------------------------
# Reader
# ---------------------------------------------------------------------------


class MetadataReader:
    """Random access to the tables and heaps of one metadata root."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.streams: dict[str, StreamHeader] = {}
        self.pdb: PdbStreamInfo | None = None
        self.tables: dict[TableId, TableLayout] = {}
        self._parse_root()
        if "#Pdb" in self.streams:
            self.pdb = _parse_pdb_stream(self.data, self.streams["#Pdb"])
        self._parse_tables()

    # -- root ---------------------------------------------------------------

    def _parse_root(self) -> None:
        r = ByteReader(self.data)
        signature = r.read_u32()
        if signature != METADATA_SIGNATURE:
            raise StructuralFormatError(f"bad metadata signature 0x{signature:08X}", 0)
        self.major_version = r.read_u16()
        self.minor_version = r.read_u16()
        r.skip(4)  # reserved
        length = r.read_u32()
        self.version = r.read_bytes(length).split(b"\x00", 1)[0].decode("ascii", "replace")
        r.skip(2)  # flags
        count = r.read_u16()
        for _ in range(count):
            offset = r.read_u32()
            size = r.read_u32()
            name = r.read_until_nul().decode("ascii", "replace")
            r.align(4)
            if offset + size > len(self.data):
                raise StructuralFormatError(f"stream {name!r} extends past metadata end", offset)
            self.streams[name] = StreamHeader(name=name, offset=offset, size=size)

    def _stream(self, name: str) -> StreamHeader | None:
        return self.streams.get(name)

    # -- tables -------------------------------------------------------------

    def _parse_tables(self) -> None:
        header = self._stream("#~") or self._stream("#-")
        self._row_counts: dict[TableId, int] = {}
        if header is None:
            self._heap_sizes = 0
            return
        r = ByteReader(self.data, header.offset, header.offset + header.size)
        r.skip(4)  # reserved
        r.skip(2)  # major, minor
        self._heap_sizes = r.read_u8()
        r.skip(1)  # reserved
        valid = r.read_u64()
        r.skip(8)  # sorted
        present: list[TableId] = []
        for bit in range(64):
            if valid >> bit & 1:
                count = r.read_u32()
                try:
                    table = TableId(bit)
                except ValueError:
                    raise StructuralFormatError(
                        f"table stream declares unknown table 0x{bit:02X}", r.offset
                    ) from None
                self._row_counts[table] = count
                present.append(table)
        if self._heap_sizes & 0x40:
            r.skip(4)  # extra data

        offset = r.offset
        end = header.offset + header.size
        for table in present:
            columns = tuple(
                (name, kind, self._column_width(kind)) for name, kind in SCHEMAS[table]
            )
            row_size = sum(width for _, _, width in columns)
            row_count = self._row_counts[table]
            if offset + row_size * row_count > end:
                raise StructuralFormatError(
                    f"table {table.name} ({row_count} rows) extends past the table stream", offset
                )
            self.tables[table] = TableLayout(table, row_count, row_size, offset, columns)
            offset += row_size * row_count

    def row_count(self, table: TableId) -> int:
        """Rows in *table*, counting type-system tables referenced by a PDB."""
        if table in self._row_counts:
            return self._row_counts[table]
        if self.pdb is not None:
            return self.pdb.referenced_row_counts.get(table, 0)
        return 0

    def _column_width(self, kind: ColumnKind) -> int:
        if isinstance(kind, CodedIndex):
            limit = 1 << (16 - kind.tag_bits)
            largest = max((self.row_count(t) for t in kind.tables if t is not None), default=0)
            return 2 if largest < limit else 4
        if isinstance(kind, TableId):
            return 2 if self.row_count(kind) < 0x10000 else 4
        if kind == STR:
            return 4 if self._heap_sizes & 0x01 else 2
        if kind == GUID:
            return 4 if self._heap_sizes & 0x02 else 2
        if kind == BLOB:
            return 4 if self._heap_sizes & 0x04 else 2
        return int(kind)

    def row(self, table: TableId, rid: int) -> Row:
        """Read row *rid* (1-based) of *table*."""
        layout = self.tables.get(table)
        if layout is None or not 1 <= rid <= layout.row_count:
            raise StructuralFormatError(f"{table.name} row {rid} does not exist")
        start = layout.offset + (rid - 1) * layout.row_size
        r = ByteReader(self.data, start, start + layout.row_size)
        values: Row = {}
        for name, kind, width in layout.columns:
            if width == 1:
                values[name] = r.read_u8()
            else:
                values[name] = r.read_uint(width)
        return values

    def rows(self, table: TableId) -> Iterator[Row]:
        layout = self.tables.get(table)
        if layout is None:
            return
        for rid in range(1, layout.row_count + 1):
            yield self.row(table, rid)

    # -- heaps --------------------------------------------------------------

    def _heap(self, name: str) -> StreamHeader:
        header = self._stream(name)
        if header is None:
            raise StructuralFormatError(f"metadata has no {name} heap")
        return header

    def get_string(self, index: int) -> str:
        if index == 0:
            return ""
        heap = self._heap("#Strings")
        if index >= heap.size:
            raise StructuralFormatError(f"string index {index} outside #Strings", heap.offset)
        r = ByteReader(self.data, heap.offset + index, heap.offset + heap.size)
        raw = r.read_until_nul()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise StructuralFormatError(f"invalid UTF-8 in #Strings: {exc}", r.offset) from None

    def blob_reader(self, index: int) -> ByteReader:
        """Return a reader bounded to the contents of blob *index*."""
        if index == 0:
            return ByteReader(self.data, 0, 0)
        heap = self._heap("#Blob")
        if index >= heap.size:
            raise StructuralFormatError(f"blob index {index} outside #Blob", heap.offset)
        r = ByteReader(self.data, heap.offset + index, heap.offset + heap.size)
        length = r.read_compressed_uint()
        start = r.offset
        if length > r.remaining:
            raise StructuralFormatError(f"blob {index} of {length} bytes overruns #Blob", start)
        return ByteReader(self.data, start, start + length)

    def get_blob(self, index: int) -> bytes:
        return self.blob_reader(index).read_rest()

    def get_guid(self, index: int) -> uuid.UUID | None:
        if index == 0:
            return None
        heap = self._heap("#GUID")
        start = heap.offset + (index - 1) * 16
        if index < 0 or start + 16 > heap.offset + heap.size:
            raise StructuralFormatError(f"GUID index {index} outside #GUID", heap.offset)
        return uuid.UUID(bytes_le=self.data[start : start + 16])

    def document_name(self, blob_index: int) -> str:
        """Decode a Portable PDB document-name blob.

        The blob holds a separator byte followed by compressed #Blob indices,
        each naming one UTF-8 path part.  A zero separator joins parts
        directly.
        """
        r = self.blob_reader(blob_index)
        if r.at_end:
            return ""
        separator = r.read_u8()
        parts: list[str] = []
        while not r.at_end:
            part_index = r.read_compressed_uint()
            raw = self.get_blob(part_index) if part_index else b""
            try:
                parts.append(raw.decode("utf-8"))
            except UnicodeDecodeError as exc:
                raise StructuralFormatError(f"invalid UTF-8 in document name: {exc}") from None
        joiner = chr(separator) if separator else ""
        return joiner.join(parts)

    @property
    def is_portable_pdb(self) -> bool:
        return self.pdb is not None
