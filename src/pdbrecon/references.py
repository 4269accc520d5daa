"""references.py – Decoder for the compilation metadata-references blob.

The blob lists every assembly the compiler was given as a reference, in
command-line order.  Two encodings exist for what is nominally the same
record, and they cannot be told apart reliably from the bytes alone, so the
caller chooses one explicitly through :class:`ReferenceBlobFormat`:

``PORTABLE_PDB``
    The Portable PDB CompilationMetadataReferences layout written by current
    compilers.  No count; entries run to the end of the blob::

        file-name\\0  aliases\\0  properties:u8  timestamp:i32  image-size:i32  mvid:16

    ``properties`` bit 0 is the image kind (1 = assembly, 0 = module) and
    bit 1 is EmbedInteropTypes.

``COMPRESSED_PREFIXED``
    The older count-prefixed layout: compressed count, then per entry a
    compressed-length file name, a compressed alias count and alias strings,
    and a properties byte whose bit 0 is EmbedInteropTypes.

Decoding never raises: a blob that ends mid-entry yields the entries read so
far together with the :class:`StructuralFormatError` that stopped it.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from enum import Enum

from pdbrecon.errors import StructuralFormatError
from pdbrecon.metadata import ByteReader

MVID_SIZE = 16


class ReferenceBlobFormat(Enum):
    PORTABLE_PDB = "portable-pdb"
    COMPRESSED_PREFIXED = "compressed-prefixed"


class ImageKind(Enum):
    MODULE = "module"
    ASSEMBLY = "assembly"


@dataclass(frozen=True)
class ReferenceDescriptor:
    """One metadata reference passed to the compiler."""

    file_name: str
    extern_aliases: tuple[str, ...] = ()
    embed_interop_types: bool = False
    image_kind: ImageKind = ImageKind.ASSEMBLY
    timestamp: int = 0
    image_size: int = 0
    module_version_id: uuid.UUID = uuid.UUID(int=0)

    @property
    def category(self) -> str:
        """``framework``, ``package`` or ``other``."""
        if is_framework_reference(self.file_name):
            return "framework"
        if is_package_reference(self.file_name):
            return "package"
        return "other"

    def to_dict(self) -> dict[str, object]:
        return {
            "file_name": self.file_name,
            "extern_aliases": list(self.extern_aliases),
            "embed_interop_types": self.embed_interop_types,
            "image_kind": self.image_kind.value,
            "timestamp": self.timestamp,
            "image_size": self.image_size,
            "module_version_id": str(self.module_version_id),
            "category": self.category,
            "package": _package_dict(self.file_name),
        }


@dataclass
class ReferenceParseResult:
    references: list[ReferenceDescriptor] = field(default_factory=list)
    error: StructuralFormatError | None = None

    @property
    def complete(self) -> bool:
        return self.error is None


def _split_aliases(raw: str) -> tuple[str, ...]:
    # Ordered set: keep first occurrence
    aliases = (alias.strip() for alias in raw.split(","))
    return tuple(dict.fromkeys(alias for alias in aliases if alias))


def _decode_utf8(raw: bytes, reader: ByteReader) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StructuralFormatError(f"invalid UTF-8 in reference blob: {exc}", reader.offset) from None


def _read_portable_entry(r: ByteReader) -> ReferenceDescriptor:
    file_name = _decode_utf8(r.read_until_nul(), r)
    aliases = _split_aliases(_decode_utf8(r.read_until_nul(), r))
    properties = r.read_u8()
    timestamp = r.read_i32()
    image_size = r.read_i32()
    mvid = uuid.UUID(bytes_le=r.read_bytes(MVID_SIZE))
    return ReferenceDescriptor(
        file_name=file_name,
        extern_aliases=aliases,
        embed_interop_types=bool(properties & 0x02),
        image_kind=ImageKind.ASSEMBLY if properties & 0x01 else ImageKind.MODULE,
        timestamp=timestamp,
        image_size=image_size,
        module_version_id=mvid,
    )


def _read_compressed_string(r: ByteReader) -> str:
    length = r.read_compressed_uint()
    return _decode_utf8(r.read_bytes(length), r)


def _read_prefixed_entry(r: ByteReader) -> ReferenceDescriptor:
    file_name = _read_compressed_string(r)
    alias_count = r.read_compressed_uint()
    aliases = [_read_compressed_string(r) for _ in range(alias_count)]
    properties = r.read_u8()
    return ReferenceDescriptor(
        file_name=file_name,
        extern_aliases=tuple(dict.fromkeys(a for a in aliases if a)),
        embed_interop_types=bool(properties & 0x01),
    )


def parse_reference_blob(
    data: bytes,
    fmt: ReferenceBlobFormat = ReferenceBlobFormat.PORTABLE_PDB,
) -> ReferenceParseResult:
    """Decode a metadata-references blob in the given *fmt*."""
    return parse_references(ByteReader(bytes(data)), fmt)


def parse_references(
    reader: ByteReader,
    fmt: ReferenceBlobFormat = ReferenceBlobFormat.PORTABLE_PDB,
) -> ReferenceParseResult:
    """Decode references from a reader bounded to the blob."""
    result = ReferenceParseResult()
    try:
        if fmt is ReferenceBlobFormat.PORTABLE_PDB:
            while not reader.at_end:
                result.references.append(_read_portable_entry(reader))
        else:
            count = reader.read_compressed_uint()
            for _ in range(count):
                result.references.append(_read_prefixed_entry(reader))
            if not reader.at_end:
                raise StructuralFormatError(
                    f"{reader.remaining} trailing bytes after {count} references", reader.offset
                )
    except StructuralFormatError as exc:
        result.error = exc
    return result


# ---------------------------------------------------------------------------
# Reference classification
# ---------------------------------------------------------------------------

_FRAMEWORK_NAMES = frozenset(
    {"mscorlib", "netstandard", "system", "microsoft.csharp", "microsoft.visualbasic",
     "windowsbase", "presentationcore", "presentationframework"}
)  # fmt: skip
_FRAMEWORK_PREFIXES = ("system.", "microsoft.win32.", "microsoft.visualbasic.")
_NUGET_PACKAGE_RE = re.compile(r"/\.nuget/packages/([^/]+)/([^/]+)/", re.IGNORECASE)
_TFM_SEGMENT_RE = re.compile(r"/(?:lib|ref)/([^/]+)/", re.IGNORECASE)


def _normalized(path: str) -> str:
    return path.replace("\\", "/")


def _base_name(path: str) -> str:
    name = _normalized(path).rsplit("/", 1)[-1]
    return name[:-4] if name.lower().endswith((".dll", ".exe")) else name


def is_framework_reference(file_name: str) -> bool:
    """Whether *file_name* is a framework/BCL reference rather than a package one."""
    path = _normalized(file_name).lower()
    if "/dotnet/packs/" in path or "/dotnet/shared/" in path:
        return True
    if ".app.ref/" in path or "/reference assemblies/" in path:
        return True
    name = _base_name(file_name).lower()
    return name in _FRAMEWORK_NAMES or name.startswith(_FRAMEWORK_PREFIXES)


def is_package_reference(file_name: str) -> bool:
    return "/.nuget/packages/" in _normalized(file_name).lower()


def package_info_from_path(file_name: str) -> tuple[str, str] | None:
    """Extract ``(package_id, version)`` from a NuGet cache path."""
    match = _NUGET_PACKAGE_RE.search(_normalized(file_name))
    if match is None:
        return None
    return match.group(1), match.group(2)


def _package_dict(file_name: str) -> dict[str, str] | None:
    info = package_info_from_path(file_name)
    if info is None:
        return None
    return {"id": info[0], "version": info[1]}


def infer_target_framework(references: list[ReferenceDescriptor]) -> str | None:
    """Guess the TFM from ``/lib/<tfm>/`` or ``/ref/<tfm>/`` reference paths."""
    for reference in references:
        for match in _TFM_SEGMENT_RE.finditer(_normalized(reference.file_name)):
            tfm = match.group(1)
            if tfm.lower().startswith("net") and ("." in tfm or tfm[3:4].isdigit()):
                return tfm
    return None
