"""cdi.py – Custom debug information records of a Portable PDB.

Custom debug information (CDI) is a GUID-keyed, blob-valued extension table.
Four kinds matter here; each GUID is resolved exactly once through an
immutable lookup table into a :class:`CdiKind`, and anything else is
``UNKNOWN`` and ignored.

Module-level records (parent = Module row 1) carry the compilation options,
metadata references and Source Link JSON.  EmbeddedSource records hang off
individual Document rows and are collected while iterating the documents.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from pdbrecon.errors import Diagnostic, StructuralFormatError
from pdbrecon.metadata import HAS_CUSTOM_DEBUG_INFORMATION, MetadataReader, TableId
from pdbrecon.references import ReferenceBlobFormat, ReferenceParseResult, parse_references

log = logging.getLogger(__name__)


class CdiKind(Enum):
    COMPILATION_OPTIONS = "compilation-options"
    METADATA_REFERENCES = "metadata-references"
    SOURCE_LINK = "source-link"
    EMBEDDED_SOURCE = "embedded-source"
    UNKNOWN = "unknown"


KIND_GUIDS: Mapping[CdiKind, str] = MappingProxyType(
    {
        CdiKind.COMPILATION_OPTIONS: "B5FEEC05-8CD0-4A83-96DA-466284BB4BD8",
        CdiKind.METADATA_REFERENCES: "7E4D4708-096E-4C5C-AEDA-CB10BA6A740D",
        CdiKind.SOURCE_LINK: "CC110556-A091-4D38-9FEC-25AB9A351A6A",
        CdiKind.EMBEDDED_SOURCE: "0E8A571B-6926-466E-B4AD-8AB04611F5FE",
    }
)

_KIND_BY_GUID: Mapping[str, CdiKind] = MappingProxyType(
    {guid.upper(): kind for kind, guid in KIND_GUIDS.items()}
)


def resolve_kind(guid: uuid.UUID | str | None) -> CdiKind:
    """Resolve a CDI kind GUID (any case, with or without braces)."""
    if guid is None:
        return CdiKind.UNKNOWN
    text = str(guid).strip().strip("{}").upper()
    return _KIND_BY_GUID.get(text, CdiKind.UNKNOWN)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CustomDebugRecord:
    kind: CdiKind
    guid: uuid.UUID | None
    parent_table: TableId | None
    parent_row: int
    value_index: int


@dataclass(frozen=True)
class PdbDocument:
    """One row of the Document table."""

    row: int
    name: str
    language: uuid.UUID | None = None
    hash_algorithm: uuid.UUID | None = None
    embedded_source: bytes | None = None


@dataclass
class ModuleDebugInfo:
    """Decoded module-level custom debug information."""

    compilation_options: bytes | None = None
    references: ReferenceParseResult | None = None
    source_link_json: str | None = None
    unknown_kinds: list[uuid.UUID] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


class PortablePdb:
    """Read access to the debug tables of one Portable PDB."""

    def __init__(self, data: bytes) -> None:
        self.metadata = MetadataReader(data)
        if not self.metadata.is_portable_pdb:
            raise StructuralFormatError("metadata has no #Pdb stream; not a Portable PDB")
        self._by_parent: dict[tuple[TableId | None, int], list[CustomDebugRecord]] | None = None
        self.diagnostics: list[Diagnostic] = []

    @property
    def pdb_id(self) -> bytes:
        assert self.metadata.pdb is not None
        return self.metadata.pdb.pdb_id

    def _note(self, severity: str, message: str) -> None:
        log.debug("cdi: %s", message)
        self.diagnostics.append(Diagnostic(severity, "cdi", message))  # type: ignore[arg-type]

    def custom_debug_records(self) -> Iterator[CustomDebugRecord]:
        """Yield every CDI record, skipping rows whose kind GUID is unreadable."""
        md = self.metadata
        for rid, row in enumerate(md.rows(TableId.CUSTOM_DEBUG_INFORMATION), start=1):
            try:
                guid = md.get_guid(row["Kind"])
            except StructuralFormatError as exc:
                self._note("warning", f"custom debug information row {rid} skipped: {exc}")
                continue
            table, parent_row = HAS_CUSTOM_DEBUG_INFORMATION.decode(row["Parent"])
            yield CustomDebugRecord(
                kind=resolve_kind(guid),
                guid=guid,
                parent_table=table,
                parent_row=parent_row,
                value_index=row["Value"],
            )

    def records_for(self, table: TableId, row: int) -> list[CustomDebugRecord]:
        if self._by_parent is None:
            index: dict[tuple[TableId | None, int], list[CustomDebugRecord]] = defaultdict(list)
            for record in self.custom_debug_records():
                index[(record.parent_table, record.parent_row)].append(record)
            self._by_parent = dict(index)
        return self._by_parent.get((table, row), [])

    def module_records(self) -> list[CustomDebugRecord]:
        return self.records_for(TableId.MODULE, 1)

    def read_value(self, record: CustomDebugRecord) -> bytes:
        return self.metadata.get_blob(record.value_index)

    # -- module-level -------------------------------------------------------

    def decode_module_info(
        self, reference_format: ReferenceBlobFormat = ReferenceBlobFormat.PORTABLE_PDB
    ) -> ModuleDebugInfo:
        """Dispatch module-level records to their sub-parsers.

        Each kind is independent: a malformed record of one kind leaves the
        others intact.  When a kind appears more than once the first record
        wins.
        """
        info = ModuleDebugInfo()
        seen: set[CdiKind] = set()
        for record in self.module_records():
            if record.kind is CdiKind.UNKNOWN:
                if record.guid is not None:
                    info.unknown_kinds.append(record.guid)
                continue
            if record.kind in seen:
                self._note("warning", f"duplicate {record.kind.value} record ignored")
                continue
            seen.add(record.kind)
            try:
                self._apply(info, record, reference_format)
            except StructuralFormatError as exc:
                self._note("warning", f"{record.kind.value} record skipped: {exc}")
        info.diagnostics.extend(self.diagnostics)
        return info

    def _apply(
        self,
        info: ModuleDebugInfo,
        record: CustomDebugRecord,
        reference_format: ReferenceBlobFormat,
    ) -> None:
        if record.kind is CdiKind.COMPILATION_OPTIONS:
            info.compilation_options = self.read_value(record)
        elif record.kind is CdiKind.METADATA_REFERENCES:
            reader = self.metadata.blob_reader(record.value_index)
            info.references = parse_references(reader, reference_format)
            if info.references.error is not None:
                self._note(
                    "warning",
                    f"metadata references truncated after {len(info.references.references)} "
                    f"entries: {info.references.error}",
                )
        elif record.kind is CdiKind.SOURCE_LINK:
            raw = self.read_value(record)
            try:
                info.source_link_json = raw.decode("utf-8-sig")
            except UnicodeDecodeError as exc:
                raise StructuralFormatError(f"Source Link JSON is not UTF-8: {exc}") from None
        elif record.kind is CdiKind.EMBEDDED_SOURCE:
            self._note("warning", "embedded source attached to the module ignored")

    # -- documents ----------------------------------------------------------

    def documents(self) -> list[PdbDocument]:
        """All documents in table order, with embedded source blobs attached.

        A document whose name cannot be decoded is skipped; a document whose
        embedded source record is unreadable is kept without it.
        """
        md = self.metadata
        documents: list[PdbDocument] = []
        for rid, row in enumerate(md.rows(TableId.DOCUMENT), start=1):
            try:
                name = md.document_name(row["Name"])
                language = md.get_guid(row["Language"])
                hash_algorithm = md.get_guid(row["HashAlgorithm"])
            except StructuralFormatError as exc:
                self._note("warning", f"document row {rid} skipped: {exc}")
                continue

            embedded: bytes | None = None
            for record in self.records_for(TableId.DOCUMENT, rid):
                if record.kind is not CdiKind.EMBEDDED_SOURCE:
                    continue
                try:
                    embedded = self.read_value(record)
                except StructuralFormatError as exc:
                    self._note("warning", f"embedded source of {name!r} unreadable: {exc}")
                break

            documents.append(
                PdbDocument(
                    row=rid,
                    name=name,
                    language=language,
                    hash_algorithm=hash_algorithm,
                    embedded_source=embedded,
                )
            )
        return documents
