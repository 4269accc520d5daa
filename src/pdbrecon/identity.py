"""identity.py – Deterministic-build identity of an assembly.

Collects the values that pin down one particular build: the module version
id (MVID), the strong-name public key and its token, the PE timestamp and
the reproducibility evidence from the debug directory.  Nothing here is
verified; the values are reported as found.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass

from pdbrecon.binary_loader import AssemblyImage
from pdbrecon.debug_info import DebugEntryType, decode_pdb_checksum, find_entry
from pdbrecon.errors import StructuralFormatError
from pdbrecon.metadata import MetadataReader, TableId


def public_key_token(public_key: bytes) -> bytes:
    """Last 8 bytes of the SHA-1 of *public_key*, reversed."""
    digest = hashlib.sha1(public_key).digest()
    return digest[-8:][::-1]


@dataclass(frozen=True)
class DeterministicIdentity:
    module_version_id: uuid.UUID | None
    public_key: bytes | None
    public_key_token: bytes | None
    pe_timestamp: int
    has_reproducible_marker: bool
    checksum_algorithm: str | None = None
    pdb_checksum: bytes | None = None
    has_pdb_checksum: bool = False
    has_embedded_pdb: bool = False
    debug_entry_count: int = 0
    assembly_name: str | None = None
    assembly_version: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "module_version_id": str(self.module_version_id) if self.module_version_id else None,
            "public_key": self.public_key.hex() if self.public_key else None,
            "public_key_token": self.public_key_token.hex() if self.public_key_token else None,
            "pe_timestamp": self.pe_timestamp,
            "has_reproducible_marker": self.has_reproducible_marker,
            "checksum_algorithm": self.checksum_algorithm,
            "pdb_checksum": self.pdb_checksum.hex() if self.pdb_checksum else None,
            "has_pdb_checksum": self.has_pdb_checksum,
            "has_embedded_pdb": self.has_embedded_pdb,
            "debug_entry_count": self.debug_entry_count,
            "assembly_name": self.assembly_name,
            "assembly_version": self.assembly_version,
        }


def analyze_identity(
    image: AssemblyImage, metadata: MetadataReader | None = None
) -> DeterministicIdentity:
    """Build the identity of *image*.

    *metadata* is the image's own metadata root; it is parsed from the image
    when not supplied.  Missing tables leave the corresponding fields
    ``None``.
    """
    if metadata is None and image.metadata is not None:
        metadata = MetadataReader(image.metadata)

    mvid: uuid.UUID | None = None
    public_key: bytes | None = None
    name: str | None = None
    version: str | None = None
    if metadata is not None:
        if metadata.row_count(TableId.MODULE):
            mvid = metadata.get_guid(metadata.row(TableId.MODULE, 1)["Mvid"])
        if metadata.row_count(TableId.ASSEMBLY):
            row = metadata.row(TableId.ASSEMBLY, 1)
            public_key = metadata.get_blob(row["PublicKey"]) or None
            name = metadata.get_string(row["Name"]) or None
            version = "{}.{}.{}.{}".format(
                row["MajorVersion"], row["MinorVersion"], row["BuildNumber"], row["RevisionNumber"]
            )

    algorithm: str | None = None
    checksum: bytes | None = None
    entry = find_entry(image, DebugEntryType.PDB_CHECKSUM)
    if entry is not None and entry.payload:
        try:
            decoded = decode_pdb_checksum(entry.payload)
            algorithm = decoded.algorithm or None
            checksum = decoded.checksum or None
        except StructuralFormatError:
            pass

    types = {e.type for e in image.debug_entries}
    return DeterministicIdentity(
        module_version_id=mvid,
        public_key=public_key,
        public_key_token=public_key_token(public_key) if public_key else None,
        pe_timestamp=image.timestamp,
        has_reproducible_marker=DebugEntryType.REPRODUCIBLE in types,
        checksum_algorithm=algorithm,
        pdb_checksum=checksum,
        has_pdb_checksum=DebugEntryType.PDB_CHECKSUM in types,
        has_embedded_pdb=DebugEntryType.EMBEDDED_PORTABLE_PDB in types,
        debug_entry_count=len(image.debug_entries),
        assembly_name=name,
        assembly_version=version,
    )
