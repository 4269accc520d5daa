"""resources.py – Managed resources embedded in an assembly.

ManifestResource rows with a nil ``Implementation`` live in the CLI
resources directory of the image itself, at the row's ``Offset``, as a u32
length followed by that many bytes.  Rows that point at another file or
assembly are not embedded and are skipped silently; rows whose offset or
length is out of range are skipped with a diagnostic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from pdbrecon.errors import Diagnostic, StructuralFormatError
from pdbrecon.metadata import ByteReader, MetadataReader, TableId
from pdbrecon.utils import sanitize_file_name

MANIFEST_RESOURCE_VISIBILITY_MASK = 0x0007
MANIFEST_RESOURCE_PUBLIC = 0x0001


@dataclass(frozen=True)
class ResourceBlob:
    name: str
    data: bytes
    is_public: bool = True

    @property
    def size(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "size": self.size, "is_public": self.is_public}


@dataclass
class ResourceExtraction:
    resources: list[ResourceBlob] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)


def extract_resources(metadata: MetadataReader, resources: bytes | None) -> ResourceExtraction:
    """Read every embedded resource, in ManifestResource table order."""
    result = ResourceExtraction()
    for rid, row in enumerate(metadata.rows(TableId.MANIFEST_RESOURCE), start=1):
        if row["Implementation"] != 0:
            continue
        try:
            name = metadata.get_string(row["Name"])
            if resources is None:
                raise StructuralFormatError("image has no managed resources directory")
            r = ByteReader(resources)
            r.seek(row["Offset"])
            length = r.read_u32()
            data = r.read_bytes(length)
        except StructuralFormatError as exc:
            result.diagnostics.append(
                Diagnostic("warning", "resources", f"manifest resource row {rid} skipped: {exc}")
            )
            continue
        visibility = row["Flags"] & MANIFEST_RESOURCE_VISIBILITY_MASK
        result.resources.append(
            ResourceBlob(name=name, data=data, is_public=visibility == MANIFEST_RESOURCE_PUBLIC)
        )
    return result


def resource_file_names(resources: list[ResourceBlob]) -> list[tuple[str, str]]:
    """``(sanitized file name, original name)`` pairs, unique per resource."""
    taken: set[str] = set()
    pairs: list[tuple[str, str]] = []
    for blob in resources:
        base = sanitize_file_name(blob.name)
        candidate = base
        n = 2
        while candidate.lower() in taken:
            candidate = f"{base}_{n}"
            n += 1
        taken.add(candidate.lower())
        pairs.append((candidate, blob.name))
    return pairs


def resource_arguments(resources_dir: Path, mappings: list[tuple[str, str]]) -> list[str]:
    """``/resource:<file>,<name>`` compiler arguments for written resources."""
    return [f"/resource:{resources_dir / file_name},{name}" for file_name, name in mappings]
