"""writer.py – Persist a CompilationRecord as a working directory.

Layout::

    <dir>/compiler-arguments.txt     one argument per line
    <dir>/metadata-references.txt    one reference file name per line
    <dir>/record.json                the full record, machine readable
    <dir>/sources/...                written by the source extractor
    <dir>/resources/<file>           one file per embedded resource
    <dir>/resource-mappings.txt      "<file>|<resource name>" per line

``compiler-arguments.txt`` ends with a ``/resource:<file>,<name>`` argument
for every resource written, so the directory is self-contained.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pdbrecon.pipeline import AssemblyResult, CompilationRecord
from pdbrecon.resources import resource_arguments, resource_file_names
from pdbrecon.utils import atomic_write_bytes, atomic_write_text

ARGUMENTS_FILE = "compiler-arguments.txt"
REFERENCES_FILE = "metadata-references.txt"
RECORD_FILE = "record.json"
RESOURCES_DIR = "resources"
RESOURCE_MAPPINGS_FILE = "resource-mappings.txt"


def _lines(items: list[str]) -> str:
    return "".join(f"{item}\n" for item in items)


@dataclass
class WrittenRecord:
    directory: Path
    files: list[Path] = field(default_factory=list)


class DirectoryRecordWriter:
    """Writes records under *directory*, creating it if needed."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def write(
        self, record: CompilationRecord, result: AssemblyResult | None = None
    ) -> WrittenRecord:
        out = WrittenRecord(self.directory)
        self.directory.mkdir(parents=True, exist_ok=True)

        mappings = resource_file_names(record.embedded_resources)
        resources_dir = self.directory / RESOURCES_DIR
        for (file_name, _), blob in zip(mappings, record.embedded_resources):
            path = resources_dir / file_name
            atomic_write_bytes(path, blob.data)
            out.files.append(path)
        if mappings:
            path = self.directory / RESOURCE_MAPPINGS_FILE
            atomic_write_text(path, _lines([f"{f}|{name}" for f, name in mappings]))
            out.files.append(path)

        arguments = record.compiler_arguments + resource_arguments(resources_dir, mappings)
        path = self.directory / ARGUMENTS_FILE
        atomic_write_text(path, _lines(arguments))
        out.files.append(path)

        path = self.directory / REFERENCES_FILE
        atomic_write_text(path, _lines([r.file_name for r in record.metadata_references]))
        out.files.append(path)

        document: dict[str, Any] = result.to_dict() if result is not None else {}
        document["record"] = record.to_dict()
        if record.source_link_json is not None:
            document["source_link"] = record.source_link_json
        path = self.directory / RECORD_FILE
        atomic_write_text(path, json.dumps(document, indent=2) + "\n")
        out.files.append(path)
        return out
