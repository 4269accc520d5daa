"""pipeline.py – Reconstruct compilations from assemblies and packages.

Flow per assembly::

    load_assembly → classify → locate_pdb → PortablePdb
        → {reconstruct_arguments, metadata references, resolve_sources}
        → CompilationRecord

:func:`build_compilation_record` is the I/O-free core (apart from optional
source writes and downloads the caller opts into); :func:`process_assembly`
adds file loading and PDB discovery, and :func:`process_package` runs a whole
extracted package.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path, PureWindowsPath
from typing import Any

from pdbrecon.arguments import reconstruct_arguments
from pdbrecon.binary_loader import AssemblyImage, load_assembly
from pdbrecon.cdi import PdbDocument, PortablePdb
from pdbrecon.config import ReconConfig
from pdbrecon.debug_info import DebugClassification, DebugKind, classify
from pdbrecon.decompiler import fetch_decompilation
from pdbrecon.errors import Diagnostic, FatalInputError, StructuralFormatError
from pdbrecon.frameworks import group_by_framework, select_target_framework
from pdbrecon.identity import DeterministicIdentity, analyze_identity
from pdbrecon.metadata import MetadataReader
from pdbrecon.pdb_locator import EXTRACTED_DIR, PdbSearch, locate_pdb
from pdbrecon.references import (
    ReferenceBlobFormat,
    ReferenceDescriptor,
    infer_target_framework,
)
from pdbrecon.resources import ResourceBlob, extract_resources
from pdbrecon.sources import SourceDocument, SourceDownloader, resolve_sources

log = logging.getLogger(__name__)

ASSEMBLY_ROOTS = ("lib", "ref")

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class CompilationRecord:
    """Everything recovered about one compilation."""

    compiler_arguments: list[str] = field(default_factory=list)
    metadata_references: list[ReferenceDescriptor] = field(default_factory=list)
    target_framework: str | None = None
    source_files: list[SourceDocument] = field(default_factory=list)
    embedded_resources: list[ResourceBlob] = field(default_factory=list)
    default_encoding: str | None = None
    fallback_encoding: str | None = None
    source_link_json: str | None = None
    references_complete: bool = True
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "compiler_arguments": list(self.compiler_arguments),
            "metadata_references": [r.to_dict() for r in self.metadata_references],
            "references_complete": self.references_complete,
            "target_framework": self.target_framework,
            "default_encoding": self.default_encoding,
            "fallback_encoding": self.fallback_encoding,
            "source_files": [d.to_dict() for d in self.source_files],
            "embedded_resources": [r.to_dict() for r in self.embedded_resources],
            "has_source_link": self.source_link_json is not None,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass
class AssemblyResult:
    path: Path
    classification: DebugClassification
    identity: DeterministicIdentity | None = None
    pdb: PdbSearch | None = None
    record: CompilationRecord | None = None
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        location = self.pdb.location if self.pdb else None
        return {
            "path": str(self.path),
            "classification": self.classification.to_dict(),
            "identity": self.identity.to_dict() if self.identity else None,
            "pdb": {
                "origin": location.origin.value if location else None,
                "path": str(location.path) if location and location.path else None,
                "searched": list(self.pdb.searched) if self.pdb else [],
            },
            "record": self.record.to_dict() if self.record else None,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass
class PackageResult:
    work_dir: Path
    target_framework: str | None = None
    assemblies: list[AssemblyResult] = field(default_factory=list)
    skipped: list[tuple[Path, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_dir": str(self.work_dir),
            "target_framework": self.target_framework,
            "assemblies": [a.to_dict() for a in self.assemblies],
            "skipped": [{"path": str(p), "error": e} for p, e in self.skipped],
        }


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------


def _pdb_output_path(classification: DebugClassification) -> str | None:
    if classification.kind is not DebugKind.PORTABLE_EXTERNAL:
        return None
    if not classification.referenced_pdb_path:
        return None
    return PureWindowsPath(classification.referenced_pdb_path).name or None


def build_compilation_record(
    image: AssemblyImage,
    pdb_bytes: bytes | None,
    *,
    classification: DebugClassification | None = None,
    reference_format: ReferenceBlobFormat = ReferenceBlobFormat.PORTABLE_PDB,
    sources_dir: Path | None = None,
    downloader: SourceDownloader | None = None,
    decompile: Callable[[], str | None] | None = None,
) -> CompilationRecord:
    """Reconstruct the compilation of *image* from its PDB bytes.

    Without a PDB the record still carries the baseline and debug arguments
    and the embedded resources.

    Raises:
        OperationCancelled: Source downloads were cancelled.
    """
    if classification is None:
        classification = classify(image)
    record = CompilationRecord()

    options: bytes | None = None
    documents: list[PdbDocument] = []
    if pdb_bytes is not None:
        try:
            pdb = PortablePdb(pdb_bytes)
            info = pdb.decode_module_info(reference_format)
            documents = pdb.documents()
            record.diagnostics.extend(pdb.diagnostics)
            options = info.compilation_options
            record.source_link_json = info.source_link_json
            if info.references is not None:
                record.metadata_references = list(info.references.references)
                record.references_complete = info.references.complete
        except StructuralFormatError as exc:
            record.diagnostics.append(Diagnostic("error", "pdb", f"unreadable PDB: {exc}"))
    else:
        record.diagnostics.append(Diagnostic("info", "pdb", "no PDB available"))

    arguments = reconstruct_arguments(
        options, classification, pdb_output_path=_pdb_output_path(classification)
    )
    record.compiler_arguments = arguments.arguments
    record.default_encoding = arguments.default_encoding
    record.fallback_encoding = arguments.fallback_encoding
    record.diagnostics.extend(arguments.diagnostics)
    record.target_framework = arguments.target_framework or infer_target_framework(
        record.metadata_references
    )

    if documents:
        extraction = resolve_sources(
            documents,
            record.source_link_json,
            sources_dir=sources_dir,
            downloader=downloader,
            decompile=decompile,
        )
        record.source_files = extraction.documents
        record.diagnostics.extend(extraction.diagnostics)

    if image.metadata is not None:
        try:
            resources = extract_resources(MetadataReader(image.metadata), image.resources)
            record.embedded_resources = resources.resources
            record.diagnostics.extend(resources.diagnostics)
        except StructuralFormatError as exc:
            record.diagnostics.append(
                Diagnostic("warning", "resources", f"assembly metadata unreadable: {exc}")
            )
    return record


def _decompiler_for(path: Path, config: ReconConfig) -> Callable[[], str | None] | None:
    if not config.decompile_enabled:
        return None

    def decompile() -> str | None:
        code, backend = fetch_decompilation(config.decompile_backend, path, config.decompile_timeout)
        log.info("decompiler %s %s for %s", backend, "succeeded" if code else "failed", path.name)
        return code

    return decompile


def make_downloader(
    config: ReconConfig, cancel_event: threading.Event | None = None
) -> SourceDownloader:
    return SourceDownloader(
        max_workers=config.max_workers,
        timeout=config.download_timeout,
        user_agent=config.user_agent,
        cancel_event=cancel_event,
    )


def process_assembly(
    path: Path,
    work_dir: Path | None = None,
    config: ReconConfig | None = None,
    *,
    output_dir: Path | None = None,
    downloader: SourceDownloader | None = None,
    download: bool = True,
    package_framework: str | None = None,
) -> AssemblyResult:
    """Load, classify and reconstruct one assembly.

    Args:
        path: The assembly file.
        work_dir: Package working directory holding ``extracted/`` and
            ``symbols/``; ``None`` searches beside the assembly only.
        config: Settings; defaults when ``None``.
        output_dir: Where sources are written (``<output_dir>/sources``).
        downloader: Source Link downloader; built from *config* when
            ``None`` and *download* is true.
        download: ``False`` disables Source Link fetching.
        package_framework: TFM chosen for the whole package; overrides the
            one derived from the PDB.

    Raises:
        FileNotFoundError: *path* does not exist.
        FatalInputError: *path* is not a PE image.
        OperationCancelled: Source downloads were cancelled.
    """
    config = config or ReconConfig()
    image = load_assembly(path)
    classification = classify(image)
    result = AssemblyResult(path=Path(path), classification=classification)

    try:
        result.identity = analyze_identity(image)
    except StructuralFormatError as exc:
        result.diagnostics.append(Diagnostic("warning", "identity", f"metadata unreadable: {exc}"))

    result.pdb = locate_pdb(image, work_dir)
    result.diagnostics.extend(result.pdb.diagnostics)
    pdb_bytes: bytes | None = None
    if result.pdb.location is not None:
        try:
            pdb_bytes = result.pdb.location.read_bytes()
        except OSError as exc:
            result.diagnostics.append(
                Diagnostic("error", "pdb", f"cannot read {result.pdb.location.describe()}: {exc}")
            )

    if downloader is None and download:
        downloader = make_downloader(config)
    sources_dir = output_dir / "sources" if output_dir is not None and config.write_sources else None

    record = build_compilation_record(
        image,
        pdb_bytes,
        classification=classification,
        reference_format=config.reference_format,
        sources_dir=sources_dir,
        downloader=downloader if download else None,
        decompile=_decompiler_for(Path(path), config),
    )
    if package_framework and record.target_framework != package_framework:
        if record.target_framework:
            record.diagnostics.append(
                Diagnostic(
                    "info",
                    "frameworks",
                    f"package framework {package_framework} overrides {record.target_framework}",
                )
            )
        record.target_framework = package_framework
    result.record = record
    return result


def discover_assemblies(work_dir: Path) -> list[Path]:
    """``extracted/lib/**/*.dll`` and ``extracted/ref/**/*.dll``, sorted."""
    extracted = work_dir / EXTRACTED_DIR
    found: list[Path] = []
    for root_name in ASSEMBLY_ROOTS:
        root = extracted / root_name
        if root.is_dir():
            found.extend(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() == ".dll")
    return sorted(found)


def process_package(
    work_dir: Path,
    config: ReconConfig | None = None,
    *,
    output_root: Path | None = None,
    downloader: SourceDownloader | None = None,
    download: bool = True,
    cancel_event: threading.Event | None = None,
) -> PackageResult:
    """Reconstruct every assembly of the best TFM group of an extracted package.

    Each assembly gets ``<output_root>/<assembly name>`` as its output
    directory.  Assemblies that are not PE images are skipped and recorded.

    Raises:
        OperationCancelled: Source downloads were cancelled.
    """
    config = config or ReconConfig()
    result = PackageResult(work_dir=work_dir)
    selection = select_target_framework(
        group_by_framework(discover_assemblies(work_dir), work_dir / EXTRACTED_DIR)
    )
    if selection is None:
        log.info("no assemblies under %s", work_dir / EXTRACTED_DIR)
        return result
    result.target_framework = selection.moniker
    if download and downloader is None:
        downloader = make_downloader(config, cancel_event)

    for assembly in selection.items:
        output_dir = output_root / assembly.stem if output_root is not None else None
        try:
            result.assemblies.append(
                process_assembly(
                    assembly,
                    work_dir,
                    config,
                    output_dir=output_dir,
                    downloader=downloader,
                    download=download,
                    package_framework=selection.moniker,
                )
            )
        except FatalInputError as exc:
            log.warning("skipping %s: %s", assembly.name, exc)
            result.skipped.append((assembly, str(exc)))
        except StructuralFormatError as exc:
            log.warning("skipping %s: %s", assembly.name, exc)
            result.skipped.append((assembly, f"malformed image: {exc}"))
    return result
