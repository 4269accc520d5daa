"""sources.py – Recover the source files named by a Portable PDB.

Every Document row becomes a :class:`SourceDocument`.  Its content comes from
the first source that works, in this order:

1. an EmbeddedSource record on the document (exact source);
2. the Source Link URL for the document path, fetched over HTTP (exact
   source, assuming the repository still serves it);
3. the decompiler fallback, when enabled (approximate source).

Documents that none of these can satisfy stay ``UNRESOLVED`` with the reason
recorded on the document.  Failures are always per document.

Downloads run on a bounded thread pool sharing one :class:`httpx.Client`.
Content is read completely before anything is written, writes go through a
temp file plus :func:`os.replace`, and a :class:`threading.Event` cancels
in-flight and queued fetches without leaving partial files behind.
"""

from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath

import httpx

from pdbrecon.cdi import PdbDocument
from pdbrecon.errors import Diagnostic, NetworkFailure, OperationCancelled, StructuralFormatError
from pdbrecon.metadata import ByteReader, inflate_exact
from pdbrecon.utils import atomic_write_bytes, atomic_write_text, sanitize_file_name

log = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 5
DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_AGENT = "pdbrecon/0.1"
MAX_WORKERS = 5

_ROOT_MARKERS = ("_/src/", "src/")


class SourceOrigin(Enum):
    EMBEDDED = "embedded"
    SOURCE_LINK = "source-link"
    DECOMPILED = "decompiled"
    UNRESOLVED = "unresolved"


@dataclass
class SourceDocument:
    """One source file named by the PDB and where its content came from."""

    path: str
    content: str | None = None
    is_embedded: bool = False
    resolved_url: str | None = None
    origin: SourceOrigin = SourceOrigin.UNRESOLVED
    destination: Path | None = None  # relative to the sources directory
    error: str | None = None
    language: uuid.UUID | None = None

    @property
    def is_approximate(self) -> bool:
        return self.origin is SourceOrigin.DECOMPILED

    @property
    def is_resolved(self) -> bool:
        return self.content is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "path": self.path,
            "origin": self.origin.value,
            "is_embedded": self.is_embedded,
            "is_approximate": self.is_approximate,
            "resolved_url": self.resolved_url,
            "destination": self.destination.as_posix() if self.destination else None,
            "error": self.error,
            "language": str(self.language) if self.language else None,
        }


# ---------------------------------------------------------------------------
# Embedded source
# ---------------------------------------------------------------------------


def decode_embedded_source(blob: bytes) -> str:
    """Decode an EmbeddedSource blob.

    Layout: i32 uncompressed size, then either raw UTF-8 (size 0) or raw
    DEFLATE data that must inflate to exactly *size* bytes.  A leading BOM is
    kept as part of the text.
    """
    r = ByteReader(bytes(blob))
    if r.remaining < 4:
        raise StructuralFormatError(f"embedded source blob of {r.remaining} bytes has no size header", 0)
    size = r.read_i32()
    body = r.read_rest()
    if size < 0:
        raise StructuralFormatError(f"negative embedded source size {size}", 0)
    if size == 0:
        raw = body
    else:
        raw = inflate_exact(body, size, "embedded source", 4)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise StructuralFormatError(f"embedded source is not valid UTF-8: {exc}") from None


# ---------------------------------------------------------------------------
# Source Link
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SourceLinkEntry:
    pattern: str
    prefix: str
    template: str
    wildcard: bool


class SourceLinkMap:
    """The ``documents`` map of a Source Link JSON file.

    Lookups try the longest prefix first, so ``C:/src/lib/*`` beats
    ``C:/src/*`` whatever order the JSON lists them in.  A pattern without
    ``*`` only matches that exact path.
    """

    def __init__(self, documents: Mapping[str, str] | None = None) -> None:
        entries: list[SourceLinkEntry] = []
        for pattern, template in (documents or {}).items():
            if not isinstance(template, str):
                continue
            normalized = pattern.replace("\\", "/")
            star = normalized.find("*")
            if star >= 0:
                entries.append(SourceLinkEntry(normalized, normalized[:star], template, True))
            else:
                entries.append(SourceLinkEntry(normalized, normalized, template, False))
        self.entries = sorted(entries, key=lambda e: (-len(e.prefix), e.wildcard))

    def __len__(self) -> int:
        return len(self.entries)

    def resolve(self, document_path: str) -> str | None:
        path = document_path.replace("\\", "/")
        lowered = path.lower()
        for entry in self.entries:
            if entry.wildcard:
                if lowered.startswith(entry.prefix.lower()):
                    return entry.template.replace("*", path[len(entry.prefix) :])
            elif lowered == entry.prefix.lower():
                return entry.template
        return None


def parse_source_link(text: str | None) -> tuple[SourceLinkMap, list[Diagnostic]]:
    """Parse Source Link JSON; malformed input gives an empty map plus a diagnostic."""
    if not text:
        return SourceLinkMap(), []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        return SourceLinkMap(), [Diagnostic("warning", "source-link", f"invalid JSON: {exc}")]
    documents = data.get("documents") if isinstance(data, dict) else None
    if not isinstance(documents, dict):
        return SourceLinkMap(), [
            Diagnostic("warning", "source-link", "JSON has no 'documents' object")
        ]
    return SourceLinkMap(documents), []


# ---------------------------------------------------------------------------
# Destination paths
# ---------------------------------------------------------------------------


def _is_drive(part: str) -> bool:
    return len(part) == 2 and part[1] == ":" and part[0].isalpha()


def normalize_destination(document_path: str) -> PurePosixPath:
    """Relative output path for a document.

    Cuts at the first ``_/src/`` or ``src/`` (case-insensitive), then drops
    the leading package-name segment when more than one segment remains.
    The result never escapes the output directory.
    """
    path = document_path.replace("\\", "/").lstrip("/")
    lowered = path.lower()
    for marker in _ROOT_MARKERS:
        idx = lowered.find(marker)
        if idx >= 0:
            path = path[idx + len(marker) :]
            break

    parts = path.split("/")
    if len(parts) > 1:
        parts = parts[1:]
    safe = [
        sanitize_file_name(part)
        for part in parts
        if part not in ("", ".", "..") and not _is_drive(part)
    ]
    if not safe:
        safe = ["document"]
    return PurePosixPath(*safe)


class DestinationAllocator:
    """Hands out a unique relative path per document (case-insensitive)."""

    def __init__(self) -> None:
        self._taken: set[str] = set()

    def allocate(self, document_path: str) -> Path:
        base = normalize_destination(document_path)
        candidate = base
        n = 2
        while candidate.as_posix().lower() in self._taken:
            candidate = base.with_name(f"{base.stem}_{n}{base.suffix}")
            n += 1
        self._taken.add(candidate.as_posix().lower())
        return Path(candidate)


# ---------------------------------------------------------------------------
# Downloader
# ---------------------------------------------------------------------------


class SourceDownloader:
    """Fetches Source Link URLs on a bounded worker pool."""

    def __init__(
        self,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if not 1 <= max_workers <= MAX_WORKERS:
            raise ValueError(f"max_workers must be between 1 and {MAX_WORKERS}, got {max_workers}")
        self.max_workers = max_workers
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport
        self.cancel_event = cancel_event or threading.Event()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise OperationCancelled("source download cancelled")

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self.transport,
        )

    def fetch(self, client: httpx.Client, url: str) -> bytes:
        """Read the full body of *url* within *timeout* seconds overall.

        The client timeout bounds each connect and read; the same value also
        bounds the whole transfer.

        Raises:
            NetworkFailure: Non-2xx status, transport error or deadline passed.
            OperationCancelled: The cancel event was set before or during
                the transfer.
        """
        self._check_cancelled()
        deadline = time.monotonic() + self.timeout
        chunks: list[bytes] = []
        try:
            with client.stream("GET", url) as response:
                if not response.is_success:
                    raise NetworkFailure(url, f"HTTP {response.status_code}")
                for chunk in response.iter_bytes():
                    self._check_cancelled()
                    if time.monotonic() > deadline:
                        raise NetworkFailure(url, f"timed out after {self.timeout:g}s")
                    chunks.append(chunk)
        except httpx.HTTPError as exc:
            raise NetworkFailure(url, str(exc) or type(exc).__name__) from exc
        return b"".join(chunks)

    def _download_one(self, client: httpx.Client, url: str, target: Path | None) -> str:
        raw = self.fetch(client, url)
        self._check_cancelled()
        if target is not None:
            atomic_write_bytes(target, raw)
        return raw.decode("utf-8", errors="replace")

    def download(
        self, documents: Sequence[SourceDocument], sources_dir: Path | None = None
    ) -> None:
        """Fetch ``resolved_url`` for each document and record the outcome on it.

        Raises:
            OperationCancelled: After all workers have stopped, when the
                cancel event was set.
        """
        pending = [doc for doc in documents if doc.resolved_url]
        if not pending:
            return
        self._check_cancelled()

        cancelled = False
        with self._client() as client, ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {}
            for doc in pending:
                target = sources_dir / doc.destination if sources_dir and doc.destination else None
                assert doc.resolved_url is not None
                futures[executor.submit(self._download_one, client, doc.resolved_url, target)] = doc
            for fut in as_completed(futures):
                doc = futures[fut]
                try:
                    doc.content = fut.result()
                except OperationCancelled:
                    cancelled = True
                    doc.error = "cancelled"
                except NetworkFailure as exc:
                    log.debug("download failed: %s", exc)
                    doc.error = str(exc)
                except OSError as exc:
                    doc.error = f"cannot write {doc.destination}: {exc}"
                else:
                    doc.origin = SourceOrigin.SOURCE_LINK
                    doc.error = None
        if cancelled or self.cancel_event.is_set():
            raise OperationCancelled("source download cancelled")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


@dataclass
class SourceExtraction:
    documents: list[SourceDocument] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def count(self, origin: SourceOrigin) -> int:
        return sum(1 for doc in self.documents if doc.origin is origin)


def _write(sources_dir: Path | None, doc: SourceDocument, extraction: SourceExtraction) -> None:
    if sources_dir is None or doc.destination is None or doc.content is None:
        return
    try:
        atomic_write_text(sources_dir / doc.destination, doc.content)
    except OSError as exc:
        extraction.diagnostics.append(
            Diagnostic("error", "sources", f"cannot write {doc.destination}: {exc}")
        )


def resolve_sources(
    documents: Sequence[PdbDocument],
    source_link_json: str | None = None,
    *,
    sources_dir: Path | None = None,
    downloader: SourceDownloader | None = None,
    decompile: Callable[[], str | None] | None = None,
) -> SourceExtraction:
    """Resolve every PDB document to content, in document-table order.

    *downloader* ``None`` disables Source Link fetching (URLs are still
    resolved and recorded); *decompile* ``None`` disables the decompiler
    fallback.  When *sources_dir* is given each resolved document is written
    under it at its unique destination path.

    Raises:
        OperationCancelled: Propagated from the downloader.
    """
    extraction = SourceExtraction()
    allocator = DestinationAllocator()

    for pdb_doc in documents:
        doc = SourceDocument(
            path=pdb_doc.name,
            language=pdb_doc.language,
            destination=allocator.allocate(pdb_doc.name),
        )
        if pdb_doc.embedded_source is not None:
            try:
                doc.content = decode_embedded_source(pdb_doc.embedded_source)
                doc.is_embedded = True
                doc.origin = SourceOrigin.EMBEDDED
            except StructuralFormatError as exc:
                doc.error = f"embedded source unreadable: {exc}"
                extraction.diagnostics.append(
                    Diagnostic("warning", "sources", f"{pdb_doc.name}: {doc.error}")
                )
            _write(sources_dir, doc, extraction)
        extraction.documents.append(doc)

    unresolved = [doc for doc in extraction.documents if doc.content is None]
    if unresolved:
        link_map, link_diagnostics = parse_source_link(source_link_json)
        extraction.diagnostics.extend(link_diagnostics)
        for doc in unresolved:
            doc.resolved_url = link_map.resolve(doc.path)
            if doc.resolved_url is None:
                doc.error = doc.error or "no Source Link mapping"
            elif downloader is None:
                doc.error = "Source Link download disabled"

        if downloader is not None:
            downloader.download(unresolved, sources_dir)

    unresolved = [doc for doc in extraction.documents if doc.content is None]
    if unresolved and decompile is not None:
        decompiled = decompile()
        if decompiled:
            for doc in unresolved:
                doc.content = decompiled
                doc.origin = SourceOrigin.DECOMPILED
                _write(sources_dir, doc, extraction)
            extraction.diagnostics.append(
                Diagnostic(
                    "info",
                    "sources",
                    f"{len(unresolved)} documents filled with approximate decompiled source",
                )
            )
        else:
            extraction.diagnostics.append(
                Diagnostic("warning", "sources", "decompiler fallback produced no output")
            )

    log.debug(
        "sources: %d embedded, %d source-link, %d decompiled, %d unresolved",
        extraction.count(SourceOrigin.EMBEDDED),
        extraction.count(SourceOrigin.SOURCE_LINK),
        extraction.count(SourceOrigin.DECOMPILED),
        extraction.count(SourceOrigin.UNRESOLVED),
    )
    return extraction
