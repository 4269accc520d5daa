"""extract.py – Reconstruct the compilation of a single assembly.

Decodes the assembly's PDB, rebuilds the compiler arguments, recovers the
sources and writes everything to an output directory (see
:mod:`pdbrecon.writer` for the layout).
"""

import signal
import threading
from collections import Counter
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from pdbrecon.cli import (
    ConfigOption,
    JsonOption,
    VerboseOption,
    configure_logging,
    error_exit,
    get_config,
    json_print,
    print_diagnostics,
)
from pdbrecon.errors import FatalInputError, OperationCancelled, StructuralFormatError
from pdbrecon.pipeline import AssemblyResult, make_downloader, process_assembly
from pdbrecon.sources import SourceOrigin
from pdbrecon.writer import DirectoryRecordWriter

app = typer.Typer(
    help="Reconstruct the compilation of a single assembly.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Examples:[/bold]

pdbrecon extract Example.dll -o out/               Arguments, references and sources

pdbrecon extract Example.dll -o out/ --no-download  Embedded sources only

pdbrecon extract Example.dll -o out/ --json        Machine-readable summary

[dim]Settings such as download concurrency and the decompiler fallback
are read from pdbrecon.toml.[/dim]""",
)


def install_cancel_handler(event: threading.Event) -> Any:
    """Set *event* on Ctrl-C instead of interrupting mid-write.

    Returns the previous SIGINT handler for :func:`restore_cancel_handler`.
    """

    def _handler(signum: int, frame: object) -> None:
        event.set()

    return signal.signal(signal.SIGINT, _handler)


def restore_cancel_handler(previous: Any) -> None:
    if previous is not None:
        signal.signal(signal.SIGINT, previous)


def render_summary(console: Console, result: AssemblyResult, output: Path | None) -> None:
    record = result.record
    assert record is not None
    location = result.pdb.location if result.pdb else None
    console.print(f"[bold]{result.path.name}[/]  debug: {result.classification.kind.value}")
    console.print(f"  PDB: {location.describe() if location else '[yellow]not found[/]'}")
    console.print(f"  target framework: {record.target_framework or 'unknown'}")
    console.print(f"  arguments: {len(record.compiler_arguments)}")
    refs = f"{len(record.metadata_references)}"
    categories = Counter(r.category for r in record.metadata_references)
    if categories["framework"] or categories["package"]:
        refs += f" ({categories['framework']} framework, {categories['package']} package)"
    if not record.references_complete:
        refs += " [yellow](truncated)[/]"
    console.print(f"  references: {refs}")
    counts = {o: sum(1 for d in record.source_files if d.origin is o) for o in SourceOrigin}
    console.print(
        "  sources: "
        + ", ".join(f"{counts[o]} {o.value}" for o in SourceOrigin if counts[o])
        if record.source_files
        else "  sources: none"
    )
    console.print(f"  resources: {len(record.embedded_resources)}")
    if output is not None:
        console.print(f"  written to [green]{output}[/]")
    print_diagnostics(console, result.diagnostics + record.diagnostics)


@app.callback(invoke_without_command=True)
def main(
    assembly: Path = typer.Argument(..., help="Managed assembly (.dll/.exe)."),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Directory to write the record to."
    ),
    work_dir: Path | None = typer.Option(
        None, "--work-dir", "-w", help="Package working directory with extracted/ and symbols/."
    ),
    download: bool = typer.Option(
        True, "--download/--no-download", help="Fetch non-embedded sources via Source Link."
    ),
    config: Path | None = ConfigOption,
    json_output: bool = JsonOption,
    verbose: bool = VerboseOption,
) -> None:
    """Reconstruct one assembly's compiler invocation."""
    configure_logging(verbose)
    cfg = get_config(config, json_mode=json_output)
    cancel = threading.Event()
    previous_handler = install_cancel_handler(cancel)
    try:
        result = process_assembly(
            assembly,
            work_dir,
            cfg,
            output_dir=output,
            downloader=make_downloader(cfg, cancel) if download else None,
            download=download,
        )
    except (FileNotFoundError, FatalInputError, StructuralFormatError) as exc:
        error_exit(str(exc), json_mode=json_output)
    except OperationCancelled:
        error_exit("cancelled", json_mode=json_output, code=130)
    finally:
        restore_cancel_handler(previous_handler)

    assert result.record is not None
    if output is not None:
        try:
            DirectoryRecordWriter(output).write(result.record, result)
        except OSError as exc:
            error_exit(f"cannot write {output}: {exc}", json_mode=json_output)

    if json_output:
        json_print(result.to_dict())
        return
    render_summary(Console(stderr=True), result, output)


def main_entry() -> None:
    """Run the extract CLI app."""
    app()


if __name__ == "__main__":
    main_entry()
