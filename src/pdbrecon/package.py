"""package.py – Reconstruct every assembly of an extracted package.

Expects a working directory laid out as::

    <work>/extracted/   the package contents (lib/<tfm>/*.dll, ref/<tfm>/*.dll)
    <work>/symbols/     the matching symbols package, if any

Only the best target-framework group is processed.  Each assembly's record
is written to ``<output>/<assembly name>/``.
"""

import threading
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from pdbrecon.cli import (
    ConfigOption,
    JsonOption,
    VerboseOption,
    configure_logging,
    error_exit,
    get_config,
    json_print,
)
from pdbrecon.errors import OperationCancelled
from pdbrecon.extract import install_cancel_handler, restore_cancel_handler
from pdbrecon.pipeline import PackageResult, process_package
from pdbrecon.sources import SourceOrigin
from pdbrecon.writer import DirectoryRecordWriter

app = typer.Typer(
    help="Reconstruct every assembly of an extracted package.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Examples:[/bold]

pdbrecon package work/ -o out/                 All assemblies of the best TFM

pdbrecon package work/ -o out/ --json          Machine-readable summary

[dim]work/ must contain extracted/ and optionally symbols/.[/dim]""",
)


def _render(console: Console, result: PackageResult) -> None:
    tbl = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    tbl.add_column("Assembly")
    tbl.add_column("Debug")
    tbl.add_column("PDB")
    tbl.add_column("Args", justify="right")
    tbl.add_column("Refs", justify="right")
    tbl.add_column("Sources", justify="right")
    tbl.add_column("Unresolved", justify="right")

    for item in result.assemblies:
        record = item.record
        if record is None:
            continue
        location = item.pdb.location if item.pdb else None
        unresolved = sum(1 for d in record.source_files if d.origin is SourceOrigin.UNRESOLVED)
        tbl.add_row(
            item.path.name,
            item.classification.kind.value,
            location.origin.value if location else "[yellow]none[/]",
            str(len(record.compiler_arguments)),
            str(len(record.metadata_references)),
            str(len(record.source_files)),
            f"[yellow]{unresolved}[/]" if unresolved else "0",
        )
    for path, error in result.skipped:
        tbl.add_row(path.name, "[red]skipped[/]", error, "", "", "", "")

    console.print(f"[bold]Target framework:[/] {result.target_framework or 'unknown'}")
    console.print(tbl)


@app.callback(invoke_without_command=True)
def main(
    work_dir: Path = typer.Argument(..., help="Working directory with extracted/ and symbols/."),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Directory to write per-assembly records to."
    ),
    download: bool = typer.Option(
        True, "--download/--no-download", help="Fetch non-embedded sources via Source Link."
    ),
    config: Path | None = ConfigOption,
    json_output: bool = JsonOption,
    verbose: bool = VerboseOption,
) -> None:
    """Reconstruct the compilations of an extracted package."""
    configure_logging(verbose)
    if not (work_dir / "extracted").is_dir():
        error_exit(f"{work_dir} has no extracted/ directory", json_mode=json_output)
    cfg = get_config(config, json_mode=json_output)
    cancel = threading.Event()
    previous_handler = install_cancel_handler(cancel)
    try:
        result = process_package(
            work_dir, cfg, output_root=output, download=download, cancel_event=cancel
        )
    except OperationCancelled:
        error_exit("cancelled", json_mode=json_output, code=130)
    finally:
        restore_cancel_handler(previous_handler)

    if output is not None:
        for item in result.assemblies:
            if item.record is None:
                continue
            try:
                DirectoryRecordWriter(output / item.path.stem).write(item.record, item)
            except OSError as exc:
                error_exit(f"cannot write {output}: {exc}", json_mode=json_output)

    if json_output:
        json_print(result.to_dict())
        return
    _render(Console(stderr=True), result)


def main_entry() -> None:
    """Run the package CLI app."""
    app()


if __name__ == "__main__":
    main_entry()
