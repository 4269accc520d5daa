"""inspect_cmd.py – Show the debug configuration of an assembly.

Prints the debug-directory classification, the deterministic-build identity
and where the matching PDB was found (or where it was looked for), without
decoding the PDB or touching the network.
"""

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from pdbrecon.binary_loader import load_assembly
from pdbrecon.cli import JsonOption, VerboseOption, configure_logging, error_exit, json_print
from pdbrecon.debug_info import classify
from pdbrecon.decompiler import available_backends
from pdbrecon.errors import FatalInputError, StructuralFormatError
from pdbrecon.identity import analyze_identity
from pdbrecon.pdb_locator import locate_pdb

app = typer.Typer(
    help="Show the debug configuration of an assembly.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Examples:[/bold]

pdbrecon inspect lib/net8.0/Example.dll           Classification and identity

pdbrecon inspect Example.dll --work-dir pkg/      Also search pkg/symbols and pkg/extracted

pdbrecon inspect Example.dll --json               Machine-readable JSON output""",
)


def _render(console: Console, path: Path, data: dict) -> None:
    tbl = Table(show_header=False, box=None, padding=(0, 2))
    tbl.add_column("Field", style="dim")
    tbl.add_column("Value")

    cls = data["classification"]
    tbl.add_row("Debug type", f"[bold]{cls['kind']}[/]")
    tbl.add_row("Debug entries", str(cls["debug_entry_count"]))
    tbl.add_row("Reproducible", str(cls["has_reproducible_marker"]))
    tbl.add_row("PDB checksum", cls["checksum_algorithm"] or "none")
    tbl.add_row("High entropy VA", str(cls["high_entropy_va"]))
    if cls["referenced_pdb_path"]:
        tbl.add_row("CodeView path", cls["referenced_pdb_path"])
    tbl.add_row("Debug flags", " ".join(data["debug_flags"]) or "(none)")
    tbl.add_row("Decompilers", ", ".join(data["decompilers"]) or "[dim]none on PATH[/]")

    ident = data["identity"]
    if ident:
        tbl.add_row("MVID", str(ident["module_version_id"]))
        if ident["assembly_name"]:
            tbl.add_row("Assembly", f"{ident['assembly_name']} {ident['assembly_version']}")
        tbl.add_row("Public key token", ident["public_key_token"] or "(not strong-named)")
        tbl.add_row("PE timestamp", f"0x{ident['pe_timestamp']:08X}")

    pdb = data["pdb"]
    if pdb["origin"]:
        tbl.add_row("PDB", f"[green]{pdb['origin']}[/] {pdb['path'] or ''}")
    else:
        tbl.add_row("PDB", "[yellow]not found[/]")
        for location in pdb["searched"]:
            tbl.add_row("", f"[dim]{location}[/]")

    console.print(Panel(tbl, title=f"[bold]{path.name}[/]", border_style="blue"))


@app.callback(invoke_without_command=True)
def main(
    assembly: Path = typer.Argument(..., help="Managed assembly (.dll/.exe) to inspect."),
    work_dir: Path | None = typer.Option(
        None, "--work-dir", "-w", help="Package working directory with extracted/ and symbols/."
    ),
    json_output: bool = JsonOption,
    verbose: bool = VerboseOption,
) -> None:
    """Print classification, identity and PDB location for one assembly."""
    configure_logging(verbose)
    try:
        image = load_assembly(assembly)
    except (FileNotFoundError, FatalInputError, StructuralFormatError) as exc:
        error_exit(str(exc), json_mode=json_output)

    classification = classify(image)
    identity = None
    try:
        identity = analyze_identity(image)
    except StructuralFormatError as exc:
        if not json_output:
            Console(stderr=True).print(f"[yellow]warning:[/] metadata unreadable: {exc}")
    search = locate_pdb(image, work_dir)
    location = search.location

    data = {
        "path": str(assembly),
        "classification": classification.to_dict(),
        "debug_flags": classification.to_compiler_flags(),
        "decompilers": available_backends(),
        "identity": identity.to_dict() if identity else None,
        "pdb": {
            "origin": location.origin.value if location else None,
            "path": str(location.path) if location and location.path else None,
            "searched": search.searched,
        },
    }
    if json_output:
        json_print(data)
        return
    _render(Console(stderr=True), assembly, data)


def main_entry() -> None:
    """Run the inspect CLI app."""
    app()


if __name__ == "__main__":
    main_entry()
