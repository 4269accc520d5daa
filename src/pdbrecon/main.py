"""main.py – Umbrella CLI entry point for pdbrecon.

Imports and registers each subcommand module as a flat ``app.command()``
entry, avoiding the Typer "group" behaviour of ``add_typer()`` which
expects a ``COMMAND [ARGS]...`` token after callback arguments.
"""

import importlib

import typer

app = typer.Typer(
    help="Reconstruct the compiler invocation of .NET assemblies from their Portable PDBs.",
    rich_markup_mode="rich",
    epilog="""\
[bold]Typical workflow:[/bold]
  pdbrecon inspect X.dll              Debug type, identity and PDB location
  pdbrecon extract X.dll -o out/      Arguments, references and sources of one assembly
  pdbrecon package work/ -o out/      Every assembly of an extracted package

[dim]Settings are read from the nearest pdbrecon.toml, if any.
Run 'pdbrecon <cmd> --help' for details.[/dim]""",
)

# ---------------------------------------------------------------------------
# Subcommand registry
# ---------------------------------------------------------------------------

_SINGLE_COMMANDS: list[tuple[str, str, str]] = [
    ("inspect", "pdbrecon.inspect_cmd", "Show the debug configuration of an assembly."),
    ("extract", "pdbrecon.extract", "Reconstruct the compilation of a single assembly."),
    ("package", "pdbrecon.package", "Reconstruct every assembly of an extracted package."),
]

for _name, _module, _help in _SINGLE_COMMANDS:
    _mod = importlib.import_module(_module)
    _epilog = getattr(_mod.app.info, "epilog", None)
    if not isinstance(_epilog, str):
        _epilog = None
    app.command(name=_name, help=_help, epilog=_epilog)(_mod.main)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
