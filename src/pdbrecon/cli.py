"""Shared CLI utilities for pdbrecon commands.

Provides common Typer options, config loading, logging setup and
standardised output / error helpers so that every command reports errors
and JSON the same way.

Usage in a command module::

    import typer
    from pdbrecon.cli import ConfigOption, VerboseOption, get_config, error_exit, json_print

    app = typer.Typer()

    @app.command()
    def main(config: Path | None = ConfigOption, verbose: bool = VerboseOption) -> None:
        configure_logging(verbose)
        cfg = get_config(config)
        ...
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from pdbrecon.config import ReconConfig, load_config
from pdbrecon.errors import Diagnostic

_err_console = Console(stderr=True)

# Re-usable Typer options
ConfigOption: Path | None = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to pdbrecon.toml (default: nearest one above the current directory).",
)

VerboseOption: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")

JsonOption: bool = typer.Option(False, "--json", help="Output results as JSON.")


def configure_logging(verbose: bool = False) -> None:
    """Route library logging through a Rich handler on stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=_err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def get_config(path: Path | None = None, *, json_mode: bool = False) -> ReconConfig:
    """Load settings, exiting with a readable error when the file is bad."""
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError) as exc:
        error_exit(str(exc), json_mode=json_mode)


# ---------------------------------------------------------------------------
# Standardised output helpers
# ---------------------------------------------------------------------------

_SEVERITY_STYLES = {"info": "dim", "warning": "yellow", "error": "red"}


def error_exit(msg: str, *, json_mode: bool = False, code: int = 1) -> NoReturn:
    """Print *msg* as an error and ``raise typer.Exit(code)``."""
    if json_mode:
        print(json.dumps({"error": msg}, indent=2))
    else:
        _err_console.print(f"[red bold]error:[/red bold] {msg}")
    raise typer.Exit(code=code)


def json_print(data: dict[str, Any] | list[Any]) -> None:
    """Print *data* as pretty-printed JSON to stdout."""
    print(json.dumps(data, indent=2))


def print_diagnostics(console: Console, diagnostics: list[Diagnostic]) -> None:
    for diag in diagnostics:
        style = _SEVERITY_STYLES.get(diag.severity, "white")
        console.print(f"  [{style}]{diag.severity:<7}[/] {diag.component}: {diag.message}", highlight=False)
