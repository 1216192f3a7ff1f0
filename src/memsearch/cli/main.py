"""memsearch CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from memsearch.cli.files import append_cmd, get_cmd, set_cmd
from memsearch.cli.search import reindex_cmd, search_cmd
from memsearch.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("memsearch")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"memsearch {_installed_version()}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    if not verbose:
        logging.getLogger("LiteLLM").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)


app = typer.Typer(
    name="memsearch",
    help=(
        "memsearch: hybrid vector + keyword memory search.\n\n"
        "  memsearch search   Rank memory chunks for a query.\n"
        "  memsearch get      Read a memory file.\n"
        "  memsearch status   Index and signal health."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log debug output (sync progress, signal fallbacks)."),
    ] = False,
) -> None:
    """memsearch: hybrid vector + keyword memory search."""
    configure_logging(verbose)


app.command("status")(status_cmd)
app.command("reindex")(reindex_cmd)
app.command("search")(search_cmd)
app.command("get")(get_cmd)
app.command("set")(set_cmd)
app.command("append")(append_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed memsearch version."""
    typer.echo(f"memsearch {_installed_version()}")


if __name__ == "__main__":
    app()
