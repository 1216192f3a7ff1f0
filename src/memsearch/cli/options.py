"""Options shared by every memsearch subcommand, and manager setup."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from memsearch.cli.errors import err_config, err_search_disabled
from memsearch.config import AppConfig, ConfigError, load_config
from memsearch.search import registry
from memsearch.search.manager import SearchManager

console = Console()

DEFAULT_TENANT = "default"

DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the memory database (default: config 'database')."),
]
TenantOption = Annotated[
    str,
    typer.Option("--tenant", envvar="MEMSEARCH_TENANT", help="Tenant whose memory to use."),
]
AgentOption = Annotated[
    str,
    typer.Option("--agent", help="Agent id for agents.<id>.memory_search overrides."),
]


def load_app_config() -> AppConfig:
    """Load memsearch.yaml layers, exiting with a rich error on failure."""
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc


@contextmanager
def open_manager(db: Path | None, tenant: str, agent: str) -> Iterator[SearchManager]:
    """Yield the SearchManager for the CLI invocation and stop it afterwards."""
    app_cfg = load_app_config()
    try:
        resolved = app_cfg.resolve_for(agent)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    db_path = db if db is not None else Path(app_cfg.database)
    manager, reason = registry.get_search_manager(
        tenant,
        resolved,
        db_path,
        workspace_dir=app_cfg.workspace,
    )
    if manager is None:
        console.print(err_search_disabled(reason))
        raise typer.Exit(1)
    try:
        yield manager
    finally:
        registry.close_all()
