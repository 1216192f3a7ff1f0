"""memsearch search / reindex commands."""

from __future__ import annotations

import json
import math
from typing import Annotated

import typer
from rich.markup import escape

from memsearch.cli.errors import err_reindex_failed, err_search_failed
from memsearch.cli.options import AgentOption, DbOption, TenantOption, console, open_manager
from memsearch.errors import EmbeddingError, OperationCancelled
from memsearch.search.manager import SEARCH_MODES, SearchOptions
from memsearch.search.tools import search_payload


def search_cmd(
    query: Annotated[str, typer.Argument(help="Search query ('' lists recent files in list mode).")],
    max_results: Annotated[
        int,
        typer.Option("--max-results", "-n", help="Maximum results (default: config query.max_results)."),
    ] = 0,
    min_score: Annotated[
        float | None,
        typer.Option("--min-score", help="Score floor 0..1 (default: config query.min_score)."),
    ] = None,
    mode: Annotated[
        str,
        typer.Option("--mode", help="auto | semantic | keyword | hybrid | list."),
    ] = "auto",
    source: Annotated[
        list[str] | None,
        typer.Option("--source", "-s", help="Restrict to a source: notes, workspace, sessions (repeatable)."),
    ] = None,
    path_prefix: Annotated[
        str,
        typer.Option("--path", help="Restrict results to this path or directory."),
    ] = "",
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print results as JSON."),
    ] = False,
    db: DbOption = None,
    tenant: TenantOption = "default",
    agent: AgentOption = "",
) -> None:
    """Search memory with the hybrid vector + keyword index."""
    mode = mode.strip().lower()
    if mode not in SEARCH_MODES:
        console.print(
            f"[red]Error:[/] Unknown mode '{escape(mode)}'.\n"
            f"  Use one of: {', '.join(SEARCH_MODES)}"
        )
        raise typer.Exit(1)

    options = SearchOptions(
        mode=mode,
        max_results=max_results,
        min_score=min_score if min_score is not None else math.nan,
        sources=source or [],
        path_prefix=path_prefix,
    )
    with open_manager(db, tenant, agent) as manager:
        try:
            manager.sync()
        except EmbeddingError as exc:
            console.print(f"[yellow]Warning:[/] index sync failed: {escape(str(exc))}")
        try:
            results = manager.search(query, options)
        except (EmbeddingError, OperationCancelled) as exc:
            console.print(err_search_failed(escape(str(exc))))
            raise typer.Exit(1) from exc
        payload = search_payload(manager, results)

    if as_json:
        typer.echo(json.dumps(payload, indent=2))
        return
    if not results:
        console.print("[dim]No matches.[/]")
        return
    for result in results:
        location = result.path
        if result.start_line is not None and result.end_line is not None:
            location = f"{result.path}:{result.start_line}-{result.end_line}"
        console.print(f"[bold]{result.score:.3f}[/] {escape(location)} [dim]({result.source})[/]")
        if result.snippet:
            console.print(escape(result.snippet), highlight=False)
        console.print()


def reindex_cmd(
    db: DbOption = None,
    tenant: TenantOption = "default",
    agent: AgentOption = "",
) -> None:
    """Rebuild the memory index for the current provider and chunking settings."""
    with open_manager(db, tenant, agent) as manager:
        try:
            result = manager.reindex()
        except (EmbeddingError, OperationCancelled) as exc:
            console.print(err_reindex_failed(escape(str(exc))))
            raise typer.Exit(1) from exc

    line = (
        f"[green]✓[/] Reindexed [bold]{len(result.indexed)}[/] file(s), "
        f"removed {len(result.removed)}"
    )
    if result.sessions_indexed:
        line += f", {len(result.sessions_indexed)} session(s)"
    console.print(line + f"  [dim](generation {result.generation})[/]")
    if result.vector_error:
        console.print(f"[yellow]Vector index unavailable:[/] {escape(result.vector_error)}")
