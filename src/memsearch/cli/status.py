"""memsearch status command.

Shows provider, index counts, and the health of each search signal
(FTS, vector, embedding cache, batch embeddings).  ``--deep`` also probes
the vector table and the embedding provider.
"""

from __future__ import annotations

import json
from typing import Annotated

import typer
from rich.panel import Panel
from rich.table import Table

from memsearch.cli.options import AgentOption, DbOption, TenantOption, console, open_manager
from memsearch.search.status import SearchStatus
from memsearch.search.tools import status_payload


def status_cmd(
    deep: Annotated[
        bool,
        typer.Option("--deep", help="Probe the vector table and the embedding provider."),
    ] = False,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the status as JSON."),
    ] = False,
    db: DbOption = None,
    tenant: TenantOption = "default",
    agent: AgentOption = "",
) -> None:
    """Show memory index status and signal availability."""
    with open_manager(db, tenant, agent) as manager:
        status = manager.status(deep=deep)

    if as_json:
        typer.echo(json.dumps(status_payload(status), indent=2))
        return

    _show_index_panel(status)
    _show_signals_panel(status)
    if status.batch is not None and (status.batch.enabled or status.batch.failures):
        _show_batch_panel(status)
    if deep:
        _show_probe_panel(status)


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _yes_no(value: bool | None) -> str:
    if value is None:
        return "[dim]unknown[/]"
    return "[green]✓[/]" if value else "[red]✗[/]"


def _show_index_panel(status: SearchStatus) -> None:
    lines = [
        f"Provider:  [bold]{status.provider}[/]  [dim](requested: {status.requested_provider})[/]",
        f"Model:     {status.model}",
        f"Database:  {status.db_path}",
    ]
    if status.workspace_dir:
        lines.append(f"Workspace: {status.workspace_dir}")
    lines.append(f"Sources:   {', '.join(status.sources) or '(none)'}")
    if status.extra_paths:
        lines.append(f"Extra:     {', '.join(status.extra_paths)}")
    if status.fallback:
        lines.append(
            f"Fallback:  [yellow]{status.fallback['from']}[/] ({status.fallback['reason']})"
        )
    dirty = "[yellow]pending sync[/]" if status.dirty else "[green]clean[/]"
    lines.append(
        f"Files: [bold]{status.files:,}[/]  |  Chunks: [bold]{status.chunks:,}[/]  |  {dirty}"
    )

    table = Table(show_header=True, box=None, padding=(0, 1))
    table.add_column("Source", style="bold")
    table.add_column("Files", justify="right")
    table.add_column("Chunks", justify="right")
    for count in status.source_counts:
        table.add_row(count.source, f"{count.files:,}", f"{count.chunks:,}")

    console.print(Panel("\n".join(lines), title="[bold]Memory Index[/]", expand=False))
    if status.source_counts:
        console.print(Panel(table, title="[bold]Sources[/]", expand=False))


def _show_signals_panel(status: SearchStatus) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Signal", style="bold")
    table.add_column("Enabled")
    table.add_column("Available")
    table.add_column("Detail", style="dim")

    if status.fts is not None:
        table.add_row(
            "FTS",
            _yes_no(status.fts.enabled),
            _yes_no(status.fts.available),
            status.fts.error or "",
        )
    if status.vector is not None:
        detail = f"dims={status.vector.dims}" if status.vector.dims else ""
        if status.vector.error:
            detail = f"{detail} {status.vector.error}".strip()
        table.add_row(
            "Vector",
            _yes_no(status.vector.enabled),
            _yes_no(status.vector.available),
            detail,
        )
    if status.cache is not None:
        limit = status.cache.max_entries or "unbounded"
        table.add_row(
            "Cache",
            _yes_no(status.cache.enabled),
            "",
            f"entries={status.cache.entries:,} max={limit}",
        )

    console.print(Panel(table, title="[bold]Signals[/]", expand=False))


def _show_batch_panel(status: SearchStatus) -> None:
    batch = status.batch
    if batch is None:
        return
    lines = [
        f"Enabled:  {_yes_no(batch.enabled)}  failures {batch.failures}/{batch.limit}",
        f"Wait: {batch.wait}  concurrency={batch.concurrency}  "
        f"poll={batch.poll_interval_ms}ms  timeout={batch.timeout_ms}ms",
    ]
    if batch.last_error:
        lines.append(f"Last error: [red]{batch.last_error}[/]")
    if batch.last_provider:
        lines.append(f"Provider:   {batch.last_provider}")
    console.print(Panel("\n".join(lines), title="[bold]Batch Embeddings[/]", expand=False))


def _show_probe_panel(status: SearchStatus) -> None:
    lines: list[str] = []
    if status.vector is not None and status.vector.enabled:
        lines.append(f"Vector probe:    {_yes_no(status.vector.available)}")
    embed = f"Embedding probe: {_yes_no(status.embedding_ok)}"
    if status.embedding_error:
        embed += f"  [dim]({status.embedding_error})[/]"
    lines.append(embed)
    console.print(Panel("\n".join(lines), title="[bold]Probes[/]", expand=False))
