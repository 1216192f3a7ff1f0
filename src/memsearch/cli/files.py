"""memsearch get / set / append commands (virtual memory files)."""

from __future__ import annotations

from typing import Annotated

import typer
from rich.markup import escape

from memsearch.cli.errors import (
    err_content_too_large,
    err_document_not_found,
    err_invalid_path,
)
from memsearch.cli.options import AgentOption, DbOption, TenantOption, console, open_manager
from memsearch.errors import DocumentNotFound
from memsearch.search.manager import SearchManager

MAX_WRITE_BYTES = 256 * 1024


def get_cmd(
    path: Annotated[str, typer.Argument(help="Memory file path, e.g. MEMORY.md.")],
    from_line: Annotated[
        int | None,
        typer.Option("--from", help="First line to return (1-based)."),
    ] = None,
    lines: Annotated[
        int | None,
        typer.Option("--lines", help="Number of lines to return."),
    ] = None,
    db: DbOption = None,
    tenant: TenantOption = "default",
    agent: AgentOption = "",
) -> None:
    """Print a memory file, optionally a line range of it."""
    with open_manager(db, tenant, agent) as manager:
        try:
            result = manager.read_file(path, from_line=from_line, lines=lines)
        except DocumentNotFound as exc:
            console.print(err_document_not_found(escape(path)))
            raise typer.Exit(1) from exc
        except ValueError as exc:
            console.print(err_invalid_path(escape(path)))
            raise typer.Exit(1) from exc
    typer.echo(result["text"])


def set_cmd(
    path: Annotated[str, typer.Argument(help="Memory file path.")],
    content: Annotated[str, typer.Argument(help="New file content.")],
    db: DbOption = None,
    tenant: TenantOption = "default",
    agent: AgentOption = "",
) -> None:
    """Replace a memory file's content."""
    with open_manager(db, tenant, agent) as manager:
        _write(manager, path, content, append=False)


def append_cmd(
    path: Annotated[str, typer.Argument(help="Memory file path.")],
    content: Annotated[str, typer.Argument(help="Text to append.")],
    db: DbOption = None,
    tenant: TenantOption = "default",
    agent: AgentOption = "",
) -> None:
    """Append text to a memory file (created if missing)."""
    with open_manager(db, tenant, agent) as manager:
        _write(manager, path, content, append=True)


def _write(manager: SearchManager, path: str, content: str, *, append: bool) -> None:
    if len(content.encode("utf-8")) > MAX_WRITE_BYTES:
        console.print(err_content_too_large(MAX_WRITE_BYTES))
        raise typer.Exit(1)
    try:
        if append:
            existing = manager.files.read(path)
            if existing is not None:
                sep = "" if not existing.content or existing.content.endswith("\n") else "\n"
                content = existing.content + sep + content
                if len(content.encode("utf-8")) > MAX_WRITE_BYTES:
                    console.print(err_content_too_large(MAX_WRITE_BYTES, after_append=True))
                    raise typer.Exit(1)
        entry = manager.files.write(path, content)
    except ValueError as exc:
        console.print(err_invalid_path(escape(path)))
        raise typer.Exit(1) from exc
    manager.notify_file_changed(entry.path)
    console.print(f"[green]✓[/] Memory file updated: {escape(entry.path)}")
