"""memsearch rich error messages with actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from memsearch.cli.errors import err_search_disabled
    console.print(err_search_disabled(msg))
    raise typer.Exit(1)
"""

from __future__ import annotations

from memsearch.search.registry import DISABLED_PREFIX


def _format_size(size: int) -> str:
    if size >= 1024 * 1024:
        return f"{size / (1024 * 1024):.0f} MiB"
    if size >= 1024:
        return f"{size // 1024} KiB"
    return f"{size} B"


def err_search_disabled(reason: str) -> str:
    """Memory search could not be started for this tenant/agent.

    Example:
        Error: memory search disabled: no embeddings provider available
          Set:  export OPENAI_API_KEY=sk-...
    """
    if not reason.startswith(DISABLED_PREFIX):
        reason = f"{DISABLED_PREFIX}: {reason}"
    if "no embeddings provider" in reason or "require api_key" in reason:
        hint = "  Set:  export OPENAI_API_KEY=sk-...  (or configure memory_search.local.base_url)"
    elif "tenant is required" in reason:
        hint = "  Use:  memsearch --tenant <name> ..."
    elif "disabled in config" in reason:
        hint = "  Set:  memory_search.enabled: true  in memsearch.yaml"
    else:
        hint = "  Run:  memsearch status  after fixing memsearch.yaml"
    return f"[red]Error:[/] {reason}\n{hint}"


def err_config(message: str) -> str:
    """memsearch.yaml (or the global config) could not be loaded."""
    return (
        f"[red]Error:[/] Invalid configuration: {message}\n"
        "  Fix memsearch.yaml or ~/.memsearch/config.yaml and re-run."
    )


def err_document_not_found(path: str) -> str:
    """Requested memory file does not exist."""
    return (
        f"[yellow]Not found:[/] '{path}' is not a memory file.\n"
        "  Run:  memsearch search --mode list \"\"  to see recent files."
    )


def err_invalid_path(path: str) -> str:
    """Path is empty, escapes the store, or is not a readable memory path."""
    return (
        f"[red]Error:[/] Not a memory path: '{path}'\n"
        "  Use a relative .md path such as MEMORY.md or memory/notes.md."
    )


def err_content_too_large(limit: int, after_append: bool = False) -> str:
    """Content for set/append exceeds the write limit."""
    suffix = " after append" if after_append else ""
    return (
        f"[red]Error:[/] Content exceeds {_format_size(limit)} limit{suffix}.\n"
        "  Split the content and write it in smaller pieces."
    )


def err_search_failed(message: str) -> str:
    """A query failed outright (semantic mode without embeddings, timeout)."""
    return (
        f"[red]Error:[/] Memory search failed: {message}\n"
        "  Use:  --mode keyword  or check the provider with  memsearch status --deep"
    )


def err_reindex_failed(message: str) -> str:
    return (
        f"[red]Error:[/] Memory reindex failed: {message}\n"
        "  Run:  memsearch status --deep  to check the embedding provider."
    )
