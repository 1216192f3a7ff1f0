"""Database schema initialization."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass

CURRENT_VERSION = 1


@dataclass
class SchemaState:
    """Availability of the optional virtual tables after initialize()."""

    fts_available: bool
    fts_error: str | None = None


def initialize(conn: sqlite3.Connection, *, fts: bool = True) -> SchemaState:
    """Initialize the database schema via the migration runner (idempotent).

    Args:
        conn: Open connection.
        fts: Whether to create the FTS5 keyword table as well.

    Returns:
        SchemaState describing whether FTS5 could be created.
    """
    from memsearch.db.fulltext import ensure_fts_table
    from memsearch.db.migrations import run_migrations

    run_migrations(conn)
    if not fts:
        return SchemaState(fts_available=False)
    error = ensure_fts_table(conn)
    return SchemaState(fts_available=error is None, fts_error=error)
