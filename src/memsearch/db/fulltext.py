"""FTS5 keyword table management and query construction."""

from __future__ import annotations

import logging
import re
import sqlite3

logger = logging.getLogger(__name__)

FTS_TABLE = "chunks_fts"

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")

# Only `text` is tokenised; the rest ride along so hits can be filtered
# without a join.
_CREATE_CHUNKS_FTS = f"""
CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
    text,
    id UNINDEXED,
    path UNINDEXED,
    source UNINDEXED,
    model UNINDEXED,
    start_line UNINDEXED,
    end_line UNINDEXED,
    tenant UNINDEXED
)
"""


def ensure_fts_table(conn: sqlite3.Connection) -> str | None:
    """Create the chunks_fts table if missing.

    Returns:
        None on success, otherwise the error message (FTS5 is unavailable on
        this SQLite build).
    """
    try:
        conn.execute(_CREATE_CHUNKS_FTS)
        conn.commit()
    except sqlite3.OperationalError as exc:
        logger.debug("FTS5 unavailable: %s", exc)
        return str(exc)
    return None


def fts_table_exists(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (FTS_TABLE,)
    ).fetchone()
    return row is not None


def query_tokens(raw: str) -> list[str]:
    """Return the ``[A-Za-z0-9_]+`` tokens of *raw*, in order."""
    return [t for t in _TOKEN_RE.findall(raw) if t]


def build_fts_query(raw: str) -> str | None:
    """Build an FTS5 MATCH expression requiring every token of *raw*.

    Each token is double-quoted (embedded quotes stripped) so punctuation and
    FTS operators in user input never reach the parser.

    Examples:
        "hello, world" -> '"hello" AND "world"'
        "!!!"          -> None
    """
    tokens = query_tokens(raw)
    if not tokens:
        return None
    quoted = ['"' + t.replace('"', "") + '"' for t in tokens]
    return " AND ".join(quoted)
