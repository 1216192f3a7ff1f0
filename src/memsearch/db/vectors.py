"""sqlite-vec chunk vector tables.

Vectors live in one vec0 table per dimension (``chunks_vec_<dims>``), shared by
every tenant and generation of that dimension. Tables are created lazily: the
dimension is only known once the first embedding comes back from the
provider. A table is never dropped while chunks may still point into it.
"""

from __future__ import annotations

import re
import sqlite3

import sqlite_vec

VEC_TABLE_PREFIX = "chunks_vec_"

_TABLE_RE = re.compile(r"^chunks_vec_(\d+)$")


def serialize_vector(embedding: list[float]) -> bytes:
    """Pack *embedding* into the little-endian float32 blob sqlite-vec expects."""
    return sqlite_vec.serialize_float32(embedding)


def vec_table_name(dimensions: int) -> str:
    """Name of the vec0 table holding *dimensions*-wide vectors.

    Example:
        vec_table_name(1536) -> "chunks_vec_1536"
    """
    return f"{VEC_TABLE_PREFIX}{int(dimensions)}"


def vec_tables(conn: sqlite3.Connection) -> dict[int, str]:
    """Return ``{dims: table}`` for every vector table in the database."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name LIKE 'chunks_vec_%'"
    ).fetchall()
    tables: dict[int, str] = {}
    for row in rows:
        match = _TABLE_RE.match(row[0])
        if match:
            tables[int(match.group(1))] = row[0]
    return tables


def vec_table_exists(conn: sqlite3.Connection, dimensions: int) -> bool:
    return dimensions in vec_tables(conn)


def ensure_vec_table(conn: sqlite3.Connection, dimensions: int) -> str:
    """Create the vector table for *dimensions* if it doesn't already exist.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        dimensions: Embedding vector dimensions (e.g. 1536 for text-embedding-3-small).

    Returns:
        The table name.

    Raises:
        ValueError: If *dimensions* is not positive.
        sqlite3.OperationalError: If the vec0 module is not available.
    """
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    table = vec_table_name(dimensions)
    conn.execute(
        f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0("
        f"id TEXT PRIMARY KEY, embedding float[{dimensions}])"
    )
    conn.commit()
    return table


def probe_vec_table(conn: sqlite3.Connection) -> None:
    """Touch every vector table so a broken extension surfaces as an exception."""
    conn.execute("SELECT vec_version()").fetchone()
    for table in vec_tables(conn).values():
        conn.execute(f"SELECT id FROM {table} LIMIT 1").fetchall()
