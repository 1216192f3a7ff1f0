"""Forward-only migration runner for the memsearch database schema.

The FTS5 table (chunks_fts) and the vec0 tables (chunks_vec_<dims>) are NOT
migration-managed: their creation can fail on builds without the extension,
and that failure is reported through status instead of aborting startup.
Use ensure_fts_table() and ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS meta (
    tenant              TEXT PRIMARY KEY,
    provider            TEXT NOT NULL,
    model               TEXT NOT NULL,
    provider_key        TEXT NOT NULL,
    chunk_tokens        INTEGER NOT NULL,
    chunk_overlap       INTEGER NOT NULL,
    vector_dims         INTEGER NOT NULL DEFAULT 0,
    index_generation    TEXT NOT NULL,
    updated_at          INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS files (
    tenant      TEXT NOT NULL,
    path        TEXT NOT NULL,
    source      TEXT NOT NULL,
    content     TEXT NOT NULL,
    hash        TEXT NOT NULL,
    updated_at  INTEGER NOT NULL,
    PRIMARY KEY (tenant, path)
);

CREATE TABLE IF NOT EXISTS chunks (
    id          TEXT PRIMARY KEY,
    tenant      TEXT NOT NULL,
    path        TEXT NOT NULL,
    source      TEXT NOT NULL,
    start_line  INTEGER NOT NULL,
    end_line    INTEGER NOT NULL,
    hash        TEXT NOT NULL,
    model       TEXT NOT NULL,
    generation  TEXT NOT NULL,
    text        TEXT NOT NULL,
    embedding   TEXT NOT NULL DEFAULT '[]',
    updated_at  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks (tenant, generation, path);
CREATE INDEX IF NOT EXISTS idx_chunks_updated ON chunks (tenant, generation, updated_at);

CREATE TABLE IF NOT EXISTS embedding_cache (
    tenant          TEXT NOT NULL,
    provider        TEXT NOT NULL,
    model           TEXT NOT NULL,
    provider_key    TEXT NOT NULL,
    hash            TEXT NOT NULL,
    embedding       TEXT NOT NULL,
    dims            INTEGER NOT NULL,
    updated_at      INTEGER NOT NULL,
    PRIMARY KEY (tenant, provider, model, provider_key, hash)
);

CREATE INDEX IF NOT EXISTS idx_embedding_cache_updated ON embedding_cache (tenant, updated_at);

CREATE TABLE IF NOT EXISTS session_messages (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant      TEXT NOT NULL,
    session_key TEXT NOT NULL,
    role        TEXT NOT NULL,
    text        TEXT NOT NULL,
    created_at  INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_session_messages_key ON session_messages (tenant, session_key, id);

CREATE TABLE IF NOT EXISTS session_files (
    tenant      TEXT NOT NULL,
    session_key TEXT NOT NULL,
    path        TEXT NOT NULL,
    content     TEXT NOT NULL,
    hash        TEXT NOT NULL,
    updated_at  INTEGER NOT NULL,
    PRIMARY KEY (tenant, session_key)
);

CREATE TABLE IF NOT EXISTS session_state (
    tenant              TEXT NOT NULL,
    session_key         TEXT NOT NULL,
    last_rowid          INTEGER NOT NULL DEFAULT 0,
    pending_bytes       INTEGER NOT NULL DEFAULT 0,
    pending_messages    INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (tenant, session_key)
);
"""

# v2: hash of the whole document a chunk was cut from, for change detection.
_V2_SQL = """
ALTER TABLE chunks ADD COLUMN doc_hash TEXT NOT NULL DEFAULT '';
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 for a fresh database)."""
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row[0] is not None else 0


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    current = current_version(conn)

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
