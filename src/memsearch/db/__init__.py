"""memsearch database layer."""

from memsearch.db.connection import ConnectionPool, Database
from memsearch.db.fulltext import build_fts_query, ensure_fts_table
from memsearch.db.migrations import MIGRATIONS, run_migrations
from memsearch.db.repository import Repository
from memsearch.db.schema import initialize
from memsearch.db.vectors import ensure_vec_table, serialize_vector

__all__ = [
    "ConnectionPool",
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "build_fts_query",
    "ensure_fts_table",
    "ensure_vec_table",
    "serialize_vector",
]
