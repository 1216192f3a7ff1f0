"""Repository pattern for all memsearch database operations.

Single interface for: files, chunks, FTS5 search, vec search, index meta and
the session transcript tables. Every query is scoped to the repository's
tenant. The embedding cache keeps its own SQL in memsearch.embeddings.cache.
"""

from __future__ import annotations

import sqlite3
import time
from typing import Iterable, Iterator

from memsearch.db.fulltext import FTS_TABLE
from memsearch.db.models import (
    FileEntry,
    IndexMeta,
    SessionMessage,
    SessionState,
    StoredChunk,
)
from memsearch.db.vectors import serialize_vector, vec_table_name, vec_tables

SESSIONS_SOURCE = "sessions"


def now_ms() -> int:
    return int(time.time() * 1000)


class Repository:
    """Data access layer for one tenant.

    Wraps an open sqlite3.Connection (usually borrowed from a ConnectionPool)
    and provides typed methods for every table. The connection is owned by
    the caller.
    """

    def __init__(self, conn: sqlite3.Connection, tenant: str) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see memsearch.db.schema.initialize).
            tenant: Tenant identity every row is scoped by.
        """
        self._conn = conn
        self.tenant = tenant

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def get_file(self, path: str) -> FileEntry | None:
        """Return the file at *path*, or None if not found."""
        row = self._conn.execute(
            "SELECT path, content, hash, source, updated_at FROM files WHERE tenant = ? AND path = ?",
            (self.tenant, path),
        ).fetchone()
        return _row_to_file(row) if row else None

    def put_file(self, entry: FileEntry) -> None:
        """Insert or replace a file record."""
        self._conn.execute(
            """
            INSERT INTO files (tenant, path, source, content, hash, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(tenant, path) DO UPDATE SET
                source = excluded.source,
                content = excluded.content,
                hash = excluded.hash,
                updated_at = excluded.updated_at
            """,
            (self.tenant, entry.path, entry.source, entry.content, entry.hash, entry.updated_at),
        )
        self._conn.commit()

    def insert_file_if_missing(self, entry: FileEntry) -> bool:
        """Insert *entry* unless the path already exists. Returns True if written."""
        cur = self._conn.execute(
            """
            INSERT OR IGNORE INTO files (tenant, path, source, content, hash, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (self.tenant, entry.path, entry.source, entry.content, entry.hash, entry.updated_at),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def delete_file(self, path: str) -> bool:
        """Delete the file at *path*. Returns True if a row was removed."""
        cur = self._conn.execute(
            "DELETE FROM files WHERE tenant = ? AND path = ?", (self.tenant, path)
        )
        self._conn.commit()
        return cur.rowcount > 0

    def list_files(self, prefix: str = "") -> list[FileEntry]:
        """Return files under *prefix* (all files when empty), ordered by path."""
        sql = "SELECT path, content, hash, source, updated_at FROM files WHERE tenant = ?"
        args: list[object] = [self.tenant]
        if prefix:
            sql += " AND (path = ? OR path LIKE ? ESCAPE '\\')"
            args.extend([prefix, _like_prefix(prefix)])
        sql += " ORDER BY path"
        return [_row_to_file(r) for r in self._conn.execute(sql, args).fetchall()]

    def recent_documents(
        self, sources: Iterable[str], prefix: str, limit: int
    ) -> list[FileEntry]:
        """Most recently updated documents across files and session files.

        Args:
            sources: Source names to include ("sessions" selects session files).
            prefix: Normalised path prefix, or "" for everything.
            limit: Maximum number of documents.
        """
        sources = list(sources)
        parts: list[str] = []
        args: list[object] = []
        file_sources = [s for s in sources if s != SESSIONS_SOURCE]
        if file_sources:
            src_sql, src_args = _in_filter("source", file_sources)
            path_sql, path_args = _path_filter("path", prefix)
            parts.append(
                "SELECT path, content, hash, source, updated_at FROM files WHERE tenant = ?"
                + src_sql + path_sql
            )
            args.extend([self.tenant, *src_args, *path_args])
        if SESSIONS_SOURCE in sources:
            path_sql, path_args = _path_filter("path", prefix)
            parts.append(
                "SELECT path, content, hash, 'sessions' AS source, updated_at FROM session_files"
                " WHERE tenant = ?" + path_sql
            )
            args.extend([self.tenant, *path_args])
        if not parts:
            return []
        sql = " UNION ALL ".join(parts) + " ORDER BY updated_at DESC LIMIT ?"
        args.append(limit)
        return [_row_to_file(r) for r in self._conn.execute(sql, args).fetchall()]

    def count_files_by_source(self) -> dict[str, int]:
        counts = {
            r["source"]: r["n"]
            for r in self._conn.execute(
                "SELECT source, COUNT(*) AS n FROM files WHERE tenant = ? GROUP BY source",
                (self.tenant,),
            ).fetchall()
        }
        sessions = self._conn.execute(
            "SELECT COUNT(*) FROM session_files WHERE tenant = ?", (self.tenant,)
        ).fetchone()[0]
        if sessions:
            counts[SESSIONS_SOURCE] = sessions
        return counts

    # ------------------------------------------------------------------
    # Index meta
    # ------------------------------------------------------------------

    def get_meta(self) -> IndexMeta | None:
        row = self._conn.execute(
            """
            SELECT provider, model, provider_key, chunk_tokens, chunk_overlap,
                   vector_dims, index_generation, updated_at
            FROM meta WHERE tenant = ?
            """,
            (self.tenant,),
        ).fetchone()
        return _row_to_meta(row) if row else None

    def put_meta(self, meta: IndexMeta) -> None:
        """Upsert the sweep bookkeeping row for this tenant."""
        self._conn.execute(
            """
            INSERT INTO meta (tenant, provider, model, provider_key, chunk_tokens,
                              chunk_overlap, vector_dims, index_generation, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(tenant) DO UPDATE SET
                provider = excluded.provider,
                model = excluded.model,
                provider_key = excluded.provider_key,
                chunk_tokens = excluded.chunk_tokens,
                chunk_overlap = excluded.chunk_overlap,
                vector_dims = excluded.vector_dims,
                index_generation = excluded.index_generation,
                updated_at = excluded.updated_at
            """,
            (
                self.tenant,
                meta.provider,
                meta.model,
                meta.provider_key,
                meta.chunk_tokens,
                meta.chunk_overlap,
                meta.vector_dims,
                meta.index_generation,
                meta.updated_at or now_ms(),
            ),
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def write_chunks(
        self,
        path: str,
        source: str,
        chunks: list[StoredChunk],
        *,
        fts: bool,
        vec: bool,
    ) -> None:
        """Replace every chunk stored for (*path*, *source*) with *chunks*.

        Rows are inserted or replaced by id, FTS and vec rows follow, and any
        other id previously stored for the path is deleted. All in one
        transaction.

        Args:
            path: Document path.
            source: Document source name.
            chunks: New chunks; ids must already carry the generation prefix.
            fts: Mirror rows into chunks_fts.
            vec: Mirror non-empty embeddings into chunks_vec_<dims>; the table
                for each vector length must already exist.
        """
        keep = [c.id for c in chunks]
        with self._conn:
            for chunk in chunks:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO chunks
                        (id, tenant, path, source, start_line, end_line, hash, model,
                         generation, text, embedding, updated_at, doc_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.id,
                        self.tenant,
                        chunk.path,
                        chunk.source,
                        chunk.start_line,
                        chunk.end_line,
                        chunk.hash,
                        chunk.model,
                        chunk.generation,
                        chunk.text,
                        chunk.embedding,
                        chunk.updated_at or now_ms(),
                        chunk.doc_hash,
                    ),
                )
                if fts:
                    self._conn.execute(f"DELETE FROM {FTS_TABLE} WHERE id = ?", (chunk.id,))
                    self._conn.execute(
                        f"""
                        INSERT INTO {FTS_TABLE}
                            (text, id, path, source, model, start_line, end_line, tenant)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            chunk.text,
                            chunk.id,
                            chunk.path,
                            chunk.source,
                            chunk.model,
                            chunk.start_line,
                            chunk.end_line,
                            self.tenant,
                        ),
                    )
                vector = chunk.embedding_list
                if vec and vector:
                    table = vec_table_name(len(vector))
                    self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (chunk.id,))
                    self._conn.execute(
                        f"INSERT INTO {table} (id, embedding) VALUES (?, ?)",
                        (chunk.id, serialize_vector(vector)),
                    )
            stale = [
                r[0]
                for r in self._conn.execute(
                    "SELECT id FROM chunks WHERE tenant = ? AND path = ? AND source = ?",
                    (self.tenant, path, source),
                ).fetchall()
                if r[0] not in keep
            ]
            self._delete_ids(stale, fts=fts, vec=vec)

    def delete_path_chunks(self, path: str, source: str, *, fts: bool, vec: bool) -> int:
        """Delete every chunk of (*path*, *source*). Returns the number removed."""
        ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE tenant = ? AND path = ? AND source = ?",
                (self.tenant, path, source),
            ).fetchall()
        ]
        with self._conn:
            self._delete_ids(ids, fts=fts, vec=vec)
        return len(ids)

    def delete_other_generations(self, generation: str, *, fts: bool, vec: bool) -> int:
        """Delete every chunk not belonging to *generation*. Returns the number removed."""
        ids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM chunks WHERE tenant = ? AND generation != ?",
                (self.tenant, generation),
            ).fetchall()
        ]
        with self._conn:
            self._delete_ids(ids, fts=fts, vec=vec)
        return len(ids)

    def _delete_ids(self, ids: list[str], *, fts: bool, vec: bool) -> None:
        tables = list(vec_tables(self._conn).values()) if vec and ids else []
        for start in range(0, len(ids), 500):
            batch = ids[start : start + 500]
            placeholders = ",".join("?" * len(batch))
            self._conn.execute(f"DELETE FROM chunks WHERE id IN ({placeholders})", batch)
            if fts:
                self._conn.execute(
                    f"DELETE FROM {FTS_TABLE} WHERE id IN ({placeholders})", batch  # noqa: S608
                )
            for table in tables:
                self._conn.execute(
                    f"DELETE FROM {table} WHERE id IN ({placeholders})", batch  # noqa: S608
                )

    def indexed_paths(self, source: str) -> set[str]:
        """Return every path with at least one chunk stored under *source*."""
        return {
            r[0]
            for r in self._conn.execute(
                "SELECT DISTINCT path FROM chunks WHERE tenant = ? AND source = ?",
                (self.tenant, source),
            ).fetchall()
        }

    def indexed_doc_hash(
        self, path: str, source: str, model: str, generation: str
    ) -> str | None:
        """Return the document hash the path's chunks were cut from, or None if unindexed."""
        row = self._conn.execute(
            """
            SELECT doc_hash FROM chunks
            WHERE tenant = ? AND path = ? AND source = ? AND model = ? AND generation = ?
            LIMIT 1
            """,
            (self.tenant, path, source, model, generation),
        ).fetchone()
        return row[0] if row else None

    def count_chunks_by_source(self, generation: str) -> dict[str, int]:
        return {
            r["source"]: r["n"]
            for r in self._conn.execute(
                """
                SELECT source, COUNT(*) AS n FROM chunks
                WHERE tenant = ? AND generation = ? GROUP BY source
                """,
                (self.tenant, generation),
            ).fetchall()
        }

    def get_chunk(self, chunk_id: str) -> StoredChunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE tenant = ? AND id = ?",
            (self.tenant, chunk_id),
        ).fetchone()
        return _row_to_chunk(row) if row else None

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search_fts(
        self,
        match: str,
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[tuple[StoredChunk, float]]:
        """BM25 full-text search. Returns (chunk, rank) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        The raw rank is returned so callers can map it to a score.
        """
        src_sql, src_args = _in_filter("c.source", sources)
        path_sql, path_args = _path_filter("c.path", prefix)
        rows = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS_C}, bm25({FTS_TABLE}) AS bm25_rank
            FROM {FTS_TABLE} JOIN chunks c ON c.id = {FTS_TABLE}.id
            WHERE {FTS_TABLE} MATCH ? AND {FTS_TABLE}.tenant = ?
              AND c.tenant = ? AND c.generation = ?{src_sql}{path_sql}
            ORDER BY bm25_rank ASC
            LIMIT ?
            """,
            (match, self.tenant, self.tenant, generation, *src_args, *path_args, limit),
        ).fetchall()
        return [(_row_to_chunk(r), r["bm25_rank"]) for r in rows]

    def scan_chunks(
        self,
        tokens: list[str],
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[StoredChunk]:
        """Return the newest chunks whose text contains every lower-cased token."""
        src_sql, src_args = _in_filter("source", sources)
        path_sql, path_args = _path_filter("path", prefix)
        like_sql = "".join(" AND LOWER(text) LIKE ? ESCAPE '\\'" for _ in tokens)
        like_args = ["%" + _escape_like(t) + "%" for t in tokens]
        rows = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS} FROM chunks
            WHERE tenant = ? AND generation = ?{src_sql}{path_sql}{like_sql}
            ORDER BY updated_at DESC
            LIMIT ?
            """,
            (self.tenant, generation, *src_args, *path_args, *like_args, limit),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def search_vec(
        self,
        query_blob: bytes,
        dims: int,
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[tuple[StoredChunk, float]]:
        """Cosine-distance search over chunks_vec_<dims>. Returns (chunk, distance) ascending."""
        src_sql, src_args = _in_filter("c.source", sources)
        path_sql, path_args = _path_filter("c.path", prefix)
        rows = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS_C}, vec_distance_cosine(v.embedding, ?) AS distance
            FROM {vec_table_name(dims)} v JOIN chunks c ON c.id = v.id
            WHERE c.tenant = ? AND c.generation = ?{src_sql}{path_sql}
            ORDER BY distance ASC
            LIMIT ?
            """,
            (query_blob, self.tenant, generation, *src_args, *path_args, limit),
        ).fetchall()
        return [(_row_to_chunk(r), r["distance"]) for r in rows]

    def iter_embedded_chunks(
        self, generation: str, sources: list[str], prefix: str
    ) -> Iterator[StoredChunk]:
        """Yield every chunk of *generation* that carries an embedding."""
        src_sql, src_args = _in_filter("source", sources)
        path_sql, path_args = _path_filter("path", prefix)
        cursor = self._conn.execute(
            f"""
            SELECT {_CHUNK_COLUMNS} FROM chunks
            WHERE tenant = ? AND generation = ? AND embedding != '[]'{src_sql}{path_sql}
            """,
            (self.tenant, generation, *src_args, *path_args),
        )
        for row in cursor:
            yield _row_to_chunk(row)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def append_session_message(self, session_key: str, role: str, text: str) -> int:
        """Append one transcript message. Returns its rowid."""
        cur = self._conn.execute(
            """
            INSERT INTO session_messages (tenant, session_key, role, text, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (self.tenant, session_key, role, text, now_ms()),
        )
        self._conn.commit()
        return cur.lastrowid

    def session_keys(self) -> list[str]:
        return [
            r[0]
            for r in self._conn.execute(
                "SELECT DISTINCT session_key FROM session_messages WHERE tenant = ? ORDER BY session_key",
                (self.tenant,),
            ).fetchall()
        ]

    def session_messages(self, session_key: str, after_rowid: int = 0) -> list[SessionMessage]:
        rows = self._conn.execute(
            """
            SELECT id, session_key, role, text, created_at FROM session_messages
            WHERE tenant = ? AND session_key = ? AND id > ?
            ORDER BY id ASC
            """,
            (self.tenant, session_key, after_rowid),
        ).fetchall()
        return [
            SessionMessage(
                rowid=r["id"],
                session_key=r["session_key"],
                role=r["role"],
                text=r["text"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def max_session_rowid(self, session_key: str) -> int:
        row = self._conn.execute(
            "SELECT MAX(id) FROM session_messages WHERE tenant = ? AND session_key = ?",
            (self.tenant, session_key),
        ).fetchone()
        return row[0] or 0

    def count_session_states(self) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM session_state WHERE tenant = ?", (self.tenant,)
        ).fetchone()[0]

    def get_session_state(self, session_key: str) -> SessionState:
        row = self._conn.execute(
            """
            SELECT session_key, last_rowid, pending_bytes, pending_messages
            FROM session_state WHERE tenant = ? AND session_key = ?
            """,
            (self.tenant, session_key),
        ).fetchone()
        if row is None:
            return SessionState(session_key=session_key)
        return SessionState(
            session_key=row["session_key"],
            last_rowid=row["last_rowid"],
            pending_bytes=row["pending_bytes"],
            pending_messages=row["pending_messages"],
        )

    def put_session_state(self, state: SessionState) -> None:
        self._conn.execute(
            """
            INSERT INTO session_state (tenant, session_key, last_rowid, pending_bytes, pending_messages)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(tenant, session_key) DO UPDATE SET
                last_rowid = excluded.last_rowid,
                pending_bytes = excluded.pending_bytes,
                pending_messages = excluded.pending_messages
            """,
            (
                self.tenant,
                state.session_key,
                state.last_rowid,
                state.pending_bytes,
                state.pending_messages,
            ),
        )
        self._conn.commit()

    def delete_session_state(self, session_key: str) -> None:
        self._conn.execute(
            "DELETE FROM session_state WHERE tenant = ? AND session_key = ?",
            (self.tenant, session_key),
        )
        self._conn.commit()

    def get_session_file(self, session_key: str) -> FileEntry | None:
        row = self._conn.execute(
            """
            SELECT path, content, hash, 'sessions' AS source, updated_at
            FROM session_files WHERE tenant = ? AND session_key = ?
            """,
            (self.tenant, session_key),
        ).fetchone()
        return _row_to_file(row) if row else None

    def put_session_file(self, session_key: str, entry: FileEntry) -> None:
        self._conn.execute(
            """
            INSERT INTO session_files (tenant, session_key, path, content, hash, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(tenant, session_key) DO UPDATE SET
                path = excluded.path,
                content = excluded.content,
                hash = excluded.hash,
                updated_at = excluded.updated_at
            """,
            (self.tenant, session_key, entry.path, entry.content, entry.hash, entry.updated_at),
        )
        self._conn.commit()

    def delete_session_file(self, session_key: str) -> None:
        self._conn.execute(
            "DELETE FROM session_files WHERE tenant = ? AND session_key = ?",
            (self.tenant, session_key),
        )
        self._conn.commit()

    def list_session_files(self) -> dict[str, str]:
        """Return {session_key: path} for every stored session document."""
        return {
            r["session_key"]: r["path"]
            for r in self._conn.execute(
                "SELECT session_key, path FROM session_files WHERE tenant = ?", (self.tenant,)
            ).fetchall()
        }


# ------------------------------------------------------------------
# SQL helpers
# ------------------------------------------------------------------

_CHUNK_COLUMNS = (
    "id, path, source, start_line, end_line, text, hash, model, generation, embedding, updated_at,"
    " doc_hash"
)
_CHUNK_COLUMNS_C = ", ".join(f"c.{col.strip()}" for col in _CHUNK_COLUMNS.split(","))


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _like_prefix(prefix: str) -> str:
    return _escape_like(prefix.rstrip("/")) + "/%"


def _in_filter(column: str, values: list[str]) -> tuple[str, list[object]]:
    if not values:
        return "", []
    placeholders = ",".join("?" * len(values))
    return f" AND {column} IN ({placeholders})", list(values)


def _path_filter(column: str, prefix: str) -> tuple[str, list[object]]:
    if not prefix:
        return "", []
    return f" AND ({column} = ? OR {column} LIKE ? ESCAPE '\\')", [prefix, _like_prefix(prefix)]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_file(row: sqlite3.Row) -> FileEntry:
    return FileEntry(
        path=row["path"],
        content=row["content"],
        hash=row["hash"],
        source=row["source"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> StoredChunk:
    return StoredChunk(
        id=row["id"],
        path=row["path"],
        source=row["source"],
        start_line=row["start_line"],
        end_line=row["end_line"],
        text=row["text"],
        hash=row["hash"],
        model=row["model"],
        generation=row["generation"],
        embedding=row["embedding"],
        updated_at=row["updated_at"],
        doc_hash=row["doc_hash"],
    )


def _row_to_meta(row: sqlite3.Row) -> IndexMeta:
    return IndexMeta(
        provider=row["provider"],
        model=row["model"],
        provider_key=row["provider_key"],
        chunk_tokens=row["chunk_tokens"],
        chunk_overlap=row["chunk_overlap"],
        index_generation=row["index_generation"],
        vector_dims=row["vector_dims"] or 0,
        updated_at=row["updated_at"],
    )
