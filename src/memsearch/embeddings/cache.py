"""Content-addressed embedding cache.

Rows are keyed by (tenant, provider, model, provider_key, chunk hash), so a
change of endpoint or model never serves a stale vector. Capacity is enforced
least-recently-used: a hit refreshes ``updated_at`` and pruning deletes the
oldest rows first. ``max_entries == 0`` means unbounded.
"""

from __future__ import annotations

import json
import logging
import sqlite3

from memsearch.db.connection import ConnectionPool
from memsearch.db.repository import now_ms

logger = logging.getLogger(__name__)


class EmbeddingCache:
    """Embedding cache scoped to one tenant and one provider identity."""

    def __init__(
        self,
        pool: ConnectionPool,
        tenant: str,
        provider: str,
        model: str,
        provider_key: str,
        *,
        enabled: bool = True,
        max_entries: int = 0,
    ) -> None:
        self._pool = pool
        self.tenant = tenant
        self.provider = provider
        self.model = model
        self.provider_key = provider_key
        self.enabled = enabled
        self.max_entries = max(0, max_entries)

    @property
    def _key(self) -> tuple[str, str, str, str]:
        return (self.tenant, self.provider, self.model, self.provider_key)

    def lookup(self, hashes: list[str], expected_dims: int = 0) -> dict[str, list[float]]:
        """Return {hash: embedding} for every cached hash in *hashes*.

        Entries whose stored dims disagree with *expected_dims* (when known)
        are deleted and reported as misses. Hits have their ``updated_at``
        refreshed.
        """
        if not self.enabled or not hashes:
            return {}
        unique = list(dict.fromkeys(hashes))
        found: dict[str, list[float]] = {}
        stale: list[str] = []
        with self._pool.acquire() as conn:
            for start in range(0, len(unique), 400):
                batch = unique[start : start + 400]
                placeholders = ",".join("?" * len(batch))
                rows = conn.execute(
                    f"""
                    SELECT hash, embedding, dims FROM embedding_cache
                    WHERE tenant = ? AND provider = ? AND model = ? AND provider_key = ?
                      AND hash IN ({placeholders})
                    """,
                    (*self._key, *batch),
                ).fetchall()
                for row in rows:
                    embedding = json.loads(row["embedding"])
                    if len(embedding) != row["dims"] or (
                        expected_dims > 0 and row["dims"] != expected_dims
                    ):
                        stale.append(row["hash"])
                        continue
                    found[row["hash"]] = embedding
            if stale:
                self._delete(conn, stale)
                logger.debug("dropped %d cache entries with mismatched dims", len(stale))
            if found:
                self._touch(conn, list(found))
        return found

    def store(self, items: dict[str, list[float]]) -> None:
        """Insert or refresh cached embeddings, then prune to capacity."""
        if not self.enabled or not items:
            return
        now = now_ms()
        with self._pool.acquire() as conn:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO embedding_cache
                        (tenant, provider, model, provider_key, hash, embedding, dims, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(tenant, provider, model, provider_key, hash) DO UPDATE SET
                        embedding = excluded.embedding,
                        dims = excluded.dims,
                        updated_at = excluded.updated_at
                    """,
                    [
                        (*self._key, h, json.dumps(vec), len(vec), now)
                        for h, vec in items.items()
                        if vec
                    ],
                )
            self._prune(conn)

    def count(self) -> int:
        with self._pool.acquire() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM embedding_cache WHERE tenant = ?", (self.tenant,)
            ).fetchone()[0]

    def _touch(self, conn: sqlite3.Connection, hashes: list[str]) -> None:
        now = now_ms()
        with conn:
            conn.executemany(
                """
                UPDATE embedding_cache SET updated_at = ?
                WHERE tenant = ? AND provider = ? AND model = ? AND provider_key = ? AND hash = ?
                """,
                [(now, *self._key, h) for h in hashes],
            )

    def _delete(self, conn: sqlite3.Connection, hashes: list[str]) -> None:
        with conn:
            conn.executemany(
                """
                DELETE FROM embedding_cache
                WHERE tenant = ? AND provider = ? AND model = ? AND provider_key = ? AND hash = ?
                """,
                [(*self._key, h) for h in hashes],
            )

    def _prune(self, conn: sqlite3.Connection) -> None:
        if self.max_entries <= 0:
            return
        total = conn.execute(
            "SELECT COUNT(*) FROM embedding_cache WHERE tenant = ?", (self.tenant,)
        ).fetchone()[0]
        excess = total - self.max_entries
        if excess <= 0:
            return
        with conn:
            conn.execute(
                """
                DELETE FROM embedding_cache WHERE rowid IN (
                    SELECT rowid FROM embedding_cache WHERE tenant = ?
                    ORDER BY updated_at ASC, rowid ASC LIMIT ?
                )
                """,
                (self.tenant, excess),
            )
        logger.debug("pruned %d embedding cache entries", excess)
