"""Index sweep: files and session transcripts into generation-tagged chunks.

A sweep runs in two phases per document. ``prepare`` chunks the content and
embeds it with no connection held, because provider calls can take minutes.
``write`` then replaces the document's rows in one short transaction.

The generation is derived from everything that changes the vectors or the
chunk boundaries, so re-running a sweep over unchanged input reproduces the
same ids and the same generation.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field

from memsearch.config import ResolvedConfig
from memsearch.db.connection import ConnectionPool
from memsearch.db.models import Chunk, FileEntry, IndexMeta, StoredChunk
from memsearch.db.repository import SESSIONS_SOURCE, Repository, now_ms
from memsearch.db.vectors import ensure_vec_table
from memsearch.embeddings.embedder import Embedder
from memsearch.errors import EmbeddingError
from memsearch.files import (
    NOTES_SOURCE,
    WORKSPACE_SOURCE,
    classify_source,
    hash_text,
    is_extra_path,
    normalize_extra_paths,
    normalize_newlines,
    session_path_for_key,
)
from memsearch.ingest.markdown import MarkdownChunker
from memsearch.search.context import OperationContext

logger = logging.getLogger(__name__)

FILE_SOURCES: tuple[str, ...] = (NOTES_SOURCE, WORKSPACE_SOURCE)

_WHITESPACE_RE = re.compile(r"\s+")
_SESSION_ROLES = {"user": "User", "assistant": "Assistant"}


# ------------------------------------------------------------------
# Generation + chunk ids
# ------------------------------------------------------------------


def derive_generation(
    provider: str, model: str, provider_key: str, chunk_tokens: int, chunk_overlap: int
) -> str:
    """Deterministic index generation for one provider and chunking setup.

    Example:
        derive_generation("openai", "text-embedding-3-small", key, 400, 80) -> "3f9a0c1d2b4e5f60"
    """
    payload = json.dumps(
        [provider, model, provider_key, chunk_tokens, chunk_overlap], separators=(",", ":")
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def build_chunk_id(
    generation: str, tenant: str, source: str, path: str, chunk: Chunk
) -> str:
    payload = "\x00".join(
        [tenant, source, path, str(chunk.start_line), str(chunk.end_line), chunk.hash]
    )
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return f"{generation}:{digest}"


def needs_full_reindex(
    meta: IndexMeta | None,
    *,
    provider: str,
    model: str,
    provider_key: str,
    chunk_tokens: int,
    chunk_overlap: int,
) -> bool:
    """True when the stored index was built with different settings (or never)."""
    if meta is None or not meta.index_generation:
        return True
    return (
        meta.provider != provider
        or meta.model != model
        or meta.provider_key != provider_key
        or meta.chunk_tokens != chunk_tokens
        or meta.chunk_overlap != chunk_overlap
    )


def normalize_session_text(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def session_line(role: str, text: str) -> str | None:
    """Render one transcript message as ``User: ...`` / ``Assistant: ...``.

    Returns None for other roles and for messages without text.
    """
    label = _SESSION_ROLES.get((role or "").strip().lower())
    body = normalize_session_text(text)
    if label is None or not body:
        return None
    return f"{label}: {body}"


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


@dataclass
class PreparedContent:
    path: str
    source: str
    generation: str
    chunks: list[Chunk]
    embeddings: list[list[float]]
    doc_hash: str = ""


@dataclass
class SweepResult:
    generation: str
    full: bool
    indexed: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    sessions_indexed: list[str] = field(default_factory=list)
    vector_dims: int = 0
    vector_error: str | None = None


# ------------------------------------------------------------------
# Indexer
# ------------------------------------------------------------------


class Indexer:
    """Runs sweeps for one Manager.

    Args:
        pool: Connection pool of the deployment database.
        tenant: Tenant every row is scoped by.
        cfg: Resolved memory search configuration.
        embedder: Embedder for the resolved provider.
        fts_available: Whether chunks_fts exists and should be mirrored.
        vector_dims: Known vector dimension (0 = learn from the first embedding).
    """

    def __init__(
        self,
        pool: ConnectionPool,
        tenant: str,
        cfg: ResolvedConfig,
        embedder: Embedder,
        *,
        fts_available: bool = True,
        vector_dims: int = 0,
    ) -> None:
        self._pool = pool
        self.tenant = tenant
        self.cfg = cfg
        self.embedder = embedder
        self.fts_available = fts_available
        self.vector_dims = vector_dims or cfg.store.vector.dims
        self.vector_error: str | None = None
        self._chunker = MarkdownChunker(cfg.chunking.tokens, cfg.chunking.overlap)
        self._extra_paths = normalize_extra_paths(cfg.extra_paths)

    @property
    def provider(self) -> str:
        return self.embedder.provider.id

    @property
    def model(self) -> str:
        return self.embedder.provider.model

    @property
    def provider_key(self) -> str:
        return self.embedder.provider.provider_key

    @property
    def generation(self) -> str:
        return derive_generation(
            self.provider,
            self.model,
            self.provider_key,
            self.cfg.chunking.tokens,
            self.cfg.chunking.overlap,
        )

    @property
    def vectors_enabled(self) -> bool:
        return self.cfg.store.vector.enabled

    @property
    def _vec_rows(self) -> bool:
        """Whether vector tables can be touched on this database."""
        return self._pool.vec_error is None

    @property
    def sessions_enabled(self) -> bool:
        return self.cfg.experimental.session_memory and self.cfg.has_source(SESSIONS_SOURCE)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def needs_full(self) -> bool:
        with self._pool.acquire() as conn:
            meta = Repository(conn, self.tenant).get_meta()
        return needs_full_reindex(
            meta,
            provider=self.provider,
            model=self.model,
            provider_key=self.provider_key,
            chunk_tokens=self.cfg.chunking.tokens,
            chunk_overlap=self.cfg.chunking.overlap,
        )

    def sync(
        self,
        ctx: OperationContext,
        *,
        session_key: str = "",
        force: bool = False,
        include_sessions: bool = True,
    ) -> SweepResult:
        """Run one sweep and write meta on success.

        Args:
            ctx: Operation context bounding provider calls and queries.
            session_key: Session that triggered the sweep, if any.
            force: Rebuild every document regardless of timestamps.
            include_sessions: Sweep transcripts too (when sessions are enabled).

        Raises:
            EmbeddingError: If a file cannot be embedded.
            OperationCancelled: If *ctx* ends mid-sweep.
        """
        generation = self.generation
        full = force or self.needs_full()
        if full:
            self.vector_dims = self.cfg.store.vector.dims
            self.vector_error = None
            self.embedder.vector_dims = self.vector_dims
        elif self.vector_dims == 0:
            with self._pool.acquire(ctx) as conn:
                meta = Repository(conn, self.tenant).get_meta()
            if meta is not None:
                self.vector_dims = meta.vector_dims
        if self.vector_dims:
            self.embedder.vector_dims = self.vector_dims
        result = SweepResult(generation=generation, full=full)
        logger.debug(
            "memory sync: start tenant=%s generation=%s full=%s session=%s",
            self.tenant,
            generation,
            full,
            session_key or "-",
        )

        self._sync_files(ctx, generation, full, result)
        if include_sessions and self.sessions_enabled:
            self._sync_sessions(ctx, generation, full, session_key, result)

        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            if full:
                removed = repo.delete_other_generations(
                    generation, fts=self.fts_available, vec=self._vec_rows
                )
                if removed:
                    logger.debug("memory sync: dropped %d chunks of older generations", removed)
            repo.put_meta(
                IndexMeta(
                    provider=self.provider,
                    model=self.model,
                    provider_key=self.provider_key,
                    chunk_tokens=self.cfg.chunking.tokens,
                    chunk_overlap=self.cfg.chunking.overlap,
                    index_generation=generation,
                    vector_dims=self.vector_dims,
                    updated_at=now_ms(),
                )
            )
        result.vector_dims = self.vector_dims
        result.vector_error = self.vector_error
        logger.debug(
            "memory sync: done indexed=%d removed=%d sessions=%d",
            len(result.indexed),
            len(result.removed),
            len(result.sessions_indexed),
        )
        return result

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _active_files(self, entries: list[FileEntry]) -> dict[str, dict[str, FileEntry]]:
        active: dict[str, dict[str, FileEntry]] = {}
        for entry in entries:
            path = entry.path.strip()
            if not path or not path.lower().endswith(".md"):
                continue
            source = classify_source(path)
            if not self.cfg.has_source(source) and not is_extra_path(path, self._extra_paths):
                continue
            active.setdefault(source, {})[path] = entry
        for source in FILE_SOURCES:
            if self.cfg.has_source(source):
                active.setdefault(source, {})
        return active

    def _sync_files(
        self, ctx: OperationContext, generation: str, full: bool, result: SweepResult
    ) -> None:
        with self._pool.acquire(ctx) as conn:
            entries = Repository(conn, self.tenant).list_files()
        active = self._active_files(entries)
        logger.debug(
            "memory sync: indexing %d files", sum(len(paths) for paths in active.values())
        )

        for source in FILE_SOURCES:
            for entry in active.get(source, {}).values():
                ctx.check()
                if not full and not self._file_changed(ctx, entry, source, generation):
                    continue
                prepared = self.prepare(ctx, entry.path, source, entry.content, generation)
                self.write(ctx, prepared, entry.path, source)
                result.indexed.append(entry.path)

        for source in FILE_SOURCES:
            if source in active:
                result.removed.extend(self._remove_stale(ctx, source, set(active[source])))

    def _file_changed(
        self, ctx: OperationContext, entry: FileEntry, source: str, generation: str
    ) -> bool:
        with self._pool.acquire(ctx) as conn:
            indexed = Repository(conn, self.tenant).indexed_doc_hash(
                entry.path, source, self.model, generation
            )
        return indexed != hash_text(entry.content)

    def _remove_stale(self, ctx: OperationContext, source: str, keep: set[str]) -> list[str]:
        removed: list[str] = []
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            for path in sorted(repo.indexed_paths(source) - keep):
                repo.delete_path_chunks(
                    path, source, fts=self.fts_available, vec=self._vec_rows
                )
                removed.append(path)
        if removed:
            logger.debug("memory sync: removed %d stale %s paths", len(removed), source)
        return removed

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _sync_sessions(
        self,
        ctx: OperationContext,
        generation: str,
        full: bool,
        session_key: str,
        result: SweepResult,
    ) -> None:
        thresholds = self.cfg.sync.sessions
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            keys = repo.session_keys()
            index_all = full or repo.count_session_states() == 0
        logger.debug("memory sync: indexing %d sessions (all=%s)", len(keys), index_all)

        for key in keys:
            ctx.check()
            with self._pool.acquire(ctx) as conn:
                repo = Repository(conn, self.tenant)
                state = repo.get_session_state(key)
                previous_rowid = state.last_rowid
                max_rowid = repo.max_session_rowid(key)
                reset = max_rowid < state.last_rowid
                if reset:
                    state.last_rowid = state.pending_bytes = state.pending_messages = 0
                delta = repo.session_messages(key, state.last_rowid)

            delta_lines = [line for m in delta if (line := session_line(m.role, m.text))]
            state.last_rowid = max_rowid
            state.pending_bytes += sum(len(line.encode("utf-8")) + 1 for line in delta_lines)
            state.pending_messages += len(delta_lines)

            should_index = index_all or reset or (key == session_key and previous_rowid == 0)
            if not should_index:
                should_index = _threshold_hit(
                    state.pending_bytes, thresholds.delta_bytes
                ) or _threshold_hit(state.pending_messages, thresholds.delta_messages)

            if should_index:
                try:
                    if self._index_session(ctx, key, generation, force=index_all or reset):
                        result.sessions_indexed.append(key)
                except EmbeddingError as exc:
                    logger.warning("memory session %s index failed: %s", key, exc)
                else:
                    state.pending_bytes = state.pending_messages = 0

            with self._pool.acquire(ctx) as conn:
                Repository(conn, self.tenant).put_session_state(state)

        self._remove_stale_sessions(ctx, set(keys))

    def _index_session(
        self, ctx: OperationContext, key: str, generation: str, *, force: bool
    ) -> bool:
        """Rebuild the transcript document for *key*. Returns True if re-indexed."""
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            messages = repo.session_messages(key)
            existing = repo.get_session_file(key)
        lines = [line for m in messages if (line := session_line(m.role, m.text))]
        path = session_path_for_key(key)

        if not lines:
            self._drop_session(ctx, key, existing.path if existing else path)
            return False

        content = "\n".join(lines)
        digest = hash_text(content)
        if not force and existing is not None and existing.hash == digest:
            return False

        prepared = self.prepare(ctx, path, SESSIONS_SOURCE, content, generation)
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            if existing is not None and existing.path != path:
                repo.delete_path_chunks(
                    existing.path, SESSIONS_SOURCE, fts=self.fts_available, vec=self._vec_rows
                )
            repo.put_session_file(
                key,
                FileEntry(
                    path=path,
                    content=content,
                    hash=digest,
                    source=SESSIONS_SOURCE,
                    updated_at=now_ms(),
                ),
            )
        self.write(ctx, prepared, path, SESSIONS_SOURCE)
        return True

    def _drop_session(self, ctx: OperationContext, key: str, path: str) -> None:
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            repo.delete_path_chunks(
                path, SESSIONS_SOURCE, fts=self.fts_available, vec=self._vec_rows
            )
            repo.delete_session_file(key)

    def _remove_stale_sessions(self, ctx: OperationContext, active: set[str]) -> None:
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            for key, path in repo.list_session_files().items():
                if key in active:
                    continue
                repo.delete_path_chunks(
                    path, SESSIONS_SOURCE, fts=self.fts_available, vec=self._vec_rows
                )
                repo.delete_session_file(key)
                repo.delete_session_state(key)

    def reset_session(self, session_key: str) -> None:
        """Forget the delta bookkeeping for *session_key* so it is rebuilt next sweep."""
        with self._pool.acquire() as conn:
            Repository(conn, self.tenant).delete_session_state(session_key)

    # ------------------------------------------------------------------
    # Prepare / write
    # ------------------------------------------------------------------

    def prepare(
        self, ctx: OperationContext, path: str, source: str, content: str, generation: str
    ) -> PreparedContent:
        """Chunk and embed *content* without touching the database."""
        chunks = self._chunker.chunk(normalize_newlines(content))
        if self.vectors_enabled and chunks:
            embeddings = self.embedder.embed_chunks(chunks, path, source, ctx)
        else:
            embeddings = [[] for _ in chunks]
        return PreparedContent(path, source, generation, chunks, embeddings, hash_text(content))

    def write(self, ctx: OperationContext, prepared: PreparedContent, path: str, source: str) -> None:
        """Replace the stored chunks of (*path*, *source*) with *prepared*.

        The vector table of every embedding width is ensured on the writing
        connection before the rows go in.
        """
        now = now_ms()
        stored: list[StoredChunk] = []
        widths: set[int] = set()
        for chunk, embedding in zip(prepared.chunks, prepared.embeddings):
            if embedding and self.vectors_enabled:
                self._learn_dims(len(embedding))
                widths.add(len(embedding))
            stored.append(
                StoredChunk(
                    id=build_chunk_id(prepared.generation, self.tenant, source, path, chunk),
                    path=path,
                    source=source,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    text=chunk.text,
                    hash=chunk.hash,
                    model=self.model,
                    generation=prepared.generation,
                    embedding=json.dumps(embedding),
                    updated_at=now,
                    doc_hash=prepared.doc_hash,
                )
            )
        with self._pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            if not stored:
                repo.delete_path_chunks(path, source, fts=self.fts_available, vec=self._vec_rows)
                return
            vec = self._vec_rows
            if widths:
                vec = vec and self._ensure_vec_tables(conn, widths)
            repo.write_chunks(path, source, stored, fts=self.fts_available, vec=vec)

    def _learn_dims(self, dims: int) -> None:
        if self.vector_dims == 0:
            self.vector_dims = dims
            self.embedder.vector_dims = dims

    def _ensure_vec_tables(self, conn: sqlite3.Connection, widths: set[int]) -> bool:
        if self.vector_error is not None:
            return False
        try:
            for dims in sorted(widths):
                ensure_vec_table(conn, dims)
        except (sqlite3.Error, ValueError) as exc:
            self.vector_error = str(exc)
            logger.debug("memory vector table unavailable: %s", exc)
            return False
        return True


def _threshold_hit(pending: int, threshold: int) -> bool:
    if threshold <= 0:
        return pending > 0
    return pending >= threshold
