"""SearchManager: one tenant's memory index, search and sync triggers.

Search runs the degradation cascade per signal:

  keyword:  FTS5 bm25  ->  substring scan over recent chunks  ->  absent
  vector:   sqlite-vec vec_distance_cosine  ->  in-process cosine  ->  absent

and combines whichever signals succeeded. Only a semantic-only query fails
when the query embedding fails; every other degradation is logged at DEBUG.

Locking: ``_state_lock`` guards in-memory scalars only and is never held
across a database or provider call. ``_sync_lock`` serialises sweeps.
"""

from __future__ import annotations

import logging
import math
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from memsearch.config import VALID_SOURCES, ResolvedConfig
from memsearch.db.connection import ConnectionPool
from memsearch.db.fulltext import build_fts_query, query_tokens
from memsearch.db.repository import Repository
from memsearch.db.schema import initialize
from memsearch.db.vectors import probe_vec_table, serialize_vector, vec_table_exists, vec_table_name
from memsearch.embeddings.batch import BATCH_FAILURE_LIMIT, BatchState, OpenAIBatchRunner
from memsearch.embeddings.cache import EmbeddingCache
from memsearch.embeddings.embedder import Embedder
from memsearch.embeddings.provider import EmbeddingProvider, ProviderStatus
from memsearch.errors import DocumentNotFound, EmbeddingError, OperationCancelled
from memsearch.files import (
    DEFAULT_MEMORY_CONTENT,
    DEFAULT_MEMORY_FILE,
    NOTES_SOURCE,
    FileStore,
    is_allowed_memory_path,
    normalize_newlines,
    normalize_path,
)
from memsearch.ingest.indexer import Indexer, SweepResult
from memsearch.search.compose import clamp_injected_chars, filter_and_limit, truncate_snippet
from memsearch.search.context import OperationContext, ensure_context
from memsearch.search.hybrid import (
    KeywordHit,
    SearchResult,
    VectorHit,
    cosine_similarity,
    keyword_hits_to_results,
    merge_hybrid_results,
    rank_to_score,
    vector_hits_to_results,
)
from memsearch.search.status import (
    BatchStatus,
    CacheStatus,
    FtsStatus,
    SearchStatus,
    SourceCount,
    VectorStatus,
)

logger = logging.getLogger(__name__)

SEARCH_MODES: tuple[str, ...] = ("auto", "semantic", "keyword", "hybrid", "list")
DEFAULT_MAX_RESULTS = 6
MAX_CANDIDATES = 200
LIST_MAX_RESULTS = 200
SCAN_MIN_ROWS = 200
SCAN_MAX_ROWS = 1000
SESSION_DEBOUNCE_SECONDS = 5.0
DEFAULT_WATCH_DEBOUNCE_SECONDS = 1.5


@dataclass
class SearchOptions:
    """Per-query options. Unset values fall back to the resolved config.

    Attributes:
        mode: auto | semantic | keyword | hybrid | list ("" means auto).
        max_results: Result cap; <= 0 uses ``query.max_results``.
        min_score: Score floor; NaN uses ``query.min_score``.
        sources: Subset of notes/workspace/sessions; empty uses the config.
        path_prefix: Restrict results to this path or directory.
        session_key: Session issuing the query (warms that session).
    """

    mode: str = "auto"
    max_results: int = 0
    min_score: float = math.nan
    sources: list[str] = field(default_factory=list)
    path_prefix: str = ""
    session_key: str = ""


def normalize_mode(raw: str) -> str:
    mode = (raw or "").strip().lower()
    if not mode or mode not in SEARCH_MODES:
        return "auto"
    return mode


def normalize_search_sources(requested: list[str], configured: tuple[str, ...]) -> list[str]:
    out: list[str] = []
    for raw in requested or []:
        name = str(raw).strip().lower()
        if name == "memory":
            name = NOTES_SOURCE
        if name in VALID_SOURCES and name not in out:
            out.append(name)
    return out or list(configured)


def normalize_path_prefix(raw: str) -> str:
    if not (raw or "").strip():
        return ""
    try:
        return normalize_path(raw)
    except ValueError:
        logger.debug("ignoring invalid path prefix %r", raw)
        return ""


class SearchManager:
    """Serves search, read and sync for one (tenant, config) pair.

    Construct through the registry (memsearch.search.registry) so one instance
    is shared by every caller with the same tenant and config.

    Args:
        tenant: Tenant identity.
        cfg: Resolved memory search config.
        pool: Connection pool of the deployment database.
        provider: Resolved embedding provider.
        provider_status: How the provider was chosen.
        db_path: Database path, reported by status.
        workspace_dir: Workspace directory, reported by status.
    """

    def __init__(
        self,
        tenant: str,
        cfg: ResolvedConfig,
        pool: ConnectionPool,
        provider: EmbeddingProvider,
        provider_status: ProviderStatus,
        *,
        db_path: str = "",
        workspace_dir: str = "",
    ) -> None:
        self.tenant = tenant
        self.cfg = cfg
        self.pool = pool
        self.provider = provider
        self.provider_status = provider_status
        self.db_path = db_path
        self.workspace_dir = workspace_dir
        self.files = FileStore(pool, tenant)

        self._state_lock = threading.Lock()
        self._sync_lock = threading.Lock()
        self._closed = False
        self._dirty = False
        self._sessions_dirty = False
        self._dirty_seq = 0
        self._sessions_seq = 0
        self._resync = False
        self._warm_sessions: set[str] = set()
        self._watch_timer: threading.Timer | None = None
        self._session_timer: threading.Timer | None = None
        self._pending: Future | None = None
        self._stop = threading.Event()
        self._interval_thread: threading.Thread | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="memsearch-sync")

        with pool.acquire() as conn:
            schema = initialize(conn, fts=cfg.store.fts.enabled)
        self._fts_available = schema.fts_available
        self._fts_error = schema.fts_error
        self._vector_available: bool | None = None
        self._vector_error: str | None = pool.vec_error

        self.cache = EmbeddingCache(
            pool,
            tenant,
            provider.id,
            provider.model,
            provider.provider_key,
            enabled=cfg.cache.enabled,
            max_entries=cfg.cache.max_entries,
        )
        self.batch_state = BatchState(enabled=cfg.remote.batch.enabled and provider.supports_batch)
        runner = OpenAIBatchRunner(provider, cfg.remote.batch, tenant) if provider.supports_batch else None
        self.embedder = Embedder(provider, self.cache, self.batch_state, runner)

        with pool.acquire() as conn:
            meta = Repository(conn, tenant).get_meta()
        self.indexer = Indexer(
            pool,
            tenant,
            cfg,
            self.embedder,
            fts_available=self._fts_available,
        )
        if meta is not None and meta.index_generation == self.indexer.generation and meta.vector_dims:
            self.indexer.vector_dims = meta.vector_dims
        if self.indexer.vector_dims:
            self.embedder.vector_dims = self.indexer.vector_dims

        if cfg.has_source(NOTES_SOURCE):
            self.files.write_if_missing(DEFAULT_MEMORY_FILE, DEFAULT_MEMORY_CONTENT)
        self._dirty = self.indexer.needs_full()
        self._sessions_dirty = self.indexer.sessions_enabled
        self._start_interval()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def dirty(self) -> bool:
        with self._state_lock:
            return self._dirty or self._sessions_dirty

    @property
    def generation(self) -> str:
        return self.indexer.generation

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        ctx: OperationContext | None = None,
    ) -> list[SearchResult]:
        """Rank memory chunks for *query*.

        Raises:
            EmbeddingError: Only in semantic mode, when the query cannot be embedded.
            OperationCancelled: If *ctx* is cancelled or past its deadline.
        """
        options = options or SearchOptions()
        ctx = ensure_context(ctx)
        if options.session_key:
            self.warm_session(options.session_key)
        if self.cfg.sync.on_search and self.dirty:
            self._schedule_sync("search", session_key=options.session_key)

        mode = normalize_mode(options.mode)
        cleaned = (query or "").strip()
        if not cleaned and mode != "list":
            return []

        max_results = options.max_results if options.max_results > 0 else self.cfg.query.max_results
        if max_results <= 0:
            max_results = DEFAULT_MAX_RESULTS
        min_score = self.cfg.query.min_score if math.isnan(options.min_score) else options.min_score
        candidates = min(
            max(max_results * self.cfg.query.hybrid.candidate_multiplier, 1), MAX_CANDIDATES
        )
        sources = normalize_search_sources(options.sources, self.cfg.sources)
        prefix = normalize_path_prefix(options.path_prefix)
        generation = self.generation

        if mode == "list":
            results = self._list_recent(ctx, sources, prefix, max_results)
            return self._compose(ctx, results, min_score, max_results)

        keyword: list[KeywordHit] | None = None
        vector: list[VectorHit] | None = None
        if mode in ("auto", "keyword", "hybrid"):
            keyword = self._keyword_signal(ctx, cleaned, generation, sources, prefix, candidates)
        if mode in ("auto", "semantic", "hybrid") and self.cfg.store.vector.enabled:
            vector = self._vector_signal(
                ctx, cleaned, generation, sources, prefix, candidates, strict=mode == "semantic"
            )
        ctx.check()

        if mode == "semantic":
            results = vector_hits_to_results(vector or [])
        elif mode == "keyword":
            results = keyword_hits_to_results(keyword or [])
        elif self.cfg.query.hybrid.enabled and vector is not None and keyword is not None:
            results = merge_hybrid_results(
                vector,
                keyword,
                self.cfg.query.hybrid.vector_weight,
                self.cfg.query.hybrid.text_weight,
            )
        elif vector is not None:
            results = vector_hits_to_results(vector)
        elif keyword is not None:
            results = keyword_hits_to_results(keyword)
        else:
            results = []
        return self._compose(ctx, results, min_score, max_results)

    def _compose(
        self,
        ctx: OperationContext,
        results: list[SearchResult],
        min_score: float,
        max_results: int,
    ) -> list[SearchResult]:
        limited = filter_and_limit(results, min_score, max_results)
        clamped = clamp_injected_chars(limited, self.cfg.query.max_injected_chars)
        ctx.check()
        return clamped

    def _list_recent(
        self, ctx: OperationContext, sources: list[str], prefix: str, limit: int
    ) -> list[SearchResult]:
        limit = min(limit if limit > 0 else DEFAULT_MAX_RESULTS, LIST_MAX_RESULTS)
        with self.pool.acquire(ctx) as conn:
            entries = Repository(conn, self.tenant).recent_documents(sources, prefix, limit)
        return [
            SearchResult(
                path=entry.path,
                start_line=None,
                end_line=None,
                score=1.0,
                snippet=truncate_snippet(normalize_newlines(entry.content)),
                source=entry.source,
            )
            for entry in entries
        ]

    # ------------------------------------------------------------------
    # Keyword signal
    # ------------------------------------------------------------------

    def _keyword_signal(
        self,
        ctx: OperationContext,
        query: str,
        generation: str,
        sources: list[str],
        prefix: str,
        candidates: int,
    ) -> list[KeywordHit] | None:
        """Keyword hits, or None when neither FTS nor the scan could run."""
        with self._state_lock:
            fts_ok = self._fts_available
        if fts_ok:
            try:
                return self._search_fts(ctx, query, generation, sources, prefix, candidates)
            except sqlite3.Error as exc:
                ctx.check()
                logger.debug("memory fts search failed, falling back to scan: %s", exc)
        try:
            return self._search_scan(ctx, query, generation, sources, prefix, candidates)
        except sqlite3.Error as exc:
            ctx.check()
            logger.debug("memory keyword scan failed: %s", exc)
            return None

    def _search_fts(
        self,
        ctx: OperationContext,
        query: str,
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[KeywordHit]:
        match = build_fts_query(query)
        if match is None:
            return []
        with self.pool.acquire(ctx) as conn:
            rows = Repository(conn, self.tenant).search_fts(match, generation, sources, prefix, limit)
        return [
            KeywordHit(
                id=chunk.id,
                path=chunk.path,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                source=chunk.source,
                snippet=truncate_snippet(chunk.text),
                text_score=rank_to_score(rank),
            )
            for chunk, rank in rows
        ]

    def _search_scan(
        self,
        ctx: OperationContext,
        query: str,
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[KeywordHit]:
        tokens = list(dict.fromkeys(t.lower() for t in query_tokens(query)))
        if not tokens or limit <= 0:
            return []
        scan_limit = min(max(limit * 10, SCAN_MIN_ROWS), SCAN_MAX_ROWS)
        with self.pool.acquire(ctx) as conn:
            chunks = Repository(conn, self.tenant).scan_chunks(
                tokens, generation, sources, prefix, scan_limit
            )
        hits: list[KeywordHit] = []
        for chunk in chunks:
            lower = chunk.text.lower()
            matched = sum(1 for token in tokens if token in lower)
            if matched == 0:
                continue
            hits.append(
                KeywordHit(
                    id=chunk.id,
                    path=chunk.path,
                    start_line=chunk.start_line,
                    end_line=chunk.end_line,
                    source=chunk.source,
                    snippet=truncate_snippet(chunk.text),
                    text_score=matched / len(tokens),
                )
            )
        hits.sort(key=lambda h: h.text_score, reverse=True)
        return hits[:limit]

    # ------------------------------------------------------------------
    # Vector signal
    # ------------------------------------------------------------------

    def _vector_signal(
        self,
        ctx: OperationContext,
        query: str,
        generation: str,
        sources: list[str],
        prefix: str,
        candidates: int,
        *,
        strict: bool,
    ) -> list[VectorHit] | None:
        """Vector hits, or None when the signal is absent.

        Raises:
            EmbeddingError: When *strict* and the query embedding fails.
        """
        try:
            query_vec = self.embedder.embed_query(query, ctx)
        except EmbeddingError as exc:
            if strict:
                raise
            logger.debug("memory query embedding failed, continuing without vectors: %s", exc)
            return None
        if not query_vec or not any(query_vec):
            return None
        try:
            return self._search_vec(ctx, query_vec, generation, sources, prefix, candidates)
        except sqlite3.Error as exc:
            ctx.check()
            self._record_vector_error(str(exc))
            logger.debug("memory vec search failed, using cosine scan: %s", exc)
        try:
            return self._search_cosine(ctx, query_vec, generation, sources, prefix, candidates)
        except sqlite3.Error as exc:
            ctx.check()
            logger.debug("memory cosine scan failed: %s", exc)
            return None

    def _search_vec(
        self,
        ctx: OperationContext,
        query_vec: list[float],
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[VectorHit]:
        if self.pool.vec_error:
            raise sqlite3.OperationalError(self.pool.vec_error)
        with self.pool.acquire(ctx) as conn:
            dims = len(query_vec)
            if not vec_table_exists(conn, dims):
                raise sqlite3.OperationalError(f"no such table: {vec_table_name(dims)}")
            rows = Repository(conn, self.tenant).search_vec(
                serialize_vector(query_vec), dims, generation, sources, prefix, limit
            )
        with self._state_lock:
            self._vector_available = True
        return [
            VectorHit(
                id=chunk.id,
                path=chunk.path,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                source=chunk.source,
                snippet=truncate_snippet(chunk.text),
                vector_score=1 - distance,
            )
            for chunk, distance in rows
        ]

    def _search_cosine(
        self,
        ctx: OperationContext,
        query_vec: list[float],
        generation: str,
        sources: list[str],
        prefix: str,
        limit: int,
    ) -> list[VectorHit]:
        hits: list[VectorHit] = []
        with self.pool.acquire(ctx) as conn:
            for chunk in Repository(conn, self.tenant).iter_embedded_chunks(
                generation, sources, prefix
            ):
                score = cosine_similarity(query_vec, chunk.embedding_list)
                hits.append(
                    VectorHit(
                        id=chunk.id,
                        path=chunk.path,
                        start_line=chunk.start_line,
                        end_line=chunk.end_line,
                        source=chunk.source,
                        snippet=truncate_snippet(chunk.text),
                        vector_score=score,
                    )
                )
        hits.sort(key=lambda h: h.vector_score, reverse=True)
        return hits[:limit]

    def _record_vector_error(self, message: str) -> None:
        with self._state_lock:
            self._vector_error = message
            self._vector_available = False

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def read_file(
        self,
        path: str,
        from_line: int | None = None,
        lines: int | None = None,
        ctx: OperationContext | None = None,
    ) -> dict:
        """Return ``{"path", "text"}`` for a memory document, optionally sliced.

        Raises:
            ValueError: If *path* is not a readable memory path.
            DocumentNotFound: If the file does not exist.
        """
        ctx = ensure_context(ctx)
        try:
            normalized = normalize_path(path)
        except ValueError:
            raise ValueError("path required") from None
        if not normalized.lower().endswith(".md") or not is_allowed_memory_path(
            normalized, list(self.cfg.extra_paths)
        ):
            raise ValueError("path required")

        with self.pool.acquire(ctx) as conn:
            entry = Repository(conn, self.tenant).get_file(normalized)
        if entry is None:
            raise DocumentNotFound(f"file not found: {normalized}")

        content = normalize_newlines(entry.content)
        if from_line is None and lines is None:
            return {"path": entry.path, "text": content}

        all_lines = content.split("\n")
        start = from_line if from_line is not None and from_line > 1 else 1
        count = len(all_lines)
        if lines is not None:
            count = lines if lines > 0 else 1
        if start > len(all_lines):
            return {"path": entry.path, "text": ""}
        end = min(start - 1 + count, len(all_lines))
        return {"path": entry.path, "text": "\n".join(all_lines[start - 1 : end])}

    # ------------------------------------------------------------------
    # Status + probes
    # ------------------------------------------------------------------

    def status(self, deep: bool = False, ctx: OperationContext | None = None) -> SearchStatus:
        """Snapshot counts, availability and batch health.

        With *deep*, also probe the vector table and the embedding provider.
        """
        ctx = ensure_context(ctx)
        if deep:
            self.probe_vector_availability(ctx)
            embedding_ok, embedding_error = self.probe_embedding_availability(ctx)
        else:
            embedding_ok, embedding_error = None, None

        generation = self.generation
        with self.pool.acquire(ctx) as conn:
            repo = Repository(conn, self.tenant)
            file_counts = repo.count_files_by_source()
            chunk_counts = repo.count_chunks_by_source(generation)
        cache_entries = self.cache.count() if self.cfg.cache.enabled else 0

        source_counts = [
            SourceCount(source, file_counts.get(source, 0), chunk_counts.get(source, 0))
            for source in self.cfg.sources
        ]
        snapshot = self.batch_state.snapshot()
        batch_cfg = self.cfg.remote.batch
        with self._state_lock:
            dirty = self._dirty or self._sessions_dirty
            fts = FtsStatus(
                enabled=self.cfg.store.fts.enabled,
                available=self._fts_available,
                error=self._fts_error,
            )
            vector = VectorStatus(
                enabled=self.cfg.store.vector.enabled,
                available=self._vector_available,
                error=self._vector_error or self.indexer.vector_error,
                dims=self.indexer.vector_dims,
            )
        fallback = None
        if self.provider_status.fallback is not None:
            fallback = {
                "from": self.provider_status.fallback.from_provider,
                "reason": self.provider_status.fallback.reason,
            }
        return SearchStatus(
            provider=self.provider_status.provider,
            model=self.provider_status.model,
            requested_provider=self.provider_status.requested,
            files=sum(c.files for c in source_counts),
            chunks=sum(c.chunks for c in source_counts),
            dirty=dirty,
            workspace_dir=self.workspace_dir,
            db_path=self.db_path,
            sources=list(self.cfg.sources),
            extra_paths=list(self.cfg.extra_paths),
            source_counts=source_counts,
            cache=CacheStatus(self.cfg.cache.enabled, cache_entries, self.cfg.cache.max_entries),
            fts=fts,
            vector=vector,
            batch=BatchStatus(
                enabled=snapshot.enabled,
                failures=snapshot.failures,
                limit=BATCH_FAILURE_LIMIT,
                wait=batch_cfg.wait,
                concurrency=batch_cfg.concurrency,
                poll_interval_ms=batch_cfg.poll_interval_ms,
                timeout_ms=batch_cfg.timeout_minutes * 60 * 1000,
                last_error=snapshot.last_error or None,
                last_provider=snapshot.last_provider or None,
            ),
            fallback=fallback,
            generation=generation,
            embedding_ok=embedding_ok,
            embedding_error=embedding_error,
        )

    def probe_vector_availability(self, ctx: OperationContext | None = None) -> bool:
        """Borrow a connection and touch the vector tables. Records the outcome."""
        if not self.cfg.store.vector.enabled:
            return False
        if self.pool.vec_error:
            self._record_vector_error(self.pool.vec_error)
            return False
        ctx = ensure_context(ctx)
        try:
            with self.pool.acquire(ctx) as conn:
                probe_vec_table(conn)
        except sqlite3.Error as exc:
            ctx.check()
            self._record_vector_error(str(exc))
            return False
        with self._state_lock:
            self._vector_available = True
            self._vector_error = None
        return True

    def probe_embedding_availability(
        self, ctx: OperationContext | None = None
    ) -> tuple[bool, str | None]:
        """Embed "ping" through the retrying path. Returns (ok, error)."""
        ctx = ensure_context(ctx)
        try:
            self.embedder.embed_texts(["ping"], ctx)
        except EmbeddingError as exc:
            return False, str(exc)
        return True, None

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(
        self,
        session_key: str = "",
        force: bool = False,
        ctx: OperationContext | None = None,
    ) -> SweepResult:
        """Run one sweep now, on the calling thread.

        Dirty flags are cleared only when the sweep completes and no change
        was notified while it ran; any exception propagates and leaves them set.
        """
        ctx = ctx if ctx is not None else OperationContext.background()
        with self._sync_lock:
            with self._state_lock:
                sessions_requested = self._sessions_dirty or force
                dirty_seq = self._dirty_seq
                sessions_seq = self._sessions_seq
            result = self.indexer.sync(
                ctx,
                session_key=session_key,
                force=force,
                include_sessions=sessions_requested or bool(session_key),
            )
            with self._state_lock:
                if self._dirty_seq == dirty_seq:
                    self._dirty = False
                if (
                    self.indexer.sessions_enabled
                    and (sessions_requested or session_key)
                    and self._sessions_seq == sessions_seq
                ):
                    self._sessions_dirty = False
                if result.vector_error:
                    self._vector_error = result.vector_error
                    self._vector_available = False
        return result

    def reindex(self, ctx: OperationContext | None = None) -> SweepResult:
        return self.sync(force=True, ctx=ctx)

    def _run_background_sync(self, reason: str, session_key: str = "") -> None:
        try:
            self.sync(session_key=session_key)
        except OperationCancelled:
            logger.debug("memory sync cancelled (%s)", reason)
        except Exception as exc:
            logger.warning("memory sync failed (%s): %s", reason, exc)
        finally:
            with self._state_lock:
                follow_up = self._resync and not self._closed
                self._resync = False
                if follow_up:
                    self._pending = self._executor.submit(self._run_background_sync, "follow-up")
                else:
                    self._pending = None

    def _schedule_sync(self, reason: str, session_key: str = "") -> None:
        """Submit a background sweep, or queue one follow-up if a sweep is pending."""
        with self._state_lock:
            if self._closed:
                return
            if self._pending is not None and not self._pending.done():
                self._resync = True
                return
            self._pending = self._executor.submit(self._run_background_sync, reason, session_key)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def warm_session(self, session_key: str) -> None:
        """Sync once on the first use of *session_key*."""
        if not self.cfg.sync.on_session_start:
            return
        key = session_key.strip()
        if key:
            with self._state_lock:
                if key in self._warm_sessions:
                    return
                self._warm_sessions.add(key)
        self._schedule_sync("session-start", session_key=key)

    def notify_file_changed(self, path: str) -> None:
        """Mark the index dirty after a write to *path* and debounce a sweep."""
        try:
            normalized = normalize_path(path)
        except ValueError:
            return
        if not is_allowed_memory_path(normalized, list(self.cfg.extra_paths)):
            return
        with self._state_lock:
            self._dirty = True
            self._dirty_seq += 1
        if not self.cfg.sync.watch:
            return
        delay = self.cfg.sync.watch_debounce_ms / 1000 or DEFAULT_WATCH_DEBOUNCE_SECONDS
        self._restart_timer("_watch_timer", delay, "watch")

    def notify_session_changed(self, session_key: str = "", force: bool = False) -> None:
        """Mark sessions dirty and debounce a sweep; *force* resets delta state first."""
        if not self.indexer.sessions_enabled:
            return
        key = session_key.strip()
        if force and key:
            self.indexer.reset_session(key)
        with self._state_lock:
            self._sessions_dirty = True
            self._sessions_seq += 1
        self._restart_timer("_session_timer", SESSION_DEBOUNCE_SECONDS, "session", key)

    def _restart_timer(self, attr: str, delay: float, reason: str, session_key: str = "") -> None:
        with self._state_lock:
            if self._closed:
                return
            previous = getattr(self, attr)
            if previous is not None:
                previous.cancel()
            timer = threading.Timer(delay, self._schedule_sync, args=(reason, session_key))
            timer.daemon = True
            setattr(self, attr, timer)
            timer.start()

    def _start_interval(self) -> None:
        minutes = self.cfg.sync.interval_minutes
        if minutes <= 0:
            return
        self._interval_thread = threading.Thread(
            target=self._interval_loop,
            args=(minutes * 60.0,),
            name="memsearch-interval",
            daemon=True,
        )
        self._interval_thread.start()

    def _interval_loop(self, seconds: float) -> None:
        while not self._stop.wait(seconds):
            self._schedule_sync("interval")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Stop timers and the interval loop and shut down the sync executor."""
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            timers = [self._watch_timer, self._session_timer]
            self._watch_timer = self._session_timer = None
        for timer in timers:
            if timer is not None:
                timer.cancel()
        self._stop.set()
        if self._interval_thread is not None:
            self._interval_thread.join(timeout=1.0)
        self._executor.shutdown(wait=True, cancel_futures=True)

    def __repr__(self) -> str:
        return (
            f"SearchManager(tenant={self.tenant!r}, provider={self.provider.id!r}, "
            f"model={self.provider.model!r})"
        )
