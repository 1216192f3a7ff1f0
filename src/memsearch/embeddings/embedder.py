"""Embedder: cache partitioning, batching, retry/backoff and timeouts.

The Manager never calls a provider directly; it goes through an Embedder,
which:

- serves cache hits without touching the provider,
- routes misses through the OpenAI Batch API while batch health allows it,
- otherwise packs misses into requests of at most ``BATCH_MAX_CHARS`` characters,
- hands rate-limit and 5xx retries to LiteLLM (``num_retries``),
- bounds every call by both a per-kind timeout and the operation context.
"""

from __future__ import annotations

import logging

import litellm

from memsearch.db.models import Chunk
from memsearch.embeddings.batch import (
    BATCH_FAILURE_LIMIT,
    BatchState,
    OpenAIBatchRunner,
    batch_custom_id,
    build_requests,
    run_with_timeout_retry,
)
from memsearch.embeddings.cache import EmbeddingCache
from memsearch.embeddings.provider import EmbeddingProvider
from memsearch.errors import BatchError, EmbeddingError, OperationCancelled
from memsearch.search.context import OperationContext

logger = logging.getLogger(__name__)

BATCH_MAX_CHARS = 8000
EMBED_NUM_RETRIES = 3

QUERY_TIMEOUT_REMOTE = 60.0
QUERY_TIMEOUT_LOCAL = 300.0
BATCH_TIMEOUT_REMOTE = 120.0
BATCH_TIMEOUT_LOCAL = 600.0


def build_text_batches(chunks: list[Chunk], max_chars: int = BATCH_MAX_CHARS) -> list[list[Chunk]]:
    """Group *chunks* so each group's total text stays within *max_chars*.

    A single chunk larger than the limit gets a group of its own.
    """
    batches: list[list[Chunk]] = []
    current: list[Chunk] = []
    current_chars = 0
    for chunk in chunks:
        size = len(chunk.text)
        if current and current_chars + size > max_chars:
            batches.append(current)
            current, current_chars = [], 0
        if not current and size > max_chars:
            batches.append([chunk])
            continue
        current.append(chunk)
        current_chars += size
    if current:
        batches.append(current)
    return batches


class Embedder:
    """Embeds queries and chunks for one Manager.

    Args:
        provider: The resolved embedding provider.
        cache: Embedding cache for the provider identity.
        batch_state: Shared batch health counters.
        batch_runner: Batch API runner, or None when batches are not supported.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: EmbeddingCache,
        batch_state: BatchState,
        batch_runner: OpenAIBatchRunner | None = None,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.batch_state = batch_state
        self.batch_runner = batch_runner
        self.vector_dims = 0

    @property
    def is_local(self) -> bool:
        return self.provider.id == "local"

    def timeout_for(self, kind: str) -> float:
        if kind == "query":
            return QUERY_TIMEOUT_LOCAL if self.is_local else QUERY_TIMEOUT_REMOTE
        return BATCH_TIMEOUT_LOCAL if self.is_local else BATCH_TIMEOUT_REMOTE

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def embed_query(self, text: str, ctx: OperationContext) -> list[float]:
        """Embed one search query.

        Raises:
            EmbeddingError: On provider failure or timeout.
            OperationCancelled: If *ctx* is cancelled or past its deadline.
        """
        limit = self.timeout_for("query")
        logger.debug("memory embeddings: query start provider=%s timeout=%ss", self.provider.id, limit)
        ctx.check()
        try:
            return self.provider.embed_query(text, timeout=ctx.remaining(limit))
        except litellm.Timeout as exc:
            ctx.check()
            raise EmbeddingError(f"memory embeddings query timed out after {round(limit)}s") from exc
        except (EmbeddingError, OperationCancelled):
            raise
        except Exception as exc:
            ctx.check()
            raise EmbeddingError(f"{self.provider.id} embeddings failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def embed_chunks(
        self, chunks: list[Chunk], path: str, source: str, ctx: OperationContext
    ) -> list[list[float]]:
        """Return one embedding per chunk, in order (empty text → empty vector)."""
        embeddings: list[list[float]] = [[] for _ in chunks]
        cached = self.cache.lookup([c.hash for c in chunks if c.text], self.vector_dims)
        missing: list[tuple[int, Chunk]] = []
        for index, chunk in enumerate(chunks):
            if not chunk.text:
                continue
            hit = cached.get(chunk.hash)
            if hit:
                embeddings[index] = hit
                continue
            missing.append((index, chunk))
        if not missing:
            return embeddings

        if self._should_use_batch():
            batched = self._embed_with_batch(missing, path, source, ctx)
            if batched is not None:
                for index, vector in batched.items():
                    embeddings[index] = vector
                return embeddings

        fresh = self._embed_in_batches([chunk for _, chunk in missing], ctx)
        to_cache: dict[str, list[float]] = {}
        for (index, chunk), vector in zip(missing, fresh):
            embeddings[index] = vector
            if vector:
                to_cache[chunk.hash] = vector
        self.cache.store(to_cache)
        return embeddings

    def _should_use_batch(self) -> bool:
        return (
            self.batch_runner is not None
            and self.batch_runner.cfg.enabled
            and self.provider.supports_batch
            and self.batch_state.enabled
        )

    def _embed_with_batch(
        self,
        missing: list[tuple[int, Chunk]],
        path: str,
        source: str,
        ctx: OperationContext,
    ) -> dict[int, list[float]] | None:
        """Embed through the Batch API; None means "fall back to sync"."""
        runner = self.batch_runner
        if runner is None:
            return None
        requests = build_requests(path, source, self.provider.model, missing)
        try:
            results = run_with_timeout_retry(self.provider.id, lambda: runner.run(requests, ctx))
        except BatchError as exc:
            message = str(exc)
            force = "asyncbatchembedcontent not available" in message.lower()
            disabled, count = self.batch_state.record_failure(
                self.provider.id, exc, exc.attempts, force
            )
            logger.warning(
                "memory embeddings: %s batch failed (%d/%d); %s; falling back to non-batch embeddings: %s",
                self.provider.id,
                count,
                BATCH_FAILURE_LIMIT,
                "disabling batch" if disabled else "keeping batch enabled",
                message,
            )
            return None

        out: dict[int, list[float]] = {}
        to_cache: dict[str, list[float]] = {}
        for index, chunk in missing:
            custom_id = batch_custom_id(
                source, path, chunk.hash, chunk.start_line, chunk.end_line, index
            )
            vector = results.get(custom_id)
            if vector:
                out[index] = vector
                to_cache[chunk.hash] = vector
        self.cache.store(to_cache)
        self.batch_state.reset()
        return out

    def embed_texts(self, texts: list[str], ctx: OperationContext) -> list[list[float]]:
        """Embed raw *texts* in one retried request, bypassing the cache."""
        return self._embed_batch(texts, ctx)

    def _embed_in_batches(self, chunks: list[Chunk], ctx: OperationContext) -> list[list[float]]:
        out: list[list[float]] = []
        for batch in build_text_batches(chunks):
            vectors = self._embed_batch([c.text for c in batch], ctx)
            out.extend(vectors)
        return out

    def _embed_batch(self, texts: list[str], ctx: OperationContext) -> list[list[float]]:
        """Embed *texts* synchronously; LiteLLM retries transient provider errors.

        Raises:
            EmbeddingError: When LiteLLM gives up or the error is not transient.
            OperationCancelled: If *ctx* ends before or during the call.
        """
        limit = self.timeout_for("batch")
        ctx.check()
        logger.debug(
            "memory embeddings: batch start provider=%s items=%d timeout=%ss",
            self.provider.id,
            len(texts),
            limit,
        )
        try:
            return self.provider.embed_batch(
                texts, timeout=ctx.remaining(limit), num_retries=EMBED_NUM_RETRIES
            )
        except litellm.Timeout as exc:
            ctx.check()
            raise EmbeddingError(f"memory embeddings batch timed out after {round(limit)}s") from exc
        except (EmbeddingError, OperationCancelled):
            raise
        except Exception as exc:
            ctx.check()
            raise EmbeddingError(f"{self.provider.id} embeddings failed: {exc}") from exc
