"""Tests for the Embedder: cache partitioning, retries, timeouts and batch fallback."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import litellm
import pytest

from memsearch.db.models import Chunk
from memsearch.embeddings.batch import BatchState, batch_custom_id
from memsearch.embeddings.cache import EmbeddingCache
from memsearch.embeddings.embedder import EMBED_NUM_RETRIES, Embedder, build_text_batches
from memsearch.embeddings.provider import EmbeddingProvider
from memsearch.errors import BatchError, EmbeddingError, OperationCancelled
from memsearch.search.context import OperationContext

_PATCH = "memsearch.embeddings.provider.litellm.embedding"


def _response(n: int, vector: list[float] | None = None) -> MagicMock:
    response = MagicMock()
    response.data = [{"embedding": vector or [1.0, 0.0], "index": i} for i in range(n)]
    return response


def _chunk(text: str, hash: str | None = None, line: int = 1) -> Chunk:
    return Chunk(start_line=line, end_line=line, text=text, hash=hash or f"h-{text}")


@pytest.fixture
def provider():
    return EmbeddingProvider("openai", "text-embedding-3-small", api_key="sk-test")


@pytest.fixture
def embedder(pool, provider):
    cache = EmbeddingCache(pool, "alice", provider.id, provider.model, provider.provider_key)
    return Embedder(provider, cache, BatchState(enabled=False))


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------

def test_build_text_batches_respects_limit():
    chunks = [_chunk("a" * 40), _chunk("b" * 40), _chunk("c" * 40)]
    batches = build_text_batches(chunks, max_chars=100)
    assert [len(b) for b in batches] == [2, 1]


def test_build_text_batches_oversized_chunk_alone():
    chunks = [_chunk("a" * 10), _chunk("b" * 500), _chunk("c" * 10)]
    batches = build_text_batches(chunks, max_chars=100)
    assert [[c.text[0] for c in b] for b in batches] == [["a"], ["b"], ["c"]]


# ------------------------------------------------------------------
# Query
# ------------------------------------------------------------------

def test_embed_query(embedder):
    with patch(_PATCH, return_value=_response(1, [0.0, 3.0])):
        assert embedder.embed_query("hello", OperationContext()) == [0.0, 1.0]


def test_embed_query_timeout_message(embedder):
    timeout = litellm.Timeout(message="slow", model="text-embedding-3-small", llm_provider="openai")
    with patch(_PATCH, side_effect=timeout):
        with pytest.raises(EmbeddingError, match="timed out after 60s"):
            embedder.embed_query("hello", OperationContext())


def test_embed_query_wraps_provider_errors(embedder):
    with patch(_PATCH, side_effect=RuntimeError("invalid api key")):
        with pytest.raises(EmbeddingError, match="openai embeddings failed"):
            embedder.embed_query("hello", OperationContext())


def test_local_timeouts_are_longer(pool):
    local = EmbeddingProvider("local", "m", api_base="http://localhost:1/v1")
    cache = EmbeddingCache(pool, "alice", local.id, local.model, local.provider_key)
    emb = Embedder(local, cache, BatchState(enabled=False))
    assert emb.timeout_for("query") == 300.0
    assert emb.timeout_for("batch") == 600.0


# ------------------------------------------------------------------
# Chunks
# ------------------------------------------------------------------

def test_embed_chunks_uses_cache(embedder):
    chunks = [_chunk("alpha"), _chunk("beta")]
    with patch(_PATCH, return_value=_response(2)) as mock:
        first = embedder.embed_chunks(chunks, "MEMORY.md", "notes", OperationContext())
        second = embedder.embed_chunks(chunks, "MEMORY.md", "notes", OperationContext())
    assert mock.call_count == 1
    assert first == second
    assert len(first) == 2


def test_embed_chunks_empty_text_gets_empty_vector(embedder):
    chunks = [_chunk(""), _chunk("beta")]
    with patch(_PATCH, return_value=_response(1)) as mock:
        out = embedder.embed_chunks(chunks, "MEMORY.md", "notes", OperationContext())
    assert out[0] == []
    assert out[1] == [1.0, 0.0]
    assert mock.call_args.kwargs["input"] == ["beta"]


def test_chunk_embedding_uses_litellm_retries(embedder):
    with patch(_PATCH, return_value=_response(1)) as mock:
        out = embedder.embed_texts(["ping"], OperationContext())
    assert out == [[1.0, 0.0]]
    kwargs = mock.call_args.kwargs
    assert kwargs["num_retries"] == EMBED_NUM_RETRIES
    assert 0 < kwargs["timeout"] <= 120.0


def test_query_embedding_is_not_retried(embedder):
    with patch(_PATCH, return_value=_response(1)) as mock:
        embedder.embed_query("hello", OperationContext())
    assert "num_retries" not in mock.call_args.kwargs


def test_rate_limit_after_litellm_retries_is_wrapped(embedder):
    error = litellm.RateLimitError(
        message="slow down", model="text-embedding-3-small", llm_provider="openai"
    )
    with patch(_PATCH, side_effect=error) as mock:
        with pytest.raises(EmbeddingError, match="openai embeddings failed"):
            embedder.embed_texts(["ping"], OperationContext())
    assert mock.call_count == 1


def test_batch_timeout_message(embedder):
    timeout = litellm.Timeout(message="slow", model="text-embedding-3-small", llm_provider="openai")
    with patch(_PATCH, side_effect=timeout):
        with pytest.raises(EmbeddingError, match="batch timed out after 120s"):
            embedder.embed_texts(["ping"], OperationContext())


def test_cancelled_context_skips_provider(embedder):
    ctx = OperationContext()
    ctx.cancel()
    with patch(_PATCH) as mock:
        with pytest.raises(OperationCancelled):
            embedder.embed_texts(["ping"], ctx)
    mock.assert_not_called()


# ------------------------------------------------------------------
# Batch routing
# ------------------------------------------------------------------

def _batch_embedder(pool, provider, runner) -> Embedder:
    cache = EmbeddingCache(pool, "alice", provider.id, provider.model, provider.provider_key)
    return Embedder(provider, cache, BatchState(enabled=True), runner)


def test_batch_results_used_and_cached(pool, provider):
    chunks = [_chunk("alpha", line=1), _chunk("beta", line=2)]
    results = {
        batch_custom_id("notes", "MEMORY.md", c.hash, c.start_line, c.end_line, i): [float(i + 1), 0.0]
        for i, c in enumerate(chunks)
    }
    runner = MagicMock()
    runner.cfg.enabled = True
    runner.run.return_value = results
    emb = _batch_embedder(pool, provider, runner)
    with patch(_PATCH) as sync_call:
        out = emb.embed_chunks(chunks, "MEMORY.md", "notes", OperationContext())
    sync_call.assert_not_called()
    assert out == [[1.0, 0.0], [2.0, 0.0]]
    assert emb.cache.count() == 2


def test_batch_failure_falls_back_to_sync(pool, provider):
    runner = MagicMock()
    runner.cfg.enabled = True
    runner.run.side_effect = BatchError("openai batch b1 failed")
    emb = _batch_embedder(pool, provider, runner)
    with patch(_PATCH, return_value=_response(1)) as sync_call:
        out = emb.embed_chunks([_chunk("alpha")], "MEMORY.md", "notes", OperationContext())
    assert sync_call.call_count == 1
    assert out == [[1.0, 0.0]]
    snapshot = emb.batch_state.snapshot()
    assert snapshot.failures == 1
    assert snapshot.enabled is True


def test_batch_disabled_after_failure_limit(pool, provider):
    runner = MagicMock()
    runner.cfg.enabled = True
    runner.run.side_effect = BatchError("openai batch b1 failed")
    emb = _batch_embedder(pool, provider, runner)
    with patch(_PATCH, return_value=_response(1)):
        emb.embed_chunks([_chunk("one")], "a.md", "notes", OperationContext())
        emb.embed_chunks([_chunk("two")], "a.md", "notes", OperationContext())
        emb.embed_chunks([_chunk("three")], "a.md", "notes", OperationContext())
    assert runner.run.call_count == 2
    assert emb.batch_state.enabled is False


def test_missing_runner_falls_back_to_sync(pool, provider):
    emb = _batch_embedder(pool, provider, None)
    assert emb._embed_with_batch([(0, _chunk("alpha"))], "a.md", "notes", OperationContext()) is None
    with patch(_PATCH, return_value=_response(1)) as sync_call:
        out = emb.embed_chunks([_chunk("alpha")], "a.md", "notes", OperationContext())
    assert sync_call.call_count == 1
    assert out == [[1.0, 0.0]]
