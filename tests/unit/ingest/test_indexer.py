"""Tests for the index sweep: generations, chunk ids, file and session syncing."""

from __future__ import annotations

import itertools
from unittest.mock import MagicMock, patch

import pytest

from memsearch.config import resolve_config
from memsearch.db.models import Chunk, IndexMeta
from memsearch.db.repository import Repository
from memsearch.db.vectors import vec_tables
from memsearch.embeddings.batch import BatchState
from memsearch.embeddings.cache import EmbeddingCache
from memsearch.embeddings.embedder import Embedder
from memsearch.embeddings.provider import EmbeddingProvider
from memsearch.errors import EmbeddingError
from memsearch.files import FileStore
from memsearch.ingest.indexer import (
    Indexer,
    build_chunk_id,
    derive_generation,
    needs_full_reindex,
    session_line,
)
from memsearch.search.context import OperationContext


TENANT = "alice"


@pytest.fixture(autouse=True)
def clock():
    """Strictly increasing timestamps for file writes and chunk writes."""
    ticks = itertools.count(1_000)
    with patch("memsearch.files.now_ms", side_effect=lambda: next(ticks)), \
         patch("memsearch.ingest.indexer.now_ms", side_effect=lambda: next(ticks)):
        yield


@pytest.fixture
def files(pool):
    return FileStore(pool, TENANT)


def _cfg(**raw):
    base = {"provider": "openai", "remote": {"api_key": "sk-test", "batch": {"enabled": False}}}
    base.update(raw)
    return resolve_config(base)


def _indexer(pool, tenant: str = TENANT, **raw) -> Indexer:
    cfg = _cfg(**raw)
    provider = EmbeddingProvider("openai", cfg.model, api_key="sk-test")
    cache = EmbeddingCache(pool, tenant, provider.id, provider.model, provider.provider_key)
    return Indexer(pool, tenant, cfg, Embedder(provider, cache, BatchState(enabled=False)))


def _chunk_ids(pool, path: str | None = None) -> list[str]:
    with pool.acquire() as conn:
        if path is None:
            rows = conn.execute("SELECT id FROM chunks ORDER BY id").fetchall()
        else:
            rows = conn.execute("SELECT id FROM chunks WHERE path = ? ORDER BY id", (path,)).fetchall()
    return [r[0] for r in rows]


# ------------------------------------------------------------------
# Pure helpers
# ------------------------------------------------------------------


def test_generation_is_deterministic():
    a = derive_generation("openai", "text-embedding-3-small", "k", 400, 80)
    b = derive_generation("openai", "text-embedding-3-small", "k", 400, 80)
    assert a == b
    assert len(a) == 16
    assert derive_generation("openai", "text-embedding-3-small", "k", 300, 80) != a


def test_chunk_id_prefixed_with_generation_and_scoped_by_tenant():
    chunk = Chunk(1, 3, "hello", "h")
    a = build_chunk_id("gen1", "alice", "notes", "MEMORY.md", chunk)
    b = build_chunk_id("gen1", "bob", "notes", "MEMORY.md", chunk)
    assert a.startswith("gen1:")
    assert a != b
    assert a == build_chunk_id("gen1", "alice", "notes", "MEMORY.md", chunk)


def test_needs_full_reindex():
    settings = dict(provider="openai", model="m", provider_key="k", chunk_tokens=400, chunk_overlap=80)
    meta = IndexMeta("openai", "m", "k", 400, 80, "gen1")
    assert needs_full_reindex(None, **settings) is True
    assert needs_full_reindex(IndexMeta("openai", "m", "k", 400, 80, ""), **settings) is True
    assert needs_full_reindex(meta, **settings) is False
    assert needs_full_reindex(meta, **{**settings, "model": "other"}) is True
    assert needs_full_reindex(meta, **{**settings, "chunk_overlap": 40}) is True


@pytest.mark.parametrize("role,text,expected", [
    ("user", "  hi\n there ", "User: hi there"),
    ("ASSISTANT", "ok", "Assistant: ok"),
    ("system", "setup", None),
    ("user", "   ", None),
])
def test_session_line(role, text, expected):
    assert session_line(role, text) == expected


# ------------------------------------------------------------------
# File sweeps
# ------------------------------------------------------------------


def test_first_sync_indexes_notes(pool, files, fake_embedding):
    files.write("MEMORY.md", "# Memory\n\n- likes tea")
    files.write("docs/readme.md", "workspace only")
    indexer = _indexer(pool)

    result = indexer.sync(OperationContext())

    assert result.full is True
    assert result.indexed == ["MEMORY.md"]
    assert result.vector_dims == 64
    with pool.acquire() as conn:
        repo = Repository(conn, TENANT)
        assert repo.count_chunks_by_source(result.generation) == {"notes": 1}
        meta = repo.get_meta()
    assert meta.index_generation == result.generation
    assert meta.vector_dims == 64


def test_workspace_source_indexed_when_enabled(pool, files, fake_embedding):
    files.write("docs/readme.md", "workspace notes")
    result = _indexer(pool, sources=["notes", "workspace"]).sync(OperationContext())
    assert result.indexed == ["docs/readme.md"]


def test_extra_paths_indexed(pool, files, fake_embedding):
    files.write("projects/plan.md", "the plan")
    files.write("other/skip.md", "not included")
    result = _indexer(pool, extra_paths=["projects"]).sync(OperationContext())
    assert result.indexed == ["projects/plan.md"]


def test_unchanged_files_skipped(pool, files, fake_embedding):
    files.write("MEMORY.md", "# Memory\n\n- likes tea")
    indexer = _indexer(pool)
    indexer.sync(OperationContext())
    ids = _chunk_ids(pool)

    result = indexer.sync(OperationContext())

    assert result.full is False
    assert result.indexed == []
    assert _chunk_ids(pool) == ids


def test_forced_sync_reproduces_ids(pool, files, fake_embedding):
    files.write("MEMORY.md", "# Memory\n\n- likes tea")
    files.write("memory/2024-05-01.md", "met Bob")
    indexer = _indexer(pool)
    first = indexer.sync(OperationContext())
    ids = _chunk_ids(pool)

    second = indexer.sync(OperationContext(), force=True)

    assert second.full is True
    assert second.generation == first.generation
    assert sorted(second.indexed) == ["MEMORY.md", "memory/2024-05-01.md"]
    assert _chunk_ids(pool) == ids


def test_changed_file_reindexed(pool, files, fake_embedding):
    files.write("MEMORY.md", "old fact")
    indexer = _indexer(pool)
    indexer.sync(OperationContext())
    old_ids = _chunk_ids(pool)

    files.write("MEMORY.md", "new fact")
    result = indexer.sync(OperationContext())

    assert result.indexed == ["MEMORY.md"]
    assert _chunk_ids(pool) != old_ids
    assert len(_chunk_ids(pool)) == 1


def test_removed_file_chunks_deleted(pool, files, fake_embedding):
    files.write("MEMORY.md", "keep")
    files.write("memory/old.md", "drop me")
    indexer = _indexer(pool)
    indexer.sync(OperationContext())

    files.delete("memory/old.md")
    result = indexer.sync(OperationContext())

    assert result.removed == ["memory/old.md"]
    assert _chunk_ids(pool, "memory/old.md") == []
    assert len(_chunk_ids(pool, "MEMORY.md")) == 1


def test_emptied_file_chunks_deleted(pool, files, fake_embedding):
    files.write("MEMORY.md", "something")
    indexer = _indexer(pool)
    indexer.sync(OperationContext())

    files.write("MEMORY.md", "   ")
    indexer.sync(OperationContext())

    assert _chunk_ids(pool, "MEMORY.md") == []


def test_settings_change_triggers_full_rebuild(pool, files, fake_embedding):
    files.write("MEMORY.md", "# Memory\n\n- likes tea")
    first = _indexer(pool).sync(OperationContext())

    second = _indexer(pool, chunking={"tokens": 200, "overlap": 20}).sync(OperationContext())

    assert second.full is True
    assert second.generation != first.generation
    ids = _chunk_ids(pool)
    assert ids
    assert all(i.startswith(second.generation + ":") for i in ids)


def test_vectors_disabled_skips_embedding(pool, files, fake_embedding):
    files.write("MEMORY.md", "no vectors here")
    result = _indexer(pool, store={"vector": {"enabled": False}}).sync(OperationContext())
    assert result.indexed == ["MEMORY.md"]
    fake_embedding.assert_not_called()


def test_embedding_failure_propagates(pool, files):
    files.write("MEMORY.md", "fact")
    with patch(
        "memsearch.embeddings.provider.litellm.embedding",
        side_effect=RuntimeError("invalid api key"),
    ):
        with pytest.raises(EmbeddingError):
            _indexer(pool).sync(OperationContext())



def test_write_during_sweep_is_picked_up_next_sync(pool, files, fake_embedding):
    files.write("MEMORY.md", "old fact")
    indexer = _indexer(pool)
    real_embed = indexer.embedder.embed_chunks
    calls = []

    def embed_then_edit(chunks, path, source, ctx):
        if not calls:
            files.write("MEMORY.md", "zebra giraffe")
        calls.append(path)
        return real_embed(chunks, path, source, ctx)

    with patch.object(indexer.embedder, "embed_chunks", side_effect=embed_then_edit):
        indexer.sync(OperationContext())
    with pool.acquire() as conn:
        texts = [r[0] for r in conn.execute("SELECT text FROM chunks")]
    assert texts == ["old fact"]

    result = indexer.sync(OperationContext())

    assert result.indexed == ["MEMORY.md"]
    with pool.acquire() as conn:
        texts = [r[0] for r in conn.execute("SELECT text FROM chunks")]
    assert texts == ["zebra giraffe"]


def test_tenants_with_different_vector_widths_keep_their_vectors(pool, files):
    def _respond(**kwargs):
        dims = 32 if "large" in kwargs["model"] else 64
        response = MagicMock()
        response.data = [
            {"embedding": [1.0] * dims, "index": i} for i in range(len(kwargs["input"]))
        ]
        return response

    files.write("MEMORY.md", "alice note")
    FileStore(pool, "bob").write("MEMORY.md", "bob note")
    alice = _indexer(pool)
    bob = _indexer(pool, tenant="bob", model="text-embedding-3-large")

    with patch("memsearch.embeddings.provider.litellm.embedding", side_effect=_respond):
        alice.sync(OperationContext())
        bob.sync(OperationContext())
        files.write("memory/later.md", "alice again")
        result = alice.sync(OperationContext())

    assert result.indexed == ["memory/later.md"]
    assert alice.vector_error is None
    assert bob.vector_error is None
    with pool.acquire() as conn:
        assert set(vec_tables(conn)) == {32, 64}
        assert conn.execute("SELECT count(*) FROM chunks_vec_64").fetchone()[0] == 2
        assert conn.execute("SELECT count(*) FROM chunks_vec_32").fetchone()[0] == 1

# ------------------------------------------------------------------
# Session sweeps
# ------------------------------------------------------------------


def _session_indexer(pool, delta_messages: int = 3) -> Indexer:
    return _indexer(
        pool,
        sources=["notes", "sessions"],
        experimental={"session_memory": True},
        sync={"sessions": {"delta_messages": delta_messages, "delta_bytes": 10_000_000}},
    )


def test_sessions_ignored_when_disabled(pool, files, fake_embedding):
    files.append_session_message("s1", "user", "hello there")
    result = _indexer(pool).sync(OperationContext())
    assert result.sessions_indexed == []


def test_first_session_sweep_indexes_everything(pool, files, fake_embedding):
    files.append_session_message("s1", "user", "what is my cat called?")
    files.append_session_message("s1", "assistant", "Miso")
    files.append_session_message("s2", "user", "remind me about dentist")

    result = _session_indexer(pool).sync(OperationContext())

    assert sorted(result.sessions_indexed) == ["s1", "s2"]
    with pool.acquire() as conn:
        entry = Repository(conn, TENANT).get_session_file("s1")
    assert entry.path == "sessions/s1.jsonl"
    assert entry.content == "User: what is my cat called?\nAssistant: Miso"
    assert _chunk_ids(pool, "sessions/s1.jsonl")


def test_session_reindexed_after_message_threshold(pool, files, fake_embedding):
    files.append_session_message("s1", "user", "first")
    indexer = _session_indexer(pool, delta_messages=3)
    indexer.sync(OperationContext())

    files.append_session_message("s1", "assistant", "second")
    assert indexer.sync(OperationContext()).sessions_indexed == []

    files.append_session_message("s1", "user", "third")
    files.append_session_message("s1", "assistant", "fourth")
    assert indexer.sync(OperationContext()).sessions_indexed == ["s1"]

    with pool.acquire() as conn:
        state = Repository(conn, TENANT).get_session_state("s1")
    assert state.pending_messages == 0
    assert state.pending_bytes == 0


def test_ignored_roles_do_not_count(pool, files, fake_embedding):
    files.append_session_message("s1", "user", "first")
    indexer = _session_indexer(pool, delta_messages=2)
    indexer.sync(OperationContext())

    files.append_session_message("s1", "system", "tool output")
    files.append_session_message("s1", "tool", "more output")
    assert indexer.sync(OperationContext()).sessions_indexed == []


def test_transcript_without_text_has_no_document(pool, files, fake_embedding):
    files.append_session_message("s1", "system", "boot")
    result = _session_indexer(pool).sync(OperationContext())
    assert result.sessions_indexed == []
    with pool.acquire() as conn:
        assert Repository(conn, TENANT).get_session_file("s1") is None
    assert _chunk_ids(pool, "sessions/s1.jsonl") == []
