"""Tests for SearchManager: search cascade, modes, reads, status and sync triggers."""

from __future__ import annotations

import sqlite3
import threading
import time
from unittest.mock import patch

import pytest

from memsearch.config import resolve_config
from memsearch.embeddings.provider import resolve_provider
from memsearch.errors import DocumentNotFound, EmbeddingError, OperationCancelled
from memsearch.search.context import OperationContext
from memsearch.search.manager import SearchManager, SearchOptions, normalize_mode, normalize_search_sources

TENANT = "alice"

MEMORY = "# Memory\n\n- The cat is called Miso\n- Prefers green tea"
TRAVEL = "Trip to Lisbon in May\nBook the hotel near the river"


def _manager(pool, db_path, **raw) -> SearchManager:
    base = {
        "provider": "openai",
        "remote": {"api_key": "sk-test", "batch": {"enabled": False}},
        "sync": {"watch": False, "on_search": False, "on_session_start": False},
    }
    base.update(raw)
    cfg = resolve_config(base)
    provider, status = resolve_provider(cfg)
    return SearchManager(TENANT, cfg, pool, provider, status, db_path=str(db_path))


@pytest.fixture
def manager(pool, db_path, fake_embedding):
    mgr = _manager(pool, db_path)
    yield mgr
    mgr.close()


@pytest.fixture
def indexed(manager):
    manager.files.write("MEMORY.md", MEMORY)
    manager.files.write("memory/travel.md", TRAVEL)
    manager.sync()
    return manager


def _paths(results) -> list[str]:
    return [r.path for r in results]


# ------------------------------------------------------------------
# Construction
# ------------------------------------------------------------------


def test_memory_file_seeded(manager):
    entry = manager.files.read("MEMORY.md")
    assert entry is not None
    assert entry.content == "# Memory\n"


def test_new_manager_is_dirty_until_synced(manager):
    assert manager.dirty is True
    manager.sync()
    assert manager.dirty is False


def test_existing_memory_file_not_overwritten(pool, db_path, fake_embedding):
    first = _manager(pool, db_path)
    first.files.write("MEMORY.md", MEMORY)
    first.close()
    second = _manager(pool, db_path)
    try:
        assert second.files.read("MEMORY.md").content == MEMORY
    finally:
        second.close()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


@pytest.mark.parametrize("raw,expected", [("", "auto"), ("Hybrid", "hybrid"), ("bogus", "auto"), (" list ", "list")])
def test_normalize_mode(raw, expected):
    assert normalize_mode(raw) == expected


def test_normalize_search_sources():
    assert normalize_search_sources(["memory", "notes", "bogus"], ("workspace",)) == ["notes"]
    assert normalize_search_sources([], ("notes", "workspace")) == ["notes", "workspace"]


# ------------------------------------------------------------------
# Search modes
# ------------------------------------------------------------------


def test_auto_search_ranks_matching_document(indexed):
    results = indexed.search("Lisbon trip", SearchOptions(min_score=0))
    assert results
    assert results[0].path == "memory/travel.md"
    assert results[0].start_line == 1


def test_keyword_search(indexed):
    results = indexed.search("Miso", SearchOptions(mode="keyword", min_score=0))
    assert _paths(results) == ["MEMORY.md"]
    assert "Miso" in results[0].snippet


def test_semantic_search(indexed):
    results = indexed.search("Lisbon hotel river", SearchOptions(mode="semantic", min_score=0))
    assert results[0].path == "memory/travel.md"


def test_empty_query_returns_nothing(indexed):
    assert indexed.search("   ", SearchOptions(min_score=0)) == []


def test_list_mode_returns_whole_documents(indexed):
    results = indexed.search("", SearchOptions(mode="list"))
    assert sorted(_paths(results)) == ["MEMORY.md", "memory/travel.md"]
    assert all(r.start_line is None and r.end_line is None for r in results)
    assert all(r.score == 1.0 for r in results)


def test_path_prefix_filter(indexed):
    results = indexed.search("the", SearchOptions(mode="keyword", min_score=0, path_prefix="memory"))
    assert _paths(results) == ["memory/travel.md"]


def test_max_results(indexed):
    results = indexed.search("", SearchOptions(mode="list", max_results=1))
    assert len(results) == 1


def test_min_score_filters(indexed):
    results = indexed.search("Lisbon", SearchOptions(mode="semantic", min_score=0.2))
    assert all(r.score >= 0.2 for r in results)


def test_injected_chars_budget(pool, db_path, fake_embedding):
    mgr = _manager(pool, db_path, query={"max_injected_chars": 10})
    try:
        mgr.files.write("memory/travel.md", TRAVEL)
        mgr.sync()
        results = mgr.search("", SearchOptions(mode="list"))
        assert sum(len(r.snippet) for r in results) <= 10
    finally:
        mgr.close()


# ------------------------------------------------------------------
# Degradation cascade
# ------------------------------------------------------------------


def test_semantic_search_fails_when_query_embedding_fails(indexed):
    with patch(
        "memsearch.embeddings.provider.litellm.embedding",
        side_effect=RuntimeError("invalid api key"),
    ):
        with pytest.raises(EmbeddingError):
            indexed.search("Miso", SearchOptions(mode="semantic", min_score=0))


def test_auto_search_survives_query_embedding_failure(indexed):
    with patch(
        "memsearch.embeddings.provider.litellm.embedding",
        side_effect=RuntimeError("invalid api key"),
    ):
        results = indexed.search("Miso", SearchOptions(min_score=0))
    assert _paths(results) == ["MEMORY.md"]


def test_keyword_falls_back_to_scan(indexed):
    with patch(
        "memsearch.search.manager.Repository.search_fts",
        side_effect=sqlite3.OperationalError("fts5: syntax error"),
    ):
        results = indexed.search("miso cat", SearchOptions(mode="keyword", min_score=0))
    assert _paths(results) == ["MEMORY.md"]
    assert results[0].score == pytest.approx(1.0)


def test_vector_falls_back_to_cosine(indexed):
    with patch("memsearch.search.manager.vec_table_exists", return_value=False):
        results = indexed.search("Lisbon hotel river", SearchOptions(mode="semantic", min_score=0))
        status = indexed.status()
    assert results[0].path == "memory/travel.md"
    assert status.vector.available is False
    assert "chunks_vec_64" in status.vector.error



def test_cancelled_context_stops_search(indexed):
    ctx = OperationContext()
    ctx.cancel()
    with pytest.raises(OperationCancelled):
        indexed.search("Miso", SearchOptions(mode="keyword", min_score=0), ctx=ctx)


def test_expired_context_stops_search(indexed):
    with pytest.raises(OperationCancelled):
        indexed.search("Miso", SearchOptions(min_score=0), ctx=OperationContext(timeout=0))


def test_interrupted_fts_query_is_not_retried_as_scan(indexed):
    ctx = OperationContext()

    def interrupt(*args, **kwargs):
        ctx.cancel("caller went away")
        raise sqlite3.OperationalError("interrupted")

    with patch("memsearch.search.manager.Repository.search_fts", side_effect=interrupt), \
         patch("memsearch.search.manager.Repository.scan_chunks") as scan:
        with pytest.raises(OperationCancelled, match="caller went away"):
            indexed.search("Miso", SearchOptions(mode="keyword", min_score=0), ctx=ctx)
    scan.assert_not_called()

# ------------------------------------------------------------------
# read_file
# ------------------------------------------------------------------


def test_read_whole_file(indexed):
    assert indexed.read_file("memory/travel.md") == {"path": "memory/travel.md", "text": TRAVEL}


def test_read_line_range(indexed):
    assert indexed.read_file("MEMORY.md", from_line=3, lines=1)["text"] == "- The cat is called Miso"
    assert indexed.read_file("MEMORY.md", from_line=3)["text"] == "- The cat is called Miso\n- Prefers green tea"
    assert indexed.read_file("MEMORY.md", lines=0)["text"] == "# Memory"


def test_read_past_end_is_empty(indexed):
    assert indexed.read_file("MEMORY.md", from_line=99, lines=2)["text"] == ""


def test_read_missing_file(manager):
    with pytest.raises(DocumentNotFound):
        manager.read_file("memory/nope.md")


@pytest.mark.parametrize("path", ["", "notes.txt", "../escape.md"])
def test_read_invalid_path(manager, path):
    with pytest.raises(ValueError, match="path required"):
        manager.read_file(path)


# ------------------------------------------------------------------
# Status
# ------------------------------------------------------------------


def test_status_counts(indexed):
    status = indexed.status()
    assert status.provider == "openai"
    assert status.model == "text-embedding-3-small"
    assert status.files == 2
    assert status.chunks == 2
    assert status.dirty is False
    assert status.sources == ["notes"]
    assert status.source_counts[0].source == "notes"
    assert status.cache.entries == 2
    assert status.fts.available is True
    assert status.vector.dims == 64
    assert status.embedding_ok is None
    assert status.generation == indexed.generation


def test_deep_status_checks_backends(indexed):
    status = indexed.status(deep=True)
    assert status.embedding_ok is True
    assert status.embedding_error is None
    assert status.vector.available is True


def test_deep_status_reports_embedding_failure(indexed):
    with patch(
        "memsearch.embeddings.provider.litellm.embedding",
        side_effect=RuntimeError("invalid api key"),
    ):
        status = indexed.status(deep=True)
    assert status.embedding_ok is False
    assert "invalid api key" in status.embedding_error


def test_fts_disabled_in_config(pool, db_path, fake_embedding):
    mgr = _manager(pool, db_path, store={"fts": {"enabled": False}})
    try:
        mgr.files.write("MEMORY.md", MEMORY)
        mgr.sync()
        status = mgr.status()
        results = mgr.search("Miso", SearchOptions(mode="keyword", min_score=0))
    finally:
        mgr.close()
    assert status.fts.enabled is False
    assert status.fts.available is False
    assert _paths(results) == ["MEMORY.md"]


def test_fts_enabled_ignores_hybrid_setting(pool, db_path, fake_embedding):
    mgr = _manager(pool, db_path, query={"hybrid": {"enabled": False}})
    try:
        status = mgr.status()
    finally:
        mgr.close()
    assert status.fts.enabled is True


def test_status_to_dict_is_plain(indexed):
    payload = indexed.status().to_dict()
    assert payload["provider"] == "openai"
    assert payload["batch"]["limit"] == 2
    assert payload["source_counts"][0]["files"] == 2


# ------------------------------------------------------------------
# Triggers + lifecycle
# ------------------------------------------------------------------


def test_notify_file_changed_marks_dirty(indexed):
    assert indexed.dirty is False
    indexed.notify_file_changed("notes.txt")
    assert indexed.dirty is False
    indexed.notify_file_changed("memory/travel.md")
    assert indexed.dirty is True


def test_change_during_sweep_keeps_index_dirty(manager):
    real_sync = manager.indexer.sync

    def sync_then_write(*args, **kwargs):
        result = real_sync(*args, **kwargs)
        manager.files.write("memory/zoo.md", "zebra giraffe")
        manager.notify_file_changed("memory/zoo.md")
        return result

    with patch.object(manager.indexer, "sync", side_effect=sync_then_write):
        manager.sync()
    assert manager.dirty is True

    manager.sync()

    assert manager.dirty is False
    results = manager.search("zebra", SearchOptions(mode="keyword", min_score=0))
    assert _paths(results) == ["memory/zoo.md"]


def test_schedule_during_sweep_queues_one_follow_up(manager):
    started = threading.Event()
    release = threading.Event()
    calls = []

    def slow_sync(session_key="", force=False, ctx=None):
        calls.append(session_key)
        if len(calls) == 1:
            started.set()
            release.wait(5)

    with patch.object(manager, "sync", side_effect=slow_sync):
        manager._schedule_sync("search")
        assert started.wait(5)
        manager._schedule_sync("search")
        manager._schedule_sync("watch")
        release.set()
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if len(calls) == 2 and manager._pending is None:
                break
            time.sleep(0.01)

    assert len(calls) == 2
    assert manager._pending is None


def test_reindex_rebuilds(indexed):
    result = indexed.reindex()
    assert result.full is True
    assert sorted(result.indexed) == ["MEMORY.md", "memory/travel.md"]


def test_close_is_idempotent(manager):
    manager.close()
    manager.close()
    manager.notify_file_changed("MEMORY.md")


def test_session_transcripts_searchable(pool, db_path, fake_embedding):
    mgr = _manager(
        pool,
        db_path,
        sources=["notes", "sessions"],
        experimental={"session_memory": True},
    )
    try:
        mgr.files.append_session_message("s1", "user", "my locker code is 4711")
        mgr.files.append_session_message("s1", "assistant", "noted")
        result = mgr.sync(session_key="s1")
        assert result.sessions_indexed == ["s1"]
        hits = mgr.search("locker", SearchOptions(mode="keyword", min_score=0, sources=["sessions"]))
        assert _paths(hits) == ["sessions/s1.jsonl"]
        assert hits[0].source == "sessions"
    finally:
        mgr.close()
