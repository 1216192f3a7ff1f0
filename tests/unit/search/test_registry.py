"""Tests for the SearchManager registry and its disabled-reason strings."""

from __future__ import annotations

import threading
import time
from unittest.mock import patch

import pytest

from memsearch.config import resolve_config
from memsearch.search.manager import SearchManager
from memsearch.search.registry import DISABLED_PREFIX, ManagerRegistry, get_search_manager, manager_key

_SYNC_OFF = {"watch": False, "on_search": False, "on_session_start": False}


def _cfg(**raw):
    base = {"provider": "openai", "remote": {"api_key": "sk-test", "batch": {"enabled": False}}, "sync": _SYNC_OFF}
    base.update(raw)
    return resolve_config(base)


@pytest.fixture
def registry():
    reg = ManagerRegistry()
    yield reg
    reg.close_all()


def test_tenant_required(registry, db_path):
    mgr, msg = get_search_manager("  ", _cfg(), db_path, registry=registry)
    assert mgr is None
    assert msg == f"{DISABLED_PREFIX}: tenant is required"


def test_disabled_config(registry, db_path):
    mgr, msg = get_search_manager("alice", None, db_path, registry=registry)
    assert mgr is None
    assert msg == "memory search disabled: disabled in config"


def test_no_provider(registry, db_path):
    cfg = resolve_config({"sync": _SYNC_OFF})
    mgr, msg = get_search_manager("alice", cfg, db_path, registry=registry)
    assert mgr is None
    assert msg == "memory search disabled: no embeddings provider available"
    assert len(registry) == 0


def test_same_key_returns_same_manager(registry, db_path):
    first, msg = get_search_manager("alice", _cfg(), db_path, registry=registry)
    second, _ = get_search_manager("alice", _cfg(), db_path, registry=registry)
    assert msg == ""
    assert first is second
    assert len(registry) == 1


def test_config_change_builds_new_manager(registry, db_path):
    first, _ = get_search_manager("alice", _cfg(), db_path, registry=registry)
    second, _ = get_search_manager("alice", _cfg(query={"max_results": 3}), db_path, registry=registry)
    assert first is not second
    assert first.cfg.query.max_results == 6
    assert second.cfg.query.max_results == 3
    assert len(registry) == 2


def test_tenants_isolated(registry, db_path):
    alice, _ = get_search_manager("alice", _cfg(), db_path, registry=registry)
    bob, _ = get_search_manager("bob", _cfg(), db_path, registry=registry)
    assert alice is not bob
    alice.files.write("memory/a.md", "alice only")
    assert bob.files.read("memory/a.md") is None


def test_manager_key():
    cfg = _cfg()
    assert manager_key("alice", cfg, "a.db").startswith("alice:")
    assert manager_key("alice", cfg, "a.db") == manager_key("alice", _cfg(), "a.db")
    assert manager_key("alice", cfg, "a.db") != manager_key("alice", cfg, "b.db")


def test_close_all_empties_registry(db_path):
    reg = ManagerRegistry()
    get_search_manager("alice", _cfg(), db_path, registry=reg)
    reg.close_all()
    assert len(reg) == 0


def test_concurrent_first_requests_build_one_manager(registry, db_path):
    cfg = _cfg()
    built = []

    def slow_build(*args, **kwargs):
        built.append(args[0])
        time.sleep(0.05)
        return SearchManager(*args, **kwargs)

    barrier = threading.Barrier(8)
    managers = []

    def first_request():
        barrier.wait()
        managers.append(registry.get_or_create("alice", cfg, db_path))

    with patch("memsearch.search.registry.SearchManager", side_effect=slow_build):
        threads = [threading.Thread(target=first_request) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

    assert built == ["alice"]
    assert len(managers) == 8
    assert all(m is managers[0] for m in managers)
    assert len(registry) == 1
