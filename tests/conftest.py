"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import re
from unittest.mock import MagicMock, patch

import pytest

from memsearch.db.connection import ConnectionPool, Database
from memsearch.db.schema import initialize

FAKE_DIMS = 64


def fake_vector(text: str) -> list[float]:
    """Bag-of-words vector: texts sharing words point the same way."""
    vec = [0.0] * FAKE_DIMS
    for token in re.findall(r"[a-z0-9]+", text.lower()):
        slot = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % FAKE_DIMS
        vec[slot] += 1.0
    if not any(vec):
        vec[0] = 1.0
    return vec


def embedding_response(texts: list[str]) -> MagicMock:
    response = MagicMock()
    response.data = [{"embedding": fake_vector(t), "index": i} for i, t in enumerate(texts)]
    return response


@pytest.fixture
def db_path(tmp_path):
    """Path of a not-yet-created database file inside tmp_path."""
    return tmp_path / ".memsearch.db"


@pytest.fixture
def tmp_db(db_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def pool(tmp_db, db_path):
    """ConnectionPool over the initialised tmp_db database."""
    p = ConnectionPool(Database(db_path))
    yield p
    p.close()


@pytest.fixture
def fake_embedding():
    """Patch litellm.embedding with a deterministic local embedder."""

    def _respond(**kwargs):
        return embedding_response(list(kwargs["input"]))

    with patch("memsearch.embeddings.provider.litellm.embedding", side_effect=_respond) as mock:
        yield mock


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Keep provider keys and MEMSEARCH_* overrides from leaking into tests."""
    for name in (
        "OPENAI_API_KEY",
        "GEMINI_API_KEY",
        "MEMSEARCH_PROVIDER",
        "MEMSEARCH_EMBEDDING_MODEL",
        "MEMSEARCH_DB",
        "MEMSEARCH_TENANT",
    ):
        monkeypatch.delenv(name, raising=False)
