"""Tests for the per-dimension sqlite-vec tables."""

from __future__ import annotations

import struct

import pytest

from memsearch.db.vectors import (
    ensure_vec_table,
    probe_vec_table,
    serialize_vector,
    vec_table_exists,
    vec_table_name,
    vec_tables,
)


def _insert(conn, table: str, id: str, vector: list[float]) -> None:
    conn.execute(
        f"INSERT INTO {table} (id, embedding) VALUES (?, ?)", (id, serialize_vector(vector))
    )
    conn.commit()


def _count(conn, table: str) -> int:
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_serialize_vector_float32_le():
    blob = serialize_vector([1.0, -0.5])
    assert blob == struct.pack("<2f", 1.0, -0.5)


def test_vec_table_name():
    assert vec_table_name(1536) == "chunks_vec_1536"


def test_no_vec_tables_initially(tmp_db):
    assert vec_tables(tmp_db) == {}
    assert not vec_table_exists(tmp_db, 3)


def test_ensure_vec_table_creates_table(tmp_db):
    assert ensure_vec_table(tmp_db, 3) == "chunks_vec_3"
    assert vec_tables(tmp_db) == {3: "chunks_vec_3"}
    assert vec_table_exists(tmp_db, 3)


def test_ensure_vec_table_idempotent(tmp_db):
    table = ensure_vec_table(tmp_db, 3)
    _insert(tmp_db, table, "a", [1.0, 0.0, 0.0])
    ensure_vec_table(tmp_db, 3)
    assert _count(tmp_db, table) == 1


def test_second_dimension_keeps_existing_rows(tmp_db):
    small = ensure_vec_table(tmp_db, 3)
    _insert(tmp_db, small, "a", [1.0, 0.0, 0.0])

    large = ensure_vec_table(tmp_db, 4)
    _insert(tmp_db, large, "b", [0.0, 1.0, 0.0, 0.0])

    assert vec_tables(tmp_db) == {3: small, 4: large}
    assert _count(tmp_db, small) == 1
    assert _count(tmp_db, large) == 1


def test_vec_tables_ignores_shadow_tables(tmp_db):
    ensure_vec_table(tmp_db, 2)
    names = {
        r[0]
        for r in tmp_db.execute(
            "SELECT name FROM sqlite_master WHERE name LIKE 'chunks_vec_2%'"
        ).fetchall()
    }
    assert len(names) > 1
    assert list(vec_tables(tmp_db)) == [2]


def test_ensure_vec_table_rejects_zero(tmp_db):
    with pytest.raises(ValueError):
        ensure_vec_table(tmp_db, 0)


def test_vec_table_health_check(tmp_db):
    probe_vec_table(tmp_db)
    ensure_vec_table(tmp_db, 2)
    ensure_vec_table(tmp_db, 5)
    probe_vec_table(tmp_db)
