from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional

import pytest

pytest.importorskip("psycopg")

from fergus_sync.infrastructure.checkpoint import pg_checkpoint_store
from fergus_sync.infrastructure.checkpoint.pg_checkpoint_store import PostgresCheckpointStore


class _DummyCursor:
    def __init__(self, row: Optional[dict]) -> None:
        self.executed: List[tuple] = []
        self._row = row

    def execute(self, sql: str, params: Any = None) -> None:
        self.executed.append((sql, params))

    def fetchone(self):
        return self._row

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _DummyConn:
    def __init__(self, row: Optional[dict] = None) -> None:
        self._cursor = _DummyCursor(row)
        self.commits = 0

    def cursor(self):
        return self._cursor

    def commit(self) -> None:
        self.commits += 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _patch_connect(monkeypatch, conn: _DummyConn) -> None:
    monkeypatch.setattr(pg_checkpoint_store.psycopg, "connect", lambda *a, **k: conn)


def test_set_uses_greatest_to_never_regress(monkeypatch) -> None:
    conn = _DummyConn()
    _patch_connect(monkeypatch, conn)
    store = PostgresCheckpointStore("postgresql://dummy", source="fergus", entity="invoices")
    ts = datetime(2025, 1, 10, 8, 0, 0, tzinfo=timezone.utc)

    store.set(ts)

    sqls = [sql for sql, _ in conn._cursor.executed]
    assert "CREATE TABLE IF NOT EXISTS sync_state" in sqls[0]
    assert "ON CONFLICT (source, entity)" in sqls[1]
    assert "GREATEST(sync_state.last_sync, EXCLUDED.last_sync)" in sqls[1]
    assert conn._cursor.executed[1][1] == ("fergus", "invoices", ts)
    assert conn.commits == 1


def test_get_returns_utc_datetime(monkeypatch) -> None:
    naive = datetime(2025, 1, 10, 8, 0, 0)
    conn = _DummyConn(row={"last_sync": naive})
    _patch_connect(monkeypatch, conn)

    value = PostgresCheckpointStore("postgresql://dummy").get()

    assert value == naive.replace(tzinfo=timezone.utc)


def test_get_without_row_returns_none(monkeypatch) -> None:
    _patch_connect(monkeypatch, _DummyConn(row=None))

    assert PostgresCheckpointStore("postgresql://dummy").get() is None


def test_table_is_created_once(monkeypatch) -> None:
    conn = _DummyConn(row=None)
    _patch_connect(monkeypatch, conn)
    store = PostgresCheckpointStore("postgresql://dummy")

    store.get()
    store.get()

    creates = [sql for sql, _ in conn._cursor.executed if "CREATE TABLE" in sql]
    assert len(creates) == 1
