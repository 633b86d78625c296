"""Pytest configuration and fixtures.

The database is replaced by an in-memory ``results`` table that answers the
SQL statements defined in ``speedtest_api.results``.
"""

from datetime import datetime, timedelta, timezone

import psycopg2
import pytest
from fastapi.testclient import TestClient
from psycopg2.pool import PoolError

from speedtest_api import results
from speedtest_api.main import create_app

FROZEN_NOW = datetime(2024, 5, 17, 15, 30, tzinfo=timezone.utc)


class FakeResultsTable:
    def __init__(self):
        self.rows = []
        self.executed = []
        self.error = None

    def add(self, **row):
        row.setdefault("id", len(self.rows) + 1)
        row.setdefault("created_at", FROZEN_NOW)
        row.setdefault("download", 0.0)
        row.setdefault("upload", 0.0)
        row.setdefault("ping", 0.0)
        row.setdefault("data", None)
        self.rows.append(row)
        return row

    def _today(self, params):
        start, end = params
        return [r for r in self.rows if start <= r["created_at"] < end]

    def _averages(self, params):
        rows = self._today(params)

        def avg(column):
            if not rows:
                return None
            return sum(r[column] for r in rows) / len(rows)

        return [{"avg_download": avg("download"), "avg_upload": avg("upload"), "avg_ping": avg("ping")}]

    def _page(self, params):
        limit, offset = params
        if limit < 0 or offset < 0:
            raise psycopg2.DataError("LIMIT must not be negative")
        ordered = sorted(self.rows, key=lambda r: r["id"], reverse=True)
        return [dict(r) for r in ordered[offset:offset + limit]]

    def answer(self, query, params):
        handlers = {
            results.TODAY_DOWNLOADS_SQL: lambda p: [
                {"created_at": r["created_at"], "download": r["download"]} for r in self._today(p)
            ],
            results.TODAY_UPLOADS_SQL: lambda p: [{"upload": r["upload"]} for r in self._today(p)],
            results.TODAY_PINGS_SQL: lambda p: [{"ping": r["ping"]} for r in self._today(p)],
            results.TODAY_AVERAGES_SQL: self._averages,
            results.ALL_RESULTS_SQL: lambda p: [dict(r) for r in self.rows],
            results.FULL_DATA_SQL: lambda p: [{"data": r["data"]} for r in self.rows],
            results.COUNT_SQL: lambda p: [{"total_rows": len(self.rows)}],
            results.PAGE_SQL: self._page,
            results.DATA_BY_ID_SQL: lambda p: [{"data": r["data"]} for r in self.rows if r["id"] == p[0]],
        }
        if query not in handlers:
            raise psycopg2.ProgrammingError(f"unexpected query: {query}")
        return handlers[query](params)


class FakeCursor:
    def __init__(self, table):
        self._table = table
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        params = list(params or [])
        self._table.executed.append((query, params))
        if self._table.error is not None:
            raise self._table.error
        self._rows = self._table.answer(query, params)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, table):
        self._table = table

    def cursor(self, cursor_factory=None):
        return FakeCursor(self._table)


class FakePool:
    """Counts checkouts; raises instead of blocking so an exhausted pool fails fast."""

    def __init__(self, table, maxconn=5):
        self.table = table
        self.maxconn = maxconn
        self.in_use = []
        self.acquired = 0
        self.released = 0

    def getconn(self):
        if len(self.in_use) >= self.maxconn:
            raise PoolError("connection pool exhausted")
        conn = FakeConnection(self.table)
        self.in_use.append(conn)
        self.acquired += 1
        return conn

    def putconn(self, conn):
        self.in_use.remove(conn)
        self.released += 1


@pytest.fixture
def table():
    return FakeResultsTable()


@pytest.fixture
def conn(table):
    return FakeConnection(table)


@pytest.fixture
def pool(table):
    return FakePool(table)


@pytest.fixture
def frozen_today(monkeypatch):
    """Pin "today" to FROZEN_NOW's UTC day."""
    real_bounds = results.utc_day_bounds
    monkeypatch.setattr(results, "utc_day_bounds", lambda now=None: real_bounds(now or FROZEN_NOW))
    return FROZEN_NOW


@pytest.fixture
def client(pool, frozen_today):
    return TestClient(create_app(pool=pool))


@pytest.fixture
def yesterday():
    return FROZEN_NOW - timedelta(days=1)
