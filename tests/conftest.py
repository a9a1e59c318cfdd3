import sys
import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import psycopg2
import pytest
from psycopg2 import errors

# Ensure `scraping_flow` is importable when running pytest from the project root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from scraping_flow.core.db import Database  # noqa: E402

_BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakePostgres:
    """In-memory stand-in for the two schemas, applying writes immediately with undo logs."""

    def __init__(self):
        self.lock = threading.Lock()
        self.searches = []
        self.results = []
        self.credits = {}
        self.statements = []
        self.missing_tables = False
        self.fail_when = None
        self._clock = 0
        self._result_seq = 0

    def tick(self):
        self._clock += 1
        return _BASE_TIME + timedelta(seconds=self._clock)

    def execute(self, sql, params, undo):
        normalized = " ".join(sql.split())
        self.statements.append((normalized, params))
        if self.fail_when is not None and self.fail_when(normalized, params):
            raise psycopg2.OperationalError("injected failure")
        if self.missing_tables and ("scraping_" in normalized or "user_credits" in normalized):
            raise errors.UndefinedTable('relation "scraping_searches" does not exist')

        with self.lock:
            if normalized.startswith("INSERT INTO scraping_searches"):
                row = {
                    "id": uuid.uuid4(),
                    "user_id": params["user_id"],
                    "text_query": params["text_query"],
                    "language_code": params["language_code"],
                    "package_size": params["package_size"],
                    "total_results": params["total_results"],
                    "created_at": self.tick(),
                }
                self.searches.append(row)
                undo.append(lambda: self.searches.remove(row))
                return [dict(row)]

            if normalized.startswith("INSERT INTO scraping_results"):
                self._result_seq += 1
                row = {
                    "id": self._result_seq,
                    "search_id": uuid.UUID(str(params["search_id"])),
                    "user_id": params["user_id"],
                    "place_id": params["place_id"],
                    "name": params["name"],
                    "phone": params["phone"],
                    "address": params["address"],
                    # NOW() is the transaction timestamp, identical for every row.
                    "created_at": _BASE_TIME,
                }
                self.results.append(row)
                undo.append(lambda: self.results.remove(row))
                return []

            if normalized.startswith("DELETE FROM scraping_results"):
                removed = [r for r in self.results if str(r["search_id"]) == params["search_id"]]
                self.results = [r for r in self.results if r not in removed]
                undo.append(lambda: self.results.extend(removed))
                return []

            if normalized.startswith("DELETE FROM scraping_searches"):
                removed = [s for s in self.searches if str(s["id"]) == params["search_id"]]
                self.searches = [s for s in self.searches if s not in removed]
                undo.append(lambda: self.searches.extend(removed))
                return []

            if normalized.startswith("SELECT r.search_id"):
                owned = {
                    str(s["id"])
                    for s in self.searches
                    if str(s["id"]) == params["search_id"] and s["user_id"] == params["user_id"]
                }
                rows = [dict(r) for r in self.results if str(r["search_id"]) in owned]
                return sorted(rows, key=lambda r: (r["created_at"], r["id"]))

            if normalized.startswith("SELECT id, user_id") and "WHERE id =" in normalized:
                return [
                    dict(s)
                    for s in self.searches
                    if str(s["id"]) == params["search_id"] and s["user_id"] == params["user_id"]
                ]

            if normalized.startswith("SELECT id, user_id"):
                rows = [dict(s) for s in self.searches if s["user_id"] == params["user_id"]]
                return sorted(rows, key=lambda s: s["created_at"], reverse=True)

            if normalized.startswith("SELECT credits FROM user_credits"):
                owner_id = params["owner_id"]
                return [(self.credits[owner_id],)] if owner_id in self.credits else []

            if normalized.startswith("UPDATE user_credits"):
                owner_id, amount = params["owner_id"], params["amount"]
                current = self.credits.get(owner_id)
                if current is None or current < amount:
                    return []
                self.credits[owner_id] = current - amount
                undo.append(lambda: self.credits.__setitem__(owner_id, self.credits[owner_id] + amount))
                return [(self.credits[owner_id],)]

            if normalized.startswith("INSERT INTO user_credits"):
                owner_id, amount = params["owner_id"], params["amount"]
                previous = self.credits.get(owner_id)
                self.credits[owner_id] = (previous or 0) + amount
                if previous is None:
                    undo.append(lambda: self.credits.pop(owner_id))
                else:
                    undo.append(lambda: self.credits.__setitem__(owner_id, previous))
                return [(self.credits[owner_id],)]

            if normalized.startswith("SELECT 1"):
                return [(1,)]

        raise AssertionError(f"unexpected SQL: {normalized}")

    def undo(self, undo_log):
        with self.lock:
            for action in reversed(undo_log):
                action()
        undo_log.clear()


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self._rows = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self._rows = list(self.connection.db.execute(sql, params or {}, self.connection.undo_log))

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows


class FakeConnection:
    def __init__(self, db):
        self.db = db
        self.undo_log = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1
        self.undo_log.clear()

    def rollback(self):
        self.rollbacks += 1
        self.db.undo(self.undo_log)


class FakePool:
    def __init__(self, db):
        self.db = db
        self.connections = []
        self.closed = False

    def getconn(self):
        connection = FakeConnection(self.db)
        self.connections.append(connection)
        return connection

    def putconn(self, conn):
        assert conn in self.connections

    def closeall(self):
        self.closed = True


def make_database(fake_db, name="database"):
    database = Database("postgres://fake", name=name)
    database._pool = FakePool(fake_db)
    return database


@pytest.fixture
def fake_pg():
    return FakePostgres()


@pytest.fixture
def results_db(fake_pg):
    return make_database(fake_pg, "results")


@pytest.fixture
def credits_pg():
    return FakePostgres()


@pytest.fixture
def credits_db(credits_pg):
    return make_database(credits_pg, "credits")
