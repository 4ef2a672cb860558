import sqlite3

import pytest

from swarm_orchestrator.db.engine import MEMORY_DB, init_db
from swarm_orchestrator.db.transactions import TransactionRunner, is_transient


@pytest.fixture
def conn():
    c = init_db(MEMORY_DB)
    c.execute("CREATE TABLE items (name TEXT)")
    yield c
    c.close()


def _count(conn):
    return conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]


class TestIsTransient:
    def test_locked_and_busy(self):
        assert is_transient(sqlite3.OperationalError("database is locked"))
        assert is_transient(sqlite3.OperationalError("database is busy"))

    def test_other_errors(self):
        assert not is_transient(sqlite3.OperationalError("no such table: x"))
        assert not is_transient(ValueError("locked"))


class TestTransactionRunner:
    def test_rejects_zero_attempts(self, conn):
        with pytest.raises(ValueError):
            TransactionRunner(conn, max_attempts=0)

    def test_write_commits(self, conn):
        runner = TransactionRunner(conn)
        runner.write(lambda db: db.execute("INSERT INTO items VALUES ('a')"))
        assert _count(conn) == 1
        assert not conn.in_transaction

    def test_error_rolls_back(self, conn):
        runner = TransactionRunner(conn)

        def work(db):
            db.execute("INSERT INTO items VALUES ('a')")
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            runner.write(work)
        assert _count(conn) == 0
        assert runner.metrics.failures == 1

    def test_retries_transient_conflict(self, conn):
        delays = []
        runner = TransactionRunner(conn, max_attempts=3, base_delay=0.01, sleep=delays.append)
        calls = {"n": 0}

        def work(db):
            calls["n"] += 1
            if calls["n"] < 3:
                raise sqlite3.OperationalError("database is locked")
            db.execute("INSERT INTO items VALUES ('a')")
            return "done"

        assert runner.write(work) == "done"
        assert calls["n"] == 3
        assert delays == [0.01, 0.02]
        metrics = runner.metrics
        assert metrics.transactions == 1
        assert metrics.attempts == 3
        assert metrics.retries == 2
        assert metrics.conflicts == 2
        assert metrics.successes == 1
        assert _count(conn) == 1

    def test_gives_up_after_max_attempts(self, conn):
        runner = TransactionRunner(conn, max_attempts=2, sleep=lambda _: None)

        def work(db):
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            runner.write(work)
        metrics = runner.metrics
        assert metrics.attempts == 2
        assert metrics.failures == 1
        assert metrics.conflicts == 2

    def test_non_transient_error_not_retried(self, conn):
        runner = TransactionRunner(conn, sleep=lambda _: pytest.fail("should not sleep"))

        def work(db):
            db.execute("SELECT * FROM missing_table")

        with pytest.raises(sqlite3.OperationalError):
            runner.read(work)
        assert runner.metrics.attempts == 1

    def test_nested_call_joins_outer_transaction(self, conn):
        runner = TransactionRunner(conn)

        def inner(db):
            db.execute("INSERT INTO items VALUES ('inner')")

        def outer(db):
            db.execute("INSERT INTO items VALUES ('outer')")
            runner.write(inner)
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            runner.write(outer)
        assert _count(conn) == 0
        assert runner.metrics.transactions == 1

    def test_latency_recorded(self, conn):
        runner = TransactionRunner(conn)
        runner.read(lambda db: db.execute("SELECT 1").fetchone())
        assert runner.metrics.last_latency >= 0
        assert runner.metrics.average_latency == runner.metrics.last_latency

    def test_health_check(self, conn):
        runner = TransactionRunner(conn)
        assert runner.health_check()
