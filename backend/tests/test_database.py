"""Tests for the DuckDB transaction runner."""
import duckdb
import pytest

from facechat.database import Database
from facechat.errors import NotFound, TransientStoreError


def test_commits_work(database):
    def work(cur):
        cur.execute(
            "INSERT INTO users VALUES ('u1', 'alice', 'alice@example.com', 'h', 't', TIMESTAMP '2025-01-01 12:00:00')"
        )
        return "done"

    assert database.transaction(work, label="insert") == "done"
    assert database.read(lambda cur: cur.execute("SELECT count(*) FROM users").fetchone()[0]) == 1


def test_conflicts_are_retried_then_surface(database):
    attempts = []

    def work(cur):
        attempts.append(1)
        raise duckdb.TransactionException("Conflict on update")

    with pytest.raises(TransientStoreError):
        database.transaction(work, label="always-conflicts")
    assert len(attempts) == 8


def test_conflict_then_success(database):
    attempts = []

    def work(cur):
        attempts.append(1)
        if len(attempts) < 3:
            raise duckdb.TransactionException("Conflict on update")
        return len(attempts)

    assert database.transaction(work, label="flaky") == 3


def test_domain_errors_roll_back_without_retry(database):
    attempts = []

    def work(cur):
        attempts.append(1)
        cur.execute(
            "INSERT INTO users VALUES ('u1', 'alice', 'alice@example.com', 'h', 't', TIMESTAMP '2025-01-01 12:00:00')"
        )
        raise NotFound("nope")

    with pytest.raises(NotFound):
        database.transaction(work, label="domain-error")
    assert len(attempts) == 1
    assert database.read(lambda cur: cur.execute("SELECT count(*) FROM users").fetchone()[0]) == 0


def test_closed_database(database):
    database.close()
    database.close()
    with pytest.raises(TransientStoreError):
        database.read(lambda cur: cur.execute("SELECT 1").fetchone())


def conflicting(cur):
    raise duckdb.TransactionException("Conflict on update")


def test_retries_do_not_sleep_by_default():
    pauses = []
    db = Database(":memory:", max_retries=3, sleep=pauses.append)
    try:
        with pytest.raises(TransientStoreError):
            db.transaction(conflicting, label="no-backoff")
    finally:
        db.close()
    assert pauses == []


def test_backoff_grows_per_attempt():
    pauses = []
    db = Database(":memory:", max_retries=3, retry_backoff_s=0.1, sleep=pauses.append)
    try:
        with pytest.raises(TransientStoreError):
            db.transaction(conflicting, label="backoff")
    finally:
        db.close()
    assert pauses == pytest.approx([0.1, 0.2])
