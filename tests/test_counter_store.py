from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from rate_guard.guard import RateGuard
from rate_guard.models import GuardPolicy, RateRecord
from rate_guard.storage import db as db_module
from rate_guard.storage.counter_store import SqlCounterStore, StoreUnavailable
from rate_guard.storage.memory_store import InMemoryCounterStore

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def sqlite_store(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> SqlCounterStore:
    """SQL store on a fresh SQLite file; DATABASE_URL cleared so SQLite is used."""
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_DATABASE_URL", raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path / "nested" / "rate_guard.db"))
    return SqlCounterStore()


def test_get_missing_key_returns_none(sqlite_store):
    assert sqlite_store.get("user-1_login") is None


def test_first_use_creates_database_file(sqlite_store, tmp_path):
    sqlite_store.get("user-1_login")

    assert (tmp_path / "nested" / "rate_guard.db").exists()


def test_create_then_get_round_trips_aware_timestamps(sqlite_store):
    record = RateRecord(attempts=1, last_attempt=T0)

    assert sqlite_store.create("user-1_login", record) is True

    stored = sqlite_store.get("user-1_login")
    assert stored == record
    assert stored.last_attempt.tzinfo is not None


def test_create_does_not_overwrite_existing_record(sqlite_store):
    blocked = RateRecord(attempts=6, last_attempt=T0, blocked_until=T0 + timedelta(minutes=30))
    sqlite_store.create("user-1_login", blocked)

    created = sqlite_store.create("user-1_login", RateRecord(attempts=1, last_attempt=T0 + timedelta(minutes=1)))

    assert created is False
    assert sqlite_store.get("user-1_login") == blocked


def test_update_applies_only_given_fields(sqlite_store):
    sqlite_store.create("user-1_login", RateRecord(attempts=6, last_attempt=T0, blocked_until=T0 + timedelta(minutes=30)))

    assert sqlite_store.update("user-1_login", {"attempts": 0, "blocked_until": None}) is True

    stored = sqlite_store.get("user-1_login")
    assert stored.attempts == 0
    assert stored.blocked_until is None
    assert stored.last_attempt == T0


def test_update_missing_key_returns_false(sqlite_store):
    assert sqlite_store.update("nobody_login", {"attempts": 0}) is False
    assert sqlite_store.get("nobody_login") is None


@pytest.mark.parametrize("store_factory", [SqlCounterStore, InMemoryCounterStore])
def test_update_rejects_unknown_fields(sqlite_store, store_factory):
    store = store_factory()
    with pytest.raises(ValueError):
        store.update("user-1_login", {"attempts": 1, "role": "admin"})
    with pytest.raises(ValueError):
        store.update("user-1_login", {})


def test_naive_datetimes_are_stored_as_utc(sqlite_store):
    sqlite_store.create("user-1_login", RateRecord(attempts=1, last_attempt=datetime(2024, 3, 1, 12, 0)))

    assert sqlite_store.get("user-1_login").last_attempt == T0


def test_unreachable_database_raises_store_unavailable(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_DATABASE_URL", raising=False)
    # A directory is not an openable database file.
    monkeypatch.setenv("DB_PATH", str(tmp_path))
    store = SqlCounterStore()

    with pytest.raises(StoreUnavailable):
        store.get("user-1_login")
    with pytest.raises(StoreUnavailable):
        store.create("user-1_login", RateRecord(attempts=1, last_attempt=T0))


def test_guard_over_sqlite_store_blocks_and_recovers(sqlite_store):
    now = {"value": T0}
    guard = RateGuard(sqlite_store, GuardPolicy(max_attempts=2), clock=lambda: now["value"])

    assert guard.check_and_record("user-1", "login").remaining_attempts == 1
    assert guard.check_and_record("user-1", "login").remaining_attempts == 0
    blocked = guard.check_and_record("user-1", "login")
    assert blocked.allowed is False
    assert blocked.blocked_until == T0 + timedelta(minutes=30)

    now["value"] = T0 + timedelta(minutes=5)
    guard.record_success("user-1", "login")
    assert guard.check_and_record("user-1", "login").remaining_attempts == 1


def test_guard_over_unreachable_sqlite_fails_open(tmp_path, monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_DATABASE_URL", raising=False)
    monkeypatch.setenv("DB_PATH", str(tmp_path))
    guard = RateGuard(SqlCounterStore())

    decision = guard.check_and_record("user-1", "login")

    assert decision.allowed is True
    assert decision.remaining_attempts is None
    guard.record_success("user-1", "login")


def test_schema_uses_record_key_column(sqlite_store, tmp_path):
    sqlite_store.init()

    with sqlite3.connect(tmp_path / "nested" / "rate_guard.db") as conn:
        columns = [row[1] for row in conn.execute("PRAGMA table_info(rate_limits)")]

    assert columns == ["record_key", "attempts", "last_attempt", "blocked_until"]


def test_unreadable_row_raises_store_unavailable(sqlite_store, tmp_path):
    sqlite_store.init()
    with sqlite3.connect(tmp_path / "nested" / "rate_guard.db") as conn:
        conn.execute(
            "INSERT INTO rate_limits (record_key, attempts, last_attempt, blocked_until) VALUES (?, ?, ?, ?)",
            ("user-1_login", 2, "not-a-timestamp", None),
        )
        conn.commit()

    with pytest.raises(StoreUnavailable):
        sqlite_store.get("user-1_login")

    decision = RateGuard(sqlite_store).check_and_record("user-1", "login")
    assert decision.allowed is True
    assert decision.remaining_attempts is None


def test_postgres_without_driver_raises_store_unavailable(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://guard@localhost:5432/guard")
    monkeypatch.setattr(db_module, "psycopg", None)
    store = SqlCounterStore()

    with pytest.raises(StoreUnavailable):
        store.init()
    with pytest.raises(StoreUnavailable):
        store.get("user-1_login")

    decision = RateGuard(store).check_and_record("user-1", "login")
    assert decision.allowed is True
    assert decision.remaining_attempts is None
