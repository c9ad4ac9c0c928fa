"""
Counter store: persistent rate records keyed by "{identity}_{action}".

rate_limits table: (record_key, attempts, last_attempt, blocked_until)
Timestamps are ISO-8601 UTC text. One connection per call; DB_PATH from env
(default ./data/rate_guard.db), Postgres when DATABASE_URL is set.

Reads and writes are separate calls. Each single call is atomic, a
get-then-update pair is not.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from rate_guard.models import RateRecord
from rate_guard.storage.db import connect, driver_errors, is_postgres, sql

logger = logging.getLogger("rate-guard")

UPDATABLE_FIELDS = ("attempts", "last_attempt", "blocked_until")


class StoreUnavailable(RuntimeError):
    """Raised when the backing store cannot serve a call (network, timeout, backend error)."""


class CounterStore:
    """
    Narrow interface the guard needs from a store.

    `create` never overwrites an existing record and `update` applies all of
    its fields in one call. Swapping in an atomic increment-with-expiry backend
    only requires another subclass.
    """

    name = "abstract"

    def init(self) -> None:
        """Create whatever schema the backend needs. Idempotent."""

    def get(self, key: str) -> Optional[RateRecord]:  # pragma: no cover - interface only
        raise NotImplementedError

    def create(self, key: str, record: RateRecord) -> bool:  # pragma: no cover - interface only
        """Insert the record if the key is absent; False when it already exists."""
        raise NotImplementedError

    def update(self, key: str, fields: Mapping[str, Any]) -> bool:  # pragma: no cover - interface only
        """Apply all fields atomically; False when the key does not exist."""
        raise NotImplementedError


def check_fields(fields: Mapping[str, Any]) -> None:
    unknown = [name for name in fields if name not in UPDATABLE_FIELDS]
    if unknown:
        raise ValueError(f"Unknown rate record field(s): {', '.join(sorted(unknown))}")
    if not fields:
        raise ValueError("update requires at least one field")


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_text(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SqlCounterStore(CounterStore):
    """SQLite- or Postgres-backed counter store."""

    name = "sql"

    def __init__(self) -> None:
        self._ready = False

    def _ensure_ready(self) -> None:
        # Idempotent; ensures the table exists when no lifespan ran before first use.
        if not self._ready:
            self.init()

    def _ensure_sqlite_dir(self) -> None:
        if is_postgres():
            return
        from rate_guard.config import get_settings

        path = get_settings().db_path
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    def init(self) -> None:
        """
        Create the rate_limits table and set PRAGMAs.
        Call at app startup (lifespan) or before first use.
        """
        try:
            self._ensure_sqlite_dir()
            with connect() as conn:
                if not is_postgres():
                    conn.execute("PRAGMA journal_mode=WAL")
                    conn.execute("PRAGMA synchronous=NORMAL")
                    conn.execute("PRAGMA busy_timeout=3000")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS rate_limits (
                        record_key TEXT PRIMARY KEY,
                        attempts INTEGER NOT NULL,
                        last_attempt TEXT NOT NULL,
                        blocked_until TEXT
                    )
                    """
                )
                conn.commit()
        except driver_errors() as exc:
            raise StoreUnavailable(f"Could not initialise rate_limits table: {exc}") from exc
        self._ready = True

    def get(self, key: str) -> Optional[RateRecord]:
        self._ensure_ready()
        try:
            with connect() as conn:
                row = conn.execute(
                    sql("SELECT attempts, last_attempt, blocked_until FROM rate_limits WHERE record_key = ?"),
                    (key,),
                ).fetchone()
        except driver_errors() as exc:
            raise StoreUnavailable(f"Could not read rate record {key!r}: {exc}") from exc
        if row is None:
            return None
        try:
            return RateRecord(
                attempts=int(row["attempts"]),
                last_attempt=_from_text(row["last_attempt"]),
                blocked_until=_from_text(row["blocked_until"]),
            )
        except (TypeError, ValueError) as exc:
            # pydantic's ValidationError is a ValueError.
            raise StoreUnavailable(f"Unreadable rate record {key!r}: {exc}") from exc

    def create(self, key: str, record: RateRecord) -> bool:
        self._ensure_ready()
        try:
            with connect() as conn:
                cur = conn.execute(
                    sql(
                        "INSERT INTO rate_limits (record_key, attempts, last_attempt, blocked_until) "
                        "VALUES (?, ?, ?, ?) ON CONFLICT (record_key) DO NOTHING"
                    ),
                    (
                        key,
                        record.attempts,
                        _to_text(record.last_attempt),
                        _to_text(record.blocked_until),
                    ),
                )
                created = cur.rowcount == 1
                conn.commit()
        except driver_errors() as exc:
            raise StoreUnavailable(f"Could not create rate record {key!r}: {exc}") from exc
        if not created:
            logger.debug("store create skipped key=%s reason=exists", key)
        return created

    def update(self, key: str, fields: Mapping[str, Any]) -> bool:
        check_fields(fields)
        self._ensure_ready()
        values: Dict[str, Any] = {}
        for name, value in fields.items():
            values[name] = _to_text(value) if name != "attempts" else int(value)
        assignments = ", ".join(f"{name} = ?" for name in values)
        try:
            with connect() as conn:
                cur = conn.execute(
                    sql(f"UPDATE rate_limits SET {assignments} WHERE record_key = ?"),
                    (*values.values(), key),
                )
                updated = cur.rowcount == 1
                conn.commit()
        except driver_errors() as exc:
            raise StoreUnavailable(f"Could not update rate record {key!r}: {exc}") from exc
        return updated
