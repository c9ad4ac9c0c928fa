"""
Database helpers for SQLite (local) and Postgres (Supabase).
"""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Type

from rate_guard.config import get_settings

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency for Postgres
    psycopg = None
    dict_row = None


@dataclass(frozen=True)
class DbInfo:
    dialect: str  # "sqlite" or "postgres"
    database_url: Optional[str]
    db_path: str
    timeout_seconds: float


def _database_url() -> Optional[str]:
    return os.getenv("DATABASE_URL") or os.getenv("SUPABASE_DATABASE_URL")


def get_db_info() -> DbInfo:
    settings = get_settings()
    database_url = _database_url()
    if database_url:
        return DbInfo(
            dialect="postgres",
            database_url=database_url,
            db_path=settings.db_path,
            timeout_seconds=settings.store_timeout_seconds,
        )
    return DbInfo(
        dialect="sqlite",
        database_url=None,
        db_path=settings.db_path,
        timeout_seconds=settings.store_timeout_seconds,
    )


def is_postgres() -> bool:
    return get_db_info().dialect == "postgres"


class DriverMissing(RuntimeError):
    """Raised when the configured dialect needs a driver that is not installed."""


def driver_errors() -> Tuple[Type[BaseException], ...]:
    """Exception types that mean the database could not serve a call."""
    errors: Tuple[Type[BaseException], ...] = (sqlite3.Error, OSError, DriverMissing)
    if psycopg is not None:
        errors = errors + (psycopg.Error,)
    return errors


def connect() -> Any:
    info = get_db_info()
    if info.dialect == "postgres":
        if psycopg is None:
            raise DriverMissing("psycopg is required for Postgres connections")
        return psycopg.connect(
            info.database_url,
            row_factory=dict_row,
            connect_timeout=max(1, int(info.timeout_seconds)),
        )
    conn = sqlite3.connect(info.db_path, timeout=info.timeout_seconds)
    conn.row_factory = sqlite3.Row
    return conn


def sql(query: str) -> str:
    """
    Convert parameter placeholders for the active dialect.
    SQLite uses '?', Postgres uses '%s'.
    """
    if is_postgres():
        return query.replace("?", "%s")
    return query
