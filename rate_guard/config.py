import logging
import os
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env from current directory so store and policy settings are picked up automatically.
load_dotenv()

logger = logging.getLogger("rate-guard")


class Settings(BaseModel):
    """Runtime configuration loaded from environment variables."""

    max_attempts: int
    window_seconds: int
    block_seconds: int
    policy_file: Optional[str]
    store_backend: str
    auth_token: Optional[str]
    clerk_jwks_url: Optional[str]
    clerk_jwt_key: Optional[str]
    clerk_issuer: Optional[str]
    clerk_audience: Optional[str]
    clerk_authorized_parties: List[str]
    db_path: str = "./data/rate_guard.db"
    store_timeout_seconds: float = 5.0
    cors_origins: str = "*"

    service_name: str = "rate-guard"
    http_port: int = 4290


@lru_cache(maxsize=1)
def _base_settings() -> Settings:
    """
    Base settings lookup.

    Only defaults live here; `get_settings` re-reads the environment on every
    call and overrides these fields.
    """

    return Settings(
        max_attempts=5,
        window_seconds=15 * 60,
        block_seconds=30 * 60,
        policy_file=None,
        store_backend="sql",
        auth_token=None,
        clerk_jwks_url=None,
        clerk_jwt_key=None,
        clerk_issuer=None,
        clerk_audience=None,
        clerk_authorized_parties=[],
        db_path="./data/rate_guard.db",
        store_timeout_seconds=5.0,
        cors_origins="*",
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("config invalid integer %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("config non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("config invalid number %s=%r; using %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("config non-positive %s=%r; using %s", name, raw, default)
        return default
    return value


def get_settings() -> Settings:
    """
    Return Settings built from the *current* environment.

    Tests mutate os.environ at runtime via the `env_vars` helper, so we must
    read directly from the environment on each call instead of caching.
    """

    base = _base_settings()
    auth_token = os.getenv("AUTH_TOKEN") or None
    clerk_jwks_url = os.getenv("CLERK_JWKS_URL") or None
    clerk_jwt_key = os.getenv("CLERK_JWT_KEY") or None
    clerk_issuer = os.getenv("CLERK_ISSUER") or None
    clerk_audience = os.getenv("CLERK_AUDIENCE") or None
    clerk_authorized_parties_raw = os.getenv("CLERK_AUTHORIZED_PARTIES") or ""
    clerk_authorized_parties = [
        part.strip() for part in clerk_authorized_parties_raw.split(",") if part.strip()
    ]

    store_backend = (os.getenv("STORE_BACKEND") or base.store_backend).strip().lower()
    if store_backend not in {"sql", "memory"}:
        logger.warning("config unknown STORE_BACKEND=%r; using %s", store_backend, base.store_backend)
        store_backend = base.store_backend

    return Settings(
        max_attempts=_env_int("GUARD_MAX_ATTEMPTS", base.max_attempts),
        window_seconds=_env_int("GUARD_WINDOW_SECONDS", base.window_seconds),
        block_seconds=_env_int("GUARD_BLOCK_SECONDS", base.block_seconds),
        policy_file=os.getenv("GUARD_POLICY_FILE") or None,
        store_backend=store_backend,
        auth_token=auth_token,
        clerk_jwks_url=clerk_jwks_url,
        clerk_jwt_key=clerk_jwt_key,
        clerk_issuer=clerk_issuer,
        clerk_audience=clerk_audience,
        clerk_authorized_parties=clerk_authorized_parties,
        db_path=os.getenv("DB_PATH") or base.db_path,
        store_timeout_seconds=_env_float("STORE_TIMEOUT_SECONDS", base.store_timeout_seconds),
        cors_origins=os.getenv("CORS_ORIGINS") or base.cors_origins,
        service_name=base.service_name,
        http_port=_env_int("PORT", base.http_port),
    )
