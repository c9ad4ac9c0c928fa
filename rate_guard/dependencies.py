from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request
import jwt
from jwt import PyJWKClient

from .config import Settings, get_settings
from .guard import RateGuard
from .policy_loader import load_policies
from .storage.counter_store import CounterStore, SqlCounterStore
from .storage.memory_store import InMemoryCounterStore


class AuthError(RuntimeError):
    """Raised when authentication fails."""


def build_store(settings: Optional[Settings] = None) -> CounterStore:
    settings = settings or get_settings()
    if settings.store_backend == "memory":
        return InMemoryCounterStore()
    return SqlCounterStore()


def build_guard(settings: Optional[Settings] = None) -> RateGuard:
    """Construct a guard from the current environment and policy file."""
    settings = settings or get_settings()
    policies = load_policies(settings=settings)
    return RateGuard(build_store(settings), policies.default, policies=policies.actions)


_guard: Optional[RateGuard] = None
_guard_lock = Lock()


def get_guard() -> RateGuard:
    """
    Dependency returning the process-wide guard.

    One instance per process so per-key locks are shared between requests.
    Tests override this function via FastAPI's dependency_overrides.
    """
    global _guard
    with _guard_lock:
        if _guard is None:
            _guard = build_guard()
        return _guard


def reset_guard() -> None:
    """Drop the cached guard so the next call rebuilds it from the environment."""
    global _guard
    with _guard_lock:
        _guard = None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        return token or None
    return None


def _get_session_cookie(request: Request) -> Optional[str]:
    cookie_token = request.cookies.get("__session")
    return cookie_token or None


_jwks_clients: Dict[str, PyJWKClient] = {}


def _get_cached_jwks_client(jwks_url: str) -> PyJWKClient:
    # PyJWKClient caches keys by kid; keep one instance per URL.
    if not jwks_url:
        raise AuthError("Clerk JWKS URL is not configured")
    client = _jwks_clients.get(jwks_url)
    if client is None:
        client = PyJWKClient(jwks_url)
        _jwks_clients[jwks_url] = client
    return client


def _verify_clerk_token(token: str, settings: Settings) -> Dict[str, Any]:
    try:
        unverified_header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid session token") from exc

    if unverified_header.get("alg") != "RS256":
        raise AuthError("Unsupported token algorithm")

    decode_kwargs: Dict[str, Any] = {
        "algorithms": ["RS256"],
        "options": {"verify_aud": bool(settings.clerk_audience)},
    }
    if settings.clerk_issuer:
        decode_kwargs["issuer"] = settings.clerk_issuer
    if settings.clerk_audience:
        decode_kwargs["audience"] = settings.clerk_audience

    try:
        if settings.clerk_jwt_key:
            claims = jwt.decode(token, settings.clerk_jwt_key, **decode_kwargs)
        else:
            jwks_client = _get_cached_jwks_client(settings.clerk_jwks_url or "")
            signing_key = jwks_client.get_signing_key_from_jwt(token).key
            claims = jwt.decode(token, signing_key, **decode_kwargs)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired session token") from exc

    authorized_parties = settings.clerk_authorized_parties
    if authorized_parties:
        azp = claims.get("azp")
        if not azp or azp not in authorized_parties:
            raise AuthError("Unauthorized token issuer")

    return claims


def require_clerk_user_id(request: Request, settings: Settings) -> str:
    """
    Require a Clerk session token and return its subject (the user id).
    """
    token = _get_bearer_token(request) or _get_session_cookie(request)
    if not token:
        raise AuthError("Missing session token")

    claims = _verify_clerk_token(token, settings)
    user_id = claims.get("sub")
    if not user_id:
        raise AuthError("Missing user id in token")
    return str(user_id)


def resolve_identity(request: Request, body_identity: Optional[str]) -> Optional[str]:
    """
    Work out whose attempts an HTTP call counts against.

    Priority:
    - If Clerk verification is configured, the verified token subject wins and
      the body identity is ignored.
    - Else if AUTH_TOKEN is set, the bearer must match and the body identity is used.
    - Else the body identity is used as given.

    Returns None when no identity is available; the guard rejects that as invalid input.
    """
    settings = get_settings()
    if settings.clerk_jwt_key or settings.clerk_jwks_url:
        return require_clerk_user_id(request, settings)

    if settings.auth_token:
        supplied = _get_bearer_token(request)
        if supplied is None:
            raise AuthError("Missing or invalid Authorization header")
        if supplied != settings.auth_token:
            raise AuthError("Invalid bearer token")

    return body_identity
