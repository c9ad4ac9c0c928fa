"""
Guard API: POST /guard/check, POST /guard/success.

Guard and identity calls may block on the store or JWKS fetch, so they run in the
threadpool.

Contract: 200 + decision for every check, allowed or not (denials add Retry-After);
200 + ok for success. Error responses use the build_error_envelope body (400/401).
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from rate_guard.dependencies import AuthError, get_guard, resolve_identity
from rate_guard.envelopes import build_error_envelope, build_success_envelope, new_request_id
from rate_guard.guard import InvalidInput, RateGuard
from rate_guard.models import GuardRequest

logger = logging.getLogger("rate-guard")

router = APIRouter(prefix="/guard", tags=["guard"])


def _guard_error(request_id: str, status_code: int, code: str, message: str, details: Any = None) -> JSONResponse:
    _, body = build_error_envelope(
        request_id=request_id,
        status_code=status_code,
        code=code,
        message=message,
        details=details,
    )
    return JSONResponse(status_code=status_code, content=body)


async def _parse_call(request: Request, request_id: str) -> Tuple[Optional[Tuple[str, str]], Optional[JSONResponse]]:
    """Return ((identity, action), None) or (None, error response)."""
    try:
        raw = await request.json()
    except Exception:
        return None, _guard_error(request_id, 400, "MALFORMED_REQUEST", "Request body must be valid JSON")
    try:
        body = GuardRequest.model_validate(raw)
    except ValidationError as exc:
        return None, _guard_error(
            request_id,
            400,
            "MALFORMED_REQUEST",
            "Request body must include 'action' and optionally 'identity' strings",
            details=exc.errors(include_url=False, include_context=False),
        )
    try:
        identity = await run_in_threadpool(resolve_identity, request, body.identity)
    except AuthError as exc:
        return None, _guard_error(request_id, 401, "UNAUTHORIZED", str(exc))
    return (identity or "", body.action), None


@router.post("/check")
async def post_guard_check(request: Request, guard: RateGuard = Depends(get_guard)) -> JSONResponse:
    """
    Check and record one attempt. Body: { "action", "identity"? }.
    Returns 200 with { decision: { allowed, remaining_attempts, blocked_until }, meta }.
    """
    request_id = new_request_id()
    parsed, error = await _parse_call(request, request_id)
    if error is not None:
        return error
    identity, action = parsed
    try:
        decision = await run_in_threadpool(guard.check_and_record, identity, action)
    except InvalidInput as exc:
        return _guard_error(request_id, 400, "INVALID_INPUT", str(exc))

    logger.info(
        "check request_id=%s action=%s allowed=%s remaining=%s",
        request_id,
        action,
        decision.allowed,
        decision.remaining_attempts,
    )
    body = build_success_envelope({"decision": decision.model_dump(mode="json")}, request_id=request_id)
    headers = {}
    retry_after = decision.retry_after_seconds(guard.now())
    if retry_after is not None:
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=200, content=body, headers=headers)


@router.post("/success")
async def post_guard_success(request: Request, guard: RateGuard = Depends(get_guard)) -> JSONResponse:
    """
    Record that the guarded action succeeded, clearing counters and blocks.
    Returns 200 with { ok: true, meta } even when nothing was recorded before.
    """
    request_id = new_request_id()
    parsed, error = await _parse_call(request, request_id)
    if error is not None:
        return error
    identity, action = parsed
    try:
        await run_in_threadpool(guard.record_success, identity, action)
    except InvalidInput as exc:
        return _guard_error(request_id, 400, "INVALID_INPUT", str(exc))
    return JSONResponse(status_code=200, content=build_success_envelope({"ok": True}, request_id=request_id))
