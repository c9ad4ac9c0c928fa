from __future__ import annotations

import uuid
from typing import Any, Dict, Tuple

from .config import get_settings


def new_request_id() -> str:
    return str(uuid.uuid4())


def _meta(request_id: str) -> Dict[str, Any]:
    return {
        "request_id": request_id,
        "service": get_settings().service_name,
    }


def build_success_envelope(payload: Dict[str, Any], *, request_id: str) -> Dict[str, Any]:
    body = dict(payload)
    body["meta"] = _meta(request_id)
    return body


def build_error_envelope(
    *,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> Tuple[int, Dict[str, Any]]:
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
        "meta": _meta(request_id),
    }
    return status_code, body
