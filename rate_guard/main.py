from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .dependencies import get_guard
from .guard import RateGuard
from .routers import guard as guard_router
from .storage.counter_store import StoreUnavailable


logger = logging.getLogger("rate-guard")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the counter table on startup."""
    try:
        provider = app.dependency_overrides.get(get_guard, get_guard)
        provider().store.init()
    except StoreUnavailable:
        # Checks fail open until the store comes back; do not refuse to boot.
        logger.warning("startup store init failed", exc_info=True)
    yield


app = FastAPI(title="Rate Guard", version="0.1.0", lifespan=lifespan)


# CORS: controlled by env CORS_ORIGINS (e.g. * or http://localhost:3000)
_cors_origins_list = [o.strip() for o in get_settings().cors_origins.strip().split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(guard_router.router)


@app.get("/")
async def root() -> Dict[str, Any]:
    """
    Service metadata endpoint.
    """
    return {
        "service": get_settings().service_name,
        "version": app.version,
        "docs": "/docs",
        "health": "/health",
        "check": "/guard/check",
        "success": "/guard/success",
    }


@app.get("/health")
async def health(guard: RateGuard = Depends(get_guard)) -> JSONResponse:
    """
    Simple health check. Reports which counter store backend is active.
    """
    payload = {
        "status": "ok",
        "service": get_settings().service_name,
        "store": guard.store.name,
    }
    return JSONResponse(status_code=200, content=payload)


def get_app() -> FastAPI:
    """Convenience accessor for external runners."""
    return app
