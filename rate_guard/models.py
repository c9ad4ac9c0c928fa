"""
Data models for the rate guard.

Defines GuardPolicy, RateRecord, Decision and the HTTP request body.
Do not duplicate these definitions elsewhere.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field


class GuardPolicy(BaseModel):
    """Attempt cap, rolling window and block length for one action."""

    max_attempts: int = Field(default=5, ge=1)
    window_seconds: int = Field(default=15 * 60, gt=0)
    block_seconds: int = Field(default=30 * 60, gt=0)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    @property
    def block(self) -> timedelta:
        return timedelta(seconds=self.block_seconds)


class RateRecord(BaseModel):
    """Stored counter for one (identity, action) pair."""

    attempts: int = Field(ge=0)
    last_attempt: datetime
    blocked_until: Optional[datetime] = None

    def is_blocked(self, now: datetime) -> bool:
        return self.blocked_until is not None and now < self.blocked_until


class Decision(BaseModel):
    """Outcome of a single check: allowed, remaining attempts or the block end."""

    allowed: bool
    remaining_attempts: Optional[int] = None
    blocked_until: Optional[datetime] = None

    @classmethod
    def fail_open(cls) -> "Decision":
        return cls(allowed=True)

    def retry_after_seconds(self, now: datetime) -> Optional[int]:
        """Whole seconds until the block ends, rounded up; None when not blocked."""
        if self.allowed or self.blocked_until is None:
            return None
        delta = (self.blocked_until - now).total_seconds()
        if delta <= 0:
            return 0
        return math.ceil(delta)


class GuardRequest(BaseModel):
    """Body for POST /guard/check and POST /guard/success."""

    action: str
    identity: Optional[str] = None  # ignored when the caller's session token names the subject
