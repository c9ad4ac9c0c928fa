"""
Per-identity, per-action abuse guard.

Counts attempts in a rolling window and escalates to a timed block once the
cap is exceeded. Store outages fail open.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from threading import Lock
from typing import Callable, Dict, Iterator, Mapping, Optional

from .models import Decision, GuardPolicy, RateRecord
from .storage.counter_store import CounterStore, StoreUnavailable

logger = logging.getLogger("rate-guard")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvalidInput(ValueError):
    """Raised when identity or action is empty; a caller bug, never an abuse signal."""


class RateGuard:
    def __init__(
        self,
        store: CounterStore,
        policy: Optional[GuardPolicy] = None,
        *,
        policies: Optional[Mapping[str, GuardPolicy]] = None,
        clock: Clock = utcnow,
        serialize_per_key: bool = True,
    ):
        self._store = store
        self._policy = policy or GuardPolicy()
        self._policies: Dict[str, GuardPolicy] = dict(policies or {})
        self._clock = clock
        self._serialize = serialize_per_key
        self._locks: Dict[str, _KeyLock] = {}
        self._locks_guard = Lock()

    @property
    def store(self) -> CounterStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def key_for(identity: str, action: str) -> str:
        return f"{identity}_{action}"

    def policy_for(self, action: str) -> GuardPolicy:
        return self._policies.get(action, self._policy)

    def check_and_record(self, identity: str, action: str) -> Decision:
        """
        Decide whether `action` is permitted for `identity` right now and record the attempt.

        Returns a Decision with remaining_attempts when allowed, or blocked_until
        when denied. If the store cannot be reached the decision is a bare
        allowed=True.
        """
        _validate(identity, action)
        key = self.key_for(identity, action)
        policy = self.policy_for(action)
        try:
            with self._key_lock(key):
                return self._decide(key, policy)
        except StoreUnavailable:
            logger.warning("guard fail-open key=%s", key, exc_info=True)
            return Decision.fail_open()

    def record_success(self, identity: str, action: str) -> None:
        """
        Clear the counter and any active block after the guarded action succeeded.

        last_attempt is left as is. Unknown keys and store failures are no-ops.
        """
        _validate(identity, action)
        key = self.key_for(identity, action)
        try:
            with self._key_lock(key):
                updated = self._store.update(key, {"attempts": 0, "blocked_until": None})
        except StoreUnavailable:
            logger.warning("guard record_success failed key=%s", key, exc_info=True)
            return
        if not updated:
            logger.debug("guard record_success key=%s no record", key)

    def _decide(self, key: str, policy: GuardPolicy) -> Decision:
        now = self._clock()
        record = self._store.get(key)

        if record is None:
            created = self._store.create(key, RateRecord(attempts=1, last_attempt=now))
            if created:
                return Decision(allowed=True, remaining_attempts=policy.max_attempts - 1)
            # Another writer created it between our read and insert; decide against theirs.
            record = self._store.get(key)
            if record is None:
                raise StoreUnavailable(f"rate record {key!r} vanished after create conflict")

        if record.is_blocked(now):
            return Decision(allowed=False, blocked_until=record.blocked_until)

        if record.last_attempt < now - policy.window:
            self._store.update(key, {"attempts": 1, "last_attempt": now, "blocked_until": None})
            return Decision(allowed=True, remaining_attempts=policy.max_attempts - 1)

        new_attempts = record.attempts + 1
        if new_attempts > policy.max_attempts:
            blocked_until = now + policy.block
            self._store.update(
                key,
                {"attempts": new_attempts, "last_attempt": now, "blocked_until": blocked_until},
            )
            logger.info(
                "guard blocked key=%s attempts=%s until=%s",
                key,
                new_attempts,
                blocked_until.isoformat(),
            )
            return Decision(allowed=False, blocked_until=blocked_until)

        self._store.update(key, {"attempts": new_attempts, "last_attempt": now})
        return Decision(allowed=True, remaining_attempts=policy.max_attempts - new_attempts)

    @contextmanager
    def _key_lock(self, key: str) -> Iterator[None]:
        if not self._serialize:
            yield
            return
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _KeyLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[key]


class _KeyLock:
    """Lock for one key plus the number of callers holding or waiting on it."""

    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = Lock()
        self.holders = 0


def _validate(identity: str, action: str) -> None:
    if not isinstance(identity, str) or not identity.strip():
        raise InvalidInput("identity must be a non-empty string")
    if not isinstance(action, str) or not action.strip():
        raise InvalidInput("action must be a non-empty string")
