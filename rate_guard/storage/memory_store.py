"""In-process counter store for tests and single-process deployments."""

from __future__ import annotations

from threading import Lock
from typing import Any, Dict, Mapping, Optional

from rate_guard.models import RateRecord
from rate_guard.storage.counter_store import CounterStore, StoreUnavailable, check_fields


class InMemoryCounterStore(CounterStore):
    """
    Dict-backed store. Each method holds the store lock, so single calls are
    atomic exactly like the SQL store; a get followed by an update is not.

    Set `available = False` to make every call raise StoreUnavailable.
    """

    name = "memory"

    def __init__(self) -> None:
        self._records: Dict[str, RateRecord] = {}
        self._lock = Lock()
        self.available = True
        self.calls: Dict[str, int] = {"get": 0, "create": 0, "update": 0}

    def _check_available(self, op: str) -> None:
        self.calls[op] += 1
        if not self.available:
            raise StoreUnavailable(f"memory store offline during {op}")

    def get(self, key: str) -> Optional[RateRecord]:
        with self._lock:
            self._check_available("get")
            record = self._records.get(key)
            return record.model_copy() if record is not None else None

    def create(self, key: str, record: RateRecord) -> bool:
        with self._lock:
            self._check_available("create")
            if key in self._records:
                return False
            self._records[key] = record.model_copy()
            return True

    def update(self, key: str, fields: Mapping[str, Any]) -> bool:
        check_fields(fields)
        with self._lock:
            self._check_available("update")
            record = self._records.get(key)
            if record is None:
                return False
            self._records[key] = record.model_copy(update=dict(fields))
            return True

    def __len__(self) -> int:
        return len(self._records)
