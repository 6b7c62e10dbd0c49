from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Iterator

from stockledger.core.config import settings
from stockledger.core.errors import ConflictError
from stockledger.core.observability import log_event


@dataclass
class _PairLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


class ItemLockRegistry:
    """
    One lock per (store_id, product_id). Held for a single read-plan-apply
    sequence; acquisition is bounded by a timeout. A pair's lock is dropped
    once no caller holds or waits for it.
    """

    def __init__(self, *, timeout_seconds: float | None = None):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.lock_timeout_seconds
        self._locks: dict[tuple[str, str], _PairLock] = {}
        self._lock = Lock()

    def _checkout(self, key: tuple[str, str]) -> _PairLock:
        with self._lock:
            entry = self._locks.setdefault(key, _PairLock())
            entry.users += 1
            return entry

    def _checkin(self, key: tuple[str, str], entry: _PairLock) -> None:
        with self._lock:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    @contextmanager
    def hold(self, store_id: str, product_id: str) -> Iterator[None]:
        key = (str(store_id), str(product_id))
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=self.timeout_seconds):
                log_event(
                    "lock_timeout",
                    store_id=key[0],
                    product_id=key[1],
                    timeout_seconds=self.timeout_seconds,
                )
                raise ConflictError("busy, retry")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)
