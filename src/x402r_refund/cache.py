"""
Bounded cache of settlement results keyed by authorization nonce.

Facilitator hosts that settle refund payments inside a before-settle hook
need to hand the result back to the ``/settle`` handler, and to answer a
retried request for the same nonce without settling twice. Entries expire
after ``ttl_seconds`` and the oldest entries are evicted beyond
``max_entries``, so repeated failing requests cannot grow it without bound.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from .types import SettleResponse


class SettlementResultCache:
    """Thread-safe TTL + LRU-by-insertion cache of :class:`SettleResponse`."""

    def __init__(
        self,
        max_entries: int = 1024,
        ttl_seconds: float = 600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, tuple[float, SettleResponse]]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _key(nonce: str) -> str:
        return nonce.lower()

    def _expire(self, now: float) -> None:
        while self._entries:
            key, (expires_at, _) = next(iter(self._entries.items()))
            if expires_at > now:
                break
            del self._entries[key]

    def put(self, nonce: str, result: SettleResponse) -> None:
        with self._lock:
            now = self._clock()
            self._expire(now)
            key = self._key(nonce)
            self._entries.pop(key, None)
            self._entries[key] = (now + self.ttl_seconds, result)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get(self, nonce: str) -> Optional[SettleResponse]:
        with self._lock:
            self._expire(self._clock())
            entry = self._entries.get(self._key(nonce))
            return entry[1] if entry else None

    def pop(self, nonce: str) -> Optional[SettleResponse]:
        with self._lock:
            self._expire(self._clock())
            entry = self._entries.pop(self._key(nonce), None)
            return entry[1] if entry else None

    def __len__(self) -> int:
        with self._lock:
            self._expire(self._clock())
            return len(self._entries)
