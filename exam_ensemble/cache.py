import threading
import time
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from .models import Method


class CacheEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    answer: str
    confidence: Optional[int] = None
    method: Optional[Method] = None
    inserted_at_ms: int


class AnswerCache:
    """
    Memory-resident, TTL-bounded map from a normalized question key to the
    last resolved answer. Only resolved answers are stored, never failures.
    """

    def __init__(self, ttl_s: float = 120.0, clock: Callable[[], float] = time.time):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        self.ttl_ms = int(ttl_s * 1000)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _expired(self, entry: CacheEntry, now_ms: int) -> bool:
        return now_ms - entry.inserted_at_ms > self.ttl_ms

    def get(self, key: str) -> Optional[CacheEntry]:
        now_ms = self._now_ms()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, now_ms):
                del self._entries[key]
                return None
            return entry

    def put(
        self,
        key: str,
        answer: str,
        confidence: Optional[int] = None,
        method: Optional[Method] = None,
    ) -> CacheEntry:
        if not answer:
            raise ValueError("refusing to cache an empty answer")
        entry = CacheEntry(
            key=key,
            answer=answer,
            confidence=confidence,
            method=method,
            inserted_at_ms=self._now_ms(),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def evict_expired(self) -> int:
        now_ms = self._now_ms()
        with self._lock:
            stale = [k for k, e in self._entries.items() if self._expired(e, now_ms)]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
