"""Short-lived read-through cache for unread counts and notification pages."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any, Callable

logger = logging.getLogger(__name__)

MISS = object()


class NotificationCache:
    def __init__(self, ttl_seconds: float = 30, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: dict[str, tuple[Any, float]] = {}
        # Bumped on invalidation so an in-flight load cannot write back a stale value.
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key(kind: str, user_id: Any, *parts: Any) -> str:
        return ":".join([kind, str(user_id), *(str(part) for part in parts)])

    @staticmethod
    def _user_of(key: str) -> str:
        parts = key.split(":", 2)
        return parts[1] if len(parts) > 1 else ""

    def _generation(self, key: str) -> tuple[int, int]:
        with self._lock:
            return self._epoch, self._generations.get(self._user_of(key), 0)

    def get(self, key: str) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self.misses += 1
                return MISS
            value, stored_at = entry
            if now - stored_at >= self.ttl_seconds:
                del self._store[key]
                self.misses += 1
                return MISS
            self.hits += 1
            return value

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        with self._lock:
            self._store[key] = (value, now)

    def _set_if_current(self, key: str, value: Any, generation: tuple[int, int]) -> None:
        now = self._clock()
        with self._lock:
            if (self._epoch, self._generations.get(self._user_of(key), 0)) != generation:
                return
            self._store[key] = (value, now)

    def invalidate_for_user(self, user_id: Any) -> int:
        """Drop every cached kind for ``user_id``."""
        user = str(user_id)
        with self._lock:
            self._generations[user] = self._generations.get(user, 0) + 1
            stale = [key for key in self._store if self._user_of(key) == user]
            for key in stale:
                del self._store[key]
        return len(stale)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, stored_at) in self._store.items() if now - stored_at >= self.ttl_seconds]
            for key in expired:
                del self._store[key]
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._store.clear()

    def get_or_load(self, key: str, loader: Callable[[], Any]) -> Any:
        try:
            cached = self.get(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache read failed for %s: %s", key, exc)
            return loader()
        if cached is not MISS:
            return cached
        generation = self._generation(key)
        value = loader()
        try:
            self._set_if_current(key, value, generation)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache write failed for %s: %s", key, exc)
        return value

    def stats(self) -> dict[str, Any]:
        with self._lock:
            size = len(self._store)
            total = self.hits + self.misses
            hit_rate = round(self.hits / total * 100, 2) if total else 0.0
            return {"hits": self.hits, "misses": self.misses, "size": size, "hit_rate": hit_rate}
