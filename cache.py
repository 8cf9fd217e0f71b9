"""Thread-safe TTL cache for API read models, with key and pattern invalidation."""

import time
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Optional, Tuple


class CacheKeys:
    """Key builders shared by the API layer and the tracking client."""

    @staticmethod
    def module(module_id: int) -> str:
        return f"module:{module_id}"

    @staticmethod
    def framework(framework_id: int) -> str:
        return f"framework:{framework_id}"

    @staticmethod
    def framework_modules(framework_id: int) -> str:
        return f"modules:framework:{framework_id}"

    @staticmethod
    def user_progress(user_id: str) -> str:
        return f"user:{user_id}:progress"

    @staticmethod
    def user_quiz_attempts(user_id: str) -> str:
        return f"user:{user_id}:quiz-attempts"

    @staticmethod
    def scorm_lms_data(user_id: str, sco_id: str) -> str:
        return f"user:{user_id}:scorm:{sco_id}"


class ResponseCache:
    """TTL cache bounded by ``max_keys``; the entry closest to expiry is evicted first."""

    def __init__(
        self,
        ttl: float = 3600.0,
        max_keys: int = 2000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._ttl = ttl
        self._max_keys = max_keys
        self._clock = clock
        self._lock = Lock()

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> Any:
        expires_at = self._clock() + (self._ttl if ttl is None else ttl)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_keys:
                self._evict_one()
            self._entries[key] = (expires_at, value)
        return value

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def get_or_set(self, key: str, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = loader()
        if value is not None:
            self.set(key, value, ttl)
        return value

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def invalidate_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._entries.pop(key, None)

    def invalidate_pattern(self, pattern: str) -> int:
        """Drop every key containing ``pattern``; returns how many were dropped."""
        with self._lock:
            matching = [key for key in self._entries if pattern in key]
            for key in matching:
                del self._entries[key]
            return len(matching)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_one(self) -> None:
        # Caller holds the lock
        oldest = min(self._entries.items(), key=lambda item: item[1][0])[0]
        del self._entries[oldest]
