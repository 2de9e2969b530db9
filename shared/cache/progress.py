"""Short-lived key/value cache for job progress mirrors.

Values are stored as deep copies so readers never observe a list that the
running job is still mutating.
"""
from __future__ import annotations

import copy
import datetime as dt
import threading
from typing import Any, Callable, Dict, Optional

UTC = dt.timezone.utc

DEFAULT_TTL_SEC = 6 * 60 * 60


class _Entry:
    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: dt.datetime) -> None:
        self.value = value
        self.expires_at = expires_at


class ProgressCache:
    def __init__(
        self,
        *,
        default_ttl_sec: int = DEFAULT_TTL_SEC,
        clock: Callable[[], dt.datetime] | None = None,
    ) -> None:
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl_sec
        self._clock = clock or (lambda: dt.datetime.now(UTC))

    def put(self, key: str, value: Any, ttl_sec: Optional[int] = None) -> None:
        ttl = self._default_ttl if ttl_sec is None else ttl_sec
        expires = self._clock() + dt.timedelta(seconds=ttl)
        with self._lock:
            self._entries[key] = _Entry(copy.deepcopy(value), expires)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if entry.expires_at <= self._clock():
                self._entries.pop(key, None)
                return default
            return copy.deepcopy(entry.value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


_DEFAULT_CACHE = ProgressCache()


def get_progress_cache() -> ProgressCache:
    return _DEFAULT_CACHE
