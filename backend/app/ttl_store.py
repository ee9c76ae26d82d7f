"""Short-lived keyed storage for in-flight WebAuthn challenges and OIDC codes.

Entries live in process memory only and disappear on restart, which is
acceptable for values that expire within minutes anyway. Every access goes
through one lock, so ``take()`` is an atomic read-and-delete: when two
requests race on the same key exactly one of them receives the value.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class ExpiringStore(Generic[T]):
    def __init__(self, name: str, clock: Callable[[], float] = time.time) -> None:
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry[T]] = {}

    def put(self, key: str, value: T, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def peek(self, key: str) -> T | None:
        """Return the live value without consuming it."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return None
            return entry.value

    def take(self, key: str) -> T | None:
        """Remove and return the value. Expired entries read as absent."""
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or self._clock() >= entry.expires_at:
            return None
        return entry.value

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
