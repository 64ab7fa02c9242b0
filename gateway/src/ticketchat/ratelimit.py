from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Dict, Protocol

from .clock import now_ms


SENDS_PER_WINDOW = 20
WINDOW_MS = 60_000


class RateLimiter(Protocol):
    def allow(self, key: str) -> bool:
        ...


@dataclass
class RateLimitEntry:
    count: int
    window_start_ms: int


class FixedWindowRateLimiter:
    """Counts sends per wallet in fixed windows.

    A window opens on the first send and closes once more than ``window_ms``
    has elapsed since it opened; the next send starts a fresh window. A burst
    straddling two windows can therefore admit up to twice ``limit``.
    """

    def __init__(
        self,
        limit: int = SENDS_PER_WINDOW,
        window_ms: int = WINDOW_MS,
        *,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._now = now_func
        self._lock = threading.Lock()
        self._windows: Dict[str, RateLimitEntry] = {}

    def allow(self, key: str) -> bool:
        key = key.lower()
        now = self._now()
        with self._lock:
            entry = self._windows.get(key)
            if entry is None or now - entry.window_start_ms > self.window_ms:
                self._windows[key] = RateLimitEntry(count=1, window_start_ms=now)
                return True
            if entry.count >= self.limit:
                return False
            entry.count += 1
            return True

    def entry(self, key: str) -> RateLimitEntry | None:
        with self._lock:
            entry = self._windows.get(key.lower())
            if entry is None:
                return None
            return RateLimitEntry(count=entry.count, window_start_ms=entry.window_start_ms)
