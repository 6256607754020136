from __future__ import annotations

import threading
import time
from collections.abc import Callable

from reconciliation.config import settings
from reconciliation.errors import DuplicateError


class RequestDebouncer:
    """In-memory guard against the same action being submitted twice within a short window."""

    def __init__(self, window_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.window_seconds = settings.request_debounce_seconds if window_seconds is None else window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._seen: dict[str, float] = {}

    def _prune(self, now: float) -> None:
        expired = [key for key, seen_at in self._seen.items() if now - seen_at >= self.window_seconds]
        for key in expired:
            del self._seen[key]

    def check(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            self._prune(now)
            if key in self._seen:
                raise DuplicateError('Request already being processed, try again in a few seconds', reason='debounced')
            self._seen[key] = now

    def release(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()


receipt_action_debouncer = RequestDebouncer()
