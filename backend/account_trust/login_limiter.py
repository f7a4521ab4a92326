"""
Login attempt tracker - per client address sliding window.

Owned by the engine; nothing else touches the attempt map.
"""

import time
from typing import Callable, Dict, List

from .config import LOGIN_LIMITS


class LoginAttemptTracker:
    def __init__(
        self,
        max_attempts: int = LOGIN_LIMITS["max_attempts"],
        window_seconds: int = LOGIN_LIMITS["window_seconds"],
        time_fn: Callable[[], float] = time.time
    ):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._time = time_fn
        self._attempts: Dict[str, List[float]] = {}

    def hit(self, key: str) -> bool:
        """Record an attempt. Returns False once the key is over its limit."""
        now = self._time()
        recent = [ts for ts in self._attempts.get(key, []) if now - ts < self.window_seconds]
        recent.append(now)
        self._attempts[key] = recent
        return len(recent) <= self.max_attempts

    def reset(self, key: str):
        self._attempts.pop(key, None)

    def purge(self) -> int:
        """Drop keys whose attempts have all aged out."""
        now = self._time()
        stale = [
            key for key, stamps in self._attempts.items()
            if not any(now - ts < self.window_seconds for ts in stamps)
        ]
        for key in stale:
            del self._attempts[key]
        return len(stale)

    def __len__(self):
        return len(self._attempts)
