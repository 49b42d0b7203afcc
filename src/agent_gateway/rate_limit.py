"""Sliding-window rate limiter kept in process memory.

How it works:
- Each actor (device id) has a deque of recent request timestamps.
- On each check: drop timestamps older than the window from the left,
  reject if the remainder is at the cap, otherwise record now and allow.

Only the checked actor's deque is touched, so a check costs O(window size).
Nothing is persisted; a restart clears every window.
"""

import time
from collections import deque
from collections.abc import Callable

DEFAULT_WINDOW_SECONDS = 60.0
DEFAULT_MAX_REQUESTS = 10


class RateLimiter:
    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}

    def check_and_record(self, actor_id: str) -> bool:
        """Record a request and return True if the actor is under the cap.

        A rejected attempt is not recorded.
        """
        now = self._clock()
        window = self._prune(actor_id, now)
        if len(window) >= self._max_requests:
            return False
        window.append(now)
        self._windows[actor_id] = window
        return True

    def remaining(self, actor_id: str) -> int:
        window = self._prune(actor_id, self._clock())
        return max(0, self._max_requests - len(window))

    def time_until_reset(self, actor_id: str) -> float:
        """Seconds until the actor may send again; 0 if allowed now."""
        now = self._clock()
        window = self._prune(actor_id, now)
        if len(window) < self._max_requests:
            return 0.0
        return max(0.0, self._window_seconds - (now - window[0]))

    def reset(self, actor_id: str) -> None:
        self._windows.pop(actor_id, None)

    def reset_all(self) -> None:
        self._windows.clear()

    def _prune(self, actor_id: str, now: float) -> deque[float]:
        window = self._windows.get(actor_id)
        if window is None:
            return deque()
        while window and now - window[0] >= self._window_seconds:
            window.popleft()
        if not window:
            # Idle actors don't keep an empty deque around.
            del self._windows[actor_id]
        return window
