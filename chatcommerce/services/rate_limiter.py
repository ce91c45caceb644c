import math
import threading
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional

from chatcommerce.logging_config import get_logger

logger = get_logger("rate_limiter")

WINDOW_SECONDS = 60


class CallerContext(str, Enum):
    INTERNAL = "internal"  # chained from inside the service, never limited
    ADMIN = "admin"
    AUTOMATED = "automated"


class RateLimited(Exception):
    def __init__(self, caller: CallerContext, retry_after: int):
        super().__init__(f"Rate limit exceeded for {caller.value} callers, retry after {retry_after}s")
        self.caller = caller
        self.retry_after = retry_after


class RateLimiter:
    """Sliding one-minute window per (caller context, key)."""

    def __init__(
        self,
        limits: dict[CallerContext, int],
        window_seconds: int = WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.limits = dict(limits)
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._hits: dict[tuple[str, str], deque] = {}
        self._lock = threading.Lock()

    def check(self, caller: CallerContext, key: str = "global") -> None:
        """Record one hit, raising RateLimited when the ceiling is reached."""
        caller = CallerContext(caller)
        limit = self.limits.get(caller)
        if caller == CallerContext.INTERNAL or limit is None:
            return

        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault((caller.value, key), deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= limit:
                retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))
                logger.warning(
                    "Rate limit exceeded",
                    extra={"context": {"caller": caller.value, "key": key, "limit": limit, "retry_after": retry_after}},
                )
                raise RateLimited(caller, retry_after)
            hits.append(now)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
