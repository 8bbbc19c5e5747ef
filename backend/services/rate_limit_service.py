from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    endpoint: str
    limit: int
    window_seconds: int


def ai_message_rule() -> RateLimitRule:
    return RateLimitRule(
        endpoint="conversations.ai_message",
        limit=settings.RATE_LIMIT_AI_MESSAGES,
        window_seconds=settings.RATE_LIMIT_AI_WINDOW_SECONDS,
    )


class InMemoryRateLimiter:
    """Sliding-window hit counter. One instance per application, kept on ``app.state``."""

    def __init__(self, clock=time.monotonic) -> None:
        self._hits: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._clock = clock

    def check(self, *, key: str, limit: int, window_seconds: int) -> tuple[bool, int, int]:
        now = self._clock()
        window = max(int(window_seconds), 1)
        max_hits = max(int(limit), 1)
        with self._lock:
            bucket = self._hits[key]
            cutoff = now - window
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            if len(bucket) >= max_hits:
                retry_after = int(max(bucket[0] + window - now, 1))
                return False, retry_after, 0
            bucket.append(now)
            remaining = max(max_hits - len(bucket), 0)
            return True, 0, remaining

    def enforce(self, rule: RateLimitRule, scope_key: str) -> tuple[bool, int]:
        allowed, retry_after, remaining = self.check(
            key=f"{rule.endpoint}:{scope_key}",
            limit=rule.limit,
            window_seconds=rule.window_seconds,
        )
        if not allowed:
            logger.warning("Rate limit hit on %s for %s (retry in %ss)", rule.endpoint, scope_key, retry_after)
        return allowed, retry_after

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
