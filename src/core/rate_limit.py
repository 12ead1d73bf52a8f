"""Fixed-window request limiting keyed by client address."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
import time
from typing import Dict, Protocol, Tuple

from redis.exceptions import RedisError

from src.core.config import get_settings
from src.core.logger import get_logger
from src.storage.redis_client import get_client, redis_key


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int

    @classmethod
    def from_count(cls, *, count: int, limit: int, reset_seconds: int) -> "RateLimitDecision":
        return cls(
            allowed=count <= limit,
            limit=limit,
            remaining=max(limit - count, 0),
            reset_seconds=reset_seconds,
        )


class IPRateLimiter(Protocol):
    def check(self, *, ip: str) -> RateLimitDecision:
        """Count one request from ``ip`` and decide whether it may proceed."""


def _current_window(window_seconds: int, now: float | None = None) -> Tuple[int, int]:
    current = int(now if now is not None else time.time())
    return current // window_seconds, window_seconds - (current % window_seconds)


class _FixedWindow:
    def __init__(self, *, requests_per_window: int, window_seconds: int) -> None:
        if requests_per_window <= 0 or window_seconds <= 0:
            raise ValueError("Rate limit window and request budget must be positive")
        self.limit = requests_per_window
        self.window_seconds = window_seconds


class InMemoryIPRateLimiter(_FixedWindow):
    """Process-local counters. Used outside production and in tests."""

    def __init__(self, *, requests_per_window: int, window_seconds: int) -> None:
        super().__init__(requests_per_window=requests_per_window, window_seconds=window_seconds)
        self._lock = Lock()
        self._counts: Dict[Tuple[str, int], int] = {}

    def check(self, *, ip: str) -> RateLimitDecision:
        window_id, reset_seconds = _current_window(self.window_seconds)
        with self._lock:
            for stale in [key for key in self._counts if key[1] < window_id]:
                del self._counts[stale]
            count = self._counts.get((ip, window_id), 0) + 1
            self._counts[(ip, window_id)] = count
        return RateLimitDecision.from_count(count=count, limit=self.limit, reset_seconds=reset_seconds)


class RedisIPRateLimiter(_FixedWindow):
    """Counters shared across API replicas via ``INCR`` + ``EXPIRE``.

    Redis being unavailable fails open: the request is allowed and a warning
    is logged.
    """

    def __init__(self, *, requests_per_window: int, window_seconds: int, client=None) -> None:
        super().__init__(requests_per_window=requests_per_window, window_seconds=window_seconds)
        self._redis = client if client is not None else get_client()

    def check(self, *, ip: str) -> RateLimitDecision:
        window_id, reset_seconds = _current_window(self.window_seconds)
        key = redis_key("ratelimit", "ip", ip, str(window_id))
        try:
            pipeline = self._redis.pipeline()
            pipeline.incr(key)
            pipeline.expire(key, self.window_seconds + 1)
            count = int(pipeline.execute()[0])
        except RedisError as exc:
            get_logger("opshub.rate_limit").warning("rate_limit_backend_unavailable", error=str(exc))
            return RateLimitDecision(
                allowed=True,
                limit=self.limit,
                remaining=self.limit,
                reset_seconds=reset_seconds,
            )
        return RateLimitDecision.from_count(count=count, limit=self.limit, reset_seconds=reset_seconds)


@lru_cache(maxsize=1)
def get_ip_rate_limiter() -> IPRateLimiter:
    settings = get_settings()
    limiter_cls = RedisIPRateLimiter if settings.env.lower() in {"prod", "production"} else InMemoryIPRateLimiter
    return limiter_cls(
        requests_per_window=settings.ip_rate_limit_requests_per_window,
        window_seconds=settings.ip_rate_limit_window_seconds,
    )
