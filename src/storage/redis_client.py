"""Redis access for the IP rate limiter and per-org maintenance locks.

Every key lives under the app name, so several deployments can share one
Redis without colliding.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional, Tuple

from redis import Redis
from redis.exceptions import RedisError

from src.core.config import get_settings


@lru_cache(maxsize=1)
def get_client() -> Redis:
    return Redis.from_url(
        get_settings().redis_url,
        decode_responses=True,
        socket_timeout=2.0,
        health_check_interval=30,
    )


def redis_key(*parts: str) -> str:
    """``redis_key("ratelimit", "ip", "10.0.0.1")`` -> ``opshub:ratelimit:ip:10.0.0.1``."""

    if not parts or any(not str(part) for part in parts):
        raise ValueError("Redis key parts must be non-empty")
    return ":".join([get_settings().app_name, *(str(part) for part in parts)])


def test_connection(client: Redis | None = None) -> Tuple[bool, Optional[str]]:
    try:
        (client or get_client()).ping()
    except RedisError as exc:
        return False, str(exc)
    return True, None
