"""Redis-based per-org lock primitives for maintenance isolation."""

from __future__ import annotations

from dataclasses import dataclass
import uuid

from redis import Redis

from src.storage.redis_client import redis_key


RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def org_lock_key(org_id: str) -> str:
    return redis_key(org_id, "maintenance", "lock")


@dataclass(frozen=True)
class OrgLockHandle:
    manager: "OrgLockManager"
    org_id: str
    token: str
    key: str

    def release(self) -> bool:
        return self.manager.release(self.org_id, self.token)


class OrgLockManager:
    """One Redis SET NX EX lock per org. Only the token holder may release it."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 120) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def acquire(self, org_id: str) -> OrgLockHandle | None:
        key = org_lock_key(org_id)
        token = str(uuid.uuid4())
        if not self._redis.set(key, token, nx=True, ex=self._ttl_seconds):
            return None
        return OrgLockHandle(manager=self, org_id=org_id, token=token, key=key)

    def release(self, org_id: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, org_lock_key(org_id), token)
        return int(released) == 1
