from __future__ import annotations

from typing import Any

from redis.asyncio.client import Redis

from triggerfi.orders.types import now_iso

from .helpers import serialize_for_redis

RELEASE_IF_OWNER_LUA = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class RedisStorageOps:
    @staticmethod
    def _fill_guard_key(prefix: str, order_id: str) -> str:
        return f"{prefix}:{order_id}"

    async def acquire_fill_guard(self, *, order_id: str, owner: str, ttl_seconds: int) -> bool:
        redis_client = self._require_redis()
        acquired = await redis_client.set(
            self._fill_guard_key(self.settings.fill_guard_prefix, order_id),
            owner,
            ex=max(1, ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def release_fill_guard(self, *, order_id: str, owner: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.eval(
            RELEASE_IF_OWNER_LUA,
            1,
            self._fill_guard_key(self.settings.fill_guard_prefix, order_id),
            owner,
        )
        return bool(deleted)

    async def record_keeper_cycle(self, summary: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        payload = {key: serialize_for_redis(value) for key, value in summary.items()}
        payload["updated_at"] = now_iso()
        await redis_client.hset(self.settings.keeper_cycle_key, mapping=payload)

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
