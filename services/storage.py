from typing import Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from core.errors import StorageUnavailableError


class RedisStorage:
    """Storage port over redis.asyncio. Keys expire on the redis side too."""

    def __init__(self, redis: Redis):
        self.redis = redis

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except RedisError as e:
            raise StorageUnavailableError(str(e)) from e

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        try:
            await self.redis.set(key, value, ex=ex)
        except RedisError as e:
            raise StorageUnavailableError(str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except RedisError as e:
            raise StorageUnavailableError(str(e)) from e


class MemoryStorage:
    """In-process storage with an optional byte quota, used in tests and local runs."""

    def __init__(self, quota_bytes: Optional[int] = None):
        self.data: Dict[str, str] = {}
        self.quota_bytes = quota_bytes
        self.disabled = False

    async def get(self, key: str) -> Optional[str]:
        if self.disabled:
            raise StorageUnavailableError("storage disabled")
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        if self.disabled:
            raise StorageUnavailableError("storage disabled")
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self.data.items() if k != key)
            if used + len(value) > self.quota_bytes:
                raise StorageUnavailableError("quota exceeded")
        self.data[key] = value

    async def delete(self, key: str) -> None:
        if self.disabled:
            raise StorageUnavailableError("storage disabled")
        self.data.pop(key, None)
