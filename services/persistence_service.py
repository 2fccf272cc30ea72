import json
from typing import Optional

from core.config import settings
from core.errors import StorageUnavailableError
from core.logger import logger
from core.ports import Clock, Storage


class PersistenceStore:
    """
    Best-effort snapshot store with a staleness TTL.

    Every record carries a `timestamp` (epoch ms). Records older than the TTL
    are treated as absent and deleted on read. Storage failures are logged and
    swallowed here so callers only ever see "no resume available".
    """

    def __init__(self, storage: Storage, clock: Clock, ttl_seconds: Optional[int] = None,
                 prefix: Optional[str] = None):
        self.storage = storage
        self.clock = clock
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.SNAPSHOT_TTL_SECONDS
        self.prefix = prefix if prefix is not None else settings.SNAPSHOT_KEY_PREFIX

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def save(self, key: str, snapshot: dict) -> bool:
        record = dict(snapshot)
        record["timestamp"] = self.clock.now_ms()
        try:
            payload = json.dumps(record)
            await self.storage.set(self._key(key), payload, ex=self.ttl_seconds)
            return True
        except (StorageUnavailableError, TypeError, ValueError) as e:
            logger.warning("Snapshot save failed", key=key, error=str(e))
            return False

    async def restore(self, key: str) -> Optional[dict]:
        try:
            raw = await self.storage.get(self._key(key))
        except StorageUnavailableError as e:
            logger.warning("Snapshot read failed", key=key, error=str(e))
            return None
        if not raw:
            return None

        try:
            record = json.loads(raw)
            timestamp = int(record["timestamp"])
        except (ValueError, TypeError, KeyError) as e:
            logger.warning("Discarding unreadable snapshot", key=key, error=str(e))
            await self.clear(key)
            return None

        age_ms = self.clock.now_ms() - timestamp
        if age_ms > self.ttl_seconds * 1000:
            logger.info("Discarding stale snapshot", key=key, age_seconds=age_ms // 1000)
            await self.clear(key)
            return None
        return record

    async def clear(self, key: str) -> None:
        try:
            await self.storage.delete(self._key(key))
        except StorageUnavailableError as e:
            logger.warning("Snapshot clear failed", key=key, error=str(e))
