#!/usr/bin/env python3
"""
Ephemeral batch status records.

Each batch gets exactly one terminal record, kept for a fixed TTL and then
forgotten. Writes are first-writer-wins: a second write for a batch id that
already has a record is rejected, so a terminal status can never be
replaced. A missing record means "unknown or expired", never "failed".
"""

import json
from time import monotonic
from typing import Any, Callable, Dict, Optional, Tuple

from redis.asyncio import Redis as AsyncRedis
from redis.exceptions import RedisError

from config import config, get_logger
from errors import StatusStoreError

logger = get_logger("status_store")

KEY_PREFIX = "batch:"


def status_key(batch_id: str) -> str:
    return f"{KEY_PREFIX}{batch_id}"


class BatchStatusStore:
    """Interface shared by the status backends."""

    ttl_seconds: int

    async def write(self, batch_id: str, status: Dict[str, Any]) -> bool:
        """Store ``status`` unless the batch already has a record.

        Returns:
            True if written, False if a record already existed.
        """
        raise NotImplementedError

    async def read(self, batch_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


class MemoryStatusStore(BatchStatusStore):
    """Process-local backend for single-instance runs and tests."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = monotonic):
        self.ttl_seconds = ttl_seconds or config.STATUS_TTL_SECONDS
        self._clock = clock
        self._records: Dict[str, Tuple[float, str]] = {}

    def _live(self, key: str) -> Optional[str]:
        item = self._records.get(key)
        if item is None:
            return None
        expires_at, payload = item
        if expires_at <= self._clock():
            del self._records[key]
            return None
        return payload

    async def write(self, batch_id: str, status: Dict[str, Any]) -> bool:
        key = status_key(batch_id)
        if self._live(key) is not None:
            logger.warning(f"Ignoring second status write for batch {batch_id}")
            return False
        self._records[key] = (self._clock() + self.ttl_seconds, json.dumps(status))
        return True

    async def read(self, batch_id: str) -> Optional[Dict[str, Any]]:
        payload = self._live(status_key(batch_id))
        return json.loads(payload) if payload is not None else None


class RedisStatusStore(BatchStatusStore):
    """Redis backend: SET NX with expiry gives write-once records with a TTL."""

    def __init__(self, redis: Optional[AsyncRedis] = None, url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or config.STATUS_TTL_SECONDS
        self._owns_client = redis is None
        self.redis = redis or AsyncRedis.from_url(
            url or config.REDIS_URL,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
        )

    async def write(self, batch_id: str, status: Dict[str, Any]) -> bool:
        try:
            written = await self.redis.set(status_key(batch_id), json.dumps(status), nx=True, ex=self.ttl_seconds)
        except RedisError as e:
            raise StatusStoreError(f"Could not write status for batch {batch_id}: {e}") from e
        if not written:
            logger.warning(f"Ignoring second status write for batch {batch_id}")
            return False
        return True

    async def read(self, batch_id: str) -> Optional[Dict[str, Any]]:
        try:
            payload = await self.redis.get(status_key(batch_id))
        except RedisError as e:
            raise StatusStoreError(f"Could not read status for batch {batch_id}: {e}") from e
        return json.loads(payload) if payload else None

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        if self._owns_client:
            await self.redis.aclose()


def create_status_store(backend: Optional[str] = None) -> BatchStatusStore:
    backend = backend or config.STATUS_BACKEND
    if backend == "redis":
        logger.info("Using Redis batch status store")
        return RedisStatusStore()
    return MemoryStatusStore()
