"""
Single-flight locks for artifact generation.

Every fill of a (question, artifact kind) pair runs under ``ArtifactLocks.hold``.
Inside one process an ``asyncio.Lock`` per key serialises fills; when Redis is
configured a Redis lock on the same key serialises fills across worker
processes as well.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from alcpt.core.config import settings
from alcpt.core.errors import CollaboratorFailure

logger = logging.getLogger(__name__)


def artifact_key(question_id: int, kind: str) -> str:
    return f"artifact:{kind}:{question_id}"


class ArtifactLocks:
    def __init__(self, redis_client: Optional[redis.Redis] = None, timeout: Optional[int] = None):
        self.redis = redis_client
        self.timeout = settings.ARTIFACT_LOCK_TIMEOUT if timeout is None else timeout
        self._local: Dict[str, asyncio.Lock] = {}

    def _local_lock(self, key: str) -> asyncio.Lock:
        lock = self._local.get(key)
        if lock is None:
            lock = self._local[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, question_id: int, kind: str) -> AsyncIterator[None]:
        key = artifact_key(question_id, kind)
        local = self._local_lock(key)
        async with local:
            if self.redis is None:
                yield
                return

            lock = self.redis.lock(f"lock:{key}", timeout=self.timeout, blocking_timeout=self.timeout)
            try:
                acquired = await lock.acquire()
            except RedisError as exc:
                raise CollaboratorFailure("redis", f"could not lock {key}: {exc}") from exc
            if not acquired:
                raise CollaboratorFailure("redis", f"timed out waiting for lock on {key}")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except RedisError as exc:
                    # Expired or taken over while the fill ran
                    logger.warning("Could not release lock on %s: %s", key, exc)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()


def build_locks() -> ArtifactLocks:
    if settings.REDIS_URL:
        logger.info("Using Redis for artifact locks")
        return ArtifactLocks(redis.Redis.from_url(settings.REDIS_URL))
    return ArtifactLocks()
