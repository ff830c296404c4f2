"""Single-flight guard shared by uploads and deploys.

Extraction rewrites the directory a deploy copies from, so both pipelines take
the same lock. The lock is a Redis key set with NX and a TTL; the TTL frees it
if the holder dies mid-pipeline.
"""

import logging
from typing import Callable, Optional
from uuid import uuid4

import redis

from app.config import get_settings
from app.services.errors import PipelineBusyError
from app.services.redis_manager import get_sync_client

logger = logging.getLogger(__name__)

LOCK_KEY = "pipeline:lock"


class PipelineLock:
    """Non-blocking lock; a second caller gets PipelineBusyError."""

    def __init__(
        self,
        owner: str,
        client_factory: Optional[Callable[[], redis.Redis]] = None,
        ttl: Optional[int] = None,
    ):
        self.owner = owner
        self.token: Optional[str] = None
        self._client_factory = client_factory or get_sync_client
        self._ttl = ttl if ttl is not None else get_settings().pipeline_lock_ttl_seconds

    @property
    def held(self) -> bool:
        return self.token is not None

    def acquire(self) -> None:
        token = f"{self.owner}:{uuid4()}"
        r = self._client_factory()
        if not r.set(LOCK_KEY, token, nx=True, ex=self._ttl):
            holder = r.get(LOCK_KEY) or "unknown"
            logger.info(f"{self.owner} rejected, pipeline held by {holder.split(':')[0]}")
            raise PipelineBusyError(
                "Another upload or deploy is already in progress, try again when it finishes"
            )
        self.token = token
        logger.debug(f"Pipeline lock acquired by {self.owner}")

    def release(self) -> None:
        """Release the lock if this instance still owns it."""
        if self.token is None:
            return
        r = self._client_factory()
        with r.pipeline() as pipe:
            try:
                pipe.watch(LOCK_KEY)
                if pipe.get(LOCK_KEY) == self.token:
                    pipe.multi()
                    pipe.delete(LOCK_KEY)
                    pipe.execute()
                else:
                    pipe.unwatch()
                    logger.warning(f"Pipeline lock for {self.owner} expired before release")
            except redis.WatchError:
                logger.warning(f"Pipeline lock for {self.owner} changed during release")
        self.token = None

    def extend(self) -> bool:
        """Reset the TTL if this instance still owns the lock.

        Long pipelines call this between steps so the lock outlives the whole
        run rather than a single TTL window. Returns False if the lock was lost.
        """
        if self.token is None:
            return False
        r = self._client_factory()
        with r.pipeline() as pipe:
            try:
                pipe.watch(LOCK_KEY)
                if pipe.get(LOCK_KEY) != self.token:
                    pipe.unwatch()
                    logger.warning(f"Pipeline lock for {self.owner} was lost before renewal")
                    return False
                pipe.multi()
                pipe.expire(LOCK_KEY, self._ttl)
                pipe.execute()
            except redis.WatchError:
                logger.warning(f"Pipeline lock for {self.owner} changed during renewal")
                return False
        return True

    def __enter__(self) -> "PipelineLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def is_pipeline_busy(client_factory: Optional[Callable[[], redis.Redis]] = None) -> bool:
    r = (client_factory or get_sync_client)()
    return bool(r.exists(LOCK_KEY))
