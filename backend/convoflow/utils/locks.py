# /convoflow/utils/locks.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from redis.exceptions import LockError, RedisError

from convoflow.flows.errors import LockAcquisitionError

# Serializes flow execution per conversation. An in-process asyncio.Lock keyed
# by conversation id always applies; with Redis available a Redis lock is taken
# as well so that several worker processes serialize on the same conversation.

logger = logging.getLogger(__name__)


class ConversationLockManager:
    def __init__(
        self,
        redis_client: Optional[Any] = None,
        timeout: int = 30,
        wait_seconds: float = 10.0,
        key_prefix: str = "flowlock",
    ):
        self.redis = redis_client
        self.timeout = timeout
        self.wait_seconds = wait_seconds
        self.key_prefix = key_prefix
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def is_locked(self, conversation_id: str) -> bool:
        lock = self._locks.get(conversation_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        """
        Holds the conversation lock for the duration of the block.
        Raises LockAcquisitionError when it cannot be acquired within wait_seconds.
        """
        local_lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._holders[conversation_id] = self._holders.get(conversation_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(local_lock.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError as e:
                raise LockAcquisitionError(f"Timed out waiting for conversation {conversation_id}") from e

            try:
                redis_lock = await self._acquire_redis_lock(conversation_id)
                try:
                    yield
                finally:
                    if redis_lock is not None:
                        await self._release_redis_lock(redis_lock, conversation_id)
            finally:
                local_lock.release()
        finally:
            self._holders[conversation_id] -= 1
            if self._holders[conversation_id] == 0:
                del self._holders[conversation_id]
                self._locks.pop(conversation_id, None)

    async def _acquire_redis_lock(self, conversation_id: str) -> Optional[Any]:
        if self.redis is None:
            return None
        lock = self.redis.lock(
            f"{self.key_prefix}:{conversation_id}",
            timeout=self.timeout,
            blocking_timeout=self.wait_seconds,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            # Redis down: the in-process lock still serializes this worker.
            logger.warning(f"Redis lock unavailable for conversation {conversation_id}: {e}")
            return None
        if not acquired:
            raise LockAcquisitionError(f"Conversation {conversation_id} is locked by another worker")
        return lock

    async def _release_redis_lock(self, lock: Any, conversation_id: str) -> None:
        try:
            await lock.release()
        except LockError as e:
            logger.warning(f"Redis lock for conversation {conversation_id} expired before release: {e}")
        except RedisError as e:
            logger.error(f"Failed to release Redis lock for conversation {conversation_id}: {e}")


# Process-wide in-memory manager for engines built without one.
default_lock_manager = ConversationLockManager()
