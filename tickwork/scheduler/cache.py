"""RedisTaskCache — cache-aside mirror of the task store.

Each task is a JSON blob under ``scheduler:task:<id>`` with a TTL, and the
set ``scheduler:tasks`` indexes every cached ID.  The index never expires,
so it can name IDs whose blob is already gone; readers skip those.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from redis.exceptions import RedisError

from tickwork.scheduler.errors import CacheMissError
from tickwork.scheduler.models import TaskModel, TaskStatus, utcnow

if TYPE_CHECKING:
    from datetime import datetime

    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

TASK_KEY_PREFIX = "scheduler:task:"
TASK_INDEX_KEY = "scheduler:tasks"
DEFAULT_TASK_TTL = timedelta(hours=24)


def task_key(task_id: str) -> str:
    return TASK_KEY_PREFIX + task_id


def _decode(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


@runtime_checkable
class TaskCache(Protocol):
    """Fast key/value mirror of the task store. Never authoritative."""

    async def set(self, task: TaskModel) -> None: ...

    async def get(self, task_id: str) -> TaskModel: ...

    async def delete(self, task_id: str) -> None: ...

    async def get_all(self) -> list[TaskModel]: ...

    async def get_all_with_missing(self) -> tuple[list[TaskModel], list[str]]: ...

    async def update_status(self, task_id: str, status: TaskStatus) -> None: ...

    async def update_last_run(
        self,
        task_id: str,
        last_run: datetime,
        status: TaskStatus,
        last_error: str,
    ) -> None: ...

    async def update_next_run(self, task_id: str, next_run: datetime | None) -> None: ...


class RedisTaskCache:
    """Stores task models in Redis.

    Args:
        client: A ``redis.asyncio.Redis`` client (or anything with the same
            async surface).
        ttl: Lifetime of each task blob.
    """

    def __init__(self, client: Redis, ttl: timedelta = DEFAULT_TASK_TTL) -> None:
        self._client = client
        self._ttl = ttl

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    async def close(self) -> None:
        """Close the underlying Redis connection pool."""
        await self._client.aclose()

    async def set(self, task: TaskModel) -> None:
        """Write the task blob and add its ID to the index set."""
        await self._client.set(task_key(task.id), task.to_json(), ex=self._ttl)
        try:
            await self._client.sadd(TASK_INDEX_KEY, task.id)
        except RedisError:
            logger.warning("Failed to add task ID to cache index: %s", task.id, exc_info=True)
        logger.debug("Task stored in cache: %s", task.id)

    async def get(self, task_id: str) -> TaskModel:
        """Fetch one task.

        Raises:
            CacheMissError: If the blob is absent.
        """
        raw = await self._client.get(task_key(task_id))
        if raw is None:
            raise CacheMissError(task_id)
        return TaskModel.from_json(raw)

    async def delete(self, task_id: str) -> None:
        await self._client.delete(task_key(task_id))
        try:
            await self._client.srem(TASK_INDEX_KEY, task_id)
        except RedisError:
            logger.warning(
                "Failed to remove task ID from cache index: %s", task_id, exc_info=True
            )
        logger.debug("Task deleted from cache: %s", task_id)

    async def get_all(self) -> list[TaskModel]:
        """Return every indexed task, fetched in one pipelined round trip.

        IDs whose blob expired or was deleted since the index was read are
        skipped, as are blobs that no longer decode.
        """
        tasks, _ = await self.get_all_with_missing()
        return tasks

    async def get_all_with_missing(self) -> tuple[list[TaskModel], list[str]]:
        """Like :meth:`get_all`, also returning the indexed IDs that had no usable blob."""
        members = await self._client.smembers(TASK_INDEX_KEY)
        task_ids = sorted(_decode(member) for member in members)
        if not task_ids:
            return [], []

        async with self._client.pipeline(transaction=False) as pipe:
            for task_id in task_ids:
                pipe.get(task_key(task_id))
            results = await pipe.execute()

        tasks: list[TaskModel] = []
        missing: list[str] = []
        for task_id, raw in zip(task_ids, results, strict=True):
            if raw is None:
                missing.append(task_id)
                continue
            try:
                tasks.append(TaskModel.from_json(raw))
            except (ValueError, KeyError, TypeError):
                logger.warning("Skipping undecodable cached task: %s", task_id)
                missing.append(task_id)
        return tasks, missing

    # -- Read-modify-write helpers ---------------------------------------------

    async def update_status(self, task_id: str, status: TaskStatus) -> None:
        task = await self.get(task_id)
        task.status = TaskStatus(status)
        task.updated_at = utcnow()
        await self.set(task)

    async def update_last_run(
        self,
        task_id: str,
        last_run: datetime,
        status: TaskStatus,
        last_error: str,
    ) -> None:
        task = await self.get(task_id)
        task.last_run = last_run
        task.status = TaskStatus(status)
        task.last_error = last_error
        task.updated_at = utcnow()
        await self.set(task)

    async def update_next_run(self, task_id: str, next_run: datetime | None) -> None:
        task = await self.get(task_id)
        task.next_run = next_run
        task.updated_at = utcnow()
        await self.set(task)
