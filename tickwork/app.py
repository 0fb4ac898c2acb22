"""Scheduler wiring — build an engine from settings and register demo tasks."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

import redis.asyncio as redis
from redis.exceptions import RedisError

from tickwork.config import Settings, settings
from tickwork.scheduler.cache import RedisTaskCache
from tickwork.scheduler.engine import SchedulerEngine
from tickwork.scheduler.errors import TaskAlreadyExistsError
from tickwork.scheduler.store import TaskStore

if TYPE_CHECKING:
    from tickwork.scheduler.models import TaskFunc

logger = logging.getLogger(__name__)

# (id, description, schedule)
DEMO_TASKS = (
    ("demo-task-1", "Demo task that logs a message every 30 seconds", "30s"),
    ("demo-task-2", "Demo task that logs a message every minute", "1m"),
    (
        "demo-task-3",
        "Demo task that logs a message every 5 minutes using a cron expression",
        "0 */5 * * * *",
    ),
)


async def _init_store(config: Settings) -> TaskStore | None:
    if not config.database_enabled:
        logger.warning("Database disabled, scheduler will run without persistence")
        return None
    store = TaskStore(config.database_path)
    try:
        await store.migrate()
    except Exception:
        logger.exception(
            "Failed to prepare %s, scheduler will run without persistence", store.db_path
        )
        return None
    return store


async def _init_cache(config: Settings) -> RedisTaskCache | None:
    if not config.redis_url:
        logger.info("TICKWORK_REDIS_URL not set, scheduler will run without cache")
        return None
    client = redis.from_url(config.redis_url)
    try:
        await client.ping()
    except (RedisError, OSError):
        logger.warning(
            "Failed to connect to Redis, scheduler will run without cache", exc_info=True
        )
        await client.aclose()
        return None
    return RedisTaskCache(client, ttl=timedelta(seconds=config.cache_ttl_seconds))


async def build_scheduler(config: Settings | None = None) -> SchedulerEngine:
    """Create a SchedulerEngine with whichever persistence layers are available."""
    config = config or settings
    store = await _init_store(config)
    cache = await _init_cache(config)
    engine = SchedulerEngine(
        repository=store,
        cache=cache,
        timezone=config.scheduler_timezone,
        task_timeout=config.scheduler_task_timeout,
    )
    logger.info(
        "Scheduler engine created (store=%s, cache=%s)",
        "on" if store else "off",
        "on" if cache else "off",
    )
    return engine


async def close_scheduler(engine: SchedulerEngine) -> None:
    """Stop the engine and release the connections it was built with."""
    await engine.stop()
    if isinstance(engine.cache, RedisTaskCache):
        await engine.cache.close()


def _demo_callback(task_id: str) -> TaskFunc:
    def _run() -> None:
        logger.info("Demo task executed: %s", task_id)

    return _run


async def register_demo_tasks(engine: SchedulerEngine) -> list[str]:
    """Register the demo tasks, skipping any that are already registered."""
    registered = []
    for task_id, description, schedule in DEMO_TASKS:
        try:
            await engine.add_task_with_schedule(
                task_id, description, schedule, _demo_callback(task_id)
            )
        except TaskAlreadyExistsError:
            logger.error("Failed to add demo task: %s already exists", task_id)
            continue
        registered.append(task_id)
    return registered
