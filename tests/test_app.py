"""Tests for scheduler wiring — build_scheduler and the demo tasks."""

from pathlib import Path
from unittest.mock import patch

import pytest

from tests.fakes import FakeRedis
from tickwork.app import (
    DEMO_TASKS,
    build_scheduler,
    close_scheduler,
    register_demo_tasks,
)
from tickwork.config import Settings
from tickwork.scheduler.cache import RedisTaskCache
from tickwork.scheduler.store import TaskStore


@pytest.fixture
def config(tmp_path: Path) -> Settings:
    return Settings(database_path=tmp_path / "tickwork.db", redis_url="")


# -- build_scheduler -----------------------------------------------------------


async def test_build_scheduler_with_store_only(config: Settings) -> None:
    engine = await build_scheduler(config)

    assert isinstance(engine.repository, TaskStore)
    assert engine.repository.db_path.exists()
    assert engine.cache is None
    assert engine.timezone == "UTC"


async def test_build_scheduler_without_database(config: Settings) -> None:
    config.database_enabled = False
    engine = await build_scheduler(config)

    assert engine.repository is None
    assert engine.cache is None


async def test_build_scheduler_with_redis(config: Settings) -> None:
    config.redis_url = "redis://localhost:6379/0"
    config.cache_ttl_seconds = 600
    fake = FakeRedis()

    with patch("tickwork.app.redis.from_url", return_value=fake) as from_url:
        engine = await build_scheduler(config)

    from_url.assert_called_once_with("redis://localhost:6379/0")
    assert isinstance(engine.cache, RedisTaskCache)
    assert engine.cache.ttl.total_seconds() == 600


async def test_build_scheduler_redis_unreachable(config: Settings) -> None:
    config.redis_url = "redis://localhost:6379/0"
    fake = FakeRedis()
    fake.fail_ping = True

    with patch("tickwork.app.redis.from_url", return_value=fake):
        engine = await build_scheduler(config)

    assert engine.cache is None
    assert fake.closed is True


async def test_close_scheduler_closes_cache(config: Settings) -> None:
    config.redis_url = "redis://localhost:6379/0"
    fake = FakeRedis()
    with patch("tickwork.app.redis.from_url", return_value=fake):
        engine = await build_scheduler(config)
    await engine.start()

    await close_scheduler(engine)

    assert engine.running is False
    assert fake.closed is True


# -- Demo tasks ----------------------------------------------------------------


async def test_register_demo_tasks(config: Settings) -> None:
    engine = await build_scheduler(config)

    registered = await register_demo_tasks(engine)

    assert registered == [task_id for task_id, _, _ in DEMO_TASKS]
    schedules = {t.id: t.schedule for t in engine.get_tasks()}
    assert schedules == {
        "demo-task-1": "30s",
        "demo-task-2": "1m",
        "demo-task-3": "0 */5 * * * *",
    }
    assert len(await engine.repository.find_all()) == 3


async def test_register_demo_tasks_twice_skips_existing(config: Settings) -> None:
    engine = await build_scheduler(config)
    await register_demo_tasks(engine)

    assert await register_demo_tasks(engine) == []
    assert len(engine.get_tasks()) == 3


async def test_demo_callback_runs(config: Settings) -> None:
    config.database_enabled = False
    engine = await build_scheduler(config)
    await register_demo_tasks(engine)

    await engine._execute_task("demo-task-1")

    assert engine.get_task("demo-task-1").last_error == ""
    assert engine.get_task("demo-task-1").status.value == "completed"
