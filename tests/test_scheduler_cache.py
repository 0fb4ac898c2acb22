"""Tests for RedisTaskCache — JSON blobs plus an index set."""

from datetime import UTC, datetime, timedelta

import pytest

from tests.fakes import FakeRedis
from tickwork.scheduler.cache import (
    DEFAULT_TASK_TTL,
    TASK_INDEX_KEY,
    RedisTaskCache,
    TaskCache,
    task_key,
)
from tickwork.scheduler.errors import CacheMissError, TaskNotFoundError
from tickwork.scheduler.models import TaskModel, TaskStatus


def _make_task(task_id: str = "task1", **kwargs) -> TaskModel:
    defaults = {
        "description": "Test Task",
        "schedule": "30s",
        "created_at": datetime(2025, 1, 1, tzinfo=UTC),
        "updated_at": datetime(2025, 1, 1, tzinfo=UTC),
    }
    defaults.update(kwargs)
    return TaskModel(id=task_id, **defaults)


def test_cache_satisfies_protocol(cache: RedisTaskCache) -> None:
    assert isinstance(cache, TaskCache)


# -- set / get / delete --------------------------------------------------------


async def test_set_and_get(cache: RedisTaskCache, fake_redis: FakeRedis) -> None:
    task = _make_task(last_run=datetime(2025, 6, 1, tzinfo=UTC), last_error="x")
    await cache.set(task)

    assert await cache.get("task1") == task
    assert await fake_redis.smembers(TASK_INDEX_KEY) == {b"task1"}


async def test_set_applies_default_ttl(cache: RedisTaskCache, fake_redis: FakeRedis) -> None:
    await cache.set(_make_task())
    assert fake_redis.ttls[task_key("task1")] == DEFAULT_TASK_TTL.total_seconds()


async def test_custom_ttl(fake_redis: FakeRedis) -> None:
    cache = RedisTaskCache(fake_redis, ttl=timedelta(minutes=5))
    await cache.set(_make_task())
    assert fake_redis.ttls[task_key("task1")] == 300


async def test_get_missing_raises_cache_miss(cache: RedisTaskCache) -> None:
    with pytest.raises(CacheMissError):
        await cache.get("nonexistent")


async def test_cache_miss_is_task_not_found(cache: RedisTaskCache) -> None:
    with pytest.raises(TaskNotFoundError):
        await cache.get("nonexistent")


async def test_get_after_expiry_raises(cache: RedisTaskCache, fake_redis: FakeRedis) -> None:
    await cache.set(_make_task())
    fake_redis.expire_now(task_key("task1"))
    with pytest.raises(CacheMissError):
        await cache.get("task1")


async def test_delete_removes_blob_and_index(cache: RedisTaskCache, fake_redis: FakeRedis) -> None:
    await cache.set(_make_task())
    await cache.delete("task1")

    assert await fake_redis.get(task_key("task1")) is None
    assert await fake_redis.smembers(TASK_INDEX_KEY) == set()


async def test_delete_missing_is_noop(cache: RedisTaskCache) -> None:
    await cache.delete("nonexistent")


async def test_set_propagates_blob_write_failure(
    cache: RedisTaskCache, fake_redis: FakeRedis
) -> None:
    fake_redis.fail_writes = True
    with pytest.raises(Exception, match="redis is down"):
        await cache.set(_make_task())


# -- get_all -------------------------------------------------------------------


async def test_get_all(cache: RedisTaskCache) -> None:
    for task_id in ("a", "b", "c"):
        await cache.set(_make_task(task_id))

    tasks = await cache.get_all()
    assert sorted(t.id for t in tasks) == ["a", "b", "c"]


async def test_get_all_empty(cache: RedisTaskCache) -> None:
    assert await cache.get_all() == []


async def test_get_all_skips_entry_expiring_mid_call(
    cache: RedisTaskCache, fake_redis: FakeRedis
) -> None:
    for task_id in ("a", "b", "c"):
        await cache.set(_make_task(task_id))

    # The index still names "b" when the pipeline runs, but its blob is gone
    fake_redis.before_execute = lambda: fake_redis.expire_now(task_key("b"))

    tasks = await cache.get_all()
    assert sorted(t.id for t in tasks) == ["a", "c"]


async def test_get_all_with_missing_reports_expired_ids(
    cache: RedisTaskCache, fake_redis: FakeRedis
) -> None:
    for task_id in ("a", "b"):
        await cache.set(_make_task(task_id))
    await fake_redis.set(task_key("c"), "not json")
    await fake_redis.sadd(TASK_INDEX_KEY, "c")
    fake_redis.expire_now(task_key("b"))

    tasks, missing = await cache.get_all_with_missing()
    assert [t.id for t in tasks] == ["a"]
    assert missing == ["b", "c"]


async def test_get_all_skips_undecodable_blob(
    cache: RedisTaskCache, fake_redis: FakeRedis
) -> None:
    await cache.set(_make_task("good"))
    await fake_redis.set(task_key("bad"), "not json")
    await fake_redis.sadd(TASK_INDEX_KEY, "bad")

    tasks = await cache.get_all()
    assert [t.id for t in tasks] == ["good"]


async def test_get_all_works_with_decoded_responses(cache: RedisTaskCache) -> None:
    class DecodingRedis(FakeRedis):
        async def smembers(self, key: str) -> set[str]:
            return {m.decode() for m in await super().smembers(key)}

    decoded = RedisTaskCache(DecodingRedis())
    await decoded.set(_make_task("x"))
    assert [t.id for t in await decoded.get_all()] == ["x"]


# -- Read-modify-write helpers -------------------------------------------------


async def test_update_status(cache: RedisTaskCache) -> None:
    await cache.set(_make_task())
    await cache.update_status("task1", TaskStatus.DISABLED)

    task = await cache.get("task1")
    assert task.status is TaskStatus.DISABLED
    assert task.updated_at > datetime(2025, 1, 1, tzinfo=UTC)


async def test_update_last_run(cache: RedisTaskCache) -> None:
    await cache.set(_make_task())
    last_run = datetime(2025, 6, 1, 10, 0, tzinfo=UTC)
    await cache.update_last_run("task1", last_run, TaskStatus.FAILED, "boom")

    task = await cache.get("task1")
    assert task.last_run == last_run
    assert task.status is TaskStatus.FAILED
    assert task.last_error == "boom"


async def test_update_next_run(cache: RedisTaskCache) -> None:
    await cache.set(_make_task())
    next_run = datetime(2025, 6, 1, 10, 0, 30, tzinfo=UTC)
    await cache.update_next_run("task1", next_run)
    assert (await cache.get("task1")).next_run == next_run


async def test_update_on_missing_blob_raises(cache: RedisTaskCache) -> None:
    with pytest.raises(CacheMissError):
        await cache.update_status("ghost", TaskStatus.RUNNING)


async def test_close(cache: RedisTaskCache, fake_redis: FakeRedis) -> None:
    await cache.close()
    assert fake_redis.closed is True
