"""Shared test fixtures."""

from pathlib import Path

import pytest

from tests.fakes import FakeRedis
from tickwork.scheduler.cache import RedisTaskCache
from tickwork.scheduler.store import TaskStore


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store(tmp_path: Path) -> TaskStore:
    """A TaskStore backed by a temp database."""
    return TaskStore(db_path=tmp_path / "test.db")


@pytest.fixture
def cache(fake_redis: FakeRedis) -> RedisTaskCache:
    return RedisTaskCache(fake_redis)
