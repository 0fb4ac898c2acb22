"""Tests for Settings configuration model."""

from pathlib import Path

import pytest

from tickwork.config import Settings


class TestDefaults:
    def test_default_database(self):
        s = Settings()
        assert s.database_enabled is True
        assert s.database_path == Path("data/tickwork.db")

    def test_default_redis_url_is_empty(self):
        s = Settings()
        assert s.redis_url == ""

    def test_default_cache_ttl_is_one_day(self):
        s = Settings()
        assert s.cache_ttl_seconds == 86400

    def test_default_scheduler_timezone(self):
        s = Settings()
        assert s.scheduler_timezone == "UTC"

    def test_demo_tasks_off_by_default(self):
        s = Settings()
        assert s.demo_tasks is False


class TestGetTaskTimeout:
    def test_zero_disables_timeout(self):
        s = Settings(scheduler_task_timeout=0)
        assert s.get_task_timeout() is None

    def test_positive_timeout(self):
        s = Settings(scheduler_task_timeout=2.5)
        assert s.get_task_timeout() == 2.5

    def test_negative_timeout_rejected(self):
        with pytest.raises(ValueError):
            Settings(scheduler_task_timeout=-1)


class TestValidation:
    def test_cache_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            Settings(cache_ttl_seconds=0)

    def test_unknown_field_raises(self):
        with pytest.raises(ValueError, match="extra_forbidden"):
            Settings(**{"nonexistent_field": "value"})
