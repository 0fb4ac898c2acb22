"""Recurring task scheduler — schedule parsing, persistence, caching, and execution."""

from tickwork.scheduler.cache import RedisTaskCache, TaskCache
from tickwork.scheduler.engine import SchedulerEngine
from tickwork.scheduler.errors import (
    CacheMissError,
    InvalidScheduleError,
    SchedulerError,
    TaskAlreadyExistsError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from tickwork.scheduler.models import Task, TaskModel, TaskStatus
from tickwork.scheduler.schedule import parse_schedule
from tickwork.scheduler.store import TaskRepository, TaskStore

__all__ = [
    "CacheMissError",
    "InvalidScheduleError",
    "RedisTaskCache",
    "SchedulerEngine",
    "SchedulerError",
    "Task",
    "TaskAlreadyExistsError",
    "TaskCache",
    "TaskModel",
    "TaskNotFoundError",
    "TaskRepository",
    "TaskStatus",
    "TaskStore",
    "TaskTimeoutError",
    "parse_schedule",
]
