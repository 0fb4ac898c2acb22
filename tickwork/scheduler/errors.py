"""Scheduler error taxonomy."""


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class TaskAlreadyExistsError(SchedulerError):
    """A task with this ID already exists."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with this ID already exists: {task_id}")
        self.task_id = task_id


class TaskNotFoundError(SchedulerError, KeyError):
    """No task is registered or stored under this ID."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id

    def __str__(self) -> str:
        # KeyError quotes its argument otherwise
        return str(self.args[0])


class CacheMissError(TaskNotFoundError):
    """The task blob is absent from the cache (never set, expired, or deleted)."""


class InvalidScheduleError(SchedulerError, ValueError):
    """The schedule string is neither a duration nor a valid cron expression."""


class TaskTimeoutError(SchedulerError, TimeoutError):
    """A task callback ran longer than the engine's per-task timeout."""
