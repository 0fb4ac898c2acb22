"""Scheduler data model — task status, persisted rows, and in-memory tasks."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    TaskFunc = Callable[[], Any] | Callable[[], Awaitable[Any]]


class TaskStatus(StrEnum):
    """Lifecycle state of a scheduled task.

    ``pending → running → {completed, failed} → running → …`` on every firing.
    ``disabled`` removes the task from reload and execution until re-enabled.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DISABLED = "disabled"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _dump_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _load_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    # Rows written by other tools may be naive; treat them as UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class TaskModel:
    """A scheduled task as stored in ``scheduler_tasks`` and in the cache.

    Attributes:
        id: Unique identifier.
        description: Human-readable description.
        schedule: The raw schedule string the task was registered with.
        status: Last known :class:`TaskStatus`.
        last_run: When the task last started.
        next_run: When the task is expected to fire next.
        last_error: Text of the last failure (empty after a success).
        created_at: Row creation time (UTC).
        updated_at: Last modification time (UTC).
    """

    id: str
    description: str = ""
    schedule: str = ""
    status: TaskStatus = TaskStatus.PENDING
    last_run: datetime | None = None
    next_run: datetime | None = None
    last_error: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.status = TaskStatus(self.status)

    # -- SQLite rows -----------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``scheduler_tasks`` column order."""
        return (
            self.id,
            self.description,
            self.schedule,
            self.status.value,
            _dump_ts(self.last_run),
            _dump_ts(self.next_run),
            self.last_error,
            _dump_ts(self.created_at),
            _dump_ts(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: tuple) -> TaskModel:
        return cls(
            id=row[0],
            description=row[1] or "",
            schedule=row[2] or "",
            status=TaskStatus(row[3]),
            last_run=_load_ts(row[4]),
            next_run=_load_ts(row[5]),
            last_error=row[6] or "",
            created_at=_load_ts(row[7]) or utcnow(),
            updated_at=_load_ts(row[8]) or utcnow(),
        )

    # -- Cache blobs -----------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "schedule": self.schedule,
            "status": self.status.value,
            "last_run": _dump_ts(self.last_run),
            "next_run": _dump_ts(self.next_run),
            "last_error": self.last_error,
            "created_at": _dump_ts(self.created_at),
            "updated_at": _dump_ts(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskModel:
        return cls(
            id=data["id"],
            description=data.get("description") or "",
            schedule=data.get("schedule") or "",
            status=TaskStatus(data.get("status") or TaskStatus.PENDING),
            last_run=_load_ts(data.get("last_run")),
            next_run=_load_ts(data.get("next_run")),
            last_error=data.get("last_error") or "",
            created_at=_load_ts(data.get("created_at")) or utcnow(),
            updated_at=_load_ts(data.get("updated_at")) or utcnow(),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str | bytes) -> TaskModel:
        return cls.from_dict(json.loads(raw))


@dataclass
class Task:
    """A task registered with the scheduler engine.

    ``func``, ``is_running``, ``error`` and ``job_id`` live only in the process
    that registered the task; everything else round-trips through
    :class:`TaskModel`.
    """

    id: str
    description: str
    schedule: str
    interval: timedelta = field(default_factory=timedelta)
    func: TaskFunc | None = None
    is_running: bool = False
    last_run: datetime | None = None
    next_run: datetime | None = None
    status: TaskStatus = TaskStatus.PENDING
    error: BaseException | None = None
    last_error: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    restored: bool = False
    job_id: str | None = None

    @property
    def is_cron(self) -> bool:
        return self.interval == timedelta(0)

    def to_model(self) -> TaskModel:
        return TaskModel(
            id=self.id,
            description=self.description,
            schedule=self.schedule,
            status=self.status,
            last_run=self.last_run,
            next_run=self.next_run,
            last_error=self.last_error,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    @classmethod
    def from_model(
        cls,
        model: TaskModel,
        *,
        interval: timedelta | None = None,
        func: TaskFunc | None = None,
        restored: bool = False,
    ) -> Task:
        return cls(
            id=model.id,
            description=model.description,
            schedule=model.schedule,
            interval=interval or timedelta(0),
            func=func,
            last_run=model.last_run,
            next_run=model.next_run,
            status=model.status,
            last_error=model.last_error,
            created_at=model.created_at,
            updated_at=model.updated_at,
            restored=restored,
        )
