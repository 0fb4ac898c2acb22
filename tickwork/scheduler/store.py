"""TaskStore — aiosqlite CRUD for the ``scheduler_tasks`` table."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import aiosqlite

from tickwork.scheduler.errors import TaskAlreadyExistsError, TaskNotFoundError
from tickwork.scheduler.models import TaskModel, TaskStatus, utcnow

if TYPE_CHECKING:
    from datetime import datetime
    from pathlib import Path

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, description, schedule, status, last_run, next_run, last_error, created_at, updated_at"
)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS scheduler_tasks (
    id          TEXT PRIMARY KEY,
    description TEXT NOT NULL DEFAULT '',
    schedule    TEXT NOT NULL DEFAULT '',
    status      TEXT NOT NULL DEFAULT 'pending',
    last_run    TEXT,
    next_run    TEXT,
    last_error  TEXT NOT NULL DEFAULT '',
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
)
"""

_CREATE_STATUS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_scheduler_tasks_status ON scheduler_tasks (status)
"""


@runtime_checkable
class TaskRepository(Protocol):
    """Durable storage for task state. The source of truth across restarts."""

    async def create(self, task: TaskModel) -> None: ...

    async def update(self, task: TaskModel) -> None: ...

    async def delete(self, task_id: str) -> None: ...

    async def find_by_id(self, task_id: str) -> TaskModel: ...

    async def find_all(self) -> list[TaskModel]: ...

    async def find_by_status(self, status: TaskStatus) -> list[TaskModel]: ...

    async def update_status(self, task_id: str, status: TaskStatus) -> None: ...

    async def update_next_run(self, task_id: str, next_run: datetime | None) -> None: ...

    async def update_last_run(
        self,
        task_id: str,
        last_run: datetime,
        status: TaskStatus,
        last_error: str,
    ) -> None: ...


class TaskStore:
    """Persists scheduler task state in SQLite.

    Each call opens its own connection, so a store can be shared between the
    engine and background persistence without extra locking.  Pass a
    ``tmp_path`` database for test isolation.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._initialised = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        if not self._initialised:
            await db.execute(_CREATE_TABLE)
            await db.execute(_CREATE_STATUS_INDEX)
            await db.commit()
            self._initialised = True
        return db

    async def _execute_update(self, task_id: str, sql: str, params: tuple) -> None:
        """Run an UPDATE and raise TaskNotFoundError when no row matched."""
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            await db.commit()
            if cursor.rowcount == 0:
                raise TaskNotFoundError(task_id)
        finally:
            await db.close()

    async def migrate(self) -> None:
        """Create the table and its indexes if they do not exist."""
        self._initialised = False
        db = await self._connect()
        await db.close()
        logger.info("scheduler_tasks table ready at %s", self._db_path)

    # -- CRUD ------------------------------------------------------------------

    async def create(self, task: TaskModel) -> None:
        """Insert a new task row.

        Raises:
            TaskAlreadyExistsError: If a row with the same ID exists.
        """
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO scheduler_tasks ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                task.to_row(),
            )
            await db.commit()
        except aiosqlite.IntegrityError as exc:
            raise TaskAlreadyExistsError(task.id) from exc
        finally:
            await db.close()
        logger.info("Task created: %s", task.id)

    async def update(self, task: TaskModel) -> None:
        """Overwrite every column of an existing row."""
        task.updated_at = utcnow()
        row = task.to_row()
        await self._execute_update(
            task.id,
            """
            UPDATE scheduler_tasks
               SET description = ?, schedule = ?, status = ?, last_run = ?,
                   next_run = ?, last_error = ?, created_at = ?, updated_at = ?
             WHERE id = ?
            """,
            (*row[1:], task.id),
        )
        logger.info("Task updated: %s", task.id)

    async def delete(self, task_id: str) -> None:
        db = await self._connect()
        try:
            cursor = await db.execute("DELETE FROM scheduler_tasks WHERE id = ?", (task_id,))
            await db.commit()
            if cursor.rowcount == 0:
                raise TaskNotFoundError(task_id)
        finally:
            await db.close()
        logger.info("Task deleted: %s", task_id)

    async def find_by_id(self, task_id: str) -> TaskModel:
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduler_tasks WHERE id = ?", (task_id,)
            )
            row = await cursor.fetchone()
        finally:
            await db.close()
        if row is None:
            raise TaskNotFoundError(task_id)
        return TaskModel.from_row(row)

    async def find_all(self) -> list[TaskModel]:
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduler_tasks ORDER BY created_at"
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [TaskModel.from_row(row) for row in rows]

    async def find_by_status(self, status: TaskStatus) -> list[TaskModel]:
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM scheduler_tasks WHERE status = ? ORDER BY created_at",
                (TaskStatus(status).value,),
            )
            rows = await cursor.fetchall()
        finally:
            await db.close()
        return [TaskModel.from_row(row) for row in rows]

    # -- Partial updates -------------------------------------------------------

    async def update_status(self, task_id: str, status: TaskStatus) -> None:
        await self._execute_update(
            task_id,
            "UPDATE scheduler_tasks SET status = ?, updated_at = ? WHERE id = ?",
            (TaskStatus(status).value, utcnow().isoformat(), task_id),
        )
        logger.info("Task status updated: %s -> %s", task_id, status)

    async def update_next_run(self, task_id: str, next_run: datetime | None) -> None:
        await self._execute_update(
            task_id,
            "UPDATE scheduler_tasks SET next_run = ?, updated_at = ? WHERE id = ?",
            (next_run.isoformat() if next_run else None, utcnow().isoformat(), task_id),
        )
        logger.debug("Task next run updated: %s -> %s", task_id, next_run)

    async def update_last_run(
        self,
        task_id: str,
        last_run: datetime,
        status: TaskStatus,
        last_error: str,
    ) -> None:
        await self._execute_update(
            task_id,
            """
            UPDATE scheduler_tasks
               SET last_run = ?, status = ?, last_error = ?, updated_at = ?
             WHERE id = ?
            """,
            (
                last_run.isoformat(),
                TaskStatus(status).value,
                last_error,
                utcnow().isoformat(),
                task_id,
            ),
        )
        logger.debug("Task last run updated: %s (%s)", task_id, status)
