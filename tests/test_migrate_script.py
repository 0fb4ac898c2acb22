"""Tests for scripts/migrate.py."""

from datetime import UTC, datetime
from pathlib import Path

from scripts.migrate import format_task, run
from tickwork.scheduler.models import TaskModel, TaskStatus
from tickwork.scheduler.store import TaskStore


def _make_task(task_id: str = "task1", **kwargs) -> TaskModel:
    defaults = {
        "description": "Test Task",
        "schedule": "30s",
        "created_at": datetime(2025, 1, 1, tzinfo=UTC),
        "updated_at": datetime(2025, 1, 1, tzinfo=UTC),
    }
    defaults.update(kwargs)
    return TaskModel(id=task_id, **defaults)


def test_format_task_never_run() -> None:
    line = format_task(_make_task())
    assert line.startswith("task1")
    assert "pending" in line
    assert "last=never" in line
    assert "error=" not in line


def test_format_task_with_error() -> None:
    task = _make_task(
        status=TaskStatus.FAILED,
        last_run=datetime(2025, 6, 1, 10, 0, tzinfo=UTC),
        last_error="boom",
    )
    line = format_task(task)
    assert "last=2025-06-01 10:00:00" in line
    assert line.endswith("error=boom")


async def test_run_creates_table(tmp_path: Path, capsys) -> None:
    db_path = tmp_path / "migrated.db"
    assert await run(db_path, list_tasks=False, status=None) == 0
    assert db_path.exists()
    assert "scheduler_tasks ready" in capsys.readouterr().out


async def test_run_lists_tasks_by_status(tmp_path: Path, capsys) -> None:
    db_path = tmp_path / "migrated.db"
    store = TaskStore(db_path)
    await store.create(_make_task("ok", status=TaskStatus.COMPLETED))
    await store.create(_make_task("bad", status=TaskStatus.FAILED, last_error="boom"))

    await run(db_path, list_tasks=True, status="failed")

    listed = capsys.readouterr().out.splitlines()[1:]
    assert [line.split()[0] for line in listed] == ["bad"]


async def test_run_lists_nothing(tmp_path: Path, capsys) -> None:
    await run(tmp_path / "empty.db", list_tasks=True, status=None)
    assert "No tasks stored." in capsys.readouterr().out
