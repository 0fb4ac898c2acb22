#!/usr/bin/env python3
"""Create the scheduler_tasks table and optionally list persisted tasks.

Usage examples:
    # Create the table in the configured database
    uv run python scripts/migrate.py

    # Use a different database file
    uv run python scripts/migrate.py --db data/other.db

    # Show what the scheduler will reload on start
    uv run python scripts/migrate.py --list

    # Only failed tasks
    uv run python scripts/migrate.py --list --status failed
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tickwork.config import settings
from tickwork.scheduler.models import TaskModel, TaskStatus
from tickwork.scheduler.store import TaskStore


def format_task(task: TaskModel) -> str:
    """Render one task as a single line."""
    last_run = task.last_run.strftime("%Y-%m-%d %H:%M:%S") if task.last_run else "never"
    next_run = task.next_run.strftime("%Y-%m-%d %H:%M:%S") if task.next_run else "-"
    line = f"{task.id:<24} {task.status.value:<10} {task.schedule:<16}"
    line += f" last={last_run} next={next_run}"
    if task.last_error:
        line += f"  error={task.last_error}"
    return line


async def run(db_path: Path, *, list_tasks: bool, status: str | None) -> int:
    store = TaskStore(db_path)
    await store.migrate()
    print(f"scheduler_tasks ready in {db_path}")

    if not list_tasks:
        return 0

    if status:
        tasks = await store.find_by_status(TaskStatus(status))
    else:
        tasks = await store.find_all()
    if not tasks:
        print("No tasks stored.")
        return 0
    for task in tasks:
        print(format_task(task))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Prepare and inspect the scheduler task table")
    parser.add_argument(
        "--db", type=Path, default=settings.database_path, help="SQLite database path"
    )
    parser.add_argument("--list", action="store_true", dest="list_tasks", help="List stored tasks")
    parser.add_argument(
        "--status",
        choices=[s.value for s in TaskStatus],
        help="Only list tasks with this status",
    )
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.db, list_tasks=args.list_tasks, status=args.status)))


if __name__ == "__main__":
    main()
