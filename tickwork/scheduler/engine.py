"""SchedulerEngine — in-memory task registry driven by APScheduler.

The engine owns the registry of :class:`Task` objects, arms one APScheduler
job per task, runs task callbacks, and mirrors task state into an optional
repository (source of truth) and an optional cache.  Persistence failures
are logged and never surface to callers: the in-memory registry is
authoritative for the running process.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from functools import partial
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from tickwork.config import settings
from tickwork.scheduler.errors import (
    CacheMissError,
    InvalidScheduleError,
    TaskAlreadyExistsError,
    TaskNotFoundError,
    TaskTimeoutError,
)
from tickwork.scheduler.models import Task, TaskModel, TaskStatus, utcnow
from tickwork.scheduler.schedule import (
    build_trigger,
    check_interval,
    format_duration,
    parse_schedule,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine
    from typing import Any

    from tickwork.scheduler.cache import TaskCache
    from tickwork.scheduler.models import TaskFunc
    from tickwork.scheduler.store import TaskRepository

    LayerUpdate = Callable[[Any], Awaitable[None]]

logger = logging.getLogger(__name__)


class SchedulerEngine:
    """Registers recurring tasks and fires them on their schedules.

    Args:
        repository: Durable task storage, or None for no persistence.
        cache: Cache mirror of the repository, or None to skip caching.
        timezone: IANA timezone for cron schedules (default from settings).
        task_timeout: Seconds a single callback may run before it is failed;
            0 disables the limit.  Defaults to the configured value.
    """

    def __init__(
        self,
        repository: TaskRepository | None = None,
        cache: TaskCache | None = None,
        *,
        timezone: str | None = None,
        task_timeout: float | None = None,
    ) -> None:
        self._repository = repository
        self._cache = cache
        self._timezone = timezone or settings.scheduler_timezone
        if task_timeout is None:
            task_timeout = settings.get_task_timeout()
        self._task_timeout = task_timeout or None
        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()
        # Serializes start() and stop(); stop() releases _lock while draining
        self._lifecycle = asyncio.Lock()
        self._running = False
        self._stopping = False
        self._draining = False
        self._inflight: set[asyncio.Task] = set()
        self._background: set[asyncio.Task] = set()
        self._last_persist: dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timezone(self) -> str:
        return self._timezone

    @property
    def repository(self) -> TaskRepository | None:
        return self._repository

    @property
    def cache(self) -> TaskCache | None:
        return self._cache

    # -- Registration ----------------------------------------------------------

    async def add_task(
        self,
        task_id: str,
        description: str,
        interval: timedelta,
        func: TaskFunc,
    ) -> str:
        """Register a task that fires every *interval*.

        Raises:
            InvalidScheduleError: If *interval* is not positive or too long.
            TaskAlreadyExistsError: If *task_id* is already registered.
        """
        schedule = format_duration(interval)
        check_interval(interval, schedule)
        return await self._register(task_id, description, schedule, interval, func)

    async def add_task_with_schedule(
        self,
        task_id: str,
        description: str,
        schedule: str,
        func: TaskFunc,
    ) -> str:
        """Register a task with a schedule string (``"30s"``, ``"45"``, ``"0 */5 * * * *"``).

        Raises:
            InvalidScheduleError: If *schedule* cannot be parsed.
            TaskAlreadyExistsError: If *task_id* is already registered.
        """
        _, interval = parse_schedule(schedule)
        return await self._register(task_id, description, schedule, interval, func)

    async def _register(
        self,
        task_id: str,
        description: str,
        schedule: str,
        interval: timedelta,
        func: TaskFunc,
    ) -> str:
        async with self._lock:
            if task_id in self._tasks:
                raise TaskAlreadyExistsError(task_id)

            now = utcnow()
            task = Task(
                id=task_id,
                description=description,
                schedule=schedule,
                interval=interval,
                func=func,
                status=TaskStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            task.next_run = self._next_fire_time(task, now)
            self._tasks[task_id] = task
            await self._persist_new(task.to_model())

            logger.info(
                "Task added to scheduler: %s (%s) schedule=%s", task_id, description, schedule
            )
            if self._running:
                self._arm(task)
        return task_id

    async def remove_task(self, task_id: str) -> None:
        """Unregister a task and delete its persisted copies.

        Raises:
            TaskNotFoundError: If *task_id* is not registered.
        """
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._disarm(task)
            pending = self._last_persist.get(task_id)
            if pending is not None:
                await asyncio.wait([pending])
            del self._tasks[task_id]
            await self._delete_persisted(task_id)
        logger.info("Task removed from scheduler: %s", task_id)

    async def register_callback(self, task_id: str, func: TaskFunc) -> None:
        """Attach the real callback to a task, typically one restored from storage.

        Raises:
            TaskNotFoundError: If *task_id* is not registered.
        """
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            task.func = func
            task.restored = False
        logger.info("Callback registered for task: %s", task_id)

    async def disable_task(self, task_id: str) -> None:
        """Stop firing a task and mark it ``disabled`` (excluded from reload)."""
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            self._disarm(task)
            task.status = TaskStatus.DISABLED
            task.updated_at = utcnow()
            await self._persist_status(task.to_model())
        logger.info("Task disabled: %s", task_id)

    async def enable_task(self, task_id: str) -> None:
        """Move a ``disabled`` task back to ``pending`` and re-arm it."""
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status is not TaskStatus.DISABLED:
                return
            now = utcnow()
            task.status = TaskStatus.PENDING
            task.updated_at = now
            task.next_run = self._next_fire_time(task, now)
            if self._running:
                self._arm(task)
            await self._persist_status(task.to_model())
        logger.info("Task enabled: %s", task_id)

    # -- Queries ---------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        """Return a snapshot of one task.

        Raises:
            TaskNotFoundError: If *task_id* is not registered.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return replace(task)

    def get_tasks(self) -> list[Task]:
        """Return snapshots of every registered task."""
        return [replace(task) for task in self._tasks.values()]

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Reload persisted tasks, arm a job per task, and start the timer.

        A call made while :meth:`stop` is draining waits for it to finish.
        """
        async with self._lifecycle, self._lock:
            if self._running:
                return

            logger.info("Starting scheduler engine")
            try:
                await self._load_tasks()
            except Exception:
                # Keep going with whatever is already registered in memory
                logger.exception("Failed to load persisted tasks")

            self._stopping = False
            self._scheduler.start()
            for task in self._tasks.values():
                if task.status is not TaskStatus.DISABLED:
                    self._arm(task)
            self._running = True

        logger.info(
            "Scheduler started with %d task(s) (tz=%s)", len(self._tasks), self._timezone
        )

    async def stop(self) -> None:
        """Stop the timer and wait for in-flight firings and persistence to drain."""
        if self._draining:
            # Another stop() is already draining, possibly the one awaiting this caller
            return
        async with self._lifecycle:
            async with self._lock:
                if not self._running:
                    return
                logger.info("Stopping scheduler engine")
                self._running = False
                self._stopping = True
                self._draining = True
                self._scheduler.pause()

            try:
                current = asyncio.current_task()
                inflight = [t for t in self._inflight if t is not current]
                if inflight:
                    logger.info("Waiting for %d running task(s) to finish", len(inflight))
                    await asyncio.gather(*inflight, return_exceptions=True)
                await self._drain_background()

                async with self._lock:
                    for task in self._tasks.values():
                        self._disarm(task)
                    self._scheduler.shutdown(wait=False)
            finally:
                self._draining = False
        logger.info("Scheduler stopped")

    async def _load_tasks(self) -> None:
        """Rehydrate the registry: cache first, repository as fallback.

        Indexed IDs whose cache blob has expired are read from the repository
        individually, so a task that fires less often than the cache TTL is
        still reloaded.
        """
        models: list[TaskModel] = []
        missing: list[str] = []
        source = "cache"
        if self._cache is not None:
            try:
                models, missing = await self._cache.get_all_with_missing()
            except Exception:
                logger.warning("Failed to load tasks from cache", exc_info=True)
        else:
            logger.debug("Cache is not available, skipping cache lookup")

        if models and missing and self._repository is not None:
            models.extend(await self._fill_from_store(missing))
        elif not models:
            if self._repository is None:
                logger.info("No repository configured; nothing to reload")
                return
            models = await self._repository.find_all()
            source = "store"
            if self._cache is not None:
                for model in models:
                    if model.status is not TaskStatus.DISABLED:
                        await self._guard(
                            "back-fill cache", model.id, partial(self._cache.set, model)
                        )

        loaded = 0
        for model in models:
            if model.status is TaskStatus.DISABLED:
                logger.info("Skipping disabled task: %s", model.id)
                continue
            if model.id in self._tasks:
                # Registered in this process before start(); keep the real callback
                continue
            try:
                _, interval = parse_schedule(model.schedule)
            except InvalidScheduleError:
                logger.warning(
                    "Skipping persisted task %s with invalid schedule %r",
                    model.id,
                    model.schedule,
                )
                continue
            self._tasks[model.id] = Task.from_model(
                model,
                interval=interval,
                func=partial(self._placeholder, model.id),
                restored=True,
            )
            loaded += 1
        logger.info("Loaded %d task(s) from %s", loaded, source)

    async def _fill_from_store(self, task_ids: list[str]) -> list[TaskModel]:
        """Read tasks missing from the cache out of the repository and re-seed them."""
        repository = self._repository
        found: list[TaskModel] = []
        for task_id in task_ids:
            try:
                model = await repository.find_by_id(task_id)
            except TaskNotFoundError:
                logger.debug("Cache index names %s but the store does not", task_id)
                continue
            except Exception:
                logger.warning("Failed to load task from store: %s", task_id, exc_info=True)
                continue
            if self._cache is not None and model.status is not TaskStatus.DISABLED:
                await self._guard("back-fill cache", task_id, partial(self._cache.set, model))
            found.append(model)
        logger.info("Restored %d task(s) missing from the cache out of the store", len(found))
        return found

    async def _placeholder(self, task_id: str) -> None:
        logger.warning(
            "Task %s was restored from storage but has no callback; "
            "call register_callback() to attach one",
            task_id,
        )

    # -- Timer jobs ------------------------------------------------------------

    def _arm(self, task: Task) -> None:
        """Add (or replace) the APScheduler job for *task*."""
        try:
            cron_expr, _ = parse_schedule(task.schedule)
            trigger = build_trigger(cron_expr, self._timezone)
        except InvalidScheduleError:
            logger.exception("Cannot schedule task %s (%r)", task.id, task.schedule)
            return

        job = self._scheduler.add_job(
            self._execute_task,
            trigger=trigger,
            id=task.id,
            name=task.description or task.id,
            args=[task.id],
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            replace_existing=True,
        )
        task.job_id = job.id
        if job.next_run_time:
            task.next_run = job.next_run_time.astimezone(UTC)

    def _disarm(self, task: Task) -> None:
        if task.job_id is None:
            return
        try:
            self._scheduler.remove_job(task.job_id)
        except JobLookupError:
            logger.debug("Job %s not found in scheduler (may already be removed)", task.job_id)
        task.job_id = None

    def _next_fire_time(self, task: Task, now: datetime) -> datetime | None:
        if task.job_id is not None:
            job = self._scheduler.get_job(task.job_id)
            if job is not None and job.next_run_time:
                return job.next_run_time.astimezone(UTC)
        if not task.is_cron:
            try:
                return now + task.interval
            except OverflowError:
                return None
        try:
            cron_expr, _ = parse_schedule(task.schedule)
            fire_time = build_trigger(cron_expr, self._timezone).get_next_fire_time(None, now)
        except InvalidScheduleError:
            return None
        return fire_time.astimezone(UTC) if fire_time else None

    # -- Execution -------------------------------------------------------------

    async def _execute_task(self, task_id: str) -> None:
        """Job callback: run one firing of *task_id* and record the outcome."""
        current = asyncio.current_task()
        if current is not None:
            self._inflight.add(current)
        try:
            await self._fire(task_id)
        finally:
            if current is not None:
                self._inflight.discard(current)

    async def _fire(self, task_id: str) -> None:
        async with self._lock:
            if self._stopping:
                return
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning("Scheduled task not found: %s", task_id)
                return
            if task.status is TaskStatus.DISABLED:
                logger.info("Skipping disabled task: %s", task_id)
                return
            if task.is_running:
                logger.warning("Task %s is still running; skipping this firing", task_id)
                return

            now = utcnow()
            task.is_running = True
            task.last_run = now
            task.status = TaskStatus.RUNNING
            task.next_run = self._next_fire_time(task, now)
            task.updated_at = now
            func = task.func
            started = task.to_model()

        self._in_background(self._persist_started, started)
        logger.info("Executing scheduled task: %s (%s)", task_id, task.description)

        error: Exception | None = None
        try:
            if func is None:
                raise RuntimeError(f"Task {task_id} has no callback")
            await self._call(func)
        except asyncio.CancelledError:
            task.is_running = False
            raise
        except Exception as exc:
            error = exc

        async with self._lock:
            task.is_running = False
            task.error = error
            if task.status is TaskStatus.RUNNING:
                task.status = TaskStatus.FAILED if error else TaskStatus.COMPLETED
            task.last_error = str(error) if error else ""
            task.updated_at = utcnow()
            finished = task.to_model()
            registered = self._tasks.get(task_id) is task

        if registered:
            self._in_background(self._persist_finished, finished)

        if error is not None:
            logger.error(
                "Task execution failed: %s: %s: %s",
                task_id,
                type(error).__name__,
                finished.last_error,
            )
        else:
            logger.info("Task executed successfully: %s", task_id)

    async def _call(self, func: TaskFunc) -> None:
        if not self._task_timeout:
            await self._invoke(func)
            return
        try:
            await asyncio.wait_for(self._invoke(func), timeout=self._task_timeout)
        except TimeoutError as exc:
            msg = f"Task timed out after {self._task_timeout:g}s"
            raise TaskTimeoutError(msg) from exc

    @staticmethod
    async def _invoke(func: TaskFunc) -> None:
        """Await coroutine callbacks; run plain callables in a worker thread."""
        if inspect.iscoroutinefunction(func):
            result = func()
        else:
            result = await asyncio.to_thread(func)
        if inspect.isawaitable(result):
            await result

    # -- Persistence -----------------------------------------------------------

    @property
    def _persistent(self) -> bool:
        return self._repository is not None or self._cache is not None

    def _in_background(
        self,
        persist: Callable[[TaskModel], Coroutine[Any, Any, None]],
        model: TaskModel,
    ) -> None:
        """Run a persistence step without delaying the caller.

        Steps for the same task run in submission order, so a task's final
        state can never be overwritten by its earlier ``running`` write.
        """
        if not self._persistent:
            return
        previous = self._last_persist.get(model.id)
        bg = asyncio.create_task(self._after(previous, persist, model))
        self._background.add(bg)
        self._last_persist[model.id] = bg

        def _done(finished: asyncio.Task) -> None:
            self._background.discard(finished)
            if self._last_persist.get(model.id) is finished:
                del self._last_persist[model.id]

        bg.add_done_callback(_done)

    @staticmethod
    async def _after(
        previous: asyncio.Task | None,
        persist: Callable[[TaskModel], Coroutine[Any, Any, None]],
        model: TaskModel,
    ) -> None:
        if previous is not None:
            await asyncio.wait([previous])
        await persist(model)

    async def _drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _guard(
        self, action: str, task_id: str, call: Callable[[], Awaitable[None]]
    ) -> bool:
        """Run one persistence call, logging instead of raising on failure."""
        try:
            await call()
        except Exception:
            logger.warning("Failed to %s: %s", action, task_id, exc_info=True)
            return False
        return True

    async def _sync_store(self, snapshot: TaskModel, update: LayerUpdate) -> None:
        if self._repository is None:
            return
        repository = self._repository
        try:
            await update(repository)
        except TaskNotFoundError:
            if snapshot.id not in self._tasks:
                return
            # The row never made it to the store; write the whole task now
            await self._guard(
                "re-create task in store", snapshot.id, partial(repository.create, snapshot)
            )
        except Exception:
            logger.warning("Failed to update task in store: %s", snapshot.id, exc_info=True)

    async def _sync_cache(self, snapshot: TaskModel, update: LayerUpdate) -> None:
        if self._cache is None:
            return
        cache = self._cache
        try:
            await update(cache)
        except CacheMissError:
            if snapshot.id not in self._tasks:
                return
            # Blob expired; re-seed it from the in-memory state
            await self._guard("re-seed task in cache", snapshot.id, partial(cache.set, snapshot))
        except Exception:
            logger.warning("Failed to update task in cache: %s", snapshot.id, exc_info=True)

    async def _persist_new(self, model: TaskModel) -> None:
        if self._repository is not None:
            try:
                await self._repository.create(model)
            except TaskAlreadyExistsError:
                logger.debug("Task already in store: %s", model.id)
            except Exception:
                logger.exception("Failed to save task to store: %s", model.id)
            else:
                logger.info("Task saved to store: %s", model.id)

        if self._cache is not None and await self._guard(
            "save task to cache", model.id, partial(self._cache.set, model)
        ):
            logger.info("Task saved to cache: %s", model.id)

    async def _delete_persisted(self, task_id: str) -> None:
        for layer_name, layer in (("store", self._repository), ("cache", self._cache)):
            if layer is None:
                continue
            try:
                await layer.delete(task_id)
            except TaskNotFoundError:
                logger.debug("Task %s was not in %s", task_id, layer_name)
            except Exception:
                logger.warning(
                    "Failed to remove task from %s: %s", layer_name, task_id, exc_info=True
                )
            else:
                logger.info("Task removed from %s: %s", layer_name, task_id)

    async def _persist_status(self, snapshot: TaskModel) -> None:
        async def _status(layer) -> None:
            await layer.update_status(snapshot.id, snapshot.status)

        await self._sync_store(snapshot, _status)
        await self._sync_cache(snapshot, _status)

    async def _persist_started(self, snapshot: TaskModel) -> None:
        async def _started(layer) -> None:
            await layer.update_last_run(
                snapshot.id, snapshot.last_run, TaskStatus.RUNNING, ""
            )
            await layer.update_next_run(snapshot.id, snapshot.next_run)

        await self._sync_store(snapshot, _started)
        await self._sync_cache(snapshot, _started)

    async def _persist_finished(self, snapshot: TaskModel) -> None:
        async def _finished(layer) -> None:
            await layer.update_last_run(
                snapshot.id, snapshot.last_run, snapshot.status, snapshot.last_error
            )

        await self._sync_store(snapshot, _finished)
        await self._sync_cache(snapshot, _finished)
