"""Priority/dependency/retry engine for enrichment tasks.

Selection is deterministic: among queued tasks that are eligible (past
their backoff), dependency-satisfied and not targeting an entity that is
already being processed, the task with the lowest ``(priority, sequence)``
runs next.  If that task's priority tier is at its limit, nothing starts
until a slot in the tier frees.

Each task runs in two phases.  ``execute`` awaits the text-generation
capability under a timeout; it is the only suspension point.  ``apply``
then writes the result back through the store synchronously, so store
updates for one entity never interleave.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from intentweave.config import SchedulerSectionConfig
from intentweave.errors import (
    ClassifiedError,
    EntityNotFoundError,
    ErrorKind,
    InvariantViolation,
    classify_error,
)
from intentweave.scheduler.models import (
    REFRESH_TASK_TYPES,
    TASK_SPECS,
    TargetKind,
    Task,
    TaskAttempt,
    TaskDependency,
    TaskError,
    TaskStatus,
    TaskType,
)
from intentweave.scheduler.repository import TaskRepository
from intentweave.store.models import utcnow

logger = logging.getLogger(__name__)

CRITICAL_MAX_PRIORITY = 4
IMPORTANT_MAX_PRIORITY = 19


class TaskHandler:
    """Runs one task type.  Subclasses override :meth:`execute`."""

    async def execute(self, task: Task) -> dict[str, Any]:
        raise NotImplementedError

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        """Write *output* back to the store.  Runs without suspension."""


def priority_tier(priority: int) -> str:
    if priority <= CRITICAL_MAX_PRIORITY:
        return "critical"
    if priority <= IMPORTANT_MAX_PRIORITY:
        return "important"
    return "background"


class TaskScheduler:
    """Runs queued tasks with bounded concurrency and classified retries."""

    def __init__(
        self,
        repository: TaskRepository | None = None,
        *,
        config: SchedulerSectionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository if repository is not None else TaskRepository()
        self.config = config or SchedulerSectionConfig()
        self._clock = clock
        self._sleep = sleep
        self._handlers: dict[TaskType, TaskHandler] = {}
        self._in_flight: dict[str, asyncio.Task[None]] = {}
        self._abandoned: set[str] = set()
        self._wake: asyncio.Event | None = None
        self._worker: asyncio.Task[None] | None = None
        self._stopping = False

    @property
    def max_concurrent(self) -> int:
        return max(self.config.max_concurrent or 1, 1)

    def register(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def register_all(self, handlers: dict[TaskType, TaskHandler]) -> None:
        self._handlers.update(handlers)

    # ── Producers ────────────────────────────────────────────────

    def enqueue(
        self,
        task_type: TaskType,
        *,
        page_id: str | None = None,
        intent_id: str | None = None,
        priority: int | None = None,
        depends_on: Iterable[str | TaskDependency] = (),
        structured_input: dict[str, Any] | None = None,
    ) -> Task:
        """Queue a task, or return the queued/processing one for the same target.

        Re-enqueueing with a more urgent priority promotes the queued task.
        """
        target_kind, default_priority = TASK_SPECS[task_type]
        if target_kind == TargetKind.PAGE and (page_id is None or intent_id is not None):
            raise ValueError(f"{task_type} targets a page")
        if target_kind == TargetKind.INTENT and (intent_id is None or page_id is not None):
            raise ValueError(f"{task_type} targets an intent")
        if target_kind == TargetKind.SYSTEM and (page_id is not None or intent_id is not None):
            raise ValueError(f"{task_type} is a system task")

        task = Task(
            type=task_type,
            page_id=page_id,
            intent_id=intent_id,
            priority=default_priority if priority is None else priority,
            created_at=self._clock(),
            depends_on=[
                d if isinstance(d, TaskDependency) else TaskDependency(task_id=d)
                for d in depends_on
            ],
            structured_input=dict(structured_input or {}),
        )

        existing = self.repository.find_active(task.dedup_key)
        if existing is not None:
            if existing.status == TaskStatus.QUEUED and task.priority < existing.priority:
                existing.priority = task.priority
                self.repository.save()
            return existing.model_copy(deep=True)

        self.repository.add(task)
        logger.debug("Queued %s for %s at priority %d", task.type, task.target_id, task.priority)
        self._notify()
        return task.model_copy(deep=True)

    def refresh_intent(self, intent_id: str) -> list[Task]:
        """Re-run derived content for an intent behind first-time enrichment."""
        offset = self.config.refresh_priority_offset
        return [
            self.enqueue(
                task_type,
                intent_id=intent_id,
                priority=TASK_SPECS[task_type][1] + offset,
            )
            for task_type in REFRESH_TASK_TYPES
        ]

    def resubmit(self, task_id: str) -> Task:
        """Create a fresh attempt of a finished task."""
        old = self._require(task_id)
        if not old.is_terminal:
            raise ValueError(f"Task {task_id} is still {old.status}")
        existing = self.repository.find_active(old.dedup_key)
        if existing is not None:
            return existing.model_copy(deep=True)
        task = Task(
            type=old.type,
            page_id=old.page_id,
            intent_id=old.intent_id,
            priority=old.priority,
            created_at=self._clock(),
            structured_input=dict(old.structured_input),
            resubmitted_from=old.id,
        )
        self.repository.add(task)
        self._notify()
        return task.model_copy(deep=True)

    def cancel(self, task_id: str) -> bool:
        """Remove a queued task, or abandon a processing one's result."""
        task = self.repository.get(task_id)
        if task is None or task.is_terminal:
            return False
        if task.status == TaskStatus.PROCESSING:
            self._abandoned.add(task_id)
            logger.info("Abandoning in-flight task %s (%s)", task_id, task.type)
            return True
        self.repository.delete(task_id)
        return True

    def prune(self, retention_days: float | None = None) -> int:
        days = self.config.retention_days if retention_days is None else retention_days
        return self.repository.prune(self._clock() - timedelta(days=days))

    # ── Queries ──────────────────────────────────────────────────

    def _require(self, task_id: str) -> Task:
        task = self.repository.get(task_id)
        if task is None:
            raise EntityNotFoundError(f"Task not found: {task_id}")
        return task

    def get(self, task_id: str) -> Task | None:
        task = self.repository.get(task_id)
        return task.model_copy(deep=True) if task else None

    def tasks(self, status: TaskStatus | None = None) -> list[Task]:
        tasks = sorted(self.repository.list(status), key=lambda t: t.sequence)
        return [t.model_copy(deep=True) for t in tasks]

    def tasks_for_entity(self, entity_id: str) -> list[Task]:
        return [t.model_copy(deep=True) for t in self.repository.by_entity(entity_id)]

    def counts(self) -> dict[str, int]:
        counter = Counter(t.status.value for t in self.repository.list())
        return {status.value: counter.get(status.value, 0) for status in TaskStatus}

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    # ── Selection ────────────────────────────────────────────────

    def _fail_blocked_dependents(self) -> None:
        """Fail queued tasks whose required dependency failed or vanished."""
        changed = True
        while changed:
            changed = False
            for task in self.repository.list(TaskStatus.QUEUED):
                for dep in task.depends_on:
                    if not dep.required:
                        continue
                    upstream = self.repository.get(dep.task_id)
                    if upstream is None:
                        reason = f"Dependency {dep.task_id} not found"
                    elif upstream.status == TaskStatus.FAILED:
                        reason = f"Dependency {dep.task_id} ({upstream.type}) failed"
                    else:
                        continue
                    self._mark_failed(task, ErrorKind.DEPENDENCY, reason)
                    changed = True
                    break
        self.repository.save()

    def _dependencies_met(self, task: Task) -> bool:
        for dep in task.depends_on:
            if not dep.required:
                continue
            upstream = self.repository.get(dep.task_id)
            if upstream is None or upstream.status != TaskStatus.COMPLETED:
                return False
        return True

    def select_next(self, now: datetime | None = None) -> Task | None:
        """The next runnable task, or None when nothing may start now."""
        now = now or self._clock()
        self._fail_blocked_dependents()

        processing = self.repository.list(TaskStatus.PROCESSING)
        if len(processing) >= self.max_concurrent:
            return None
        busy = {t.target_id for t in processing if t.target_id is not None}
        tier_load = Counter(priority_tier(t.priority) for t in processing)

        queued = sorted(
            self.repository.list(TaskStatus.QUEUED),
            key=lambda t: (t.priority, t.sequence),
        )
        for task in queued:
            if task.not_before is not None and task.not_before > now:
                continue
            if not self._dependencies_met(task):
                continue
            if task.target_id is not None and task.target_id in busy:
                continue
            tier = priority_tier(task.priority)
            limit = self.config.tier_limits.get(tier)
            if limit is not None and tier_load[tier] >= limit:
                # Nothing overtakes the most urgent task; it waits for its tier.
                return None
            return task
        return None

    def _next_wake_delay(self) -> float | None:
        """Seconds until a deferred task becomes eligible, or None if idle."""
        now = self._clock()
        deferred = [
            t.not_before
            for t in self.repository.list(TaskStatus.QUEUED)
            if t.not_before is not None and t.not_before > now
        ]
        if deferred:
            return max((min(deferred) - now).total_seconds(), 0.0)
        stuck = self.repository.list(TaskStatus.QUEUED)
        if stuck:
            logger.warning("%d queued task(s) cannot run (unsatisfiable dependencies)", len(stuck))
        return None

    # ── Execution ────────────────────────────────────────────────

    def _mark_failed(self, task: Task, kind: ErrorKind, message: str) -> None:
        task.status = TaskStatus.FAILED
        task.error = TaskError(kind=kind, message=message)
        task.completed_at = self._clock()
        task.not_before = None
        logger.warning("Task %s (%s) failed [%s]: %s", task.id, task.type, kind, message)

    def _start(self, task: Task) -> None:
        task.status = TaskStatus.PROCESSING
        task.started_at = self._clock()
        task.not_before = None
        self.repository.save()
        self._in_flight[task.id] = asyncio.create_task(
            self._run(task), name=f"{task.type}-{task.id}"
        )

    def _dispatch(self) -> None:
        while True:
            task = self.select_next()
            if task is None:
                return
            self._start(task)

    async def _run(self, task: Task) -> None:
        handler = self._handlers.get(task.type)
        started_at = self._clock()
        started = time.monotonic()
        try:
            if handler is None:
                raise ClassifiedError(f"No handler registered for {task.type}", ErrorKind.PERMANENT)
            snapshot = task.model_copy(deep=True)
            output = await asyncio.wait_for(
                handler.execute(snapshot),
                timeout=self.config.task_timeout_seconds,
            )
            if task.id in self._abandoned:
                logger.info("Discarding result of abandoned task %s", task.id)
                self.repository.delete(task.id)
                return
            handler.apply(snapshot, output)
        except InvariantViolation:
            raise
        except Exception as exc:
            if task.id in self._abandoned:
                self.repository.delete(task.id)
                return
            self._record_failure(task, exc, started_at, time.monotonic() - started)
        else:
            self._record_success(task, output, started_at, time.monotonic() - started)
        finally:
            self._in_flight.pop(task.id, None)
            self._abandoned.discard(task.id)
            self._notify()

    def _record_success(
        self, task: Task, output: dict[str, Any], started_at: datetime, elapsed: float
    ) -> None:
        task.attempts.append(
            TaskAttempt(
                attempt_number=len(task.attempts) + 1,
                started_at=started_at,
                duration_ms=int(elapsed * 1000),
            )
        )
        task.status = TaskStatus.COMPLETED
        task.structured_output = output
        task.error = None
        task.completed_at = self._clock()
        self.repository.save()
        logger.info("Task %s (%s) completed in %.2fs", task.id, task.type, elapsed)

    def _record_failure(
        self, task: Task, exc: Exception, started_at: datetime, elapsed: float
    ) -> None:
        kind = classify_error(exc)
        if isinstance(exc, TimeoutError):
            message = f"Network timeout after {self.config.task_timeout_seconds}s"
        else:
            message = str(exc) or type(exc).__name__

        task.attempts.append(
            TaskAttempt(
                attempt_number=len(task.attempts) + 1,
                started_at=started_at,
                duration_ms=int(elapsed * 1000),
                error=message,
                error_kind=kind,
            )
        )

        if kind == ErrorKind.TRANSIENT and task.retry_count < self.config.max_retries:
            task.retry_count += 1
            delay = self.config.backoff_for(task.retry_count)
            task.status = TaskStatus.QUEUED
            task.started_at = None
            task.error = TaskError(kind=kind, message=message)
            task.not_before = self._clock() + timedelta(seconds=delay)
            logger.warning(
                "Task %s (%s) failed, retry %d/%d in %.1fs: %s",
                task.id,
                task.type,
                task.retry_count,
                self.config.max_retries,
                delay,
                message,
            )
        else:
            self._mark_failed(task, kind, message)
        self.repository.save()

    # ── Run loops ────────────────────────────────────────────────

    async def run_until_idle(self) -> None:
        """Process tasks until nothing is runnable, in flight, or deferred."""
        while True:
            self._dispatch()
            if self._in_flight:
                done, _pending = await asyncio.wait(
                    list(self._in_flight.values()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for finished in done:
                    finished.result()
                continue
            delay = self._next_wake_delay()
            if delay is None:
                return
            await self._sleep(delay)

    def _notify(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def _worker_loop(self, wake: asyncio.Event) -> None:
        while not self._stopping:
            wake.clear()
            await self.run_until_idle()
            if not self._stopping:
                await wake.wait()

    def start(self) -> None:
        """Run the queue in the background; enqueues wake the worker."""
        if self._worker is not None and not self._worker.done():
            return
        self._stopping = False
        self._wake = asyncio.Event()
        self._worker = asyncio.create_task(
            self._worker_loop(self._wake), name="intentweave-scheduler"
        )

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the background worker.

        With ``drain`` the queue is run to idle first.  Otherwise in-flight
        work is cancelled and its tasks go back to ``queued``.
        """
        if self._worker is None:
            return
        self._stopping = True
        if drain:
            self._notify()
            await self._worker
            # Work enqueued after the worker's last pass
            await self.run_until_idle()
        else:
            self._worker.cancel()
            in_flight = list(self._in_flight.values())
            for running in in_flight:
                running.cancel()
            await asyncio.gather(self._worker, *in_flight, return_exceptions=True)
            for task in self.repository.list(TaskStatus.PROCESSING):
                task.status = TaskStatus.QUEUED
                task.started_at = None
            self.repository.save()
        self._worker = None
        self._wake = None
