"""Tests for intentweave.scheduler — ordering, dependencies, retries and concurrency."""

from __future__ import annotations

import asyncio
from collections import Counter
from datetime import timedelta

import pytest
from conftest import NOW, FakeClock

from intentweave.config import SchedulerSectionConfig
from intentweave.errors import ClassifiedError, ErrorKind
from intentweave.scheduler import TaskRepository, TaskScheduler, TaskStatus, TaskType
from intentweave.scheduler.models import Task
from intentweave.scheduler.scheduler import TaskHandler, priority_tier

T = TaskType
WIDE_TIERS = {"critical": 5, "important": 5, "background": 5}


class RecordingHandler(TaskHandler):
    """Records execution order; optionally fails the first *fail_times* calls."""

    def __init__(
        self,
        log: list[str] | None = None,
        *,
        error: Exception | None = None,
        fail_times: int | None = None,
    ) -> None:
        self.log = log if log is not None else []
        self.error = error
        self.fail_times = fail_times
        self.calls = 0
        self.applied: list[str] = []

    async def execute(self, task: Task) -> dict:
        self.calls += 1
        self.log.append(f"{task.type}:{task.target_id}")
        if self.error is not None and (self.fail_times is None or self.calls <= self.fail_times):
            raise self.error
        return {"target": task.target_id}

    def apply(self, task: Task, output: dict) -> None:
        self.applied.append(task.id)


class BlockingHandler(TaskHandler):
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.applied = False

    async def execute(self, task: Task) -> dict:
        self.started.set()
        await self.release.wait()
        return {}

    def apply(self, task: Task, output: dict) -> None:
        self.applied = True


class ConcurrencyTracker(TaskHandler):
    """Tracks overall and per-target concurrency."""

    def __init__(self) -> None:
        self.running: Counter[str] = Counter()
        self.peak = 0
        self.peak_per_target = 0

    async def execute(self, task: Task) -> dict:
        target = task.target_id or "*"
        self.running[target] += 1
        self.peak = max(self.peak, sum(self.running.values()))
        self.peak_per_target = max(self.peak_per_target, self.running[target])
        await asyncio.sleep(0.01)
        self.running[target] -= 1
        return {}


def _make_scheduler(
    clock: FakeClock | None = None, repository=None, sleep=None, **overrides
) -> TaskScheduler:
    overrides.setdefault("backoff_seconds", [0.0, 0.0, 0.0])
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return TaskScheduler(
        repository,
        config=SchedulerSectionConfig(**overrides),
        clock=clock or FakeClock(),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    def test_default_priority_from_type(self):
        scheduler = _make_scheduler()
        task = scheduler.enqueue(T.SEMANTIC_EXTRACTION, page_id="p1")
        assert task.priority == 1
        assert task.status == TaskStatus.QUEUED
        assert task.created_at == NOW

    def test_target_kind_validated(self):
        scheduler = _make_scheduler()
        with pytest.raises(ValueError, match="targets a page"):
            scheduler.enqueue(T.SEMANTIC_EXTRACTION, intent_id="i1")
        with pytest.raises(ValueError, match="targets an intent"):
            scheduler.enqueue(T.GENERATE_INTENT_LABEL, page_id="p1")
        with pytest.raises(ValueError, match="system task"):
            scheduler.enqueue(T.SCAN_MERGE_OPPORTUNITIES, page_id="p1")

    def test_duplicate_returns_existing(self):
        scheduler = _make_scheduler()
        first = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        second = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        assert first.id == second.id
        assert len(scheduler.tasks()) == 1

    def test_more_urgent_duplicate_promotes(self):
        scheduler = _make_scheduler()
        task = scheduler.enqueue(T.GENERATE_INTENT_LABEL, intent_id="i1", priority=25)
        scheduler.enqueue(T.GENERATE_INTENT_LABEL, intent_id="i1", priority=5)
        scheduler.enqueue(T.GENERATE_INTENT_LABEL, intent_id="i1", priority=40)
        assert scheduler.get(task.id).priority == 5

    def test_returns_copies(self):
        scheduler = _make_scheduler()
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        task.priority = 99
        assert scheduler.get(task.id).priority == 4

    def test_refresh_intent_queues_derived_content(self):
        scheduler = _make_scheduler()
        tasks = scheduler.refresh_intent("i1")
        assert [(t.type, t.priority) for t in tasks] == [
            (T.GENERATE_INTENT_LABEL, 25),
            (T.GENERATE_INTENT_GOAL, 26),
            (T.GENERATE_INTENT_SUMMARY, 40),
            (T.GENERATE_INTENT_INSIGHTS, 41),
            (T.GENERATE_INTENT_NEXT_STEPS, 42),
        ]

    @pytest.mark.parametrize(
        ("priority", "tier"),
        [(1, "critical"), (4, "critical"), (5, "important"), (19, "important"), (20, "background")],
    )
    def test_priority_tier(self, priority, tier):
        assert priority_tier(priority) == tier


# ---------------------------------------------------------------------------
# Ordering and dependencies
# ---------------------------------------------------------------------------


class TestOrdering:
    @pytest.mark.asyncio
    async def test_lowest_priority_first(self):
        scheduler = _make_scheduler(max_concurrent=1)
        handler = RecordingHandler()
        scheduler.register(T.SUMMARIZATION, handler)
        for page, priority in (("p5", 5), ("p1", 1), ("p3", 3)):
            scheduler.enqueue(T.SUMMARIZATION, page_id=page, priority=priority)

        await scheduler.run_until_idle()

        assert handler.log == ["summarization:p1", "summarization:p3", "summarization:p5"]

    @pytest.mark.asyncio
    async def test_priority_order_with_default_limits(self):
        scheduler = _make_scheduler()
        handler = RecordingHandler()
        scheduler.register(T.GENERATE_INTENT_SUMMARY, handler)
        for intent, priority in (("i5", 5), ("i1", 1), ("i3", 3)):
            scheduler.enqueue(T.GENERATE_INTENT_SUMMARY, intent_id=intent, priority=priority)

        await scheduler.run_until_idle()

        assert scheduler.max_concurrent == 2
        assert handler.log == [
            "generate_intent_summary:i1",
            "generate_intent_summary:i3",
            "generate_intent_summary:i5",
        ]

    @pytest.mark.asyncio
    async def test_full_tier_blocks_less_urgent_work(self):
        scheduler = _make_scheduler()
        handler = BlockingHandler()
        scheduler.register(T.GENERATE_INTENT_SUMMARY, handler)
        first = scheduler.enqueue(T.GENERATE_INTENT_SUMMARY, intent_id="i1", priority=1)
        scheduler.enqueue(T.GENERATE_INTENT_SUMMARY, intent_id="i2", priority=2)
        scheduler.enqueue(T.GENERATE_INTENT_SUMMARY, intent_id="i3", priority=25)

        runner = asyncio.create_task(scheduler.run_until_idle())
        await handler.started.wait()

        assert scheduler.get(first.id).status == TaskStatus.PROCESSING
        assert scheduler.select_next() is None
        handler.release.set()
        await runner
        assert scheduler.counts()["completed"] == 3

    @pytest.mark.asyncio
    async def test_fifo_within_priority(self):
        scheduler = _make_scheduler(max_concurrent=1)
        handler = RecordingHandler()
        scheduler.register(T.SUMMARIZATION, handler)
        for page in ("a", "b", "c"):
            scheduler.enqueue(T.SUMMARIZATION, page_id=page)

        await scheduler.run_until_idle()

        assert handler.log == ["summarization:a", "summarization:b", "summarization:c"]

    @pytest.mark.asyncio
    async def test_dependency_runs_first(self):
        scheduler = _make_scheduler(max_concurrent=2, tier_limits=WIDE_TIERS)
        log: list[str] = []
        scheduler.register(T.SEMANTIC_EXTRACTION, RecordingHandler(log))
        scheduler.register(T.INTENT_MATCHING, RecordingHandler(log))
        extraction = scheduler.enqueue(T.SEMANTIC_EXTRACTION, page_id="p1", priority=10)
        scheduler.enqueue(T.INTENT_MATCHING, page_id="p1", priority=1, depends_on=[extraction.id])

        await scheduler.run_until_idle()

        assert log == ["semantic_extraction:p1", "intent_matching:p1"]
        assert scheduler.counts()["completed"] == 2

    @pytest.mark.asyncio
    async def test_dependent_of_failed_task_fails_without_running(self):
        scheduler = _make_scheduler()
        log: list[str] = []
        scheduler.register(
            T.SEMANTIC_EXTRACTION,
            RecordingHandler(log, error=ClassifiedError("Page not found: p1", ErrorKind.PERMANENT)),
        )
        scheduler.register(T.INTENT_MATCHING, RecordingHandler(log))
        extraction = scheduler.enqueue(T.SEMANTIC_EXTRACTION, page_id="p1")
        matching = scheduler.enqueue(T.INTENT_MATCHING, page_id="p1", depends_on=[extraction.id])

        await scheduler.run_until_idle()

        failed = scheduler.get(matching.id)
        assert failed.status == TaskStatus.FAILED
        assert failed.error.kind == ErrorKind.DEPENDENCY
        assert "failed" in failed.error.message
        assert failed.attempts == []
        assert log == ["semantic_extraction:p1"]

    @pytest.mark.asyncio
    async def test_missing_dependency_fails(self):
        scheduler = _make_scheduler()
        scheduler.register(T.INTENT_MATCHING, RecordingHandler())
        task = scheduler.enqueue(T.INTENT_MATCHING, page_id="p1", depends_on=["ghost"])

        await scheduler.run_until_idle()

        assert scheduler.get(task.id).error.message == "Dependency ghost not found"

    @pytest.mark.asyncio
    async def test_failure_cascades_through_chain(self):
        scheduler = _make_scheduler()
        scheduler.register(
            T.SEMANTIC_EXTRACTION,
            RecordingHandler(error=ClassifiedError("gone", ErrorKind.PERMANENT)),
        )
        first = scheduler.enqueue(T.SEMANTIC_EXTRACTION, page_id="p1")
        second = scheduler.enqueue(T.INTENT_MATCHING, page_id="p1", depends_on=[first.id])
        third = scheduler.enqueue(T.VERIFY_INTENT_MATCHING, page_id="p1", depends_on=[second.id])

        await scheduler.run_until_idle()

        assert scheduler.get(third.id).status == TaskStatus.FAILED
        assert scheduler.get(third.id).error.kind == ErrorKind.DEPENDENCY


# ---------------------------------------------------------------------------
# Retries and failures
# ---------------------------------------------------------------------------


class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_retried_up_to_cap(self):
        scheduler = _make_scheduler()
        handler = RecordingHandler(error=RuntimeError("API rate limit exceeded"))
        scheduler.register(T.SUMMARIZATION, handler)
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")

        await scheduler.run_until_idle()

        final = scheduler.get(task.id)
        assert final.status == TaskStatus.FAILED
        assert final.retry_count == 3
        assert len(final.attempts) == 4
        assert final.error.kind == ErrorKind.TRANSIENT
        assert handler.calls == 4

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        scheduler = _make_scheduler()
        handler = RecordingHandler(error=RuntimeError("Service unavailable"), fail_times=1)
        scheduler.register(T.SUMMARIZATION, handler)
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")

        await scheduler.run_until_idle()

        final = scheduler.get(task.id)
        assert final.status == TaskStatus.COMPLETED
        assert final.retry_count == 1
        assert final.error is None
        assert final.structured_output == {"target": "p1"}
        assert [a.error_kind for a in final.attempts] == [ErrorKind.TRANSIENT, None]
        assert handler.applied == [task.id]

    @pytest.mark.asyncio
    async def test_backoff_defers_retry(self):
        clock = FakeClock()
        delays: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            delays.append(seconds)
            clock.advance(seconds=seconds)

        scheduler = _make_scheduler(clock, sleep=fake_sleep, backoff_seconds=[5.0, 10.0, 15.0])
        scheduler.register(
            T.SUMMARIZATION, RecordingHandler(error=RuntimeError("timed out"), fail_times=2)
        )
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")

        await scheduler.run_until_idle()

        assert delays == [5.0, 10.0]
        assert scheduler.get(task.id).status == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_permanent_not_retried(self):
        scheduler = _make_scheduler()
        handler = RecordingHandler(error=RuntimeError("Intent not found: i1"))
        scheduler.register(T.GENERATE_INTENT_LABEL, handler)
        task = scheduler.enqueue(T.GENERATE_INTENT_LABEL, intent_id="i1")

        await scheduler.run_until_idle()

        final = scheduler.get(task.id)
        assert final.status == TaskStatus.FAILED
        assert final.retry_count == 0
        assert final.error.kind == ErrorKind.PERMANENT
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_dependency_error_not_retried(self):
        scheduler = _make_scheduler()
        handler = RecordingHandler(error=RuntimeError("Page p1 has no intent assignment"))
        scheduler.register(T.VERIFY_INTENT_MATCHING, handler)
        task = scheduler.enqueue(T.VERIFY_INTENT_MATCHING, page_id="p1")

        await scheduler.run_until_idle()

        assert scheduler.get(task.id).error.kind == ErrorKind.DEPENDENCY
        assert handler.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        scheduler = _make_scheduler(task_timeout_seconds=0.01, max_retries=0)

        class SlowHandler(TaskHandler):
            async def execute(self, task):
                await asyncio.sleep(1)
                return {}

        scheduler.register(T.SUMMARIZATION, SlowHandler())
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")

        await scheduler.run_until_idle()

        final = scheduler.get(task.id)
        assert final.status == TaskStatus.FAILED
        assert final.error.kind == ErrorKind.TRANSIENT
        assert final.error.message == "Network timeout after 0.01s"

    @pytest.mark.asyncio
    async def test_missing_handler_is_permanent(self):
        scheduler = _make_scheduler()
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")

        await scheduler.run_until_idle()

        final = scheduler.get(task.id)
        assert final.error.kind == ErrorKind.PERMANENT
        assert "No handler registered" in final.error.message

    @pytest.mark.asyncio
    async def test_resubmit_failed_task(self):
        scheduler = _make_scheduler()
        scheduler.register(
            T.SUMMARIZATION, RecordingHandler(error=RuntimeError("boom"), fail_times=4)
        )
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1", priority=2)
        await scheduler.run_until_idle()

        fresh = scheduler.resubmit(task.id)
        await scheduler.run_until_idle()

        assert fresh.id != task.id
        assert fresh.resubmitted_from == task.id
        assert fresh.priority == 2
        assert scheduler.get(fresh.id).status == TaskStatus.COMPLETED

    def test_resubmit_rejects_active_task(self):
        scheduler = _make_scheduler()
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        with pytest.raises(ValueError, match="still queued"):
            scheduler.resubmit(task.id)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_max_concurrent_bound(self):
        scheduler = _make_scheduler(max_concurrent=2, tier_limits=WIDE_TIERS)
        tracker = ConcurrencyTracker()
        scheduler.register(T.GENERATE_INTENT_SUMMARY, tracker)
        for i in range(5):
            scheduler.enqueue(T.GENERATE_INTENT_SUMMARY, intent_id=f"i{i}")

        await scheduler.run_until_idle()

        assert tracker.peak == 2
        assert scheduler.counts()["completed"] == 5

    @pytest.mark.asyncio
    async def test_one_task_per_entity(self):
        scheduler = _make_scheduler(max_concurrent=3, tier_limits=WIDE_TIERS)
        tracker = ConcurrencyTracker()
        for task_type in (T.SEMANTIC_EXTRACTION, T.CLASSIFY_BEHAVIOR, T.SUMMARIZATION):
            scheduler.register(task_type, tracker)
            scheduler.enqueue(task_type, page_id="p1")

        await scheduler.run_until_idle()

        assert tracker.peak_per_target == 1
        assert scheduler.counts()["completed"] == 3

    @pytest.mark.asyncio
    async def test_tier_limit(self):
        scheduler = _make_scheduler(
            max_concurrent=3, tier_limits={"critical": 1, "important": 2, "background": 1}
        )
        tracker = ConcurrencyTracker()
        scheduler.register(T.SEMANTIC_EXTRACTION, tracker)
        for i in range(3):
            scheduler.enqueue(T.SEMANTIC_EXTRACTION, page_id=f"p{i}")

        await scheduler.run_until_idle()

        assert tracker.peak == 1

    @pytest.mark.asyncio
    async def test_tiers_run_side_by_side(self):
        scheduler = _make_scheduler(
            max_concurrent=3, tier_limits={"critical": 1, "important": 2, "background": 1}
        )
        tracker = ConcurrencyTracker()
        scheduler.register(T.SEMANTIC_EXTRACTION, tracker)
        scheduler.register(T.GENERATE_INTENT_LABEL, tracker)
        scheduler.register(T.GENERATE_INTENT_SUMMARY, tracker)
        scheduler.enqueue(T.SEMANTIC_EXTRACTION, page_id="p1")
        scheduler.enqueue(T.GENERATE_INTENT_LABEL, intent_id="i1")
        scheduler.enqueue(T.GENERATE_INTENT_SUMMARY, intent_id="i2")

        await scheduler.run_until_idle()

        assert tracker.peak == 3


# ---------------------------------------------------------------------------
# Cancellation, persistence and the background worker
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_cancel_queued_removes_task(self):
        scheduler = _make_scheduler()
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        assert scheduler.cancel(task.id) is True
        assert scheduler.get(task.id) is None
        assert scheduler.cancel(task.id) is False

    @pytest.mark.asyncio
    async def test_cancel_processing_discards_result(self):
        scheduler = _make_scheduler()
        handler = BlockingHandler()
        scheduler.register(T.SUMMARIZATION, handler)
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")

        runner = asyncio.create_task(scheduler.run_until_idle())
        await handler.started.wait()
        assert scheduler.get(task.id).status == TaskStatus.PROCESSING
        assert scheduler.cancel(task.id) is True
        handler.release.set()
        await runner

        assert scheduler.get(task.id) is None
        assert handler.applied is False

    @pytest.mark.asyncio
    async def test_cancel_completed_is_noop(self):
        scheduler = _make_scheduler()
        scheduler.register(T.SUMMARIZATION, RecordingHandler())
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        await scheduler.run_until_idle()
        assert scheduler.cancel(task.id) is False

    def test_processing_tasks_requeued_on_restart(self, tmp_path):
        repository = TaskRepository(tmp_path)
        repository.add(
            Task(type=T.SUMMARIZATION, page_id="p1", priority=4, status=TaskStatus.PROCESSING)
        )
        repository.add(Task(type=T.SUMMARIZATION, page_id="p2", priority=4))

        reloaded = TaskRepository(tmp_path)

        assert reloaded.recovered == 1
        assert all(t.status == TaskStatus.QUEUED for t in reloaded.list())
        assert [t.sequence for t in sorted(reloaded.list(), key=lambda t: t.sequence)] == [1, 2]

    @pytest.mark.asyncio
    async def test_queue_survives_restart(self, tmp_path):
        first = _make_scheduler(repository=TaskRepository(tmp_path))
        task = first.enqueue(T.SUMMARIZATION, page_id="p1")

        second = _make_scheduler(repository=TaskRepository(tmp_path))
        handler = RecordingHandler()
        second.register(T.SUMMARIZATION, handler)
        await second.run_until_idle()

        assert second.get(task.id).status == TaskStatus.COMPLETED
        assert second.enqueue(T.SUMMARIZATION, page_id="p2").sequence == 2

    @pytest.mark.asyncio
    async def test_prune_removes_old_finished_tasks(self):
        clock = FakeClock()
        scheduler = _make_scheduler(clock)
        scheduler.register(T.SUMMARIZATION, RecordingHandler())
        scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        await scheduler.run_until_idle()
        queued = scheduler.enqueue(T.SUMMARIZATION, page_id="p2")

        clock.advance(days=8)

        assert scheduler.prune() == 1
        assert [t.id for t in scheduler.tasks()] == [queued.id]

    @pytest.mark.asyncio
    async def test_background_worker_drains_on_stop(self):
        scheduler = _make_scheduler()
        handler = RecordingHandler()
        scheduler.register(T.SUMMARIZATION, handler)

        scheduler.start()
        scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        scheduler.enqueue(T.SUMMARIZATION, page_id="p2")
        await scheduler.stop()

        assert scheduler.counts()["completed"] == 2

    @pytest.mark.asyncio
    async def test_stop_without_drain_requeues_in_flight(self):
        scheduler = _make_scheduler()
        handler = BlockingHandler()
        scheduler.register(T.SUMMARIZATION, handler)

        scheduler.start()
        task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
        await handler.started.wait()
        await scheduler.stop(drain=False)

        assert scheduler.get(task.id).status == TaskStatus.QUEUED
        assert scheduler.in_flight_count == 0
        assert handler.applied is False


def test_counts_cover_every_status():
    scheduler = _make_scheduler()
    scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
    assert scheduler.counts() == {"queued": 1, "processing": 0, "completed": 0, "failed": 0}


def test_tasks_for_entity_in_enqueue_order():
    scheduler = _make_scheduler()
    a = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
    scheduler.enqueue(T.SUMMARIZATION, page_id="p2")
    b = scheduler.enqueue(T.CLASSIFY_BEHAVIOR, page_id="p1")
    assert [t.id for t in scheduler.tasks_for_entity("p1")] == [a.id, b.id]


def test_old_tasks_keep_created_time():
    clock = FakeClock()
    scheduler = _make_scheduler(clock)
    task = scheduler.enqueue(T.SUMMARIZATION, page_id="p1")
    clock.advance(minutes=5)
    assert scheduler.get(task.id).created_at == NOW
    assert scheduler.get(task.id).created_at + timedelta(minutes=5) == clock()
