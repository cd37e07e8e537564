"""Service facade: the query/command boundary used by the CLI.

Wires the store, scheduler, handlers, engine, detector, topic graph and
suggestion engine together.  Every write goes through the store; merges
always go through :meth:`IntentStore.merge_intents`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from intentweave.config import IntentweaveConfig
from intentweave.engine import IntentEngine
from intentweave.errors import IntentNotFoundError
from intentweave.nudges.engine import SuggestionEngine
from intentweave.scheduler.handlers import HandlerContext, build_handlers
from intentweave.scheduler.models import Task, TaskStatus
from intentweave.scheduler.repository import TaskRepository
from intentweave.scheduler.scheduler import TaskScheduler
from intentweave.shared.llm import ClaudeGenerator, TextGenerator
from intentweave.similarity.detector import MergeCandidate, MergeCandidateDetector
from intentweave.store.events import EventBus
from intentweave.store.models import (
    TERMINAL_STATUSES,
    Intent,
    IntentStatus,
    LabelSource,
    Nudge,
    Page,
    utcnow,
)
from intentweave.store.store import IntentStore
from intentweave.topics.store import TopicGraphStore

logger = logging.getLogger(__name__)


def build_generator(config: IntentweaveConfig) -> ClaudeGenerator:
    """A Claude-backed generator using the [llm] settings."""
    llm = config.llm
    return ClaudeGenerator(
        model=llm.model, timeout=llm.timeout, temperature=llm.temperature, top_k=llm.top_k
    )


class IntentService:
    """One process's view of the intent system.

    With ``state_dir=None`` everything lives in memory.
    """

    def __init__(
        self,
        config: IntentweaveConfig | None = None,
        *,
        generator: TextGenerator | None = None,
        state_dir: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or IntentweaveConfig()
        self._clock = clock
        self.events = EventBus()
        self.store = IntentStore(state_dir, config=self.config.store, events=self.events, clock=clock)
        self.repository = TaskRepository(state_dir)
        self.scheduler = TaskScheduler(self.repository, config=self.config.scheduler, clock=clock)
        self.detector = MergeCandidateDetector(self.store, self.config.detector)
        self.topics = TopicGraphStore(state_dir)
        self.generator = generator if generator is not None else build_generator(self.config)
        self.engine = IntentEngine(self.store, self.scheduler, self.config, clock=clock)
        self.scheduler.register_all(
            build_handlers(
                HandlerContext(
                    store=self.store,
                    scheduler=self.scheduler,
                    generator=self.generator,
                    config=self.config,
                    detector=self.detector,
                    engine=self.engine,
                    topics=self.topics,
                )
            )
        )
        self.suggestions = SuggestionEngine(
            self.store,
            self.detector,
            self.generator,
            self.config.nudges,
            topics=self.topics,
            scheduler=self.scheduler,
            clock=clock,
        )

    # ── Ingestion & processing ───────────────────────────────────

    def ingest(self, record: Page | dict[str, Any]) -> Page:
        return self.engine.ingest(record)

    def ingest_many(self, records: Iterable[Page | dict[str, Any]]) -> list[Page]:
        return [self.engine.ingest(r) for r in records]

    async def run(self) -> dict[str, int]:
        """Process queued work until idle and return task counts."""
        await self.scheduler.run_until_idle()
        return self.scheduler.counts()

    def sweep(self) -> list[tuple[str, IntentStatus]]:
        return self.engine.sweep()

    # ── Queries ──────────────────────────────────────────────────

    def pages(self, limit: int | None = None) -> list[Page]:
        return self.store.list_pages(limit)

    def intents(self, *, include_terminal: bool = False) -> list[Intent]:
        statuses = None if include_terminal else [s for s in IntentStatus if s not in TERMINAL_STATUSES]
        return self.store.recent_intents(statuses=statuses)

    def intent(self, intent_id: str) -> Intent:
        intent = self.store.get_intent(intent_id)
        if intent is None:
            raise IntentNotFoundError(intent_id)
        return intent

    def pages_for_intent(self, intent_id: str) -> list[Page]:
        return self.store.pages_for_intent(intent_id)

    def tasks(self, *, entity_id: str | None = None, status: TaskStatus | None = None) -> list[Task]:
        if entity_id is not None:
            tasks = self.scheduler.tasks_for_entity(entity_id)
            return [t for t in tasks if status is None or t.status == status]
        return self.scheduler.tasks(status)

    def pending_nudges(self) -> list[Nudge]:
        return self.store.pending_nudges()

    def candidates(self) -> list[MergeCandidate]:
        return self.detector.find_candidates()

    def stats(self) -> dict[str, object]:
        return {
            **self.store.stats(),
            "tasks": self.scheduler.counts(),
            "topics": self.topics.stats(),
        }

    # ── Commands ─────────────────────────────────────────────────

    def update_intent(self, intent_id: str, **fields: Any) -> Intent:
        """Apply user edits.  A user label is recorded with source ``user``."""
        label = fields.pop("label", None)
        intent = self.intent(intent_id)
        if label is not None:
            intent = self.store.set_intent_label(intent_id, label, 1.0, LabelSource.USER)
        if fields:
            intent = self.store.update_intent_fields(intent_id, **fields)
        return intent

    def delete_page(self, page_id: str) -> None:
        self.store.delete_page(page_id)

    def delete_intent(self, intent_id: str) -> None:
        self.store.delete_intent(intent_id)

    def merge(self, loser_id: str, winner_id: str) -> Intent:
        survivor = self.store.merge_intents(loser_id, winner_id)
        self.scheduler.refresh_intent(survivor.id)
        return survivor

    def complete(self, intent_id: str) -> Intent:
        return self.store.transition_intent(intent_id, IntentStatus.COMPLETED, "marked complete by user")

    def discard(self, intent_id: str) -> Intent:
        return self.store.transition_intent(intent_id, IntentStatus.DISCARDED, "discarded by user")

    async def generate_nudges(self) -> list[Nudge]:
        return await self.suggestions.generate()

    def acknowledge_nudge(self, nudge_id: str) -> Nudge:
        return self.suggestions.acknowledge(nudge_id)

    def snooze_nudge(self, nudge_id: str, hours: float = 24.0) -> Nudge:
        return self.suggestions.snooze(nudge_id, self._clock() + timedelta(hours=hours))

    def dismiss_nudge(self, nudge_id: str) -> Nudge:
        return self.suggestions.dismiss(nudge_id)

    def reenrich(self, entity_id: str) -> list[str]:
        return self.engine.reenrich(entity_id)

    def retry(self, task_id: str) -> Task:
        return self.scheduler.resubmit(task_id)

    def prune(self, retention_days: float | None = None) -> int:
        return self.scheduler.prune(retention_days)


def build_service(config: IntentweaveConfig, generator: TextGenerator | None = None) -> IntentService:
    """A persistent service rooted at the configured state directory."""
    return IntentService(config, generator=generator, state_dir=config.state_dir)
