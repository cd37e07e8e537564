"""Intent matching engine.

Decides which intent a newly enriched page belongs to, creates intents
when nothing fits, and schedules the follow-up work that keeps intents
current: first-time enrichment, periodic refreshes, completion checks
and merge scans.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from intentweave.config import IntentweaveConfig
from intentweave.errors import ClassifiedError, EntityNotFoundError, PageNotFoundError
from intentweave.scheduler.models import REFRESH_TASK_TYPES, TaskType
from intentweave.scheduler.scheduler import TaskScheduler
from intentweave.similarity.detector import SCANNABLE_STATUSES
from intentweave.similarity.embedding import cosine_similarity, jaccard, weighted_centroid
from intentweave.store.events import EventType, StoreEvent
from intentweave.store.lifecycle import detect_completion
from intentweave.store.models import Intent, IntentStatus, Page, utcnow
from intentweave.store.signals import normalize_keyword
from intentweave.store.store import IntentStore

logger = logging.getLogger(__name__)

MATCHABLE_STATUSES = (IntentStatus.EMERGING, IntentStatus.ACTIVE, IntentStatus.DORMANT)
TEMPORAL_DECAY_DAYS = 30.0
KNOWLEDGE_GAP_MIN_PAGES = 3
MILESTONE_MIN_PAGES = 5


@dataclass
class MatchDecision:
    """Where a page should go: an existing intent, a new one, or nowhere."""

    action: str
    intent_id: str | None = None
    score: float = 0.0
    auto_assigned: bool = False
    components: dict[str, float] = field(default_factory=dict)
    reason: str = ""

    def to_output(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "intent_id": self.intent_id,
            "score": round(self.score, 4),
            "auto_assigned": self.auto_assigned,
            "components": {k: round(v, 4) for k, v in self.components.items()},
            "reason": self.reason,
        }


class IntentEngine:
    """Assigns pages to intents and keeps the follow-up queue moving."""

    def __init__(
        self,
        store: IntentStore,
        scheduler: TaskScheduler,
        config: IntentweaveConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.config = config or IntentweaveConfig()
        self._clock = clock
        self._last_scan_at: datetime | None = None
        self._unsubscribe = store.events.subscribe(
            self._on_intent_event,
            types=[EventType.INTENT_CREATED, EventType.INTENT_UPDATED],
        )

    def close(self) -> None:
        self._unsubscribe()

    # ── Ingestion ────────────────────────────────────────────────

    def ingest(self, page: Page | dict[str, Any]) -> Page:
        """Store a visit and queue its enrichment.

        A visit delivered twice is folded into the first record, and the
        enrichment already queued for it is reused.
        """
        if isinstance(page, dict):
            page = Page.model_validate(page)
        stored = self.store.upsert_page(page)
        if stored.is_error_page:
            logger.debug("Not enriching error page %s (%s)", stored.id, stored.title)
            return stored

        extraction = None
        if stored.semantic_features is None:
            extraction = self.scheduler.enqueue(TaskType.SEMANTIC_EXTRACTION, page_id=stored.id)
        if stored.primary_intent_id is None:
            self.scheduler.enqueue(
                TaskType.INTENT_MATCHING,
                page_id=stored.id,
                depends_on=[extraction.id] if extraction is not None else [],
            )
        if stored.behavior is None:
            self.scheduler.enqueue(TaskType.CLASSIFY_BEHAVIOR, page_id=stored.id)
        if (
            len(stored.content) > self.config.scheduler.summarize_min_chars
            and not stored.content_summary
        ):
            self.scheduler.enqueue(TaskType.SUMMARIZATION, page_id=stored.id)
        return stored

    # ── Scoring ──────────────────────────────────────────────────

    def score_intent(self, page: Page, intent: Intent) -> tuple[float, dict[str, float]]:
        """Weighted similarity of *page* to *intent*, with its components."""
        features = page.semantic_features
        signals = intent.aggregated_signals
        members = self.store.pages_for_intent(intent.id)

        vectors = [p.embedding for p in members if p.embedding]
        weights = [max(p.interactions.engagement_score, 0.1) for p in members if p.embedding]
        semantic = 0.0
        if page.embedding and vectors:
            semantic = max(cosine_similarity(page.embedding, weighted_centroid(vectors, weights)), 0.0)

        page_keywords = [normalize_keyword(c) for c in features.concepts] if features else []
        page_entities = features.entities.flatten() if features else []

        days = abs((page.timestamp - intent.last_updated).total_seconds()) / 86400
        engagement_gap = abs(page.interactions.engagement_score - signals.patterns.avg_engagement)

        components = {
            "semantic": semantic,
            "keyword": jaccard(page_keywords, signals.keywords),
            "entity": jaccard(page_entities, signals.entities),
            "temporal": math.exp(-days / TEMPORAL_DECAY_DAYS),
            "domain": 1.0 if page.domain and page.domain in signals.domains else 0.0,
            "behavioral": max(1.0 - engagement_gap, 0.0),
        }
        weights_cfg = self.config.matching.weights
        total = sum(weights_cfg.get(name, 0.0) * value for name, value in components.items())
        return total, components

    def candidate_intents(self) -> list[Intent]:
        return self.store.recent_intents(
            statuses=MATCHABLE_STATUSES,
            limit=self.config.matching.max_candidates,
            days=self.config.matching.recent_days,
        )

    def score_page(self, page: Page) -> MatchDecision:
        """Pick the best intent for *page*, or decide to create one."""
        if page.is_error_page:
            return MatchDecision(action="skip", reason="error page")

        best: MatchDecision | None = None
        for intent in self.candidate_intents():
            score, components = self.score_intent(page, intent)
            if best is None or score > best.score:
                best = MatchDecision(
                    action="assign", intent_id=intent.id, score=score, components=components
                )

        matching = self.config.matching
        if best is None or best.score < matching.create_threshold:
            best_score = best.score if best else 0.0
            return MatchDecision(action="create", score=best_score, reason="no intent close enough")

        best.auto_assigned = best.score >= matching.auto_assign_threshold
        best.reason = "auto-assigned" if best.auto_assigned else "needs confirmation"
        return best

    # ── Applying decisions ───────────────────────────────────────

    def apply_match(self, page_id: str, decision: MatchDecision | dict[str, Any]) -> str | None:
        """Carry out a matching decision.  Returns the owning intent id."""
        if isinstance(decision, dict):
            decision = MatchDecision(
                action=decision["action"],
                intent_id=decision.get("intent_id"),
                score=decision.get("score", 0.0),
                auto_assigned=decision.get("auto_assigned", False),
            )
        page = self.store.get_page(page_id)
        if page is None:
            raise PageNotFoundError(page_id)
        if page.primary_intent_id is not None:
            return page.primary_intent_id
        if decision.action == "skip":
            return None

        if decision.action == "assign" and decision.intent_id:
            try:
                assigned = self.store.assign_primary_intent(
                    page_id,
                    decision.intent_id,
                    decision.score,
                    auto_assigned=decision.auto_assigned,
                    needs_confirmation=not decision.auto_assigned,
                )
            except ClassifiedError as exc:
                logger.info("Could not assign page %s (%s), creating an intent", page_id, exc)
            else:
                intent_id = assigned.primary_intent_id or decision.intent_id
                if not decision.auto_assigned and self.config.scheduler.enable_verification:
                    self.scheduler.enqueue(TaskType.VERIFY_INTENT_MATCHING, page_id=page_id)
                self.after_assignment(page_id, intent_id)
                return intent_id

        return self.create_intent_for(page_id).id

    def create_intent_for(self, page_id: str) -> Intent:
        """Seed a new intent with *page_id* and queue its first enrichment."""
        intent = self.store.create_intent(
            page_id, confidence=self.config.matching.new_intent_confidence
        )
        for task_type in REFRESH_TASK_TYPES:
            self.scheduler.enqueue(task_type, intent_id=intent.id)
        if self.config.scheduler.enable_verification:
            self.scheduler.enqueue(TaskType.VERIFY_INTENT_MATCHING, page_id=page_id)
        return intent

    def after_assignment(self, page_id: str, intent_id: str) -> None:
        """Refresh derived content on cadence and look for completion."""
        intent = self.store.get_intent(intent_id)
        page = self.store.get_page(page_id)
        if intent is None or page is None or intent.is_terminal:
            return

        every = max(self.config.scheduler.refresh_every_pages, 1)
        if intent.page_count > 1 and intent.page_count % every == 0:
            self.scheduler.refresh_intent(intent.id)
            if intent.page_count >= KNOWLEDGE_GAP_MIN_PAGES:
                self.scheduler.enqueue(TaskType.ANALYZE_KNOWLEDGE_GAPS, intent_id=intent.id)
            if intent.page_count >= MILESTONE_MIN_PAGES:
                self.scheduler.enqueue(TaskType.PREDICT_MILESTONE, intent_id=intent.id)

        if intent.status not in (IntentStatus.ACTIVE, IntentStatus.DORMANT):
            return
        signal = detect_completion(intent, page)
        if signal.completed and signal.confidence >= self.config.store.completion_threshold:
            self.store.transition_intent(
                intent.id, IntentStatus.COMPLETED, f"inferred: {signal.reason}"
            )

    # ── Merge coordination ───────────────────────────────────────

    def _on_intent_event(self, event: StoreEvent) -> None:
        self.maybe_schedule_merge_scan()

    def maybe_schedule_merge_scan(self, now: datetime | None = None) -> bool:
        """Queue a merge scan unless one ran recently or too few intents exist."""
        if not self.config.scheduler.enable_merge_scans:
            return False
        now = now or self._clock()
        detector = self.config.detector
        if (
            self._last_scan_at is not None
            and (now - self._last_scan_at).total_seconds() < detector.scan_min_interval_seconds
        ):
            return False
        if len(self.store.list_intents(SCANNABLE_STATUSES)) < detector.min_active_intents:
            return False
        self._last_scan_at = now
        self.scheduler.enqueue(TaskType.SCAN_MERGE_OPPORTUNITIES)
        return True

    # ── Maintenance ──────────────────────────────────────────────

    def sweep(self, now: datetime | None = None) -> list[tuple[str, IntentStatus]]:
        """Apply time-driven lifecycle transitions."""
        changed = self.store.sweep_lifecycle(now or self._clock())
        for intent_id, status in changed:
            logger.info("Intent %s is now %s", intent_id, status)
        return changed

    def reenrich(self, entity_id: str) -> list[str]:
        """Force enrichment to run again for a page or an intent."""
        page = self.store.get_page(entity_id)
        if page is not None:
            if page.semantic_features is not None:
                self.store.update_page_fields(page.id, semantic_features=None, embedding=[])
            tasks = [self.scheduler.enqueue(TaskType.SEMANTIC_EXTRACTION, page_id=page.id)]
            tasks.append(self.scheduler.enqueue(TaskType.CLASSIFY_BEHAVIOR, page_id=page.id))
            return [t.id for t in tasks]
        intent = self.store.get_intent(entity_id)
        if intent is None:
            raise EntityNotFoundError(f"No page or intent with id {entity_id}")
        return [t.id for t in self.scheduler.refresh_intent(intent.id)]
