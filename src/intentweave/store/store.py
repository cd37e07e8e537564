"""JSON-backed store for pages, intents and nudges.

The store is the single writer for Page, Intent and Nudge records.
Every other component reads deep copies and mutates through the narrow
write paths here: upsert, assign, merge, transition and update-field.
Each public mutation runs to completion synchronously, so it is atomic
with respect to any coroutine interleaving in the scheduler.

Persists everything in one JSON file, loaded on init and saved after
every write operation.  Events are published after the save.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from intentweave.config import StoreSectionConfig
from intentweave.errors import (
    ClassifiedError,
    EntityNotFoundError,
    ErrorKind,
    IntentNotFoundError,
    InvariantViolation,
    MergeValidationError,
    PageNotFoundError,
)
from intentweave.store import lifecycle
from intentweave.store.events import EventBus, EventType, StoreEvent
from intentweave.store.models import (
    PRIORITY_RANK,
    Assignments,
    FocusedSection,
    Intent,
    IntentAssignment,
    IntentStatus,
    Interactions,
    LabelChange,
    LabelSource,
    Nudge,
    NudgeStatus,
    Page,
    TextSelection,
    TimelineEvent,
    TimelineEventType,
    utcnow,
)
from intentweave.store.signals import compute_aggregated_signals

logger = logging.getLogger(__name__)

STORE_FILENAME = ".intentweave-store.json"

MERGE_REASSIGN_CONFIDENCE = 0.7

# Fields the update-field path may touch.  Ownership fields (page_ids,
# page_count, status, merge metadata) only change through assign/merge/
# transition.
INTENT_EDITABLE_FIELDS = frozenset(
    {"goal", "goal_confidence", "summary", "insights", "next_steps", "milestone", "user_notes"}
)
PAGE_EDITABLE_FIELDS = frozenset(
    {"semantic_features", "embedding", "behavior", "content_summary", "processed_at", "title"}
)

# Alias to avoid shadowing by methods named ``list_*``
_list = list


class _StoreData(BaseModel):
    """Internal wrapper for JSON serialization."""

    pages: list[Page] = Field(default_factory=list)
    intents: list[Intent] = Field(default_factory=list)
    nudges: list[Nudge] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Page merge rules
# ---------------------------------------------------------------------------


def _merge_selections(a: list[TextSelection], b: list[TextSelection]) -> list[TextSelection]:
    seen = {(s.text, s.timestamp) for s in a}
    return a + [s for s in b if (s.text, s.timestamp) not in seen]


def _merge_sections_max(a: list[FocusedSection], b: list[FocusedSection]) -> list[FocusedSection]:
    by_heading: dict[str, FocusedSection] = {s.heading: s for s in a}
    for section in b:
        current = by_heading.get(section.heading)
        if current is None or section.dwell_time > current.dwell_time:
            by_heading[section.heading] = section
    return _list(by_heading.values())


def _merge_report(existing: Page, incoming: Page) -> Page:
    """Same page id reported again (e.g. page exit with final metrics).

    Incoming wins, but enrichment it omits is kept and counters never go
    backwards.  Assignments are owned by the store and always kept.
    """
    old, new = existing.interactions, incoming.interactions
    interactions = Interactions(
        dwell_time=max(old.dwell_time, new.dwell_time),
        scroll_depth=max(old.scroll_depth, new.scroll_depth),
        scroll_position=max(old.scroll_position, new.scroll_position),
        total_scroll_distance=max(old.total_scroll_distance, new.total_scroll_distance),
        text_selections=_merge_selections(old.text_selections, new.text_selections),
        engagement_score=max(old.engagement_score, new.engagement_score),
        focused_sections=_merge_sections_max(old.focused_sections, new.focused_sections),
    )
    return incoming.model_copy(
        update={
            "title": incoming.title or existing.title,
            "timestamp": min(existing.timestamp, incoming.timestamp),
            "content": incoming.content or existing.content,
            "content_summary": incoming.content_summary or existing.content_summary,
            "semantic_features": incoming.semantic_features or existing.semantic_features,
            "embedding": incoming.embedding or existing.embedding,
            "behavior": incoming.behavior or existing.behavior,
            "processed_at": incoming.processed_at or existing.processed_at,
            "interactions": interactions,
            "assignments": existing.assignments,
        }
    )


def _merge_duplicate_visit(existing: Page, incoming: Page) -> Page:
    """Same URL seen again inside the dedup window: one visit, reported twice.

    Additive counters are summed, monotonic metrics take the max and list
    data is concatenated.  Identity and assignments stay with *existing*.
    """
    old, new = existing.interactions, incoming.interactions
    interactions = Interactions(
        dwell_time=old.dwell_time + new.dwell_time,
        scroll_depth=max(old.scroll_depth, new.scroll_depth),
        scroll_position=max(old.scroll_position, new.scroll_position),
        total_scroll_distance=old.total_scroll_distance + new.total_scroll_distance,
        text_selections=old.text_selections + new.text_selections,
        engagement_score=max(old.engagement_score, new.engagement_score),
        focused_sections=old.focused_sections + new.focused_sections,
    )
    return existing.model_copy(
        update={
            "title": incoming.title or existing.title,
            "content": incoming.content or existing.content,
            "content_summary": incoming.content_summary or existing.content_summary,
            "semantic_features": incoming.semantic_features or existing.semantic_features,
            "embedding": incoming.embedding or existing.embedding,
            "behavior": incoming.behavior or existing.behavior,
            "processed_at": incoming.processed_at or existing.processed_at,
            "interactions": interactions,
        }
    )


class IntentStore:
    """Single source of truth for pages, intents and nudges.

    Internal indices:
    - ``_pages``: page_id -> Page
    - ``_intents``: intent_id -> Intent
    - ``_nudges``: nudge_id -> Nudge
    - ``_by_url``: url -> list[page_id]
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        config: StoreSectionConfig | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._path = path / STORE_FILENAME if path is not None else None
        self.config = config or StoreSectionConfig()
        self.events = events if events is not None else EventBus()
        self._clock = clock
        self._pages: dict[str, Page] = {}
        self._intents: dict[str, Intent] = {}
        self._nudges: dict[str, Nudge] = {}
        self._by_url: dict[str, list[str]] = defaultdict(list)
        self._pending: list[StoreEvent] = []

        if self._path is not None:
            self._load(self._path)

    # ── Private helpers ──────────────────────────────────────────

    def _load(self, path: Path) -> None:
        if not path.exists():
            return
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            data = _StoreData.model_validate(raw)
        except (json.JSONDecodeError, ValueError):
            logger.warning("Corrupt intent store at %s, starting fresh", path)
            return

        for page in data.pages:
            self._pages[page.id] = page
            self._by_url[page.url].append(page.id)
        for intent in data.intents:
            self._intents[intent.id] = intent
        for nudge in data.nudges:
            self._nudges[nudge.id] = nudge

    def _save(self) -> None:
        if self._path is None:
            return
        data = _StoreData(
            pages=_list(self._pages.values()),
            intents=_list(self._intents.values()),
            nudges=_list(self._nudges.values()),
        )
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(data.model_dump_json(indent=2), encoding="utf-8")

    def _emit(self, event_type: EventType, entity_id: str, **detail: object) -> None:
        self._pending.append(StoreEvent(event_type, entity_id, dict(detail)))

    def _commit(self) -> None:
        """Persist, then deliver the events queued by this mutation."""
        self._save()
        events, self._pending = self._pending, []
        for event in events:
            self.events.publish(event)

    def _require_page(self, page_id: str) -> Page:
        page = self._pages.get(page_id)
        if page is None:
            raise PageNotFoundError(page_id)
        return page

    def _require_intent(self, intent_id: str) -> Intent:
        intent = self._intents.get(intent_id)
        if intent is None:
            raise IntentNotFoundError(intent_id)
        return intent

    def _require_nudge(self, nudge_id: str) -> Nudge:
        nudge = self._nudges.get(nudge_id)
        if nudge is None:
            raise EntityNotFoundError(f"Nudge not found: {nudge_id}")
        return nudge

    def _pages_of(self, intent: Intent) -> list[Page]:
        return [self._pages[pid] for pid in intent.page_ids if pid in self._pages]

    def _recompute(self, intent: Intent) -> None:
        intent.page_count = len(intent.page_ids)
        intent.aggregated_signals = compute_aggregated_signals(self._pages_of(intent), self._clock())

    def _set_status(self, intent: Intent, status: IntentStatus, reason: str) -> None:
        if intent.status == status:
            return
        lifecycle.check_transition(intent.status, status)
        previous = intent.status
        now = self._clock()
        intent.status = status
        intent.status_reason = reason
        if status in (
            IntentStatus.COMPLETED,
            IntentStatus.MERGED,
            IntentStatus.DISCARDED,
            IntentStatus.EXPIRED,
        ):
            intent.completed_at = now
        intent.timeline.append(
            TimelineEvent(
                type=TimelineEventType.STATUS_CHANGED,
                timestamp=now,
                detail=f"{previous} -> {status}" + (f" ({reason})" if reason else ""),
            )
        )
        logger.info("Intent %s: %s -> %s %s", intent.id, previous, status, reason)
        self._emit(EventType.INTENT_STATUS_CHANGED, intent.id, previous=previous, status=status)

    def _detach(self, page: Page, intent_id: str) -> None:
        """Remove *page* from a previous owner, discarding the owner if emptied."""
        owner = self._intents.get(intent_id)
        if owner is None or page.id not in owner.page_ids:
            return
        owner.page_ids.remove(page.id)
        self._recompute(owner)
        owner.last_updated = self._clock()
        if not owner.page_ids and not owner.is_terminal:
            self._set_status(owner, IntentStatus.DISCARDED, "all pages reassigned")
        self._emit(EventType.INTENT_UPDATED, owner.id)

    def _attach(
        self,
        page: Page,
        intent: Intent,
        assignment: IntentAssignment,
    ) -> None:
        """Point *page* at *intent* and keep both sides consistent."""
        previous = page.primary_intent_id
        page.assignments.primary = assignment
        if previous is not None and previous != intent.id:
            self._detach(page, previous)

        now = self._clock()
        newly_added = page.id not in intent.page_ids
        if newly_added:
            intent.page_ids.append(page.id)
            intent.timeline.append(
                TimelineEvent(type=TimelineEventType.PAGE_ADDED, timestamp=now, page_id=page.id)
            )
        self._recompute(intent)
        intent.last_updated = now

        if newly_added and intent.status == IntentStatus.DORMANT:
            self._set_status(intent, IntentStatus.ACTIVE, "new page")
        if (
            intent.status == IntentStatus.EMERGING
            and intent.page_count >= self.config.active_page_threshold
        ):
            self._set_status(intent, IntentStatus.ACTIVE, "page threshold reached")

        self._emit(EventType.PAGE_UPDATED, page.id)
        self._emit(EventType.INTENT_UPDATED, intent.id)

    def _refresh_owner(self, page: Page) -> None:
        owner_id = page.primary_intent_id
        if owner_id is None or owner_id not in self._intents:
            return
        self._recompute(self._intents[owner_id])
        self._emit(EventType.INTENT_UPDATED, owner_id)

    def _recent_duplicate(self, incoming: Page) -> Page | None:
        window = timedelta(seconds=self.config.dedup_window_seconds)
        best: Page | None = None
        for pid in self._by_url.get(incoming.url, []):
            candidate = self._pages[pid]
            if abs(incoming.timestamp - candidate.timestamp) > window:
                continue
            if best is None or candidate.timestamp > best.timestamp:
                best = candidate
        return best

    # ── Pages ────────────────────────────────────────────────────

    def upsert_page(self, page: Page) -> Page:
        """Insert a page or fold it into the record it duplicates.

        Returns the canonical stored page.
        """
        incoming = page.model_copy(deep=True)
        existing = self._pages.get(incoming.id)

        if existing is not None:
            merged = _merge_report(existing, incoming)
        else:
            duplicate = self._recent_duplicate(incoming)
            if duplicate is None:
                incoming.assignments = Assignments()
                self._pages[incoming.id] = incoming
                self._by_url[incoming.url].append(incoming.id)
                self._emit(EventType.PAGE_ADDED, incoming.id)
                self._commit()
                return incoming.model_copy(deep=True)
            logger.debug("Page %s duplicates recent visit %s", incoming.id, duplicate.id)
            existing = duplicate
            merged = _merge_duplicate_visit(duplicate, incoming)

        if merged == existing:
            return existing.model_copy(deep=True)

        if merged.url != existing.url:
            self._by_url[existing.url].remove(existing.id)
            self._by_url[merged.url].append(existing.id)
        self._pages[existing.id] = merged
        self._refresh_owner(merged)
        self._emit(EventType.PAGE_UPDATED, existing.id)
        self._commit()
        return merged.model_copy(deep=True)

    def update_page_fields(self, page_id: str, **fields: Any) -> Page:
        """Write enrichment results onto a page."""
        unknown = set(fields) - PAGE_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Page fields not editable: {sorted(unknown)}")
        page = self._require_page(page_id)
        updated = Page.model_validate({**page.model_dump(), **fields})
        self._pages[page_id] = updated
        if "semantic_features" in fields:
            self._refresh_owner(updated)
        self._emit(EventType.PAGE_UPDATED, page_id)
        self._commit()
        return updated.model_copy(deep=True)

    def get_page(self, page_id: str) -> Page | None:
        page = self._pages.get(page_id)
        return page.model_copy(deep=True) if page else None

    def list_pages(self, limit: int | None = None) -> list[Page]:
        """Pages, most recent first."""
        pages = sorted(self._pages.values(), key=lambda p: p.timestamp, reverse=True)
        if limit is not None:
            pages = pages[:limit]
        return [p.model_copy(deep=True) for p in pages]

    def pages_by_url(self, url: str) -> list[Page]:
        return [self._pages[pid].model_copy(deep=True) for pid in self._by_url.get(url, [])]

    def pages_for_intent(self, intent_id: str) -> list[Page]:
        intent = self._require_intent(intent_id)
        return [p.model_copy(deep=True) for p in self._pages_of(intent)]

    def unassigned_pages(self) -> list[Page]:
        return [p.model_copy(deep=True) for p in self._pages.values() if p.primary_intent_id is None]

    def delete_page(self, page_id: str) -> None:
        page = self._require_page(page_id)
        if page.primary_intent_id is not None:
            self._detach(page, page.primary_intent_id)
        del self._pages[page_id]
        self._by_url[page.url].remove(page_id)
        if not self._by_url[page.url]:
            del self._by_url[page.url]
        self._emit(EventType.PAGE_DELETED, page_id)
        self._commit()

    # ── Assignment ───────────────────────────────────────────────

    def assign_primary_intent(
        self,
        page_id: str,
        intent_id: str,
        confidence: float,
        *,
        auto_assigned: bool = True,
        needs_confirmation: bool = False,
    ) -> Page:
        """Make *intent_id* the page's owner, updating both records together.

        An intent that has since been merged is followed to its survivor.
        """
        page = self._require_page(page_id)
        intent = self._intents[self.resolve_intent(intent_id)]
        if intent.is_terminal:
            raise ClassifiedError(
                f"Cannot assign page to {intent.status} intent {intent.id}",
                ErrorKind.PERMANENT,
            )
        assignment = IntentAssignment(
            intent_id=intent.id,
            confidence=confidence,
            assigned_at=self._clock(),
            auto_assigned=auto_assigned,
            needs_confirmation=needs_confirmation,
        )
        self._attach(page, intent, assignment)
        self._commit()
        return page.model_copy(deep=True)

    def add_secondary_assignment(self, page_id: str, intent_id: str, confidence: float) -> Page:
        """Record a non-owning link from a page to an intent."""
        page = self._require_page(page_id)
        self._require_intent(intent_id)
        if page.primary_intent_id == intent_id:
            return page.model_copy(deep=True)
        page.assignments.secondary = [
            a for a in page.assignments.secondary if a.intent_id != intent_id
        ]
        page.assignments.secondary.append(
            IntentAssignment(intent_id=intent_id, confidence=confidence, assigned_at=self._clock())
        )
        self._emit(EventType.PAGE_UPDATED, page_id)
        self._commit()
        return page.model_copy(deep=True)

    # ── Intents ──────────────────────────────────────────────────

    def create_intent(self, seed_page_id: str, confidence: float = 0.6) -> Intent:
        """Create an intent owned by *seed_page_id*'s page."""
        page = self._require_page(seed_page_id)
        now = self._clock()
        intent = Intent(first_seen=min(page.timestamp, now), last_updated=now)
        intent.timeline.append(
            TimelineEvent(type=TimelineEventType.CREATED, timestamp=now, page_id=page.id)
        )
        self._intents[intent.id] = intent
        self._emit(EventType.INTENT_CREATED, intent.id)
        self._attach(
            page,
            intent,
            IntentAssignment(intent_id=intent.id, confidence=confidence, assigned_at=now),
        )
        logger.info("Created intent %s from page %s", intent.id, page.id)
        self._commit()
        return intent.model_copy(deep=True)

    def get_intent(self, intent_id: str) -> Intent | None:
        intent = self._intents.get(intent_id)
        return intent.model_copy(deep=True) if intent else None

    def list_intents(self, statuses: Iterable[IntentStatus] | None = None) -> list[Intent]:
        wanted = set(statuses) if statuses is not None else None
        return [
            i.model_copy(deep=True)
            for i in self._intents.values()
            if wanted is None or i.status in wanted
        ]

    def recent_intents(
        self,
        *,
        statuses: Iterable[IntentStatus] | None = None,
        limit: int | None = None,
        days: float | None = None,
    ) -> list[Intent]:
        """Intents by ``last_updated``, newest first."""
        wanted = set(statuses) if statuses is not None else None
        cutoff = self._clock() - timedelta(days=days) if days is not None else None
        intents = [
            i
            for i in self._intents.values()
            if (wanted is None or i.status in wanted)
            and (cutoff is None or i.last_updated >= cutoff)
        ]
        intents.sort(key=lambda i: (i.last_updated, i.id), reverse=True)
        if limit is not None:
            intents = intents[:limit]
        return [i.model_copy(deep=True) for i in intents]

    def merge_chain(self, intent_id: str) -> list[str]:
        """Ids from *intent_id* following ``merged_into``, capped in length."""
        chain = [intent_id]
        current = self._require_intent(intent_id)
        while current.merged_into and len(chain) < self.config.merge_chain_limit:
            if current.merged_into in chain:
                raise InvariantViolation(f"Merge cycle through {current.merged_into}")
            chain.append(current.merged_into)
            current = self._require_intent(current.merged_into)
        return chain

    def resolve_intent(self, intent_id: str) -> str:
        """The surviving intent id for *intent_id*."""
        return self.merge_chain(intent_id)[-1]

    def set_intent_label(
        self,
        intent_id: str,
        label: str,
        confidence: float,
        source: LabelSource = LabelSource.AI,
    ) -> Intent:
        intent = self._require_intent(intent_id)
        label = label.strip()
        if not label:
            raise ValueError("Label must not be empty")
        now = self._clock()
        previous = intent.label
        intent.label = label
        intent.label_confidence = confidence
        intent.label_history.append(
            LabelChange(label=label, confidence=confidence, source=source, changed_at=now)
        )
        if previous != label:
            intent.timeline.append(
                TimelineEvent(
                    type=TimelineEventType.LABEL_CHANGED,
                    timestamp=now,
                    detail=f"{previous or '(none)'} -> {label}",
                )
            )
        self._emit(EventType.INTENT_UPDATED, intent_id)
        self._commit()
        return intent.model_copy(deep=True)

    def update_intent_fields(self, intent_id: str, **fields: Any) -> Intent:
        """Write derived or user-edited content onto an intent."""
        unknown = set(fields) - INTENT_EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Intent fields not editable: {sorted(unknown)}")
        intent = self._require_intent(intent_id)
        updated = Intent.model_validate({**intent.model_dump(), **fields})
        self._intents[intent_id] = updated
        self._emit(EventType.INTENT_UPDATED, intent_id)
        self._commit()
        return updated.model_copy(deep=True)

    def transition_intent(self, intent_id: str, status: IntentStatus, reason: str = "") -> Intent:
        """Move an intent through the lifecycle.

        Raises:
            InvalidTransitionError: If the state machine forbids the move.
            ValueError: For ``merged``, which only :meth:`merge_intents` sets.
        """
        if status == IntentStatus.MERGED:
            raise ValueError("Use merge_intents to merge intents")
        intent = self._require_intent(intent_id)
        self._set_status(intent, status, reason)
        self._commit()
        return intent.model_copy(deep=True)

    def sweep_lifecycle(self, now: datetime | None = None) -> list[tuple[str, IntentStatus]]:
        """Apply time- and size-driven transitions to every intent.

        A focused intent idle long enough is completed rather than expired.
        """
        now = now or self._clock()
        dormant_after = timedelta(hours=self.config.dormant_after_hours)
        expire_after = timedelta(days=self.config.expire_after_days)
        changed: list[tuple[str, IntentStatus]] = []
        for intent in self._intents.values():
            if intent.status in (IntentStatus.ACTIVE, IntentStatus.DORMANT):
                signal = lifecycle.detect_idle_completion(intent, now)
                if signal.completed:
                    self._set_status(intent, IntentStatus.COMPLETED, f"inferred: {signal.reason}")
                    changed.append((intent.id, IntentStatus.COMPLETED))
                    continue
            target = lifecycle.auto_transition(
                intent,
                now,
                dormant_after=dormant_after,
                expire_after=expire_after,
                active_page_threshold=self.config.active_page_threshold,
            )
            if target is not None:
                reason = "page threshold reached" if target == IntentStatus.ACTIVE else "inactivity"
                self._set_status(intent, target, reason)
                changed.append((intent.id, target))
        if changed:
            self._commit()
        return changed

    def merge_intents(self, loser_id: str, winner_id: str) -> Intent:
        """Fold *loser_id* into *winner_id* and return the surviving intent.

        Idempotent: merging an intent that is already merged is a no-op.
        The loser is kept, marked ``merged``, for audit.

        Raises:
            IntentNotFoundError: If either intent is missing.
            MergeValidationError: If the merge is not allowed.
        """
        if loser_id == winner_id:
            raise MergeValidationError("cannot merge an intent into itself")
        loser = self._require_intent(loser_id)
        self._require_intent(winner_id)
        winner = self._intents[self.resolve_intent(winner_id)]

        if loser.status == IntentStatus.MERGED or winner.id == loser.id:
            logger.debug("Merge %s -> %s is a no-op", loser_id, winner_id)
            survivor = self._intents[self.resolve_intent(loser.id)]
            return survivor.model_copy(deep=True)
        if winner.is_terminal:
            raise MergeValidationError(f"target intent {winner.id} is {winner.status}")
        if not lifecycle.can_transition(loser.status, IntentStatus.MERGED):
            raise MergeValidationError(f"source intent {loser.id} is {loser.status}")

        now = self._clock()
        moved = _list(loser.page_ids)
        for page_id in moved:
            page = self._pages.get(page_id)
            if page is None:
                continue
            old = page.assignments.primary
            page.assignments.primary = IntentAssignment(
                intent_id=winner.id,
                confidence=max(old.confidence if old else 0.0, MERGE_REASSIGN_CONFIDENCE),
                assigned_at=now,
                auto_assigned=True,
                merged_from=loser.id,
            )
            if page_id not in winner.page_ids:
                winner.page_ids.append(page_id)
            self._emit(EventType.PAGE_UPDATED, page_id)

        self._recompute(winner)
        winner.first_seen = min(winner.first_seen, loser.first_seen)
        winner.last_updated = now
        if loser.id not in winner.merged_from:
            winner.merged_from.append(loser.id)
        winner.timeline.append(
            TimelineEvent(
                type=TimelineEventType.MERGED,
                timestamp=now,
                detail=f"absorbed {loser.id} ({len(moved)} pages)",
            )
        )
        if (
            winner.status == IntentStatus.EMERGING
            and winner.page_count >= self.config.active_page_threshold
        ):
            self._set_status(winner, IntentStatus.ACTIVE, "page threshold reached")

        loser.merged_page_ids = moved
        loser.page_ids = []
        loser.page_count = 0
        loser.merged_into = winner.id
        loser.merged_at = now
        self._set_status(loser, IntentStatus.MERGED, f"merged into {winner.id}")
        loser.timeline.append(
            TimelineEvent(type=TimelineEventType.MERGED, timestamp=now, detail=f"into {winner.id}")
        )

        # Pending suggestions for the loser no longer apply
        for nudge in _list(self._nudges.values()):
            if nudge.intent_id == loser.id and nudge.status == NudgeStatus.PENDING:
                del self._nudges[nudge.id]
                self._emit(EventType.NUDGE_DELETED, nudge.id)

        logger.info("Merged intent %s into %s (%d pages)", loser.id, winner.id, len(moved))
        self._emit(EventType.INTENT_MERGED, loser.id, winner=winner.id)
        self._emit(EventType.INTENT_UPDATED, winner.id)
        self._commit()
        return winner.model_copy(deep=True)

    def delete_intent(self, intent_id: str) -> None:
        """Remove an intent, leaving its pages unassigned."""
        intent = self._require_intent(intent_id)
        for page_id in intent.page_ids:
            page = self._pages.get(page_id)
            if page is not None and page.primary_intent_id == intent_id:
                page.assignments.primary = None
                self._emit(EventType.PAGE_UPDATED, page_id)
        for page in self._pages.values():
            page.assignments.secondary = [
                a for a in page.assignments.secondary if a.intent_id != intent_id
            ]
        for nudge in _list(self._nudges.values()):
            if nudge.intent_id == intent_id:
                del self._nudges[nudge.id]
        del self._intents[intent_id]
        self._emit(EventType.INTENT_DELETED, intent_id)
        self._commit()

    # ── Nudges ───────────────────────────────────────────────────

    def save_nudge(self, nudge: Nudge) -> Nudge:
        self._require_intent(nudge.intent_id)
        stored = nudge.model_copy(deep=True)
        self._nudges[stored.id] = stored
        self._emit(EventType.NUDGE_SAVED, stored.id)
        self._commit()
        return stored.model_copy(deep=True)

    def get_nudge(self, nudge_id: str) -> Nudge | None:
        nudge = self._nudges.get(nudge_id)
        return nudge.model_copy(deep=True) if nudge else None

    def list_nudges(
        self,
        *,
        status: NudgeStatus | None = None,
        intent_id: str | None = None,
    ) -> list[Nudge]:
        return [
            n.model_copy(deep=True)
            for n in self._nudges.values()
            if (status is None or n.status == status)
            and (intent_id is None or n.intent_id == intent_id)
        ]

    def pending_nudges(self) -> list[Nudge]:
        """Pending nudges, high priority first, then oldest first."""
        pending = self.list_nudges(status=NudgeStatus.PENDING)
        pending.sort(key=lambda n: (PRIORITY_RANK[n.priority], n.timing.created_at))
        return pending

    def update_nudge_status(
        self,
        nudge_id: str,
        status: NudgeStatus,
        *,
        snoozed_until: datetime | None = None,
    ) -> Nudge:
        nudge = self._require_nudge(nudge_id)
        nudge.status = status
        nudge.timing.responded_at = self._clock()
        if status == NudgeStatus.SNOOZED:
            nudge.timing.snoozed_until = snoozed_until
        self._emit(EventType.NUDGE_SAVED, nudge_id)
        self._commit()
        return nudge.model_copy(deep=True)

    def delete_nudge(self, nudge_id: str) -> None:
        self._require_nudge(nudge_id)
        del self._nudges[nudge_id]
        self._emit(EventType.NUDGE_DELETED, nudge_id)
        self._commit()

    # ── Stats & checks ───────────────────────────────────────────

    def stats(self) -> dict[str, object]:
        by_status: dict[str, int] = defaultdict(int)
        for intent in self._intents.values():
            by_status[intent.status.value] += 1
        return {
            "total_pages": len(self._pages),
            "unassigned_pages": sum(1 for p in self._pages.values() if p.primary_intent_id is None),
            "total_intents": len(self._intents),
            "intents_by_status": dict(by_status),
            "pending_nudges": sum(1 for n in self._nudges.values() if n.status == NudgeStatus.PENDING),
        }

    def check_invariants(self) -> list[str]:
        """Describe every broken ownership invariant.  Empty when consistent."""
        problems: list[str] = []
        for intent in self._intents.values():
            if intent.page_count != len(intent.page_ids):
                problems.append(
                    f"intent {intent.id}: page_count {intent.page_count} != {len(intent.page_ids)}"
                )
            if len(set(intent.page_ids)) != len(intent.page_ids):
                problems.append(f"intent {intent.id}: duplicate page ids")
            for page_id in intent.page_ids:
                page = self._pages.get(page_id)
                if page is None:
                    problems.append(f"intent {intent.id}: page {page_id} missing")
                elif page.primary_intent_id != intent.id:
                    problems.append(
                        f"intent {intent.id}: page {page_id} owned by {page.primary_intent_id}"
                    )
        for page in self._pages.values():
            owner_id = page.primary_intent_id
            if owner_id is None:
                continue
            owner = self._intents.get(owner_id)
            if owner is None or page.id not in owner.page_ids:
                problems.append(f"page {page.id}: primary {owner_id} does not list it")
        return problems
