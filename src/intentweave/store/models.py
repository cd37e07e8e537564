"""Pydantic models for pages, intents and nudges.

A Page is one tracked visit.  An Intent is a durable cluster of pages
believed to be one coherent research or browsing session.  A Nudge is a
derived, deduplicated suggestion keyed by ``(intent_id, type)``.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import StrEnum
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid4().hex[:12]


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

_ERROR_TITLE_RE = re.compile(r"\b(404|not found)\b|^\s*error\b", re.IGNORECASE)


class TextSelection(BaseModel):
    text: str
    timestamp: datetime = Field(default_factory=utcnow)


class FocusedSection(BaseModel):
    heading: str
    dwell_time: float = 0.0


class Interactions(BaseModel):
    """Raw interaction metrics reported by the page tracker."""

    dwell_time: float = 0.0
    scroll_depth: float = Field(default=0.0, ge=0.0, le=1.0)
    scroll_position: float = 0.0
    total_scroll_distance: float = 0.0
    text_selections: list[TextSelection] = Field(default_factory=list)
    engagement_score: float = Field(default=0.0, ge=0.0, le=1.0)
    focused_sections: list[FocusedSection] = Field(default_factory=list)


class Entities(BaseModel):
    people: list[str] = Field(default_factory=list)
    places: list[str] = Field(default_factory=list)
    organizations: list[str] = Field(default_factory=list)
    products: list[str] = Field(default_factory=list)
    topics: list[str] = Field(default_factory=list)

    def flatten(self) -> list[str]:
        """All entity names, in field order, without duplicates."""
        seen: dict[str, None] = {}
        for group in (self.people, self.places, self.organizations, self.products, self.topics):
            for name in group:
                seen.setdefault(name, None)
        return list(seen)


class SemanticFeatures(BaseModel):
    """AI-derived understanding of a page, filled in by enrichment."""

    concepts: list[str] = Field(default_factory=list)
    entities: Entities = Field(default_factory=Entities)
    primary_action: str = ""
    goal: str = ""
    intent_confidence: float = 0.0
    content_type: str = ""
    sentiment: str = ""


class BehaviorClass(BaseModel):
    primary: str
    confidence: float = 0.0
    signals: list[str] = Field(default_factory=list)


class IntentAssignment(BaseModel):
    intent_id: str
    confidence: float = 0.0
    assigned_at: datetime = Field(default_factory=utcnow)
    auto_assigned: bool = True
    needs_confirmation: bool = False
    merged_from: str | None = None


class Assignments(BaseModel):
    primary: IntentAssignment | None = None
    secondary: list[IntentAssignment] = Field(default_factory=list)


class Page(BaseModel):
    """A single tracked visit."""

    id: str = Field(default_factory=new_id)
    url: str
    title: str = ""
    domain: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    content: str = ""
    content_summary: str = ""
    interactions: Interactions = Field(default_factory=Interactions)
    semantic_features: SemanticFeatures | None = None
    embedding: list[float] = Field(default_factory=list)
    behavior: BehaviorClass | None = None
    processed_at: datetime | None = None
    assignments: Assignments = Field(default_factory=Assignments)

    @model_validator(mode="after")
    def _derive_domain(self) -> Page:
        if not self.domain:
            host = urlparse(self.url).hostname or ""
            self.domain = host.removeprefix("www.")
        return self

    @property
    def primary_intent_id(self) -> str | None:
        primary = self.assignments.primary
        return primary.intent_id if primary else None

    @property
    def is_error_page(self) -> bool:
        return bool(_ERROR_TITLE_RE.search(self.title))


# ---------------------------------------------------------------------------
# Intents
# ---------------------------------------------------------------------------


class IntentStatus(StrEnum):
    """Lifecycle states of an intent."""

    EMERGING = "emerging"
    ACTIVE = "active"
    DORMANT = "dormant"
    COMPLETED = "completed"
    MERGED = "merged"
    DISCARDED = "discarded"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset(
    {
        IntentStatus.COMPLETED,
        IntentStatus.MERGED,
        IntentStatus.DISCARDED,
        IntentStatus.EXPIRED,
    }
)


class KeywordStats(BaseModel):
    count: int = 0
    avg_engagement: float = 0.0
    total_engagement: float = 0.0
    recency: float = 0.0


class BrowsingStyle(StrEnum):
    FOCUSED = "focused"
    EXPLORATORY = "exploratory"
    SCANNING = "scanning"


class BrowsingPatterns(BaseModel):
    avg_engagement: float = 0.0
    avg_dwell_time: float = 0.0
    avg_scroll_depth: float = 0.0
    browsing_style: BrowsingStyle = BrowsingStyle.EXPLORATORY


class AggregatedSignals(BaseModel):
    """Rolling aggregate of an intent's pages, recomputed on every change."""

    keywords: dict[str, KeywordStats] = Field(default_factory=dict)
    domains: list[str] = Field(default_factory=list)
    entities: list[str] = Field(default_factory=list)
    patterns: BrowsingPatterns = Field(default_factory=BrowsingPatterns)

    def top_keywords(self, k: int) -> list[str]:
        """Keywords ranked by count, then total engagement, then name."""
        ranked = sorted(
            self.keywords.items(),
            key=lambda item: (-item[1].count, -item[1].total_engagement, item[0]),
        )
        return [name for name, _stats in ranked[:k]]


class LabelSource(StrEnum):
    HEURISTIC = "heuristic"
    AI = "ai"
    USER = "user"


class LabelChange(BaseModel):
    label: str
    confidence: float = 0.0
    source: LabelSource = LabelSource.AI
    changed_at: datetime = Field(default_factory=utcnow)


class TimelineEventType(StrEnum):
    CREATED = "created"
    PAGE_ADDED = "page_added"
    LABEL_CHANGED = "label_changed"
    STATUS_CHANGED = "status_changed"
    MERGED = "merged"


class TimelineEvent(BaseModel):
    type: TimelineEventType
    timestamp: datetime = Field(default_factory=utcnow)
    detail: str = ""
    page_id: str | None = None


class Insight(BaseModel):
    text: str
    confidence: str = "medium"
    reasoning: str = ""


class NextStep(BaseModel):
    action: str
    description: str = ""
    reasoning: str = ""
    type: str = "explore"
    url: str = ""
    query: str = ""


class Milestone(BaseModel):
    next_milestone: str
    confidence: float = 0.0
    reasoning: str = ""
    suggested_action: str = ""
    predicted_at: datetime = Field(default_factory=utcnow)


class Intent(BaseModel):
    """A durable cluster of pages."""

    id: str = Field(default_factory=new_id)
    label: str = ""
    label_confidence: float = 0.0
    label_history: list[LabelChange] = Field(default_factory=list)
    status: IntentStatus = IntentStatus.EMERGING
    status_reason: str = ""
    page_count: int = 0
    page_ids: list[str] = Field(default_factory=list)
    aggregated_signals: AggregatedSignals = Field(default_factory=AggregatedSignals)
    goal: str = ""
    goal_confidence: float = 0.0
    summary: str = ""
    insights: list[Insight] = Field(default_factory=list)
    next_steps: list[NextStep] = Field(default_factory=list)
    milestone: Milestone | None = None
    user_notes: str = ""
    first_seen: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    merged_into: str | None = None
    merged_from: list[str] = Field(default_factory=list)
    merged_at: datetime | None = None
    merged_page_ids: list[str] = Field(default_factory=list)
    timeline: list[TimelineEvent] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def display_label(self) -> str:
        return self.label or f"Untitled intent {self.id}"

    def fingerprint(self) -> str:
        """Changes whenever the intent changes materially for suggestions."""
        return f"{self.status}:{self.page_count}:{self.label}"


# ---------------------------------------------------------------------------
# Nudges
# ---------------------------------------------------------------------------


class NudgeType(StrEnum):
    REMINDER = "reminder"
    MERGE_SUGGESTION = "merge_suggestion"
    KNOWLEDGE_GAP = "knowledge_gap"
    MILESTONE_NEXT = "milestone_next"
    NEXT_ACTION = "next_action"


class NudgePriority(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_RANK: dict[NudgePriority, int] = {
    NudgePriority.HIGH: 0,
    NudgePriority.MEDIUM: 1,
    NudgePriority.LOW: 2,
}


class NudgeStatus(StrEnum):
    PENDING = "pending"
    SHOWN = "shown"
    SNOOZED = "snoozed"
    ACTED = "acted"
    DISCARDED = "discarded"


class NudgeMessage(BaseModel):
    title: str
    body: str = ""
    reason: str = ""
    evidence: list[str] = Field(default_factory=list)
    confidence: float = 0.0


class SuggestedAction(BaseModel):
    label: str
    action: str
    url: str = ""
    query: str = ""


class NudgeTiming(BaseModel):
    created_at: datetime = Field(default_factory=utcnow)
    trigger_rule: str = ""
    snoozed_until: datetime | None = None
    responded_at: datetime | None = None
    refreshed_at: datetime | None = None


class Nudge(BaseModel):
    """A suggestion surfaced to the user."""

    id: str = Field(default_factory=new_id)
    intent_id: str
    type: NudgeType
    priority: NudgePriority = NudgePriority.MEDIUM
    status: NudgeStatus = NudgeStatus.PENDING
    message: NudgeMessage
    suggested_actions: list[SuggestedAction] = Field(default_factory=list)
    timing: NudgeTiming = Field(default_factory=NudgeTiming)
    intent_fingerprint: str = ""
    related_intent_id: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.intent_id, self.type.value)
