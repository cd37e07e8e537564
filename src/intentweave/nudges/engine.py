"""Suggestion rule engine.

Turns intent state into a small, deduplicated set of nudges.  Each run
first tidies the pending set (duplicates, nudges for finished intents,
stale messages), then evaluates the enabled rules within the daily
budget.  At most one pending nudge exists per ``(intent_id, type)``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timedelta

from intentweave.config import NudgesSectionConfig
from intentweave.prompts import milestone_prompt
from intentweave.scheduler.handlers import parse_milestone
from intentweave.scheduler.models import TaskStatus, TaskType
from intentweave.scheduler.scheduler import TaskScheduler
from intentweave.shared.llm import TextGenerator
from intentweave.shared.parsing import Ok, parse_structured
from intentweave.similarity.detector import MergeCandidateDetector, MergeDecision
from intentweave.store.models import (
    PRIORITY_RANK,
    Intent,
    IntentStatus,
    Milestone,
    Nudge,
    NudgeMessage,
    NudgePriority,
    NudgeStatus,
    NudgeTiming,
    NudgeType,
    SuggestedAction,
    utcnow,
)
from intentweave.store.store import IntentStore
from intentweave.topics.store import TopicGraphStore

logger = logging.getLogger(__name__)

DEFAULT_SNOOZE = timedelta(days=1)


# ── Message builders ─────────────────────────────────────────────────


def reminder_message(intent: Intent, now: datetime) -> NudgeMessage:
    idle_days = (now - intent.last_updated).days
    return NudgeMessage(
        title=f"Pick up where you left off: {intent.display_label}",
        body=f"You explored {intent.page_count} pages on this and haven't been back in {idle_days} days.",
        reason="inactivity",
        evidence=[f"Last activity {idle_days} days ago", f"{intent.page_count} pages"],
        confidence=0.7,
    )


def merge_message(intent: Intent, partner: Intent, score: float, shared: list[str]) -> NudgeMessage:
    return NudgeMessage(
        title=f"Combine with {partner.display_label}?",
        body=f"{intent.display_label} and {partner.display_label} look like the same research.",
        reason="overlapping topics",
        evidence=[f"Shared topics: {', '.join(shared[:5])}"] if shared else [],
        confidence=round(score, 2),
    )


def knowledge_gap_message(intent: Intent, topic: str, gaps: list[str]) -> NudgeMessage:
    return NudgeMessage(
        title=f"Related to {topic}: {', '.join(gaps[:3])}",
        body=f"People researching {topic} often look into {gaps[0]} next.",
        reason="knowledge gap",
        evidence=[f"{intent.page_count} pages on {intent.display_label}"],
        confidence=0.6,
    )


def milestone_message(intent: Intent, milestone: Milestone) -> NudgeMessage:
    return NudgeMessage(
        title=f"Next up: {milestone.next_milestone}",
        body=milestone.suggested_action or f"A natural next step for {intent.display_label}.",
        reason=milestone.reasoning or "predicted milestone",
        evidence=[f"{intent.page_count} pages"],
        confidence=milestone.confidence,
    )


class SuggestionEngine:
    """Generates and manages nudges."""

    def __init__(
        self,
        store: IntentStore,
        detector: MergeCandidateDetector,
        generator: TextGenerator | None = None,
        config: NudgesSectionConfig | None = None,
        *,
        topics: TopicGraphStore | None = None,
        scheduler: TaskScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.detector = detector
        self.generator = generator
        self.config = config or NudgesSectionConfig()
        self.topics = topics
        self.scheduler = scheduler
        self._clock = clock

    # -- Refresh -------------------------------------------------------------

    def refresh(self, now: datetime | None = None) -> None:
        """Drop duplicate and orphaned pending nudges, rebuild stale ones."""
        now = now or self._clock()
        by_key: dict[tuple[str, str], list[Nudge]] = defaultdict(list)
        for nudge in self.store.list_nudges(status=NudgeStatus.PENDING):
            by_key[nudge.key].append(nudge)

        for nudges in by_key.values():
            nudges.sort(key=lambda n: n.timing.created_at, reverse=True)
            newest, stale = nudges[0], nudges[1:]
            for duplicate in stale:
                logger.debug("Deleting duplicate nudge %s for %s", duplicate.id, duplicate.key)
                self.store.delete_nudge(duplicate.id)

            intent = self.store.get_intent(newest.intent_id)
            if intent is None or intent.is_terminal:
                self.store.delete_nudge(newest.id)
                continue
            if newest.intent_fingerprint != intent.fingerprint():
                self._rebuild(newest, intent, now)

    def _rebuild(self, nudge: Nudge, intent: Intent, now: datetime) -> None:
        message = nudge.message
        if nudge.type == NudgeType.REMINDER:
            message = reminder_message(intent, now)
        elif nudge.type == NudgeType.MILESTONE_NEXT and intent.milestone is not None:
            message = milestone_message(intent, intent.milestone)
        elif nudge.type == NudgeType.MERGE_SUGGESTION and nudge.related_intent_id:
            partner = self.store.get_intent(nudge.related_intent_id)
            if partner is None or partner.is_terminal:
                self.store.delete_nudge(nudge.id)
                return
            shared = self.detector.compute_signals(intent, partner).shared_keywords
            message = merge_message(intent, partner, message.confidence, shared).model_copy(
                update={"reason": message.reason}
            )
        else:
            message = message.model_copy(
                update={"evidence": [f"{intent.page_count} pages on {intent.display_label}"]}
            )
        nudge.message = message
        nudge.intent_fingerprint = intent.fingerprint()
        nudge.timing.refreshed_at = now
        self.store.save_nudge(nudge)

    # -- Budget --------------------------------------------------------------

    def remaining_budget(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        created_today = sum(
            1 for n in self.store.list_nudges() if n.timing.created_at.date() == now.date()
        )
        return self.config.daily_cap - created_today

    def _blocked_keys(self, now: datetime) -> set[tuple[str, str]]:
        blocked: set[tuple[str, str]] = set()
        for nudge in self.store.list_nudges():
            if nudge.status == NudgeStatus.PENDING:
                blocked.add(nudge.key)
            elif nudge.status == NudgeStatus.SNOOZED:
                until = nudge.timing.snoozed_until
                if until is None or until > now:
                    blocked.add(nudge.key)
        return blocked

    # -- Rules ---------------------------------------------------------------

    def _new_nudge(
        self,
        intent: Intent,
        nudge_type: NudgeType,
        priority: NudgePriority,
        message: NudgeMessage,
        now: datetime,
        actions: list[SuggestedAction] | None = None,
        related_intent_id: str | None = None,
    ) -> Nudge:
        return Nudge(
            intent_id=intent.id,
            type=nudge_type,
            priority=priority,
            message=message,
            suggested_actions=actions or [],
            timing=NudgeTiming(created_at=now, trigger_rule=nudge_type.value),
            intent_fingerprint=intent.fingerprint(),
            related_intent_id=related_intent_id,
        )

    def reminder_nudges(self, now: datetime, blocked: set[tuple[str, str]]) -> list[Nudge]:
        nudges: list[Nudge] = []
        for intent in self.store.list_intents((IntentStatus.ACTIVE, IntentStatus.DORMANT)):
            if (intent.id, NudgeType.REMINDER.value) in blocked:
                continue
            idle_days = (now - intent.last_updated).total_seconds() / 86400
            if idle_days < self.config.reminder_after_days:
                continue
            priority = (
                NudgePriority.HIGH
                if idle_days > self.config.reminder_high_after_days
                else NudgePriority.MEDIUM
            )
            nudges.append(
                self._new_nudge(
                    intent,
                    NudgeType.REMINDER,
                    priority,
                    reminder_message(intent, now),
                    now,
                    [SuggestedAction(label="Resume research", action="open_intent")],
                )
            )
        return nudges

    def reviewed_pairs(self) -> dict[frozenset[str], MergeDecision]:
        """The latest capability decision per intent pair, from finished merge scans."""
        if self.scheduler is None:
            return {}
        scans = [
            t
            for t in self.scheduler.tasks(TaskStatus.COMPLETED)
            if t.type == TaskType.SCAN_MERGE_OPPORTUNITIES
        ]
        latest: dict[frozenset[str], MergeDecision] = {}
        for task in sorted(scans, key=lambda t: t.completed_at or t.created_at):
            for entry in (task.structured_output or {}).get("decisions", []):
                decision = MergeDecision(**entry)
                latest[frozenset((decision.intent_a, decision.intent_b))] = decision
        return latest

    def merge_nudges(self, now: datetime, blocked: set[tuple[str, str]]) -> list[Nudge]:
        """Suggest merges the capability half-confirmed, then unreviewed candidates.

        A pair the capability has already judged is never re-suggested from
        the local heuristics.
        """
        reviewed = self.reviewed_pairs()
        proposals: list[tuple[str, str, float, NudgePriority, str]] = [
            (d.intent_a, d.intent_b, d.confidence, NudgePriority.MEDIUM, d.reasoning)
            for d in sorted(
                self.detector.suggestion_decisions(reviewed.values()),
                key=lambda d: -d.confidence,
            )
        ]
        proposals.extend(
            (*candidate.pair, candidate.score, NudgePriority.LOW, "")
            for candidate in self.detector.find_candidates()
            if frozenset(candidate.pair) not in reviewed
        )

        nudges: list[Nudge] = []
        paired: set[str] = set()
        for a_id, b_id, confidence, priority, reasoning in proposals:
            if a_id in paired or b_id in paired:
                continue
            a = self.store.get_intent(a_id)
            b = self.store.get_intent(b_id)
            if a is None or b is None or a.is_terminal or b.is_terminal:
                continue
            paired.update((a_id, b_id))
            if (a.id, NudgeType.MERGE_SUGGESTION.value) in blocked:
                continue
            shared = self.detector.compute_signals(a, b).shared_keywords
            message = merge_message(a, b, confidence, shared)
            if reasoning:
                message.reason = reasoning
            nudges.append(
                self._new_nudge(
                    a,
                    NudgeType.MERGE_SUGGESTION,
                    priority,
                    message,
                    now,
                    [SuggestedAction(label="Merge intents", action="merge")],
                    related_intent_id=b.id,
                )
            )
        return nudges

    def knowledge_gap_nudges(self, now: datetime, blocked: set[tuple[str, str]]) -> list[Nudge]:
        if self.topics is None:
            return []
        intents = [
            i
            for i in self.store.list_intents((IntentStatus.ACTIVE,))
            if i.page_count >= self.config.knowledge_gap_min_pages
            and (i.id, NudgeType.KNOWLEDGE_GAP.value) not in blocked
        ]
        if not intents:
            return []
        self.topics.rebuild(self.store.list_intents())

        nudges: list[Nudge] = []
        for intent in intents:
            covered = intent.aggregated_signals.top_keywords(self.detector.config.top_keywords)
            if not covered:
                continue
            gaps = self.topics.knowledge_gaps(covered[0], covered=covered)
            if not gaps:
                continue
            nudges.append(
                self._new_nudge(
                    intent,
                    NudgeType.KNOWLEDGE_GAP,
                    NudgePriority.MEDIUM,
                    knowledge_gap_message(intent, covered[0], gaps),
                    now,
                    [SuggestedAction(label=f"Search {gap}", action="search", query=gap) for gap in gaps[:3]],
                )
            )
        return nudges

    async def milestone_nudges(self, now: datetime, blocked: set[tuple[str, str]]) -> list[Nudge]:
        if self.generator is None:
            return []
        nudges: list[Nudge] = []
        for intent in self.store.list_intents((IntentStatus.ACTIVE,)):
            if intent.page_count < self.config.milestone_min_pages:
                continue
            if (intent.id, NudgeType.MILESTONE_NEXT.value) in blocked:
                continue
            pages = self.store.pages_for_intent(intent.id)
            try:
                text = await self.generator.generate(milestone_prompt(intent, pages))
            except Exception as exc:
                logger.warning("Milestone prediction failed for intent %s: %s", intent.id, exc)
                continue
            result = parse_structured(text, default=None)
            parsed = parse_milestone(result.value) if isinstance(result, Ok) else None
            if parsed is None:
                continue
            milestone, _completed = parsed
            if milestone.confidence < self.config.milestone_confidence_floor:
                continue
            priority = (
                NudgePriority.HIGH
                if milestone.confidence > self.config.milestone_high_confidence
                else NudgePriority.MEDIUM
            )
            nudges.append(
                self._new_nudge(
                    intent,
                    NudgeType.MILESTONE_NEXT,
                    priority,
                    milestone_message(intent, milestone),
                    now,
                    [SuggestedAction(label=milestone.suggested_action or "Keep going", action="explore")],
                )
            )
        return nudges

    # -- Generation ----------------------------------------------------------

    async def generate(self, now: datetime | None = None) -> list[Nudge]:
        """Run every enabled rule and save what fits in today's budget."""
        now = now or self._clock()
        self.refresh(now)

        remaining = self.remaining_budget(now)
        if remaining <= 0:
            logger.debug("Daily nudge budget used up")
            return []

        blocked = self._blocked_keys(now)
        candidates: list[Nudge] = []
        if self.config.enable_reminders:
            candidates.extend(self.reminder_nudges(now, blocked))
        if self.config.enable_merge_suggestions:
            candidates.extend(self.merge_nudges(now, blocked))
        if self.config.enable_knowledge_gaps:
            candidates.extend(self.knowledge_gap_nudges(now, blocked))
        if self.config.enable_milestones:
            candidates.extend(await self.milestone_nudges(now, blocked))

        last_updated = {i.id: i.last_updated for i in self.store.list_intents()}
        candidates.sort(
            key=lambda n: (
                PRIORITY_RANK[n.priority],
                -last_updated.get(n.intent_id, now).timestamp(),
            )
        )

        saved: list[Nudge] = []
        seen: set[tuple[str, str]] = set()
        for nudge in candidates:
            if len(saved) >= remaining:
                break
            if nudge.key in seen:
                continue
            seen.add(nudge.key)
            saved.append(self.store.save_nudge(nudge))
        if saved:
            logger.info("Generated %d nudge(s)", len(saved))
        return saved

    # -- Commands ------------------------------------------------------------

    def acknowledge(self, nudge_id: str) -> Nudge:
        return self.store.update_nudge_status(nudge_id, NudgeStatus.ACTED)

    def snooze(self, nudge_id: str, until: datetime | None = None) -> Nudge:
        until = until or self._clock() + DEFAULT_SNOOZE
        return self.store.update_nudge_status(nudge_id, NudgeStatus.SNOOZED, snoozed_until=until)

    def dismiss(self, nudge_id: str) -> Nudge:
        return self.store.update_nudge_status(nudge_id, NudgeStatus.DISCARDED)
