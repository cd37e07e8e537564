"""Handlers for every task type.

Each handler's ``execute`` gathers what it needs from the store, awaits
the text-generation capability and returns a JSON-serializable output.
``apply`` writes that output back.  Handlers never hold store records
across the ``await``; ``apply`` re-reads what it changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from intentweave.config import IntentweaveConfig
from intentweave.errors import (
    ClassifiedError,
    DependencyNotReadyError,
    ErrorKind,
    IntentNotFoundError,
    MergeValidationError,
    PageNotFoundError,
)
from intentweave.prompts import (
    behavior_prompt,
    intent_goal_prompt,
    intent_insights_prompt,
    intent_label_prompt,
    intent_next_steps_prompt,
    intent_summary_prompt,
    milestone_prompt,
    semantic_extraction_prompt,
    summarization_prompt,
    verify_match_prompt,
)
from intentweave.scheduler.labels import (
    FALLBACK_LABEL_CONFIDENCE,
    build_fallback_label,
    is_valid_intent_label,
)
from intentweave.scheduler.models import Task, TaskType
from intentweave.scheduler.scheduler import TaskHandler, TaskScheduler
from intentweave.shared.llm import TextGenerator
from intentweave.shared.parsing import Degraded, Ok, parse_structured, unwrap
from intentweave.similarity.detector import MergeCandidateDetector, MergeDecision, choose_winner
from intentweave.similarity.embedding import create_embedding
from intentweave.store.lifecycle import can_transition
from intentweave.store.models import (
    BehaviorClass,
    Insight,
    Intent,
    IntentStatus,
    LabelSource,
    Milestone,
    NextStep,
    Page,
    SemanticFeatures,
    utcnow,
)
from intentweave.store.store import IntentStore
from intentweave.topics.store import TopicGraphStore

if TYPE_CHECKING:
    from intentweave.engine import IntentEngine

logger = logging.getLogger(__name__)

MAX_INSIGHTS = 3
MAX_NEXT_STEPS = 3

_ENTITY_GROUPS = frozenset({"people", "places", "organizations", "products", "topics"})


@dataclass
class HandlerContext:
    """Collaborators shared by all handlers."""

    store: IntentStore
    scheduler: TaskScheduler
    generator: TextGenerator
    config: IntentweaveConfig
    detector: MergeCandidateDetector
    engine: IntentEngine
    topics: TopicGraphStore | None = None


# ── Output coercion ──────────────────────────────────────────────────


def _as_str_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def coerce_semantic_features(payload: Any) -> SemanticFeatures:
    """Turn a loosely shaped extraction payload into :class:`SemanticFeatures`.

    Raises:
        ClassifiedError: Transient, when the payload is not an object.
    """
    if not isinstance(payload, dict):
        raise ClassifiedError("Invalid JSON response: expected an object", ErrorKind.TRANSIENT)

    entities = payload.get("entities") or {}
    if isinstance(entities, list):
        entities = {"topics": entities}
    if not isinstance(entities, dict):
        entities = {}

    try:
        confidence = float(payload.get("intent_confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0

    return SemanticFeatures(
        concepts=_as_str_list(payload.get("concepts")),
        entities={k: _as_str_list(v) for k, v in entities.items() if k in _ENTITY_GROUPS},
        primary_action=str(payload.get("primary_action") or ""),
        goal=str(payload.get("goal") or ""),
        intent_confidence=min(max(confidence, 0.0), 1.0),
        content_type=str(payload.get("content_type") or ""),
        sentiment=str(payload.get("sentiment") or ""),
    )


def heuristic_behavior(page: Page) -> BehaviorClass:
    """Classify reading behavior from raw interaction metrics."""
    i = page.interactions
    if i.dwell_time < 10 and i.scroll_depth < 0.3:
        return BehaviorClass(primary="scanning", confidence=0.5, signals=["short dwell", "shallow scroll"])
    if i.text_selections or i.engagement_score > 0.6:
        return BehaviorClass(primary="reading", confidence=0.5, signals=["high engagement"])
    return BehaviorClass(primary="browsing", confidence=0.3, signals=[])


def parse_milestone(payload: Any) -> tuple[Milestone, bool] | None:
    """A milestone prediction and its ``completed`` flag, or None if unusable."""
    if not isinstance(payload, dict) or not payload.get("next_milestone"):
        return None
    try:
        confidence = float(payload.get("confidence", 0.0))
    except (TypeError, ValueError):
        return None
    milestone = Milestone(
        next_milestone=str(payload["next_milestone"]),
        confidence=min(max(confidence, 0.0), 1.0),
        reasoning=str(payload.get("reasoning") or ""),
        suggested_action=str(payload.get("suggested_action") or ""),
    )
    return milestone, bool(payload.get("completed", False))


def _list_payload(payload: Any, key: str) -> list[Any]:
    if isinstance(payload, dict):
        payload = payload.get(key, [])
    return payload if isinstance(payload, list) else []


# ── Base ─────────────────────────────────────────────────────────────


class _BaseHandler(TaskHandler):
    def __init__(self, ctx: HandlerContext) -> None:
        self.ctx = ctx

    @property
    def store(self) -> IntentStore:
        return self.ctx.store

    def _page(self, page_id: str | None) -> Page:
        page = self.store.get_page(page_id or "")
        if page is None:
            raise PageNotFoundError(page_id or "")
        return page

    def _intent(self, intent_id: str | None) -> Intent:
        intent = self.store.get_intent(intent_id or "")
        if intent is None:
            raise IntentNotFoundError(intent_id or "")
        return intent

    async def _generate(self, prompt: Any) -> str:
        return await self.ctx.generator.generate(prompt)


class _IntentContentHandler(_BaseHandler):
    """Base for jobs that derive content from an intent's pages.

    Merged intents are skipped: their content lives on the survivor.
    """

    async def execute(self, task: Task) -> dict[str, Any]:
        intent = self._intent(task.intent_id)
        if intent.status == IntentStatus.MERGED:
            return {"skipped": f"merged into {intent.merged_into}"}
        pages = self.store.pages_for_intent(intent.id)
        return await self.derive(intent, pages)

    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        raise NotImplementedError

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        if "skipped" in output:
            return
        if self.store.get_intent(task.intent_id or "") is None:
            return
        self.write(task.intent_id, output)

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        raise NotImplementedError


# ── Page handlers ────────────────────────────────────────────────────


class SemanticExtractionHandler(_BaseHandler):
    async def execute(self, task: Task) -> dict[str, Any]:
        page = self._page(task.page_id)
        if page.semantic_features is not None:
            return {"skipped": "already extracted"}
        text = await self._generate(semantic_extraction_prompt(page))
        features = coerce_semantic_features(unwrap(parse_structured(text)))
        return {"semantic_features": features.model_dump(mode="json")}

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        if "skipped" in output:
            return
        page = self._page(task.page_id)
        features = SemanticFeatures.model_validate(output["semantic_features"])
        page.semantic_features = features
        self.store.update_page_fields(
            page.id,
            semantic_features=features,
            embedding=create_embedding(page),
            processed_at=utcnow(),
        )


class IntentMatchingHandler(_BaseHandler):
    async def execute(self, task: Task) -> dict[str, Any]:
        page = self._page(task.page_id)
        if page.primary_intent_id is not None:
            return {"action": "skip", "intent_id": page.primary_intent_id, "reason": "already assigned"}
        if page.semantic_features is None:
            raise DependencyNotReadyError(f"Semantic features not ready for page {page.id}")
        return self.ctx.engine.score_page(page).to_output()

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        self.ctx.engine.apply_match(task.page_id or "", output)


class ClassifyBehaviorHandler(_BaseHandler):
    async def execute(self, task: Task) -> dict[str, Any]:
        page = self._page(task.page_id)
        text = await self._generate(behavior_prompt(page))
        result = parse_structured(text, default=None)
        if isinstance(result, Ok) and isinstance(result.value, dict):
            try:
                behavior = BehaviorClass.model_validate(result.value)
                return {"behavior": behavior.model_dump(mode="json"), "degraded": False}
            except ValidationError:
                logger.warning("Behavior payload for page %s has the wrong shape", page.id)
        return {"behavior": heuristic_behavior(page).model_dump(mode="json"), "degraded": True}

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        self.store.update_page_fields(
            task.page_id or "", behavior=BehaviorClass.model_validate(output["behavior"])
        )


class SummarizationHandler(_BaseHandler):
    async def execute(self, task: Task) -> dict[str, Any]:
        page = self._page(task.page_id)
        if len(page.content) <= self.ctx.config.scheduler.summarize_min_chars:
            return {"skipped": "content too short"}
        summary = (await self._generate(summarization_prompt(page))).strip()
        if not summary:
            raise ClassifiedError("Empty summary response", ErrorKind.TRANSIENT)
        return {"content_summary": summary}

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        if "skipped" in output:
            return
        self.store.update_page_fields(task.page_id or "", content_summary=output["content_summary"])


class VerifyIntentMatchingHandler(_BaseHandler):
    ALTERNATIVES = 5

    async def execute(self, task: Task) -> dict[str, Any]:
        page = self._page(task.page_id)
        if page.primary_intent_id is None:
            raise DependencyNotReadyError(f"Page {page.id} has no intent assignment")
        current = self._intent(page.primary_intent_id)
        alternatives = [
            i
            for i in self.store.recent_intents(
                statuses=(IntentStatus.EMERGING, IntentStatus.ACTIVE),
                limit=self.ALTERNATIVES + 1,
            )
            if i.id != current.id
        ][: self.ALTERNATIVES]

        text = await self._generate(verify_match_prompt(page, current, alternatives))
        result = parse_structured(text, default={"action": "agree"})
        payload = result.value if isinstance(result, (Ok, Degraded)) else {"action": "agree"}
        if not isinstance(payload, dict):
            payload = {"action": "agree"}

        try:
            confidence = float(payload.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return {
            "action": str(payload.get("action", "agree")),
            "current_intent_id": current.id,
            "intent_id": str(payload.get("intent_id") or ""),
            "confidence": min(max(confidence, 0.0), 1.0),
            "reasoning": str(payload.get("reasoning") or ""),
        }

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        threshold = self.ctx.config.matching.verify_reassign_confidence
        if output["confidence"] < threshold:
            return
        page = self.store.get_page(task.page_id or "")
        if page is None or page.primary_intent_id != output["current_intent_id"]:
            return

        if output["action"] == "reassign":
            target = self.store.get_intent(output["intent_id"])
            if target is None or target.is_terminal or target.id == page.primary_intent_id:
                return
            logger.info("Verification moved page %s to intent %s", page.id, target.id)
            self.store.assign_primary_intent(page.id, target.id, output["confidence"])
            self.ctx.engine.after_assignment(page.id, target.id)
        elif output["action"] == "new":
            owner = self.store.get_intent(page.primary_intent_id)
            if owner is not None and owner.page_count <= 1:
                return
            logger.info("Verification split page %s into a new intent", page.id)
            self.ctx.engine.create_intent_for(page.id)


# ── Intent content handlers ──────────────────────────────────────────


class GenerateLabelHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        text = await self._generate(intent_label_prompt(intent, pages))
        result = parse_structured(text, default={})
        payload = result.value if isinstance(result, Ok) else {}
        label = str(payload.get("label") or "").strip() if isinstance(payload, dict) else ""

        if label and is_valid_intent_label(label, pages):
            try:
                confidence = float(payload.get("confidence", 0.7))
            except (TypeError, ValueError):
                confidence = 0.7
            return {"label": label, "confidence": min(max(confidence, 0.0), 1.0), "source": LabelSource.AI.value}

        if label:
            logger.debug("Rejected generated label %r for intent %s", label, intent.id)
        return {
            "label": build_fallback_label(intent, pages),
            "confidence": FALLBACK_LABEL_CONFIDENCE,
            "source": LabelSource.HEURISTIC.value,
        }

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        intent = self._intent(intent_id)
        # A user-chosen label always wins
        if intent.label_history and intent.label_history[-1].source == LabelSource.USER:
            return
        self.store.set_intent_label(
            intent_id, output["label"], output["confidence"], LabelSource(output["source"])
        )


class GenerateGoalHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        text = await self._generate(intent_goal_prompt(intent, pages))
        result = parse_structured(text, default=None)
        if not isinstance(result, Ok) or not isinstance(result.value, dict):
            return {"skipped": "unusable goal response"}
        goal = str(result.value.get("goal") or "").strip()
        if not goal:
            return {"skipped": "empty goal"}
        try:
            confidence = float(result.value.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return {"goal": goal, "goal_confidence": min(max(confidence, 0.0), 1.0)}

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        self.store.update_intent_fields(
            intent_id, goal=output["goal"], goal_confidence=output["goal_confidence"]
        )


class GenerateSummaryHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        summary = (await self._generate(intent_summary_prompt(intent, pages))).strip()
        if not summary:
            raise ClassifiedError("Empty summary response", ErrorKind.TRANSIENT)
        return {"summary": summary}

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        self.store.update_intent_fields(intent_id, summary=output["summary"])


class GenerateInsightsHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        text = await self._generate(intent_insights_prompt(intent, pages))
        result = parse_structured(text, default=[])
        insights: list[dict[str, Any]] = []
        for entry in _list_payload(result.value if isinstance(result, (Ok, Degraded)) else [], "insights"):
            if isinstance(entry, str):
                entry = {"text": entry}
            try:
                insights.append(Insight.model_validate(entry).model_dump(mode="json"))
            except ValidationError:
                continue
        return {"insights": insights[:MAX_INSIGHTS]}

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        self.store.update_intent_fields(intent_id, insights=output["insights"])


class GenerateNextStepsHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        text = await self._generate(intent_next_steps_prompt(intent, pages))
        result = parse_structured(text, default=[])
        steps: list[dict[str, Any]] = []
        for entry in _list_payload(result.value if isinstance(result, (Ok, Degraded)) else [], "next_steps"):
            if isinstance(entry, str):
                entry = {"action": entry}
            try:
                steps.append(NextStep.model_validate(entry).model_dump(mode="json"))
            except ValidationError:
                continue
        return {"next_steps": steps[:MAX_NEXT_STEPS]}

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        self.store.update_intent_fields(intent_id, next_steps=output["next_steps"])


class AnalyzeKnowledgeGapsHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        topics = self.ctx.topics
        keywords = intent.aggregated_signals.top_keywords(self.ctx.config.detector.top_keywords)
        if topics is None or not keywords:
            return {"topic": keywords[0] if keywords else "", "gaps": []}
        topics.rebuild(self.store.list_intents())
        return {"topic": keywords[0], "gaps": topics.knowledge_gaps(keywords[0], covered=keywords)}

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        """Gaps stay on the task output; suggestions read them from there."""


class PredictMilestoneHandler(_IntentContentHandler):
    async def derive(self, intent: Intent, pages: list[Page]) -> dict[str, Any]:
        text = await self._generate(milestone_prompt(intent, pages))
        result = parse_structured(text, default=None)
        parsed = parse_milestone(result.value) if isinstance(result, Ok) else None
        if parsed is None:
            return {"skipped": "unusable milestone response"}
        milestone, completed = parsed
        return {"milestone": milestone.model_dump(mode="json"), "completed": completed}

    def write(self, intent_id: str, output: dict[str, Any]) -> None:
        milestone = Milestone.model_validate(output["milestone"])
        if milestone.confidence >= self.ctx.config.nudges.milestone_confidence_floor:
            self.store.update_intent_fields(intent_id, milestone=milestone)

        intent = self._intent(intent_id)
        if (
            output["completed"]
            and milestone.confidence >= self.ctx.config.store.completion_threshold
            and can_transition(intent.status, IntentStatus.COMPLETED)
        ):
            self.store.transition_intent(intent_id, IntentStatus.COMPLETED, "inferred: milestone reached")


# ── Merge handlers ───────────────────────────────────────────────────


class ScanMergeOpportunitiesHandler(_BaseHandler):
    async def execute(self, task: Task) -> dict[str, Any]:
        candidates = self.ctx.detector.find_candidates()
        if not candidates:
            return {"candidates": 0, "decisions": []}
        decisions = await self.ctx.detector.evaluate(candidates, self.ctx.generator)
        return {
            "candidates": len(candidates),
            "decisions": [
                {
                    "intent_a": d.intent_a,
                    "intent_b": d.intent_b,
                    "should_merge": d.should_merge,
                    "confidence": d.confidence,
                    "reasoning": d.reasoning,
                }
                for d in decisions
            ],
        }

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        threshold = self.ctx.config.detector.merge_confidence_threshold
        for entry in output["decisions"]:
            decision = MergeDecision(**entry)
            if not decision.is_confirmed(threshold):
                continue
            a = self.store.get_intent(decision.intent_a)
            b = self.store.get_intent(decision.intent_b)
            if a is None or b is None or a.is_terminal or b.is_terminal:
                continue
            loser, winner = choose_winner(a, b)
            self.ctx.scheduler.enqueue(
                TaskType.MERGE_INTENTS,
                intent_id=loser.id,
                structured_input={
                    "winner_id": winner.id,
                    "confidence": decision.confidence,
                    "reasoning": decision.reasoning,
                },
            )


class MergeIntentsHandler(_BaseHandler):
    async def execute(self, task: Task) -> dict[str, Any]:
        winner_id = task.structured_input.get("winner_id")
        if not winner_id:
            raise MergeValidationError("no winner_id given")
        loser = self._intent(task.intent_id)
        winner = self._intent(self.store.resolve_intent(str(winner_id)))
        if loser.status == IntentStatus.MERGED or winner.id == loser.id:
            return {"winner_id": winner.id, "noop": True}
        signals = self.ctx.detector.compute_signals(loser, winner)
        if signals.is_contradictory:
            raise MergeValidationError(
                f"intents {loser.id} and {winner.id} contradict on {signals.contradiction}"
            )
        return {"winner_id": winner.id, "noop": False}

    def apply(self, task: Task, output: dict[str, Any]) -> None:
        if output.get("noop"):
            return
        survivor = self.store.merge_intents(task.intent_id or "", output["winner_id"])
        self.ctx.scheduler.refresh_intent(survivor.id)


def build_handlers(ctx: HandlerContext) -> dict[TaskType, TaskHandler]:
    """One handler instance per task type, sharing *ctx*."""
    return {
        TaskType.SEMANTIC_EXTRACTION: SemanticExtractionHandler(ctx),
        TaskType.INTENT_MATCHING: IntentMatchingHandler(ctx),
        TaskType.CLASSIFY_BEHAVIOR: ClassifyBehaviorHandler(ctx),
        TaskType.SUMMARIZATION: SummarizationHandler(ctx),
        TaskType.GENERATE_INTENT_LABEL: GenerateLabelHandler(ctx),
        TaskType.GENERATE_INTENT_GOAL: GenerateGoalHandler(ctx),
        TaskType.VERIFY_INTENT_MATCHING: VerifyIntentMatchingHandler(ctx),
        TaskType.SCAN_MERGE_OPPORTUNITIES: ScanMergeOpportunitiesHandler(ctx),
        TaskType.GENERATE_INTENT_SUMMARY: GenerateSummaryHandler(ctx),
        TaskType.GENERATE_INTENT_INSIGHTS: GenerateInsightsHandler(ctx),
        TaskType.GENERATE_INTENT_NEXT_STEPS: GenerateNextStepsHandler(ctx),
        TaskType.MERGE_INTENTS: MergeIntentsHandler(ctx),
        TaskType.ANALYZE_KNOWLEDGE_GAPS: AnalyzeKnowledgeGapsHandler(ctx),
        TaskType.PREDICT_MILESTONE: PredictMilestoneHandler(ctx),
    }
