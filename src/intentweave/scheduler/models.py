"""Task records for the enrichment scheduler."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from intentweave.errors import ErrorKind
from intentweave.store.models import new_id, utcnow


class TaskType(StrEnum):
    """Kinds of scheduled work."""

    SEMANTIC_EXTRACTION = "semantic_extraction"
    INTENT_MATCHING = "intent_matching"
    CLASSIFY_BEHAVIOR = "classify_behavior"
    SUMMARIZATION = "summarization"
    GENERATE_INTENT_LABEL = "generate_intent_label"
    GENERATE_INTENT_GOAL = "generate_intent_goal"
    VERIFY_INTENT_MATCHING = "verify_intent_matching"
    SCAN_MERGE_OPPORTUNITIES = "scan_merge_opportunities"
    GENERATE_INTENT_SUMMARY = "generate_intent_summary"
    GENERATE_INTENT_INSIGHTS = "generate_intent_insights"
    GENERATE_INTENT_NEXT_STEPS = "generate_intent_next_steps"
    MERGE_INTENTS = "merge_intents"
    ANALYZE_KNOWLEDGE_GAPS = "analyze_knowledge_gaps"
    PREDICT_MILESTONE = "predict_milestone"


class TargetKind(StrEnum):
    PAGE = "page"
    INTENT = "intent"
    SYSTEM = "system"


# type -> (target kind, default priority).  Lower priority runs sooner.
TASK_SPECS: dict[TaskType, tuple[TargetKind, int]] = {
    TaskType.SEMANTIC_EXTRACTION: (TargetKind.PAGE, 1),
    TaskType.INTENT_MATCHING: (TargetKind.PAGE, 2),
    TaskType.CLASSIFY_BEHAVIOR: (TargetKind.PAGE, 3),
    TaskType.SUMMARIZATION: (TargetKind.PAGE, 4),
    TaskType.GENERATE_INTENT_LABEL: (TargetKind.INTENT, 5),
    TaskType.GENERATE_INTENT_GOAL: (TargetKind.INTENT, 6),
    TaskType.VERIFY_INTENT_MATCHING: (TargetKind.PAGE, 15),
    TaskType.SCAN_MERGE_OPPORTUNITIES: (TargetKind.SYSTEM, 17),
    TaskType.GENERATE_INTENT_SUMMARY: (TargetKind.INTENT, 20),
    TaskType.GENERATE_INTENT_INSIGHTS: (TargetKind.INTENT, 21),
    TaskType.GENERATE_INTENT_NEXT_STEPS: (TargetKind.INTENT, 22),
    TaskType.MERGE_INTENTS: (TargetKind.INTENT, 25),
    TaskType.ANALYZE_KNOWLEDGE_GAPS: (TargetKind.INTENT, 30),
    TaskType.PREDICT_MILESTONE: (TargetKind.INTENT, 30),
}

FRIENDLY_NAMES: dict[TaskType, str] = {
    TaskType.SEMANTIC_EXTRACTION: "Understanding page content",
    TaskType.INTENT_MATCHING: "Grouping page into an intent",
    TaskType.CLASSIFY_BEHAVIOR: "Classifying reading behavior",
    TaskType.SUMMARIZATION: "Summarizing long page",
    TaskType.GENERATE_INTENT_LABEL: "Naming intent",
    TaskType.GENERATE_INTENT_GOAL: "Inferring intent goal",
    TaskType.VERIFY_INTENT_MATCHING: "Double-checking page grouping",
    TaskType.SCAN_MERGE_OPPORTUNITIES: "Looking for duplicate intents",
    TaskType.GENERATE_INTENT_SUMMARY: "Summarizing intent",
    TaskType.GENERATE_INTENT_INSIGHTS: "Finding insights",
    TaskType.GENERATE_INTENT_NEXT_STEPS: "Suggesting next steps",
    TaskType.MERGE_INTENTS: "Merging intents",
    TaskType.ANALYZE_KNOWLEDGE_GAPS: "Finding knowledge gaps",
    TaskType.PREDICT_MILESTONE: "Predicting next milestone",
}

# Derived-content jobs re-run when an intent's page set changes.
REFRESH_TASK_TYPES: tuple[TaskType, ...] = (
    TaskType.GENERATE_INTENT_LABEL,
    TaskType.GENERATE_INTENT_GOAL,
    TaskType.GENERATE_INTENT_SUMMARY,
    TaskType.GENERATE_INTENT_INSIGHTS,
    TaskType.GENERATE_INTENT_NEXT_STEPS,
)


class TaskStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class TaskDependency(BaseModel):
    task_id: str
    required: bool = True


class TaskError(BaseModel):
    kind: ErrorKind
    message: str


class TaskAttempt(BaseModel):
    attempt_number: int
    started_at: datetime
    duration_ms: int = 0
    error: str | None = None
    error_kind: ErrorKind | None = None


class Task(BaseModel):
    """One scheduled unit of enrichment work."""

    id: str = Field(default_factory=new_id)
    type: TaskType
    page_id: str | None = None
    intent_id: str | None = None
    priority: int
    status: TaskStatus = TaskStatus.QUEUED
    retry_count: int = 0
    sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    not_before: datetime | None = None
    depends_on: list[TaskDependency] = Field(default_factory=list)
    structured_input: dict[str, Any] = Field(default_factory=dict)
    structured_output: dict[str, Any] | None = None
    error: TaskError | None = None
    attempts: list[TaskAttempt] = Field(default_factory=list)
    resubmitted_from: str | None = None

    @model_validator(mode="after")
    def _single_target(self) -> Task:
        if self.page_id is not None and self.intent_id is not None:
            raise ValueError("A task targets a page or an intent, not both")
        return self

    @property
    def target_id(self) -> str | None:
        return self.page_id or self.intent_id

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.type.value, self.target_id or "*")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def friendly_name(self) -> str:
        return FRIENDLY_NAMES.get(self.type, self.type.value)
