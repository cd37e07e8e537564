"""Shared fixtures: a scripted text generator, a fixed clock and page builders."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from intentweave.config import IntentweaveConfig, SchedulerSectionConfig
from intentweave.service import IntentService
from intentweave.shared.llm import Prompt
from intentweave.store.models import Entities, Interactions, Page, SemanticFeatures

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

_TITLE_RE = re.compile(r"^Title: (.*)$", re.MULTILINE)
_STOPWORDS = {"the", "and", "for", "with", "how", "what", "guide", "intro", "a", "to", "of", "in"}


def title_concepts(title: str) -> list[str]:
    return [w for w in re.findall(r"[a-z0-9+#]+", title.lower()) if w not in _STOPWORDS and len(w) > 2]


def _extraction_response(prompt: Prompt) -> str:
    match = _TITLE_RE.search(prompt.user)
    title = match.group(1) if match else ""
    return json.dumps(
        {
            "concepts": title_concepts(title),
            "entities": {"topics": title_concepts(title)[:2]},
            "primary_action": "learning",
            "goal": f"Understand {title}",
            "intent_confidence": 0.8,
            "content_type": "article",
            "sentiment": "neutral",
        }
    )


DEFAULT_RESPONSES: dict[str, Any] = {
    "semantic_extraction": _extraction_response,
    "classify_behavior": '{"primary": "reading", "confidence": 0.8, "signals": ["deep scroll"]}',
    "summarization": "A long page about the topic.",
    "generate_intent_label": '{"label": "Learning Python Async Programming", "confidence": 0.9}',
    "generate_intent_goal": '{"goal": "Write concurrent Python code", "confidence": 0.7}',
    "generate_intent_summary": "Reading about asyncio and tasks.",
    "generate_intent_insights": '[{"text": "Focus is on cancellation", "confidence": "high"}]',
    "generate_intent_next_steps": '[{"action": "Try TaskGroup", "type": "explore"}]',
    "verify_intent_matching": '{"action": "agree", "confidence": 0.9}',
    "scan_merge_opportunities": '{"merges": []}',
    "predict_milestone": (
        '{"next_milestone": "Build a small async crawler", "confidence": 0.7, '
        '"suggested_action": "Start a toy project", "completed": false}'
    ),
}


class ScriptedGenerator:
    """TextGenerator double answering by prompt label.

    A response may be a string, a callable taking the prompt, an exception
    to raise, or a list consumed one item per call (the last item repeats).
    """

    def __init__(self, responses: dict[str, Any] | None = None) -> None:
        self.responses = {**DEFAULT_RESPONSES, **(responses or {})}
        self.calls: list[Prompt] = []

    def labels(self) -> list[str]:
        return [p.label for p in self.calls]

    async def generate(self, prompt: Prompt) -> str:
        self.calls.append(prompt)
        response = self.responses.get(prompt.label, "{}")
        if isinstance(response, list):
            response = response.pop(0) if len(response) > 1 else response[0]
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(prompt)
        return response


class FakeClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_page(
    url: str = "https://docs.python.org/3/library/asyncio.html",
    title: str = "asyncio tutorial",
    *,
    concepts: list[str] | None = None,
    engagement: float = 0.5,
    dwell: float = 60.0,
    timestamp: datetime = NOW,
    **kwargs: Any,
) -> Page:
    """A page, enriched when *concepts* is given."""
    features = None
    if concepts is not None:
        features = SemanticFeatures(
            concepts=concepts,
            entities=Entities(topics=concepts[:2]),
            primary_action="learning",
        )
    return Page(
        url=url,
        title=title,
        timestamp=timestamp,
        interactions=Interactions(dwell_time=dwell, scroll_depth=0.6, engagement_score=engagement),
        semantic_features=features,
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def fast_config() -> IntentweaveConfig:
    """Balanced preset without retry delays."""
    return IntentweaveConfig(scheduler=SchedulerSectionConfig(backoff_seconds=[0.0, 0.0, 0.0]))


@pytest.fixture
def make_service(
    fast_config: IntentweaveConfig, generator: ScriptedGenerator, clock: FakeClock
) -> Callable[..., IntentService]:
    def factory(**kwargs: Any) -> IntentService:
        kwargs.setdefault("config", fast_config)
        kwargs.setdefault("generator", generator)
        kwargs.setdefault("clock", clock)
        return IntentService(**kwargs)

    return factory
