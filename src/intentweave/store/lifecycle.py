"""Intent lifecycle state machine and completion detection."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from intentweave.errors import InvalidTransitionError
from intentweave.store.models import Intent, IntentStatus, Page

_S = IntentStatus

TRANSITIONS: dict[IntentStatus, frozenset[IntentStatus]] = {
    _S.EMERGING: frozenset({_S.ACTIVE, _S.DORMANT, _S.MERGED, _S.DISCARDED}),
    _S.ACTIVE: frozenset({_S.DORMANT, _S.COMPLETED, _S.MERGED, _S.DISCARDED}),
    _S.DORMANT: frozenset({_S.ACTIVE, _S.COMPLETED, _S.EXPIRED, _S.MERGED, _S.DISCARDED}),
    _S.COMPLETED: frozenset(),
    _S.MERGED: frozenset(),
    _S.DISCARDED: frozenset(),
    _S.EXPIRED: frozenset(),
}


def can_transition(current: IntentStatus, target: IntentStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(current: IntentStatus, target: IntentStatus) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* -> *target* is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def auto_transition(
    intent: Intent,
    now: datetime,
    *,
    dormant_after: timedelta,
    expire_after: timedelta,
    active_page_threshold: int,
) -> IntentStatus | None:
    """Return the status *intent* should move to on its own, if any.

    Time-driven moves are measured from ``last_updated``.
    """
    if intent.is_terminal:
        return None

    idle = now - intent.last_updated

    if intent.status == _S.DORMANT:
        return _S.EXPIRED if idle >= expire_after else None

    if idle >= dormant_after:
        return _S.DORMANT

    if intent.status == _S.EMERGING and intent.page_count >= active_page_threshold:
        return _S.ACTIVE

    return None


# ---------------------------------------------------------------------------
# Completion detection
# ---------------------------------------------------------------------------

_CHECKOUT_PATTERNS = [
    re.compile(r"thank\s*you\s*for\s*(your\s*)?order", re.IGNORECASE),
    re.compile(r"order\s*confirmation", re.IGNORECASE),
    re.compile(r"purchase\s*complete", re.IGNORECASE),
    re.compile(r"payment\s*successful", re.IGNORECASE),
    re.compile(r"order\s*complete", re.IGNORECASE),
    re.compile(r"transaction\s*successful", re.IGNORECASE),
]

_FORM_SUCCESS_WORDS = ("success", "submitted", "thank you", "confirmation")

IDLE_COMPLETION_DAYS = 14
IDLE_COMPLETION_ENGAGEMENT = 0.7

_COMPLETION_KEYWORDS = (
    "completed",
    "finished",
    "done",
    "purchased",
    "enrolled",
    "registered",
    "subscribed",
)


@dataclass
class CompletionSignal:
    completed: bool
    reason: str
    confidence: float
    evidence: list[str] = field(default_factory=list)


def detect_completion(intent: Intent, latest_page: Page) -> CompletionSignal:
    """Look for evidence in *latest_page* that the user finished what *intent* was about."""
    title = latest_page.title
    lowered = title.lower()

    if any(p.search(title) or p.search(latest_page.content) for p in _CHECKOUT_PATTERNS):
        return CompletionSignal(
            True,
            "Order confirmation detected",
            0.95,
            [f'Page title: "{title}"'],
        )

    behavior = latest_page.behavior
    if (
        behavior is not None
        and behavior.primary == "form_filling"
        and any(word in lowered for word in _FORM_SUCCESS_WORDS)
    ):
        return CompletionSignal(True, "Form submission completed", 0.85, [f'Page title: "{title}"'])

    if intent.page_count >= 5 and any(word in lowered for word in _COMPLETION_KEYWORDS):
        return CompletionSignal(
            True,
            "Completion keyword after substantial research",
            0.75,
            [f'Page title: "{title}"', f"{intent.page_count} pages"],
        )

    return CompletionSignal(False, "Intent still active", 1.0)


def detect_idle_completion(intent: Intent, now: datetime) -> CompletionSignal:
    """Treat a long silence after focused research as a finished intent.

    Evaluated by the lifecycle sweep, ahead of expiry.
    """
    idle_days = (now - intent.last_updated).total_seconds() / 86400
    avg_engagement = intent.aggregated_signals.patterns.avg_engagement
    if idle_days > IDLE_COMPLETION_DAYS and avg_engagement > IDLE_COMPLETION_ENGAGEMENT:
        return CompletionSignal(
            True,
            "Extended dormancy after focused research",
            0.7,
            [f"No activity for {round(idle_days)} days", f"Average engagement {avg_engagement:.0%}"],
        )
    return CompletionSignal(False, "Intent still active", 1.0)
