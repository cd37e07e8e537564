"""Error taxonomy for intentweave.

Every failure that reaches the task scheduler is classified into one of
three kinds, which decides whether the task is retried:

- ``transient``: rate limiting, timeouts, malformed model output.
  Retried with backoff up to the configured cap.
- ``dependency``: a prerequisite job failed or prerequisite data is
  missing.  Fails immediately without consuming a retry.
- ``permanent``: the referenced entity is gone or validation failed.
  Fails immediately.

``InvariantViolation`` sits outside the taxonomy: it marks a
programming error and is never retried or swallowed.
"""

from __future__ import annotations

import asyncio
from enum import StrEnum


class ErrorKind(StrEnum):
    """Classified failure kinds."""

    TRANSIENT = "transient"
    DEPENDENCY = "dependency"
    PERMANENT = "permanent"


class IntentweaveError(Exception):
    """Base error for the package."""


class ClassifiedError(IntentweaveError):
    """An error that carries its own failure kind."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def message(self) -> str:
        return str(self)


class EntityNotFoundError(ClassifiedError, KeyError):
    """A page, intent, nudge or task id did not resolve."""

    kind = ErrorKind.PERMANENT

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return self.args[0] if self.args else ""


class PageNotFoundError(EntityNotFoundError):
    def __init__(self, page_id: str) -> None:
        super().__init__(f"Page not found: {page_id}")
        self.page_id = page_id


class IntentNotFoundError(EntityNotFoundError):
    def __init__(self, intent_id: str) -> None:
        super().__init__(f"Intent not found: {intent_id}")
        self.intent_id = intent_id


class MergeValidationError(ClassifiedError):
    kind = ErrorKind.PERMANENT

    def __init__(self, reason: str) -> None:
        super().__init__(f"Merge validation failed: {reason}")
        self.reason = reason


class InvalidTransitionError(ClassifiedError):
    kind = ErrorKind.PERMANENT

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {target}")
        self.current = current
        self.target = target


class DependencyNotReadyError(ClassifiedError):
    """Prerequisite data for a task is missing."""

    kind = ErrorKind.DEPENDENCY


class InvariantViolation(IntentweaveError):
    """A store invariant would be broken.  Indicates a bug."""


# Substring patterns, checked in order against the lowercased message.
_PATTERNS: list[tuple[ErrorKind, tuple[str, ...]]] = [
    (
        ErrorKind.DEPENDENCY,
        (
            "has no intent assignment",
            "has no semantic features",
            "semantic features not ready",
            "dependency",
        ),
    ),
    (
        ErrorKind.PERMANENT,
        (
            "not found",
            "merge validation failed",
            "invalid transition",
        ),
    ),
    (
        ErrorKind.TRANSIENT,
        (
            "rate limit",
            "timeout",
            "timed out",
            "service unavailable",
            "invalid json response",
        ),
    ),
]


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an exception into an :class:`ErrorKind`.

    Typed errors carry their own kind.  Anything else is matched by
    message substring, defaulting to transient so unknown failures get
    a bounded number of retries.
    """
    if isinstance(exc, ClassifiedError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TRANSIENT

    message = str(exc).lower()
    for kind, needles in _PATTERNS:
        if any(needle in message for needle in needles):
            return kind
    return ErrorKind.TRANSIENT
