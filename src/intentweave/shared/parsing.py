"""Lenient parsing of structured payloads embedded in model output.

The cascade, in order:

1. strip code-fence wrappers and cut to the outermost ``{...}`` / ``[...]``
2. direct ``json.loads``
3. trailing-comma repair
4. unquoted-key repair (applied on top of the trailing-comma repair)
5. caller-supplied default, reported as :class:`Degraded`

Without a default the cascade ends in :class:`Err` carrying a transient
"Invalid JSON response" error, so the calling task is retried.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from intentweave.errors import ClassifiedError, ErrorKind

logger = logging.getLogger(__name__)

_JSON_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_UNQUOTED_KEY_RE = re.compile(r"([{,]\s*)([a-zA-Z_][a-zA-Z0-9_]*)\s*:")

MISSING: Any = object()


@dataclass(frozen=True)
class Ok:
    """Payload parsed, possibly after repair."""

    value: Any
    repaired: bool = False


@dataclass(frozen=True)
class Degraded:
    """Parsing failed; the caller's default stands in."""

    value: Any
    raw: str = ""


@dataclass(frozen=True)
class Err:
    """Parsing failed and the caller tolerates no default."""

    error: ClassifiedError


ParseResult = Ok | Degraded | Err


def strip_json_fences(text: str) -> str:
    """Strip markdown code fences and surrounding prose from model output.

    Handles Claude's tendency to wrap JSON in ```json ... ``` blocks.
    """
    text = text.strip()
    match = _JSON_FENCE_RE.search(text)
    if match:
        text = match.group(1).strip()

    # Use whichever delimiter appears first
    candidates: list[tuple[int, str, str]] = []
    brace_start = text.find("{")
    bracket_start = text.find("[")
    if brace_start != -1:
        candidates.append((brace_start, "{", "}"))
    if bracket_start != -1:
        candidates.append((bracket_start, "[", "]"))
    candidates.sort()

    for start, _open, close in candidates:
        end = text.rfind(close)
        if end > start:
            return text[start : end + 1]

    return text


def _remove_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def _quote_keys(text: str) -> str:
    return _UNQUOTED_KEY_RE.sub(r'\1"\2":', text)


def _try_load(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def parse_structured(text: str | None, default: Any = MISSING) -> ParseResult:
    """Run the parsing cascade over *text*.

    Args:
        text: Raw model output.
        default: Value to fall back to.  Omit it when a missing payload
            must fail the caller.

    Returns:
        ``Ok``, ``Degraded`` or ``Err``.
    """
    cleaned = strip_json_fences(text or "")

    ok, value = _try_load(cleaned)
    if ok:
        return Ok(value)

    comma_fixed = _remove_trailing_commas(cleaned)
    ok, value = _try_load(comma_fixed)
    if ok:
        return Ok(value, repaired=True)

    ok, value = _try_load(_quote_keys(comma_fixed))
    if ok:
        return Ok(value, repaired=True)

    if default is not MISSING:
        logger.warning("Unparseable structured output, using default: %.120r", text)
        return Degraded(default, raw=text or "")

    return Err(ClassifiedError("Invalid JSON response", ErrorKind.TRANSIENT))


def unwrap(result: ParseResult) -> Any:
    """Return the payload of ``Ok``/``Degraded`` or raise the ``Err``'s error."""
    if isinstance(result, Err):
        raise result.error
    return result.value
