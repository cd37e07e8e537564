"""Text-generation capability.

All model calls go through :func:`call_claude`, which has two backends:

1. Anthropic API (preferred, uses ANTHROPIC_API_KEY)
2. Subprocess ``claude -p`` (fallback)

The scheduler and detector never call these directly.  They depend on
the async :class:`TextGenerator` protocol so tests can substitute a
scripted generator.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Protocol

import anthropic

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Base error for LLM calls."""


# ---------------------------------------------------------------------------
# Model name mapping
# ---------------------------------------------------------------------------

_MODEL_MAP: dict[str, str] = {
    "sonnet": "claude-sonnet-4-6",
    "haiku": "claude-haiku-4-5-20251001",
    "opus": "claude-opus-4-6",
}

_DEFAULT_MODEL = "claude-haiku-4-5-20251001"


def _resolve_model(model: str | None) -> str:
    """Resolve a short model name to an API model ID."""
    if model is None:
        return _DEFAULT_MODEL
    return _MODEL_MAP.get(model, model)


# ---------------------------------------------------------------------------
# Internal: Anthropic API
# ---------------------------------------------------------------------------


def _call_anthropic_api(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None = None,
    timeout: int = 60,
    temperature: float | None = None,
    top_k: int | None = None,
    label: str = "enrichment",
) -> str:
    """Call Claude via the Anthropic API."""
    api_key = os.environ.get("ANTHROPIC_API_KEY", "").strip()
    if not api_key:
        raise LLMError("ANTHROPIC_API_KEY not set")

    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)
    resolved_model = _resolve_model(model)

    logger.debug("Calling Anthropic API model=%s (%s)", resolved_model, label)

    kwargs: dict[str, object] = {
        "model": resolved_model,
        "max_tokens": 2048,
        "messages": [{"role": "user", "content": user_prompt}],
    }
    if system_prompt.strip():
        kwargs["system"] = system_prompt
    if temperature is not None:
        kwargs["temperature"] = temperature
    if top_k is not None:
        kwargs["top_k"] = top_k

    try:
        response = client.messages.create(**kwargs)  # type: ignore[arg-type]
    except anthropic.RateLimitError as exc:
        raise LLMError(f"API rate limit exceeded (label={label})") from exc
    except anthropic.APITimeoutError as exc:
        raise LLMError(f"Network timeout (label={label})") from exc
    except anthropic.APIStatusError as exc:
        if exc.status_code >= 500:
            raise LLMError(f"Service unavailable (label={label}): {exc}") from exc
        raise LLMError(f"Anthropic API failed (label={label}): {exc}") from exc
    except anthropic.APIError as exc:
        raise LLMError(f"Anthropic API failed (label={label}): {exc}") from exc

    text_parts: list[str] = []
    for block in response.content:
        if block.type == "text":
            text_parts.append(block.text)

    result = "".join(text_parts).strip()
    if not result:
        raise LLMError(f"Anthropic API returned empty response (label={label})")
    return result


# ---------------------------------------------------------------------------
# Internal: subprocess fallback
# ---------------------------------------------------------------------------


def _call_subprocess(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None = None,
    timeout: int = 60,
    label: str = "enrichment",
) -> str:
    """Call Claude via subprocess (``claude -p``) fallback."""
    cmd = ["claude", "-p"]
    if model:
        cmd.extend(["--model", model])

    full_prompt = f"{system_prompt}\n\n{user_prompt}" if system_prompt else user_prompt

    # Filter CLAUDECODE env var to prevent recursive Claude invocations
    env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}

    logger.debug("Calling Claude CLI subprocess (%s)", label)

    try:
        result = subprocess.run(
            cmd,
            input=full_prompt,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
    except FileNotFoundError as exc:
        raise LLMError(
            f"Service unavailable: 'claude' CLI not on PATH (label={label})"
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise LLMError(f"Network timeout after {timeout}s (label={label})") from exc

    if result.returncode != 0:
        raise LLMError(
            f"Claude CLI failed (exit {result.returncode}, label={label}): {result.stderr[:500]}"
        )

    return result.stdout.strip()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def call_claude(
    system_prompt: str,
    user_prompt: str,
    *,
    model: str | None = None,
    timeout: int = 60,
    temperature: float | None = None,
    top_k: int | None = None,
    label: str = "enrichment",
) -> str:
    """Call Claude and return the response text.

    Uses the Anthropic API when ANTHROPIC_API_KEY is set (and
    INTENTWEAVE_USE_CLI is not ``1``), otherwise ``claude -p``.
    The subprocess backend ignores ``temperature`` and ``top_k``.

    Raises:
        LLMError: On any failure.
    """
    use_cli = os.environ.get("INTENTWEAVE_USE_CLI", "").strip() == "1"
    api_key = os.environ.get("ANTHROPIC_API_KEY", "").strip()

    if api_key and not use_cli:
        return _call_anthropic_api(
            system_prompt,
            user_prompt,
            model=model,
            timeout=timeout,
            temperature=temperature,
            top_k=top_k,
            label=label,
        )

    return _call_subprocess(
        system_prompt,
        user_prompt,
        model=model,
        timeout=timeout,
        label=label,
    )


# ---------------------------------------------------------------------------
# Async capability seam
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Prompt:
    """A structured prompt plus its sampling parameters."""

    system: str
    user: str
    temperature: float = 0.3
    top_k: int | None = None
    label: str = "enrichment"


class TextGenerator(Protocol):
    """Anything that can turn a :class:`Prompt` into text."""

    async def generate(self, prompt: Prompt) -> str: ...


class ClaudeGenerator:
    """:class:`TextGenerator` backed by :func:`call_claude`.

    The blocking call runs in a worker thread so it never stalls the
    scheduler's event loop.  A configured ``temperature`` replaces the
    prompt's; a configured ``top_k`` fills in when the prompt has none.
    """

    def __init__(
        self,
        model: str | None = None,
        timeout: int = 60,
        *,
        temperature: float | None = None,
        top_k: int | None = None,
    ) -> None:
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.top_k = top_k

    async def generate(self, prompt: Prompt) -> str:
        return await asyncio.to_thread(
            call_claude,
            prompt.system,
            prompt.user,
            model=self.model,
            timeout=self.timeout,
            temperature=prompt.temperature if self.temperature is None else self.temperature,
            top_k=prompt.top_k if prompt.top_k is not None else self.top_k,
            label=prompt.label,
        )
