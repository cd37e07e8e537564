"""Prompts for every text-generation call."""

from __future__ import annotations

import json
from collections.abc import Sequence

from intentweave.shared.llm import Prompt
from intentweave.store.models import Intent, Page

_JSON_ONLY = "Respond with JSON only, no prose and no code fences."

_PAGE_EXCERPT_CHARS = 3000


def _page_line(page: Page) -> str:
    engagement = page.interactions.engagement_score
    return f"- {page.title or page.url} ({page.domain}, engagement {engagement:.2f})"


def _intent_context(intent: Intent, pages: Sequence[Page], keyword_count: int = 12) -> str:
    signals = intent.aggregated_signals
    lines = [
        f"Current label: {intent.label or '(none)'}",
        f"Pages: {intent.page_count}",
        f"Top keywords: {', '.join(signals.top_keywords(keyword_count)) or '(none)'}",
        f"Domains: {', '.join(signals.domains[:8]) or '(none)'}",
        f"Browsing style: {signals.patterns.browsing_style}",
    ]
    if intent.goal:
        lines.append(f"Goal: {intent.goal}")
    lines.append("")
    lines.append("Recent pages:")
    lines.extend(_page_line(p) for p in pages[-15:])
    return "\n".join(lines)


# ── Page enrichment ──────────────────────────────────────────────────


def semantic_extraction_prompt(page: Page) -> Prompt:
    user = f"""Extract the semantic features of this web page.

Title: {page.title}
URL: {page.url}

Content:
{page.content[:_PAGE_EXCERPT_CHARS] or '(no content captured)'}

Return an object with these keys:
- "concepts": 3-8 short topic phrases, most specific first
- "entities": {{"people": [], "places": [], "organizations": [], "products": [], "topics": []}}
- "primary_action": one of learning, researching, comparing, shopping, planning, exploring
- "goal": one sentence describing what the reader is trying to do
- "intent_confidence": number between 0 and 1
- "content_type": article, documentation, product, video, forum, search, or other
- "sentiment": positive, neutral, or negative

{_JSON_ONLY}"""
    return Prompt(
        system="You analyze web pages to understand what a reader is researching.",
        user=user,
        temperature=0.2,
        label="semantic_extraction",
    )


def behavior_prompt(page: Page) -> Prompt:
    i = page.interactions
    user = f"""Classify how the reader interacted with this page.

Title: {page.title}
Dwell time: {i.dwell_time:.0f}s
Scroll depth: {i.scroll_depth:.0%}
Text selections: {len(i.text_selections)}
Engagement score: {i.engagement_score:.2f}

Return {{"primary": "reading" | "scanning" | "form_filling" | "comparing" | "idle",
"confidence": 0-1, "signals": ["short evidence strings"]}}.
{_JSON_ONLY}"""
    return Prompt(system="You classify reading behavior.", user=user, temperature=0.1, label="classify_behavior")


def summarization_prompt(page: Page, max_chars: int = 12000) -> Prompt:
    user = f"""Summarize this page in 3-5 sentences for someone deciding whether to revisit it.

Title: {page.title}

{page.content[:max_chars]}"""
    return Prompt(system="You write concise, factual summaries.", user=user, temperature=0.3, label="summarization")


# ── Intent enrichment ────────────────────────────────────────────────


def intent_label_prompt(intent: Intent, pages: Sequence[Page]) -> Prompt:
    user = f"""Name this browsing intent.

{_intent_context(intent, pages)}

Rules:
1. 3-6 words, starting with an action verb such as Learning, Researching,
   Comparing, Planning, Exploring, Studying or Shopping.
2. Name the specific topic. Never copy a page title.
3. No pipes, dashes or site names.

Return {{"label": "...", "confidence": 0-1, "reasoning": "..."}}.
{_JSON_ONLY}"""
    return Prompt(
        system="You name browsing intents with concise, specific labels.",
        user=user,
        temperature=0.4,
        label="generate_intent_label",
    )


def intent_goal_prompt(intent: Intent, pages: Sequence[Page]) -> Prompt:
    user = f"""What is the reader ultimately trying to accomplish?

{_intent_context(intent, pages)}

Return {{"goal": "one sentence", "confidence": 0-1}}.
{_JSON_ONLY}"""
    return Prompt(system="You infer goals from browsing activity.", user=user, temperature=0.3, label="generate_intent_goal")


def intent_summary_prompt(intent: Intent, pages: Sequence[Page]) -> Prompt:
    user = f"""Summarize this research session in 2-4 sentences: what was explored
and where it stands now.

{_intent_context(intent, pages)}"""
    return Prompt(system="You summarize research sessions.", user=user, temperature=0.3, label="generate_intent_summary")


def intent_insights_prompt(intent: Intent, pages: Sequence[Page]) -> Prompt:
    user = f"""List up to 3 non-obvious observations about this research session.

{_intent_context(intent, pages)}

Return a list of {{"text": "...", "confidence": "high" | "medium" | "low", "reasoning": "..."}}.
{_JSON_ONLY}"""
    return Prompt(system="You find patterns in research sessions.", user=user, temperature=0.5, label="generate_intent_insights")


def intent_next_steps_prompt(intent: Intent, pages: Sequence[Page]) -> Prompt:
    user = f"""Suggest up to 3 concrete next steps for this research session.

{_intent_context(intent, pages)}

Return a list of {{"action": "...", "description": "...", "reasoning": "...",
"type": "visit" | "search" | "explore", "url": "", "query": ""}}.
{_JSON_ONLY}"""
    return Prompt(system="You suggest practical next steps.", user=user, temperature=0.5, label="generate_intent_next_steps")


def verify_match_prompt(page: Page, current: Intent, alternatives: Sequence[Intent]) -> Prompt:
    options = "\n".join(
        f"- {alt.id}: {alt.display_label} (keywords: {', '.join(alt.aggregated_signals.top_keywords(6))})"
        for alt in alternatives
    )
    concepts = ", ".join(page.semantic_features.concepts) if page.semantic_features else ""
    user = f"""A page was assigned to a browsing intent. Check the assignment.

Page: {page.title} ({page.url})
Page concepts: {concepts or '(none)'}

Assigned intent {current.id}: {current.display_label}
Keywords: {', '.join(current.aggregated_signals.top_keywords(8))}

Other recent intents:
{options or '(none)'}

Return {{"action": "agree" | "reassign" | "new", "intent_id": "<id when reassigning>",
"confidence": 0-1, "reasoning": "..."}}.
{_JSON_ONLY}"""
    return Prompt(system="You audit topic assignments.", user=user, temperature=0.1, label="verify_intent_matching")


def merge_decision_prompt(pairs: Sequence[dict[str, object]]) -> Prompt:
    user = f"""Each entry below is a pair of browsing intents that share keywords or sites.
Decide for every pair whether both intents are the same underlying research topic.

{json.dumps(pairs, indent=2, default=str)}

Return {{"merges": [{{"intent_a": "...", "intent_b": "...", "should_merge": true | false,
"confidence": 0-1, "reasoning": "..."}}]}} with one entry per pair.
{_JSON_ONLY}"""
    return Prompt(
        system="You decide whether two research sessions are the same topic. Be conservative.",
        user=user,
        temperature=0.1,
        top_k=20,
        label="scan_merge_opportunities",
    )


def milestone_prompt(intent: Intent, pages: Sequence[Page]) -> Prompt:
    user = f"""Predict the next milestone for this research session.

{_intent_context(intent, pages)}

Return {{"next_milestone": "...", "confidence": 0-1, "reasoning": "...",
"suggested_action": "...", "completed": true | false}}.
Set "completed" only if the pages show the goal was already reached.
{_JSON_ONLY}"""
    return Prompt(system="You track progress through research.", user=user, temperature=0.3, label="predict_milestone")
