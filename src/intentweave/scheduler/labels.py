"""Intent label validation and the heuristic fallback label.

Generated labels must read like an activity ("Researching Python Web
Frameworks"), not like a copied page title ("Top 10 Frameworks | Blog").
"""

from __future__ import annotations

import re
from collections.abc import Sequence

from intentweave.store.models import Intent, Page

FALLBACK_LABEL_CONFIDENCE = 0.45

MIN_LABEL_WORDS = 3
MAX_LABEL_WORDS = 7
TITLE_OVERLAP_LIMIT = 0.7

LABEL_VERBS = frozenset(
    {
        "learning",
        "exploring",
        "finding",
        "researching",
        "shopping",
        "comparing",
        "investigating",
        "understanding",
        "discovering",
        "planning",
        "evaluating",
        "studying",
        "analyzing",
    }
)

_GENERIC_PATTERNS = [
    re.compile(r"^(general|misc|miscellaneous|various|random)\b", re.IGNORECASE),
    re.compile(r"^\w+ing (stuff|things|pages|content|websites|information)$", re.IGNORECASE),
    re.compile(r"^(browsing|reading|looking at) ", re.IGNORECASE),
    re.compile(r"\buntitled\b", re.IGNORECASE),
]

_FORBIDDEN_PATTERNS = [
    re.compile(r"[–—]"),
    re.compile(r" - (Google|Yelp|Search|Updated)\b", re.IGNORECASE),
    re.compile(r"^TOP \d+", re.IGNORECASE),
    re.compile(r"\bUpdated \d{4}\b", re.IGNORECASE),
    re.compile(r"\|"),
    re.compile(r"^\d+\."),
    re.compile(r"\b(Best|Top|Official|Home|Welcome)\b"),
]

# primary_action -> label verb
_ACTION_VERBS: dict[str, str] = {
    "learning": "Learning",
    "learn": "Learning",
    "researching": "Researching",
    "research": "Researching",
    "comparing": "Comparing",
    "compare": "Comparing",
    "shopping": "Shopping",
    "buy": "Shopping",
    "planning": "Planning",
    "plan": "Planning",
    "exploring": "Exploring",
    "explore": "Exploring",
}

_WORD_RE = re.compile(r"[a-z0-9+#]+")


def _words(text: str) -> set[str]:
    return set(_WORD_RE.findall(text.lower()))


def _copies_title(label: str, pages: Sequence[Page]) -> bool:
    label_words = _words(label)
    normalized = label.strip().lower()
    for page in pages:
        title = page.title.strip().lower()
        if not title:
            continue
        if title == normalized:
            return True
        title_words = _words(title)
        smaller = min(len(label_words), len(title_words))
        if smaller and len(label_words & title_words) / smaller > TITLE_OVERLAP_LIMIT:
            return True
    return False


def is_valid_intent_label(label: str, pages: Sequence[Page] = ()) -> bool:
    """True when *label* is an activity phrase that does not copy a title."""
    label = label.strip()
    if not label:
        return False
    if any(p.search(label) for p in _FORBIDDEN_PATTERNS):
        return False
    if any(p.search(label) for p in _GENERIC_PATTERNS):
        return False
    words = label.split()
    if not MIN_LABEL_WORDS <= len(words) <= MAX_LABEL_WORDS:
        return False
    if words[0].lower() not in LABEL_VERBS:
        return False
    return not _copies_title(label, pages)


def _dominant_action(pages: Sequence[Page]) -> str:
    counts: dict[str, int] = {}
    for page in pages:
        if page.semantic_features and page.semantic_features.primary_action:
            action = page.semantic_features.primary_action.lower()
            counts[action] = counts.get(action, 0) + 1
    if not counts:
        return ""
    return max(counts.items(), key=lambda item: (item[1], item[0]))[0]


def build_fallback_label(intent: Intent, pages: Sequence[Page]) -> str:
    """An action verb plus the intent's strongest keywords, 3-6 words."""
    verb = _ACTION_VERBS.get(_dominant_action(pages), "Exploring")
    topic_words: list[str] = []
    for keyword in intent.aggregated_signals.top_keywords(6):
        for word in keyword.split():
            if word not in topic_words:
                topic_words.append(word)
    if not topic_words:
        topic_words = [d.split(".")[0] for d in intent.aggregated_signals.domains[:2]]
    topic_words = [w.capitalize() for w in topic_words[:5] if w]

    if not topic_words:
        topic_words = ["New", "Topics"]
    elif len(topic_words) == 1:
        topic_words.append("Topics")
    return " ".join([verb, *topic_words])
