"""Merge-candidate detection between intents.

The detector compares every pair among the most recently updated
active/emerging intents and keeps the pairs that look like the same
topic.  It never merges anything itself: candidates go to the
text-generation capability for a decision, and confirmed decisions are
executed by a separate ``merge_intents`` task.

Candidate rule for a pair (A, B):

- not contradictory (A and B match different members of one
  mutually-exclusive topic group, e.g. "react" vs "python")
- concept overlap >= 5%, a hard floor below which the capability is
  never consulted
- at least one shared domain, or concept overlap >= 30%
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any

from intentweave.config import DetectorSectionConfig
from intentweave.errors import ClassifiedError, ErrorKind
from intentweave.prompts import merge_decision_prompt
from intentweave.shared.llm import TextGenerator
from intentweave.shared.parsing import parse_structured, unwrap
from intentweave.store.models import Intent, IntentStatus
from intentweave.store.store import IntentStore

logger = logging.getLogger(__name__)

SCANNABLE_STATUSES = (IntentStatus.ACTIVE, IntentStatus.EMERGING)


@dataclass
class PairSignals:
    """Overlap and contradiction signals for one intent pair."""

    intent_a: str
    intent_b: str
    shared_domains: list[str] = field(default_factory=list)
    shared_keywords: list[str] = field(default_factory=list)
    concept_overlap: float = 0.0
    contradiction: str | None = None
    same_session: bool = False

    @property
    def domain_overlap(self) -> int:
        return len(self.shared_domains)

    @property
    def is_contradictory(self) -> bool:
        return self.contradiction is not None


@dataclass
class MergeCandidate:
    signals: PairSignals
    score: float

    @property
    def pair(self) -> tuple[str, str]:
        return (self.signals.intent_a, self.signals.intent_b)


@dataclass
class MergeDecision:
    intent_a: str
    intent_b: str
    should_merge: bool
    confidence: float
    reasoning: str = ""

    def is_confirmed(self, threshold: float) -> bool:
        return self.should_merge and self.confidence >= threshold


def _term_pattern(term: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![\w+]){re.escape(term.lower())}(?![\w+])")


def choose_winner(a: Intent, b: Intent) -> tuple[Intent, Intent]:
    """Return ``(loser, winner)``: the larger intent survives, then the older."""
    key_a = (-a.page_count, a.first_seen, a.id)
    key_b = (-b.page_count, b.first_seen, b.id)
    return (b, a) if key_a <= key_b else (a, b)


class MergeCandidateDetector:
    """Finds and evaluates intent pairs that may be the same topic."""

    def __init__(self, store: IntentStore, config: DetectorSectionConfig | None = None) -> None:
        self.store = store
        self.config = config or DetectorSectionConfig()
        self._groups: dict[str, list[tuple[str, re.Pattern[str]]]] = {
            name: [(term.lower(), _term_pattern(term)) for term in terms]
            for name, terms in self.config.contradiction_groups.items()
        }

    # -- Signals -------------------------------------------------------------

    def eligible_intents(self) -> list[Intent]:
        return self.store.recent_intents(
            statuses=SCANNABLE_STATUSES,
            limit=self.config.max_intents,
        )

    def _group_matches(self, keywords: list[str]) -> dict[str, set[str]]:
        matches: dict[str, set[str]] = {}
        for group, terms in self._groups.items():
            hit = {term for term, pattern in terms if any(pattern.search(k) for k in keywords)}
            if hit:
                matches[group] = hit
        return matches

    def compute_signals(self, a: Intent, b: Intent) -> PairSignals:
        k = self.config.top_keywords
        top_a = a.aggregated_signals.top_keywords(k)
        top_b = b.aggregated_signals.top_keywords(k)

        shared_keywords = [kw for kw in top_a if kw in set(top_b)]
        smaller = min(len(top_a), len(top_b))
        concept_overlap = len(shared_keywords) / smaller if smaller else 0.0

        domains_b = set(b.aggregated_signals.domains)
        shared_domains = [d for d in a.aggregated_signals.domains if d in domains_b]

        contradiction = None
        matches_a = self._group_matches(top_a)
        matches_b = self._group_matches(top_b)
        for group, hits_a in matches_a.items():
            hits_b = matches_b.get(group)
            if hits_b and hits_a.isdisjoint(hits_b):
                contradiction = group
                break

        gap = abs((a.first_seen - b.first_seen).total_seconds())
        return PairSignals(
            intent_a=a.id,
            intent_b=b.id,
            shared_domains=shared_domains,
            shared_keywords=shared_keywords,
            concept_overlap=concept_overlap,
            contradiction=contradiction,
            same_session=gap <= self.config.session_window_seconds,
        )

    def is_candidate(self, signals: PairSignals) -> bool:
        if signals.is_contradictory:
            return False
        if signals.concept_overlap < self.config.concept_floor:
            return False
        return signals.domain_overlap > 0 or signals.concept_overlap >= self.config.concept_without_domain

    @staticmethod
    def score(signals: PairSignals) -> float:
        domain_term = min(signals.domain_overlap, 3) / 3
        return (
            0.6 * signals.concept_overlap
            + 0.3 * domain_term
            + 0.1 * (1.0 if signals.same_session else 0.0)
        )

    def find_candidates(self, intents: list[Intent] | None = None) -> list[MergeCandidate]:
        """Ranked candidate pairs among *intents* (default: eligible intents)."""
        if intents is None:
            intents = self.eligible_intents()

        candidates: list[MergeCandidate] = []
        for a, b in combinations(intents, 2):
            signals = self.compute_signals(a, b)
            if not self.is_candidate(signals):
                if signals.is_contradictory:
                    logger.debug("Pair %s/%s contradicts on %s", a.id, b.id, signals.contradiction)
                continue
            candidates.append(MergeCandidate(signals, self.score(signals)))

        candidates.sort(key=lambda c: (-c.score, c.pair))
        return candidates

    # -- External evaluation -------------------------------------------------

    def _describe(self, candidate: MergeCandidate) -> dict[str, object]:
        entry: dict[str, object] = {
            "intent_a": candidate.signals.intent_a,
            "intent_b": candidate.signals.intent_b,
            "shared_keywords": candidate.signals.shared_keywords,
            "shared_domains": candidate.signals.shared_domains,
            "concept_overlap": round(candidate.signals.concept_overlap, 2),
        }
        for side in ("intent_a", "intent_b"):
            intent = self.store.get_intent(str(entry[side]))
            if intent is not None:
                entry[f"{side}_label"] = intent.label
                entry[f"{side}_keywords"] = intent.aggregated_signals.top_keywords(8)
        return entry

    async def evaluate(
        self, candidates: list[MergeCandidate], generator: TextGenerator
    ) -> list[MergeDecision]:
        """Ask the capability to accept or reject each candidate.

        Raises:
            ClassifiedError: Transient, when the response carries no
                usable decision list.
        """
        if not candidates:
            return []
        prompt = merge_decision_prompt([self._describe(c) for c in candidates])
        text = await generator.generate(prompt)
        payload = unwrap(parse_structured(text))
        return self.parse_decisions(payload, candidates)

    def suggestion_decisions(self, decisions: Iterable[MergeDecision]) -> list[MergeDecision]:
        """Accepted decisions too weak to merge on but worth suggesting."""
        floor = self.config.suggestion_floor
        threshold = self.config.merge_confidence_threshold
        return [d for d in decisions if d.should_merge and floor <= d.confidence < threshold]

    def parse_decisions(
        self, payload: Any, candidates: list[MergeCandidate]
    ) -> list[MergeDecision]:
        if not isinstance(payload, dict) or not isinstance(payload.get("merges"), list):
            raise ClassifiedError("Invalid JSON response: no merge decisions", ErrorKind.TRANSIENT)

        allowed = {frozenset(c.pair) for c in candidates}
        decisions: dict[frozenset[str], MergeDecision] = {}
        for entry in payload["merges"]:
            if not isinstance(entry, dict):
                continue
            a = str(entry.get("intent_a") or entry.get("intentA") or "")
            b = str(entry.get("intent_b") or entry.get("intentB") or "")
            key = frozenset((a, b))
            if key not in allowed:
                logger.debug("Ignoring decision for non-candidate pair %s/%s", a, b)
                continue
            try:
                confidence = float(entry.get("confidence", 0.0))
            except (TypeError, ValueError):
                confidence = 0.0
            decisions[key] = MergeDecision(
                intent_a=a,
                intent_b=b,
                should_merge=bool(entry.get("should_merge", True)),
                confidence=min(max(confidence, 0.0), 1.0),
                reasoning=str(entry.get("reasoning", "")),
            )
        return list(decisions.values())
