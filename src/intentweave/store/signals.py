"""Aggregate an intent's pages into its rolling signal summary.

Aggregates are always recomputed from the full page set rather than
appended to, so a merge or reassignment can never double count.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import datetime

from intentweave.store.models import (
    AggregatedSignals,
    BrowsingPatterns,
    BrowsingStyle,
    KeywordStats,
    Page,
)

# Keyword recency decays with this time constant (days).
RECENCY_DECAY_DAYS = 7.0

FOCUSED_ENGAGEMENT = 0.7
SCANNING_DWELL_SECONDS = 15.0
SCANNING_SCROLL_DEPTH = 0.3


def normalize_keyword(keyword: str) -> str:
    return " ".join(keyword.lower().split())


def classify_browsing_style(
    avg_engagement: float, avg_dwell_time: float, avg_scroll_depth: float
) -> BrowsingStyle:
    if avg_engagement > FOCUSED_ENGAGEMENT:
        return BrowsingStyle.FOCUSED
    if avg_dwell_time < SCANNING_DWELL_SECONDS and avg_scroll_depth < SCANNING_SCROLL_DEPTH:
        return BrowsingStyle.SCANNING
    return BrowsingStyle.EXPLORATORY


def compute_aggregated_signals(pages: Sequence[Page], now: datetime) -> AggregatedSignals:
    """Build :class:`AggregatedSignals` from *pages*."""
    if not pages:
        return AggregatedSignals()

    keywords: dict[str, KeywordStats] = {}
    last_seen: dict[str, datetime] = {}
    domains: dict[str, None] = {}
    entities: dict[str, None] = {}

    for page in pages:
        engagement = page.interactions.engagement_score
        if page.domain:
            domains.setdefault(page.domain, None)

        features = page.semantic_features
        if features is None:
            continue

        # Count each keyword once per page
        page_keywords = dict.fromkeys(
            normalize_keyword(c) for c in features.concepts if c.strip()
        )
        for keyword in page_keywords:
            stats = keywords.setdefault(keyword, KeywordStats())
            stats.count += 1
            stats.total_engagement += engagement
            seen = last_seen.get(keyword)
            if seen is None or page.timestamp > seen:
                last_seen[keyword] = page.timestamp

        for name in features.entities.flatten():
            entities.setdefault(name, None)

    for keyword, stats in keywords.items():
        stats.avg_engagement = stats.total_engagement / stats.count
        age_days = max((now - last_seen[keyword]).total_seconds(), 0.0) / 86400
        stats.recency = math.exp(-age_days / RECENCY_DECAY_DAYS)

    n = len(pages)
    avg_engagement = sum(p.interactions.engagement_score for p in pages) / n
    avg_dwell = sum(p.interactions.dwell_time for p in pages) / n
    avg_scroll = sum(p.interactions.scroll_depth for p in pages) / n

    return AggregatedSignals(
        keywords=keywords,
        domains=list(domains),
        entities=list(entities),
        patterns=BrowsingPatterns(
            avg_engagement=avg_engagement,
            avg_dwell_time=avg_dwell,
            avg_scroll_depth=avg_scroll,
            browsing_style=classify_browsing_style(avg_engagement, avg_dwell, avg_scroll),
        ),
    )
