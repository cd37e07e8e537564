"""Tests for intent label validation and the fallback label."""

from __future__ import annotations

import pytest
from conftest import make_page

from intentweave.scheduler.labels import build_fallback_label, is_valid_intent_label
from intentweave.store.models import AggregatedSignals, Intent, KeywordStats


def _make_intent(keywords: dict[str, int], domains: list[str] | None = None) -> Intent:
    return Intent(
        aggregated_signals=AggregatedSignals(
            keywords={k: KeywordStats(count=c) for k, c in keywords.items()},
            domains=domains or [],
        )
    )


class TestIsValidIntentLabel:
    @pytest.mark.parametrize(
        "label",
        [
            "Learning Python Async Programming",
            "Comparing Budget Travel Backpacks",
            "Planning A Kyoto Trip",
        ],
    )
    def test_activity_phrases_accepted(self, label):
        assert is_valid_intent_label(label)

    @pytest.mark.parametrize(
        "label",
        [
            "",
            "   ",
            "Top 10 Python Frameworks",
            "Researching Frameworks | Blog",
            "Learning Python — Async",
            "Best Python Frameworks",
            "1. Python Frameworks",
            "General Python Stuff",
            "Browsing python pages",
            "Learning Python",
            "Learning Python Async Programming With Tasks And Queues Today",
            "Python Async Programming Basics",
        ],
    )
    def test_rejected(self, label):
        assert not is_valid_intent_label(label)

    def test_copied_title_rejected(self):
        pages = [make_page(title="asyncio tutorial basics")]
        assert not is_valid_intent_label("Learning asyncio tutorial basics", pages)
        assert is_valid_intent_label("Learning Python Async Programming", pages)

    def test_exact_title_rejected(self):
        pages = [make_page(title="Exploring Rust Ownership Rules")]
        assert not is_valid_intent_label("Exploring Rust Ownership Rules", pages)


class TestBuildFallbackLabel:
    def test_verb_from_dominant_action(self):
        intent = _make_intent({"python": 3, "asyncio": 2})
        pages = [make_page(concepts=["python", "asyncio"])]
        assert build_fallback_label(intent, pages) == "Learning Python Asyncio"

    def test_defaults_to_exploring(self):
        intent = _make_intent({"sourdough": 2, "starter": 1})
        assert build_fallback_label(intent, [make_page()]) == "Exploring Sourdough Starter"

    def test_multiword_keywords_split_and_deduplicated(self):
        intent = _make_intent({"machine learning": 3, "learning rate": 2})
        assert build_fallback_label(intent, []) == "Exploring Machine Learning Rate"

    def test_single_topic_word_padded(self):
        intent = _make_intent({}, domains=["docs.python.org"])
        assert build_fallback_label(intent, []) == "Exploring Docs Topics"

    def test_nothing_known(self):
        assert build_fallback_label(_make_intent({}), []) == "Exploring New Topics"

    def test_at_most_five_topic_words(self):
        intent = _make_intent({f"w{i}": 10 - i for i in range(8)})
        label = build_fallback_label(intent, [])
        assert label.split() == ["Exploring", "W0", "W1", "W2", "W3", "W4"]
