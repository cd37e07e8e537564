"""Nudges: deduplicated suggestions derived from intent state."""

from intentweave.nudges.engine import SuggestionEngine

__all__ = ["SuggestionEngine"]
