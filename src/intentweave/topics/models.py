"""Pydantic models for the topic graph."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from intentweave.store.models import utcnow


class TopicDepth(StrEnum):
    """How thoroughly a topic has been explored."""

    SHALLOW = "shallow"
    MODERATE = "moderate"
    DEEP = "deep"


class EdgeType(StrEnum):
    CO_OCCURS = "co_occurs"


class TopicNode(BaseModel):
    """A topic seen in at least one intent's keywords."""

    name: str
    frequency: int = 0
    total_engagement: float = 0.0
    intent_ids: list[str] = Field(default_factory=list)
    first_seen: datetime = Field(default_factory=utcnow)
    last_seen: datetime = Field(default_factory=utcnow)

    @property
    def depth(self) -> TopicDepth:
        if self.frequency >= 8:
            return TopicDepth.DEEP
        if self.frequency >= 3:
            return TopicDepth.MODERATE
        return TopicDepth.SHALLOW


class TopicEdge(BaseModel):
    """An undirected edge; ``source`` sorts before ``target``."""

    source: str
    target: str
    edge_type: EdgeType = EdgeType.CO_OCCURS
    weight: float = 1.0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def edge_key(self) -> str:
        """Canonical key: ``source->target:edge_type``."""
        return f"{self.source}->{self.target}:{self.edge_type}"

    def other(self, name: str) -> str:
        return self.target if name == self.source else self.source
