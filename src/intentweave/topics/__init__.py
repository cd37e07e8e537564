"""Topic co-occurrence graph used for knowledge-gap suggestions."""

from intentweave.topics.models import TopicDepth, TopicEdge, TopicNode
from intentweave.topics.store import COMMON_PROGRESSIONS, TopicGraphStore

__all__ = [
    "COMMON_PROGRESSIONS",
    "TopicDepth",
    "TopicEdge",
    "TopicGraphStore",
    "TopicNode",
]
