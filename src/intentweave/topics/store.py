"""In-memory topic graph with JSON persistence.

Topics are intent keywords; two topics are connected by a ``co_occurs``
edge when they appear among the same intent's top keywords.  Edge weight
counts the intents they share.  The graph answers one question: which
related topics has an intent not covered yet?
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable
from itertools import combinations
from pathlib import Path

from intentweave.store.models import Intent, utcnow
from intentweave.store.signals import normalize_keyword
from intentweave.topics.models import EdgeType, TopicEdge, TopicNode

logger = logging.getLogger(__name__)

TOPIC_STORE_FILENAME = ".intentweave-topics.json"

MAX_GAPS = 5
TOPICS_PER_INTENT = 8

# Used when the graph knows nothing related to a topic.
COMMON_PROGRESSIONS: dict[str, list[str]] = {
    "react": ["React Hooks", "React Context", "React Performance", "Next.js"],
    "javascript": ["TypeScript", "ES6 Features", "Async Programming", "Node.js"],
    "python": ["Python Data Structures", "Python OOP", "Django", "FastAPI"],
    "css": ["Flexbox", "Grid Layout", "CSS Animations", "Tailwind CSS"],
}


def _edge_key(a: str, b: str) -> str:
    source, target = sorted((a, b))
    return f"{source}->{target}:{EdgeType.CO_OCCURS}"


class TopicGraphStore:
    """Topic nodes and co-occurrence edges.

    Internal indices:
    - ``_nodes``: topic name -> TopicNode
    - ``_edges``: edge_key -> TopicEdge
    - ``_adjacent``: topic name -> list[edge_key]
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._nodes: dict[str, TopicNode] = {}
        self._edges: dict[str, TopicEdge] = {}
        self._adjacent: dict[str, list[str]] = defaultdict(list)

        if path is not None:
            self._load()

    # -- Node operations -----------------------------------------------------

    def upsert_node(self, node: TopicNode) -> TopicNode:
        """Insert a topic or fold *node*'s counts into the existing one."""
        existing = self._nodes.get(node.name)
        if existing is None:
            self._nodes[node.name] = node
            return node

        intent_ids = list(existing.intent_ids)
        intent_ids.extend(i for i in node.intent_ids if i not in intent_ids)
        updated = existing.model_copy(
            update={
                "frequency": existing.frequency + node.frequency,
                "total_engagement": existing.total_engagement + node.total_engagement,
                "intent_ids": intent_ids,
                "first_seen": min(existing.first_seen, node.first_seen),
                "last_seen": max(existing.last_seen, node.last_seen),
            }
        )
        self._nodes[node.name] = updated
        return updated

    def get_node(self, name: str) -> TopicNode | None:
        return self._nodes.get(normalize_keyword(name))

    def node_count(self) -> int:
        return len(self._nodes)

    # -- Edge operations -----------------------------------------------------

    def add_cooccurrence(self, a: str, b: str, weight: float = 1.0) -> TopicEdge:
        """Strengthen the edge between *a* and *b*, creating it if needed."""
        key = _edge_key(a, b)
        existing = self._edges.get(key)
        if existing is None:
            source, target = sorted((a, b))
            edge = TopicEdge(source=source, target=target, weight=weight)
            self._edges[key] = edge
            self._adjacent[source].append(key)
            self._adjacent[target].append(key)
            return edge

        updated = existing.model_copy(update={"weight": existing.weight + weight})
        self._edges[key] = updated
        return updated

    def edge_count(self) -> int:
        return len(self._edges)

    def neighbors(self, name: str) -> list[tuple[TopicNode, float]]:
        """Direct neighbors of *name* with edge weight, strongest first."""
        name = normalize_keyword(name)
        result: list[tuple[TopicNode, float]] = []
        for key in self._adjacent.get(name, []):
            edge = self._edges[key]
            node = self._nodes.get(edge.other(name))
            if node is not None:
                result.append((node, edge.weight))
        result.sort(key=lambda item: (-item[1], item[0].name))
        return result

    # -- Building ------------------------------------------------------------

    def clear(self) -> None:
        self._nodes.clear()
        self._edges.clear()
        self._adjacent.clear()

    def observe_intent(self, intent: Intent) -> None:
        """Add *intent*'s top keywords and their pairwise co-occurrence."""
        signals = intent.aggregated_signals
        topics = signals.top_keywords(TOPICS_PER_INTENT)
        now = utcnow()
        for topic in topics:
            stats = signals.keywords[topic]
            self.upsert_node(
                TopicNode(
                    name=topic,
                    frequency=stats.count,
                    total_engagement=stats.total_engagement,
                    intent_ids=[intent.id],
                    first_seen=intent.first_seen,
                    last_seen=now,
                )
            )
        for a, b in combinations(topics, 2):
            self.add_cooccurrence(a, b)

    def rebuild(self, intents: Iterable[Intent]) -> None:
        """Replace the graph with one built from *intents*, then save."""
        self.clear()
        for intent in intents:
            self.observe_intent(intent)
        self.save()

    # -- Queries -------------------------------------------------------------

    def knowledge_gaps(self, topic: str, covered: Iterable[str] = ()) -> list[str]:
        """Up to five topics related to *topic* that *covered* does not include.

        Falls back to a fixed progression for well-known topics when the
        graph has no uncovered neighbors.
        """
        name = normalize_keyword(topic)
        seen = {normalize_keyword(c) for c in covered} | {name}

        gaps: list[str] = []
        for node, _weight in self.neighbors(name):
            if node.name in seen:
                continue
            gaps.append(node.name)
            if len(gaps) == MAX_GAPS:
                return gaps
        if gaps:
            return gaps

        return [
            suggestion
            for suggestion in COMMON_PROGRESSIONS.get(name, [])
            if normalize_keyword(suggestion) not in seen
        ][:MAX_GAPS]

    # -- Stats ---------------------------------------------------------------

    def stats(self) -> dict[str, object]:
        by_depth: dict[str, int] = defaultdict(int)
        for node in self._nodes.values():
            by_depth[node.depth.value] += 1
        return {
            "total_topics": len(self._nodes),
            "total_edges": len(self._edges),
            "topics_by_depth": dict(by_depth),
        }

    # -- Persistence ---------------------------------------------------------

    def save(self) -> None:
        """Serialize nodes and edges to JSON at ``path / TOPIC_STORE_FILENAME``."""
        if self._path is None:
            return

        filepath = self._path / TOPIC_STORE_FILENAME
        filepath.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "nodes": [n.model_dump(mode="json") for n in self._nodes.values()],
            "edges": [e.model_dump(mode="json") for e in self._edges.values()],
        }
        filepath.write_text(json.dumps(data, default=str), encoding="utf-8")

    def _load(self) -> None:
        if self._path is None:
            return

        filepath = self._path / TOPIC_STORE_FILENAME
        if not filepath.exists():
            return

        try:
            data = json.loads(filepath.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, ValueError):
            logger.warning("Corrupt topic graph at %s, starting fresh", filepath)
            return

        for node_data in data.get("nodes", []):
            node = TopicNode.model_validate(node_data)
            self._nodes[node.name] = node

        for edge_data in data.get("edges", []):
            edge = TopicEdge.model_validate(edge_data)
            self._edges[edge.edge_key] = edge
            self._adjacent[edge.source].append(edge.edge_key)
            self._adjacent[edge.target].append(edge.edge_key)
