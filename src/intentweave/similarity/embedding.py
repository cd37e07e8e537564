"""Hashed feature embeddings and pairwise similarity helpers.

Pages get a 256-dimensional embedding built from their semantic
features by feature hashing, so matching works without an embedding
model.  Layout of the vector:

- 0-100: concepts (weight 0.4)
- 101-150: entities (weight 0.2)
- 151-175: primary action (weight 0.15)
- 176-255: title/content term frequencies (weight 0.25)
"""

from __future__ import annotations

import math
import string
from collections import Counter
from collections.abc import Iterable, Sequence

from intentweave.store.models import Page

EMBEDDING_DIM = 256

_CONCEPTS = (0, 101, 0.4)
_ENTITIES = (101, 50, 0.2)
_ACTION = (151, 25, 0.15)
_TERMS = (176, 80, 0.25)

_STRIP_TABLE = str.maketrans("", "", string.punctuation)

_STOPWORDS: set[str] = {
    "a", "about", "an", "and", "are", "as", "at", "be", "by", "for", "from",
    "how", "in", "is", "it", "of", "on", "or", "that", "the", "this", "to",
    "was", "what", "when", "where", "which", "who", "why", "will", "with",
    "you", "your",
}


def simple_hash(text: str) -> int:
    """32-bit ``h = h * 31 + c`` string hash, stable across runs."""
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def tokenize(text: str) -> list[str]:
    """Lowercase, strip punctuation, remove stopwords."""
    tokens: list[str] = []
    for raw in text.lower().split():
        word = raw.translate(_STRIP_TABLE)
        if len(word) >= 2 and word not in _STOPWORDS and not word.isdigit():
            tokens.append(word)
    return tokens


def _hash_into(
    vector: list[float], items: Iterable[str], region: tuple[int, int, float], scale: float = 1.0
) -> None:
    start, size, weight = region
    for item in items:
        key = item.strip().lower()
        if key:
            vector[start + simple_hash(key) % size] += weight * scale


def create_embedding(page: Page) -> list[float]:
    """Build the normalized hashed embedding for *page*."""
    vector = [0.0] * EMBEDDING_DIM
    features = page.semantic_features

    if features is not None:
        _hash_into(vector, features.concepts, _CONCEPTS)
        _hash_into(vector, features.entities.flatten(), _ENTITIES)
        if features.primary_action:
            _hash_into(vector, [features.primary_action], _ACTION)

    terms = Counter(tokenize(f"{page.title} {page.content[:2000]}"))
    total = sum(terms.values())
    if total:
        start, size, weight = _TERMS
        for term, count in terms.items():
            vector[start + simple_hash(term) % size] += weight * count / total

    return normalize(vector)


def normalize(vector: Sequence[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0.0:
        return list(vector)
    return [v / norm for v in vector]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two dense vectors; 0.0 if either is empty."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    if dot == 0.0:
        return 0.0
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def weighted_centroid(vectors: Sequence[Sequence[float]], weights: Sequence[float]) -> list[float]:
    """Weighted mean of equal-length vectors.  Empty vectors are skipped."""
    usable = [(v, w) for v, w in zip(vectors, weights) if v]
    if not usable:
        return []
    dim = len(usable[0][0])
    total = sum(max(w, 0.1) for _v, w in usable)
    centroid = [0.0] * dim
    for vector, weight in usable:
        if len(vector) != dim:
            continue
        share = max(weight, 0.1) / total
        for i, value in enumerate(vector):
            centroid[i] += value * share
    return centroid


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a = {x.lower() for x in a}
    set_b = {x.lower() for x in b}
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)
