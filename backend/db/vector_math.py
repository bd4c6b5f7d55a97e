"""Pure vector helpers used by semantic search and consolidation."""

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple


def cosine_similarity(v1: Optional[Sequence[float]], v2: Optional[Sequence[float]]) -> float:
    if not v1 or not v2 or len(v1) != len(v2):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for a, b in zip(v1, v2):
        dot += a * b
        norm_a += a * a
        norm_b += b * b
    denominator = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denominator == 0:
        return 0.0
    return dot / denominator


def normalize(vector: Sequence[float]) -> List[float]:
    if not vector:
        return []
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * len(vector)
    return [v / norm for v in vector]


def _ranked(
    query: Sequence[float], vectors: Mapping[str, Sequence[float]]
) -> List[Tuple[str, float]]:
    scored = [(memory_id, cosine_similarity(query, vector)) for memory_id, vector in vectors.items()]
    # Ties resolve by id so identical inputs always rank identically.
    scored.sort(key=lambda item: (-item[1], item[0]))
    return scored


def find_top_k(
    query: Optional[Sequence[float]],
    vectors: Optional[Mapping[str, Sequence[float]]],
    k: int = 10,
) -> List[Dict[str, Any]]:
    if not query or not vectors or k <= 0:
        return []
    return [
        {"id": memory_id, "similarity": similarity}
        for memory_id, similarity in _ranked(query, vectors)[:k]
    ]


def find_above_threshold(
    query: Optional[Sequence[float]],
    vectors: Optional[Mapping[str, Sequence[float]]],
    threshold: float = 0.7,
) -> List[Dict[str, Any]]:
    if not query or not vectors:
        return []
    return [
        {"id": memory_id, "similarity": similarity}
        for memory_id, similarity in _ranked(query, vectors)
        if similarity >= threshold
    ]


def cluster_by_similarity(
    items: Sequence[Mapping[str, Any]], threshold: float = 0.9
) -> List[List[Mapping[str, Any]]]:
    """
    Group items whose embeddings are similar, transitively.

    Each item must carry `id` and `embedding`. Two items join the same cluster
    when a chain of pairwise similarities above threshold connects them. Clusters
    and their members keep the input order.
    """
    count = len(items)
    if count == 0:
        return []

    parent = list(range(count))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(count):
        for j in range(i + 1, count):
            if find(i) == find(j):
                continue
            similarity = cosine_similarity(items[i].get("embedding"), items[j].get("embedding"))
            if similarity > threshold:
                parent[find(j)] = find(i)

    clusters: Dict[int, List[Mapping[str, Any]]] = {}
    order: List[int] = []
    for i in range(count):
        root = find(i)
        if root not in clusters:
            clusters[root] = []
            order.append(root)
        clusters[root].append(items[i])
    return [clusters[root] for root in order]

