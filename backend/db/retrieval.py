"""
Hybrid retrieval.

Lexical (BM25) and vector (cosine) candidate lists are produced independently
and fused with weighted Reciprocal Rank Fusion:

    score(d) = sum over sources s containing d of  weight_s / (K + rank_s(d))

with 1-based ranks. Fusion runs over the full candidate pools; status and
caller filters apply afterwards, then the list is truncated to `limit`.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from loguru import logger

from .config import MemoryConfig
from .lexical import LexicalScorer
from .memory_store import MemoryStore
from .models import IndexEntry, MemoryFilters, MemoryStatus
from .vector_math import find_top_k

LEXICAL = "lexical"
VECTOR = "vector"


@dataclass
class SearchHit:
    id: str
    score: float
    entry: IndexEntry
    ranks: Dict[str, int] = field(default_factory=dict)
    lexical_score: Optional[float] = None
    similarity: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.entry.model_dump(mode="json"),
            "score": round(self.score, 6),
            "ranks": dict(self.ranks),
            "lexical_score": None if self.lexical_score is None else round(self.lexical_score, 6),
            "similarity": None if self.similarity is None else round(self.similarity, 6),
        }


def reciprocal_rank_fusion(
    ranked_lists: Mapping[str, Sequence[str]],
    weights: Mapping[str, float],
    k: int = 60,
) -> List[Dict[str, Any]]:
    """
    Fuse ranked id lists. Returns `[{"id", "score", "ranks"}]` ordered by
    fused score, then best single-source rank, then id.
    """
    scores: Dict[str, float] = {}
    ranks: Dict[str, Dict[str, int]] = {}
    for source, ids in ranked_lists.items():
        weight = float(weights.get(source, 1.0))
        for position, memory_id in enumerate(ids, start=1):
            if source in ranks.get(memory_id, {}):
                continue
            scores[memory_id] = scores.get(memory_id, 0.0) + weight / (k + position)
            ranks.setdefault(memory_id, {})[source] = position

    fused = [
        {"id": memory_id, "score": score, "ranks": ranks[memory_id]}
        for memory_id, score in scores.items()
    ]
    fused.sort(key=lambda item: (-item["score"], min(item["ranks"].values()), item["id"]))
    return fused


class HybridRetriever:
    def __init__(
        self,
        store: MemoryStore,
        lexical: Optional[LexicalScorer],
        config: MemoryConfig,
    ) -> None:
        self._store = store
        self._lexical = lexical
        self._config = config

    def _weights(self) -> Dict[str, float]:
        return {LEXICAL: self._config.lexical_weight, VECTOR: self._config.vector_weight}

    def _lexical_candidates(self, query: str, pool: int) -> List[Dict[str, Any]]:
        if self._lexical is None:
            raise RuntimeError("lexical scorer not configured")
        return self._lexical.search(query, limit=pool, min_score=self._config.lexical_min_score)

    async def search(
        self,
        query: Optional[str] = None,
        query_embedding: Optional[List[float]] = None,
        filters: Optional[MemoryFilters] = None,
        limit: int = 10,
        min_similarity: float = 0.0,
    ) -> Dict[str, Any]:
        """
        Returns `{"mode", "results": [SearchHit], "degrade_reasons"}`.

        `mode` is `hybrid` when both sources ran, `lexical` or `vector` when
        only one did, and `none` when neither input was usable.
        """
        limit = max(1, int(limit))
        pool = limit * self._config.candidate_multiplier
        degrade_reasons: List[str] = []
        query = (query or "").strip() or None

        lexical_hits: List[Dict[str, Any]] = []
        lexical_ran = False
        if query:
            try:
                lexical_hits = self._lexical_candidates(query, pool)
                lexical_ran = True
            except Exception as exc:
                logger.warning(f"[lexical] search failed, continuing without it: {exc}")
                degrade_reasons.append("lexical_unavailable")

        vector_hits: List[Dict[str, Any]] = []
        vector_ran = False
        if query_embedding:
            vectors = await self._store.all_embeddings()
            vector_hits = [
                hit
                for hit in find_top_k(query_embedding, vectors, pool)
                if hit["similarity"] >= min_similarity
            ]
            vector_ran = True

        if lexical_ran and vector_ran:
            mode = "hybrid"
        elif lexical_ran:
            mode = LEXICAL
        elif vector_ran:
            mode = VECTOR
        else:
            mode = "none"

        lexical_scores = {hit["id"]: hit["score"] for hit in lexical_hits}
        similarities = {hit["id"]: hit["similarity"] for hit in vector_hits}

        if mode == "hybrid":
            ordered = reciprocal_rank_fusion(
                {
                    LEXICAL: [hit["id"] for hit in lexical_hits],
                    VECTOR: [hit["id"] for hit in vector_hits],
                },
                self._weights(),
                self._config.rrf_k,
            )
        elif mode == LEXICAL:
            ordered = [
                {"id": hit["id"], "score": hit["score"], "ranks": {LEXICAL: rank}}
                for rank, hit in enumerate(lexical_hits, start=1)
            ]
        elif mode == VECTOR:
            ordered = [
                {"id": hit["id"], "score": hit["similarity"], "ranks": {VECTOR: rank}}
                for rank, hit in enumerate(vector_hits, start=1)
            ]
        else:
            ordered = []

        scoped = (filters or MemoryFilters()).model_copy(update={"status": MemoryStatus.ACTIVE})
        results: List[SearchHit] = []
        for item in ordered:
            entry = await self._store.get_entry(item["id"])
            if entry is None or not scoped.matches(entry):
                continue
            results.append(
                SearchHit(
                    id=item["id"],
                    score=item["score"],
                    entry=entry,
                    ranks=item["ranks"],
                    lexical_score=lexical_scores.get(item["id"]),
                    similarity=similarities.get(item["id"]),
                )
            )
            if len(results) >= limit:
                break

        logger.debug(
            f"[memory] search mode={mode} lexical={len(lexical_hits)} "
            f"vector={len(vector_hits)} returned={len(results)}"
        )
        return {"mode": mode, "results": results, "degrade_reasons": degrade_reasons}
