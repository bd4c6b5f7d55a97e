"""
Token-budgeted memory context for prompt injection.

Selection order: hybrid retrieval on the task description, then a quota of
top-importance preferences, then (when the task names an app) a quota of
high-importance facts/observations recorded for that app. A candidate whose
estimated cost would overflow the budget is skipped and later candidates are
still considered. The rendered text is re-measured and trimmed from the most
recently added item until it fits.
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel, Field

from .config import MemoryConfig
from .embeddings import EmbeddingClient
from .memory_store import MemoryStore
from .models import Memory, MemoryFilters, MemoryStatus, MemoryType
from .retrieval import HybridRetriever

CONTEXT_HEADER = "## Relevant Context from Memory"
SECTION_ORDER = [
    (MemoryType.PREFERENCE, "User Preferences"),
    (MemoryType.FACT, "Known Facts"),
    (MemoryType.LEARNING, "Previous Learnings"),
    (MemoryType.OBSERVATION, "Observations"),
    (MemoryType.DECISION, "Past Decisions"),
    (MemoryType.CONTEXT, "Additional Context"),
]
_RELEVANCE_LIMIT = 20


class ContextTask(BaseModel):
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


def estimate_tokens(text: str, char_ratio: int = 4) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / max(1, char_ratio))


def render_context(memories: List[Memory]) -> str:
    sections: Dict[MemoryType, List[Memory]] = {}
    for memory in memories:
        sections.setdefault(memory.type, []).append(memory)

    lines = [CONTEXT_HEADER, ""]
    for memory_type, label in SECTION_ORDER:
        members = sections.get(memory_type)
        if not members:
            continue
        lines.append(f"### {label}")
        lines.extend(f"- {memory.content}" for memory in members)
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


class ContextAssembler:
    def __init__(
        self,
        store: MemoryStore,
        retriever: HybridRetriever,
        embedder: EmbeddingClient,
        config: MemoryConfig,
    ) -> None:
        self._store = store
        self._retriever = retriever
        self._embedder = embedder
        self._config = config

    def _estimate(self, text: str) -> int:
        return estimate_tokens(text, self._config.token_char_ratio)

    async def select(
        self,
        task: Union[ContextTask, Mapping[str, Any]],
        max_tokens: Optional[int] = None,
        min_relevance: Optional[float] = None,
        touch: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Chosen memories with their source (`relevance`, `preference`, `domain`).

        With `touch` set, access telemetry is recorded for the chosen memories only.
        """
        if not isinstance(task, ContextTask):
            task = ContextTask.model_validate(dict(task))
        budget = self._config.max_context_tokens if max_tokens is None else int(max_tokens)
        threshold = self._config.min_relevance if min_relevance is None else float(min_relevance)

        chosen: List[Dict[str, Any]] = []
        seen = set()
        used = 0

        async def _consider(memory_ids: List[str], source: str) -> None:
            nonlocal used
            for memory_id in memory_ids:
                if memory_id in seen:
                    continue
                memory = await self._store.peek(memory_id)
                if memory is None or memory.status != MemoryStatus.ACTIVE:
                    continue
                cost = self._estimate(memory.content)
                if used + cost > budget:
                    continue
                if touch:
                    memory = await self._store.get(memory_id) or memory
                seen.add(memory_id)
                used += cost
                chosen.append({"memory": memory, "source": source, "tokens": cost})

        description = (task.description or "").strip()
        if description:
            query_embedding = await self._embedder.embed_query(description)
            payload = await self._retriever.search(
                query=description,
                query_embedding=query_embedding,
                limit=_RELEVANCE_LIMIT,
                min_similarity=threshold,
            )
            await _consider([hit.id for hit in payload["results"]], "relevance")

        if self._config.preference_quota > 0:
            preferences = await self._store.list(
                MemoryFilters(types=[MemoryType.PREFERENCE], status=MemoryStatus.ACTIVE),
                sort_by="importance",
                limit=self._config.preference_quota,
            )
            await _consider([entry.id for entry in preferences["items"]], "preference")

        app = task.metadata.get("app")
        if app and self._config.domain_quota > 0:
            domain = await self._store.list(
                MemoryFilters(
                    types=[MemoryType(value) for value in self._config.domain_types],
                    status=MemoryStatus.ACTIVE,
                    source_app_id=str(app),
                ),
                sort_by="importance",
                limit=self._config.domain_quota,
            )
            await _consider([entry.id for entry in domain["items"]], "domain")

        return chosen

    async def assemble(
        self,
        task: Union[ContextTask, Mapping[str, Any]],
        max_tokens: Optional[int] = None,
        min_relevance: Optional[float] = None,
    ) -> Optional[str]:
        budget = self._config.max_context_tokens if max_tokens is None else int(max_tokens)
        chosen = await self.select(task, budget, min_relevance)
        memories = [item["memory"] for item in chosen]

        while memories:
            rendered = render_context(memories)
            if self._estimate(rendered) <= budget:
                logger.debug(
                    f"[context] assembled {len(memories)} memories, "
                    f"~{self._estimate(rendered)}/{budget} tokens"
                )
                return rendered
            memories.pop()

        logger.debug("[context] no memories qualified")
        return None

    async def retrieval_stats(
        self,
        task: Union[ContextTask, Mapping[str, Any]],
        max_tokens: int = 10000,
    ) -> Dict[str, Any]:
        chosen = await self.select(task, max_tokens, touch=False)
        by_type: Dict[str, int] = {}
        by_source: Dict[str, int] = {}
        for item in chosen:
            memory_type = item["memory"].type.value
            by_type[memory_type] = by_type.get(memory_type, 0) + 1
            by_source[item["source"]] = by_source.get(item["source"], 0) + 1
        return {
            "total": len(chosen),
            "by_type": by_type,
            "by_source": by_source,
            "total_tokens": sum(item["tokens"] for item in chosen),
            "top_memories": [
                {
                    "id": item["memory"].id,
                    "type": item["memory"].type.value,
                    "summary": item["memory"].summary,
                    "source": item["source"],
                }
                for item in chosen[:5]
            ],
        }
