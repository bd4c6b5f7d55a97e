"""
Caller-facing memory service.

Owns one instance of every component and exposes the operations routers and
MCP tools call. Operations callers inspect synchronously return structured
`{"success": bool, ...}` payloads for not-found and state conflicts; input
validation errors still raise `ValueError` so transports can map them.
"""

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from loguru import logger

from .config import MemoryConfig
from .context import ContextAssembler, ContextTask
from .embeddings import EmbeddingClient
from .ingestion import NotificationSink, TrustGate
from .lexical import LexicalScorer
from .maintenance import MemoryMaintenance
from .memory_store import MemoryStore
from .models import (
    EMBEDDED_FIELDS,
    CandidateMemory,
    Memory,
    MemoryCreate,
    MemoryFilters,
    MemoryStatus,
    MemoryUpdate,
)
from .retrieval import HybridRetriever

NOT_FOUND = "memory_not_found"


def _not_found(memory_id: str) -> Dict[str, Any]:
    return {"success": False, "error": NOT_FOUND, "id": memory_id}


class MemoryService:
    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        embedder: Optional[EmbeddingClient] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.config = config or MemoryConfig.from_env()
        self.lexical = LexicalScorer(self.config.data_dir / "lexical-index.json")
        self.store = MemoryStore(self.config, self.lexical)
        self.embedder = embedder or EmbeddingClient(self.config)
        self.retriever = HybridRetriever(self.store, self.lexical, self.config)
        self.gate = TrustGate(self.store, self.embedder, self.config, notifier)
        self.maintenance = MemoryMaintenance(self.store, self.config)
        self.assembler = ContextAssembler(self.store, self.retriever, self.embedder, self.config)
        self._initialized = False

    async def initialize(self) -> Dict[str, Any]:
        """Load artifacts and rebuild the lexical index when it drifted from the store."""
        entries = await self.store.index_entries()
        stats = self.lexical.stats()
        rebuilt = False
        if stats["total_docs"] != len(entries) or any(not self.lexical.has(e.id) for e in entries):
            logger.info(
                f"[lexical] index holds {stats['total_docs']} docs for {len(entries)} memories; rebuilding"
            )
            await self.store.rebuild_lexical()
            rebuilt = True
        self._initialized = True
        return {"memories": len(entries), "lexical_rebuilt": rebuilt}

    async def close(self) -> None:
        await self.lexical.flush()

    # CRUD ---------------------------------------------------------------

    async def create(self, data: Union[MemoryCreate, Mapping[str, Any]]) -> Memory:
        if not isinstance(data, MemoryCreate):
            data = MemoryCreate.model_validate(dict(data))
        vector = await self.embedder.embed(self.embedder.memory_text(data))
        return await self.store.create(
            data,
            embedding=vector,
            embedding_model=self.embedder.model if vector else None,
        )

    async def get(self, memory_id: str) -> Optional[Memory]:
        return await self.store.get(memory_id)

    async def list(
        self,
        filters: Optional[MemoryFilters] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        offset: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        return await self.store.list(filters, sort_by=sort_by, order=order, offset=offset, limit=limit)

    async def update(
        self,
        memory_id: str,
        changes: Union[MemoryUpdate, Mapping[str, Any]],
    ) -> Optional[Memory]:
        if not isinstance(changes, MemoryUpdate):
            changes = MemoryUpdate.model_validate(dict(changes))
        fields = changes.changes()
        vector = None
        if EMBEDDED_FIELDS & set(fields):
            current = await self.store.peek(memory_id)
            if current is None:
                return None
            preview = current.model_copy(update=fields)
            vector = await self.embedder.embed(self.embedder.memory_text(preview))
        record = await self.store.update(
            memory_id,
            changes,
            embedding=vector,
            embedding_model=self.embedder.model if vector else None,
        )
        if record is not None and fields.get("status") == MemoryStatus.ACTIVE:
            self.gate.dismiss_notification(memory_id)
        return record

    async def delete(self, memory_id: str, hard: bool = False) -> Dict[str, Any]:
        if not await self.store.delete(memory_id, hard=hard):
            return _not_found(memory_id)
        if hard:
            self.gate.dismiss_notification(memory_id)
        return {"success": True, "id": memory_id, "hard": bool(hard)}

    # Approval -----------------------------------------------------------

    async def ingest(
        self,
        candidates: Sequence[Union[CandidateMemory, Mapping[str, Any]]],
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.gate.ingest(list(candidates), agent_id, task_id, app_id)

    async def ingest_output(
        self,
        output: str,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.gate.ingest_output(output, agent_id, task_id, app_id)

    async def approve(self, memory_id: str) -> Dict[str, Any]:
        return await self.gate.approve(memory_id)

    async def reject(self, memory_id: str) -> Dict[str, Any]:
        return await self.gate.reject(memory_id)

    # Search -------------------------------------------------------------

    async def search(
        self,
        query: Optional[str] = None,
        query_embedding: Optional[List[float]] = None,
        filters: Optional[MemoryFilters] = None,
        limit: int = 10,
        min_similarity: float = 0.0,
        use_vector: bool = True,
    ) -> Dict[str, Any]:
        degrade_reasons: List[str] = []
        query = (query or "").strip() or None
        if query_embedding is None and query and use_vector:
            if not self.embedder.enabled:
                degrade_reasons.append("embedding_disabled")
            else:
                query_embedding = await self.embedder.embed_query(
                    query,
                    types=filters.types if filters else None,
                    categories=filters.categories if filters else None,
                )
                if query_embedding is None:
                    degrade_reasons.append("embedding_unavailable")
        payload = await self.retriever.search(
            query=query,
            query_embedding=query_embedding,
            filters=filters,
            limit=limit,
            min_similarity=min_similarity,
        )
        payload["degrade_reasons"] = degrade_reasons + payload["degrade_reasons"]
        payload["degraded"] = bool(payload["degrade_reasons"])
        return payload

    # Links and views ----------------------------------------------------

    async def link(self, source_id: str, target_id: str) -> Dict[str, Any]:
        if not await self.store.link(source_id, target_id):
            return {"success": False, "error": NOT_FOUND}
        return {"success": True, "source_id": source_id, "target_id": target_id}

    async def related(self, memory_id: str, limit: int = 10) -> Optional[List[Dict[str, Any]]]:
        return await self.store.get_related(memory_id, limit)

    async def timeline(self, filters: Optional[MemoryFilters] = None, limit: int = 100):
        return await self.store.timeline(filters, limit)

    async def categories(self) -> List[Dict[str, Any]]:
        return await self.store.categories()

    async def tags(self) -> List[Dict[str, Any]]:
        return await self.store.tags()

    async def stats(self) -> Dict[str, Any]:
        payload = await self.store.stats()
        payload["lexical"] = self.lexical.stats()
        payload["embedding_backend"] = self.config.embedding_backend
        return payload

    # Context ------------------------------------------------------------

    async def assemble_context(
        self,
        task: Union[ContextTask, Mapping[str, Any]],
        max_tokens: Optional[int] = None,
        min_relevance: Optional[float] = None,
    ) -> Optional[str]:
        return await self.assembler.assemble(task, max_tokens, min_relevance)

    # Maintenance --------------------------------------------------------

    async def consolidate(
        self, similarity_threshold: Optional[float] = None, dry_run: bool = False
    ) -> Dict[str, Any]:
        return await self.maintenance.consolidate(similarity_threshold, dry_run)

    async def apply_decay(self, rate: Optional[float] = None, reference_time=None) -> Dict[str, Any]:
        return await self.maintenance.apply_decay(rate, reference_time)

    async def clear_expired(self, reference_time=None) -> Dict[str, Any]:
        return await self.maintenance.clear_expired(reference_time)

    async def rebuild_lexical(self) -> Dict[str, Any]:
        return await self.store.rebuild_lexical()

    async def reconcile(self) -> Dict[str, Any]:
        result = await self.store.reconcile()
        await self.lexical.flush()
        return result

    async def invalidate_caches(self) -> Dict[str, Any]:
        await self.store.invalidate_caches()
        return {"invalidated": True}
