"""
Durable memory store.

Layout under the data directory:

    index.json                  lightweight projection of every record
    embeddings.json             id -> vector table plus model/dimension
    memories/<id>/memory.json   one full record per id

Every mutation runs under one store-wide `asyncio.Lock` (FIFO admission) and
writes its artifacts from a worker thread while holding a `FileLock` on
`.store.lock`. Artifacts are written record -> index -> embeddings, each via
an atomic replace, so a crash between steps leaves valid files whose missing
cross-references read as absence. Reads of the index and vector table use the
in-memory `MemoryCache` and never wait on the lock.
"""

from __future__ import annotations

import asyncio
import re
import shutil
from collections import Counter
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from filelock import FileLock
from loguru import logger
from pydantic import ValidationError

from runtime_state import create_logged_task

from .config import MemoryConfig
from .files import atomic_write_text, dump_json, read_json
from .lexical import LexicalScorer
from .models import (
    EMBEDDED_FIELDS,
    SORT_FIELDS,
    ArchivedReason,
    IndexEntry,
    Memory,
    MemoryCreate,
    MemoryFilters,
    MemoryStatus,
    MemoryUpdate,
    can_transition,
    generate_summary,
    utc_now,
)
from .vector_math import find_top_k

_INDEX_VERSION = 1
_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class MemoryCache:
    """In-memory snapshots of the index and vector table."""

    def __init__(self) -> None:
        self.index: Optional[Dict[str, IndexEntry]] = None
        self.vectors: Optional[Dict[str, List[float]]] = None
        self.embedding_model: Optional[str] = None
        self.embedding_dimension: Optional[int] = None
        self.last_updated: Optional[str] = None

    @property
    def loaded(self) -> bool:
        return self.index is not None and self.vectors is not None

    def invalidate(self) -> None:
        self.index = None
        self.vectors = None
        self.embedding_model = None
        self.embedding_dimension = None
        self.last_updated = None


class MemoryStore:
    def __init__(
        self,
        config: MemoryConfig,
        lexical: Optional[LexicalScorer] = None,
    ) -> None:
        self._config = config
        self._data_dir = Path(config.data_dir)
        self._memories_dir = self._data_dir / "memories"
        self._index_path = self._data_dir / "index.json"
        self._embeddings_path = self._data_dir / "embeddings.json"
        self._file_lock = FileLock(
            str(self._data_dir / ".store.lock"),
            timeout=config.store_lock_timeout_sec,
        )
        self._lock = asyncio.Lock()
        self._cache = MemoryCache()
        self._lexical = lexical

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def lexical(self) -> Optional[LexicalScorer]:
        return self._lexical

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _record_path(self, memory_id: str) -> Optional[Path]:
        if not isinstance(memory_id, str) or not _SAFE_ID.match(memory_id):
            return None
        return self._memories_dir / memory_id / "memory.json"

    def _read_record_sync(self, memory_id: str) -> Optional[Memory]:
        path = self._record_path(memory_id)
        if path is None:
            return None
        payload = read_json(path, dict)
        if not payload:
            return None
        try:
            return Memory.model_validate(payload)
        except ValidationError as exc:
            logger.warning(f"[memory] record {memory_id} failed validation; treating as absent: {exc}")
            return None

    def _load_index_sync(self) -> Dict[str, IndexEntry]:
        payload = read_json(self._index_path, dict)
        entries: Dict[str, IndexEntry] = {}
        skipped = 0
        for raw in payload.get("memories") or []:
            try:
                entry = IndexEntry.model_validate(raw)
            except ValidationError:
                skipped += 1
                continue
            entries[entry.id] = entry
        if skipped:
            logger.warning(f"[memory] skipped {skipped} malformed index entries")
        self._cache.last_updated = payload.get("last_updated")
        return entries

    def _load_vectors_sync(self) -> Dict[str, List[float]]:
        payload = read_json(self._embeddings_path, dict)
        vectors: Dict[str, List[float]] = {}
        for memory_id, vector in (payload.get("vectors") or {}).items():
            if isinstance(vector, list) and vector:
                try:
                    vectors[str(memory_id)] = [float(v) for v in vector]
                except (TypeError, ValueError):
                    continue
        self._cache.embedding_model = payload.get("model")
        dimension = payload.get("dimension")
        self._cache.embedding_dimension = dimension if isinstance(dimension, int) else None
        return vectors

    async def _ensure_loaded(self) -> None:
        if self._cache.loaded:
            return
        index = await asyncio.to_thread(self._load_index_sync)
        vectors = await asyncio.to_thread(self._load_vectors_sync)
        if self._cache.index is None:
            self._cache.index = index
        if self._cache.vectors is None:
            self._cache.vectors = vectors

    async def invalidate_caches(self) -> None:
        """Drop in-memory snapshots so the next read reloads from disk."""
        async with self._lock:
            self._cache.invalidate()
        logger.info("[memory] caches invalidated")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _serialize_index(self) -> str:
        entries = list(self._cache.index.values())
        self._cache.last_updated = utc_now().isoformat()
        return dump_json(
            {
                "version": _INDEX_VERSION,
                "last_updated": self._cache.last_updated,
                "count": len(entries),
                "memories": [entry.model_dump(mode="json") for entry in entries],
            }
        )

    def _serialize_vectors(self) -> str:
        return dump_json(
            {
                "model": self._cache.embedding_model,
                "dimension": self._cache.embedding_dimension,
                "vectors": self._cache.vectors,
            },
            indent=None,
        )

    def _write_sync(
        self,
        records: List[str],
        record_payloads: List[str],
        removed_ids: Iterable[str],
        index_payload: Optional[str],
        vectors_payload: Optional[str],
    ) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        with self._file_lock:
            for memory_id, payload in zip(records, record_payloads):
                atomic_write_text(self._record_path(memory_id), payload)
            for memory_id in removed_ids:
                path = self._record_path(memory_id)
                if path is not None:
                    shutil.rmtree(path.parent, ignore_errors=True)
            if index_payload is not None:
                atomic_write_text(self._index_path, index_payload)
            if vectors_payload is not None:
                atomic_write_text(self._embeddings_path, vectors_payload)

    async def _commit(
        self,
        records: Iterable[Memory] = (),
        removed_ids: Iterable[str] = (),
        index_changed: bool = True,
        vectors_changed: bool = False,
    ) -> None:
        """Persist a mutation already applied to the cache. Caller holds the lock."""
        records = list(records)
        ids = [record.id for record in records]
        payloads = [dump_json(record.model_dump(mode="json")) for record in records]
        index_payload = self._serialize_index() if index_changed else None
        vectors_payload = self._serialize_vectors() if vectors_changed else None
        try:
            await asyncio.to_thread(
                self._write_sync,
                ids,
                payloads,
                list(removed_ids),
                index_payload,
                vectors_payload,
            )
        except Exception:
            # The cache may be ahead of disk; reload on next access.
            self._cache.invalidate()
            raise

    def _put_vector(self, memory_id: str, vector: List[float], model: Optional[str]) -> None:
        dimension = len(vector)
        if self._cache.embedding_dimension is None or not self._cache.vectors:
            self._cache.embedding_dimension = dimension
        elif self._cache.embedding_dimension != dimension:
            logger.warning(
                f"[memory] embedding for {memory_id} has dimension {dimension}, "
                f"table expects {self._cache.embedding_dimension}"
            )
        if model:
            self._cache.embedding_model = model
        self._cache.vectors[memory_id] = list(vector)

    def _stage(self, record: Memory) -> bool:
        """Apply a record to the cached index/vectors. Returns True if vectors changed."""
        self._cache.index[record.id] = record.to_index_entry()
        if record.embedding:
            if self._cache.vectors.get(record.id) != record.embedding:
                self._put_vector(record.id, record.embedding, record.embedding_model)
                return True
            return False
        return self._cache.vectors.pop(record.id, None) is not None

    def _sync_lexical(self, record: Optional[Memory] = None) -> None:
        if self._lexical is None:
            return
        if record is not None:
            self._lexical.index(record)
        create_logged_task(self._lexical.flush(), label="lexical.flush")

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(
        self,
        data: Union[MemoryCreate, Mapping[str, Any]],
        embedding: Optional[List[float]] = None,
        embedding_model: Optional[str] = None,
    ) -> Memory:
        if not isinstance(data, MemoryCreate):
            data = MemoryCreate.model_validate(data)
        fields = data.model_dump()
        if not fields.get("summary"):
            fields.pop("summary", None)
        if embedding:
            fields["embedding"] = list(embedding)
            fields["embedding_model"] = embedding_model
        now = utc_now()
        record = Memory(**fields, created_at=now, updated_at=now)

        async with self._lock:
            await self._ensure_loaded()
            vectors_changed = self._stage(record)
            await self._commit([record], vectors_changed=vectors_changed)

        self._sync_lexical(record)
        logger.info(
            f"[memory] created {record.id} ({record.type.value}, {record.status.value})"
            f"{'' if record.embedding else ' without embedding'}"
        )
        return record

    async def peek(self, memory_id: str) -> Optional[Memory]:
        """Load a full record without touching access telemetry."""
        return await asyncio.to_thread(self._read_record_sync, memory_id)

    async def get_many(self, memory_ids: Iterable[str]) -> List[Memory]:
        records = []
        for memory_id in memory_ids:
            record = await self.peek(memory_id)
            if record is not None:
                records.append(record)
        return records

    async def get(self, memory_id: str) -> Optional[Memory]:
        """Fetch by id and record the access."""
        if self._record_path(memory_id) is None:
            return None
        async with self._lock:
            record = await asyncio.to_thread(self._read_record_sync, memory_id)
            if record is None:
                return None
            record.access_count += 1
            record.last_accessed = utc_now()
            await self._commit([record], index_changed=False)
        return record

    async def list(
        self,
        filters: Optional[MemoryFilters] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        offset: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"unsupported sort key: {sort_by}")
        if order not in ("asc", "desc"):
            raise ValueError(f"unsupported sort order: {order}")
        if filters is None:
            filters = MemoryFilters(status=MemoryStatus.ACTIVE)

        entries = [entry for entry in await self.index_entries() if filters.matches(entry)]

        def _key(entry: IndexEntry) -> Any:
            if sort_by == "importance":
                return entry.importance
            if sort_by == "updated_at":
                return entry.updated_at or entry.created_at
            return entry.created_at

        entries.sort(key=lambda entry: entry.id)
        entries.sort(key=_key, reverse=(order == "desc"))
        offset = max(0, int(offset))
        limit = max(1, min(100, int(limit)))
        return {
            "total": len(entries),
            "offset": offset,
            "limit": limit,
            "items": entries[offset : offset + limit],
        }

    async def update(
        self,
        memory_id: str,
        changes: Union[MemoryUpdate, Mapping[str, Any]],
        embedding: Optional[List[float]] = None,
        embedding_model: Optional[str] = None,
    ) -> Optional[Memory]:
        """
        Apply caller-editable fields. Unknown fields and illegal status
        transitions raise `ValueError` before anything is written.
        """
        if not isinstance(changes, MemoryUpdate):
            changes = MemoryUpdate.model_validate(dict(changes))
        fields = changes.changes()

        async with self._lock:
            await self._ensure_loaded()
            current = await asyncio.to_thread(self._read_record_sync, memory_id)
            if current is None:
                return None

            target = fields.get("status")
            if target is not None and not can_transition(current.status, target):
                raise ValueError(
                    f"cannot move memory from {current.status.value} to {MemoryStatus(target).value}"
                )

            merged = current.model_dump()
            merged.update(fields)
            if "content" in fields and "summary" not in fields:
                merged["summary"] = generate_summary(fields["content"])
            if embedding:
                merged["embedding"] = list(embedding)
                merged["embedding_model"] = embedding_model
            elif EMBEDDED_FIELDS & set(fields):
                # The old vector no longer describes the record.
                merged["embedding"] = None
                merged["embedding_model"] = None
            if target == MemoryStatus.ARCHIVED and current.status != MemoryStatus.ARCHIVED:
                merged["archived_reason"] = ArchivedReason.MANUAL
            merged["updated_at"] = utc_now()
            record = Memory.model_validate(merged)

            vectors_changed = self._stage(record)
            await self._commit([record], vectors_changed=vectors_changed)

        self._sync_lexical(record)
        logger.info(f"[memory] updated {memory_id}: {', '.join(sorted(fields)) or 'no fields'}")
        return record

    async def _hard_delete_locked(self, memory_id: str) -> bool:
        await self._ensure_loaded()
        path = self._record_path(memory_id)
        in_index = memory_id in self._cache.index
        if path is None or (not in_index and not path.exists()):
            return False
        if self._lexical is not None:
            self._lexical.remove(memory_id)
        self._cache.index.pop(memory_id, None)
        vectors_changed = self._cache.vectors.pop(memory_id, None) is not None
        await self._commit(removed_ids=[memory_id], vectors_changed=vectors_changed)
        return True

    async def delete(self, memory_id: str, hard: bool = False) -> bool:
        """Soft delete archives the record; hard delete removes it from every artifact."""
        if hard:
            async with self._lock:
                removed = await self._hard_delete_locked(memory_id)
            if removed:
                self._sync_lexical()
                logger.info(f"[memory] hard-deleted {memory_id}")
            return removed

        record = await self._mutate(
            memory_id,
            lambda current: {
                "status": MemoryStatus.ARCHIVED,
                "archived_reason": current.archived_reason or ArchivedReason.MANUAL,
            },
        )
        if record is not None:
            logger.info(f"[memory] archived {memory_id}")
        return record is not None

    async def _mutate(
        self,
        memory_id: str,
        apply: Callable[[Memory], Optional[Dict[str, Any]]],
    ) -> Optional[Memory]:
        """Internal read-modify-write for lifecycle fields callers cannot edit."""
        async with self._lock:
            await self._ensure_loaded()
            current = await asyncio.to_thread(self._read_record_sync, memory_id)
            if current is None:
                return None
            fields = apply(current)
            if not fields:
                return current
            target = fields.get("status")
            if target is not None and not can_transition(current.status, target):
                raise ValueError(
                    f"cannot move memory from {current.status.value} to {MemoryStatus(target).value}"
                )
            merged = current.model_dump()
            merged.update(fields)
            merged["updated_at"] = utc_now()
            record = Memory.model_validate(merged)
            vectors_changed = self._stage(record)
            await self._commit([record], vectors_changed=vectors_changed)
            return record

    async def archive(
        self,
        memory_id: str,
        reason: ArchivedReason,
        merged_into: Optional[str] = None,
    ) -> Optional[Memory]:
        fields: Dict[str, Any] = {"status": MemoryStatus.ARCHIVED, "archived_reason": reason}
        if merged_into:
            fields["merged_into"] = merged_into
        return await self._mutate(memory_id, lambda current: fields)

    async def expire(self, memory_id: str) -> Optional[Memory]:
        return await self._mutate(memory_id, lambda current: {"status": MemoryStatus.EXPIRED})

    async def set_importance(self, memory_id: str, importance: float) -> Optional[Memory]:
        return await self._mutate(memory_id, lambda current: {"importance": importance})

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    async def approve(self, memory_id: str) -> Dict[str, Any]:
        async with self._lock:
            await self._ensure_loaded()
            current = await asyncio.to_thread(self._read_record_sync, memory_id)
            if current is None:
                return {"success": False, "error": "memory_not_found"}
            if current.status != MemoryStatus.PENDING_APPROVAL:
                return {"success": False, "error": "memory_not_pending", "status": current.status.value}
            current.status = MemoryStatus.ACTIVE
            current.updated_at = utc_now()
            self._stage(current)
            await self._commit([current])
        logger.info(f"[memory] approved {memory_id}")
        return {"success": True, "memory": current}

    async def reject(self, memory_id: str) -> Dict[str, Any]:
        async with self._lock:
            await self._ensure_loaded()
            current = await asyncio.to_thread(self._read_record_sync, memory_id)
            if current is None:
                return {"success": False, "error": "memory_not_found"}
            if current.status != MemoryStatus.PENDING_APPROVAL:
                return {"success": False, "error": "memory_not_pending", "status": current.status.value}
            await self._hard_delete_locked(memory_id)
        self._sync_lexical()
        logger.info(f"[memory] rejected {memory_id}")
        return {"success": True, "id": memory_id}

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    async def link(self, source_id: str, target_id: str) -> bool:
        if source_id == target_id:
            raise ValueError("a memory cannot link to itself")
        async with self._lock:
            await self._ensure_loaded()
            source = await asyncio.to_thread(self._read_record_sync, source_id)
            target = await asyncio.to_thread(self._read_record_sync, target_id)
            if source is None or target is None:
                return False
            if target_id not in source.related_memories:
                source.related_memories.append(target_id)
            if source_id not in target.related_memories:
                target.related_memories.append(source_id)
            now = utc_now()
            source.updated_at = now
            target.updated_at = now
            self._stage(source)
            self._stage(target)
            await self._commit([source, target])
        logger.info(f"[memory] linked {source_id} <-> {target_id}")
        return True

    async def get_related(self, memory_id: str, limit: int = 10) -> Optional[List[Dict[str, Any]]]:
        """Explicit links first, then nearest active neighbours by embedding."""
        record = await self.peek(memory_id)
        if record is None:
            return None
        await self._ensure_loaded()
        index = self._cache.index
        related: List[Dict[str, Any]] = []
        seen = {memory_id}
        for linked_id in record.related_memories:
            entry = index.get(linked_id)
            if entry is None or linked_id in seen or entry.status != MemoryStatus.ACTIVE:
                continue
            seen.add(linked_id)
            related.append({**entry.model_dump(mode="json"), "relation": "linked", "similarity": None})

        vector = self._cache.vectors.get(memory_id) or record.embedding
        if vector and len(related) < limit:
            candidates = {
                other_id: other
                for other_id, other in self._cache.vectors.items()
                if other_id not in seen
                and other_id in index
                and index[other_id].status == MemoryStatus.ACTIVE
            }
            for hit in find_top_k(vector, candidates, limit - len(related)):
                entry = index[hit["id"]]
                related.append(
                    {
                        **entry.model_dump(mode="json"),
                        "relation": "similar",
                        "similarity": round(hit["similarity"], 4),
                    }
                )
        return related[:limit]

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def index_entries(self) -> List[IndexEntry]:
        await self._ensure_loaded()
        return list(self._cache.index.values())

    async def get_entry(self, memory_id: str) -> Optional[IndexEntry]:
        await self._ensure_loaded()
        return self._cache.index.get(memory_id)

    async def all_embeddings(self) -> Dict[str, List[float]]:
        await self._ensure_loaded()
        return dict(self._cache.vectors)

    async def all_records(self, status: Optional[MemoryStatus] = None) -> List[Memory]:
        entries = await self.index_entries()
        ids = [entry.id for entry in entries if status is None or entry.status == status]
        return await self.get_many(ids)

    async def timeline(
        self,
        filters: Optional[MemoryFilters] = None,
        limit: int = 100,
    ) -> Dict[str, List[IndexEntry]]:
        if filters is None:
            filters = MemoryFilters(status=MemoryStatus.ACTIVE)
        entries = [entry for entry in await self.index_entries() if filters.matches(entry)]
        entries.sort(key=lambda entry: (entry.created_at, entry.id), reverse=True)
        grouped: Dict[str, List[IndexEntry]] = {}
        for entry in entries[: max(1, limit)]:
            grouped.setdefault(entry.created_at.strftime("%Y-%m-%d"), []).append(entry)
        return grouped

    @staticmethod
    def _counted(counter: Counter) -> List[Dict[str, Any]]:
        ranked = sorted(counter.items(), key=lambda item: (-item[1], item[0]))
        return [{"name": name, "count": count} for name, count in ranked]

    async def categories(self) -> List[Dict[str, Any]]:
        entries = await self.index_entries()
        return self._counted(
            Counter(entry.category for entry in entries if entry.status == MemoryStatus.ACTIVE)
        )

    async def tags(self) -> List[Dict[str, Any]]:
        counter: Counter = Counter()
        for entry in await self.index_entries():
            if entry.status == MemoryStatus.ACTIVE:
                counter.update(entry.tags)
        return self._counted(counter)

    async def stats(self) -> Dict[str, Any]:
        entries = await self.index_entries()
        by_status = Counter(entry.status.value for entry in entries)
        active = [entry for entry in entries if entry.status == MemoryStatus.ACTIVE]
        vectors = self._cache.vectors
        with_embeddings = sum(1 for entry in entries if entry.id in vectors)
        return {
            "total": len(entries),
            "by_status": {status.value: by_status.get(status.value, 0) for status in MemoryStatus},
            "by_type": dict(Counter(entry.type.value for entry in active)),
            "by_category": dict(Counter(entry.category for entry in active)),
            "with_embeddings": with_embeddings,
            "embedding_coverage": round(with_embeddings / len(entries), 4) if entries else 0.0,
            "embedding_model": self._cache.embedding_model,
            "embedding_dimension": self._cache.embedding_dimension,
            "last_updated": self._cache.last_updated,
        }

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _scan_records_sync(self) -> List[Memory]:
        if not self._memories_dir.exists():
            return []
        records = []
        for child in sorted(self._memories_dir.iterdir()):
            if not child.is_dir():
                continue
            record = self._read_record_sync(child.name)
            if record is not None and record.id == child.name:
                records.append(record)
        return records

    async def reconcile(self) -> Dict[str, Any]:
        """Rebuild the index and vector table from the record files."""
        async with self._lock:
            await self._ensure_loaded()
            records = await asyncio.to_thread(self._scan_records_sync)
            by_id = {record.id: record for record in records}
            old_index = self._cache.index
            old_vectors = self._cache.vectors

            dropped_entries = [memory_id for memory_id in old_index if memory_id not in by_id]
            restored_entries = [memory_id for memory_id in by_id if memory_id not in old_index]
            dropped_vectors = [
                memory_id
                for memory_id in old_vectors
                if memory_id not in by_id or not by_id[memory_id].embedding
            ]
            restored_vectors = [
                memory_id
                for memory_id, record in by_id.items()
                if record.embedding and memory_id not in old_vectors
            ]

            self._cache.index = {}
            self._cache.vectors = {}
            for record in records:
                self._stage(record)
            await self._commit(vectors_changed=True)
            if self._lexical is not None:
                self._lexical.rebuild(records)

        self._sync_lexical()
        result = {
            "records": len(records),
            "restored_entries": len(restored_entries),
            "dropped_entries": len(dropped_entries),
            "restored_vectors": len(restored_vectors),
            "dropped_vectors": len(dropped_vectors),
        }
        logger.info(f"[memory] reconcile finished: {result}")
        return result

    async def rebuild_lexical(self) -> Dict[str, Any]:
        if self._lexical is None:
            return {"rebuilt": False, "reason": "lexical_disabled"}
        async with self._lock:
            records = await self.all_records()
            stats = self._lexical.rebuild(records)
        await self._lexical.flush()
        return {"rebuilt": True, **stats}
