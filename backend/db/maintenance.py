"""
Maintenance passes: consolidation, importance decay, expiry sweep.

Each pass reads a snapshot, then routes every change through the store's
single-writer mutations, so it can run alongside ordinary reads and writes.
A record that changed state between the snapshot and its own mutation is
skipped with a log line rather than aborting the pass.
"""

import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from .config import MemoryConfig
from .memory_store import MemoryStore
from .models import ArchivedReason, Memory, MemoryStatus, ensure_aware, utc_now
from .vector_math import cluster_by_similarity

_SECONDS_PER_DAY = 86400.0
_RECENCY_BOOST_MAX = 0.1
_RECENCY_BOOST_PER_DAY = 0.001
_IMPORTANCE_FLOOR = 0.1


def _days_between(earlier: Optional[datetime], later: datetime) -> float:
    if earlier is None:
        return 0.0
    return max(0.0, (later - ensure_aware(earlier)).total_seconds() / _SECONDS_PER_DAY)


def decayed_importance(memory: Memory, rate: float, now: datetime) -> float:
    """
    importance * (1 - rate * sqrt(age_days)), plus a small boost that fades
    with days since last access. Records never accessed get no boost, so their
    importance can only go down.
    """
    age_days = _days_between(memory.created_at, now)
    factor = min(1.0, max(0.0, 1.0 - rate * math.sqrt(age_days)))
    decayed = memory.importance * factor
    if memory.last_accessed is not None and memory.access_count > 0:
        recency_days = _days_between(memory.last_accessed, now)
        decayed += max(0.0, _RECENCY_BOOST_MAX - recency_days * _RECENCY_BOOST_PER_DAY)
    floored = max(min(memory.importance, _IMPORTANCE_FLOOR), decayed)
    return min(1.0, floored)


class MemoryMaintenance:
    def __init__(self, store: MemoryStore, config: MemoryConfig) -> None:
        self._store = store
        self._config = config

    async def consolidate(
        self,
        similarity_threshold: Optional[float] = None,
        dry_run: bool = False,
    ) -> Dict[str, Any]:
        threshold = (
            self._config.consolidation_threshold
            if similarity_threshold is None
            else float(similarity_threshold)
        )
        entries = [
            entry
            for entry in await self._store.index_entries()
            if entry.status == MemoryStatus.ACTIVE
        ]
        vectors = await self._store.all_embeddings()
        entries.sort(key=lambda entry: (entry.created_at, entry.id))
        items = [
            {
                "id": entry.id,
                "embedding": vectors[entry.id],
                "importance": entry.importance,
                "created_at": entry.created_at,
                "summary": entry.summary,
            }
            for entry in entries
            if entry.id in vectors
        ]

        clusters = [cluster for cluster in cluster_by_similarity(items, threshold) if len(cluster) > 1]
        plan = []
        for cluster in clusters:
            ordered = sorted(cluster, key=lambda item: (-item["importance"], item["created_at"], item["id"]))
            plan.append(
                {
                    "survivor": ordered[0]["id"],
                    "merged": [item["id"] for item in ordered[1:]],
                    "members": [{"id": item["id"], "summary": item["summary"]} for item in ordered],
                }
            )
        affected = sum(len(cluster) for cluster in clusters)

        if dry_run:
            return {
                "dry_run": True,
                "threshold": threshold,
                "clusters_found": len(plan),
                "memories_affected": affected,
                "clusters": plan,
            }

        merged = 0
        skipped = 0
        for cluster in plan:
            for memory_id in cluster["merged"]:
                try:
                    record = await self._store.archive(
                        memory_id,
                        ArchivedReason.CONSOLIDATION,
                        merged_into=cluster["survivor"],
                    )
                except ValueError as exc:
                    logger.warning(f"[maintenance] consolidation skipped {memory_id}: {exc}")
                    skipped += 1
                    continue
                if record is None:
                    skipped += 1
                    continue
                merged += 1

        logger.info(
            f"[maintenance] consolidated {merged} memories into {len(plan)} clusters "
            f"(threshold={threshold})"
        )
        return {
            "dry_run": False,
            "threshold": threshold,
            "clusters_found": len(plan),
            "memories_affected": affected,
            "merged": merged,
            "skipped": skipped,
            "clusters": plan,
        }

    async def apply_decay(
        self,
        rate: Optional[float] = None,
        reference_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        rate = self._config.decay_rate if rate is None else max(0.0, float(rate))
        now = ensure_aware(reference_time) or utc_now()
        records = await self._store.all_records(status=MemoryStatus.ACTIVE)

        updated = 0
        archived = 0
        unchanged = 0
        for memory in records:
            new_importance = decayed_importance(memory, rate, now)
            age_days = _days_between(memory.created_at, now)
            try:
                if (
                    new_importance < self._config.decay_archive_floor
                    and age_days > self._config.decay_min_age_days
                ):
                    result = await self._store.archive(memory.id, ArchivedReason.DECAY)
                    if result is not None:
                        archived += 1
                elif abs(new_importance - memory.importance) > self._config.decay_epsilon:
                    result = await self._store.set_importance(memory.id, new_importance)
                    if result is not None:
                        updated += 1
                else:
                    unchanged += 1
            except ValueError as exc:
                logger.warning(f"[maintenance] decay skipped {memory.id}: {exc}")

        logger.info(
            f"[maintenance] decay rate={rate}: updated={updated} archived={archived} "
            f"unchanged={unchanged}"
        )
        return {
            "rate": rate,
            "reference_time": now.isoformat(),
            "scanned": len(records),
            "updated": updated,
            "archived": archived,
            "unchanged": unchanged,
        }

    async def clear_expired(self, reference_time: Optional[datetime] = None) -> Dict[str, Any]:
        now = ensure_aware(reference_time) or utc_now()
        records = await self._store.all_records(status=MemoryStatus.ACTIVE)
        expired_ids: List[str] = []
        for memory in records:
            if memory.expires_at is None or memory.expires_at >= now:
                continue
            try:
                result = await self._store.expire(memory.id)
            except ValueError as exc:
                logger.warning(f"[maintenance] expiry skipped {memory.id}: {exc}")
                continue
            if result is not None:
                expired_ids.append(memory.id)

        logger.info(f"[maintenance] expired {len(expired_ids)} memories")
        return {"cleared": len(expired_ids), "ids": expired_ids}
