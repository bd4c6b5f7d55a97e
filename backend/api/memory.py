"""
Memory API - CRUD, approval, search and context assembly over the memory store.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from db import get_memory_service
from db.context import ContextTask
from db.models import CandidateMemory, Memory, MemoryCreate, MemoryFilters, MemoryStatus, MemoryUpdate
from runtime_state import runtime_state

router = APIRouter(prefix="/memory", tags=["memory"])


class SearchRequest(BaseModel):
    query: Optional[str] = None
    embedding: Optional[List[float]] = None
    filters: MemoryFilters = Field(default_factory=MemoryFilters)
    limit: int = Field(default=10, ge=1, le=100)
    min_similarity: float = Field(default=0.0, ge=-1.0, le=1.0)
    use_vector: bool = True


class IngestRequest(BaseModel):
    candidates: List[Dict[str, Any]] = Field(default_factory=list)
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    app_id: Optional[str] = None


class ExtractRequest(BaseModel):
    output: str = Field(min_length=1)
    agent_id: Optional[str] = None
    task_id: Optional[str] = None
    app_id: Optional[str] = None


class ContextRequest(BaseModel):
    task: ContextTask
    max_tokens: Optional[int] = Field(default=None, ge=1)
    min_relevance: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class LinkRequest(BaseModel):
    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)


def memory_payload(memory: Memory) -> Dict[str, Any]:
    payload = memory.model_dump(mode="json", exclude={"embedding"})
    payload["has_embedding"] = bool(memory.embedding)
    return payload


def _split_csv(raw: Optional[str]) -> Optional[List[str]]:
    if not raw:
        return None
    values = [item.strip() for item in raw.split(",") if item.strip()]
    return values or None


def _filters_from_query(
    types: Optional[str],
    categories: Optional[str],
    tags: Optional[str],
    status_value: Optional[str],
    app_id: Optional[str],
) -> MemoryFilters:
    try:
        return MemoryFilters(
            types=_split_csv(types),
            categories=_split_csv(categories),
            tags=_split_csv(tags),
            status=None if status_value == "all" else (status_value or MemoryStatus.ACTIVE),
            source_app_id=app_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _ingest_payload(result: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "committed": [memory_payload(memory) for memory in result["committed"]],
        "pending_approval": [memory_payload(memory) for memory in result["pending_approval"]],
        "dropped": result["dropped"],
        "duplicates": result["duplicates"],
        "rejected": result["rejected"],
    }


def _raise_for_failure(result: Dict[str, Any]) -> None:
    error = result.get("error")
    if error == "memory_not_found":
        raise HTTPException(status_code=404, detail=result)
    if error == "memory_not_pending":
        raise HTTPException(status_code=409, detail=result)
    raise HTTPException(status_code=400, detail=result)


@router.get("")
async def list_memories(
    types: Optional[str] = Query(None, description="Comma separated memory types"),
    categories: Optional[str] = Query(None),
    tags: Optional[str] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status", description="Status or 'all'"),
    app_id: Optional[str] = Query(None),
    sort_by: str = Query("created_at"),
    order: str = Query("desc"),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
):
    filters = _filters_from_query(types, categories, tags, status_filter, app_id)
    service = get_memory_service()
    try:
        result = await service.list(filters, sort_by=sort_by, order=order, offset=offset, limit=limit)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        **result,
        "items": [entry.model_dump(mode="json") for entry in result["items"]],
    }


@router.get("/stats")
async def memory_stats():
    return await get_memory_service().stats()


@router.get("/categories")
async def memory_categories():
    return {"categories": await get_memory_service().categories()}


@router.get("/tags")
async def memory_tags():
    return {"tags": await get_memory_service().tags()}


@router.get("/timeline")
async def memory_timeline(
    types: Optional[str] = Query(None),
    categories: Optional[str] = Query(None),
    tags: Optional[str] = Query(None),
    app_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    filters = _filters_from_query(types, categories, tags, None, app_id)
    grouped = await get_memory_service().timeline(filters, limit)
    return {
        "timeline": {
            day: [entry.model_dump(mode="json") for entry in entries]
            for day, entries in grouped.items()
        }
    }


@router.get("/notifications")
async def pending_notifications():
    return {"notifications": runtime_state.notifications.list_pending()}


@router.post("/search")
async def search_memories(body: SearchRequest):
    if not (body.query and body.query.strip()) and not body.embedding:
        raise HTTPException(status_code=400, detail="query or embedding is required")
    payload = await get_memory_service().search(
        query=body.query,
        query_embedding=body.embedding,
        filters=body.filters,
        limit=body.limit,
        min_similarity=body.min_similarity,
        use_vector=body.use_vector,
    )
    return {
        "mode": payload["mode"],
        "degraded": payload["degraded"],
        "degrade_reasons": payload["degrade_reasons"],
        "results": [hit.to_dict() for hit in payload["results"]],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_memory(body: MemoryCreate):
    memory = await get_memory_service().create(body)
    return memory_payload(memory)


@router.post("/ingest")
async def ingest_candidates(body: IngestRequest):
    result = await get_memory_service().ingest(
        body.candidates,
        agent_id=body.agent_id,
        task_id=body.task_id,
        app_id=body.app_id,
    )
    return _ingest_payload(result)


@router.post("/extract")
async def extract_from_output(body: ExtractRequest):
    result = await get_memory_service().ingest_output(
        body.output,
        agent_id=body.agent_id,
        task_id=body.task_id,
        app_id=body.app_id,
    )
    return _ingest_payload(result)


@router.post("/context")
async def assemble_context(body: ContextRequest):
    context = await get_memory_service().assemble_context(
        body.task,
        max_tokens=body.max_tokens,
        min_relevance=body.min_relevance,
    )
    return {"context": context, "empty": context is None}


@router.post("/link")
async def link_memories(body: LinkRequest):
    try:
        result = await get_memory_service().link(body.source_id, body.target_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not result["success"]:
        _raise_for_failure(result)
    return result


@router.get("/{memory_id}")
async def get_memory(memory_id: str):
    memory = await get_memory_service().get(memory_id)
    if memory is None:
        raise HTTPException(status_code=404, detail=f"Memory not found: {memory_id}")
    return memory_payload(memory)


@router.get("/{memory_id}/related")
async def related_memories(memory_id: str, limit: int = Query(10, ge=1, le=50)):
    related = await get_memory_service().related(memory_id, limit)
    if related is None:
        raise HTTPException(status_code=404, detail=f"Memory not found: {memory_id}")
    return {"id": memory_id, "related": related}


@router.patch("/{memory_id}")
async def update_memory(memory_id: str, body: MemoryUpdate):
    try:
        memory = await get_memory_service().update(memory_id, body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if memory is None:
        raise HTTPException(status_code=404, detail=f"Memory not found: {memory_id}")
    return memory_payload(memory)


@router.post("/{memory_id}/approve")
async def approve_memory(memory_id: str):
    result = await get_memory_service().approve(memory_id)
    if not result["success"]:
        _raise_for_failure(result)
    return {"success": True, "memory": memory_payload(result["memory"])}


@router.post("/{memory_id}/reject")
async def reject_memory(memory_id: str):
    result = await get_memory_service().reject(memory_id)
    if not result["success"]:
        _raise_for_failure(result)
    return result


@router.delete("/{memory_id}")
async def delete_memory(memory_id: str, hard: bool = Query(False)):
    try:
        result = await get_memory_service().delete(memory_id, hard=hard)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    if not result["success"]:
        _raise_for_failure(result)
    return result
