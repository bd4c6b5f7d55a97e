"""
MCP Server for the memory subsystem.

Exposes the memory service as MCP tools so agents can record, look up,
review and inject memories. Every tool returns a JSON string shaped
`{"ok": bool, "message": str, ...}`.
"""

import json
import os
import sys
from typing import Any, Dict, List, Optional

from loguru import logger

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP
from db import get_memory_service
from db.models import Memory, MemoryFilters, MemoryStatus
from runtime_state import runtime_state

# Initialize FastMCP server
mcp = FastMCP("Memory Interface")

_REVIEW_ACTIONS = {"approve", "reject"}


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False, default=str)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _memory_view(memory: Memory) -> Dict[str, Any]:
    payload = memory.model_dump(mode="json", exclude={"embedding"})
    payload["has_embedding"] = bool(memory.embedding)
    return payload


def _tool_failure(tool: str, exc: Exception) -> str:
    if isinstance(exc, ValueError):
        return _tool_response(ok=False, message=f"Invalid input: {exc}", error="validation_error")
    logger.exception(f"[memory] MCP tool {tool} failed: {exc}")
    return _tool_response(ok=False, message=f"Error: {exc}", error="internal_error")


# =============================================================================
# Tools
# =============================================================================


@mcp.tool()
async def create_memory(
    content: str,
    type: str = "fact",
    category: str = "other",
    tags: Optional[List[str]] = None,
    importance: float = 0.5,
    confidence: float = 0.8,
    source_app_id: Optional[str] = None,
) -> str:
    """
    Store a new active memory.

    Args:
        content: The memory text.
        type: fact / learning / observation / decision / preference / context.
        category: Free-form grouping label.
        tags: Optional list of tags.
        importance: Retrieval priority in [0, 1].
        confidence: Producer certainty in [0, 1].
        source_app_id: Optional app the memory belongs to.

    Examples:
        create_memory("User prefers dark themes", type="preference")
    """
    try:
        memory = await get_memory_service().create(
            {
                "type": type,
                "content": content,
                "category": category,
                "tags": tags or [],
                "importance": importance,
                "confidence": confidence,
                "source_app_id": source_app_id,
            }
        )
    except Exception as exc:
        return _tool_failure("create_memory", exc)
    return _tool_response(ok=True, message=f"Memory {memory.id} created.", memory=_memory_view(memory))


@mcp.tool()
async def read_memory(memory_id: str) -> str:
    """
    Read one memory by id. Reading counts as an access.

    Args:
        memory_id: Id returned by create_memory or search_memory.
    """
    try:
        memory = await get_memory_service().get(memory_id)
    except Exception as exc:
        return _tool_failure("read_memory", exc)
    if memory is None:
        return _tool_response(ok=False, message=f"Memory '{memory_id}' not found.", error="memory_not_found")
    return _tool_response(ok=True, message="ok", memory=_memory_view(memory))


@mcp.tool()
async def search_memory(
    query: str,
    max_results: int = 8,
    types: Optional[List[str]] = None,
    categories: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
    source_app_id: Optional[str] = None,
) -> str:
    """
    Hybrid keyword + semantic search over active memories.

    Falls back to keyword-only search when embeddings are unavailable; the
    response then lists the reason under `degrade_reasons`.

    Args:
        query: Search text.
        max_results: Number of results to return (1-50).
        types: Optional memory types to keep.
        categories: Optional categories to keep.
        tags: Optional tags; a memory matches when it carries any of them.
        source_app_id: Optional app scope.
    """
    if not isinstance(query, str) or not query.strip():
        return _tool_response(ok=False, message="query must not be empty.", error="validation_error")
    try:
        filters = MemoryFilters(
            types=types,
            categories=categories,
            tags=tags,
            source_app_id=source_app_id,
        )
        payload = await get_memory_service().search(
            query=query,
            filters=filters,
            limit=max(1, min(50, int(max_results))),
        )
    except Exception as exc:
        return _tool_failure("search_memory", exc)

    results = [hit.to_dict() for hit in payload["results"]]
    return _tool_response(
        ok=True,
        message=f"{len(results)} result(s).",
        mode=payload["mode"],
        degraded=payload["degraded"],
        degrade_reasons=payload["degrade_reasons"],
        results=results,
    )


@mcp.tool()
async def update_memory(
    memory_id: str,
    content: Optional[str] = None,
    summary: Optional[str] = None,
    category: Optional[str] = None,
    tags: Optional[List[str]] = None,
    importance: Optional[float] = None,
    confidence: Optional[float] = None,
) -> str:
    """
    Update editable fields of a memory. Omitted arguments stay unchanged.

    Args:
        memory_id: Memory to update.
        content: New body; the summary and embedding are refreshed with it.
        summary: New summary.
        category: New category.
        tags: Replacement tag list.
        importance: New importance in [0, 1].
        confidence: New confidence in [0, 1].
    """
    changes = {
        key: value
        for key, value in {
            "content": content,
            "summary": summary,
            "category": category,
            "tags": tags,
            "importance": importance,
            "confidence": confidence,
        }.items()
        if value is not None
    }
    if not changes:
        return _tool_response(ok=False, message="No fields to update.", error="validation_error")
    try:
        memory = await get_memory_service().update(memory_id, changes)
    except Exception as exc:
        return _tool_failure("update_memory", exc)
    if memory is None:
        return _tool_response(ok=False, message=f"Memory '{memory_id}' not found.", error="memory_not_found")
    return _tool_response(ok=True, message=f"Memory {memory_id} updated.", memory=_memory_view(memory))


@mcp.tool()
async def delete_memory(memory_id: str, hard: bool = False) -> str:
    """
    Archive a memory, or remove it everywhere when `hard` is true.

    Args:
        memory_id: Memory to delete.
        hard: Remove the record, its index entry and its embedding.
    """
    try:
        result = await get_memory_service().delete(memory_id, hard=hard)
    except Exception as exc:
        return _tool_failure("delete_memory", exc)
    if not result["success"]:
        return _tool_response(ok=False, message=f"Memory '{memory_id}' not found.", error=result["error"])
    verb = "deleted" if hard else "archived"
    return _tool_response(ok=True, message=f"Memory {memory_id} {verb}.", **result)


@mcp.tool()
async def review_memory(memory_id: Optional[str] = None, action: Optional[str] = None) -> str:
    """
    Review memories waiting for approval.

    Without arguments, lists pending memories. With `action` set to
    `approve` or `reject`, resolves one of them.

    Args:
        memory_id: Pending memory to resolve.
        action: approve / reject.
    """
    service = get_memory_service()
    try:
        if not memory_id and not action:
            pending = await service.list(
                MemoryFilters(status=MemoryStatus.PENDING_APPROVAL), sort_by="created_at", order="asc", limit=100
            )
            return _tool_response(
                ok=True,
                message=f"{pending['total']} memories pending approval.",
                pending=[entry.model_dump(mode="json") for entry in pending["items"]],
                notifications=runtime_state.notifications.list_pending(),
            )

        action_value = str(action or "").strip().lower()
        if not memory_id or action_value not in _REVIEW_ACTIONS:
            return _tool_response(
                ok=False,
                message="memory_id and action (approve/reject) are required.",
                error="validation_error",
            )
        if action_value == "approve":
            result = await service.approve(memory_id)
        else:
            result = await service.reject(memory_id)
    except Exception as exc:
        return _tool_failure("review_memory", exc)

    if not result["success"]:
        return _tool_response(ok=False, message=f"Cannot {action_value} '{memory_id}'.", error=result["error"])
    extra = {"memory": _memory_view(result["memory"])} if "memory" in result else {"id": memory_id}
    return _tool_response(ok=True, message=f"Memory {memory_id} {action_value}d.", **extra)


@mcp.tool()
async def memory_context(
    description: str,
    app: Optional[str] = None,
    max_tokens: Optional[int] = None,
    min_relevance: Optional[float] = None,
) -> str:
    """
    Assemble a token-budgeted memory section for a task prompt.

    Args:
        description: What the task is about.
        app: Optional app name; adds that app's top facts and observations.
        max_tokens: Token budget for the section.
        min_relevance: Minimum semantic similarity for relevance hits.
    """
    task = {"description": description, "metadata": {"app": app} if app else {}}
    try:
        context = await get_memory_service().assemble_context(task, max_tokens, min_relevance)
    except Exception as exc:
        return _tool_failure("memory_context", exc)
    if context is None:
        return _tool_response(ok=True, message="No memories qualified.", context=None)
    return _tool_response(ok=True, message="ok", context=context)


# =============================================================================
# Startup
# =============================================================================


async def startup():
    """Load the memory store on startup."""
    await runtime_state.ensure_started(get_memory_service)


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
