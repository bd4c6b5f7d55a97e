from typing import Optional

from runtime_state import runtime_state

from .config import MemoryConfig
from .models import (
    CandidateMemory,
    IndexEntry,
    Memory,
    MemoryCreate,
    MemoryFilters,
    MemoryStatus,
    MemoryType,
    MemoryUpdate,
)
from .service import MemoryService

_memory_service: Optional[MemoryService] = None


def get_memory_service() -> MemoryService:
    """Get the global MemoryService instance."""
    global _memory_service
    if _memory_service is None:
        _memory_service = MemoryService(
            MemoryConfig.from_env(),
            notifier=runtime_state.notifications,
        )
    return _memory_service


async def close_memory_service() -> None:
    """Flush pending state and drop the global MemoryService."""
    global _memory_service
    if _memory_service is not None:
        await _memory_service.close()
        _memory_service = None


__all__ = [
    "CandidateMemory",
    "IndexEntry",
    "Memory",
    "MemoryConfig",
    "MemoryCreate",
    "MemoryFilters",
    "MemoryService",
    "MemoryStatus",
    "MemoryType",
    "MemoryUpdate",
    "close_memory_service",
    "get_memory_service",
]
