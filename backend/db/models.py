"""
Memory data model.

`Memory` is the full record persisted one-file-per-id. `IndexEntry` is the
lightweight projection kept in the shared index for filtering without loading
bodies. Status is a closed enum with an explicit transition table.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

SUMMARY_MAX_LENGTH = 150
CONTENT_MAX_LENGTH = 10240


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_summary(content: str, max_length: int = SUMMARY_MAX_LENGTH) -> str:
    if len(content) <= max_length:
        return content
    return content[: max_length - 3] + "..."


def clamp_unit(value: Any) -> float:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        raise ValueError("value must be a number between 0 and 1")
    if numeric != numeric:
        raise ValueError("value must not be NaN")
    return min(1.0, max(0.0, numeric))


class MemoryType(str, Enum):
    FACT = "fact"
    LEARNING = "learning"
    OBSERVATION = "observation"
    DECISION = "decision"
    PREFERENCE = "preference"
    CONTEXT = "context"


class MemoryStatus(str, Enum):
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    ARCHIVED = "archived"
    EXPIRED = "expired"


# Hard deletion is not a status; it removes the record from every artifact.
_STATUS_TRANSITIONS: Dict[MemoryStatus, FrozenSet[MemoryStatus]] = {
    MemoryStatus.PENDING_APPROVAL: frozenset({MemoryStatus.ACTIVE}),
    MemoryStatus.ACTIVE: frozenset({MemoryStatus.ARCHIVED, MemoryStatus.EXPIRED}),
    MemoryStatus.ARCHIVED: frozenset(),
    MemoryStatus.EXPIRED: frozenset(),
}


def can_transition(current: MemoryStatus, target: MemoryStatus) -> bool:
    if current == target:
        return True
    return target in _STATUS_TRANSITIONS.get(current, frozenset())


class ArchivedReason(str, Enum):
    MANUAL = "manual"
    DECAY = "decay"
    CONSOLIDATION = "consolidation"


class Memory(BaseModel):
    """A single typed knowledge record."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: MemoryType
    content: str = Field(min_length=1)
    summary: str = ""
    category: str = "other"
    tags: List[str] = Field(default_factory=list)
    confidence: float = 0.8
    importance: float = 0.5
    access_count: int = Field(default=0, ge=0)
    last_accessed: Optional[datetime] = None
    related_memories: List[str] = Field(default_factory=list)
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    source_task_id: Optional[str] = None
    source_agent_id: Optional[str] = None
    source_app_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    expires_at: Optional[datetime] = None
    merged_into: Optional[str] = None
    archived_reason: Optional[ArchivedReason] = None

    @field_validator("confidence", "importance", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return clamp_unit(value)

    @field_validator("created_at", "updated_at", "last_accessed", "expires_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)

    @model_validator(mode="after")
    def _default_summary(self) -> "Memory":
        if not self.summary:
            self.summary = generate_summary(self.content)
        return self

    def to_index_entry(self) -> "IndexEntry":
        return IndexEntry(
            id=self.id,
            type=self.type,
            category=self.category,
            tags=list(self.tags),
            summary=self.summary,
            importance=self.importance,
            created_at=self.created_at,
            updated_at=self.updated_at,
            status=self.status,
            source_app_id=self.source_app_id,
        )


class IndexEntry(BaseModel):
    """Denormalized projection of a memory for fast filtering."""

    id: str
    type: MemoryType
    category: str = "other"
    tags: List[str] = Field(default_factory=list)
    summary: str = ""
    importance: float = 0.5
    created_at: datetime
    updated_at: Optional[datetime] = None
    status: MemoryStatus = MemoryStatus.ACTIVE
    source_app_id: Optional[str] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)


def _clean_tags(value: List[str]) -> List[str]:
    cleaned = [tag.strip() for tag in value if isinstance(tag, str) and tag.strip()]
    if any(len(tag) > 50 for tag in cleaned):
        raise ValueError("tags must be at most 50 characters")
    return cleaned


class MemoryCreate(BaseModel):
    """Caller payload for creating a memory."""

    type: MemoryType
    content: str = Field(min_length=1, max_length=CONTENT_MAX_LENGTH)
    summary: Optional[str] = Field(default=None, max_length=500)
    category: str = Field(default="other", min_length=1, max_length=100)
    tags: List[str] = Field(default_factory=list, max_length=20)
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    source_task_id: Optional[str] = None
    source_agent_id: Optional[str] = None
    source_app_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: MemoryStatus = MemoryStatus.ACTIVE

    @field_validator("tags")
    @classmethod
    def _tag_length(cls, value: List[str]) -> List[str]:
        return _clean_tags(value)

    @field_validator("status")
    @classmethod
    def _initial_status(cls, value: MemoryStatus) -> MemoryStatus:
        if value not in (MemoryStatus.ACTIVE, MemoryStatus.PENDING_APPROVAL):
            raise ValueError("new memories start as active or pending_approval")
        return value


class CandidateMemory(MemoryCreate):
    """A freshly extracted memory awaiting the trust gate."""

    confidence: float = Field(default=0.7, ge=0.0, le=1.0)


class MemoryUpdate(BaseModel):
    """Caller-editable fields. `id`, `type` and `created_at` are immutable."""

    model_config = {"extra": "forbid"}

    content: Optional[str] = Field(default=None, min_length=1, max_length=CONTENT_MAX_LENGTH)
    summary: Optional[str] = Field(default=None, max_length=500)
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    tags: Optional[List[str]] = Field(default=None, max_length=20)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    importance: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    status: Optional[MemoryStatus] = None
    expires_at: Optional[datetime] = None

    # Only `expires_at` may be cleared with an explicit null.
    @model_validator(mode="before")
    @classmethod
    def _reject_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            nulls = sorted(key for key, value in data.items() if value is None and key != "expires_at")
            if nulls:
                raise ValueError(f"fields cannot be null: {', '.join(nulls)}")
        return data

    @field_validator("tags")
    @classmethod
    def _tag_length(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return _clean_tags(value)

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


SORT_FIELDS = {"created_at", "updated_at", "importance"}
# Fields that feed the embedding text; changing any of them invalidates the vector.
EMBEDDED_FIELDS = frozenset({"content", "summary", "category", "tags"})


class MemoryFilters(BaseModel):
    """
    Filter dimensions over index entries.

    `None` or an empty list means the dimension is unset and matches all.
    Tags match when any requested tag is present.
    """

    types: Optional[List[MemoryType]] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    status: Optional[MemoryStatus] = None
    source_app_id: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None

    @field_validator("created_after", "created_before")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value)

    def matches(self, entry: IndexEntry) -> bool:
        if self.status is not None and entry.status != self.status:
            return False
        if self.types and entry.type not in self.types:
            return False
        if self.categories and entry.category not in self.categories:
            return False
        if self.tags and not any(tag in self.tags for tag in entry.tags):
            return False
        if self.source_app_id and entry.source_app_id != self.source_app_id:
            return False
        if self.created_after and entry.created_at < self.created_after:
            return False
        if self.created_before and entry.created_at > self.created_before:
            return False
        return True
