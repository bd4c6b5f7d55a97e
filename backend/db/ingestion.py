"""
Trust-gated ingestion of freshly produced memories.

Candidates are validated, deduplicated within the batch, then routed by
confidence: at or above `high_confidence` they are committed as active, in
the band down to `low_confidence` they are stored as pending approval (and a
notification is requested), below it they are dropped without a write.
"""

import re
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union

from loguru import logger
from pydantic import ValidationError

from .config import MemoryConfig
from .embeddings import EmbeddingClient
from .memory_store import MemoryStore
from .models import CandidateMemory, Memory, MemoryStatus

APPROVAL_LINK = "/cos/memory"
_DEDUP_PREFIX = 100
_PREVIEW_LENGTH = 100


class NotificationSink(Protocol):
    def notify(
        self,
        memory_id: str,
        title: str,
        preview: str,
        link: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool: ...

    def dismiss(self, memory_id: str) -> bool: ...


def dedup_key(memory_type: Any, content: str) -> str:
    normalized = re.sub(r"\s+", " ", content.lower()).strip()
    return f"{getattr(memory_type, 'value', memory_type)}:{normalized[:_DEDUP_PREFIX]}"


# ---------------------------------------------------------------------------
# Candidate extraction from agent output
# ---------------------------------------------------------------------------

_MEMORY_BLOCK = re.compile(r"<MEMORY\s+([^>]*)>(.*?)</MEMORY>", re.IGNORECASE | re.DOTALL)
_TAGS_LINE = re.compile(r"^\s*Tags?:\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_PREFERS = re.compile(
    r"(?:the\s+)?user\s+(?:prefers|wants|likes|requested|values|cares about|insists on|"
    r"prioritizes|expects)\s+(.+?)(?:\.|$)",
    re.IGNORECASE | re.MULTILINE,
)
_PUSHBACK = re.compile(
    r"user\s+(?:pushed back on|rejected|didn't like|asked (?:us|me) to (?:change|redo|fix))\s+(.+?)(?:\.|$)",
    re.IGNORECASE | re.MULTILINE,
)
_IMPLEMENTATION_PATTERNS = [
    re.compile(r"\.(jsx?|tsx?|css|json|md|py|sh|ya?ml)\b", re.IGNORECASE),
    re.compile(r"(?:function|class|component|const|import|export|require|def)\s", re.IGNORECASE),
    re.compile(r"\bline\s+\d+", re.IGNORECASE),
    re.compile(r"[a-z]+\.[a-z]+\(", re.IGNORECASE),
    re.compile(r"\b(?:\d+px|#[0-9a-f]{3,8}|p[xytblr]-\d)\b", re.IGNORECASE),
    re.compile(r"\b(?:npm|yarn|pip|node_modules|package\.json|requirements\.txt)\b", re.IGNORECASE),
    re.compile(r"(?:port\s+\d{4}|localhost|/api/|endpoint)", re.IGNORECASE),
    re.compile(r"\buses?\s+(?:express|react|vite|fastapi|flask|django|pydantic)\b", re.IGNORECASE),
    re.compile(r"\b(?:monorepo|middleware|route\s+handler|service\s+layer)\b", re.IGNORECASE),
]


def _attr(attrs: str, name: str) -> Optional[str]:
    match = re.search(rf'{name}="([^"]+)"', attrs)
    return match.group(1) if match else None


def is_implementation_detail(text: str) -> bool:
    """True for code-level noise that is easy to rediscover from the repo itself."""
    return any(pattern.search(text) for pattern in _IMPLEMENTATION_PATTERNS)


def _parse_blocks(output: str) -> List[Dict[str, Any]]:
    candidates = []
    for attrs, body in _MEMORY_BLOCK.findall(output):
        body = body.strip()
        tags_match = _TAGS_LINE.search(body)
        tags = [tag.strip() for tag in tags_match.group(1).split(",")] if tags_match else []
        content = _TAGS_LINE.sub("", body).strip()
        try:
            confidence = float(_attr(attrs, "confidence") or 0.8)
        except ValueError:
            confidence = 0.8
        candidates.append(
            {
                "type": _attr(attrs, "type") or "observation",
                "category": _attr(attrs, "category") or "other",
                "confidence": confidence,
                "content": content,
                "tags": [tag for tag in tags if tag],
            }
        )
    return candidates


def _parse_patterns(output: str) -> List[Dict[str, Any]]:
    candidates = []
    for match in _PREFERS.finditer(output):
        text = match.group(1).strip()
        if len(text) >= 15 and not is_implementation_detail(text):
            candidates.append(
                {
                    "type": "preference",
                    "category": "preferences",
                    "confidence": 0.8,
                    "content": f"User prefers {text}",
                    "tags": ["user-preference"],
                }
            )
    for match in _PUSHBACK.finditer(output):
        text = match.group(1).strip()
        if len(text) >= 15 and not is_implementation_detail(text):
            candidates.append(
                {
                    "type": "preference",
                    "category": "values",
                    "confidence": 0.8,
                    "content": f"User pushed back on: {text}",
                    "tags": ["user-feedback", "values"],
                }
            )
    return candidates


def extract_candidates(output: str) -> List[Dict[str, Any]]:
    """Structured <MEMORY> blocks first, then preference sentences."""
    if not output:
        return []
    return _parse_blocks(output) + _parse_patterns(output)


# ---------------------------------------------------------------------------
# Trust gate
# ---------------------------------------------------------------------------


class TrustGate:
    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingClient,
        config: MemoryConfig,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config
        self._notifier = notifier

    def classify(self, confidence: float) -> Optional[MemoryStatus]:
        """Target status for a confidence value, or None when it should be dropped."""
        if confidence >= self._config.high_confidence:
            return MemoryStatus.ACTIVE
        if confidence >= self._config.low_confidence:
            return MemoryStatus.PENDING_APPROVAL
        return None

    def _request_approval(self, memory: Memory) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.notify(
                memory.id,
                title="Memory needs approval",
                preview=memory.summary[:_PREVIEW_LENGTH] or memory.content[:_PREVIEW_LENGTH],
                link=APPROVAL_LINK,
                metadata={
                    "memory_type": memory.type.value,
                    "confidence": memory.confidence,
                    "agent_id": memory.source_agent_id,
                    "task_id": memory.source_task_id,
                },
            )
        except Exception as exc:
            logger.warning(f"[ingest] approval notification failed for {memory.id}: {exc}")

    async def ingest(
        self,
        candidates: Sequence[Union[CandidateMemory, Dict[str, Any]]],
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        committed: List[Memory] = []
        pending: List[Memory] = []
        rejected = 0
        duplicates = 0
        dropped = 0

        seen = set()
        gated: List[CandidateMemory] = []
        for raw in candidates:
            try:
                candidate = raw if isinstance(raw, CandidateMemory) else CandidateMemory.model_validate(raw)
            except ValidationError as exc:
                rejected += 1
                logger.debug(f"[ingest] invalid candidate skipped: {exc.errors()[:1]}")
                continue
            key = dedup_key(candidate.type, candidate.content)
            if key in seen:
                duplicates += 1
                continue
            seen.add(key)

            status = self.classify(candidate.confidence)
            if status is None:
                dropped += 1
                continue
            gated.append(
                candidate.model_copy(
                    update={
                        "status": status,
                        "source_agent_id": candidate.source_agent_id or agent_id,
                        "source_task_id": candidate.source_task_id or task_id,
                        "source_app_id": candidate.source_app_id or app_id,
                    }
                )
            )

        vectors = await self._embedder.embed_batch(
            [self._embedder.memory_text(candidate) for candidate in gated]
        )
        for candidate, vector in zip(gated, vectors):
            memory = await self._store.create(
                candidate,
                embedding=vector,
                embedding_model=self._embedder.model if vector else None,
            )
            if memory.status == MemoryStatus.PENDING_APPROVAL:
                pending.append(memory)
                self._request_approval(memory)
            else:
                committed.append(memory)

        logger.info(
            f"[ingest] committed={len(committed)} pending={len(pending)} dropped={dropped} "
            f"duplicates={duplicates} rejected={rejected}"
        )
        return {
            "committed": committed,
            "pending_approval": pending,
            "dropped": dropped,
            "duplicates": duplicates,
            "rejected": rejected,
        }

    async def ingest_output(
        self,
        output: str,
        agent_id: Optional[str] = None,
        task_id: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self.ingest(extract_candidates(output), agent_id, task_id, app_id)

    def dismiss_notification(self, memory_id: str) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.dismiss(memory_id)
        except Exception as exc:
            logger.warning(f"[ingest] could not dismiss notification for {memory_id}: {exc}")

    async def approve(self, memory_id: str) -> Dict[str, Any]:
        result = await self._store.approve(memory_id)
        if result["success"] or result.get("error") == "memory_not_found":
            self.dismiss_notification(memory_id)
        return result

    async def reject(self, memory_id: str) -> Dict[str, Any]:
        result = await self._store.reject(memory_id)
        if result["success"] or result.get("error") == "memory_not_found":
            self.dismiss_notification(memory_id)
        return result
