from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from db.config import MemoryConfig
from db.embeddings import EmbeddingClient
from db.service import MemoryService
from runtime_state import NotificationQueue


class KeywordEmbedder(EmbeddingClient):
    """Hash embedder whose vectors can be pinned per keyword or switched off."""

    def __init__(self, config: MemoryConfig) -> None:
        super().__init__(config)
        self.pinned: Dict[str, List[float]] = {}
        self.fail = False
        self.calls = 0

    async def embed_batch(self, texts: Sequence[Optional[str]]) -> List[Optional[List[float]]]:
        self.calls += 1
        if self.fail:
            return [None] * len(texts)
        results = await super().embed_batch(texts)
        for position, text in enumerate(texts):
            lowered = (text or "").lower()
            for keyword, vector in self.pinned.items():
                if keyword in lowered:
                    results[position] = list(vector)
                    break
        return results


def build_config(data_dir: Path, **overrides) -> MemoryConfig:
    values = {
        "data_dir": data_dir,
        "embedding_backend": "hash",
        "embedding_dim": 64,
        "store_lock_timeout_sec": 5.0,
    }
    values.update(overrides)
    return MemoryConfig(**values)


@pytest.fixture
def memory_config(tmp_path) -> MemoryConfig:
    return build_config(tmp_path / "memory")


@pytest.fixture
def embedder(memory_config) -> KeywordEmbedder:
    return KeywordEmbedder(memory_config)


@pytest.fixture
def notifications() -> NotificationQueue:
    return NotificationQueue()


@pytest.fixture
def service(memory_config, embedder, notifications) -> MemoryService:
    return MemoryService(memory_config, embedder=embedder, notifier=notifications)
