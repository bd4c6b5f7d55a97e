"""
Runtime configuration for the memory subsystem.

All knobs are environment driven (optionally via a `.env` file) and fall back
to defaults when a value is missing or cannot be parsed.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv, find_dotenv

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    candidate = value.strip()
    return candidate if candidate else default


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


EMBEDDING_BACKENDS = {"api", "hash", "none"}


@dataclass
class MemoryConfig:
    data_dir: Path = Path("data/memory")
    store_lock_timeout_sec: float = 10.0

    embedding_backend: str = "api"
    embedding_endpoint: str = "http://localhost:1234/v1/embeddings"
    embedding_model: str = "text-embedding-nomic-embed-text-v2-moe"
    embedding_api_key: str = ""
    embedding_dim: int = 768
    embedding_timeout_sec: float = 8.0
    embedding_max_chars: int = 8000

    high_confidence: float = 0.85
    low_confidence: float = 0.70

    rrf_k: int = 60
    lexical_weight: float = 0.4
    vector_weight: float = 0.6
    candidate_multiplier: int = 4
    lexical_min_score: float = 0.1

    max_context_tokens: int = 2000
    min_relevance: float = 0.7
    preference_quota: int = 5
    domain_quota: int = 5
    token_char_ratio: int = 4
    domain_types: List[str] = field(default_factory=lambda: ["fact", "observation"])

    decay_rate: float = 0.01
    decay_archive_floor: float = 0.15
    decay_min_age_days: float = 30.0
    decay_epsilon: float = 0.01
    consolidation_threshold: float = 0.9

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        backend = _env_str("MEMORY_EMBEDDING_BACKEND", "api").lower()
        if backend not in EMBEDDING_BACKENDS:
            backend = "api"
        default_dim = 64 if backend == "hash" else 768
        low = _unit(_env_float("MEMORY_INGEST_LOW_CONFIDENCE", 0.70))
        high = _unit(_env_float("MEMORY_INGEST_HIGH_CONFIDENCE", 0.85))
        return cls(
            data_dir=Path(_env_str("MEMORY_DATA_DIR", "data/memory")).expanduser(),
            store_lock_timeout_sec=max(
                0.0, _env_float("MEMORY_STORE_LOCK_TIMEOUT_SEC", 10.0)
            ),
            embedding_backend=backend,
            embedding_endpoint=_env_str(
                "MEMORY_EMBEDDING_ENDPOINT", "http://localhost:1234/v1/embeddings"
            ),
            embedding_model=_env_str(
                "MEMORY_EMBEDDING_MODEL", "text-embedding-nomic-embed-text-v2-moe"
            ),
            embedding_api_key=_env_str("MEMORY_EMBEDDING_API_KEY", ""),
            embedding_dim=_env_int("MEMORY_EMBEDDING_DIM", default_dim, minimum=16),
            embedding_timeout_sec=max(
                1.0, _env_float("MEMORY_EMBEDDING_TIMEOUT_SEC", 8.0)
            ),
            embedding_max_chars=_env_int(
                "MEMORY_EMBEDDING_MAX_CHARS", 8000, minimum=256
            ),
            high_confidence=max(high, low),
            low_confidence=min(high, low),
            rrf_k=_env_int("MEMORY_RRF_K", 60, minimum=1),
            lexical_weight=max(0.0, _env_float("MEMORY_RRF_LEXICAL_WEIGHT", 0.4)),
            vector_weight=max(0.0, _env_float("MEMORY_RRF_VECTOR_WEIGHT", 0.6)),
            candidate_multiplier=_env_int(
                "MEMORY_SEARCH_CANDIDATE_MULTIPLIER", 4, minimum=1
            ),
            lexical_min_score=max(0.0, _env_float("MEMORY_LEXICAL_MIN_SCORE", 0.1)),
            max_context_tokens=_env_int("MEMORY_CONTEXT_MAX_TOKENS", 2000, minimum=1),
            min_relevance=_unit(_env_float("MEMORY_MIN_RELEVANCE", 0.7)),
            preference_quota=_env_int("MEMORY_CONTEXT_PREFERENCE_QUOTA", 5),
            domain_quota=_env_int("MEMORY_CONTEXT_DOMAIN_QUOTA", 5),
            token_char_ratio=_env_int("MEMORY_TOKEN_CHAR_RATIO", 4, minimum=1),
            decay_rate=max(0.0, _env_float("MEMORY_DECAY_RATE", 0.01)),
            decay_archive_floor=_unit(_env_float("MEMORY_DECAY_ARCHIVE_FLOOR", 0.15)),
            decay_min_age_days=max(0.0, _env_float("MEMORY_DECAY_MIN_AGE_DAYS", 30.0)),
            decay_epsilon=max(0.0, _env_float("MEMORY_DECAY_EPSILON", 0.01)),
            consolidation_threshold=_unit(
                _env_float("MEMORY_CONSOLIDATION_THRESHOLD", 0.9)
            ),
        )

