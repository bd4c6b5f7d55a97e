"""
Embedding client for memory vectors.

Talks to an OpenAI-compatible `/embeddings` endpoint. Every failure mode
(non-2xx, timeout, network error, malformed payload) resolves to `None` so
callers can persist the record without a vector and fall back to lexical
search.
"""

import hashlib
import math
import re
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from loguru import logger

from .config import MemoryConfig

_TOKEN_PATTERN = re.compile(r"[a-z0-9_]+")


class EmbeddingClient:
    def __init__(
        self,
        config: MemoryConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._backend = config.embedding_backend
        self._endpoint = config.embedding_endpoint
        self._model = config.embedding_model
        self._api_key = config.embedding_api_key
        self._dim = config.embedding_dim
        self._timeout_sec = config.embedding_timeout_sec
        self._max_chars = config.embedding_max_chars
        self._transport = transport

    @property
    def model(self) -> str:
        if self._backend == "hash":
            return f"hash-v1-{self._dim}"
        return self._model

    @property
    def enabled(self) -> bool:
        return self._backend != "none"

    def _truncate(self, text: str) -> str:
        if len(text) > self._max_chars:
            return text[: self._max_chars]
        return text

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def _post_json(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not self._endpoint:
            return None
        try:
            timeout = httpx.Timeout(self._timeout_sec)
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint, json=payload, headers=self._headers())
                response.raise_for_status()
                parsed = response.json()
            if isinstance(parsed, dict):
                return parsed
            return {"data": parsed}
        except httpx.HTTPStatusError as exc:
            logger.warning(
                f"[embedding] provider returned {exc.response.status_code}: "
                f"{exc.response.text[:200]}"
            )
            return None
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
            logger.warning(f"[embedding] request failed: {type(exc).__name__}: {exc}")
            return None

    @staticmethod
    def _as_vector(candidate: Any) -> Optional[List[float]]:
        if not isinstance(candidate, list) or not candidate:
            return None
        try:
            return [float(v) for v in candidate]
        except (TypeError, ValueError):
            return None

    def _extract_vectors(self, payload: Mapping[str, Any], expected: int) -> List[Optional[List[float]]]:
        vectors: List[Optional[List[float]]] = [None] * expected
        data = payload.get("data")
        if not isinstance(data, list):
            return vectors
        for position, item in enumerate(data):
            if isinstance(item, dict):
                raw_index = item.get("index", position)
                vector = self._as_vector(item.get("embedding"))
            else:
                raw_index = position
                vector = self._as_vector(item)
            try:
                index = int(raw_index)
            except (TypeError, ValueError):
                continue
            if 0 <= index < expected and vector is not None:
                vectors[index] = vector
        return vectors

    def _hash_embedding(self, text: str) -> List[float]:
        vector = [0.0] * self._dim
        normalized = re.sub(r"\s+", " ", text.strip().lower())
        tokens = _TOKEN_PATTERN.findall(normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = digest[i] % self._dim
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        norm = math.sqrt(sum(v * v for v in vector))
        if norm <= 0:
            return [0.0] * self._dim
        return [v / norm for v in vector]

    async def embed(self, text: Optional[str]) -> Optional[List[float]]:
        if not text or not text.strip():
            return None
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[Optional[str]]) -> List[Optional[List[float]]]:
        """Embed several texts in one provider call, keeping input order."""
        results: List[Optional[List[float]]] = [None] * len(texts)
        if not texts or not self.enabled:
            return results

        positions = [i for i, text in enumerate(texts) if text and text.strip()]
        if not positions:
            return results

        prepared = [self._truncate(str(texts[i])) for i in positions]
        if self._backend == "hash":
            for position, text in zip(positions, prepared):
                results[position] = self._hash_embedding(text)
            return results

        payload = {
            "model": self._model,
            "input": prepared[0] if len(prepared) == 1 else prepared,
        }
        response = await self._post_json(payload)
        if response is None:
            return results

        vectors = self._extract_vectors(response, len(prepared))
        missing = sum(1 for vector in vectors if vector is None)
        if missing:
            logger.warning(f"[embedding] provider response missing {missing} of {len(prepared)} vectors")
        for position, vector in zip(positions, vectors):
            results[position] = vector
        return results

    @staticmethod
    def memory_text(memory: Any) -> str:
        """Combine type, category, tags and body into one embedding input."""
        def _field(name: str) -> Any:
            if isinstance(memory, Mapping):
                return memory.get(name)
            return getattr(memory, name, None)

        memory_type = _field("type")
        memory_type = getattr(memory_type, "value", memory_type)
        tags = _field("tags") or []
        parts = [
            f"Type: {memory_type}",
            f"Category: {_field('category') or 'general'}",
            f"Tags: {', '.join(tags)}" if tags else "",
            _field("summary") or "",
            _field("content") or "",
        ]
        return "\n".join(part for part in parts if part)

    async def embed_memory(self, memory: Any) -> Optional[List[float]]:
        return await self.embed(self.memory_text(memory))

    async def embed_query(
        self,
        query: str,
        types: Optional[Sequence[str]] = None,
        categories: Optional[Sequence[str]] = None,
    ) -> Optional[List[float]]:
        parts = [query]
        if types:
            parts.append(f"Looking for: {', '.join(str(getattr(t, 'value', t)) for t in types)}")
        if categories:
            parts.append(f"In categories: {', '.join(categories)}")
        return await self.embed("\n".join(parts))

    async def check_availability(self) -> Dict[str, Any]:
        if self._backend == "none":
            return {"available": False, "backend": self._backend, "error": "embedding_disabled"}
        if self._backend == "hash":
            return {"available": True, "backend": self._backend, "models": [self.model]}

        models_url = re.sub(r"/embeddings/?$", "/models", self._endpoint)
        try:
            timeout = httpx.Timeout(min(5.0, self._timeout_sec))
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(models_url, headers=self._headers())
            if response.status_code >= 400:
                return {
                    "available": False,
                    "backend": self._backend,
                    "error": f"provider returned {response.status_code}",
                }
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return {"available": False, "backend": self._backend, "error": str(exc)}

        models = []
        if isinstance(payload, dict) and isinstance(payload.get("data"), list):
            models = [item.get("id") for item in payload["data"] if isinstance(item, dict)]
        return {"available": True, "backend": self._backend, "models": models}
