"""
BM25 keyword index over memory content.

The index lives in memory and is persisted as one JSON artifact. Mutations
(`index`, `remove`, `rebuild`) are synchronous and cheap; `flush()` writes
the artifact when something changed.
"""

from __future__ import annotations

import asyncio
import math
import re
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from .files import atomic_write_text, dump_json, read_json

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    """
    a an and are as at be but by for from has have in is it its of on or that
    the this to was were will with not no can do does did so than then there
    these those they them their we you your our i me my he she his her
    """.split()
)
_SERIAL_VERSION = 1


def _stem(token: str) -> str:
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def tokenize(text: str) -> List[str]:
    tokens = []
    for raw in _TOKEN_PATTERN.findall((text or "").lower()):
        if len(raw) < 2 or raw in _STOPWORDS:
            continue
        tokens.append(_stem(raw))
    return tokens


def indexable_text(doc: Any) -> str:
    """Content plus type, category and tags so metadata words are searchable."""
    def _field(name: str) -> Any:
        if isinstance(doc, Mapping):
            return doc.get(name)
        return getattr(doc, name, None)

    memory_type = _field("type")
    memory_type = getattr(memory_type, "value", memory_type)
    parts = [
        _field("content") or "",
        str(memory_type or ""),
        str(_field("category") or ""),
        " ".join(_field("tags") or []),
    ]
    return " ".join(part for part in parts if part)


class LexicalScorer:
    def __init__(
        self,
        index_path: Optional[Path] = None,
        k1: float = 1.5,
        b: float = 0.75,
    ) -> None:
        self._index_path = index_path
        self._k1 = k1
        self._b = b
        self._doc_terms: Dict[str, Counter] = {}
        self._doc_lengths: Dict[str, int] = {}
        self._doc_freq: Counter = Counter()
        self._postings: Dict[str, set] = {}
        self._total_length = 0
        self._dirty = False
        self._loaded = index_path is None
        self._flush_guard = asyncio.Lock()

    @property
    def total_docs(self) -> int:
        self._ensure_loaded()
        return len(self._doc_terms)

    @property
    def dirty(self) -> bool:
        return self._dirty

    def has(self, doc_id: str) -> bool:
        self._ensure_loaded()
        return doc_id in self._doc_terms

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if self._index_path is None:
            return
        payload = read_json(self._index_path, dict)
        docs = payload.get("docs")
        if not isinstance(docs, dict):
            return
        for doc_id, terms in docs.items():
            if isinstance(terms, dict):
                self._add_terms(str(doc_id), Counter({str(k): int(v) for k, v in terms.items()}))

    def _add_terms(self, doc_id: str, terms: Counter) -> None:
        self._doc_terms[doc_id] = terms
        length = sum(terms.values())
        self._doc_lengths[doc_id] = length
        self._total_length += length
        for term in terms:
            self._doc_freq[term] += 1
            self._postings.setdefault(term, set()).add(doc_id)

    def _drop(self, doc_id: str) -> bool:
        terms = self._doc_terms.pop(doc_id, None)
        if terms is None:
            return False
        self._total_length -= self._doc_lengths.pop(doc_id, 0)
        for term in terms:
            self._doc_freq[term] -= 1
            if self._doc_freq[term] <= 0:
                del self._doc_freq[term]
            holders = self._postings.get(term)
            if holders is not None:
                holders.discard(doc_id)
                if not holders:
                    del self._postings[term]
        return True

    def index(self, doc: Any) -> None:
        """Add a document or overwrite an existing one with the same id."""
        self._ensure_loaded()
        doc_id = doc.get("id") if isinstance(doc, Mapping) else getattr(doc, "id", None)
        if not doc_id:
            raise ValueError("document requires an id")
        self._drop(str(doc_id))
        self._add_terms(str(doc_id), Counter(tokenize(indexable_text(doc))))
        self._dirty = True

    def remove(self, doc_id: str) -> bool:
        self._ensure_loaded()
        removed = self._drop(doc_id)
        if removed:
            self._dirty = True
        return removed

    def rebuild(self, docs: Iterable[Any]) -> Dict[str, Any]:
        self._loaded = True
        self._doc_terms.clear()
        self._doc_lengths.clear()
        self._doc_freq.clear()
        self._postings.clear()
        self._total_length = 0
        for doc in docs:
            self.index(doc)
        self._dirty = True
        logger.info(f"[lexical] index rebuilt: {self.total_docs} documents")
        return self.stats()

    def search(self, query: str, limit: int = 20, min_score: float = 0.1) -> List[Dict[str, Any]]:
        """Rank documents for `query`; scores never increase down the list."""
        self._ensure_loaded()
        query_terms = list(dict.fromkeys(tokenize(query)))
        total_docs = self.total_docs
        if not query_terms or total_docs == 0 or limit <= 0:
            return []

        avg_length = self._total_length / total_docs if total_docs else 0.0
        scores: Dict[str, float] = {}
        for term in query_terms:
            holders = self._postings.get(term)
            if not holders:
                continue
            df = self._doc_freq[term]
            idf = math.log(1.0 + (total_docs - df + 0.5) / (df + 0.5))
            for doc_id in holders:
                tf = self._doc_terms[doc_id][term]
                length_norm = 1.0 - self._b + self._b * (
                    self._doc_lengths[doc_id] / avg_length if avg_length else 1.0
                )
                scores[doc_id] = scores.get(doc_id, 0.0) + idf * (
                    tf * (self._k1 + 1.0) / (tf + self._k1 * length_norm)
                )

        ranked = sorted(
            ((doc_id, score) for doc_id, score in scores.items() if score >= min_score),
            key=lambda item: (-item[1], item[0]),
        )
        return [{"id": doc_id, "score": score} for doc_id, score in ranked[:limit]]

    def stats(self) -> Dict[str, Any]:
        self._ensure_loaded()
        return {
            "total_docs": self.total_docs,
            "total_terms": len(self._doc_freq),
            "avg_doc_length": round(self._total_length / self.total_docs, 3) if self.total_docs else 0.0,
            "dirty": self._dirty,
            "index_file": str(self._index_path) if self._index_path else None,
        }

    def _serialize(self) -> str:
        return dump_json(
            {
                "version": _SERIAL_VERSION,
                "docs": {doc_id: dict(terms) for doc_id, terms in self._doc_terms.items()},
            },
            indent=None,
        )

    async def flush(self) -> bool:
        """Persist pending changes. Returns True when a write happened."""
        if self._index_path is None:
            self._dirty = False
            return False
        async with self._flush_guard:
            if not self._dirty:
                return False
            payload = self._serialize()
            self._dirty = False
            try:
                await asyncio.to_thread(atomic_write_text, self._index_path, payload)
            except Exception:
                self._dirty = True
                raise
            logger.debug(f"[lexical] index saved: {self.total_docs} docs")
            return True
