"""
In-memory Semantic Search Index

Reference ``SemanticSearch`` implementation over any embedder exposing
``embed(texts) -> List[List[float]]``. Entries are keyed by id, so indexing
the same brief or message twice replaces it.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence

import numpy as np

from .embedding_service import batch_cosine_similarity
from .gateway import SearchHit
from .schemas import render_payload_text

logger = logging.getLogger("knowwhy.common.search_index")


class Embedder(Protocol):
    def embed(self, texts: List[str]) -> List[List[float]]:
        ...


class InMemorySearchIndex:
    """Cosine-similarity index with exact-match metadata filters."""

    def __init__(self, embedder: Embedder):
        self._embedder = embedder
        self._ids: List[str] = []
        self._texts: List[str] = []
        self._source_ids: List[str] = []
        self._metadata: List[Dict[str, Any]] = []
        self._vectors: Optional[np.ndarray] = None
        self._positions: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def upsert(
        self,
        id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
        source_id: str = "",
    ) -> None:
        self.upsert_many([(id, text, metadata or {}, source_id)])

    def upsert_many(self, entries: Sequence[tuple]) -> int:
        """Index ``(id, text, metadata, source_id)`` tuples. Returns the count."""
        entries = [e for e in entries if e[1]]
        if not entries:
            return 0
        vectors = np.asarray(
            self._embedder.embed([e[1] for e in entries]), dtype=np.float32
        )

        with self._lock:
            for (entry_id, text, metadata, source_id), vector in zip(entries, vectors):
                pos = self._positions.get(entry_id)
                if pos is None:
                    self._positions[entry_id] = len(self._ids)
                    self._ids.append(entry_id)
                    self._texts.append(text)
                    self._source_ids.append(source_id)
                    self._metadata.append(dict(metadata))
                    row = vector.reshape(1, -1)
                    self._vectors = row if self._vectors is None else np.vstack([self._vectors, row])
                else:
                    self._texts[pos] = text
                    self._source_ids[pos] = source_id
                    self._metadata[pos] = dict(metadata)
                    self._vectors[pos] = vector
        return len(entries)

    def remove(self, id: str) -> bool:
        with self._lock:
            pos = self._positions.pop(id, None)
            if pos is None:
                return False
            for seq in (self._ids, self._texts, self._source_ids, self._metadata):
                del seq[pos]
            self._vectors = np.delete(self._vectors, pos, axis=0)
            if len(self._ids) == 0:
                self._vectors = None
            self._positions = {entry_id: i for i, entry_id in enumerate(self._ids)}
            return True

    def search(
        self,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchHit]:
        if top_k <= 0 or not query:
            return []

        with self._lock:
            if self._vectors is None:
                return []
            candidates = [
                i for i, meta in enumerate(self._metadata)
                if not filter or all(meta.get(k) == v for k, v in filter.items())
            ]
            if not candidates:
                return []
            matrix = self._vectors[candidates]
            snapshot = [
                (self._ids[i], self._texts[i], self._source_ids[i], dict(self._metadata[i]))
                for i in candidates
            ]

        query_vec = self._embedder.embed([query])[0]
        scores = batch_cosine_similarity(query_vec, matrix)
        # Stable: equal scores keep insertion order
        order = sorted(range(len(snapshot)), key=lambda i: -float(scores[i]))[:top_k]
        return [
            SearchHit(
                id=snapshot[i][0],
                text=snapshot[i][1],
                score=float(scores[i]),
                source_id=snapshot[i][2],
                metadata=snapshot[i][3],
            )
            for i in order
        ]


# ============================================================================
# Indexing helpers
# ============================================================================

def index_brief(index: InMemorySearchIndex, brief) -> None:
    """Index a brief's payload as a ``decision`` entry."""
    text = brief.payload_text or render_payload_text(brief)
    index.upsert(
        brief.id,
        text,
        metadata={
            "type": "decision",
            "title": brief.title,
            "confidence": brief.confidence,
            "status": brief.status.value,
            "timestamp": brief.created_at.isoformat(),
            "candidate_id": brief.decision_candidate_id,
        },
        source_id=brief.decision_candidate_id or brief.id,
    )


def index_messages(index: InMemorySearchIndex, messages) -> int:
    """Index conversation messages as ``conversation`` entries."""
    entries = [
        (
            m.id,
            m.text,
            {
                "type": "conversation",
                "conversation_id": m.conversation_id,
                "author": m.author,
                "source": m.source,
                "url": m.url,
                "timestamp": m.timestamp.isoformat(),
            },
            m.conversation_id,
        )
        for m in messages
    ]
    return index.upsert_many(entries)
