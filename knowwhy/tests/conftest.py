"""Shared fakes for KnowWhy tests. Nothing here touches the network."""

import hashlib
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pytest

from knowwhy.common.gateway import SearchHit
from knowwhy.common.schemas import Message

Reply = Union[str, Exception, Callable[[str], str]]

_TOKEN = re.compile(r"[a-z0-9]+")


class ScriptedLLM:
    """LanguageModel fake routed on prompt substrings.

    ``routes`` is an ordered list of ``(substring, reply)``; the first route
    whose substring occurs in the prompt answers. A reply may be a string, an
    exception instance (raised) or a callable taking the prompt.
    """

    def __init__(self, routes: Optional[List[Tuple[str, Reply]]] = None, default: Reply = "{}"):
        self.routes = list(routes or [])
        self.default = default
        self.prompts: List[str] = []
        self._lock = threading.Lock()

    def complete(self, prompt: str, model: Optional[str] = None) -> str:
        with self._lock:
            self.prompts.append(prompt)
        reply = self.default
        for needle, candidate in self.routes:
            if needle in prompt:
                reply = candidate
                break
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(prompt)
        return reply

    def calls_matching(self, needle: str) -> int:
        return sum(1 for p in self.prompts if needle in p)


class StubSearch:
    """SemanticSearch fake returning fixed hits per ``type`` filter."""

    def __init__(self, hits: Optional[Dict[str, List[SearchHit]]] = None, error: Optional[Exception] = None):
        self.hits = hits or {}
        self.error = error
        self.calls: List[Tuple[str, int, Optional[Dict[str, Any]]]] = []

    def search(self, query: str, top_k: int, filter: Optional[Dict[str, Any]] = None) -> List[SearchHit]:
        self.calls.append((query, top_k, filter))
        if self.error is not None:
            raise self.error
        kind = (filter or {}).get("type", "")
        return list(self.hits.get(kind, []))[:top_k]


class HashingEmbedder:
    """Deterministic bag-of-words embedder: tokens hashed into a fixed number of buckets."""

    def __init__(self, dim: int = 64):
        self.dim = dim

    def embed(self, texts: List[str]) -> List[List[float]]:
        rows = []
        for text in texts:
            vec = np.zeros(self.dim, dtype=np.float32)
            for token in _TOKEN.findall(text.lower()):
                bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim
                vec[bucket] += 1.0
            norm = np.linalg.norm(vec)
            rows.append((vec / norm if norm else vec).tolist())
        return rows


class KeywordEmbedder:
    """One dimension per keyword, 1.0 when the keyword occurs in the text."""

    def __init__(self, keywords: Sequence[str]):
        self.keywords = [k.lower() for k in keywords]

    def embed(self, texts: List[str]) -> List[List[float]]:
        return [
            [1.0 if k in text.lower() else 0.0 for k in self.keywords]
            for text in texts
        ]


BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def make_messages(
    count: int,
    conversation_id: str = "conv-1",
    texts: Optional[Dict[int, str]] = None,
    authors: Sequence[str] = ("alice", "bob", "carol"),
) -> List[Message]:
    texts = texts or {}
    return [
        Message(
            id=f"{conversation_id}-m{i}",
            conversation_id=conversation_id,
            author=authors[i % len(authors)],
            timestamp=BASE_TIME + timedelta(minutes=i),
            text=texts.get(i, f"status update number {i}"),
        )
        for i in range(count)
    ]


@pytest.fixture
def messages():
    return make_messages(25)


@pytest.fixture
def hashing_embedder():
    return HashingEmbedder()
