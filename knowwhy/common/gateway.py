"""
Collaborator Gateways

Protocols for the language model and semantic search collaborators, plus
guarded wrappers that route every call through the shared rate limiter and
a retry policy. Guarded wrappers satisfy the same protocols, so components
accept either the raw collaborator or the guarded one.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .rate_limiter import RateLimiter
from .retry import RetryPolicy


@dataclass
class SearchHit:
    """One semantic search result"""
    id: str
    text: str
    score: float  # 0.0 to 1.0
    source_id: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class LanguageModel(Protocol):
    def complete(self, prompt: str, model: Optional[str] = None) -> str:
        ...


@runtime_checkable
class SemanticSearch(Protocol):
    def search(
        self,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchHit]:
        ...


def _acquirer(limiter: Optional[RateLimiter]):
    # Token wait happens per attempt, outside the per-call timeout
    return limiter.acquire if limiter is not None else None


class GuardedLLM:
    """LanguageModel wrapper applying rate limiting and retries."""

    def __init__(
        self,
        llm: LanguageModel,
        limiter: Optional[RateLimiter] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self._llm = llm
        self._limiter = limiter
        self._policy = policy or RetryPolicy()

    @property
    def inner(self) -> LanguageModel:
        return self._llm

    @property
    def limiter(self) -> Optional[RateLimiter]:
        return self._limiter

    def complete(self, prompt: str, model: Optional[str] = None) -> str:
        return self._policy.call(
            lambda: self._llm.complete(prompt, model=model),
            operation="llm.complete",
            before_attempt=_acquirer(self._limiter),
        )


class GuardedSearch:
    """SemanticSearch wrapper applying rate limiting and retries."""

    def __init__(
        self,
        search: SemanticSearch,
        limiter: Optional[RateLimiter] = None,
        policy: Optional[RetryPolicy] = None,
    ):
        self._search = search
        self._limiter = limiter
        self._policy = policy or RetryPolicy()

    @property
    def inner(self) -> SemanticSearch:
        return self._search

    @property
    def limiter(self) -> Optional[RateLimiter]:
        return self._limiter

    def search(
        self,
        query: str,
        top_k: int,
        filter: Optional[Dict[str, Any]] = None,
    ) -> List[SearchHit]:
        return self._policy.call(
            lambda: self._search.search(query, top_k, filter=filter),
            operation="search",
            before_attempt=_acquirer(self._limiter),
        )
