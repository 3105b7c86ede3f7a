"""
KnowWhy Common Module

Shared infrastructure for Scribe (capture) and Retriever (recall).
"""

from .config import KnowWhyConfig, load_config
from .embedding_service import EmbeddingService
from .gateway import GuardedLLM, GuardedSearch, LanguageModel, SearchHit, SemanticSearch
from .llm_client import LLMClient
from .observability import Metrics, log_event
from .rate_limiter import RateLimiter
from .retry import RetryPolicy
from .search_index import InMemorySearchIndex
from .store import DecisionStore

__all__ = [
    "KnowWhyConfig",
    "load_config",
    "EmbeddingService",
    "GuardedLLM",
    "GuardedSearch",
    "LanguageModel",
    "SearchHit",
    "SemanticSearch",
    "LLMClient",
    "Metrics",
    "log_event",
    "RateLimiter",
    "RetryPolicy",
    "InMemorySearchIndex",
    "DecisionStore",
]
