"""
Retriever - Decision Retrieval

Answers questions from captured decision briefs, backed by conversation
snippets.

Key Components:
- QueryProcessor: Optional intent classification and query rewriting
- Searcher: Decision-first weighted search with per-source thresholds
- Reranker: Optional model reordering that never drops items
- AnswerSynthesizer: Cited answers from numbered context
- RetrievalEngine: The whole flow, never raising
"""

from .query_processor import QueryIntent, QueryProcessor, QueryUnderstanding
from .searcher import ConversationHit, DecisionHit, RetrievalItem, Searcher, SearchOutcome
from .reranker import Reranker
from .synthesizer import AnswerSynthesizer, Citation, parse_citation_markers
from .engine import RetrievalEngine, RetrievalResult, SearchMetadata

__all__ = [
    "QueryIntent",
    "QueryProcessor",
    "QueryUnderstanding",
    "ConversationHit",
    "DecisionHit",
    "RetrievalItem",
    "Searcher",
    "SearchOutcome",
    "Reranker",
    "AnswerSynthesizer",
    "Citation",
    "parse_citation_markers",
    "RetrievalEngine",
    "RetrievalResult",
    "SearchMetadata",
]
