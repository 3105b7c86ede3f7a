"""
Retrieval Engine

Query -> optional understanding -> decision-first search -> optional rerank
-> optional cited answer.

``retrieve`` never raises: any search or generation failure yields an empty,
zero-confidence result flagged ``degraded``.
"""

import logging
import time
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..common.gateway import LanguageModel, SemanticSearch
from ..common.observability import Metrics, log_event
from .query_processor import QueryIntent, QueryProcessor, QueryUnderstanding
from .reranker import Reranker
from .searcher import ConversationHit, DecisionHit, RetrievalItem, Searcher
from .synthesizer import AnswerSynthesizer, Citation

logger = logging.getLogger("knowwhy.retriever.engine")

QUERY_LOG_CHARS = 80

ResultKind = Literal["decision", "conversation", "mixed", "empty"]


class SearchMetadata(BaseModel):
    search_query: Optional[str] = None
    decision_results: int = 0
    conversation_results: int = 0
    rerank_ms: Optional[float] = None
    generation_ms: Optional[float] = None
    reranked: bool = False


class RetrievalResult(BaseModel):
    """Everything a caller gets back for one query"""
    query: str
    kind: ResultKind = "empty"
    items: List[RetrievalItem] = Field(default_factory=list)
    total: int = 0
    confidence: float = 0.0
    answer: Optional[str] = None
    citations: List[Citation] = Field(default_factory=list)
    understanding: Optional[QueryUnderstanding] = None
    metadata: SearchMetadata = Field(default_factory=SearchMetadata)
    degraded: bool = False


def result_kind(items) -> ResultKind:
    decisions = conversations = 0
    for item in items:
        match item:
            case DecisionHit():
                decisions += 1
            case ConversationHit():
                conversations += 1
    if decisions == 0 and conversations == 0:
        return "empty"
    if decisions > conversations:
        return "decision"
    if conversations > decisions:
        return "conversation"
    return "mixed"


def mean_confidence(items) -> float:
    items = list(items)
    if not items:
        return 0.0
    return sum(item.confidence for item in items) / len(items)


class RetrievalEngine:
    """
    Decision-first retrieval over the semantic search collaborator.

    Args:
        search: Semantic search (index or GuardedSearch)
        llm: Language model for reranking and answers; None disables both
        decision_weight / conversation_weight: Share of max_results fetched per source
        decision_threshold / conversation_threshold: Minimum score per source
        max_results: Cap on merged items
        enable_reranking: Reorder merged items with the model
        enable_answer_generation: Produce a cited answer
        query_processor: Understands and rewrites the question before search
    """

    def __init__(
        self,
        search: SemanticSearch,
        llm: Optional[LanguageModel] = None,
        decision_weight: float = 0.7,
        conversation_weight: float = 0.3,
        decision_threshold: float = 0.4,
        conversation_threshold: float = 0.3,
        max_results: int = 15,
        enable_reranking: bool = False,
        enable_answer_generation: bool = True,
        query_processor: Optional[QueryProcessor] = None,
        model: Optional[str] = None,
        metrics: Optional[Metrics] = None,
    ):
        self._searcher = Searcher(
            search,
            decision_weight=decision_weight,
            conversation_weight=conversation_weight,
            decision_threshold=decision_threshold,
            conversation_threshold=conversation_threshold,
            max_results=max_results,
        )
        self._reranker = Reranker(llm, model=model) if llm is not None else None
        self._answerer = AnswerSynthesizer(llm, model=model) if llm is not None else None
        self._enable_reranking = enable_reranking
        self._enable_answer = enable_answer_generation
        self._query_processor = query_processor
        self._metrics = metrics or Metrics()

    @classmethod
    def from_config(
        cls,
        search: SemanticSearch,
        llm: Optional[LanguageModel],
        config,
        metrics: Optional[Metrics] = None,
    ) -> "RetrievalEngine":
        """Build from a ``RetrievalConfig`` section."""
        return cls(
            search,
            llm,
            decision_weight=config.decision_weight,
            conversation_weight=config.conversation_weight,
            decision_threshold=config.decision_threshold,
            conversation_threshold=config.conversation_threshold,
            max_results=config.max_results,
            enable_reranking=config.enable_reranking,
            enable_answer_generation=config.enable_answer_generation,
            query_processor=(
                QueryProcessor(llm, optimize=config.enable_query_optimization)
                if llm is not None and config.enable_query_understanding
                else None
            ),
            metrics=metrics,
        )

    @property
    def searcher(self) -> Searcher:
        return self._searcher

    def _run(self, query: str) -> RetrievalResult:
        understanding = None
        search_query = query
        if self._query_processor is not None:
            understanding = self._query_processor.understand(query)
            search_query = understanding.search_query

        outcome = self._searcher.search(
            search_query,
            conversations_only=understanding is not None
            and understanding.intent == QueryIntent.CONTEXT_SEARCH,
        )
        items = outcome.items
        metadata = SearchMetadata(
            search_query=search_query,
            decision_results=outcome.decision_results,
            conversation_results=outcome.conversation_results,
        )

        if self._enable_reranking and self._reranker is not None and len(items) > 1:
            started = time.perf_counter()
            items, metadata.reranked = self._reranker.rerank(query, items)
            metadata.rerank_ms = (time.perf_counter() - started) * 1000

        answer = None
        citations: List[Citation] = []
        if self._enable_answer and self._answerer is not None and items:
            started = time.perf_counter()
            generated = self._answerer.generate(query, items)
            metadata.generation_ms = (time.perf_counter() - started) * 1000
            answer = generated.answer
            citations = generated.citations

        return RetrievalResult(
            query=query,
            kind=result_kind(items),
            items=items,
            total=len(items),
            confidence=mean_confidence(items),
            answer=answer,
            citations=citations,
            understanding=understanding,
            metadata=metadata,
        )

    def retrieve(self, query: str) -> RetrievalResult:
        """
        Answer a query from captured decisions and conversations.

        Args:
            query: Natural language question

        Returns:
            RetrievalResult; empty and degraded if any stage failed
        """
        self._metrics.increment("retrieval_calls_total")
        try:
            result = self._run(query)
            outcome = "ok"
        except Exception as e:
            logger.error("Retrieval failed for %r: %s", query[:QUERY_LOG_CHARS], e)
            self._metrics.increment("retrieval_failure_total")
            result = RetrievalResult(query=query, degraded=True)
            outcome = "failed"

        log_event(
            logger,
            "retrieval",
            outcome,
            query=query[:QUERY_LOG_CHARS],
            kind=result.kind,
            items=result.total,
            decisions=result.metadata.decision_results,
            conversations=result.metadata.conversation_results,
            citations=len(result.citations),
            intent=result.understanding.intent.value if result.understanding else None,
        )
        return result
