"""
KnowWhy Runtime

Builds every component once from a ``KnowWhyConfig`` and wires them together.
There are no module-level singletons: the server, tests and scripts each hold
their own ``Runtime``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .common.config import KnowWhyConfig, load_config
from .common.embedding_service import EmbeddingService
from .common.gateway import GuardedLLM, GuardedSearch, LanguageModel, SemanticSearch
from .common.llm_client import LLMClient
from .common.observability import Metrics
from .common.rate_limiter import RateLimiter
from .common.retry import RetryPolicy
from .common.schemas import BriefStatus
from .common.search_index import Embedder, InMemorySearchIndex, index_brief
from .common.store import DecisionStore
from .retriever import RetrievalEngine
from .scribe import BriefSynthesizer, CapturePipeline, ContextExtractor, DecisionDetector

logger = logging.getLogger("knowwhy.runtime")


@dataclass
class Runtime:
    """Everything a process needs, built by ``build_runtime``"""
    config: KnowWhyConfig
    metrics: Metrics
    limiter: RateLimiter
    retry_policy: RetryPolicy
    llm: LanguageModel
    llm_available: bool
    index: Optional[InMemorySearchIndex]
    search: SemanticSearch
    store: DecisionStore
    detector: DecisionDetector
    extractor: ContextExtractor
    synthesizer: BriefSynthesizer
    pipeline: CapturePipeline
    engine: RetrievalEngine


def reindex_briefs(store: DecisionStore, index: InMemorySearchIndex) -> int:
    """Index stored briefs that are neither fallbacks nor archived."""
    count = 0
    for brief in store.list_briefs():
        if brief.degraded or brief.status == BriefStatus.ARCHIVED:
            continue
        index_brief(index, brief)
        count += 1
    return count


def build_runtime(
    config: Optional[KnowWhyConfig] = None,
    llm: Optional[LanguageModel] = None,
    embedder: Optional[Embedder] = None,
    search: Optional[SemanticSearch] = None,
    store: Optional[DecisionStore] = None,
) -> Runtime:
    """
    Construct and inject all components.

    Args:
        config: Configuration (defaults to ``load_config()``)
        llm: Raw language model; defaults to an ``LLMClient`` for the configured provider
        embedder: Embedder for the in-memory index; defaults to ``EmbeddingService``
        search: External semantic search; when given, no in-memory index is built
        store: Decision store; defaults to one at ``config.store.path`` (in-memory if empty)

    Returns:
        Runtime with every component wired to the shared limiter, policy and metrics
    """
    config = config or load_config()
    metrics = Metrics()

    limiter = RateLimiter(
        max_calls=config.rate_limit.max_calls,
        period_seconds=config.rate_limit.period_seconds,
    )
    policy = RetryPolicy(max_attempts=config.detector.max_retries, timeout=config.llm.timeout)

    if llm is None:
        client = LLMClient.from_config(config.llm)
        llm_available = client.is_available
        llm = client
    else:
        llm_available = getattr(llm, "is_available", True)
    guarded_llm = GuardedLLM(llm, limiter=limiter, policy=policy)

    index = None
    if search is None:
        if embedder is None:
            embedder = EmbeddingService(mode=config.embedding.mode, model=config.embedding.model)
        index = InMemorySearchIndex(embedder)
        search = index
    guarded_search = GuardedSearch(
        search,
        limiter=limiter,
        policy=RetryPolicy(max_attempts=config.detector.max_retries),
    )

    if store is None:
        store = DecisionStore(config.store.path or None)

    if index is not None:
        try:
            restored = reindex_briefs(store, index)
            if restored:
                logger.info("Re-indexed %d stored brief(s)", restored)
        except Exception as e:
            logger.warning("Re-indexing stored briefs failed: %s", e)

    detector = DecisionDetector.from_config(guarded_llm, config.detector, metrics=metrics)
    extractor = ContextExtractor.from_config(guarded_llm, guarded_search, config.synthesizer, metrics=metrics)
    synthesizer = BriefSynthesizer.from_config(guarded_llm, extractor, config.synthesizer, metrics=metrics)
    pipeline = CapturePipeline(
        detector,
        synthesizer,
        store,
        index=index,
        concurrency=config.pipeline.concurrency,
        persist_invalid_briefs=config.pipeline.persist_invalid_briefs,
        index_conversations=config.pipeline.index_conversations,
        metrics=metrics,
    )
    engine = RetrievalEngine.from_config(
        guarded_search,
        guarded_llm if llm_available else None,
        config.retrieval,
        metrics=metrics,
    )

    logger.info(
        "Runtime ready (provider=%s, llm_available=%s, store=%s)",
        config.llm.provider, llm_available, config.store.path or "memory",
    )
    return Runtime(
        config=config,
        metrics=metrics,
        limiter=limiter,
        retry_policy=policy,
        llm=guarded_llm,
        llm_available=llm_available,
        index=index,
        search=guarded_search,
        store=store,
        detector=detector,
        extractor=extractor,
        synthesizer=synthesizer,
        pipeline=pipeline,
        engine=engine,
    )
