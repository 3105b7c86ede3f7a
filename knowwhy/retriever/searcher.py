"""
Searcher

Decision-first hybrid search over the semantic search collaborator.
Decisions and conversations are fetched with separate budgets and thresholds,
so a large pool of conversation hits cannot crowd out decision briefs.

Retrieval items form a tagged union (``DecisionHit | ConversationHit``)
discriminated by ``kind``.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..common.gateway import SearchHit, SemanticSearch

logger = logging.getLogger("knowwhy.retriever.searcher")

DEFAULT_CONVERSATION_CONFIDENCE = 0.5


class DecisionHit(BaseModel):
    """A decision brief returned by search"""
    kind: Literal["decision"] = "decision"
    id: str
    title: str = ""
    text: str = ""
    score: float
    confidence: float
    source_id: str = ""
    status: str = "pending"
    timestamp: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationHit(BaseModel):
    """A conversation message returned by search"""
    kind: Literal["conversation"] = "conversation"
    id: str
    text: str = ""
    score: float
    confidence: float = DEFAULT_CONVERSATION_CONFIDENCE
    author: str = "unknown"
    source: str = "conversation"
    conversation_id: str = ""
    timestamp: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


RetrievalItem = Annotated[Union[DecisionHit, ConversationHit], Field(discriminator="kind")]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return min(1.0, max(0.0, float(value)))


def to_decision_hit(hit: SearchHit) -> DecisionHit:
    """Confidence is the stored brief confidence, else the search score."""
    meta = hit.metadata or {}
    stored = _number(meta.get("confidence"))
    title = meta.get("title") or (hit.text.splitlines()[0] if hit.text else "")
    return DecisionHit(
        id=hit.id,
        title=str(title),
        text=hit.text,
        score=hit.score,
        confidence=stored if stored is not None else min(1.0, max(0.0, hit.score)),
        source_id=hit.source_id,
        status=str(meta.get("status") or "pending"),
        timestamp=meta.get("timestamp"),
        metadata=dict(meta),
    )


def to_conversation_hit(hit: SearchHit) -> ConversationHit:
    meta = hit.metadata or {}
    stored = _number(meta.get("confidence"))
    return ConversationHit(
        id=hit.id,
        text=hit.text,
        score=hit.score,
        confidence=stored if stored is not None else DEFAULT_CONVERSATION_CONFIDENCE,
        author=str(meta.get("author") or "unknown"),
        source=str(meta.get("source") or "conversation"),
        conversation_id=str(meta.get("conversation_id") or hit.source_id or ""),
        timestamp=meta.get("timestamp"),
        metadata=dict(meta),
    )


@dataclass
class SearchOutcome:
    """Merged hits plus per-source counts"""
    items: List[Union[DecisionHit, ConversationHit]] = field(default_factory=list)
    decision_results: int = 0
    conversation_results: int = 0


class Searcher:
    """
    Weighted, independently thresholded search over decisions and conversations.

    Algorithm:
    1. Fetch floor(max_results * decision_weight) decision hits, keep score >= decision_threshold
    2. Fetch floor(max_results * conversation_weight) conversation hits, keep score >= conversation_threshold
    3. Merge, stable-sort by score descending, truncate to max_results
    """

    def __init__(
        self,
        search: SemanticSearch,
        decision_weight: float = 0.7,
        conversation_weight: float = 0.3,
        decision_threshold: float = 0.4,
        conversation_threshold: float = 0.3,
        max_results: int = 15,
    ):
        self._search = search
        self.decision_weight = decision_weight
        self.conversation_weight = conversation_weight
        self.decision_threshold = decision_threshold
        self.conversation_threshold = conversation_threshold
        self.max_results = max_results

    @property
    def decision_budget(self) -> int:
        return math.floor(self.max_results * self.decision_weight)

    @property
    def conversation_budget(self) -> int:
        return math.floor(self.max_results * self.conversation_weight)

    def search(self, query: str, conversations_only: bool = False) -> SearchOutcome:
        """Run both searches and merge. Collaborator errors propagate.

        ``conversations_only`` skips decisions and gives the whole
        ``max_results`` budget to conversation hits.
        """
        decisions: List[DecisionHit] = []
        conversations: List[ConversationHit] = []
        conversation_budget = self.max_results if conversations_only else self.conversation_budget

        if self.decision_budget > 0 and not conversations_only:
            hits = self._search.search(query, self.decision_budget, filter={"type": "decision"})
            decisions = [to_decision_hit(h) for h in hits if h.score >= self.decision_threshold]

        if conversation_budget > 0:
            hits = self._search.search(query, conversation_budget, filter={"type": "conversation"})
            conversations = [to_conversation_hit(h) for h in hits if h.score >= self.conversation_threshold]

        merged = sorted([*decisions, *conversations], key=lambda item: item.score, reverse=True)
        return SearchOutcome(
            items=merged[: self.max_results],
            decision_results=len(decisions),
            conversation_results=len(conversations),
        )
