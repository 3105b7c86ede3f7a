"""
Reranker

Optional LLM reordering of merged search results. A reranking failure of any
kind keeps the original order; no item is ever dropped.
"""

import logging
from typing import List, Optional, Sequence, Tuple, Union

from ..common.gateway import LanguageModel
from ..common.llm_utils import try_parse_llm_json
from .searcher import ConversationHit, DecisionHit

logger = logging.getLogger("knowwhy.retriever.reranker")


RERANK_PROMPT = """Rerank these search results by relevance to the query.

QUERY: "{query}"

RESULTS:
{results}

Return a JSON array with the result IDs in order of relevance (most relevant first).
Only return valid JSON. No explanation text.

Example: ["result-id-3", "result-id-1", "result-id-2"]"""


def _describe(position: int, item: Union[DecisionHit, ConversationHit]) -> str:
    match item:
        case DecisionHit(id=item_id, title=title, confidence=confidence):
            return f"{position}. Decision: {item_id}\n   Content: {title}\n   Confidence: {confidence:.2f}"
        case ConversationHit(id=item_id, text=text, source=source):
            return f"{position}. Conversation: {item_id}\n   Content: {text}\n   Source: {source}"
    raise TypeError(f"unknown retrieval item: {type(item).__name__}")


def apply_order(items: Sequence, ranked_ids: Sequence) -> List:
    """Known ids first in the given order; everything else keeps its place after them."""
    by_id = {item.id: item for item in items}
    ordered = []
    placed = set()
    for item_id in ranked_ids:
        key = str(item_id)
        if key in by_id and key not in placed:
            ordered.append(by_id[key])
            placed.add(key)
    ordered.extend(item for item in items if item.id not in placed)
    return ordered


class Reranker:
    """Asks the model for an id ordering and applies it conservatively."""

    def __init__(self, llm: LanguageModel, model: Optional[str] = None):
        self._llm = llm
        self._model = model

    def build_prompt(self, query: str, items: Sequence) -> str:
        results = "\n".join(_describe(i, item) for i, item in enumerate(items, start=1))
        return RERANK_PROMPT.format(query=query, results=results)

    def rerank(self, query: str, items: Sequence) -> Tuple[List, bool]:
        """Returns (items, whether the model's order was applied)."""
        items = list(items)
        if len(items) <= 1:
            return items, False
        try:
            raw = self._llm.complete(self.build_prompt(query, items), model=self._model)
        except Exception as e:
            logger.warning("Reranking failed, keeping original order: %s", e)
            return items, False

        ranked = try_parse_llm_json(raw)
        if not isinstance(ranked, list):
            logger.info("Rerank reply was not a JSON array, keeping original order")
            return items, False
        return apply_order(items, ranked), True
