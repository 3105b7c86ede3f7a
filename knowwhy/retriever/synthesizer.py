"""
Answer Synthesizer

LLM answer generation over retrieval items, with inline citation markers.

Key principle: citations come from the markers the model actually wrote.
- "[2]" cites item 2
- "[1, 3]" cites items 1 and 3
- "[2-4]" cites items 2, 3 and 4
Markers pointing past the item list are ignored; no markers means no citations.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence

from pydantic import BaseModel

from ..common.gateway import LanguageModel
from .searcher import ConversationHit, DecisionHit

logger = logging.getLogger("knowwhy.retriever.synthesizer")

EXCERPT_CHARS = 200


class Citation(BaseModel):
    """One retrieval item referenced by the answer"""
    marker: int
    id: str
    kind: Literal["decision", "conversation"]
    title: str = ""
    source: str = ""
    timestamp: Optional[str] = None
    excerpt: str = ""
    confidence: float = 0.0


@dataclass
class GeneratedAnswer:
    answer: str
    citations: List[Citation] = field(default_factory=list)


ANSWER_PROMPT = """You answer questions using a team's captured decisions and conversations.

Rules:
1. ONLY use information from the numbered context below. Do NOT make up information.
2. Cite every statement inline with the number of its context item, like [1] or [2, 3].
3. Prefer decisions over conversation snippets when both cover the question.
4. If the context does not answer the question, say so plainly.
5. Be concise but complete.

Question: {query}

Context:
{context}

Answer:"""


_MARKER = re.compile(r"\[(\s*\d+(?:\s*-\s*\d+)?(?:\s*,\s*\d+(?:\s*-\s*\d+)?)*\s*)\]")


def parse_citation_markers(text: str, item_count: int) -> List[int]:
    """
    1-based item positions cited in ``text``, in order of first appearance.

    Supports ``[n]``, ``[n, m]`` and ``[n-m]``; out-of-range positions are dropped.
    """
    positions: List[int] = []
    seen = set()
    for match in _MARKER.finditer(text or ""):
        for part in match.group(1).split(","):
            bounds = [int(b) for b in part.split("-")]
            start, end = bounds[0], bounds[-1]
            if end < start:
                start, end = end, start
            for position in range(start, end + 1):
                if 1 <= position <= item_count and position not in seen:
                    seen.add(position)
                    positions.append(position)
    return positions


def format_context_item(position: int, item) -> str:
    match item:
        case DecisionHit(title=title, text=text, confidence=confidence, status=status):
            body = text or title
            return f"[{position}] Decision ({status}, confidence {confidence:.2f}): {body}"
        case ConversationHit(author=author, text=text, timestamp=timestamp):
            when = f" at {timestamp}" if timestamp else ""
            return f"[{position}] Conversation, {author}{when}: {text}"
    raise TypeError(f"unknown retrieval item: {type(item).__name__}")


def to_citation(position: int, item) -> Citation:
    match item:
        case DecisionHit(id=item_id, title=title, text=text, source_id=source_id,
                         timestamp=timestamp, confidence=confidence):
            return Citation(
                marker=position,
                id=item_id,
                kind="decision",
                title=title,
                source=source_id or "decision_brief",
                timestamp=timestamp,
                excerpt=text[:EXCERPT_CHARS],
                confidence=confidence,
            )
        case ConversationHit(id=item_id, author=author, text=text, source=source,
                             timestamp=timestamp, confidence=confidence):
            return Citation(
                marker=position,
                id=item_id,
                kind="conversation",
                title=author,
                source=source,
                timestamp=timestamp,
                excerpt=text[:EXCERPT_CHARS],
                confidence=confidence,
            )
    raise TypeError(f"unknown retrieval item: {type(item).__name__}")


class AnswerSynthesizer:
    """Generates a cited answer from ranked retrieval items."""

    def __init__(self, llm: LanguageModel, model: Optional[str] = None):
        self._llm = llm
        self._model = model

    def build_prompt(self, query: str, items: Sequence) -> str:
        context = "\n\n".join(format_context_item(i, item) for i, item in enumerate(items, start=1))
        return ANSWER_PROMPT.format(query=query, context=context)

    def generate(self, query: str, items: Sequence) -> GeneratedAnswer:
        """Model errors propagate to the engine."""
        items = list(items)
        if not items:
            return GeneratedAnswer(answer="")
        answer = self._llm.complete(self.build_prompt(query, items), model=self._model).strip()
        positions = parse_citation_markers(answer, len(items))
        citations = [to_citation(p, items[p - 1]) for p in positions]
        logger.debug("Answer cites %d of %d items", len(citations), len(items))
        return GeneratedAnswer(answer=answer, citations=citations)
