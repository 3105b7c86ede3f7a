"""
Context Extractor

Stage A of brief synthesis: gather evidence for a decision candidate through
semantic search, then ask the model for the structured context around it
(problem, constraints, alternatives, stakeholders).

Evidence always comes from search, never from the model, so everything a
brief later cites was actually retrieved.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from ..common.gateway import LanguageModel, SearchHit, SemanticSearch
from ..common.llm_utils import try_parse_llm_json
from ..common.observability import Metrics, log_event
from ..common.schemas import (
    DecisionCandidate,
    EvidenceItem,
    EvidenceType,
    ExtractedContext,
    Message,
)
from .detector import coerce_confidence

logger = logging.getLogger("knowwhy.scribe.context_extractor")

PROMPT_EVIDENCE_LIMIT = 5


CONTEXT_PROMPT = """Extract structured context for this decision.

Decision Summary: {summary}
Confidence: {confidence:.2f}

Conversation:
{conversation}

Evidence:
{evidence}

Respond with a JSON object only:
{{
  "problemStatement": "the problem the decision addresses",
  "constraints": ["constraints and requirements mentioned"],
  "alternativesConsidered": ["options that were discussed"],
  "stakeholders": ["people involved in the decision"],
  "relatedDecisions": ["earlier decisions this builds on, if any"],
  "confidence": number between 0.0 and 1.0
}}

Only use facts present in the conversation and evidence.
Decision ID: {decision_id}

JSON:"""


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if v is not None and str(v).strip()]


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def hit_to_evidence(hit: SearchHit, evidence_type: EvidenceType) -> EvidenceItem:
    return EvidenceItem(
        id=hit.id,
        type=evidence_type,
        source_id=hit.source_id,
        content=hit.text,
        relevance=min(1.0, max(0.0, float(hit.score))),
        timestamp=_parse_timestamp(hit.metadata.get("timestamp")),
        metadata=dict(hit.metadata),
    )


def degraded_context(candidate: DecisionCandidate) -> ExtractedContext:
    """Context used when extraction fails: the summary and nothing else."""
    return ExtractedContext(
        decision_id=candidate.id,
        problem_statement=candidate.summary,
        confidence=0.5,
        degraded=True,
    )


class ContextExtractor:
    """Stage A: evidence search plus structured context extraction."""

    def __init__(
        self,
        llm: LanguageModel,
        search: SemanticSearch,
        search_top_k: int = 10,
        include_related_decisions: bool = True,
        related_top_k: int = 5,
        model: Optional[str] = None,
        metrics: Optional[Metrics] = None,
    ):
        self._llm = llm
        self._search = search
        self._search_top_k = search_top_k
        self._include_related = include_related_decisions
        self._related_top_k = related_top_k
        self._model = model
        self._metrics = metrics or Metrics()

    @classmethod
    def from_config(cls, llm, search, config, metrics: Optional[Metrics] = None) -> "ContextExtractor":
        """Build from a ``SynthesizerConfig`` section."""
        return cls(
            llm,
            search,
            search_top_k=config.search_top_k,
            include_related_decisions=config.include_related_decisions,
            related_top_k=config.related_top_k,
            metrics=metrics,
        )

    def build_query(self, candidate: DecisionCandidate, messages: Sequence[Message]) -> str:
        window_text = "\n".join(f"{m.author}: {m.text}" for m in messages)
        return f"{candidate.summary}\n{window_text}".strip()

    def gather_evidence(
        self,
        candidate: DecisionCandidate,
        messages: Sequence[Message],
    ) -> List[EvidenceItem]:
        """Search conversations (and optionally past decisions), sorted by relevance."""
        evidence: List[EvidenceItem] = []
        query = self.build_query(candidate, messages)

        try:
            hits = self._search.search(query, self._search_top_k, filter={"type": "conversation"})
            evidence.extend(hit_to_evidence(h, EvidenceType.CONVERSATION) for h in hits)
        except Exception as e:
            logger.warning("Evidence search failed for %s: %s", candidate.id, e)

        if self._include_related and self._related_top_k > 0:
            try:
                hits = self._search.search(
                    candidate.summary, self._related_top_k, filter={"type": "decision"}
                )
                evidence.extend(hit_to_evidence(h, EvidenceType.DECISION_BRIEF) for h in hits)
            except Exception as e:
                logger.warning("Related decision search failed for %s: %s", candidate.id, e)

        evidence.sort(key=lambda e: e.relevance, reverse=True)
        return evidence[: self._search_top_k]

    def build_prompt(
        self,
        candidate: DecisionCandidate,
        messages: Sequence[Message],
        evidence: Sequence[EvidenceItem],
    ) -> str:
        conversation = "\n".join(m.format_line() for m in messages) or "(no messages)"
        evidence_text = "\n".join(
            f"[{e.type.value}] {e.content}" for e in evidence[:PROMPT_EVIDENCE_LIMIT]
        ) or "(no evidence found)"
        return CONTEXT_PROMPT.format(
            summary=candidate.summary,
            confidence=candidate.confidence,
            conversation=conversation,
            evidence=evidence_text,
            decision_id=candidate.id,
        )

    def extract(
        self,
        candidate: DecisionCandidate,
        messages: Sequence[Message],
    ) -> ExtractedContext:
        """
        Extract context for a candidate. Never raises.

        Args:
            candidate: Detected decision
            messages: Messages of the candidate's window

        Returns:
            ExtractedContext, with ``degraded=True`` when the model failed
        """
        self._metrics.increment("context_extraction_total")
        evidence = self.gather_evidence(candidate, messages)

        try:
            raw = self._llm.complete(self.build_prompt(candidate, messages, evidence), model=self._model)
        except Exception as e:
            logger.warning("Context extraction failed for %s: %s", candidate.id, e)
            return self._degraded(candidate, "transport")

        data = try_parse_llm_json(raw)
        if not isinstance(data, dict):
            return self._degraded(candidate, "unparseable")

        context = ExtractedContext(
            decision_id=candidate.id,
            problem_statement=str(data.get("problemStatement") or data.get("problem_statement") or ""),
            constraints=_as_str_list(data.get("constraints")),
            alternatives_considered=_as_str_list(
                data.get("alternativesConsidered", data.get("alternatives_considered"))
            ),
            stakeholders=_as_str_list(data.get("stakeholders")),
            evidence=evidence,
            related_decisions=_as_str_list(data.get("relatedDecisions", data.get("related_decisions"))),
            confidence=coerce_confidence(data.get("confidence")),
        )
        log_event(
            logger,
            "context_extraction",
            "ok",
            decision_id=candidate.id,
            evidence=len(evidence),
            confidence=context.confidence,
        )
        return context

    def _degraded(self, candidate: DecisionCandidate, reason: str) -> ExtractedContext:
        self._metrics.increment("context_extraction_degraded_total")
        log_event(logger, "context_extraction", "degraded", level=logging.WARNING,
                  decision_id=candidate.id, reason=reason)
        return degraded_context(candidate)
