"""
Brief Synthesizer

Stage B of brief synthesis: turn a decision candidate and its extracted
context into a structured, citation-backed DecisionBrief.

Pipeline:
1. Generate a draft with the model, listing the retrieved evidence by id
2. Ground the draft's source references against that evidence
3. Validate (hallucination heuristic, citation heuristic, schema gate)
4. Repair: re-prompt with the specific issues, up to ``validation_attempts``
5. If the draft never validates, return an explicit fallback brief

Key principle: a brief is valid only if it cites evidence that was actually
supplied. References the model invents are dropped before validation.
"""

import json
import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..common.gateway import LanguageModel
from ..common.llm_utils import try_parse_llm_json
from ..common.observability import Metrics, log_event
from ..common.schemas import (
    DecisionBrief,
    DecisionCandidate,
    EvidenceItem,
    EvidenceType,
    ExtractedContext,
    Message,
    PROBLEM_MAX_CHARS,
    SourceReference,
    SourceType,
    TITLE_MAX_CHARS,
    brief_id_for_candidate,
    brief_schema_errors,
    render_payload_text,
)
from .context_extractor import ContextExtractor

logger = logging.getLogger("knowwhy.scribe.brief_synthesizer")

FALLBACK_RATIONALE = "[degraded] Rationale not available - fallback brief"
DEFAULT_DRAFT_CONFIDENCE = 0.5
UNKNOWN_PARTICIPANT = "unknown"
HALLUCINATION_PENALTY = 0.5
MISSING_CITATION_PENALTY = 0.8


@dataclass
class RationaleValidation:
    """Outcome of validating one draft"""
    valid: bool
    errors: List[str] = field(default_factory=list)
    hallucinations: List[str] = field(default_factory=list)
    missing_citations: List[str] = field(default_factory=list)
    confidence: float = 0.0


@dataclass
class SynthesisResult:
    """A brief plus everything needed to judge it"""
    brief: DecisionBrief
    validation: RationaleValidation
    citations: List[SourceReference] = field(default_factory=list)
    generation_time_ms: float = 0.0
    repair_attempts: int = 0
    context: Optional[ExtractedContext] = None

    @property
    def is_fallback(self) -> bool:
        return self.brief.degraded


# Evidence types map onto source types when the hit carries no platform tag
_EVIDENCE_SOURCE_TYPES = {
    EvidenceType.CONVERSATION: SourceType.CONVERSATION,
    EvidenceType.DECISION_BRIEF: SourceType.DECISION_BRIEF,
    EvidenceType.EXTERNAL: SourceType.EXTERNAL,
}


BRIEF_PROMPT = """Generate a structured decision brief for this decision.

DECISION SUMMARY: {summary}
DECISION CONFIDENCE: {confidence:.2f}

CONTEXT:
Problem Statement: {problem}
Constraints: {constraints}
Alternatives Considered: {alternatives}
Stakeholders: {stakeholders}

EVIDENCE:
{evidence}

Respond with a JSON object with this structure:
{{
  "title": "short title for the decision (max 150 characters)",
  "problem": "clear problem statement (max 1000 characters)",
  "optionsConsidered": ["Option 1", "Option 2"],
  "rationale": "why this decision was made (max 500 characters)",
  "participants": ["people involved"],
  "sourceReferences": [
    {{"externalId": "id of an EVIDENCE item above", "excerpt": "quoted passage", "author": "who said it"}}
  ],
  "confidence": 0.0 to 1.0,
  "tags": ["tag1", "tag2"]
}}

CRITICAL REQUIREMENTS:
1. ONLY use information from the provided context and evidence
2. Cite sources using the ids of the EVIDENCE items above; never invent ids
3. Do not add facts that are not present in the context
4. If evidence is insufficient, say so in the rationale and lower the confidence

IMPORTANT: Only return valid JSON. No explanation text.
Decision ID: {decision_id}

JSON:"""


REPAIR_PROMPT = """Repair this decision brief to address the following issues.

BRIEF TO REPAIR:
{draft}

VALIDATION ISSUES:
{issues}

CONTEXT FOR REPAIR:
Problem: {problem}
Constraints: {constraints}
Alternatives: {alternatives}
Stakeholders: {stakeholders}

EVIDENCE:
{evidence}

Return the repaired brief as valid JSON with the same structure
(title, problem, optionsConsidered, rationale, participants, sourceReferences,
confidence, tags). Every sourceReferences entry must use the externalId of an
EVIDENCE item above. Only return JSON.

JSON:"""


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    items = []
    for v in value:
        if isinstance(v, dict):
            v = v.get("name") or v.get("option") or v.get("title") or v.get("description") or ""
        text = str(v).strip() if v is not None else ""
        if text:
            items.append(text)
    return items


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def draft_confidence(draft: Dict[str, Any]) -> Tuple[float, bool]:
    """Confidence stated by the draft, and whether it was usable.

    An absent confidence falls back to 0.5 without counting as an error.
    """
    if "confidence" not in draft or draft["confidence"] is None:
        return DEFAULT_DRAFT_CONFIDENCE, True
    value = draft["confidence"]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_DRAFT_CONFIDENCE, False
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        return DEFAULT_DRAFT_CONFIDENCE, False
    return float(value), True


def fallback_participants(context: Optional[ExtractedContext], messages: Sequence[Message]) -> List[str]:
    if context is not None and context.stakeholders:
        return list(context.stakeholders)
    authors = list(dict.fromkeys(m.author for m in messages if m.author))
    return authors or [UNKNOWN_PARTICIPANT]


def format_evidence(evidence: Sequence[EvidenceItem]) -> str:
    if not evidence:
        return "(no evidence available)"
    return "\n\n".join(
        f"[EVIDENCE {i}] (id={e.id}, source={e.source_id or e.type.value}) {e.content}"
        for i, e in enumerate(evidence, start=1)
    )


class BriefSynthesizer:
    """
    Stage B: rationale generation with validate/repair.

    ``generate_brief`` issues at most ``validation_attempts + 1`` model calls
    (transport retries inside the gateway aside) and never persists anything.
    """

    def __init__(
        self,
        llm: LanguageModel,
        extractor: Optional[ContextExtractor] = None,
        citation_threshold: float = 0.7,
        max_citations: int = 10,
        validation_attempts: int = 3,
        hallucination_check_enabled: bool = True,
        hallucination_ratio: float = 3.0,
        model: Optional[str] = None,
        metrics: Optional[Metrics] = None,
    ):
        """
        Initialize brief synthesizer.

        Args:
            llm: Language model (normally a GuardedLLM)
            extractor: Stage A extractor, required by ``synthesize``
            citation_threshold: Minimum validation confidence for a valid brief
            max_citations: Evidence items shown to the model and returned as citations
            validation_attempts: Repair re-prompts after the first draft
            hallucination_check_enabled: Apply the draft-length heuristic
            hallucination_ratio: Draft may be at most this many times the context length
            model: Optional model override passed to the LLM
            metrics: Counter sink
        """
        self._llm = llm
        self._extractor = extractor
        self._citation_threshold = citation_threshold
        self._max_citations = max_citations
        self._validation_attempts = max(0, validation_attempts)
        self._hallucination_check = hallucination_check_enabled
        self._hallucination_ratio = hallucination_ratio
        self._model = model
        self._metrics = metrics or Metrics()

    @classmethod
    def from_config(cls, llm, extractor, config, metrics: Optional[Metrics] = None) -> "BriefSynthesizer":
        """Build from a ``SynthesizerConfig`` section."""
        return cls(
            llm,
            extractor=extractor,
            citation_threshold=config.citation_threshold,
            max_citations=config.max_citations,
            validation_attempts=config.validation_attempts,
            hallucination_check_enabled=config.hallucination_check_enabled,
            hallucination_ratio=config.hallucination_ratio,
            metrics=metrics,
        )

    @property
    def validation_attempts(self) -> int:
        return self._validation_attempts

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def _prompt_evidence(self, context: ExtractedContext) -> List[EvidenceItem]:
        return list(context.evidence[: self._max_citations])

    def build_prompt(self, candidate: DecisionCandidate, context: ExtractedContext) -> str:
        return BRIEF_PROMPT.format(
            summary=candidate.summary,
            confidence=candidate.confidence,
            problem=context.problem_statement or "(not specified)",
            constraints=", ".join(context.constraints) or "(none)",
            alternatives=", ".join(context.alternatives_considered) or "(none)",
            stakeholders=", ".join(context.stakeholders) or "(none)",
            evidence=format_evidence(self._prompt_evidence(context)),
            decision_id=candidate.id,
        )

    def build_repair_prompt(
        self,
        previous: str,
        validation: RationaleValidation,
        context: ExtractedContext,
    ) -> str:
        issues = list(validation.errors)
        issues.extend(f"Hallucination: {h}" for h in validation.hallucinations)
        issues.extend(f"Missing citation: {m}" for m in validation.missing_citations)
        return REPAIR_PROMPT.format(
            draft=previous or "(empty reply)",
            issues="\n".join(f"- {i}" for i in issues) or "- (none reported)",
            problem=context.problem_statement or "(not specified)",
            constraints=", ".join(context.constraints) or "(none)",
            alternatives=", ".join(context.alternatives_considered) or "(none)",
            stakeholders=", ".join(context.stakeholders) or "(none)",
            evidence=format_evidence(self._prompt_evidence(context)),
        )

    # ------------------------------------------------------------------
    # Grounding and validation
    # ------------------------------------------------------------------

    def ground_references(
        self,
        draft: Dict[str, Any],
        context: ExtractedContext,
        candidate: DecisionCandidate,
    ) -> Tuple[List[SourceReference], List[str]]:
        """Keep only draft references that point at supplied evidence.

        Returns (grounded references, ids that were dropped).
        """
        refs = draft.get("sourceReferences", draft.get("source_references"))
        if not isinstance(refs, list):
            return [], []

        by_id: Dict[str, EvidenceItem] = {}
        for item in context.evidence:
            by_id.setdefault(item.id, item)
            if item.source_id:
                by_id.setdefault(item.source_id, item)

        grounded: List[SourceReference] = []
        dropped: List[str] = []
        seen = set()
        for ref in refs:
            if isinstance(ref, str):
                ref = {"externalId": ref}
            if not isinstance(ref, dict):
                continue
            external_id = str(
                ref.get("externalId") or ref.get("external_id")
                or ref.get("messageId") or ref.get("id") or ""
            ).strip()
            if not external_id:
                continue
            evidence = by_id.get(external_id)
            if evidence is None:
                dropped.append(external_id)
                continue
            if evidence.id in seen:
                continue
            seen.add(evidence.id)
            grounded.append(self._reference_for(evidence, candidate, ref))
        return grounded, dropped

    def _reference_for(
        self,
        evidence: EvidenceItem,
        candidate: DecisionCandidate,
        ref: Optional[Dict[str, Any]] = None,
    ) -> SourceReference:
        ref = ref or {}
        metadata = evidence.metadata or {}
        source_type = SourceType.coerce(
            metadata.get("source"), default=_EVIDENCE_SOURCE_TYPES[evidence.type]
        )
        timestamp = (
            _parse_timestamp(ref.get("timestamp"))
            or evidence.timestamp
            or candidate.window_end
            or candidate.created_at
        )
        return SourceReference(
            type=source_type,
            external_id=evidence.id,
            timestamp=timestamp,
            url=ref.get("url") or metadata.get("url"),
            author=ref.get("author") or metadata.get("author"),
            excerpt=str(ref.get("excerpt") or evidence.content),
            metadata={"source_id": evidence.source_id, "relevance": evidence.relevance},
        )

    def _build_brief(
        self,
        candidate: DecisionCandidate,
        draft: Dict[str, Any],
        references: List[SourceReference],
        confidence: float,
    ) -> DecisionBrief:
        title = draft.get("title") or draft.get("decisionSummary") or draft.get("decision_summary") or ""
        return DecisionBrief(
            id=brief_id_for_candidate(candidate.id),
            title=str(title).strip(),
            problem=str(draft.get("problem") or "").strip(),
            options_considered=_as_str_list(
                draft.get("optionsConsidered", draft.get("options_considered"))
            ),
            rationale=str(draft.get("rationale") or "").strip(),
            participants=_as_str_list(draft.get("participants")),
            source_references=references,
            confidence=min(1.0, max(0.0, confidence)),
            tags=_as_str_list(draft.get("tags")),
            decision_candidate_id=candidate.id,
        )

    def validate(
        self,
        candidate: DecisionCandidate,
        draft: Dict[str, Any],
        context: ExtractedContext,
        parsed: bool = True,
    ) -> Tuple[DecisionBrief, RationaleValidation]:
        """Build the brief a draft describes and judge it."""
        errors: List[str] = []
        hallucinations: List[str] = []
        missing: List[str] = []

        if not parsed:
            errors.append("Response was not valid JSON")

        confidence, confidence_ok = draft_confidence(draft)
        if not confidence_ok:
            errors.append("confidence must be a number between 0 and 1")

        references, dropped = self.ground_references(draft, context, candidate)
        if dropped:
            logger.info(
                "Dropped %d reference(s) not matching supplied evidence for %s: %s",
                len(dropped), candidate.id, ", ".join(dropped[:5]),
            )

        if self._hallucination_check:
            draft_length = len(json.dumps(draft, default=str))
            if draft_length > self._hallucination_ratio * len(context.as_text()):
                hallucinations.append("Brief contains substantially more content than the context supports")
                confidence *= HALLUCINATION_PENALTY

        if not references:
            if dropped:
                missing.append("Source references do not match any supplied evidence")
            else:
                missing.append("No source references provided")
            confidence *= MISSING_CITATION_PENALTY

        if hallucinations:
            errors.append("Hallucinations detected in rationale")
        if missing:
            errors.append("Missing citations for factual claims")

        brief = self._build_brief(candidate, draft, references, confidence)
        for error in brief_schema_errors(brief):
            if error not in errors:
                errors.append(error)

        if not errors and confidence < self._citation_threshold:
            errors.append(
                f"confidence {confidence:.2f} is below the required {self._citation_threshold:.2f}"
            )

        validation = RationaleValidation(
            valid=not errors,
            errors=errors,
            hallucinations=hallucinations,
            missing_citations=missing,
            confidence=confidence,
        )
        return brief, validation

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def fallback_brief(
        self,
        candidate: DecisionCandidate,
        context: Optional[ExtractedContext],
        confidence: float = DEFAULT_DRAFT_CONFIDENCE,
        messages: Sequence[Message] = (),
    ) -> DecisionBrief:
        """Explicitly degraded brief: no options, no references, invalid.

        Participants are the extracted stakeholders, else the window authors.
        """
        problem = (context.problem_statement if context else "") or candidate.summary
        brief = DecisionBrief(
            id=brief_id_for_candidate(candidate.id),
            title=_truncate(candidate.summary, TITLE_MAX_CHARS),
            problem=_truncate(problem, PROBLEM_MAX_CHARS),
            options_considered=[],
            rationale=FALLBACK_RATIONALE,
            participants=fallback_participants(context, messages),
            source_references=[],
            confidence=min(1.0, max(0.0, confidence)),
            decision_candidate_id=candidate.id,
            degraded=True,
        )
        return brief.model_copy(update={"payload_text": render_payload_text(brief)})

    def citations_for(self, brief: DecisionBrief, context: ExtractedContext, candidate: DecisionCandidate) -> List[SourceReference]:
        """The brief's references plus top evidence it did not reference."""
        citations = list(brief.source_references)
        referenced = {c.external_id for c in citations}
        for evidence in context.evidence[: self._max_citations]:
            if evidence.id not in referenced:
                citations.append(self._reference_for(evidence, candidate))
                referenced.add(evidence.id)
        return citations

    def _parse_draft(self, raw: str) -> Tuple[Dict[str, Any], bool]:
        data = try_parse_llm_json(raw)
        if isinstance(data, dict):
            return data, True
        return {}, False

    def generate_brief(
        self,
        candidate: DecisionCandidate,
        context: ExtractedContext,
        messages: Sequence[Message] = (),
    ) -> SynthesisResult:
        """
        Generate, validate and repair a brief for one candidate.

        Returns a valid brief, or a fallback brief flagged invalid when the
        repair budget is exhausted or the model cannot be reached.
        """
        started = time.monotonic()
        self._metrics.increment("synthesis_attempts_total")

        try:
            raw = self._llm.complete(self.build_prompt(candidate, context), model=self._model)
        except Exception as e:
            logger.warning("Brief generation failed for %s: %s", candidate.id, e)
            return self._fallback_result(
                candidate, context, [f"Generation failed: {e}"], DEFAULT_DRAFT_CONFIDENCE, 0, started,
                messages=messages,
            )

        draft, parsed = self._parse_draft(raw)
        brief, validation = self.validate(candidate, draft, context, parsed=parsed)

        repairs = 0
        while not validation.valid and repairs < self._validation_attempts:
            previous = json.dumps(draft, indent=2, default=str) if parsed else raw
            repairs += 1
            self._metrics.increment("synthesis_repairs_total")
            log_event(
                logger, "brief_repair", "attempt",
                decision_id=candidate.id, attempt=repairs, errors=validation.errors,
            )
            try:
                raw = self._llm.complete(
                    self.build_repair_prompt(previous, validation, context), model=self._model
                )
            except Exception as e:
                logger.warning("Brief repair %d failed for %s: %s", repairs, candidate.id, e)
                validation.errors.append(f"Repair failed: {e}")
                break
            draft, parsed = self._parse_draft(raw)
            brief, validation = self.validate(candidate, draft, context, parsed=parsed)

        if not validation.valid:
            return self._fallback_result(
                candidate, context, validation.errors, validation.confidence, repairs, started,
                hallucinations=validation.hallucinations,
                missing_citations=validation.missing_citations,
                messages=messages,
            )

        brief = brief.model_copy(update={"payload_text": render_payload_text(brief)})
        elapsed_ms = (time.monotonic() - started) * 1000
        self._metrics.increment("synthesis_valid_total")
        log_event(
            logger, "brief_synthesis", "valid",
            decision_id=candidate.id, brief_id=brief.id, confidence=round(validation.confidence, 3),
            references=len(brief.source_references), repairs=repairs, ms=round(elapsed_ms, 1),
        )
        return SynthesisResult(
            brief=brief,
            validation=validation,
            citations=self.citations_for(brief, context, candidate),
            generation_time_ms=elapsed_ms,
            repair_attempts=repairs,
            context=context,
        )

    def _fallback_result(
        self,
        candidate: DecisionCandidate,
        context: Optional[ExtractedContext],
        errors: List[str],
        confidence: float,
        repairs: int,
        started: float,
        hallucinations: Optional[List[str]] = None,
        missing_citations: Optional[List[str]] = None,
        messages: Sequence[Message] = (),
    ) -> SynthesisResult:
        brief = self.fallback_brief(candidate, context, confidence, messages)
        elapsed_ms = (time.monotonic() - started) * 1000
        self._metrics.increment("synthesis_invalid_total")
        log_event(
            logger, "brief_synthesis", "fallback", level=logging.WARNING,
            decision_id=candidate.id, brief_id=brief.id, repairs=repairs, errors=errors,
        )
        return SynthesisResult(
            brief=brief,
            validation=RationaleValidation(
                valid=False,
                errors=list(errors),
                hallucinations=list(hallucinations or []),
                missing_citations=list(missing_citations or []),
                confidence=brief.confidence,
            ),
            citations=[],
            generation_time_ms=elapsed_ms,
            repair_attempts=repairs,
            context=context,
        )

    def synthesize(
        self,
        candidate: DecisionCandidate,
        messages: Sequence[Message],
    ) -> SynthesisResult:
        """Stage A then Stage B for one candidate. Never raises."""
        started = time.monotonic()
        context = None
        try:
            if self._extractor is None:
                raise RuntimeError("no context extractor configured")
            context = self._extractor.extract(candidate, messages)
            return self.generate_brief(candidate, context, messages)
        except Exception as e:
            logger.error("Synthesis failed for %s: %s", candidate.id, e)
            return self._fallback_result(
                candidate, context, [f"Generation failed: {e}"], DEFAULT_DRAFT_CONFIDENCE, 0, started,
                messages=messages,
            )
