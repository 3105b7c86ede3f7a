"""
Decision Brief Schema

Core principle: a brief is only as good as its sources. Every valid brief
carries at least one source reference that points at evidence actually
retrieved for it; a brief that cannot be grounded is returned as an explicit,
degraded fallback instead.

Lifecycle: pending -> approved -> archived (pending may also archive directly).
"""

import hashlib
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import InvalidTransitionError
from ..rubric import ConfidenceTier, tier_of

TITLE_MAX_CHARS = 150
PROBLEM_MAX_CHARS = 1000
RATIONALE_MAX_CHARS = 500
EXCERPT_MAX_CHARS = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================

class SourceType(str, Enum):
    """Where a source reference points"""
    SLACK = "slack"
    ZOOM = "zoom"
    GOOGLEMEET = "googlemeet"
    JIRA = "jira"
    GITHUB = "github"
    UPLOAD = "upload"
    CONVERSATION = "conversation"
    DECISION_BRIEF = "decision_brief"
    EXTERNAL = "external"

    @classmethod
    def coerce(cls, value: Any, default: "SourceType" = None) -> "SourceType":
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.EXTERNAL


class BriefStatus(str, Enum):
    """Review status of a brief"""
    PENDING = "pending"
    APPROVED = "approved"
    ARCHIVED = "archived"


class EvidenceType(str, Enum):
    CONVERSATION = "conversation"
    DECISION_BRIEF = "decision_brief"
    EXTERNAL = "external"


_ALLOWED_TRANSITIONS = {
    BriefStatus.PENDING: {BriefStatus.APPROVED, BriefStatus.ARCHIVED},
    BriefStatus.APPROVED: {BriefStatus.ARCHIVED},
    BriefStatus.ARCHIVED: set(),
}

STATUS_RANK = {BriefStatus.PENDING: 0, BriefStatus.APPROVED: 1, BriefStatus.ARCHIVED: 2}


# ============================================================================
# Sub-models
# ============================================================================

class SourceReference(BaseModel):
    """Pointer from a brief back to the record that supports it"""
    type: SourceType
    external_id: str = Field(..., description="Id of the cited message, chunk or brief")
    timestamp: datetime
    url: Optional[str] = None
    author: Optional[str] = None
    excerpt: str = Field(default="", description="Quoted passage, at most 500 chars")
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("excerpt")
    @classmethod
    def _truncate_excerpt(cls, value: str) -> str:
        if len(value) > EXCERPT_MAX_CHARS:
            return value[: EXCERPT_MAX_CHARS - 3] + "..."
        return value

    def format(self) -> str:
        """One-line display form"""
        label = {
            SourceType.SLACK: "Slack",
            SourceType.ZOOM: "Zoom",
            SourceType.GOOGLEMEET: "Google Meet",
            SourceType.JIRA: "Jira",
            SourceType.GITHUB: "GitHub",
            SourceType.UPLOAD: "Upload",
        }.get(self.type, self.type.value.replace("_", " ").title())
        parts = [label, self.timestamp.date().isoformat()]
        if self.author:
            parts.append(self.author)
        text = " · ".join(parts)
        return f"{text} ({self.url})" if self.url else text


class EvidenceItem(BaseModel):
    """A retrieved passage that a brief may cite"""
    id: str
    type: EvidenceType = EvidenceType.CONVERSATION
    source_id: str = ""
    content: str
    relevance: float = Field(ge=0.0, le=1.0, default=0.0)
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExtractedContext(BaseModel):
    """Stage A output: structured context around a detected decision"""
    decision_id: str
    problem_statement: str = ""
    constraints: List[str] = Field(default_factory=list)
    alternatives_considered: List[str] = Field(default_factory=list)
    stakeholders: List[str] = Field(default_factory=list)
    evidence: List[EvidenceItem] = Field(default_factory=list)
    related_decisions: List[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0, default=0.5)
    extracted_at: datetime = Field(default_factory=utcnow)
    degraded: bool = False

    def as_text(self) -> str:
        """Flattened text the hallucination heuristic measures drafts against."""
        evidence = "\n".join(e.content for e in self.evidence)
        return (
            f"Problem: {self.problem_statement}\n"
            f"Constraints: {', '.join(self.constraints)}\n"
            f"Alternatives: {', '.join(self.alternatives_considered)}\n"
            f"Stakeholders: {', '.join(self.stakeholders)}\n"
            f"Evidence:\n{evidence}"
        )


# ============================================================================
# Main Schemas
# ============================================================================

class DecisionCandidate(BaseModel):
    """A window the detector accepted as a decision. Immutable."""
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    is_decision: bool = True
    summary: str
    confidence: float = Field(ge=0.0, le=1.0)
    agent_version: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    window_index: int = 0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    reasoning: str = ""
    decision_signals: List[str] = Field(default_factory=list)
    parse_status: Literal["parsed", "degraded"] = "parsed"
    brief_id: Optional[str] = None

    @property
    def tier(self) -> ConfidenceTier:
        return tier_of(self.confidence)

    def with_brief(self, brief_id: str) -> "DecisionCandidate":
        """Back-link to the brief produced from this candidate."""
        return self.model_copy(update={"brief_id": brief_id})


class DecisionBrief(BaseModel):
    """
    Decision Brief

    Lengths are checked by ``brief_invariant_errors`` rather than enforced on
    construction, so an oversized draft can be represented and repaired.
    """
    id: str
    title: str = ""
    problem: str = ""
    options_considered: List[str] = Field(default_factory=list)
    rationale: str = ""
    participants: List[str] = Field(default_factory=list)
    source_references: List[SourceReference] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0, default=0.5)
    status: BriefStatus = BriefStatus.PENDING
    tags: List[str] = Field(default_factory=list)
    decision_candidate_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    degraded: bool = False
    payload_text: str = Field(default="", description="Markdown rendering used for indexing")

    @property
    def tier(self) -> ConfidenceTier:
        return tier_of(self.confidence)

    def _transition(self, target: BriefStatus, **updates) -> "DecisionBrief":
        if target not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status.value, target.value)
        updates.update(status=target, updated_at=utcnow())
        return self.model_copy(update=updates)

    def approve(self, approved_by: Optional[str] = None) -> "DecisionBrief":
        """pending -> approved"""
        return self._transition(
            BriefStatus.APPROVED, approved_at=utcnow(), approved_by=approved_by
        )

    def archive(self) -> "DecisionBrief":
        """pending|approved -> archived"""
        return self._transition(BriefStatus.ARCHIVED)


# ============================================================================
# Validation
# ============================================================================

def brief_invariant_errors(brief: DecisionBrief) -> List[str]:
    """Record invariants every stored brief should satisfy."""
    errors = []
    if len(brief.title) > TITLE_MAX_CHARS:
        errors.append(f"title must be at most {TITLE_MAX_CHARS} characters")
    if len(brief.problem) > PROBLEM_MAX_CHARS:
        errors.append(f"problem must be at most {PROBLEM_MAX_CHARS} characters")
    if len(brief.rationale) > RATIONALE_MAX_CHARS:
        errors.append(f"rationale must be at most {RATIONALE_MAX_CHARS} characters")
    if not brief.participants:
        errors.append("participants must include at least 1 person")
    if not brief.source_references:
        errors.append("sourceReferences must have at least 1 source")
    for i, ref in enumerate(brief.source_references):
        if not ref.external_id:
            errors.append(f"sourceReferences[{i}] is missing an external id")
        if len(ref.excerpt) > EXCERPT_MAX_CHARS:
            errors.append(f"sourceReferences[{i}] excerpt exceeds {EXCERPT_MAX_CHARS} characters")
    if not _valid_confidence(brief.confidence):
        errors.append("confidence must be a number between 0 and 1")
    return errors


def brief_schema_errors(brief: DecisionBrief) -> List[str]:
    """Schema-valid gate used by the synthesizer: required fields plus invariants."""
    errors = []
    if not brief.title.strip():
        errors.append("title is required")
    if not brief.problem.strip():
        errors.append("problem is required")
    if not brief.options_considered:
        errors.append("optionsConsidered must have at least 1 option")
    if not brief.rationale.strip():
        errors.append("rationale is required")
    for error in brief_invariant_errors(brief):
        if error not in errors:
            errors.append(error)
    return errors


def _valid_confidence(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and not math.isnan(value)
        and 0.0 <= value <= 1.0
    )


# ============================================================================
# Ids
# ============================================================================

def generate_candidate_id(
    conversation_id: str,
    window_index: int,
    window_start: Optional[datetime] = None,
) -> str:
    """Deterministic candidate id; the natural key for idempotent upserts."""
    start = window_start.isoformat() if window_start else ""
    digest = hashlib.sha1(f"{conversation_id}:{window_index}:{start}".encode()).hexdigest()
    return f"cand_{digest[:16]}"


def brief_id_for_candidate(candidate_id: str) -> str:
    """Brief id derived from its candidate, so regeneration overwrites."""
    suffix = candidate_id[len("cand_"):] if candidate_id.startswith("cand_") else candidate_id
    return f"brief_{suffix}"
