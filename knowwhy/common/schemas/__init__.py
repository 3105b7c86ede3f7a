"""
KnowWhy Schemas

Conversation messages, decision candidates and decision briefs.
"""

from .conversation import Message
from .decision_brief import (
    DecisionBrief,
    DecisionCandidate,
    ExtractedContext,
    EvidenceItem,
    EvidenceType,
    SourceReference,
    SourceType,
    BriefStatus,
    brief_invariant_errors,
    brief_schema_errors,
    generate_candidate_id,
    brief_id_for_candidate,
    TITLE_MAX_CHARS,
    PROBLEM_MAX_CHARS,
    RATIONALE_MAX_CHARS,
    EXCERPT_MAX_CHARS,
)
from .templates import render_payload_text, render_display_text, PAYLOAD_TEMPLATE

__all__ = [
    "Message",
    "DecisionBrief",
    "DecisionCandidate",
    "ExtractedContext",
    "EvidenceItem",
    "EvidenceType",
    "SourceReference",
    "SourceType",
    "BriefStatus",
    "brief_invariant_errors",
    "brief_schema_errors",
    "generate_candidate_id",
    "brief_id_for_candidate",
    "TITLE_MAX_CHARS",
    "PROBLEM_MAX_CHARS",
    "RATIONALE_MAX_CHARS",
    "EXCERPT_MAX_CHARS",
    "render_payload_text",
    "render_display_text",
    "PAYLOAD_TEMPLATE",
]
