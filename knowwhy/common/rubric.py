"""
Confidence Rubric

Five tiers mapping a decision confidence to a label and the language cues
that justify it. The rubric is data plus two pure functions; it never
classifies text itself. The detector renders it into its prompt so that
model confidences follow a shared scale.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple


class ConfidenceTier(str, Enum):
    """Decision confidence tiers, strongest first"""
    EXPLICIT = "explicit"
    STRONG_IMPLICIT = "strong_implicit"
    PROBABLE = "probable"
    WEAK = "weak"
    NOT_A_DECISION = "not_a_decision"


@dataclass(frozen=True)
class RubricTier:
    tier: ConfidenceTier
    low: float   # inclusive
    high: float  # exclusive, except for the top tier
    description: str
    cues: Tuple[str, ...]

    def contains(self, confidence: float) -> bool:
        if self.tier is ConfidenceTier.EXPLICIT:
            return self.low <= confidence <= self.high
        return self.low <= confidence < self.high


RUBRIC: Tuple[RubricTier, ...] = (
    RubricTier(
        tier=ConfidenceTier.EXPLICIT,
        low=0.95,
        high=1.0,
        description="Explicit commitment language; the decision is stated outright",
        cues=(
            "decided", "decision", "we will", "approved", "let's ship", "shipping",
            "merged", "going with", "settled on", "committed to",
        ),
    ),
    RubricTier(
        tier=ConfidenceTier.STRONG_IMPLICIT,
        low=0.70,
        high=0.95,
        description="Clear consensus or agreement without a formal statement",
        cues=(
            "sounds good", "let's do", "i'm in", "agreed", "no objections",
            "fine by me", "works for me", "approved", "green light", "go ahead",
        ),
    ),
    RubricTier(
        tier=ConfidenceTier.PROBABLE,
        low=0.50,
        high=0.70,
        description="The group appears to have converged, but nobody confirms it",
        cues=(
            "multiple people agreed", "no strong objections", "seemed to work well",
            "everyone on board", "we ended up with", "accepted the tradeoff",
        ),
    ),
    RubricTier(
        tier=ConfidenceTier.WEAK,
        low=0.25,
        high=0.50,
        description="Proposals and hedged suggestions still under discussion",
        cues=(
            "what if", "maybe", "could we", "should we consider", "thoughts on",
            "proposal", "is it worth",
        ),
    ),
    RubricTier(
        tier=ConfidenceTier.NOT_A_DECISION,
        low=0.0,
        high=0.25,
        description="Questions, status updates and meta discussion",
        cues=(
            "question", "has anyone", "do we know", "is it true", "update:",
            "just checking",
        ),
    ),
)

_BY_TIER: Dict[ConfidenceTier, RubricTier] = {t.tier: t for t in RUBRIC}


def tier_of(confidence: float) -> ConfidenceTier:
    """Map a confidence to its tier. Values outside [0, 1] are clamped."""
    if confidence is None or math.isnan(confidence):
        raise ValueError("confidence must be a number")
    value = min(1.0, max(0.0, float(confidence)))
    for rubric_tier in RUBRIC:
        if rubric_tier.contains(value):
            return rubric_tier.tier
    return ConfidenceTier.NOT_A_DECISION


def format_confidence(confidence: float) -> Dict[str, str]:
    """Display form: tier label, percentage and tier description."""
    tier = tier_of(confidence)
    return {
        "tier": tier.value,
        "percentage": f"{round(min(1.0, max(0.0, confidence)) * 100)}%",
        "description": _BY_TIER[tier].description,
    }


def render_rubric_guidance() -> str:
    """Render the rubric as a prompt block for the decision detector."""
    lines = ["Confidence rubric (score the strongest signal present):"]
    for rubric_tier in RUBRIC:
        upper = "1.00" if rubric_tier.tier is ConfidenceTier.EXPLICIT else f"<{rubric_tier.high:.2f}"
        cues = ", ".join(f'"{c}"' for c in rubric_tier.cues)
        lines.append(
            f"- {rubric_tier.tier.value} ({rubric_tier.low:.2f} to {upper}): "
            f"{rubric_tier.description}. Cues: {cues}"
        )
    return "\n".join(lines)
