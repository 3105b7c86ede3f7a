"""
Scribe - Decision Capture

Turns already-persisted conversations into decision candidates and
citation-backed decision briefs.

Key Components:
- segment: Fixed-size message windows
- DecisionDetector: LLM classification against the confidence rubric
- ContextExtractor: Stage A, evidence search and structured context
- BriefSynthesizer: Stage B, generate/validate/repair with explicit fallback
- CapturePipeline: Batch orchestration with idempotent persistence

Rules for Scribe:
1. Only windows at or above the confidence threshold become candidates
2. One candidate per decision per run (summary fingerprint dedup)
3. A brief is valid only with a reference to supplied evidence
4. Repair is bounded; exhaustion yields a fallback brief flagged invalid
5. Invalid briefs are never indexed for retrieval
"""

from .segmenter import Window, segment
from .detector import DecisionDetector, DetectionReport
from .context_extractor import ContextExtractor
from .brief_synthesizer import BriefSynthesizer, RationaleValidation, SynthesisResult
from .pipeline import CapturePipeline, PipelineReport, BatchReport

__all__ = [
    "Window",
    "segment",
    "DecisionDetector",
    "DetectionReport",
    "ContextExtractor",
    "BriefSynthesizer",
    "RationaleValidation",
    "SynthesisResult",
    "CapturePipeline",
    "PipelineReport",
    "BatchReport",
]
