"""
Decision Detector

LLM-based decision classification over conversation windows.
Core component of the Scribe capture pipeline.

Algorithm:
1. Segment the conversation into windows
2. Ask the model whether each window contains a decision, scored against
   the confidence rubric
3. Parse leniently (JSON first, regex heuristics second)
4. Keep decisions at or above the confidence threshold
5. Deduplicate by summary fingerprint, earliest window wins
"""

import logging
import math
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..common.gateway import LanguageModel
from ..common.llm_utils import Degraded, Parsed, lenient_parse
from ..common.observability import Metrics, log_event
from ..common.rubric import render_rubric_guidance
from ..common.schemas import DecisionCandidate, Message, generate_candidate_id
from .segmenter import Window, segment

logger = logging.getLogger("knowwhy.scribe.detector")

DEFAULT_SUMMARY = "Decision detected in conversation"
DEFAULT_CONFIDENCE = 0.5
FINGERPRINT_LENGTH = 50


DETECTION_PROMPT = """You analyze team conversations and decide whether they contain a decision.

Conversation window ({count} messages):
{context}

Decision signals to look for:
- Explicit choice words: "we decided", "let's go with", "chose", "opted for"
- Commitment phrases: "we'll use", "going forward", "from now on"
- Problem-solving: "solution is", "approach will be"
- Future actions: "implementing", "starting next week"

{rubric}

Respond with a JSON object only, no explanation text:
{{
  "isDecision": true or false,
  "summary": "2-3 sentences describing what was decided",
  "confidence": number between 0.0 and 1.0 following the rubric,
  "reasoning": "one sentence on which signals you relied on",
  "decisionSignals": ["quoted phrases that signal the decision"]
}}

JSON:"""


_IS_DECISION_FIELD = re.compile(
    r"""["']?is_?decision["']?\s*[:=]\s*["']?(true|false|yes|no)\b""", re.IGNORECASE
)
_CONFIDENCE = re.compile(r"""confidence["']?[\s:=]+["']?(\d+(?:\.\d+)?)""", re.IGNORECASE)
_QUOTED_SUMMARY = re.compile(r'"summary"\s*:\s*"((?:[^"\\]|\\.)*)"', re.IGNORECASE)
_SUMMARY_LINE = re.compile(r"^\s*\**summary\**\s*[:\-]\s*(.+)$", re.IGNORECASE | re.MULTILINE)
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def summary_fingerprint(summary: str) -> str:
    """Dedup key: lowercase alphanumerics of the summary, first 50 chars."""
    return _NON_ALNUM.sub("", (summary or "").lower())[:FINGERPRINT_LENGTH]


def coerce_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    """Number in [0, 1]; percentages are scaled down, junk yields ``default``."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    if 1.0 < number <= 100.0:
        number /= 100.0
    return min(1.0, max(0.0, number))


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    if isinstance(value, (int, float)):
        return value != 0
    return False


def parse_detection_heuristics(raw: str) -> Dict[str, Any]:
    """Best-effort fields from a non-JSON detection reply."""
    # Only an explicit isDecision field counts; free-text "yes" or "true" does not
    match = _IS_DECISION_FIELD.search(raw)
    is_decision = bool(match) and match.group(1).lower() in ("true", "yes")

    confidence_match = _CONFIDENCE.search(raw)
    confidence = coerce_confidence(confidence_match.group(1)) if confidence_match else DEFAULT_CONFIDENCE

    summary = DEFAULT_SUMMARY
    summary_match = _QUOTED_SUMMARY.search(raw) or _SUMMARY_LINE.search(raw)
    if summary_match and summary_match.group(1).strip():
        summary = summary_match.group(1).strip().strip('"')

    return {
        "isDecision": is_decision,
        "confidence": confidence,
        "summary": summary,
    }


@dataclass
class WindowClassification:
    """Outcome of classifying one window"""
    window: Window
    is_decision: bool = False
    confidence: float = 0.0
    summary: str = ""
    reasoning: str = ""
    decision_signals: List[str] = field(default_factory=list)
    degraded: bool = False
    error: Optional[str] = None


@dataclass
class DetectionReport:
    """Result of a detection run over one conversation"""
    conversation_id: str
    candidates: List[DecisionCandidate] = field(default_factory=list)
    windows_total: int = 0
    windows_scanned: int = 0
    windows_failed: int = 0
    below_threshold: int = 0
    duplicates_dropped: int = 0
    degraded_parses: int = 0
    cancelled: bool = False
    errors: List[str] = field(default_factory=list)


class DecisionDetector:
    """
    Detects decisions in conversation windows with a language model.

    A window whose model call fails (after the gateway's retries) is counted
    and skipped; the run always completes with a report.
    """

    def __init__(
        self,
        llm: LanguageModel,
        confidence_threshold: float = 0.7,
        window_size: int = 10,
        window_overlap: int = 0,
        concurrency: int = 1,
        agent_version: str = "detector-1.0",
        model: Optional[str] = None,
        metrics: Optional[Metrics] = None,
    ):
        """
        Initialize decision detector.

        Args:
            llm: Language model (normally a rate-limited, retrying GuardedLLM)
            confidence_threshold: Minimum confidence to accept a decision
            window_size: Messages per window
            window_overlap: Messages shared by consecutive windows
            concurrency: Windows classified in parallel
            agent_version: Recorded on every candidate
            model: Optional model override passed to the LLM
            metrics: Counter sink
        """
        self._llm = llm
        self._threshold = confidence_threshold
        self._window_size = window_size
        self._window_overlap = window_overlap
        self._concurrency = max(1, concurrency)
        self._agent_version = agent_version
        self._model = model
        self._metrics = metrics or Metrics()

    @classmethod
    def from_config(cls, llm: LanguageModel, config, metrics: Optional[Metrics] = None) -> "DecisionDetector":
        """Build from a ``DetectorConfig`` section."""
        return cls(
            llm,
            confidence_threshold=config.confidence_threshold,
            window_size=config.window_size,
            window_overlap=config.window_overlap,
            concurrency=config.concurrency,
            agent_version=config.agent_version,
            metrics=metrics,
        )

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def window_size(self) -> int:
        return self._window_size

    @property
    def window_overlap(self) -> int:
        return self._window_overlap

    def build_prompt(self, window: Window) -> str:
        return DETECTION_PROMPT.format(
            count=len(window),
            context=window.context,
            rubric=render_rubric_guidance(),
        )

    def classify_window(self, window: Window) -> WindowClassification:
        """
        Classify a single window.

        Model errors propagate to the caller; parse failures never do.
        """
        raw = self._llm.complete(self.build_prompt(window), model=self._model)
        outcome = lenient_parse(raw, parse_detection_heuristics)

        match outcome:
            case Parsed(data=data):
                degraded = False
            case Degraded(data=data, reason=reason):
                degraded = True
                logger.info(
                    "Window %d of %s: %s detection reply, using heuristics",
                    window.index, window.conversation_id, reason,
                )

        is_decision = coerce_bool(data.get("isDecision", data.get("is_decision", False)))
        summary = str(data.get("summary") or "").strip() or DEFAULT_SUMMARY
        signals = data.get("decisionSignals", data.get("decision_signals", []))

        return WindowClassification(
            window=window,
            is_decision=is_decision,
            confidence=coerce_confidence(data.get("confidence")),
            summary=summary,
            reasoning=str(data.get("reasoning") or ""),
            decision_signals=[str(s) for s in signals] if isinstance(signals, list) else [],
            degraded=degraded,
        )

    def _classify_safely(
        self,
        window: Window,
        cancel_event: Optional[threading.Event],
    ) -> Optional[WindowClassification]:
        if cancel_event is not None and cancel_event.is_set():
            return None
        try:
            return self.classify_window(window)
        except Exception as e:
            logger.warning(
                "Detection failed for window %d of %s: %s",
                window.index, window.conversation_id, e,
            )
            return WindowClassification(window=window, error=str(e))

    def _to_candidate(self, result: WindowClassification) -> DecisionCandidate:
        window = result.window
        return DecisionCandidate(
            id=generate_candidate_id(window.conversation_id, window.index, window.start),
            conversation_id=window.conversation_id,
            is_decision=True,
            summary=result.summary,
            confidence=result.confidence,
            agent_version=self._agent_version,
            window_index=window.index,
            window_start=window.start,
            window_end=window.end,
            reasoning=result.reasoning,
            decision_signals=result.decision_signals,
            parse_status="degraded" if result.degraded else "parsed",
        )

    def detect(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        cancel_event: Optional[threading.Event] = None,
    ) -> DetectionReport:
        """
        Detect decisions in one conversation.

        Args:
            conversation_id: Conversation the messages belong to
            messages: Conversation messages (any order)
            cancel_event: Checked between windows; set it to stop early

        Returns:
            DetectionReport with candidates in window order
        """
        windows = segment(
            messages,
            window_size=self._window_size,
            overlap=self._window_overlap,
            conversation_id=conversation_id,
        )
        return self.detect_windows(conversation_id, windows, cancel_event=cancel_event)

    def detect_windows(
        self,
        conversation_id: str,
        windows: Sequence[Window],
        cancel_event: Optional[threading.Event] = None,
    ) -> DetectionReport:
        report = DetectionReport(conversation_id=conversation_id, windows_total=len(windows))

        if self._concurrency > 1 and len(windows) > 1:
            with ThreadPoolExecutor(
                max_workers=min(self._concurrency, len(windows)),
                thread_name_prefix="knowwhy-detect",
            ) as pool:
                results = list(pool.map(lambda w: self._classify_safely(w, cancel_event), windows))
        else:
            results = []
            for window in windows:
                if cancel_event is not None and cancel_event.is_set():
                    break
                results.append(self._classify_safely(window, cancel_event))

        seen = set()
        for result in results:
            if result is None:
                continue
            report.windows_scanned += 1
            if result.error is not None:
                report.windows_failed += 1
                report.errors.append(f"window {result.window.index}: {result.error}")
                continue
            if result.degraded:
                report.degraded_parses += 1
            if not result.is_decision:
                continue
            if result.confidence < self._threshold:
                report.below_threshold += 1
                continue
            fingerprint = summary_fingerprint(result.summary)
            if fingerprint in seen:
                report.duplicates_dropped += 1
                continue
            seen.add(fingerprint)
            report.candidates.append(self._to_candidate(result))

        report.cancelled = report.windows_scanned < len(windows)

        self._metrics.increment("detection_runs_total")
        self._metrics.increment("detection_candidates_total", len(report.candidates))
        if report.windows_failed:
            self._metrics.increment("detection_window_failures_total", report.windows_failed)
        log_event(
            logger,
            "detection_run",
            "cancelled" if report.cancelled else "ok",
            conversation_id=conversation_id,
            windows=len(windows),
            scanned=report.windows_scanned,
            failed=report.windows_failed,
            candidates=len(report.candidates),
            below_threshold=report.below_threshold,
            duplicates=report.duplicates_dropped,
            degraded=report.degraded_parses,
        )
        return report
