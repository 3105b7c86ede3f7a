"""
Capture Pipeline

Batch orchestration of the Scribe stages over already-persisted
conversations:

1. Index the conversation's messages (evidence for Stage A)
2. Segment and detect decision candidates
3. Upsert candidates (idempotent on conversation + window)
4. Synthesize a brief per candidate, fanned out under a bounded pool
5. Upsert briefs, link them to their candidates, index valid briefs

One failing candidate or conversation is counted and skipped; the batch
always completes with a report. Re-running a batch rewrites the same records.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from ..common.observability import Metrics, log_event
from ..common.schemas import BriefStatus, DecisionCandidate, Message
from ..common.search_index import InMemorySearchIndex, index_brief, index_messages
from ..common.store import DecisionStore
from .brief_synthesizer import BriefSynthesizer, SynthesisResult
from .detector import DecisionDetector, DetectionReport
from .segmenter import Window, segment

logger = logging.getLogger("knowwhy.scribe.pipeline")


@dataclass
class PipelineReport:
    """Outcome of processing one conversation"""
    conversation_id: str
    detection: Optional[DetectionReport] = None
    candidate_ids: List[str] = field(default_factory=list)
    brief_ids: List[str] = field(default_factory=list)
    valid_briefs: int = 0
    invalid_briefs: int = 0
    failed_candidates: int = 0
    messages_indexed: int = 0
    cancelled: bool = False
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        detection = self.detection
        return {
            "conversation_id": self.conversation_id,
            "windows": detection.windows_total if detection else 0,
            "windows_failed": detection.windows_failed if detection else 0,
            "candidates": self.candidate_ids,
            "briefs": self.brief_ids,
            "valid_briefs": self.valid_briefs,
            "invalid_briefs": self.invalid_briefs,
            "failed_candidates": self.failed_candidates,
            "messages_indexed": self.messages_indexed,
            "cancelled": self.cancelled,
            "errors": self.errors,
        }


@dataclass
class BatchReport:
    """Outcome of a batch over many conversations"""
    reports: List[PipelineReport] = field(default_factory=list)
    failed_conversations: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def candidates(self) -> int:
        return sum(len(r.candidate_ids) for r in self.reports)

    @property
    def valid_briefs(self) -> int:
        return sum(r.valid_briefs for r in self.reports)


class CapturePipeline:
    """Detect -> persist -> synthesize -> persist/index, per conversation."""

    def __init__(
        self,
        detector: DecisionDetector,
        synthesizer: BriefSynthesizer,
        store: DecisionStore,
        index: Optional[InMemorySearchIndex] = None,
        concurrency: int = 4,
        persist_invalid_briefs: bool = True,
        index_conversations: bool = True,
        metrics: Optional[Metrics] = None,
    ):
        """
        Initialize the capture pipeline.

        Args:
            detector: Decision detector
            synthesizer: Brief synthesizer (with its context extractor)
            store: Candidate and brief persistence
            index: Search index receiving messages and valid briefs
            concurrency: Candidates synthesized in parallel
            persist_invalid_briefs: Store fallback briefs as pending for review
            index_conversations: Index messages before detection
            metrics: Counter sink
        """
        self._detector = detector
        self._synthesizer = synthesizer
        self._store = store
        self._index = index
        self._concurrency = max(1, concurrency)
        self._persist_invalid = persist_invalid_briefs
        self._index_conversations = index_conversations
        self._metrics = metrics or Metrics()

    def _synthesize_one(
        self,
        candidate: DecisionCandidate,
        window: Optional[Window],
        cancel_event: Optional[threading.Event],
    ) -> Optional[SynthesisResult]:
        if cancel_event is not None and cancel_event.is_set():
            return None
        messages = list(window.messages) if window else []
        return self._synthesizer.synthesize(candidate, messages)

    def _record(self, report: PipelineReport, candidate: DecisionCandidate, result: SynthesisResult) -> None:
        if not result.validation.valid and not self._persist_invalid:
            report.invalid_briefs += 1
            return

        brief = self._store.upsert_brief(result.brief)
        self._store.link_brief(candidate.id, brief.id)
        report.brief_ids.append(brief.id)

        if result.validation.valid:
            report.valid_briefs += 1
            if self._index is not None and brief.status != BriefStatus.ARCHIVED:
                index_brief(self._index, brief)
        else:
            report.invalid_briefs += 1

    def process_conversation(
        self,
        conversation_id: str,
        messages: Sequence[Message],
        cancel_event: Optional[threading.Event] = None,
    ) -> PipelineReport:
        """
        Run the capture stages over one conversation.

        Args:
            conversation_id: Conversation id
            messages: Its messages, in any order
            cancel_event: Checked between windows and between candidates

        Returns:
            PipelineReport with persisted candidate and brief ids
        """
        report = PipelineReport(conversation_id=conversation_id)
        self._metrics.increment("pipeline_runs_total")

        if self._index is not None and self._index_conversations and messages:
            try:
                report.messages_indexed = index_messages(self._index, messages)
            except Exception as e:
                logger.warning("Indexing messages of %s failed: %s", conversation_id, e)
                report.errors.append(f"indexing: {e}")

        windows = segment(
            messages,
            window_size=self._detector.window_size,
            overlap=self._detector.window_overlap,
            conversation_id=conversation_id,
        )
        detection = self._detector.detect_windows(conversation_id, windows, cancel_event=cancel_event)
        report.detection = detection
        report.errors.extend(detection.errors)

        candidates = []
        for candidate in detection.candidates:
            stored = self._store.upsert_candidate(candidate)
            candidates.append(stored)
            report.candidate_ids.append(stored.id)

        by_index = {w.index: w for w in windows}
        if candidates:
            with ThreadPoolExecutor(
                max_workers=min(self._concurrency, len(candidates)),
                thread_name_prefix="knowwhy-brief",
            ) as pool:
                futures = [
                    pool.submit(self._synthesize_one, c, by_index.get(c.window_index), cancel_event)
                    for c in candidates
                ]
                for candidate, future in zip(candidates, futures):
                    try:
                        result = future.result()
                        if result is None:
                            report.cancelled = True
                            continue
                        self._record(report, candidate, result)
                    except Exception as e:
                        report.failed_candidates += 1
                        report.errors.append(f"candidate {candidate.id}: {e}")
                        logger.warning("Brief for candidate %s failed: %s", candidate.id, e)

        report.cancelled = report.cancelled or detection.cancelled
        log_event(
            logger,
            "capture_pipeline",
            "cancelled" if report.cancelled else "ok",
            conversation_id=conversation_id,
            candidates=len(report.candidate_ids),
            valid=report.valid_briefs,
            invalid=report.invalid_briefs,
            failed=report.failed_candidates,
        )
        return report

    def process_batch(
        self,
        conversations: Mapping[str, Sequence[Message]],
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchReport:
        """Process many conversations; a failing conversation is skipped."""
        batch = BatchReport()
        for conversation_id, messages in conversations.items():
            if cancel_event is not None and cancel_event.is_set():
                batch.cancelled = True
                break
            try:
                report = self.process_conversation(conversation_id, messages, cancel_event)
            except Exception as e:
                logger.error("Conversation %s failed: %s", conversation_id, e)
                batch.failed_conversations.append(conversation_id)
                continue
            batch.reports.append(report)
            batch.cancelled = batch.cancelled or report.cancelled
        return batch
