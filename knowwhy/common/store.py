"""
Decision Store

Persistence for decision candidates and briefs, keyed by their natural ids.
Upserts are idempotent: re-running a batch rewrites the same records instead
of duplicating them, and a brief's review status never moves backwards.

The store is in-memory by default; given a path it is persisted as a JSON
file after every write.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .schemas import (
    BriefStatus,
    DecisionBrief,
    DecisionCandidate,
)
from .schemas.decision_brief import STATUS_RANK

logger = logging.getLogger("knowwhy.common.store")


class DecisionStore:
    """
    Candidate and brief storage.

    Workflow:
    1. Capture pipeline upserts candidates as the detector emits them
    2. Synthesized briefs are upserted as pending and linked to their candidate
    3. Reviewers approve or archive briefs through the store
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        """
        Initialize the store.

        Args:
            path: JSON file to persist to (None keeps everything in memory)
        """
        self._path = Path(path).expanduser() if path else None
        self._candidates: Dict[str, DecisionCandidate] = {}
        self._briefs: Dict[str, DecisionBrief] = {}
        self._lock = threading.RLock()
        self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _load(self) -> None:
        """Load records from disk"""
        if not self._path or not self._path.exists():
            return

        try:
            with open(self._path) as f:
                data = json.load(f)

            self._candidates = {
                item["id"]: DecisionCandidate.model_validate(item)
                for item in data.get("candidates", [])
            }
            self._briefs = {
                item["id"]: DecisionBrief.model_validate(item)
                for item in data.get("briefs", [])
            }
        except (json.JSONDecodeError, IOError, KeyError, ValueError) as e:
            logger.warning("Failed to load decision store %s: %s", self._path, e)
            self._candidates = {}
            self._briefs = {}

    def _save(self) -> None:
        """Save records to disk"""
        if not self._path:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "candidates": [c.model_dump(mode="json") for c in self._candidates.values()],
            "briefs": [b.model_dump(mode="json") for b in self._briefs.values()],
        }

        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(self._path)

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def upsert_candidate(self, candidate: DecisionCandidate) -> DecisionCandidate:
        """Insert or replace a candidate by id, keeping an existing brief link."""
        with self._lock:
            existing = self._candidates.get(candidate.id)
            if existing and existing.brief_id and not candidate.brief_id:
                candidate = candidate.with_brief(existing.brief_id)
            self._candidates[candidate.id] = candidate
            self._save()
            return candidate

    def link_brief(self, candidate_id: str, brief_id: str) -> DecisionCandidate:
        with self._lock:
            candidate = self._candidates.get(candidate_id)
            if candidate is None:
                raise KeyError(candidate_id)
            linked = candidate.with_brief(brief_id)
            self._candidates[candidate_id] = linked
            self._save()
            return linked

    def get_candidate(self, candidate_id: str) -> Optional[DecisionCandidate]:
        with self._lock:
            return self._candidates.get(candidate_id)

    def list_candidates(self, conversation_id: Optional[str] = None) -> List[DecisionCandidate]:
        with self._lock:
            candidates = list(self._candidates.values())
        if conversation_id is not None:
            candidates = [c for c in candidates if c.conversation_id == conversation_id]
        return sorted(candidates, key=lambda c: (c.conversation_id, c.window_index))

    # ------------------------------------------------------------------
    # Briefs
    # ------------------------------------------------------------------

    def upsert_brief(self, brief: DecisionBrief) -> DecisionBrief:
        """Insert or replace a brief by id.

        A regenerated brief never downgrades a reviewed one: when the stored
        status is further along, the stored review fields are kept.
        """
        with self._lock:
            existing = self._briefs.get(brief.id)
            if existing and STATUS_RANK[existing.status] > STATUS_RANK[brief.status]:
                brief = brief.model_copy(update={
                    "status": existing.status,
                    "approved_at": existing.approved_at,
                    "approved_by": existing.approved_by,
                    "created_at": existing.created_at,
                })
            elif existing:
                brief = brief.model_copy(update={"created_at": existing.created_at})
            self._briefs[brief.id] = brief
            self._save()
            return brief

    def get_brief(self, brief_id: str) -> Optional[DecisionBrief]:
        with self._lock:
            return self._briefs.get(brief_id)

    def list_briefs(self, status: Optional[BriefStatus] = None) -> List[DecisionBrief]:
        with self._lock:
            briefs = list(self._briefs.values())
        if status is not None:
            briefs = [b for b in briefs if b.status == BriefStatus(status)]
        return sorted(briefs, key=lambda b: b.created_at, reverse=True)

    def approve_brief(self, brief_id: str, approved_by: Optional[str] = None) -> DecisionBrief:
        """Approve a pending brief. Raises KeyError or InvalidTransitionError."""
        with self._lock:
            brief = self._briefs.get(brief_id)
            if brief is None:
                raise KeyError(brief_id)
            updated = brief.approve(approved_by)
            self._briefs[brief_id] = updated
            self._save()
        logger.info("Approved brief %s (by %s)", brief_id, approved_by or "unknown")
        return updated

    def archive_brief(self, brief_id: str) -> DecisionBrief:
        """Archive a pending or approved brief. Raises KeyError or InvalidTransitionError."""
        with self._lock:
            brief = self._briefs.get(brief_id)
            if brief is None:
                raise KeyError(brief_id)
            updated = brief.archive()
            self._briefs[brief_id] = updated
            self._save()
        logger.info("Archived brief %s", brief_id)
        return updated

    def get_stats(self) -> Dict[str, Any]:
        """Record counts by kind and brief status"""
        with self._lock:
            briefs = list(self._briefs.values())
            candidate_count = len(self._candidates)
        by_status = {status.value: 0 for status in BriefStatus}
        for brief in briefs:
            by_status[brief.status.value] += 1
        return {
            "candidates": candidate_count,
            "briefs": len(briefs),
            **by_status,
        }
