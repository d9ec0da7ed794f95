"""
review.py

The transcript review workflow: extract proposals from a transcript, let the
counsellor edit them, then commit the survivors as subtasks.

States:
  IDLE -> LOADING -> REVIEWING <-> EDITING -> COMMITTING -> SUCCESS | ERROR

A review reopened for the same (student, note) resumes from the proposal
cache and never calls the extractor. ERROR after a failed commit goes back
to REVIEWING on the next edit or on `resume()`; already-written subtasks are
not undone. SUCCESS and CANCELLED are terminal.
"""

import enum
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from advisor.extraction import normalize_owners
from portal.cache import ProposalCache
from portal.commit import commit as commit_proposals
from portal.config import config
from portal.errors import CommitError, ExtractionError, PortalError, ReviewStateError
from portal.models import CommitResult, ExtractedTaskProposal
from portal.proposals import ProposalStore

logger = logging.getLogger(__name__)


class ReviewState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    REVIEWING = "reviewing"
    EDITING = "editing"
    COMMITTING = "committing"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


_MUTABLE_STATES = {ReviewState.REVIEWING, ReviewState.EDITING, ReviewState.ERROR}


class TranscriptReview:
    def __init__(
        self,
        store,
        processor,
        student_id: str,
        note_id: str,
        counsellor: Optional[Dict[str, Any]] = None,
        transcript_text: Optional[str] = None,
        cache: Optional[ProposalCache] = None,
        on_complete: Optional[Callable[[CommitResult], None]] = None,
        completion_delay: Optional[float] = None,
        processor_factory: Optional[Callable[[], Any]] = None,
    ):
        self.store = store
        self.processor = processor
        self.processor_factory = processor_factory
        self.student_id = student_id
        self.note_id = note_id
        self.counsellor = counsellor
        self.transcript_text = transcript_text
        self.cache = cache or ProposalCache()
        self.on_complete = on_complete
        self.completion_delay = config['completion_delay'] if completion_delay is None else completion_delay

        self.state = ReviewState.IDLE
        self.error: Optional[str] = None
        self.commit_error: Optional[CommitError] = None
        self.result: Optional[CommitResult] = None
        self.proposals: Optional[ProposalStore] = None
        self.phases: List[Dict[str, Any]] = []
        self.tasks: List[Dict[str, Any]] = []
        self.student: Optional[Dict[str, Any]] = None
        self.restored = False

    # -----------------------------
    # Opening
    # -----------------------------

    def open(self) -> "TranscriptReview":
        if self.state not in (ReviewState.IDLE, ReviewState.ERROR) or self.proposals is not None:
            return self
        self.error = None

        if self.transcript_text is None and self.note_id:
            try:
                note = self.store.get_note(self.note_id)
            except PortalError as exc:
                return self._fail(f"Failed to load transcript: {exc}")
            self.transcript_text = (note or {}).get("content")

        if not (self.note_id and self.student_id and self.transcript_text):
            logger.error("[Review] missing data: note=%s student=%s text=%s",
                         self.note_id, self.student_id, bool(self.transcript_text))
            return self._fail("Missing required data to process transcript")

        try:
            self.phases = self.store.list_phases()
            self.tasks = self.store.list_tasks()
        except PortalError as exc:
            return self._fail(f"Failed to load roadmap data: {exc}")
        try:
            self.student = self.store.get_student(self.student_id)
        except PortalError as exc:
            return self._fail(f"Failed to load student data: {exc}")

        self.proposals = ProposalStore(
            self.student_id,
            self.note_id,
            phases=self.phases,
            tasks=self.tasks,
            counsellor_name=self._counsellor_name(),
            cache=self.cache,
        )

        if self.proposals.restore_from_cache():
            self.restored = True
            self._settle()
            return self

        self.state = ReviewState.LOADING
        self._extract()
        self._settle()
        return self

    def _extract(self) -> None:
        try:
            if self.processor is None and self.processor_factory is not None:
                self.processor = self.processor_factory()
            if self.processor is None:
                raise ExtractionError("Transcript processing is not configured")
            items = self.processor.process(
                self.transcript_text, self.phases, self.tasks, student_id=self.student_id
            )
            items = normalize_owners(items, self._student_name(), self._counsellor_name())
        except Exception as exc:
            logger.error("[Review] ✗ transcript processing failed: %s", exc)
            self.error = f"{exc}. Add subtasks manually or try again later."
            items = []

        self.proposals.replace(items)
        if not items:
            # Never leave the reviewer with nothing to edit.
            self.proposals.add()
        logger.info("[Review] %d proposals ready for review", len(self.proposals.items))

    # -----------------------------
    # Editing
    # -----------------------------

    def add(self) -> ExtractedTaskProposal:
        self._require_mutable()
        proposal = self.proposals.add()
        self._settle()
        return proposal

    def edit(self, proposal_id: str) -> ExtractedTaskProposal:
        self._require_mutable()
        proposal = self.proposals.edit(proposal_id)
        self._settle()
        return proposal

    def cancel_edit(self) -> None:
        self._require_mutable()
        self.proposals.cancel_edit()
        self._settle()

    def save(self, proposal_id: str, patch: Dict[str, Any]) -> ExtractedTaskProposal:
        self._require_mutable()
        proposal = self.proposals.save(proposal_id, patch)
        self._settle()
        return proposal

    def soft_delete(self, proposal_id: str) -> ExtractedTaskProposal:
        self._require_mutable()
        proposal = self.proposals.soft_delete(proposal_id)
        self._settle()
        return proposal

    def restore(self, proposal_id: str) -> ExtractedTaskProposal:
        self._require_mutable()
        proposal = self.proposals.restore(proposal_id)
        self._settle()
        return proposal

    def dismiss_error(self) -> None:
        self.error = None
        if self.state == ReviewState.ERROR and self.proposals is not None:
            self._settle()

    def resume(self) -> None:
        if self.state != ReviewState.ERROR or self.proposals is None:
            raise ReviewStateError(f"Cannot resume from {self.state.value}")
        self._settle()

    @property
    def active_count(self) -> int:
        return self.proposals.active_count if self.proposals else 0

    # -----------------------------
    # Terminal steps
    # -----------------------------

    def commit(self) -> Optional[CommitResult]:
        """
        Write active proposals as subtasks. Returns the result, or None when
        the commit failed (the message is in `error`, the cache is kept).
        """
        self._require_mutable()
        self.state = ReviewState.COMMITTING
        self.error = None
        self.commit_error = None
        try:
            result = commit_proposals(
                self.store,
                self.proposals.items,
                self.student_id,
                self.note_id,
                cache=self.cache,
                counsellor_id=(self.counsellor or {}).get("id"),
            )
        except CommitError as exc:
            self.commit_error = exc
            self.error = f"{exc}. Please try again."
            self.state = ReviewState.ERROR
            return None
        except Exception as exc:
            logger.exception("[Review] ✗ unexpected failure while creating subtasks")
            self.error = f"Unexpected error while creating subtasks: {exc}. Please try again."
            self.state = ReviewState.ERROR
            return None

        self.result = result
        self.state = ReviewState.SUCCESS
        self._signal_complete(result)
        return result

    def cancel(self) -> None:
        """Abandon the review. In-flight work is not waited for."""
        self.cache.clear(self.student_id, self.note_id)
        self.proposals = None
        self.error = None
        self.state = ReviewState.CANCELLED
        logger.info("[Review] cancelled review of note %s", self.note_id)

    def _signal_complete(self, result: CommitResult) -> None:
        if self.on_complete is None:
            return
        if self.completion_delay <= 0:
            self.on_complete(result)
            return
        timer = threading.Timer(self.completion_delay, self.on_complete, args=(result,))
        timer.daemon = True
        timer.start()

    # -----------------------------
    # Views
    # -----------------------------

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "error": self.error,
            "restored": self.restored,
            "editingId": self.proposals.editing_id if self.proposals else None,
            "activeCount": self.active_count,
            "proposals": self.proposals.to_json() if self.proposals else [],
            "createdCount": self.result.created_count if self.result else None,
            "failedProposalId": self.commit_error.failed_id if self.commit_error else None,
            "createdProposalIds": self.commit_error.created if self.commit_error else [],
        }

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _require_mutable(self) -> None:
        if self.state not in _MUTABLE_STATES or self.proposals is None:
            raise ReviewStateError(f"Review is {self.state.value}")

    def _settle(self) -> None:
        self.state = ReviewState.EDITING if self.proposals.editing_id else ReviewState.REVIEWING

    def _fail(self, message: str) -> "TranscriptReview":
        self.error = message
        self.state = ReviewState.ERROR
        return self

    def _student_name(self) -> Optional[str]:
        return (self.student or {}).get("name")

    def _counsellor_name(self) -> Optional[str]:
        return (self.counsellor or {}).get("name")
