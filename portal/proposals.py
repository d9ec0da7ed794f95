"""
proposals.py

The editable working set of extracted subtask proposals for one transcript
review. Every mutation is mirrored to the proposal cache before it returns.
"""

import logging
from typing import Any, Dict, List, Optional

import pydantic

from advisor.date_utils import normalize_due_date
from portal.cache import ProposalCache
from portal.errors import ValidationError
from portal.models import ExtractedTaskProposal

logger = logging.getLogger(__name__)

_ALIASES = {
    field.alias: name
    for name, field in ExtractedTaskProposal.model_fields.items()
    if field.alias
}
_EDITABLE = set(ExtractedTaskProposal.model_fields) - {"id", "is_new", "is_deleted"}


def _normalize_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in patch.items():
        name = _ALIASES.get(key, key)
        if name not in _EDITABLE:
            raise ValidationError(f"Field cannot be edited: {key}")
        out[name] = value
    return out


class ProposalStore:
    """
    Holds proposals in list order, keyed by their client id.

    Deleted proposals stay in the list with `is_deleted` set so they can be
    restored at any point until the review ends.
    """

    def __init__(
        self,
        student_id: str,
        note_id: str,
        phases: Optional[List[Dict[str, Any]]] = None,
        tasks: Optional[List[Dict[str, Any]]] = None,
        counsellor_name: Optional[str] = None,
        cache: Optional[ProposalCache] = None,
    ):
        self.student_id = student_id
        self.note_id = note_id
        self.phases = list(phases or [])
        self.tasks = list(tasks or [])
        self.counsellor_name = counsellor_name
        self.cache = cache or ProposalCache()
        self.items: List[ExtractedTaskProposal] = []
        self.editing_id: Optional[str] = None

    # -----------------------------
    # Loading
    # -----------------------------

    def restore_from_cache(self) -> bool:
        """Load a previously saved working set. Returns False when none exists."""
        saved = self.cache.load(self.student_id, self.note_id)
        if saved is None:
            return False
        try:
            items = [ExtractedTaskProposal.model_validate(item) for item in saved]
        except pydantic.ValidationError as exc:
            logger.warning("[Proposals] cached working set is invalid, ignoring: %s", exc)
            return False
        self._set_items(items, persist=False)
        logger.info("[Proposals] restored %d proposals from cache", len(items))
        return True

    def replace(self, items: List[ExtractedTaskProposal]) -> None:
        self._set_items(items, persist=True)

    def _set_items(self, items: List[ExtractedTaskProposal], persist: bool) -> None:
        seen = set()
        unique: List[ExtractedTaskProposal] = []
        for item in items:
            if item.id in seen:
                item = item.model_copy(update={"id": ExtractedTaskProposal().id})
            seen.add(item.id)
            unique.append(item)
        self.items = unique
        self.editing_id = None
        if persist:
            self._persist()

    # -----------------------------
    # Mutations
    # -----------------------------

    def add(self) -> ExtractedTaskProposal:
        first_phase = self.phases[0] if self.phases else None
        proposal = ExtractedTaskProposal(
            description="",
            suggested_phase_id=first_phase["id"] if first_phase else None,
            suggested_phase_name=first_phase["name"] if first_phase else None,
            owner=self.counsellor_name,
            priority="Medium",
            is_new=True,
        )
        self.items.append(proposal)
        self.editing_id = proposal.id
        self._persist()
        return proposal

    def edit(self, proposal_id: str) -> ExtractedTaskProposal:
        proposal = self.get(proposal_id)
        self.editing_id = proposal_id
        return proposal

    def cancel_edit(self) -> None:
        self.editing_id = None

    def save(self, proposal_id: str, patch: Dict[str, Any]) -> ExtractedTaskProposal:
        index = self._index(proposal_id)
        current = self.items[index]
        changes = _normalize_patch(patch)

        if "due_date" in changes:
            raw = changes["due_date"]
            due = normalize_due_date(raw)
            if due is None and raw is not None and str(raw).strip():
                raise ValidationError(f"Unrecognised due date: {raw}")
            changes["due_date"] = due

        if "suggested_phase_id" in changes and changes["suggested_phase_id"] != current.suggested_phase_id:
            phase = self._phase(changes["suggested_phase_id"])
            changes["suggested_phase_name"] = phase["name"] if phase else None
            # The old task never survives a phase change; only one chosen in the same patch does.
            if not changes.get("suggested_task_id"):
                changes["suggested_task_id"] = None
                changes["suggested_task_name"] = None

        if changes.get("suggested_task_id"):
            task = self._task(changes["suggested_task_id"])
            if task is None:
                raise ValidationError(f"Unknown task: {changes['suggested_task_id']}")
            phase_id = changes.get("suggested_phase_id", current.suggested_phase_id)
            if phase_id and task.get("phase_id") != phase_id:
                raise ValidationError("Task does not belong to the selected phase")
            if not phase_id:
                phase = self._phase(task.get("phase_id"))
                changes["suggested_phase_id"] = task.get("phase_id")
                changes["suggested_phase_name"] = phase["name"] if phase else None
            changes["suggested_task_name"] = task["name"]
        elif "suggested_task_id" in changes:
            changes["suggested_task_name"] = None

        data = current.model_dump()
        data.update(changes)
        try:
            updated = ExtractedTaskProposal.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc

        self.items[index] = updated
        self.editing_id = None
        self._persist()
        return updated

    def soft_delete(self, proposal_id: str) -> ExtractedTaskProposal:
        return self._flag(proposal_id, True)

    def restore(self, proposal_id: str) -> ExtractedTaskProposal:
        return self._flag(proposal_id, False)

    def _flag(self, proposal_id: str, deleted: bool) -> ExtractedTaskProposal:
        index = self._index(proposal_id)
        self.items[index] = self.items[index].model_copy(update={"is_deleted": deleted})
        if deleted and self.editing_id == proposal_id:
            self.editing_id = None
        self._persist()
        return self.items[index]

    # -----------------------------
    # Views
    # -----------------------------

    def get(self, proposal_id: str) -> ExtractedTaskProposal:
        return self.items[self._index(proposal_id)]

    def active(self) -> List[ExtractedTaskProposal]:
        return [p for p in self.items if not p.is_deleted]

    @property
    def active_count(self) -> int:
        return len(self.active())

    def to_json(self) -> List[Dict[str, Any]]:
        return [p.to_json_dict() for p in self.items]

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _index(self, proposal_id: str) -> int:
        for i, proposal in enumerate(self.items):
            if proposal.id == proposal_id:
                return i
        raise KeyError(proposal_id)

    def _phase(self, phase_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return next((p for p in self.phases if p["id"] == phase_id), None)

    def _task(self, task_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return next((t for t in self.tasks if t["id"] == task_id), None)

    def _persist(self) -> None:
        self.cache.save(self.student_id, self.note_id, self.to_json())
