from typing import List, Dict, Any, Optional
from datetime import datetime, date, timezone
import logging

from advisor.date_utils import due_date_to_eta, normalize_due_date
from portal.errors import ValidationError

logger = logging.getLogger(__name__)

CLOSED_STATUSES = {"done", "not_applicable"}


class RoadmapService:
    def __init__(self, store, context_generator=None):
        """
        Roadmap progress, subtask edits and deadline views for one store.

        Args:
            store: The data store.
            context_generator: Optional advisor.context.ContextGenerator,
                refreshed whenever a subtask is marked done.
        """
        self.store = store
        self.context_generator = context_generator

    # -----------------------------
    # Roadmap + progress
    # -----------------------------

    def student_roadmap(self, student_id: str) -> List[Dict[str, Any]]:
        """
        Phases -> tasks -> this student's subtasks, with progress counts.
        `not_applicable` subtasks are left out of the denominator.
        """
        phases = self.store.get_roadmap()
        subtasks = self.store.list_subtasks(student_id)
        by_task: Dict[str, List[Dict[str, Any]]] = {}
        for subtask in subtasks:
            by_task.setdefault(subtask["task_id"], []).append(subtask)

        for phase in phases:
            phase_done = phase_total = 0
            for task in phase["tasks"]:
                task["subtasks"] = by_task.get(task["id"], [])
                task["progress"] = _progress(task["subtasks"])
                phase_done += task["progress"]["done"]
                phase_total += task["progress"]["total"]
            phase["progress"] = {
                "done": phase_done,
                "total": phase_total,
                "percent": round(100.0 * phase_done / phase_total, 1) if phase_total else 0.0,
            }
        return phases

    # -----------------------------
    # Subtask edits
    # -----------------------------

    def create_subtask(self, student_id: str, task_id: str, name: str, owner: Optional[str] = None,
                       eta: Optional[str] = None, remark: Optional[str] = None) -> Dict[str, Any]:
        if self.store.get_task(task_id) is None:
            raise ValidationError(f"Unknown task: {task_id}")
        return self.store.create_subtask(
            student_id=student_id,
            task_id=task_id,
            name=(name or "").strip(),
            owner=owner,
            eta=_eta(eta),
            remark=remark,
        )

    def update_status(self, subtask_id: str, status: str, remark: Optional[str] = None) -> Optional[Dict[str, Any]]:
        fields: Dict[str, Any] = {"status": status}
        if remark is not None:
            fields["remark"] = remark
        row = self.store.update_subtask(subtask_id, **fields)
        if row and status == "done" and self.context_generator is not None:
            try:
                self.context_generator.generate(row["student_id"])
            except Exception as exc:
                logger.warning("[Roadmap] context refresh failed for %s: %s", row["student_id"], exc)
        return row

    def update_subtask(self, subtask_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        if "eta" in fields:
            fields["eta"] = _eta(fields["eta"])
        if "status" in fields:
            status = fields.pop("status")
            self.update_status(subtask_id, status, fields.pop("remark", None))
        if not fields:
            return self.store.get_subtask(subtask_id)
        return self.store.update_subtask(subtask_id, **fields)

    # -----------------------------
    # Deadlines + calendar
    # -----------------------------

    def deadlines(
        self,
        student_id: str,
        now: Optional[datetime] = None,
        status: Optional[str] = None,
        owner: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Subtasks that have an ETA, soonest first, each with:
          - due_in_days
          - is_due_today
          - is_overdue (past and still open)
        """
        today = (now or datetime.now(timezone.utc)).date()
        out: List[Dict[str, Any]] = []
        for subtask in self.store.list_subtasks(student_id, with_roadmap=True):
            due = _eta_date(subtask.get("eta"))
            if due is None:
                continue
            if status and subtask.get("status") != status:
                continue
            if owner and (subtask.get("owner") or "").lower() != owner.lower():
                continue
            if search:
                haystack = " ".join(
                    str(subtask.get(k) or "") for k in ("name", "task_name", "phase_name", "remark")
                ).lower()
                if search.lower() not in haystack:
                    continue

            item = dict(subtask)
            item["due_date"] = due.isoformat()
            item["due_in_days"] = (due - today).days
            item["is_due_today"] = item["due_in_days"] == 0
            item["is_overdue"] = item["due_in_days"] < 0 and subtask.get("status") not in CLOSED_STATUSES
            out.append(item)

        out.sort(key=lambda t: (t["due_date"], t.get("name") or ""))
        return out

    def calendar(self, student_id: str, year: int, month: int,
                 now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Subtasks due in the given month, grouped by ISO date."""
        if not 1 <= month <= 12:
            raise ValidationError("month must be 1-12")
        days: Dict[str, List[Dict[str, Any]]] = {}
        for item in self.deadlines(student_id, now=now):
            due = date.fromisoformat(item["due_date"])
            if due.year == year and due.month == month:
                days.setdefault(item["due_date"], []).append(item)
        return days


def _progress(subtasks: List[Dict[str, Any]]) -> Dict[str, Any]:
    countable = [s for s in subtasks if s.get("status") != "not_applicable"]
    done = sum(1 for s in countable if s.get("status") == "done")
    total = len(countable)
    return {
        "done": done,
        "total": total,
        "percent": round(100.0 * done / total, 1) if total else 0.0,
    }


def _eta(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    text = str(value).strip()
    if "T" in text:
        try:
            datetime.fromisoformat(text.replace("Z", "+00:00"))
            return text
        except ValueError:
            pass
    due = normalize_due_date(text)
    if due is None:
        raise ValidationError(f"Unrecognised date: {value}")
    return due_date_to_eta(due)


def _eta_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            return None
