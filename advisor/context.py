import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, List, Optional

from advisor.client import resolve_client
from advisor.config import config
from portal.errors import ExtractionError, ValidationError

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 8000
RECENT_NOTES = 5
NOTE_PREVIEW_CHARS = 100

SYSTEM_PROMPT = """You are an AI assistant that generates concise, informative summaries of student progress for school counselors.

Focus on providing a substantive, personalized summary that helps counselors quickly understand the student's current status, strengths, and areas needing attention.

Your summary should:
1. Be written in complete, concise sentences (approximately 100-150 words)
2. Include specific details about the student's progress through their roadmap
3. Highlight concrete strengths and achievements based on completed tasks and notes
4. Identify specific areas needing attention or improvement
5. Suggest 1-2 actionable next steps if appropriate
6. Have a professional tone appropriate for academic counseling

Do NOT use placeholders or template language. Only include concrete information actually present in the student data."""


def build_context_prompt(student: Dict[str, Any], subtasks: List[Dict[str, Any]],
                         notes: List[Dict[str, Any]]) -> str:
    lines = [
        "Generate a concise summary of the student's progress, strengths, and areas needing "
        "attention based on the following information.",
        "",
        "Student Profile:",
        f"- Name: {student.get('name')}",
        f"- Grade: {student.get('grade')}",
        f"- Curriculum: {student.get('curriculum')}",
        f"- Target Year: {student.get('target_year')}",
    ]

    if subtasks:
        lines.append("")
        lines.append("Subtasks and Progress:")
        for subtask in subtasks:
            line = (f"- {subtask.get('phase_name') or 'Unknown Phase'} > "
                    f"{subtask.get('task_name') or 'Unknown Task'} > {subtask['name']}: {subtask.get('status')}")
            if subtask.get("remark"):
                line += f" (Remark: {subtask['remark']})"
            if subtask.get("eta"):
                line += f" (ETA: {subtask['eta']})"
            if subtask.get("owner"):
                line += f" (Owner: {subtask['owner']})"
            lines.append(line)

    if notes:
        lines.append("")
        lines.append("Recent Notes:")
        for note in notes[:RECENT_NOTES]:
            content = note.get("content") or ""
            preview = content[:NOTE_PREVIEW_CHARS] + ("..." if len(content) > NOTE_PREVIEW_CHARS else "")
            lines.append(f"- {note.get('title') or 'Untitled'}: {preview}")

    prompt = "\n".join(lines)
    return prompt[:MAX_PROMPT_CHARS]


class ContextGenerator:
    """
    Summarises a student's profile, roadmap and recent notes into the
    `student_context` column.

    Concurrent requests for the same student share one model call: the
    first caller runs it, later callers wait on its Future.
    """

    def __init__(self, store, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        if client is None:
            client, model = resolve_client(api_key, model, openai_model="gpt-4o")
        self.client = client
        self.model = model or config['model'] or "gpt-4o"
        self.store = store
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}

    def generate(self, student_id: str) -> str:
        with self._lock:
            pending = self._in_flight.get(student_id)
            owner = pending is None
            if owner:
                pending = Future()
                self._in_flight[student_id] = pending

        if not owner:
            logger.info("[Context] generation already running for %s, waiting", student_id)
            return pending.result()

        try:
            summary = self._generate(student_id)
        except BaseException as exc:
            pending.set_exception(exc)
            raise
        else:
            pending.set_result(summary)
            return summary
        finally:
            with self._lock:
                self._in_flight.pop(student_id, None)

    def is_generating(self, student_id: str) -> bool:
        with self._lock:
            return student_id in self._in_flight

    def _generate(self, student_id: str) -> str:
        student = self.store.get_student(student_id)
        if student is None:
            raise ValidationError(f"Unknown student: {student_id}")

        subtasks = self.store.list_subtasks(student_id, with_roadmap=True)
        notes = self.store.list_notes(student_id)
        prompt = build_context_prompt(student, subtasks, notes)
        logger.info("[Context] summarising %s: %d subtasks, %d notes, %d prompt characters",
                    student_id, len(subtasks), len(notes), len(prompt))

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=config['temperature'],
                max_tokens=700,
                timeout=config['timeout'],
            )
            summary = (response.choices[0].message.content or "").strip()
        except Exception as e:
            raise ExtractionError(f"Context generation failed: {e}") from e

        if not summary:
            raise ExtractionError("Context generation returned no text")

        self.store.update_student(student_id, student_context=summary)
        logger.info("[Context] ✓ stored %d characters for %s", len(summary), student_id)
        return summary
