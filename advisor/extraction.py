import json
import logging
import re
from typing import Any, Dict, List, Optional

import pydantic

from advisor.client import resolve_client
from advisor.config import config
from advisor.date_utils import normalize_due_date
from advisor.ingestion import TokenBudget
from portal.errors import ExtractionError, RemoteStoreError, ValidationError
from portal.models import ExtractedTaskProposal

logger = logging.getLogger(__name__)


SYSTEM_PROMPT_TEMPLATE = """You are an advanced AI assistant specialized in analyzing meeting transcripts for academic counselors.
Your task is to extract actionable items and subtasks from the transcript, and organize them into a structured format.

Focus on identifying:
1. Clear action items that someone needs to complete
2. Deadlines or timeframes mentioned
3. Assigned responsibilities (who needs to do what)
4. Deliverables or outcomes expected
5. Follow-up items for future meetings

Use the following project structure context to help categorize tasks:
{roadmap}
{existing}
Do not extract subtasks that already exist in the student's list. If an item is similar to an existing subtask, discard it.

For each identified subtask, provide:
- Description: A clear, concise description of what needs to be done
- Suggested phase: Which phase this best aligns with (use the phase ID)
- Suggested task: Which task this best aligns with (use the task ID)
- Owner: Who should complete this (if mentioned)
- Due date: When it should be completed (if mentioned)
- Priority: High/Medium/Low based on context and urgency
- Notes: Any additional context that helps understand the task

Return JSON:
{{
  "tasks": [
    {{
      "description": "Task description",
      "suggestedPhaseId": "phase-id or null",
      "suggestedPhaseName": "Phase name or null",
      "suggestedTaskId": "task-id or null",
      "suggestedTaskName": "Task name or null",
      "owner": "Person responsible or null",
      "dueDate": "YYYY-MM-DD or null",
      "priority": "High|Medium|Low",
      "notes": "Additional context"
    }}
  ]
}}

ONLY return valid JSON."""


def _attempt_json_repair(raw: str) -> Optional[dict]:
    """
    Attempts to repair malformed JSON from the LLM: markdown fences,
    control characters and trailing commas.
    """
    cleaned = re.sub(r'^```(?:json)?\s*', '', raw.strip())
    cleaned = re.sub(r'\s*```$', '', cleaned)
    cleaned = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', cleaned)
    cleaned = re.sub(r',\s*([}\]])', r'\1', cleaned)

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        return None


def build_roadmap_context(phases: List[Dict[str, Any]], tasks: List[Dict[str, Any]]) -> str:
    lines = ["Project Phases and Tasks:"]
    if not phases:
        lines.append("(No phases defined)")
        return "\n".join(lines)
    for phase in phases:
        lines.append(f"\nPhase: {phase['name']} (ID: {phase['id']})")
        phase_tasks = [t for t in tasks if t.get("phase_id") == phase["id"]]
        if not phase_tasks:
            lines.append("  (No tasks defined)")
        for task in phase_tasks:
            lines.append(f"  - Task: {task['name']} (ID: {task['id']})")
    return "\n".join(lines)


def build_existing_context(subtasks: List[Dict[str, Any]]) -> str:
    if not subtasks:
        return ""
    lines = ["\nExisting Student Subtasks (AVOID DUPLICATING THESE):"]
    for i, subtask in enumerate(subtasks, start=1):
        phase = subtask.get("phase_name") or "Unknown Phase"
        task = subtask.get("task_name") or "Unknown Task"
        lines.append(f'{i}. "{subtask["name"]}" (Status: {subtask.get("status")}) - Under {phase} > {task}')
    return "\n".join(lines) + "\n"


def _names_match(raw: str, name: str) -> bool:
    raw, name = raw.strip().lower(), name.strip().lower()
    if not raw or not name:
        return False
    return raw in name or name in raw


def normalize_owner(raw_owner: Optional[str], student_name: Optional[str], counsellor_name: Optional[str]) -> Optional[str]:
    """
    Map free-text owner onto one of the two people in the meeting.
    Student first, then counsellor; anything unrecognised goes to the counsellor.
    """
    if raw_owner and student_name and _names_match(raw_owner, student_name):
        return student_name
    if raw_owner and counsellor_name and _names_match(raw_owner, counsellor_name):
        return counsellor_name
    return counsellor_name


def normalize_owners(proposals: List[ExtractedTaskProposal], student_name: Optional[str],
                     counsellor_name: Optional[str]) -> List[ExtractedTaskProposal]:
    return [
        p.model_copy(update={"owner": normalize_owner(p.owner, student_name, counsellor_name)})
        for p in proposals
    ]


class TranscriptProcessor:
    """
    Turns a meeting transcript into subtask proposals aligned to the roadmap.
    One JSON-mode chat completion per transcript; malformed output is
    repaired, then regenerated once.
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None,
                 client=None, store=None, token_budget: Optional[TokenBudget] = None,
                 verbose: bool = False):
        """
        Args:
            api_key: Optional override for environment keys.
            model: Optional override for the default model choice.
            client: Pre-built OpenAI-compatible client (skips key resolution).
            store: Data store used to list the student's existing subtasks.
            token_budget: Token counter used to trim long transcripts.
            verbose: Log the raw model output.
        """
        if client is None:
            client, model = resolve_client(api_key, model, openai_model="gpt-4o")
        self.client = client
        self.model = model or config['model'] or "gpt-4o"
        self.store = store
        self._token_budget = token_budget
        self.verbose = verbose

    def process(
        self,
        transcript_text: str,
        phases: List[Dict[str, Any]],
        tasks: List[Dict[str, Any]],
        student_id: Optional[str] = None,
        existing_subtasks: Optional[List[Dict[str, Any]]] = None,
    ) -> List[ExtractedTaskProposal]:
        if not transcript_text or not transcript_text.strip():
            raise ValidationError("Transcript text is required")

        logger.info("[Extraction] transcript: %d characters, %d phases, %d tasks, student=%s",
                    len(transcript_text), len(phases or []), len(tasks or []), student_id)

        if existing_subtasks is None:
            existing_subtasks = self._existing_subtasks(student_id)

        system_prompt = SYSTEM_PROMPT_TEMPLATE.format(
            roadmap=build_roadmap_context(phases or [], tasks or []),
            existing=build_existing_context(existing_subtasks),
        )
        text = self._fit_to_budget(transcript_text)
        user_prompt = f"Here is the meeting transcript to analyze:\n\n{text}"

        parsed = self._request(system_prompt, user_prompt)
        items = parsed.get("tasks") or parsed.get("extractedTasks") or []
        if not isinstance(items, list):
            raise ExtractionError("Invalid response format: tasks is not a list")

        proposals = self._to_proposals(items, phases or [], tasks or [])
        logger.info("[Extraction] ✓ %d proposals (model=%s)", len(proposals), self.model)
        return proposals

    def _existing_subtasks(self, student_id: Optional[str]) -> List[Dict[str, Any]]:
        if self.store is None or not student_id:
            return []
        try:
            return self.store.list_subtasks(student_id, with_roadmap=True)
        except RemoteStoreError as exc:
            logger.warning("[Extraction] could not load existing subtasks: %s", exc)
            return []

    def _fit_to_budget(self, text: str) -> str:
        max_tokens = config['transcript_token_budget']
        # Every token covers at least one character.
        if len(text) <= max_tokens:
            return text
        if self._token_budget is None:
            self._token_budget = TokenBudget()
        trimmed, cut = self._token_budget.truncate(text, max_tokens)
        if cut:
            logger.warning("[Extraction] transcript truncated to %d tokens", max_tokens)
        return trimmed

    def _request(self, system_prompt: str, user_prompt: str, is_retry: bool = False) -> Dict[str, Any]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=config['temperature'],
                max_tokens=config['max_tokens'],
                timeout=config['timeout'],
            )
            raw_json = response.choices[0].message.content or "{}"
        except Exception as e:
            if not is_retry:
                logger.warning("[Extraction] ⚠ LLM call failed (%s). Attempting REGENERATION...", e)
                return self._request(system_prompt, user_prompt, is_retry=True)
            raise ExtractionError(f"Extraction service error: {e}") from e

        if self.verbose:
            logger.debug("[Extraction] raw response: %s", raw_json)

        try:
            parsed = json.loads(raw_json)
        except json.JSONDecodeError:
            parsed = _attempt_json_repair(raw_json)

        if not isinstance(parsed, dict):
            if not is_retry:
                logger.warning("[Extraction] ⚠ Malformed JSON. Attempting REGENERATION...")
                return self._request(system_prompt, user_prompt, is_retry=True)
            raise ExtractionError(f"Failed to parse AI response: {raw_json[:200]}")
        return parsed

    def _to_proposals(self, items: List[Any], phases: List[Dict[str, Any]],
                      tasks: List[Dict[str, Any]]) -> List[ExtractedTaskProposal]:
        phases_by_id = {p["id"]: p for p in phases}
        tasks_by_id = {t["id"]: t for t in tasks}
        proposals: List[ExtractedTaskProposal] = []

        for item in items:
            if not isinstance(item, dict):
                continue
            description = str(item.get("description") or "").strip()
            if not description:
                continue

            task = tasks_by_id.get(item.get("suggestedTaskId"))
            phase = phases_by_id.get(item.get("suggestedPhaseId"))
            if task is not None:
                phase = phases_by_id.get(task.get("phase_id"), phase)

            priority = str(item.get("priority") or "Medium").capitalize()
            if priority not in {"High", "Medium", "Low"}:
                priority = "Medium"

            try:
                proposal = ExtractedTaskProposal(
                    description=description,
                    suggested_phase_id=phase["id"] if phase else None,
                    suggested_phase_name=phase["name"] if phase else None,
                    suggested_task_id=task["id"] if task else None,
                    suggested_task_name=task["name"] if task else None,
                    owner=item.get("owner") or None,
                    due_date=normalize_due_date(item.get("dueDate")),
                    priority=priority,
                    notes=item.get("notes") or None,
                    is_new=False,
                    is_deleted=False,
                )
            except pydantic.ValidationError:
                continue  # Skip malformed items
            proposals.append(proposal)

        return proposals
