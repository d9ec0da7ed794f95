import logging
import re
from typing import Any, Dict, List, Optional

from advisor.client import resolve_client
from advisor.config import config

logger = logging.getLogger(__name__)

MENTION_PATTERN = re.compile(r"(?:(?<=\s)|^)@(\w+)")
HISTORY_WINDOW = 5
RECENT_NOTES = 3

GREETING = "Hello! I'm your AI assistant. How can I help you today? You can mention a student using the @ symbol."
APOLOGY = "I'm sorry, I encountered an error while processing your request. Please try again."

SYSTEM_PROMPT = """You are an AI assistant for a school counsellor portal.
You provide helpful, clear, and concise responses to counsellors' questions about students,
their progress, and academic tasks. Keep your answers factual and based on the available data.
Whenever a student is mentioned, try to provide relevant information about their current status,
progress, and recent notes if available."""


def parse_mentions(text: str) -> List[str]:
    """`@word` tokens that start the text or follow whitespace."""
    return MENTION_PATTERN.findall(text or "")


def build_student_context(student: Dict[str, Any], notes: List[Dict[str, Any]],
                          subtasks: List[Dict[str, Any]]) -> str:
    lines = [
        f"\n\nStudent Profile for {student['name']}:",
        f"Grade: {student.get('grade')}",
        f"Curriculum: {student.get('curriculum')}",
        f"Target Year: {student.get('target_year')}",
    ]
    if student.get("student_context"):
        lines.append(f"Context: {student['student_context']}")

    if notes:
        lines.append("\nRecent Notes:")
        for note in notes[:RECENT_NOTES]:
            lines.append(f"- {note.get('title') or 'Untitled'}: {note.get('content') or ''}")

    if subtasks:
        lines.append("\nSubtasks and Progress:")
        for subtask in subtasks:
            line = (f"- {subtask.get('phase_name') or 'Unknown Phase'} > "
                    f"{subtask.get('task_name') or 'Unknown Task'} > {subtask['name']}: {subtask.get('status')}")
            if subtask.get("remark"):
                line += f" (Remark: {subtask['remark']})"
            lines.append(line)
    return "\n".join(lines)


class ChatSession:
    """One counsellor's conversation with the assistant."""

    def __init__(self, store, api_key: Optional[str] = None, model: Optional[str] = None, client=None):
        if client is None:
            client, model = resolve_client(api_key, model, openai_model="gpt-4o")
        self.client = client
        self.model = model or config['model'] or "gpt-4o"
        self.store = store
        self.history: List[Dict[str, str]] = []
        # id -> {id, name} for students picked from suggestions this session
        self.known_mentions: Dict[str, Dict[str, Any]] = {}

    def remember_mention(self, student: Dict[str, Any]) -> None:
        self.known_mentions[student["id"]] = {"id": student["id"], "name": student["name"]}

    def suggest(self, fragment: str, limit: int = 5) -> List[Dict[str, Any]]:
        return self.store.search_students(fragment, limit=limit)

    def resolve_mentions(self, text: str) -> List[Dict[str, Any]]:
        mentions = parse_mentions(text)
        if not mentions:
            return []

        known = [
            s for s in self.known_mentions.values()
            if any(m.lower() in s["name"].lower() for m in mentions)
        ]
        if known:
            return known

        resolved: List[Dict[str, Any]] = []
        for mention in mentions:
            matches = self.store.search_students(mention, limit=1)
            if matches and matches[0]["id"] not in {s["id"] for s in resolved}:
                resolved.append(matches[0])
        return resolved

    def ask(self, query: str) -> Dict[str, Any]:
        """
        Answer a query. Returns {reply, mentioned}; on any failure the reply
        is a fixed apology and the history is left unchanged.
        """
        mentioned: List[Dict[str, Any]] = []
        try:
            mentioned = self.resolve_mentions(query)
            prompt = SYSTEM_PROMPT
            student_data = ""
            if mentioned:
                prompt += "\n\nThe following student(s) were mentioned in the query:"
                for ref in mentioned:
                    student = self.store.get_student(ref["id"])
                    if student is None:
                        continue
                    student_data += build_student_context(
                        student,
                        self.store.list_notes(student["id"]),
                        self.store.list_subtasks(student["id"], with_roadmap=True),
                    )

            user_message = {"role": "user", "content": f"{prompt}{student_data}\n\nUser query: {query}"}
            messages = self.history[-HISTORY_WINDOW:] + [user_message]
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=config['chat_temperature'],
                max_tokens=config['max_tokens'],
                timeout=config['timeout'],
            )
            reply = response.choices[0].message.content
            if not reply:
                raise ValueError("empty response")
        except Exception as exc:
            logger.error("[Chat] ✗ failed to answer query: %s", exc)
            return {"reply": APOLOGY, "mentioned": mentioned}

        self.history = messages + [{"role": "assistant", "content": reply}]
        return {"reply": reply, "mentioned": mentioned}
