"""
storage.py

Table access for counsellors, students, the roadmap (phases/tasks), notes,
student subtasks and files. SQL is written once in SQLStore; SQLiteStore and
PostgresStore (postgres_storage.py) only supply the connection.
"""

import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from portal.config import config
from portal.errors import RemoteStoreError, ValidationError

logger = logging.getLogger(__name__)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS counsellors (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL UNIQUE,
        phone TEXT,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS students (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT,
        target_year INTEGER NOT NULL,
        grade TEXT NOT NULL,
        curriculum TEXT NOT NULL,
        other_curriculum TEXT,
        student_context TEXT,
        counsellor_id TEXT REFERENCES counsellors(id),
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS phases (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        sequence INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        phase_id TEXT REFERENCES phases(id),
        name TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        subtask_suggestion TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        student_id TEXT REFERENCES students(id),
        phase_id TEXT REFERENCES phases(id),
        task_id TEXT REFERENCES tasks(id),
        title TEXT,
        content TEXT,
        type TEXT NOT NULL DEFAULT 'text',
        file_url TEXT,
        created_at TEXT,
        updated_at TEXT,
        updated_by TEXT REFERENCES counsellors(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS student_subtasks (
        id TEXT PRIMARY KEY,
        student_id TEXT REFERENCES students(id),
        task_id TEXT REFERENCES tasks(id),
        name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'yet_to_start',
        remark TEXT,
        eta TEXT,
        owner TEXT,
        source_key TEXT UNIQUE,
        created_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        id TEXT PRIMARY KEY,
        student_id TEXT REFERENCES students(id),
        phase_id TEXT REFERENCES phases(id),
        task_id TEXT REFERENCES tasks(id),
        file_name TEXT NOT NULL,
        file_url TEXT NOT NULL,
        file_type TEXT,
        file_size INTEGER,
        description TEXT,
        counsellor_id TEXT REFERENCES counsellors(id),
        created_at TEXT
    )
    """,
]

# Columns added after the first release; back-filled on older databases.
LATE_COLUMNS = {
    "students": {"other_curriculum": "TEXT", "student_context": "TEXT"},
    "student_subtasks": {"source_key": "TEXT"},
    "tasks": {"subtask_suggestion": "TEXT"},
}

UPDATABLE = {
    "students": {"name", "email", "phone", "target_year", "grade", "curriculum",
                 "other_curriculum", "student_context", "counsellor_id"},
    "notes": {"title", "content", "type", "file_url", "phase_id", "task_id"},
    "student_subtasks": {"name", "status", "remark", "eta", "owner", "task_id"},
}

SUBTASK_STATUSES = {"yet_to_start", "in_progress", "done", "blocked", "not_applicable"}
NOTE_TYPES = {"text", "file", "image", "transcript"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _require(fields: Dict[str, Any], names: Iterable[str]) -> None:
    missing = [n for n in names if fields.get(n) is None or str(fields.get(n)).strip() == ""]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}")


class SQLStore:
    """
    Shared query layer. Subclasses implement `_fetchall` and `_execute`;
    statements use `?` placeholders and are rewritten by `_sql` when the
    driver wants something else.
    """

    placeholder = "?"

    def __init__(self):
        self._listeners: Dict[str, List[Callable[[Dict[str, Any]], None]]] = {}

    # -----------------------------
    # Driver hooks
    # -----------------------------

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> None:
        raise NotImplementedError

    def _sql(self, sql: str) -> str:
        if self.placeholder == "?":
            return sql
        return sql.replace("?", self.placeholder)

    def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        columns = ", ".join(row.keys())
        marks = ", ".join(["?"] * len(row))
        self._execute(f"INSERT INTO {table} ({columns}) VALUES ({marks})", list(row.values()))
        return dict(row)

    def _update(self, table: str, row_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        unknown = set(fields) - UPDATABLE[table]
        if unknown:
            raise ValidationError(f"Cannot update {table} field(s): {', '.join(sorted(unknown))}")
        if fields:
            assignments = ", ".join(f"{k} = ?" for k in fields)
            self._execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                list(fields.values()) + [row_id],
            )
        return self._fetchone(f"SELECT * FROM {table} WHERE id = ?", (row_id,))

    # -----------------------------
    # Realtime
    # -----------------------------

    def subscribe_student(self, student_id: str, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Deliver the updated row to `callback` whenever this student changes."""
        self._listeners.setdefault(student_id, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._listeners.get(student_id, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._listeners.pop(student_id, None)

        return unsubscribe

    def _notify_student(self, row: Dict[str, Any]) -> None:
        for callback in list(self._listeners.get(row["id"], [])):
            try:
                callback(dict(row))
            except Exception as exc:
                logger.warning("[Realtime] listener failed for student %s: %s", row["id"], exc)

    # -----------------------------
    # Counsellors
    # -----------------------------

    def create_counsellor(self, name: str, email: str, phone: Optional[str] = None,
                          counsellor_id: Optional[str] = None) -> Dict[str, Any]:
        _require({"name": name, "email": email}, ["name", "email"])
        return self._insert("counsellors", {
            "id": counsellor_id or _new_id(),
            "name": name,
            "email": email,
            "phone": phone,
            "created_at": _now(),
        })

    def get_counsellor(self, counsellor_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM counsellors WHERE id = ?", (counsellor_id,))

    def get_counsellor_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM counsellors WHERE LOWER(email) = LOWER(?)", (email,))

    # -----------------------------
    # Students
    # -----------------------------

    def create_student(self, **fields: Any) -> Dict[str, Any]:
        _require(fields, ["name", "email", "grade", "curriculum", "target_year"])
        try:
            target_year = int(fields["target_year"])
        except (TypeError, ValueError):
            raise ValidationError("target_year must be a year")
        row = {
            "id": fields.get("id") or _new_id(),
            "name": fields["name"].strip(),
            "email": fields["email"].strip(),
            "phone": fields.get("phone"),
            "target_year": target_year,
            "grade": fields["grade"],
            "curriculum": fields["curriculum"],
            "other_curriculum": fields.get("other_curriculum"),
            "student_context": fields.get("student_context"),
            "counsellor_id": fields.get("counsellor_id"),
            "created_at": _now(),
        }
        return self._insert("students", row)

    def get_student(self, student_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM students WHERE id = ?", (student_id,))

    def list_students(self, counsellor_id: Optional[str] = None) -> List[Dict[str, Any]]:
        if counsellor_id:
            return self._fetchall(
                "SELECT * FROM students WHERE counsellor_id = ? ORDER BY name", (counsellor_id,)
            )
        return self._fetchall("SELECT * FROM students ORDER BY name")

    def search_students(self, fragment: str, limit: int = 10) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT id, name FROM students WHERE LOWER(name) LIKE LOWER(?) ORDER BY name LIMIT ?",
            (f"%{fragment}%", limit),
        )

    def update_student(self, student_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        row = self._update("students", student_id, fields)
        if row:
            self._notify_student(row)
        return row

    def delete_student(self, student_id: str) -> List[str]:
        """
        Delete a student and everything hanging off it.
        Returns the URLs of stored objects the caller should remove.
        """
        urls = [r["file_url"] for r in self._fetchall(
            "SELECT file_url FROM files WHERE student_id = ?", (student_id,)
        )]
        self._execute("DELETE FROM files WHERE student_id = ?", (student_id,))
        urls.extend(r["file_url"] for r in self._fetchall(
            "SELECT file_url FROM notes WHERE student_id = ? AND file_url IS NOT NULL", (student_id,)
        ))
        self._execute("DELETE FROM notes WHERE student_id = ?", (student_id,))
        self._execute("DELETE FROM student_subtasks WHERE student_id = ?", (student_id,))
        self._execute("DELETE FROM students WHERE id = ?", (student_id,))
        self._listeners.pop(student_id, None)
        return urls

    # -----------------------------
    # Roadmap
    # -----------------------------

    def create_phase(self, name: str, sequence: int, phase_id: Optional[str] = None) -> Dict[str, Any]:
        _require({"name": name}, ["name"])
        return self._insert("phases", {"id": phase_id or _new_id(), "name": name, "sequence": sequence})

    def create_task(self, phase_id: str, name: str, sequence: int,
                    subtask_suggestion: Optional[str] = None, task_id: Optional[str] = None) -> Dict[str, Any]:
        _require({"name": name, "phase_id": phase_id}, ["name", "phase_id"])
        return self._insert("tasks", {
            "id": task_id or _new_id(),
            "phase_id": phase_id,
            "name": name,
            "sequence": sequence,
            "subtask_suggestion": subtask_suggestion,
        })

    def list_phases(self) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM phases ORDER BY sequence")

    def list_tasks(self) -> List[Dict[str, Any]]:
        return self._fetchall("SELECT * FROM tasks ORDER BY sequence")

    def get_task(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))

    def get_roadmap(self) -> List[Dict[str, Any]]:
        """Phases in sequence order, each with its tasks nested under `tasks`."""
        phases = [dict(p, tasks=[]) for p in self.list_phases()]
        by_id = {p["id"]: p for p in phases}
        for task in self.list_tasks():
            phase = by_id.get(task["phase_id"])
            if phase is not None:
                phase["tasks"].append(task)
        return phases

    # -----------------------------
    # Notes
    # -----------------------------

    def create_note(self, student_id: str, type: str = "text", title: Optional[str] = None,
                    content: Optional[str] = None, file_url: Optional[str] = None,
                    phase_id: Optional[str] = None, task_id: Optional[str] = None,
                    updated_by: Optional[str] = None) -> Dict[str, Any]:
        if type not in NOTE_TYPES:
            raise ValidationError(f"Unknown note type: {type}")
        now = _now()
        return self._insert("notes", {
            "id": _new_id(),
            "student_id": student_id,
            "phase_id": phase_id,
            "task_id": task_id,
            "title": title,
            "content": content,
            "type": type,
            "file_url": file_url,
            "created_at": now,
            "updated_at": now,
            "updated_by": updated_by,
        })

    def get_note(self, note_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM notes WHERE id = ?", (note_id,))

    def list_notes(self, student_id: str, type: Optional[str] = None) -> List[Dict[str, Any]]:
        if type:
            return self._fetchall(
                "SELECT * FROM notes WHERE student_id = ? AND type = ? ORDER BY created_at DESC",
                (student_id, type),
            )
        return self._fetchall(
            "SELECT * FROM notes WHERE student_id = ? ORDER BY created_at DESC", (student_id,)
        )

    def update_note(self, note_id: str, updated_by: Optional[str] = None, **fields: Any) -> Optional[Dict[str, Any]]:
        unknown = set(fields) - UPDATABLE["notes"]
        if unknown:
            raise ValidationError(f"Cannot update notes field(s): {', '.join(sorted(unknown))}")
        assignments = ", ".join([f"{k} = ?" for k in fields] + ["updated_at = ?", "updated_by = ?"])
        self._execute(
            f"UPDATE notes SET {assignments} WHERE id = ?",
            list(fields.values()) + [_now(), updated_by, note_id],
        )
        return self.get_note(note_id)

    def delete_note(self, note_id: str) -> None:
        self._execute("DELETE FROM notes WHERE id = ?", (note_id,))

    # -----------------------------
    # Student subtasks
    # -----------------------------

    def create_subtask(self, student_id: str, task_id: str, name: str, status: str = "yet_to_start",
                       remark: Optional[str] = None, eta: Optional[str] = None,
                       owner: Optional[str] = None, source_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Insert one subtask. When `source_key` matches an existing row that row
        is returned unchanged, so replaying a write is harmless.
        """
        _require({"name": name, "task_id": task_id, "student_id": student_id}, ["name", "task_id", "student_id"])
        if status not in SUBTASK_STATUSES:
            raise ValidationError(f"Unknown subtask status: {status}")
        if source_key:
            existing = self._fetchone("SELECT * FROM student_subtasks WHERE source_key = ?", (source_key,))
            if existing:
                logger.info("[Subtasks] %s already written, skipping", source_key)
                return existing
        return self._insert("student_subtasks", {
            "id": _new_id(),
            "student_id": student_id,
            "task_id": task_id,
            "name": name,
            "status": status,
            "remark": remark,
            "eta": eta,
            "owner": owner,
            "source_key": source_key,
            "created_at": _now(),
        })

    def get_subtask(self, subtask_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM student_subtasks WHERE id = ?", (subtask_id,))

    def list_subtasks(self, student_id: str, with_roadmap: bool = False) -> List[Dict[str, Any]]:
        if not with_roadmap:
            return self._fetchall(
                "SELECT * FROM student_subtasks WHERE student_id = ? ORDER BY created_at", (student_id,)
            )
        return self._fetchall(
            """
            SELECT s.*, t.name AS task_name, t.phase_id AS phase_id, p.name AS phase_name
            FROM student_subtasks s
            LEFT JOIN tasks t ON t.id = s.task_id
            LEFT JOIN phases p ON p.id = t.phase_id
            WHERE s.student_id = ?
            ORDER BY s.created_at
            """,
            (student_id,),
        )

    def update_subtask(self, subtask_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
        if "status" in fields and fields["status"] not in SUBTASK_STATUSES:
            raise ValidationError(f"Unknown subtask status: {fields['status']}")
        return self._update("student_subtasks", subtask_id, fields)

    def delete_subtask(self, subtask_id: str) -> None:
        self._execute("DELETE FROM student_subtasks WHERE id = ?", (subtask_id,))

    # -----------------------------
    # Files
    # -----------------------------

    def create_file(self, student_id: str, file_name: str, file_url: str, file_type: Optional[str] = None,
                    file_size: Optional[int] = None, description: Optional[str] = None,
                    phase_id: Optional[str] = None, task_id: Optional[str] = None,
                    counsellor_id: Optional[str] = None) -> Dict[str, Any]:
        _require({"file_name": file_name, "file_url": file_url}, ["file_name", "file_url"])
        return self._insert("files", {
            "id": _new_id(),
            "student_id": student_id,
            "phase_id": phase_id,
            "task_id": task_id,
            "file_name": file_name,
            "file_url": file_url,
            "file_type": file_type,
            "file_size": file_size,
            "description": description,
            "counsellor_id": counsellor_id,
            "created_at": _now(),
        })

    def get_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM files WHERE id = ?", (file_id,))

    def list_files(self, student_id: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM files WHERE student_id = ? ORDER BY created_at DESC", (student_id,)
        )

    def delete_file(self, file_id: str) -> None:
        self._execute("DELETE FROM files WHERE id = ?", (file_id,))


class SQLiteStore(SQLStore):
    """Single-file store used locally and in tests."""

    def __init__(self, db_path: Optional[str] = None):
        super().__init__()
        self.db_path = db_path or config["db_path"]
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_db(self) -> None:
        try:
            with self._connect() as conn:
                for statement in SCHEMA:
                    conn.execute(statement)
                for table, columns in LATE_COLUMNS.items():
                    _ensure_columns(conn, table, columns)
        except sqlite3.Error as exc:
            raise RemoteStoreError(f"Failed to initialise {self.db_path}: {exc}") from exc

    def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        try:
            with self._connect() as conn:
                return [dict(row) for row in conn.execute(self._sql(sql), tuple(params)).fetchall()]
        except sqlite3.Error as exc:
            raise RemoteStoreError(f"Query failed: {exc}") from exc

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> None:
        try:
            with self._connect() as conn:
                conn.execute(self._sql(sql), tuple(params))
                conn.commit()
        except sqlite3.Error as exc:
            raise RemoteStoreError(f"Write failed: {exc}") from exc


def _ensure_columns(conn: sqlite3.Connection, table: str, columns: Dict[str, str]) -> None:
    existing = {
        row["name"]
        for row in conn.execute(f"PRAGMA table_info({table})").fetchall()
    }
    for name, col_type in columns.items():
        if name in existing:
            continue
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {col_type}")
