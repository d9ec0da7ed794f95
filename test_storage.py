"""
SQLite-backed store: validation, cascade delete, realtime callbacks and
idempotent subtask writes.
"""
import sqlite3

import pytest

from portal.errors import RemoteStoreError, ValidationError
from portal.storage import SQLiteStore


def test_create_student_validates(store):
    with pytest.raises(ValidationError):
        store.create_student(name="", email="a@b.c", grade="11", curriculum="IB", target_year=2027)
    with pytest.raises(ValidationError):
        store.create_student(name="A", email="a@b.c", grade="11", curriculum="IB", target_year="soon")


def test_student_listing_and_search(store, counsellor):
    for name in ("Zoe Park", "aarav mehta", "Sara Khan"):
        store.create_student(name=name, email=f"{name[:3]}@x.com", grade="10", curriculum="IB",
                             target_year=2028, counsellor_id=counsellor["id"])
    assert [s["name"] for s in store.list_students(counsellor["id"])] == ["Sara Khan", "Zoe Park", "aarav mehta"]
    assert store.list_students("someone-else") == []
    assert [s["name"] for s in store.search_students("AAR")] == ["aarav mehta"]
    assert len(store.search_students("a", limit=2)) == 2


def test_update_student_notifies_subscribers(store, student):
    seen = []
    unsubscribe = store.subscribe_student(student["id"], seen.append)

    store.update_student(student["id"], grade="12")
    assert seen[-1]["grade"] == "12"

    unsubscribe()
    store.update_student(student["id"], grade="13")
    assert len(seen) == 1


def test_failing_subscriber_does_not_break_update(store, student):
    def boom(row):
        raise RuntimeError("listener crashed")

    store.subscribe_student(student["id"], boom)
    assert store.update_student(student["id"], student_context="Doing well")["student_context"] == "Doing well"


def test_update_rejects_unknown_columns(store, student):
    with pytest.raises(ValidationError):
        store.update_student(student["id"], id="hijack")


def test_roadmap_is_nested_and_ordered(store, roadmap):
    phases = store.get_roadmap()
    assert [p["name"] for p in phases] == ["Profile Building", "Applications"]
    assert [t["name"] for t in phases[0]["tasks"]] == ["Extracurricular Activities", "Summer Programs"]
    assert [t["id"] for t in phases[1]["tasks"]] == ["task-essay"]


def test_notes_newest_first_and_update(store, student, counsellor):
    first = store.create_note(student_id=student["id"], title="First", content="a")
    second = store.create_note(student_id=student["id"], type="transcript", title="Second", content="b")
    assert [n["id"] for n in store.list_notes(student["id"])] == [second["id"], first["id"]]
    assert [n["id"] for n in store.list_notes(student["id"], type="transcript")] == [second["id"]]

    updated = store.update_note(first["id"], updated_by=counsellor["id"], title="Renamed")
    assert updated["title"] == "Renamed"
    assert updated["updated_by"] == counsellor["id"]
    assert updated["updated_at"] >= first["updated_at"]

    with pytest.raises(ValidationError):
        store.create_note(student_id=student["id"], type="video")


def test_subtask_source_key_is_idempotent(store, roadmap, student):
    first = store.create_subtask(student["id"], "task-ec", "Log hours", source_key="n-1:p-1")
    again = store.create_subtask(student["id"], "task-ec", "Log hours (retry)", source_key="n-1:p-1")
    assert again["id"] == first["id"]
    assert len(store.list_subtasks(student["id"])) == 1


def test_subtask_status_is_checked(store, roadmap, student):
    with pytest.raises(ValidationError):
        store.create_subtask(student["id"], "task-ec", "Log hours", status="finished")
    row = store.create_subtask(student["id"], "task-ec", "Log hours")
    with pytest.raises(ValidationError):
        store.update_subtask(row["id"], status="finished")
    assert store.update_subtask(row["id"], status="done")["status"] == "done"


def test_subtasks_join_roadmap_names(store, roadmap, student):
    store.create_subtask(student["id"], "task-essay", "Brainstorm topics")
    (row,) = store.list_subtasks(student["id"], with_roadmap=True)
    assert row["task_name"] == "Personal Statement"
    assert row["phase_id"] == "phase-apps"
    assert row["phase_name"] == "Applications"


def test_delete_student_cascades(store, roadmap, student):
    store.create_subtask(student["id"], "task-ec", "Log hours")
    store.create_note(student_id=student["id"], title="text only", content="x")
    store.create_note(student_id=student["id"], type="image", title="scan", file_url="http://host/notes/s-1/a.png")
    store.create_file(student_id=student["id"], file_name="cv.pdf", file_url="http://host/notes/s-1/cv.pdf")

    urls = store.delete_student(student["id"])

    assert sorted(urls) == ["http://host/notes/s-1/a.png", "http://host/notes/s-1/cv.pdf"]
    assert store.get_student(student["id"]) is None
    assert store.list_notes(student["id"]) == []
    assert store.list_subtasks(student["id"]) == []
    assert store.list_files(student["id"]) == []


def test_driver_errors_are_wrapped(store, student):
    with pytest.raises(RemoteStoreError):
        store.create_counsellor("Dup", "priya@example.com")


def test_old_databases_gain_new_columns(tmp_path):
    path = str(tmp_path / "old.db")
    conn = sqlite3.connect(path)
    conn.execute("CREATE TABLE student_subtasks (id TEXT PRIMARY KEY, student_id TEXT, task_id TEXT, "
                 "name TEXT NOT NULL, status TEXT NOT NULL DEFAULT 'yet_to_start', remark TEXT, "
                 "eta TEXT, owner TEXT, created_at TEXT)")
    conn.commit()
    conn.close()

    store = SQLiteStore(path)
    columns = {r["name"] for r in store._fetchall("PRAGMA table_info(student_subtasks)")}
    assert "source_key" in columns
