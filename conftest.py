"""
Shared fixtures: a throwaway SQLite store with a small roadmap, a proposal
cache under tmp_path and a scripted stand-in for the OpenAI client.
"""
import json
from types import SimpleNamespace

import pytest

from portal.cache import ProposalCache
from portal.storage import SQLiteStore


class FakeCompletions:
    """Returns queued replies in order; an Exception in the queue is raised."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if not self.replies:
            raise RuntimeError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        message = SimpleNamespace(content=reply)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self, *replies):
        self.chat = SimpleNamespace(completions=FakeCompletions(replies))

    @property
    def calls(self):
        return self.chat.completions.calls


@pytest.fixture
def fake_client():
    return FakeClient


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(str(tmp_path / "portal.db"))


@pytest.fixture
def cache(tmp_path):
    return ProposalCache(str(tmp_path / "cache"))


@pytest.fixture
def roadmap(store):
    store.create_phase("Profile Building", 1, phase_id="phase-profile")
    store.create_phase("Applications", 2, phase_id="phase-apps")
    store.create_task("phase-profile", "Extracurricular Activities", 1, task_id="task-ec")
    store.create_task("phase-profile", "Summer Programs", 2, task_id="task-summer")
    store.create_task("phase-apps", "Personal Statement", 1, task_id="task-essay")
    return {"phases": store.list_phases(), "tasks": store.list_tasks()}


@pytest.fixture
def counsellor(store):
    return store.create_counsellor("Priya Sharma", "priya@example.com", counsellor_id="c-1")


@pytest.fixture
def student(store, counsellor):
    return store.create_student(
        id="s-1",
        name="Aarav Mehta",
        email="aarav@example.com",
        grade="11",
        curriculum="IB",
        target_year=2027,
        counsellor_id=counsellor["id"],
    )


@pytest.fixture
def transcript(store, student, counsellor):
    return store.create_note(
        student_id=student["id"],
        type="transcript",
        title="Meeting 12 March",
        content="Aarav will draft his personal statement by Feb 20. Priya to send the summer program list.",
        updated_by=counsellor["id"],
    )
