"""
Student context summaries and the @mention assistant.
"""
import threading
import time
from types import SimpleNamespace

import pytest

from advisor.chat import APOLOGY, ChatSession, build_student_context, parse_mentions
from advisor.context import MAX_PROMPT_CHARS, ContextGenerator, build_context_prompt
from portal.errors import ExtractionError, ValidationError


# -----------------------------
# Context generation
# -----------------------------

def test_context_prompt_contents(store, roadmap, student):
    store.create_subtask(student["id"], "task-essay", "Draft statement", status="in_progress",
                         remark="Second draft", eta="2030-01-01T00:00:00+00:00", owner="Aarav Mehta")
    for i in range(7):
        store.create_note(student_id=student["id"], title=f"Note {i}", content="x" * 150 if i == 6 else f"body {i}")

    prompt = build_context_prompt(
        store.get_student(student["id"]),
        store.list_subtasks(student["id"], with_roadmap=True),
        store.list_notes(student["id"]),
    )

    assert "- Name: Aarav Mehta" in prompt
    assert "- Target Year: 2027" in prompt
    assert ("- Applications > Personal Statement > Draft statement: in_progress (Remark: Second draft) "
            "(ETA: 2030-01-01T00:00:00+00:00) (Owner: Aarav Mehta)") in prompt
    # Five newest notes only, long content cut at 100 characters.
    assert "- Note 6: " + "x" * 100 + "..." in prompt
    assert "Note 2:" in prompt and "Note 1:" not in prompt


def test_context_prompt_is_capped():
    notes = [{"title": "t", "content": "y" * 100}] * 5
    subtasks = [{"name": "z" * 200, "status": "done"}] * 100
    prompt = build_context_prompt({"name": "A"}, subtasks, notes)
    assert len(prompt) == MAX_PROMPT_CHARS


def test_generate_stores_context(store, roadmap, student, fake_client):
    client = fake_client("  Aarav is on track with his essays.  ")
    generator = ContextGenerator(store, client=client, model="m")

    summary = generator.generate(student["id"])

    assert summary == "Aarav is on track with his essays."
    assert store.get_student(student["id"])["student_context"] == summary
    assert client.calls[0]["messages"][0]["role"] == "system"
    assert "Student Profile:" in client.calls[0]["messages"][1]["content"]
    assert not generator.is_generating(student["id"])


def test_generate_errors(store, student, fake_client):
    with pytest.raises(ValidationError):
        ContextGenerator(store, client=fake_client(), model="m").generate("missing")
    with pytest.raises(ExtractionError):
        ContextGenerator(store, client=fake_client(RuntimeError("down")), model="m").generate(student["id"])
    with pytest.raises(ExtractionError):
        ContextGenerator(store, client=fake_client(""), model="m").generate(student["id"])
    assert store.get_student(student["id"])["student_context"] is None


def test_concurrent_requests_share_one_call(store, student):
    started = threading.Event()
    release = threading.Event()
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        started.set()
        release.wait(5)
        message = SimpleNamespace(content="Shared summary")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])

    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))
    generator = ContextGenerator(store, client=client, model="m")
    results = []

    first = threading.Thread(target=lambda: results.append(generator.generate(student["id"])))
    first.start()
    assert started.wait(5)
    assert generator.is_generating(student["id"])

    second = threading.Thread(target=lambda: results.append(generator.generate(student["id"])))
    second.start()
    time.sleep(0.1)
    release.set()
    first.join(5)
    second.join(5)

    assert results == ["Shared summary", "Shared summary"]
    assert len(calls) == 1


# -----------------------------
# Chat
# -----------------------------

def test_parse_mentions():
    assert parse_mentions("@Aarav how is he doing vs @sara?") == ["Aarav", "sara"]
    assert parse_mentions("email me at priya@example.com") == []
    assert parse_mentions("line one\n@Zoe") == ["Zoe"]
    assert parse_mentions("") == []


def test_resolve_mentions_prefers_known(store, student):
    other = store.create_student(name="Aarav Kapoor", email="ak@x.com", grade="9", curriculum="CBSE", target_year=2029)
    session = ChatSession(store, client=object(), model="m")

    # Name search, first match each.
    assert [s["name"] for s in session.resolve_mentions("@aarav status?")] == ["Aarav Kapoor"]

    session.remember_mention(student)
    assert [s["id"] for s in session.resolve_mentions("@aarav status?")] == [student["id"]]
    assert other["id"] not in [s["id"] for s in session.resolve_mentions("@Aarav")]
    assert session.resolve_mentions("no mentions") == []


def test_ask_includes_student_data(store, roadmap, student, fake_client):
    store.update_student(student["id"], student_context="Strong in maths")
    store.create_note(student_id=student["id"], title="Call", content="Discussed essays")
    store.create_subtask(student["id"], "task-essay", "Draft statement", remark="v2 due")
    client = fake_client("He is progressing well.")
    session = ChatSession(store, client=client, model="m")

    answer = session.ask("How is @Aarav doing?")

    assert answer["reply"] == "He is progressing well."
    assert [s["id"] for s in answer["mentioned"]] == [student["id"]]
    content = client.calls[0]["messages"][-1]["content"]
    assert "The following student(s) were mentioned in the query:" in content
    assert "Student Profile for Aarav Mehta:" in content
    assert "Context: Strong in maths" in content
    assert "- Call: Discussed essays" in content
    assert "- Applications > Personal Statement > Draft statement: yet_to_start (Remark: v2 due)" in content
    assert content.endswith("User query: How is @Aarav doing?")
    assert session.history[-1] == {"role": "assistant", "content": "He is progressing well."}


def test_history_window(store, fake_client):
    client = fake_client(*[f"reply {i}" for i in range(5)])
    session = ChatSession(store, client=client, model="m")
    for i in range(5):
        session.ask(f"question {i}")

    last_messages = client.calls[-1]["messages"]
    assert len(last_messages) == 6
    assert last_messages[0] == {"role": "assistant", "content": "reply 1"}


def test_failure_returns_apology(store, fake_client):
    session = ChatSession(store, client=fake_client(RuntimeError("rate limited")), model="m")
    answer = session.ask("hello")
    assert answer["reply"] == APOLOGY
    assert session.history == []


def test_build_student_context_limits_notes():
    notes = [{"title": f"N{i}", "content": "c"} for i in range(5)]
    text = build_student_context({"name": "A", "grade": "10"}, notes, [])
    assert "- N2: c" in text and "- N3: c" not in text
