"""
The transcript review workflow, end to end against a SQLite store.
"""
import pytest

from advisor.date_utils import due_date_to_eta, normalize_due_date
from advisor.extraction import TranscriptProcessor
from portal.errors import RemoteStoreError, ReviewStateError
from portal.review import ReviewState, TranscriptReview

EXTRACTED = {"tasks": [
    {"description": "Draft personal statement", "suggestedTaskId": "task-essay",
     "owner": "aarav", "dueDate": "2030-02-20", "priority": "High"},
    {"description": "Send summer program list", "suggestedTaskId": "task-summer", "owner": "Priya"},
]}


def _review(store, client, student, transcript, counsellor, cache, **kwargs):
    processor = TranscriptProcessor(client=client, model="m", store=store)
    return TranscriptReview(store, processor, student["id"], transcript["id"],
                            counsellor=counsellor, cache=cache, completion_delay=0, **kwargs)


def test_open_extracts_and_normalises(store, roadmap, student, transcript, counsellor, cache, fake_client):
    print("\n── Test: Review Open ──")
    review = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache).open()

    assert review.state == ReviewState.REVIEWING
    assert review.error is None
    assert review.restored is False
    owners = [p.owner for p in review.proposals.items]
    assert owners == ["Aarav Mehta", "Priya Sharma"]
    assert review.active_count == 2
    assert cache.exists(student["id"], transcript["id"])
    print(f"  ✓ {review.active_count} proposals ready")


def test_reopen_restores_without_extraction(store, roadmap, student, transcript, counsellor, cache, fake_client):
    first = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache).open()
    doomed = first.proposals.items[1].id
    first.soft_delete(doomed)

    client = fake_client()
    second = _review(store, client, student, transcript, counsellor, cache).open()

    assert client.calls == []
    assert second.restored is True
    assert second.state == ReviewState.REVIEWING
    assert [p.id for p in second.proposals.items] == [p.id for p in first.proposals.items]
    assert second.proposals.get(doomed).is_deleted is True


def test_zero_results_inserts_blank_proposal(store, roadmap, student, transcript, counsellor, cache, fake_client):
    review = _review(store, fake_client({"tasks": []}), student, transcript, counsellor, cache).open()

    assert review.state == ReviewState.EDITING
    assert review.error is None
    (blank,) = review.proposals.items
    assert blank.is_new and blank.description == ""
    assert blank.owner == "Priya Sharma"
    assert review.proposals.editing_id == blank.id


def test_extraction_failure_still_reviewable(store, roadmap, student, transcript, counsellor, cache, fake_client):
    client = fake_client(RuntimeError("quota exceeded"), RuntimeError("quota exceeded"))
    review = _review(store, client, student, transcript, counsellor, cache).open()

    assert "quota exceeded" in review.error
    assert review.error.endswith("Add subtasks manually or try again later.")
    assert review.state == ReviewState.EDITING
    assert len(review.proposals.items) == 1

    review.dismiss_error()
    assert review.error is None


def test_missing_data_is_an_error(store, roadmap, student, counsellor, cache, fake_client):
    note = store.create_note(student_id=student["id"], type="transcript", title="Empty", content="")
    client = fake_client()
    review = TranscriptReview(store, TranscriptProcessor(client=client, model="m"), student["id"], note["id"],
                              counsellor=counsellor, cache=cache).open()

    assert review.state == ReviewState.ERROR
    assert review.error == "Missing required data to process transcript"
    assert review.proposals is None
    assert client.calls == []
    with pytest.raises(ReviewStateError):
        review.add()


def test_edit_cycle(store, roadmap, student, transcript, counsellor, cache, fake_client):
    review = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache).open()
    item = review.proposals.items[0]

    review.edit(item.id)
    assert review.state == ReviewState.EDITING
    review.save(item.id, {"description": "Draft statement v1"})
    assert review.state == ReviewState.REVIEWING

    added = review.add()
    assert review.state == ReviewState.EDITING
    review.cancel_edit()
    assert review.state == ReviewState.REVIEWING
    review.soft_delete(added.id)
    assert review.active_count == 2
    review.restore(added.id)
    assert review.active_count == 3


def test_commit_success(store, roadmap, student, transcript, counsellor, cache, fake_client):
    completed = []
    review = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache,
                     on_complete=completed.append).open()
    review.soft_delete(review.proposals.items[1].id)

    result = review.commit()

    assert review.state == ReviewState.SUCCESS
    assert result.created_count == 1
    assert completed == [result]
    assert not cache.exists(student["id"], transcript["id"])
    assert store.get_note(transcript["id"])["title"] == "Transcript (1 tasks extracted)"
    assert store.get_note(transcript["id"])["updated_by"] == counsellor["id"]
    assert review.snapshot()["createdCount"] == 1

    with pytest.raises(ReviewStateError):
        review.add()
    with pytest.raises(ReviewStateError):
        review.commit()


def test_commit_failure_then_retry(store, roadmap, student, transcript, counsellor, cache, fake_client):
    review = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache).open()
    real_create = store.create_subtask
    calls = {"n": 0}

    def failing_second(**kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RemoteStoreError("timeout")
        return real_create(**kwargs)

    store.create_subtask = failing_second
    assert review.commit() is None
    assert review.state == ReviewState.ERROR
    assert review.error.endswith("Please try again.")
    snap = review.snapshot()
    assert snap["failedProposalId"] == review.proposals.items[1].id
    assert snap["createdProposalIds"] == [review.proposals.items[0].id]
    assert cache.exists(student["id"], transcript["id"])

    review.resume()
    assert review.state == ReviewState.REVIEWING

    store.create_subtask = real_create
    result = review.commit()
    assert review.state == ReviewState.SUCCESS
    assert result.created_count == 2
    assert len(store.list_subtasks(student["id"])) == 2


def test_edited_due_date_reaches_subtask(store, roadmap, student, transcript, counsellor, cache, fake_client):
    review = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache).open()
    second = review.proposals.items[1]
    review.save(second.id, {"dueDate": "tomorrow"})

    review.commit()

    etas = {s["name"]: s["eta"] for s in store.list_subtasks(student["id"])}
    assert etas["Send summer program list"] == due_date_to_eta(normalize_due_date("tomorrow"))
    assert etas["Draft personal statement"] == "2030-02-20T00:00:00+00:00"


def test_cancel_clears_cache(store, roadmap, student, transcript, counsellor, cache, fake_client):
    review = _review(store, fake_client(EXTRACTED), student, transcript, counsellor, cache).open()
    assert cache.exists(student["id"], transcript["id"])

    review.cancel()

    assert review.state == ReviewState.CANCELLED
    assert review.proposals is None
    assert not cache.exists(student["id"], transcript["id"])
    with pytest.raises(ReviewStateError):
        review.add()


def test_delayed_completion_callback(store, roadmap, student, transcript, counsellor, cache, fake_client):
    import threading

    fired = threading.Event()
    processor = TranscriptProcessor(client=fake_client(EXTRACTED), model="m", store=store)
    review = TranscriptReview(store, processor, student["id"], transcript["id"], counsellor=counsellor,
                              cache=cache, on_complete=lambda result: fired.set(), completion_delay=0.05)
    review.open()
    review.commit()

    assert fired.wait(2.0)
