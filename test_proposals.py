"""
The editable working set of proposals and its on-disk cache.
"""
import json

import pytest

from advisor.date_utils import normalize_due_date
from portal.cache import ProposalCache, cache_key
from portal.errors import ValidationError
from portal.models import ExtractedTaskProposal
from portal.proposals import ProposalStore


@pytest.fixture
def proposals(roadmap, cache):
    return ProposalStore("s-1", "n-1", phases=roadmap["phases"], tasks=roadmap["tasks"],
                         counsellor_name="Priya Sharma", cache=cache)


def _seed(store, *descriptions):
    store.replace([ExtractedTaskProposal(description=d) for d in descriptions])
    return store.items


def test_cache_key_format():
    assert cache_key("s-1", "n-1") == "transcript_tasks_s-1_n-1"


def test_cache_round_trip_and_clear(cache):
    assert cache.load("s", "n") is None
    cache.save("s", "n", [{"id": "a"}])
    assert cache.exists("s", "n")
    assert cache.load("s", "n") == [{"id": "a"}]
    cache.clear("s", "n")
    assert not cache.exists("s", "n")
    cache.clear("s", "n")  # already gone


def test_corrupt_cache_entry_is_ignored(cache):
    cache.save("s", "n", [])
    cache._path("s", "n").write_text("{not json", encoding="utf-8")
    assert cache.load("s", "n") is None

    cache._path("s", "n").write_text(json.dumps({"not": "a list"}), encoding="utf-8")
    assert cache.load("s", "n") is None


def test_add_uses_defaults(proposals):
    proposal = proposals.add()
    assert proposal.is_new is True
    assert proposal.description == ""
    assert proposal.suggested_phase_id == "phase-profile"
    assert proposal.suggested_phase_name == "Profile Building"
    assert proposal.suggested_task_id is None
    assert proposal.owner == "Priya Sharma"
    assert proposal.priority == "Medium"
    assert proposals.editing_id == proposal.id


def test_add_without_phases(cache):
    store = ProposalStore("s", "n", cache=cache)
    assert store.add().suggested_phase_id is None


def test_only_one_proposal_in_edit(proposals):
    first, second = _seed(proposals, "one", "two")
    proposals.edit(first.id)
    proposals.edit(second.id)
    assert proposals.editing_id == second.id
    proposals.cancel_edit()
    assert proposals.editing_id is None


def test_phase_change_resets_task(proposals):
    (item,) = _seed(proposals, "Log hours")
    proposals.save(item.id, {"suggestedPhaseId": "phase-profile", "suggestedTaskId": "task-ec"})
    assert proposals.get(item.id).suggested_task_name == "Extracurricular Activities"

    updated = proposals.save(item.id, {"suggestedPhaseId": "phase-apps"})
    assert updated.suggested_phase_name == "Applications"
    assert updated.suggested_task_id is None
    assert updated.suggested_task_name is None


def test_task_fills_name_and_phase(proposals):
    (item,) = _seed(proposals, "Write essay")
    updated = proposals.save(item.id, {"suggestedTaskId": "task-essay"})
    assert updated.suggested_task_name == "Personal Statement"
    assert updated.suggested_phase_id == "phase-apps"
    assert updated.suggested_phase_name == "Applications"
    assert proposals.editing_id is None


def test_task_from_other_phase_rejected(proposals):
    (item,) = _seed(proposals, "Write essay")
    proposals.save(item.id, {"suggestedPhaseId": "phase-profile"})
    with pytest.raises(ValidationError):
        proposals.save(item.id, {"suggestedTaskId": "task-essay"})
    with pytest.raises(ValidationError):
        proposals.save(item.id, {"suggestedTaskId": "nope"})


def test_save_merges_plain_fields(proposals):
    (item,) = _seed(proposals, "Draft")
    updated = proposals.save(item.id, {"description": "Draft v2", "dueDate": "2030-01-05",
                                       "priority": "Low", "owner": "Aarav"})
    assert (updated.description, updated.due_date, updated.priority, updated.owner) == \
        ("Draft v2", "2030-01-05", "Low", "Aarav")
    assert updated.id == item.id


def test_save_rejects_bad_values(proposals):
    (item,) = _seed(proposals, "Draft")
    with pytest.raises(ValidationError):
        proposals.save(item.id, {"priority": "Urgent"})
    with pytest.raises(ValidationError):
        proposals.save(item.id, {"id": "other"})
    with pytest.raises(ValidationError):
        proposals.save(item.id, {"isDeleted": True})


def test_save_normalises_due_date(proposals):
    (item,) = _seed(proposals, "Draft")

    updated = proposals.save(item.id, {"dueDate": "next friday"})
    assert updated.due_date == normalize_due_date("next friday")

    with pytest.raises(ValidationError):
        proposals.save(item.id, {"dueDate": "whenever works"})
    assert proposals.get(item.id).due_date == updated.due_date

    assert proposals.save(item.id, {"dueDate": ""}).due_date is None


def test_soft_delete_and_restore(proposals):
    first, second = _seed(proposals, "one", "two")
    proposals.edit(first.id)
    proposals.soft_delete(first.id)
    assert proposals.get(first.id).is_deleted is True
    assert proposals.editing_id is None
    assert proposals.active_count == 1
    assert [p.id for p in proposals.active()] == [second.id]
    assert len(proposals.items) == 2

    proposals.restore(first.id)
    assert proposals.active_count == 2


def test_unknown_id_raises_key_error(proposals):
    _seed(proposals, "one")
    for action in (proposals.edit, proposals.soft_delete, proposals.restore):
        with pytest.raises(KeyError):
            action("missing")
    with pytest.raises(KeyError):
        proposals.save("missing", {"description": "x"})


def test_every_mutation_is_cached(proposals, cache):
    """The cache always holds the full working set, camelCase."""
    first, second = _seed(proposals, "one", "two")
    assert [p["id"] for p in cache.load("s-1", "n-1")] == [first.id, second.id]

    proposals.soft_delete(second.id)
    assert cache.load("s-1", "n-1")[1]["isDeleted"] is True

    proposals.save(first.id, {"description": "one edited"})
    assert cache.load("s-1", "n-1")[0]["description"] == "one edited"

    added = proposals.add()
    saved = cache.load("s-1", "n-1")
    assert saved[-1]["id"] == added.id and saved[-1]["isNew"] is True


def test_restore_from_cache(proposals, roadmap, cache):
    first, second = _seed(proposals, "one", "two")
    proposals.soft_delete(second.id)

    reopened = ProposalStore("s-1", "n-1", phases=roadmap["phases"], tasks=roadmap["tasks"], cache=cache)
    assert reopened.restore_from_cache() is True
    assert [p.id for p in reopened.items] == [first.id, second.id]
    assert reopened.get(second.id).is_deleted is True
    assert reopened.editing_id is None

    other = ProposalStore("s-1", "n-2", cache=cache)
    assert other.restore_from_cache() is False


def test_duplicate_ids_are_reassigned(proposals):
    item = ExtractedTaskProposal(description="a")
    proposals.replace([item, item.model_copy()])
    ids = [p.id for p in proposals.items]
    assert len(set(ids)) == 2 and ids[0] == item.id


def test_separate_reviews_do_not_share_cache(tmp_path):
    cache = ProposalCache(str(tmp_path))
    a = ProposalStore("s", "n-a", cache=cache)
    b = ProposalStore("s", "n-b", cache=cache)
    a.add()
    assert cache.load("s", "n-b") is None
    b.add()
    assert len(cache.load("s", "n-a")) == 1
