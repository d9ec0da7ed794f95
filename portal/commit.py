"""
commit.py

Writes reviewed proposals into the roadmap as student subtasks.
"""

import logging
from typing import List, Optional

from advisor.date_utils import due_date_to_eta
from portal.cache import ProposalCache
from portal.errors import CommitError
from portal.models import CommitResult, Committed, ExtractedTaskProposal, Proposed

logger = logging.getLogger(__name__)


def idempotency_key(note_id: str, proposal_id: str) -> str:
    return f"{note_id}:{proposal_id}"


def transcript_title(created: int) -> str:
    return f"Transcript ({created} tasks extracted)"


def commit(
    store,
    working_set: List[ExtractedTaskProposal],
    student_id: str,
    note_id: str,
    cache: Optional[ProposalCache] = None,
    counsellor_id: Optional[str] = None,
) -> CommitResult:
    """
    Create one subtask per active, committable proposal, in list order.

    Deleted proposals are ignored; active ones with a blank description or no
    task are skipped without error. Each write is keyed by note and proposal
    id, so running commit again after a partial failure only writes what is
    missing. When every write succeeds the transcript note is retitled and
    the cached working set cleared; on failure the cache is left in place.
    """
    created: List[tuple] = []
    skipped: List[Proposed] = []

    for proposal in working_set:
        if proposal.is_deleted:
            continue
        if not proposal.is_committable():
            logger.info("[Commit] skipping %s: %s", proposal.id,
                        "no task" if proposal.description.strip() else "blank description")
            skipped.append(Proposed(proposal.id))
            continue
        try:
            row = store.create_subtask(
                student_id=student_id,
                task_id=proposal.suggested_task_id,
                name=proposal.description.strip(),
                status="yet_to_start",
                remark=proposal.notes or None,
                eta=due_date_to_eta(proposal.due_date),
                owner=proposal.owner or None,
                source_key=idempotency_key(note_id, proposal.id),
            )
        except Exception as exc:
            logger.error("[Commit] ✗ write failed for %s after %d created: %s", proposal.id, len(created), exc)
            raise CommitError(
                f"Failed to create subtask '{proposal.description.strip()}': {exc}",
                created=[p.client_id for p, _ in created],
                failed_id=proposal.id,
            ) from exc
        created.append((Proposed(proposal.id), Committed(row["id"])))

    title = transcript_title(len(created))
    try:
        store.update_note(note_id, updated_by=counsellor_id, title=title)
    except Exception as exc:
        logger.error("[Commit] ✗ could not mark transcript %s as processed: %s", note_id, exc)
        raise CommitError(
            f"Subtasks created but the transcript could not be updated: {exc}",
            created=[p.client_id for p, _ in created],
        ) from exc

    if cache is not None:
        cache.clear(student_id, note_id)

    logger.info("[Commit] ✓ %d subtasks created, %d skipped", len(created), len(skipped))
    return CommitResult(created=created, skipped=skipped, note_title=title)
