import argparse
import os
import sys
import tempfile
import time

from advisor.extraction import TranscriptProcessor
from portal.cache import ProposalCache
from portal.review import ReviewState, TranscriptReview
from portal.roadmap import RoadmapService
from portal.storage import SQLiteStore
from portal.transcripts import capture_transcript


# ANSI Escape codes for pretty terminal colors
class Colors:
    HEADER = '\033[95m'
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    OKGREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


DEMO_TRANSCRIPT = """
Counsellor (Priya): Thanks for coming in, Aarav. Let's go over where you are.
Aarav: I've started thinking about my personal statement, maybe something about robotics club.
Priya: Good. Try to have a first draft by Feb 20 so we have time to iterate.
Aarav: Okay. I also want to apply to a summer research program.
Priya: I'll send you a shortlist of three programs by next Friday.
Aarav: And I still need to log my volunteering hours from last term.
Priya: Please do that within 2 weeks, your coordinator needs them.
"""


def print_step(title, desc, pause):
    print(f"\n{Colors.HEADER}{Colors.BOLD}===================================================={Colors.ENDC}")
    print(f"{Colors.HEADER}{Colors.BOLD}► {title}{Colors.ENDC}")
    print(f"{Colors.HEADER}{Colors.BOLD}===================================================={Colors.ENDC}")
    print(f"{Colors.OKCYAN}{desc}{Colors.ENDC}\n")
    if pause:
        time.sleep(1)


def wait(message, interactive):
    if interactive:
        input(f"\n{Colors.WARNING}{message}{Colors.ENDC}")


def prepare_demo_data(workdir):
    store = SQLiteStore(os.path.join(workdir, "demo.db"))
    counsellor = store.create_counsellor("Priya Sharma", "priya@example.com")
    student = store.create_student(
        name="Aarav Mehta", email="aarav@example.com", grade="11", curriculum="IB",
        target_year=2027, counsellor_id=counsellor["id"],
    )
    roadmap = [
        ("Profile Building", ["Extracurricular Activities", "Summer Programs"]),
        ("Applications", ["Personal Statement", "Recommendation Letters"]),
    ]
    for p_seq, (phase_name, tasks) in enumerate(roadmap, start=1):
        phase = store.create_phase(phase_name, p_seq)
        for t_seq, task_name in enumerate(tasks, start=1):
            store.create_task(phase["id"], task_name, t_seq)
    note = capture_transcript(store, student["id"], "Check-in with Aarav", DEMO_TRANSCRIPT, counsellor["id"])
    return store, counsellor, student, note


def print_proposals(review):
    for i, p in enumerate(review.proposals.items, start=1):
        flag = f"{Colors.FAIL}(deleted){Colors.ENDC} " if p.is_deleted else ""
        print(f"  {i}. {flag}{Colors.BOLD}{p.description or '(blank)'}{Colors.ENDC}")
        print(f"     {p.suggested_phase_name or '-'} > {p.suggested_task_name or '-'} | "
              f"owner={p.owner} | due={p.due_date} | {p.priority}")


def run_demo(interactive):
    print(f"\n{Colors.OKGREEN}{Colors.BOLD}Starting Transcript Review Demo{Colors.ENDC}\n")
    workdir = tempfile.mkdtemp(prefix="portal-demo-")
    store, counsellor, student, note = prepare_demo_data(workdir)
    cache = ProposalCache(os.path.join(workdir, "cache"))

    print(f"{Colors.BOLD}Student:{Colors.ENDC} {student['name']}  {Colors.BOLD}Counsellor:{Colors.ENDC} {counsellor['name']}")
    print("--------------------------------------------------")
    print(DEMO_TRANSCRIPT.strip())
    print("--------------------------------------------------")

    wait("Press [ENTER] to extract subtasks from the transcript...", interactive)
    print_step("STEP 1: Extraction", "Asking the model for action items aligned with the roadmap.", interactive)
    review = TranscriptReview(store, TranscriptProcessor(store=store), student["id"], note["id"],
                              counsellor=counsellor, cache=cache, completion_delay=0).open()
    if review.error:
        print(f"{Colors.WARNING}⚠ {review.error}{Colors.ENDC}")
    print_proposals(review)

    wait("Press [ENTER] to review (drop the last proposal)...", interactive)
    print_step("STEP 2: Review", "Soft-deleting one proposal; the working set is cached after every change.", interactive)
    if len(review.proposals.items) > 1:
        review.soft_delete(review.proposals.items[-1].id)
    print_proposals(review)
    print(f"\n{Colors.OKBLUE}Cached: {cache.exists(student['id'], note['id'])}{Colors.ENDC}")

    wait("Press [ENTER] to commit...", interactive)
    print_step("STEP 3: Commit", "Writing active proposals as student subtasks.", interactive)
    result = review.commit()
    if review.state != ReviewState.SUCCESS:
        print(f"{Colors.FAIL}✗ {review.error}{Colors.ENDC}")
        return 1
    print(f"{Colors.OKGREEN}✓ {result.created_count} subtasks created. Note is now '{result.note_title}'.{Colors.ENDC}")

    print_step("STEP 4: Roadmap", "The student's roadmap with the new subtasks.", interactive)
    for phase in RoadmapService(store).student_roadmap(student["id"]):
        print(f"{Colors.BOLD}{phase['name']}{Colors.ENDC} ({phase['progress']['done']}/{phase['progress']['total']})")
        for task in phase["tasks"]:
            for subtask in task["subtasks"]:
                print(f"  - {task['name']} > {subtask['name']} [{subtask['status']}] eta={subtask['eta']}")

    print(f"\n{Colors.OKGREEN}{Colors.BOLD}Demo complete. Data kept in {workdir}{Colors.ENDC}\n")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Walk through a transcript review end to end")
    parser.add_argument("--yes", action="store_true", help="Run without pausing between steps")
    args = parser.parse_args()

    if not (os.environ.get("OPENAI_API_KEY") or os.environ.get("GROQ_API_KEY")):
        print(f"{Colors.FAIL}{Colors.BOLD}⚠ You must export OPENAI_API_KEY or GROQ_API_KEY to run the demo!{Colors.ENDC}")
        sys.exit(1)
    sys.exit(run_demo(interactive=not args.yes))
