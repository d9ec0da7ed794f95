import argparse
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from portal.postgres_storage import PostgresStore
from portal.storage import SQLiteStore

ROADMAP = [
    ("Profile Building", [
        ("Academic Planning", "Review subject choices for next term"),
        ("Extracurricular Activities", "Log hours for current activities"),
        ("Summer Programs", "Shortlist three summer programs"),
    ]),
    ("Standardized Testing", [
        ("SAT / ACT", "Book a diagnostic test"),
        ("English Proficiency", "Register for IELTS or TOEFL"),
    ]),
    ("University Research", [
        ("Build College List", "Draft a list of reach, match and safety schools"),
        ("Campus Visits", "Schedule virtual tours"),
    ]),
    ("Applications", [
        ("Personal Statement", "Brainstorm essay topics"),
        ("Recommendation Letters", "Ask two teachers for letters"),
        ("Submit Applications", "Create Common App account"),
    ]),
]


def seed(store):
    print("🌱 Seeding Database...")

    counsellor = store.get_counsellor_by_email("counsellor@example.com")
    if counsellor is None:
        counsellor = store.create_counsellor("Priya Sharma", "counsellor@example.com")
        print(f"✅ Counsellor: {counsellor['name']} ({counsellor['id']})")

    if store.list_phases():
        print("ℹ️ Roadmap already present, skipping.")
    else:
        for p_seq, (phase_name, tasks) in enumerate(ROADMAP, start=1):
            phase = store.create_phase(phase_name, p_seq)
            for t_seq, (task_name, suggestion) in enumerate(tasks, start=1):
                store.create_task(phase["id"], task_name, t_seq, subtask_suggestion=suggestion)
        print(f"✅ Roadmap: {len(ROADMAP)} phases, {sum(len(t) for _, t in ROADMAP)} tasks")

    if not store.list_students(counsellor["id"]):
        students = [
            ("Aarav Mehta", "aarav@example.com", "11", "IB", 2027),
            ("Sara Khan", "sara@example.com", "12", "A Levels", 2026),
        ]
        for name, email, grade, curriculum, year in students:
            store.create_student(
                name=name, email=email, grade=grade, curriculum=curriculum,
                target_year=year, counsellor_id=counsellor["id"],
            )
        print(f"✅ Students: {len(students)}")

    print("✅ Seed Complete!")


def main():
    parser = argparse.ArgumentParser(description="Seed the portal database with a demo roadmap")
    parser.add_argument("--postgres", action="store_true", help="Seed PORTAL_DATABASE_URL instead of SQLite")
    args = parser.parse_args()

    store = PostgresStore() if args.postgres else SQLiteStore()
    seed(store)


if __name__ == "__main__":
    main()
