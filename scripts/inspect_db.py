import argparse
import json
import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from portal.storage import SQLiteStore

TABLES = ["counsellors", "students", "phases", "tasks", "notes", "student_subtasks", "files"]
STUDENT_TABLES = {"notes", "student_subtasks", "files"}


def inspect_table(store, table_name, limit=10, student_id=None):
    if table_name not in TABLES:
        print(f"❌ Unknown table '{table_name}'. Choose one of: {', '.join(TABLES)}")
        return

    sql, params = f"SELECT * FROM {table_name}", []
    if student_id and table_name in STUDENT_TABLES:
        sql += " WHERE student_id = ?"
        params.append(student_id)
    rows = store._fetchall(sql + " LIMIT ?", tuple(params + [limit]))

    scope = f" for student {student_id}" if student_id and table_name in STUDENT_TABLES else ""
    print(f"\n🔍 {table_name}{scope}: showing {len(rows)} row(s)\n")
    for i, row in enumerate(rows, start=1):
        print(f"--- {table_name} #{i} ---")
        print(json.dumps(row, indent=2, default=str))


def main():
    parser = argparse.ArgumentParser(description="Inspect the local portal database")
    parser.add_argument("table", nargs="?", help="Table to dump")
    parser.add_argument("--db", help="SQLite file (defaults to PORTAL_DB_PATH)")
    parser.add_argument("--student", help="Only rows belonging to this student id")
    parser.add_argument("--limit", type=int, default=5, help="Maximum rows to print")
    args = parser.parse_args()

    store = SQLiteStore(args.db)
    if args.table:
        inspect_table(store, args.table, args.limit, args.student)
        return

    print("📂 Row counts:")
    for t in TABLES:
        count = store._fetchone(f"SELECT COUNT(*) AS n FROM {t}")["n"]
        print(f" - {t}: {count}")


if __name__ == "__main__":
    main()
