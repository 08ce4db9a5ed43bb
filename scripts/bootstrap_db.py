#!/usr/bin/env python3
"""Create or upgrade the TaskBoard schema and check board integrity.

Prints what the upgrade repaired, row counts for the main tables and any
board problems left for ``scripts/fix_columns.py`` to repair. Exits 1 when
problems remain and ``--strict`` is given.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskboard import config
from taskboard.columns import board_problems
from taskboard.db import db_connect, init_db

TABLES = ("users", "projects", "board_columns", "cards", "stories", "time_entries", "active_timers", "invitations")


def main() -> int:
    parser = argparse.ArgumentParser(description="Bootstrap the TaskBoard database and report board integrity.")
    parser.add_argument("--strict", action="store_true", help="Exit 1 when board problems remain.")
    args = parser.parse_args()

    report = init_db()
    conn = db_connect()
    try:
        counts = {table: int(conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]) for table in TABLES}
        problems = board_problems(conn)
    finally:
        conn.close()

    print("BOOTSTRAP_OK")
    print("backend:", config.DB_BACKEND)
    if config.DB_BACKEND == "postgres":
        print("database_url_set:", bool(config.DATABASE_URL))
    else:
        print("db_path:", config.DB_PATH)
    print("upgrade:", report)
    print("counts:", counts)
    print("board:", problems)
    if any(problems.values()):
        print("hint: run scripts/fix_columns.py to repair board columns")
        return 1 if args.strict else 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
