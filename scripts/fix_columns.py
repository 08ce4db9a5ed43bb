#!/usr/bin/env python3
"""Repair board columns across all projects.

Removes duplicate (project, status) columns, recreates missing default
columns and creates the archive column for projects that hold archived
cards but lost it.
"""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskboard.columns import ARCHIVE_STATUS, ensure_archive_column, ensure_default_columns, get_column_by_status
from taskboard.db import db_connect, dedupe_columns, ensure_bootstrap
from taskboard.logging_setup import setup_logging


def main() -> int:
    setup_logging()
    ensure_bootstrap()
    conn = db_connect()
    try:
        removed = dedupe_columns(conn)
        added = 0
        archives = 0
        projects = conn.execute("SELECT id, owner_id FROM projects ORDER BY id").fetchall()
        for project in projects:
            added += ensure_default_columns(conn, int(project["id"]), int(project["owner_id"]))
            has_archived = conn.execute(
                "SELECT 1 FROM cards WHERE project_id = ? AND is_archived = 1", (project["id"],)
            ).fetchone()
            if has_archived and not get_column_by_status(conn, int(project["id"]), ARCHIVE_STATUS):
                ensure_archive_column(conn, int(project["id"]), int(project["owner_id"]))
                archives += 1
        conn.commit()
    finally:
        conn.close()

    print("FIX_COLUMNS_OK")
    print("projects:", len(projects))
    print("duplicates_removed:", removed)
    print("default_columns_added:", added)
    print("archive_columns_created:", archives)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
