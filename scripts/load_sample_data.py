#!/usr/bin/env python3
"""Load deterministic sample data: an admin, a few members and sample projects."""

from __future__ import annotations

import argparse
import datetime as dt
import json
import os
import random
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskboard.auth import create_user
from taskboard.cards import LABEL_COLORS, PRIORITIES, add_card_label, insert_card
from taskboard.columns import ensure_default_columns
from taskboard.db import db_connect, ensure_bootstrap
from taskboard.projects import assign_bg_color, purge_project
from taskboard.uploads import remove_files
from taskboard.util import iso, utcnow

RANDOM_SEED = 20260216
SAMPLE_TAG = "[SAMPLE]"
SAMPLE_PASSWORD = os.environ.get("TASKBOARD_SAMPLE_PASSWORD", "SamplePassword!2026")
ADMIN_EMAIL = os.environ.get("TASKBOARD_ADMIN_EMAIL", "admin@taskboard.local").strip().lower()

NAMES = [
    "Alex Rivera",
    "Priya Shah",
    "Jordan Lee",
    "Maya Thompson",
    "Samir Patel",
    "Elena Garcia",
]
PROJECTS = [
    ("Website Redesign", "One Time"),
    ("Mobile App Maintenance", "Maintenance"),
    ("Client Portal", "On Going"),
]
CARD_TITLES = [
    "Set up staging environment",
    "Design landing page",
    "Write API docs",
    "Fix login redirect",
    "Review accessibility report",
    "Migrate image storage",
    "Add usage analytics",
    "Plan sprint demo",
]
STORY_TITLES = ["Checkout flow", "User onboarding", "Reporting dashboard"]
LABEL_NAMES = ["frontend", "backend", "bug", "design"]
STATUSES = ["todo", "doing", "review", "done"]


def rand_date(days_back: int = 10, days_forward: int = 30) -> str:
    offset = random.randint(-days_back, days_forward)
    return iso(utcnow() + dt.timedelta(days=offset))


def upsert_user(conn, name: str, email: str, role: str) -> int:
    row = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if row:
        return int(row["id"])
    return create_user(conn, name, email, SAMPLE_PASSWORD, role)


def clear_previous_sample(conn):
    rows = conn.execute("SELECT id FROM projects WHERE name LIKE ?", (SAMPLE_TAG + "%",)).fetchall()
    files = []
    for row in rows:
        _counts, stored = purge_project(conn, int(row["id"]))
        files.extend(stored)
    return len(rows), files


def seed_project(conn, name: str, project_type: str, owner_id: int, member_ids) -> int:
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO projects (name, description, client_name, project_type, start_date, end_date, owner_id, status,
                              bg_color, settings_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, '{}', ?, ?)
        """,
        (
            f"{SAMPLE_TAG} {name}",
            f"Sample project: {name}.",
            "Sample Client",
            project_type,
            rand_date(30, 0),
            rand_date(0, 90),
            owner_id,
            assign_bg_color(conn),
            now,
            now,
        ),
    )
    project_id = int(cur.lastrowid)
    conn.execute(
        "INSERT INTO project_members (project_id, user_id, role, joined_at) VALUES (?, ?, 'admin', ?)",
        (project_id, owner_id, now),
    )
    for member_id in member_ids:
        conn.execute(
            "INSERT INTO project_members (project_id, user_id, role, joined_at) VALUES (?, ?, 'member', ?)",
            (project_id, member_id, now),
        )
    ensure_default_columns(conn, project_id, owner_id)

    for label in LABEL_NAMES:
        conn.execute(
            """
            INSERT INTO labels (project_id, name, name_key, color, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (project_id, label, label.lower(), random.choice(LABEL_COLORS), owner_id, now, now),
        )
    for position, title in enumerate(random.sample(CARD_TITLES, 6)):
        card_id = insert_card(
            conn,
            project_id,
            {
                "title": f"{SAMPLE_TAG} {title}",
                "description": "Generated sample card.",
                "status": random.choice(STATUSES),
                "priority": random.choice(PRIORITIES),
                "due_date": rand_date(),
                "position": position,
                "estimated_time": random.choice([0, 60, 120, 240]),
                "created_by": owner_id,
            },
        )
        assignee = random.choice(member_ids or [owner_id])
        conn.execute(
            "INSERT INTO card_assignees (card_id, user_id, assigned_at) VALUES (?, ?, ?)", (card_id, assignee, now)
        )
        add_card_label(conn, {"id": card_id, "project_id": project_id}, random.choice(LABEL_NAMES), random.choice(LABEL_COLORS))

    for title in STORY_TITLES:
        conn.execute(
            """
            INSERT INTO stories (project_id, title, description, status, priority, story_type, labels_json, due_date,
                                 created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 'story', ?, ?, ?, ?, ?)
            """,
            (
                project_id,
                f"{SAMPLE_TAG} {title}",
                "Generated sample story.",
                random.choice(["todo", "in_progress", "done"]),
                random.choice(PRIORITIES),
                json.dumps(random.sample(LABEL_NAMES, 2)),
                rand_date(),
                owner_id,
                now,
                now,
            ),
        )
    return project_id


def parse_args():
    parser = argparse.ArgumentParser(description="Load deterministic sample data.")
    parser.add_argument("--cleanup-only", action="store_true", help="Only remove [SAMPLE] projects.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    random.seed(RANDOM_SEED)
    ensure_bootstrap()
    conn = db_connect()
    try:
        removed, stale_files = clear_previous_sample(conn)
        if args.cleanup_only:
            conn.commit()
            remove_files(stale_files)
            print("SAMPLE_CLEANUP projects_removed:", removed)
            return 0

        admin_id = upsert_user(conn, "Sample Admin", ADMIN_EMAIL, "admin")
        member_ids = [
            upsert_user(conn, name, f"sample{idx}@taskboard.local", "member") for idx, name in enumerate(NAMES, start=1)
        ]
        project_ids = []
        for name, project_type in PROJECTS:
            project_ids.append(seed_project(conn, name, project_type, admin_id, random.sample(member_ids, 3)))
        conn.commit()
        remove_files(stale_files)
    finally:
        conn.close()

    print("SAMPLE_DATA_OK")
    print("admin:", ADMIN_EMAIL)
    print("members:", len(member_ids))
    print("projects:", project_ids)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
