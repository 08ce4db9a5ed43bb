"""Project activity feed."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from .common import accessible_project_ids, in_clause, load_users, require_project_access
from .util import clamp_int, iso, page_params, pagination, parse_meta_json
from .web import ApiError, Request, ok, route

ACTIVITY_TYPES = [
    "project_created",
    "project_updated",
    "project_deleted",
    "member_added",
    "member_removed",
    "card_created",
    "card_updated",
    "card_deleted",
    "column_created",
    "column_updated",
    "column_deleted",
    "comment_added",
    "attachment_added",
    "attachment_removed",
]


def log_activity(
    conn, project_id: int, user_id: Optional[int], type_: str, message: str, details: Optional[Dict[str, Any]] = None
) -> int:
    cur = conn.execute(
        "INSERT INTO activities (project_id, user_id, type, message, details_json, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (project_id, user_id, type_, message[:500], json.dumps(details or {}, default=str), iso()),
    )
    return int(cur.lastrowid)


def serialize_activities(conn, rows) -> list:
    users = load_users(conn, [row["user_id"] for row in rows])
    projects: Dict[int, Dict[str, Any]] = {}
    project_ids = sorted({int(row["project_id"]) for row in rows})
    if project_ids:
        for p in conn.execute(
            f"SELECT id, name, color FROM projects WHERE id IN ({in_clause(project_ids)})", tuple(project_ids)
        ).fetchall():
            projects[int(p["id"])] = {"id": p["id"], "name": p["name"], "color": p["color"]}
    return [
        {
            "id": row["id"],
            "project": projects.get(int(row["project_id"]), {"id": row["project_id"]}),
            "user": users.get(int(row["user_id"])) if row["user_id"] is not None else None,
            "type": row["type"],
            "message": row["message"],
            "details": parse_meta_json(row["details_json"]),
            "createdAt": row["created_at"],
        }
        for row in rows
    ]


@route("GET", "/api/activities/project/<int:project_id>")
def project_activities(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    paging = page_params(req.query, 50, 200)
    total = conn.execute("SELECT COUNT(*) AS c FROM activities WHERE project_id = ?", (project_id,)).fetchone()["c"]
    rows = conn.execute(
        "SELECT * FROM activities WHERE project_id = ? ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        (project_id, paging["limit"], paging["offset"]),
    ).fetchall()
    return ok(
        activities=serialize_activities(conn, rows),
        pagination=pagination(int(total or 0), paging["page"], paging["limit"]),
    )


@route("GET", "/api/activities/user/<int:user_id>")
def user_activities(conn, req: Request, ctx, user_id: int):
    user = ctx["user"]
    if int(user["id"]) != user_id and user.get("role") != "admin":
        raise ApiError(403, "Access denied")
    paging = page_params(req.query, 50, 200)
    total = conn.execute("SELECT COUNT(*) AS c FROM activities WHERE user_id = ?", (user_id,)).fetchone()["c"]
    rows = conn.execute(
        "SELECT * FROM activities WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        (user_id, paging["limit"], paging["offset"]),
    ).fetchall()
    return ok(
        activities=serialize_activities(conn, rows),
        pagination=pagination(int(total or 0), paging["page"], paging["limit"]),
    )


@route("GET", "/api/activities/recent")
def recent_activities(conn, req: Request, ctx):
    limit = clamp_int(req.query.get("limit"), 20, 1, 100)
    project_ids = accessible_project_ids(conn, ctx["user"])
    if not project_ids:
        return ok(activities=[])
    rows = conn.execute(
        f"SELECT * FROM activities WHERE project_id IN ({in_clause(project_ids)}) ORDER BY created_at DESC, id DESC LIMIT ?",
        tuple(project_ids) + (limit,),
    ).fetchall()
    return ok(activities=serialize_activities(conn, rows))
