"""Project-level label catalogue; changes propagate to the cards using them."""

from __future__ import annotations

import sqlite3
from typing import Any, Dict

from .cards import LABEL_COLORS
from .common import load_users, require_project_access
from .util import iso
from .web import ApiError, Request, Validation, ok, route

DUPLICATE = "Label with this name already exists"


def serialize_label(row, users: Dict[int, Dict[str, Any]]) -> Dict[str, Any]:
    creator = row["created_by"]
    return {
        "id": row["id"],
        "project": row["project_id"],
        "name": row["name"],
        "color": row["color"],
        "createdBy": users.get(int(creator)) if creator is not None else None,
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _label(conn, project_id: int, label_id: int):
    row = conn.execute("SELECT * FROM labels WHERE id = ? AND project_id = ?", (label_id, project_id)).fetchone()
    if not row:
        raise ApiError(404, "Label not found")
    return row


def _name_taken(conn, project_id: int, name: str, exclude_id: int = 0) -> bool:
    row = conn.execute(
        "SELECT 1 FROM labels WHERE project_id = ? AND name_key = ? AND id <> ?",
        (project_id, name.strip().lower(), exclude_id),
    ).fetchone()
    return bool(row)


@route("GET", "/api/projects/<int:project_id>/labels")
def list_labels(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    rows = conn.execute("SELECT * FROM labels WHERE project_id = ? ORDER BY name_key, id", (project_id,)).fetchall()
    users = load_users(conn, [row["created_by"] for row in rows])
    return ok(labels=[serialize_label(row, users) for row in rows])


@route("POST", "/api/projects/<int:project_id>/labels")
def create_label(conn, req: Request, ctx, project_id: int):
    v = Validation(req.json)
    name = v.text("name", "Label name", required=True, min_length=1, max_length=50)
    color = v.choice("color", "Color", LABEL_COLORS, default="blue")
    v.check()
    require_project_access(conn, project_id, ctx["user"])
    if _name_taken(conn, project_id, str(name)):
        raise ApiError(400, DUPLICATE)
    now = iso()
    try:
        cur = conn.execute(
            """
            INSERT INTO labels (project_id, name, name_key, color, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (project_id, name, str(name).lower(), color, ctx["user"]["id"], now, now),
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ApiError(400, DUPLICATE)
    conn.commit()
    row = _label(conn, project_id, int(cur.lastrowid))
    return ok(201, message="Label created successfully", label=serialize_label(row, load_users(conn, [row["created_by"]])))


@route("PUT", "/api/projects/<int:project_id>/labels/<int:label_id>")
def update_label(conn, req: Request, ctx, project_id: int, label_id: int):
    v = Validation(req.json)
    name = v.text("name", "Label name", min_length=1, max_length=50)
    color = v.choice("color", "Color", LABEL_COLORS)
    v.check()
    require_project_access(conn, project_id, ctx["user"])
    row = _label(conn, project_id, label_id)
    new_name = name or row["name"]
    new_color = color or row["color"]
    if new_name.lower() != row["name_key"] and _name_taken(conn, project_id, new_name, label_id):
        raise ApiError(400, DUPLICATE)

    conn.execute(
        "UPDATE labels SET name = ?, name_key = ?, color = ?, updated_at = ? WHERE id = ?",
        (new_name, new_name.lower(), new_color, iso(), label_id),
    )
    conn.execute("UPDATE card_labels SET name = ?, color = ? WHERE label_id = ?", (new_name, new_color, label_id))
    conn.commit()
    row = _label(conn, project_id, label_id)
    return ok(message="Label updated successfully", label=serialize_label(row, load_users(conn, [row["created_by"]])))


@route("DELETE", "/api/projects/<int:project_id>/labels/<int:label_id>")
def delete_label(conn, req: Request, ctx, project_id: int, label_id: int):
    require_project_access(conn, project_id, ctx["user"])
    _label(conn, project_id, label_id)
    removed = conn.execute("DELETE FROM card_labels WHERE label_id = ?", (label_id,)).rowcount
    conn.execute("DELETE FROM labels WHERE id = ?", (label_id,))
    conn.commit()
    return ok(message="Label deleted successfully", removedFromCards=max(0, removed))
