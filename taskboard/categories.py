"""Project categories."""

from __future__ import annotations

import sqlite3
from typing import Any, Dict

from .common import accessible_project_ids, in_clause
from .util import iso, to_bool
from .web import ApiError, Request, Validation, ok, route

DUPLICATE = "Category with this name already exists"


def serialize_category(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "color": row["color"],
        "icon": row["icon"],
        "position": row["position"],
        "isActive": bool(row["is_active"]),
        "createdBy": row["created_by"],
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _category(conn, category_id: int):
    row = conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
    if not row:
        raise ApiError(404, "Category not found")
    return row


def _name_taken(conn, name: str, exclude_id: int = 0) -> bool:
    return bool(
        conn.execute(
            "SELECT 1 FROM categories WHERE LOWER(name) = ? AND id <> ?", (name.strip().lower(), exclude_id)
        ).fetchone()
    )


@route("GET", "/api/categories")
def list_categories(conn, req: Request, ctx):
    rows = conn.execute("SELECT * FROM categories WHERE is_active = 1 ORDER BY position, name").fetchall()
    return ok(categories=[serialize_category(row) for row in rows])


@route("GET", "/api/categories/with-counts")
def categories_with_counts(conn, req: Request, ctx):
    rows = conn.execute("SELECT * FROM categories WHERE is_active = 1 ORDER BY position, name").fetchall()
    visible = accessible_project_ids(conn, ctx["user"])
    counts: Dict[int, int] = {}
    if visible:
        for r in conn.execute(
            f"""
            SELECT category_id, COUNT(*) AS c FROM projects
            WHERE category_id IS NOT NULL AND id IN ({in_clause(visible)})
            GROUP BY category_id
            """,
            tuple(visible),
        ).fetchall():
            counts[int(r["category_id"])] = int(r["c"])
    out = []
    for row in rows:
        data = serialize_category(row)
        data["projectCount"] = counts.get(int(row["id"]), 0)
        out.append(data)
    return ok(categories=out)


@route("GET", "/api/categories/<int:category_id>")
def get_category(conn, req: Request, ctx, category_id: int):
    return ok(category=serialize_category(_category(conn, category_id)))


@route("GET", "/api/categories/<int:category_id>/projects")
def category_projects(conn, req: Request, ctx, category_id: int):
    category = _category(conn, category_id)
    visible = accessible_project_ids(conn, ctx["user"])
    projects = []
    if visible:
        rows = conn.execute(
            f"""
            SELECT id, name, description, status, color, bg_color, client_name, created_at FROM projects
            WHERE category_id = ? AND id IN ({in_clause(visible)})
            ORDER BY created_at DESC, id DESC
            """,
            (category_id,) + tuple(visible),
        ).fetchall()
        projects = [
            {
                "id": r["id"],
                "name": r["name"],
                "description": r["description"],
                "status": r["status"],
                "color": r["color"],
                "bgColor": r["bg_color"],
                "clientName": r["client_name"],
                "createdAt": r["created_at"],
            }
            for r in rows
        ]
    return ok(category=serialize_category(category), projects=projects)


@route("POST", "/api/categories", access="admin")
def create_category(conn, req: Request, ctx):
    v = Validation(req.json)
    name = v.text("name", "Category name", required=True, min_length=1, max_length=50)
    description = v.text("description", "Description", max_length=200, default="") or ""
    color = v.text("color", "Color", max_length=20, default="#6366f1") or "#6366f1"
    icon = v.text("icon", "Icon", max_length=50, default="Folder") or "Folder"
    position = v.integer("position", "Position", minimum=0)
    v.check()
    if _name_taken(conn, str(name)):
        raise ApiError(400, DUPLICATE)
    if position is None:
        row = conn.execute("SELECT MAX(position) AS p FROM categories").fetchone()
        position = 0 if row["p"] is None else int(row["p"]) + 1
    now = iso()
    try:
        cur = conn.execute(
            """
            INSERT INTO categories (name, description, color, icon, position, is_active, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (name, description, color, icon, position, ctx["user"]["id"], now, now),
        )
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ApiError(400, DUPLICATE)
    conn.commit()
    return ok(201, message="Category created successfully", category=serialize_category(_category(conn, int(cur.lastrowid))))


@route("PUT", "/api/categories/<int:category_id>", access="admin")
def update_category(conn, req: Request, ctx, category_id: int):
    row = _category(conn, category_id)
    body = req.json
    v = Validation(body)
    name = v.text("name", "Category name", min_length=1, max_length=50)
    description = v.text("description", "Description", max_length=200)
    color = v.text("color", "Color", max_length=20)
    icon = v.text("icon", "Icon", max_length=50)
    position = v.integer("position", "Position", minimum=0)
    v.check()
    if name and name.lower() != str(row["name"]).lower() and _name_taken(conn, name, category_id):
        raise ApiError(400, DUPLICATE)
    conn.execute(
        """
        UPDATE categories SET name = ?, description = ?, color = ?, icon = ?, position = ?, is_active = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            name or row["name"],
            row["description"] if description is None else description,
            color or row["color"],
            icon or row["icon"],
            row["position"] if position is None else position,
            1 if to_bool(body.get("isActive"), bool(row["is_active"])) else 0,
            iso(),
            category_id,
        ),
    )
    conn.commit()
    return ok(message="Category updated successfully", category=serialize_category(_category(conn, category_id)))


@route("DELETE", "/api/categories/<int:category_id>", access="admin")
def delete_category(conn, req: Request, ctx, category_id: int):
    _category(conn, category_id)
    cleared = conn.execute(
        "UPDATE projects SET category_id = NULL, updated_at = ? WHERE category_id = ?", (iso(), category_id)
    ).rowcount
    conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
    conn.commit()
    return ok(message="Category deleted successfully", projectsUpdated=max(0, cleared))
