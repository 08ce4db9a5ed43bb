"""Checklist items attached to a card."""

from __future__ import annotations

from typing import Any, Dict

from .common import load_users, require_card_access
from .util import iso, to_bool
from .web import ApiError, Request, Validation, ok, route


def serialize_item(row, users: Dict[int, Dict[str, Any]]) -> Dict[str, Any]:
    creator = row["created_by"]
    return {
        "id": row["id"],
        "card": row["card_id"],
        "title": row["title"],
        "description": row["description"],
        "completed": bool(row["completed"]),
        "position": row["position"],
        "order": row["position"],
        "createdBy": users.get(int(creator)) if creator is not None else None,
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def _item(conn, card_id: int, item_id: int):
    row = conn.execute("SELECT * FROM card_items WHERE id = ? AND card_id = ?", (item_id, card_id)).fetchone()
    if not row:
        raise ApiError(404, "Item not found")
    return row


def _items_payload(conn, card_id: int):
    rows = conn.execute("SELECT * FROM card_items WHERE card_id = ? ORDER BY position, id", (card_id,)).fetchall()
    users = load_users(conn, [row["created_by"] for row in rows])
    return [serialize_item(row, users) for row in rows]


@route("GET", "/api/card-items/cards/<int:card_id>/items")
def list_items(conn, req: Request, ctx, card_id: int):
    require_card_access(conn, card_id, ctx["user"])
    return ok(items=_items_payload(conn, card_id))


@route("POST", "/api/card-items/cards/<int:card_id>/items")
def create_item(conn, req: Request, ctx, card_id: int):
    v = Validation(req.json)
    title = v.text("title", "Title", required=True, min_length=1, max_length=200)
    description = v.text("description", "Description", max_length=1000, default="") or ""
    v.check()
    require_card_access(conn, card_id, ctx["user"])

    row = conn.execute("SELECT MAX(position) AS p FROM card_items WHERE card_id = ?", (card_id,)).fetchone()
    position = 0 if not row or row["p"] is None else int(row["p"]) + 1
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO card_items (card_id, title, description, completed, position, created_by, created_at, updated_at)
        VALUES (?, ?, ?, 0, ?, ?, ?, ?)
        """,
        (card_id, title, description, position, ctx["user"]["id"], now, now),
    )
    conn.commit()
    item = _item(conn, card_id, int(cur.lastrowid))
    return ok(201, message="Item created successfully", item=serialize_item(item, load_users(conn, [item["created_by"]])))


@route("PUT", "/api/card-items/cards/<int:card_id>/items/reorder")
def reorder_items(conn, req: Request, ctx, card_id: int):
    require_card_access(conn, card_id, ctx["user"])
    ids = req.json.get("items")
    if not isinstance(ids, list):
        raise ApiError(400, "Validation failed", errors=[{"field": "items", "message": "Items must be an array"}])
    now = iso()
    for index, item_id in enumerate(ids):
        if isinstance(item_id, dict):
            item_id = item_id.get("id")
        conn.execute(
            "UPDATE card_items SET position = ?, updated_at = ? WHERE id = ? AND card_id = ?",
            (index, now, item_id, card_id),
        )
    conn.commit()
    return ok(message="Items reordered successfully", items=_items_payload(conn, card_id))


@route("PUT", "/api/card-items/cards/<int:card_id>/items/<int:item_id>")
def update_item(conn, req: Request, ctx, card_id: int, item_id: int):
    v = Validation(req.json)
    title = v.text("title", "Title", min_length=1, max_length=200)
    description = v.text("description", "Description", max_length=1000)
    v.check()
    require_card_access(conn, card_id, ctx["user"])
    row = _item(conn, card_id, item_id)
    completed = to_bool(req.json.get("completed"), bool(row["completed"])) if "completed" in req.json else bool(row["completed"])
    conn.execute(
        "UPDATE card_items SET title = ?, description = ?, completed = ?, updated_at = ? WHERE id = ?",
        (
            title or row["title"],
            row["description"] if description is None else description,
            1 if completed else 0,
            iso(),
            item_id,
        ),
    )
    conn.commit()
    item = _item(conn, card_id, item_id)
    return ok(message="Item updated successfully", item=serialize_item(item, load_users(conn, [item["created_by"]])))


@route("DELETE", "/api/card-items/cards/<int:card_id>/items/<int:item_id>")
def delete_item(conn, req: Request, ctx, card_id: int, item_id: int):
    require_card_access(conn, card_id, ctx["user"])
    _item(conn, card_id, item_id)
    conn.execute("DELETE FROM card_items WHERE id = ?", (item_id,))
    conn.commit()
    return ok(message="Item deleted successfully")
