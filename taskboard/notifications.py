from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any, Dict, Optional

from .common import load_users
from .util import iso, page_params, pagination, parse_meta_json, to_bool, to_int, utcnow
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = [
    "project_invite",
    "project_joined",
    "project_activity",
    "card_assigned",
    "card_unassigned",
    "card_updated",
    "comment_added",
    "comment_mention",
    "due_date_reminder",
    "story_assigned",
    "credential_access",
    "credential_access_revoked",
    "system",
]
EXPIRY_DAYS = 30


def create_notification(
    conn,
    user_id: int,
    sender_id: Optional[int],
    type_: str,
    title: str,
    message: str,
    data: Optional[Dict[str, Any]] = None,
    project_id: Optional[int] = None,
    card_id: Optional[int] = None,
) -> Optional[int]:
    """Insert a notification for ``user_id``. The actor never notifies themself."""
    if sender_id is not None and int(user_id) == int(sender_id):
        return None
    now = utcnow()
    cur = conn.execute(
        """
        INSERT INTO notifications
        (user_id, sender_id, type, title, message, is_read, data_json, related_project_id, related_card_id, expires_at, created_at)
        VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
        """,
        (
            user_id,
            sender_id,
            type_,
            title[:100],
            message[:500],
            json.dumps(data or {}),
            project_id,
            card_id,
            iso(now + dt.timedelta(days=EXPIRY_DAYS)),
            iso(now),
        ),
    )
    return int(cur.lastrowid)


def serialize_notification(row, users: Dict[int, Dict[str, Any]]) -> Dict[str, Any]:
    sender_id = row["sender_id"]
    return {
        "id": row["id"],
        "user": row["user_id"],
        "sender": users.get(int(sender_id)) if sender_id is not None else None,
        "type": row["type"],
        "title": row["title"],
        "message": row["message"],
        "isRead": bool(row["is_read"]),
        "readAt": row["read_at"],
        "data": parse_meta_json(row["data_json"]),
        "relatedProject": row["related_project_id"],
        "relatedCard": row["related_card_id"],
        "expiresAt": row["expires_at"],
        "createdAt": row["created_at"],
    }


def unread_count(conn, user_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS c FROM notifications WHERE user_id = ? AND is_read = 0 AND expires_at > ?",
        (user_id, iso()),
    ).fetchone()
    return int(row["c"] or 0)


def _owned(conn, notification_id: int, user_id: int):
    row = conn.execute(
        "SELECT * FROM notifications WHERE id = ? AND user_id = ?", (notification_id, user_id)
    ).fetchone()
    if not row:
        raise ApiError(404, "Notification not found")
    return row


@route("GET", "/api/notifications")
def list_notifications(conn, req: Request, ctx):
    user_id = ctx["user"]["id"]
    paging = page_params(req.query, 20, 100)
    where = "user_id = ? AND expires_at > ?"
    params: list = [user_id, iso()]
    if to_bool(req.query.get("unreadOnly")):
        where += " AND is_read = 0"

    total = conn.execute(f"SELECT COUNT(*) AS c FROM notifications WHERE {where}", tuple(params)).fetchone()["c"]
    rows = conn.execute(
        f"SELECT * FROM notifications WHERE {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        tuple(params + [paging["limit"], paging["offset"]]),
    ).fetchall()
    users = load_users(conn, [row["sender_id"] for row in rows])
    return ok(
        notifications=[serialize_notification(row, users) for row in rows],
        pagination=pagination(int(total or 0), paging["page"], paging["limit"]),
        unreadCount=unread_count(conn, user_id),
    )


@route("GET", "/api/notifications/unread-count")
def get_unread_count(conn, req: Request, ctx):
    return ok(unreadCount=unread_count(conn, ctx["user"]["id"]))


@route("PUT", "/api/notifications/mark-all-read")
def mark_all_read(conn, req: Request, ctx):
    cur = conn.execute(
        "UPDATE notifications SET is_read = 1, read_at = ? WHERE user_id = ? AND is_read = 0",
        (iso(), ctx["user"]["id"]),
    )
    conn.commit()
    return ok(message="All notifications marked as read", updatedCount=max(0, cur.rowcount))


@route("PUT", "/api/notifications/<int:notification_id>/read")
def mark_read(conn, req: Request, ctx, notification_id: int):
    row = _owned(conn, notification_id, ctx["user"]["id"])
    if not row["is_read"]:
        conn.execute("UPDATE notifications SET is_read = 1, read_at = ? WHERE id = ?", (iso(), notification_id))
        conn.commit()
    row = _owned(conn, notification_id, ctx["user"]["id"])
    users = load_users(conn, [row["sender_id"]])
    return ok(message="Notification marked as read", notification=serialize_notification(row, users))


@route("DELETE", "/api/notifications/<int:notification_id>")
def delete_notification(conn, req: Request, ctx, notification_id: int):
    _owned(conn, notification_id, ctx["user"]["id"])
    conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
    conn.commit()
    return ok(message="Notification deleted successfully")


@route("POST", "/api/notifications")
def post_notification(conn, req: Request, ctx):
    v = Validation(req.json)
    target = v.integer("user", "User", required=True)
    type_ = v.choice("type", "Notification type", NOTIFICATION_TYPES, required=True)
    title = v.text("title", "Title", required=True, min_length=1, max_length=100)
    message = v.text("message", "Message", required=True, min_length=1, max_length=500)
    data = req.json.get("data")
    if data is not None and not isinstance(data, dict):
        v.add("data", "Data must be an object")
    v.check()

    if not conn.execute("SELECT 1 FROM users WHERE id = ?", (target,)).fetchone():
        raise ApiError(404, "User not found")
    notification_id = create_notification(
        conn,
        int(target),
        None,
        str(type_),
        str(title),
        str(message),
        data=data,
        project_id=to_int(req.json.get("relatedProject")),
        card_id=to_int(req.json.get("relatedCard")),
    )
    if int(target) != int(ctx["user"]["id"]):
        conn.execute("UPDATE notifications SET sender_id = ? WHERE id = ?", (ctx["user"]["id"], notification_id))
    conn.commit()
    row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
    users = load_users(conn, [row["sender_id"]])
    return ok(201, message="Notification created successfully", notification=serialize_notification(row, users))
