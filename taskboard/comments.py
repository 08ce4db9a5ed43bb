"""Comments and per-entity activity logs shared by cards and stories.

Both live in generic tables keyed by ``(entity, entity_id)`` where entity is
``card`` or ``story``.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Set

from .common import in_clause, load_users, project_member_ids
from .util import iso
from .web import ApiError

MENTION_RE = re.compile(r"@(\w+)")


def add_comment(conn, entity: str, entity_id: int, user_id: Optional[int], text: str) -> int:
    cur = conn.execute(
        "INSERT INTO comments (entity, entity_id, user_id, text, created_at) VALUES (?, ?, ?, ?, ?)",
        (entity, entity_id, user_id, text, iso()),
    )
    return int(cur.lastrowid)


def add_log(conn, entity: str, entity_id: int, user_id: Optional[int], action: str, details: str = "") -> None:
    conn.execute(
        "INSERT INTO activity_log (entity, entity_id, user_id, action, details, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (entity, entity_id, user_id, action, details, iso()),
    )


def comments_for(conn, entity: str, entity_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    """Comments grouped by entity id, newest first."""
    out: Dict[int, List[Dict[str, Any]]] = {int(i): [] for i in entity_ids}
    if not entity_ids:
        return out
    rows = conn.execute(
        f"""
        SELECT * FROM comments
        WHERE entity = ? AND entity_id IN ({in_clause(entity_ids)})
        ORDER BY created_at DESC, id DESC
        """,
        (entity,) + tuple(entity_ids),
    ).fetchall()
    users = load_users(conn, [row["user_id"] for row in rows])
    for row in rows:
        out.setdefault(int(row["entity_id"]), []).append(
            {
                "id": row["id"],
                "text": row["text"],
                "user": users.get(int(row["user_id"])) if row["user_id"] is not None else None,
                "timestamp": row["created_at"],
                "updatedAt": row["updated_at"],
            }
        )
    return out


def logs_for(conn, entity: str, entity_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    out: Dict[int, List[Dict[str, Any]]] = {int(i): [] for i in entity_ids}
    if not entity_ids:
        return out
    rows = conn.execute(
        f"""
        SELECT * FROM activity_log
        WHERE entity = ? AND entity_id IN ({in_clause(entity_ids)})
        ORDER BY created_at, id
        """,
        (entity,) + tuple(entity_ids),
    ).fetchall()
    users = load_users(conn, [row["user_id"] for row in rows])
    for row in rows:
        out.setdefault(int(row["entity_id"]), []).append(
            {
                "action": row["action"],
                "user": users.get(int(row["user_id"])) if row["user_id"] is not None else None,
                "details": row["details"],
                "timestamp": row["created_at"],
            }
        )
    return out


def update_comment(
    conn, entity: str, entity_id: int, comment_id: int, user: Dict[str, Any], text: str, allow_admin: bool = True
) -> None:
    row = conn.execute(
        "SELECT * FROM comments WHERE id = ? AND entity = ? AND entity_id = ?", (comment_id, entity, entity_id)
    ).fetchone()
    if not row:
        raise ApiError(404, "Comment not found")
    is_author = row["user_id"] is not None and int(row["user_id"]) == int(user["id"])
    if not is_author and not (allow_admin and user.get("role") == "admin"):
        raise ApiError(403, "Access denied. You can only update your own comments.")
    conn.execute("UPDATE comments SET text = ?, updated_at = ? WHERE id = ?", (text, iso(), comment_id))


def delete_entity_children(conn, entity: str, entity_ids: List[int]) -> None:
    if not entity_ids:
        return
    placeholders = in_clause(entity_ids)
    conn.execute(f"DELETE FROM comments WHERE entity = ? AND entity_id IN ({placeholders})", (entity,) + tuple(entity_ids))
    conn.execute(f"DELETE FROM activity_log WHERE entity = ? AND entity_id IN ({placeholders})", (entity,) + tuple(entity_ids))


def _mention_key(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name or "").lower())


def resolve_mentions(
    conn,
    project_id: int,
    text: str,
    mentions: Any,
    author_id: int,
    assignee_ids: Iterable[int],
) -> List[int]:
    """Return the user ids a comment should notify, excluding the author.

    ``@token`` in the text matches project members by email local part or by
    name with non-alphanumerics removed. Explicit ``mentions`` entries are
    ``{"type": "user", "id": ...}`` or the ``card``/``board`` groups.
    """
    member_ids = project_member_ids(conn, project_id)
    targets: List[int] = []
    seen: Set[int] = set()

    def push(uid: object) -> None:
        try:
            value = int(uid)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return
        if value == int(author_id) or value in seen:
            return
        seen.add(value)
        targets.append(value)

    tokens = {m.lower() for m in MENTION_RE.findall(text or "")}
    if tokens and member_ids:
        rows = conn.execute(
            f"SELECT id, name, email FROM users WHERE id IN ({in_clause(member_ids)})", tuple(member_ids)
        ).fetchall()
        for row in rows:
            local_part = str(row["email"] or "").split("@")[0].lower()
            if local_part in tokens or _mention_key(row["name"]) in tokens:
                push(row["id"])

    if isinstance(mentions, list):
        for mention in mentions:
            if not isinstance(mention, dict):
                continue
            kind, ident = mention.get("type"), mention.get("id")
            if kind == "user":
                if str(ident).isdigit() and int(str(ident)) in member_ids:
                    push(ident)
            elif kind == "group" and ident == "card":
                for uid in assignee_ids:
                    push(uid)
            elif kind == "group" and ident == "board":
                for uid in member_ids:
                    push(uid)
    return targets
