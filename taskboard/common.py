"""Shared lookups and permission checks used by the route modules."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .web import ApiError

ADMIN_REQUIRED = "Access denied. Admin privileges required."
NOT_A_MEMBER = "Access denied. You are not a member of this project."


def user_summary(row) -> Optional[Dict[str, Any]]:
    if not row:
        return None
    return {
        "id": row["id"],
        "name": row["name"],
        "email": row["email"],
        "avatar": row["avatar"],
        "color": row["color"],
    }


def user_public(row) -> Dict[str, Any]:
    data = user_summary(row) or {}
    data.update(
        {
            "role": row["role"],
            "isActive": bool(row["is_active"]),
            "lastLogin": row["last_login"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }
    )
    return data


def load_users(conn, user_ids: Iterable[Optional[int]]) -> Dict[int, Dict[str, Any]]:
    """Return ``{id: user_summary}`` for the given ids in one query."""
    ids = sorted({int(uid) for uid in user_ids if uid is not None})
    if not ids:
        return {}
    placeholders = ", ".join(["?"] * len(ids))
    rows = conn.execute(
        f"SELECT id, name, email, avatar, color FROM users WHERE id IN ({placeholders})",
        tuple(ids),
    ).fetchall()
    return {int(row["id"]): user_summary(row) for row in rows}  # type: ignore[misc]


def get_user(conn, user_id: object):
    return conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def require_admin(user: Dict[str, Any]) -> None:
    if user.get("role") != "admin":
        raise ApiError(403, ADMIN_REQUIRED)


# ---------------------------------------------------------------------------
# Project access
# ---------------------------------------------------------------------------


def get_project(conn, project_id: object) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        raise ApiError(404, "Project not found")
    return dict(row)


def member_role(conn, project: Dict[str, Any], user_id: int) -> Optional[str]:
    if int(project["owner_id"]) == int(user_id):
        return "admin"
    row = conn.execute(
        "SELECT role FROM project_members WHERE project_id = ? AND user_id = ?",
        (project["id"], user_id),
    ).fetchone()
    return row["role"] if row else None


def is_project_member(conn, project: Dict[str, Any], user_id: int) -> bool:
    return member_role(conn, project, user_id) is not None


def can_access_project(conn, project: Dict[str, Any], user: Dict[str, Any]) -> bool:
    if user.get("role") == "admin":
        return True
    return is_project_member(conn, project, int(user["id"]))


def is_project_admin(conn, project: Dict[str, Any], user: Dict[str, Any]) -> bool:
    if user.get("role") == "admin":
        return True
    return member_role(conn, project, int(user["id"])) == "admin"


def require_project_access(conn, project_id: object, user: Dict[str, Any]) -> Dict[str, Any]:
    project = get_project(conn, project_id)
    if not can_access_project(conn, project, user):
        raise ApiError(403, NOT_A_MEMBER)
    return project


def require_project_admin(conn, project_id: object, user: Dict[str, Any]) -> Dict[str, Any]:
    project = get_project(conn, project_id)
    if not is_project_admin(conn, project, user):
        raise ApiError(403, "Access denied. Project admin privileges required.")
    return project


def project_member_ids(conn, project_id: object) -> List[int]:
    """Owner first, then members in join order."""
    project = conn.execute("SELECT owner_id FROM projects WHERE id = ?", (project_id,)).fetchone()
    ids: List[int] = [int(project["owner_id"])] if project else []
    for row in conn.execute(
        "SELECT user_id FROM project_members WHERE project_id = ? ORDER BY joined_at, id", (project_id,)
    ).fetchall():
        if int(row["user_id"]) not in ids:
            ids.append(int(row["user_id"]))
    return ids


def accessible_project_ids(conn, user: Dict[str, Any], include_inactive: bool = False) -> List[int]:
    status_clause = "" if include_inactive else " AND p.status <> 'inactive'"
    if user.get("role") == "admin":
        rows = conn.execute(f"SELECT p.id FROM projects p WHERE 1 = 1{status_clause}").fetchall()
    else:
        rows = conn.execute(
            f"""
            SELECT DISTINCT p.id FROM projects p
            LEFT JOIN project_members pm ON pm.project_id = p.id AND pm.user_id = ?
            WHERE (p.owner_id = ? OR pm.user_id IS NOT NULL){status_clause}
            """,
            (user["id"], user["id"]),
        ).fetchall()
    return [int(row["id"]) for row in rows]


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


def get_card(conn, card_id: object) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone()
    if not row:
        raise ApiError(404, "Card not found")
    return dict(row)


def require_card_access(conn, card_id: object, user: Dict[str, Any]) -> Dict[str, Any]:
    card = get_card(conn, card_id)
    project = get_project(conn, card["project_id"])
    if not can_access_project(conn, project, user):
        raise ApiError(403, NOT_A_MEMBER)
    card["_project"] = project
    return card


def in_clause(values: List[Any]) -> str:
    return ", ".join(["?"] * len(values)) if values else "NULL"
