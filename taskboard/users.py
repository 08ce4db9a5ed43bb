"""User profile, admin user management, pinned and recently viewed projects."""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from typing import Any, Dict, List

from . import emails
from .auth import create_user, revoke_sessions, set_password, validate_password_field
from .common import can_access_project, get_project, get_user, user_public
from .util import avatar_initials, iso, to_bool, to_int, user_color, utcnow
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

ROLES = ["admin", "member"]
RECENT_LIMIT = 20
RECENT_WINDOW = dt.timedelta(hours=1)
EMAIL_TAKEN = "Email already taken by another user"


def _require_user(conn, user_id: object):
    row = get_user(conn, user_id)
    if not row:
        raise ApiError(404, "User not found")
    return row


def _email_taken(conn, email: str, exclude_id: int) -> bool:
    return bool(conn.execute("SELECT 1 FROM users WHERE email = ? AND id <> ?", (email, exclude_id)).fetchone())


def refresh_user_styles(conn) -> Dict[str, int]:
    """Recompute avatar initials and color from each user's current name."""
    counts = {"avatars": 0, "colors": 0}
    for row in conn.execute("SELECT id, name, avatar, color FROM users ORDER BY id").fetchall():
        avatar = avatar_initials(row["name"])
        color = user_color(row["name"])
        if avatar != row["avatar"]:
            counts["avatars"] += 1
        if color != row["color"]:
            counts["colors"] += 1
        if avatar != row["avatar"] or color != row["color"]:
            conn.execute(
                "UPDATE users SET avatar = ?, color = ?, updated_at = ? WHERE id = ?", (avatar, color, iso(), row["id"])
            )
    return counts


def _project_ref(row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "description": row["description"],
        "status": row["status"],
        "color": row["color"],
        "bgColor": row["bg_color"],
    }


def _pinned(conn, user_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT p.* FROM user_pinned_projects up JOIN projects p ON p.id = up.project_id
        WHERE up.user_id = ? ORDER BY up.position, up.id
        """,
        (user_id,),
    ).fetchall()
    return [_project_ref(row) for row in rows]


def _recent(conn, user_id: int) -> List[Dict[str, Any]]:
    since = iso(utcnow() - RECENT_WINDOW)
    rows = conn.execute(
        """
        SELECT p.*, ur.viewed_at FROM user_recent_projects ur JOIN projects p ON p.id = ur.project_id
        WHERE ur.user_id = ? AND ur.viewed_at >= ?
        ORDER BY ur.viewed_at DESC, ur.id DESC
        """,
        (user_id, since),
    ).fetchall()
    return [{"project": _project_ref(row), "viewedAt": row["viewed_at"]} for row in rows]


def _profile_update(conn, user_id: int, body: Dict[str, Any], allow_admin_fields: bool) -> None:
    row = _require_user(conn, user_id)
    v = Validation(body)
    name = v.text("name", "Name", min_length=2, max_length=50)
    email = v.email(required=False) if body.get("email") else None
    role = v.choice("role", "Role", ROLES) if allow_admin_fields else None
    v.check()

    sets: Dict[str, Any] = {}
    if name and name != row["name"]:
        sets["name"] = name
        sets["avatar"] = avatar_initials(name)
        sets["color"] = user_color(name)
    if email and email != row["email"]:
        if _email_taken(conn, email, user_id):
            raise ApiError(400, EMAIL_TAKEN)
        sets["email"] = email
    if role:
        sets["role"] = role
    if allow_admin_fields and "isActive" in body:
        sets["is_active"] = 1 if to_bool(body.get("isActive"), bool(row["is_active"])) else 0
    if sets:
        assignments = ", ".join(f"{col} = ?" for col in sets)
        try:
            conn.execute(f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?", tuple(sets.values()) + (iso(), user_id))
        except sqlite3.IntegrityError:
            conn.rollback()
            raise ApiError(400, EMAIL_TAKEN)
        if sets.get("is_active") == 0:
            revoke_sessions(conn, user_id)


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


@route("GET", "/api/users/profile")
def get_profile(conn, req: Request, ctx):
    user_id = int(ctx["user"]["id"])
    data = user_public(_require_user(conn, user_id))
    data["pinnedProjects"] = _pinned(conn, user_id)
    data["recentlyViewedProjects"] = _recent(conn, user_id)
    return ok(user=data)


@route("PUT", "/api/users/profile")
def update_profile(conn, req: Request, ctx):
    user_id = int(ctx["user"]["id"])
    _profile_update(conn, user_id, req.json, allow_admin_fields=False)
    conn.commit()
    return ok(message="Profile updated successfully", user=user_public(get_user(conn, user_id)))


# ---------------------------------------------------------------------------
# Pinned / recently viewed
# ---------------------------------------------------------------------------


@route("GET", "/api/users/me/pinned")
def get_pinned(conn, req: Request, ctx):
    return ok(pinned=_pinned(conn, int(ctx["user"]["id"])))


@route("PUT", "/api/users/me/pinned")
def set_pinned(conn, req: Request, ctx):
    user_id = int(ctx["user"]["id"])
    raw = req.json.get("pinned")
    if not isinstance(raw, list):
        raise ApiError(400, "Validation failed", errors=[{"field": "pinned", "message": "Pinned must be an array"}])
    ids: List[int] = []
    for value in raw:
        parsed = to_int(value)
        if parsed is None or isinstance(value, bool):
            raise ApiError(400, f"Invalid project id: {value}")
        if not conn.execute("SELECT 1 FROM projects WHERE id = ?", (parsed,)).fetchone():
            raise ApiError(404, f"Project not found: {value}")
        if parsed not in ids:
            ids.append(parsed)

    conn.execute("DELETE FROM user_pinned_projects WHERE user_id = ?", (user_id,))
    for position, project_id in enumerate(ids):
        conn.execute(
            "INSERT INTO user_pinned_projects (user_id, project_id, position) VALUES (?, ?, ?)",
            (user_id, project_id, position),
        )
    conn.commit()
    return ok(pinned=_pinned(conn, user_id))


@route("GET", "/api/users/me/recently-viewed")
def get_recently_viewed(conn, req: Request, ctx):
    return ok(recentlyViewed=_recent(conn, int(ctx["user"]["id"])))


@route("POST", "/api/users/me/recently-viewed")
def record_recently_viewed(conn, req: Request, ctx):
    user = ctx["user"]
    v = Validation(req.json)
    project_id = v.integer("projectId", "Project", required=True)
    v.check()
    project = get_project(conn, project_id)
    if not can_access_project(conn, project, user):
        raise ApiError(403, "Access denied")

    user_id = int(user["id"])
    conn.execute("DELETE FROM user_recent_projects WHERE user_id = ? AND project_id = ?", (user_id, project_id))
    conn.execute(
        "INSERT INTO user_recent_projects (user_id, project_id, viewed_at) VALUES (?, ?, ?)", (user_id, project_id, iso())
    )
    rows = conn.execute(
        "SELECT id FROM user_recent_projects WHERE user_id = ? ORDER BY viewed_at DESC, id DESC", (user_id,)
    ).fetchall()
    for row in rows[RECENT_LIMIT:]:
        conn.execute("DELETE FROM user_recent_projects WHERE id = ?", (row["id"],))
    conn.commit()
    return ok(recentlyViewed=_recent(conn, user_id))


# ---------------------------------------------------------------------------
# Admin management
# ---------------------------------------------------------------------------


@route("GET", "/api/users", access="admin")
def list_users(conn, req: Request, ctx):
    q = req.query
    where = ["1 = 1"]
    params: List[Any] = []
    search = (q.get("search") or "").strip().lower()
    if search:
        where.append("(LOWER(name) LIKE ? OR LOWER(email) LIKE ?)")
        params.extend([f"%{search}%", f"%{search}%"])
    if q.get("role") in ROLES:
        where.append("role = ?")
        params.append(q.get("role"))
    if q.get("isActive") not in (None, ""):
        where.append("is_active = ?")
        params.append(1 if to_bool(q.get("isActive")) else 0)
    rows = conn.execute(
        f"SELECT * FROM users WHERE {' AND '.join(where)} ORDER BY name, id", tuple(params)
    ).fetchall()
    return ok(users=[user_public(row) for row in rows])


@route("GET", "/api/users/<int:user_id>", access="admin")
def get_user_route(conn, req: Request, ctx, user_id: int):
    return ok(user=user_public(_require_user(conn, user_id)))


@route("POST", "/api/users", access="admin")
def create_user_route(conn, req: Request, ctx):
    v = Validation(req.json)
    name = v.text("name", "Name", required=True, min_length=2, max_length=50)
    email = v.email()
    password = validate_password_field(v)
    role = v.choice("role", "Role", ROLES, default="member")
    v.check()
    if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
        raise ApiError(400, "User already exists with this email")
    try:
        user_id = create_user(conn, str(name), str(email), str(password), str(role))
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ApiError(400, "User already exists with this email")
    conn.commit()
    emails.queue_and_send_email(conn, user_id, str(email), emails.welcome_message(str(name)), "user", user_id)
    conn.commit()
    logger.info("Admin %s created user %s", ctx["user"]["id"], user_id)
    return ok(201, message="User created successfully", user=user_public(get_user(conn, user_id)))


@route("PUT", "/api/users/<int:user_id>", access="admin")
def update_user_route(conn, req: Request, ctx, user_id: int):
    _profile_update(conn, user_id, req.json, allow_admin_fields=True)
    conn.commit()
    return ok(message="User updated successfully", user=user_public(get_user(conn, user_id)))


@route("DELETE", "/api/users/<int:user_id>", access="admin")
def deactivate_user(conn, req: Request, ctx, user_id: int):
    if int(user_id) == int(ctx["user"]["id"]):
        raise ApiError(400, "You cannot delete your own account")
    _require_user(conn, user_id)
    conn.execute("UPDATE users SET is_active = 0, updated_at = ? WHERE id = ?", (iso(), user_id))
    revoke_sessions(conn, user_id)
    conn.commit()
    return ok(message="User deactivated successfully")


@route("POST", "/api/users/<int:user_id>/reset-password", access="admin")
def admin_reset_password(conn, req: Request, ctx, user_id: int):
    v = Validation(req.json)
    password = validate_password_field(v, "newPassword")
    v.check()
    _require_user(conn, user_id)
    set_password(conn, user_id, str(password))
    revoke_sessions(conn, user_id)
    conn.commit()
    return ok(message="Password reset successfully")
