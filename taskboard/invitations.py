"""Project invitations: token lookup, acceptance, listing and decline."""

from __future__ import annotations

import datetime as dt
import logging
import secrets
import sqlite3
from typing import Any, Dict, Optional

from . import emails
from .auth import create_session, create_user, validate_password_field
from .common import get_project, get_user, is_project_member, load_users, user_public
from .notifications import create_notification
from .util import iso, parse_rfc3339_datetime, utcnow
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

INVITATION_DAYS = 7
INVALID = "Invalid or expired invitation"


def _new_token() -> str:
    return secrets.token_hex(32)


def create_or_refresh_invitation(conn, project: Dict[str, Any], email: str, role: str, inviter: Dict[str, Any]) -> Dict[str, Any]:
    """Create a pending invitation or re-arm the existing one for this email.

    An accepted invitation is left alone and reported with a 400.
    """
    email = email.strip().lower()
    now = utcnow()
    expires = iso(now + dt.timedelta(days=INVITATION_DAYS))
    token = _new_token()
    existing = conn.execute(
        "SELECT * FROM invitations WHERE email = ? AND project_id = ?", (email, project["id"])
    ).fetchone()
    if existing:
        if existing["status"] == "accepted":
            raise ApiError(400, "This user has already accepted an invitation to this project")
        conn.execute(
            """
            UPDATE invitations SET token = ?, status = 'pending', role = ?, invited_by = ?, expires_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (token, role, inviter["id"], expires, iso(now), existing["id"]),
        )
        invitation_id = int(existing["id"])
    else:
        try:
            cur = conn.execute(
                """
                INSERT INTO invitations (email, project_id, invited_by, role, token, status, expires_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                """,
                (email, project["id"], inviter["id"], role, token, expires, iso(now), iso(now)),
            )
        except sqlite3.IntegrityError:
            raise ApiError(409, "An invitation for this email is being created, please retry")
        invitation_id = int(cur.lastrowid)

    emails.queue_and_send_email(
        conn,
        None,
        email,
        emails.project_invitation_message(email.split("@")[0], project, inviter["name"], token),
        "invitation",
        invitation_id,
    )
    row = conn.execute("SELECT * FROM invitations WHERE id = ?", (invitation_id,)).fetchone()
    return serialize_invitation(conn, row)


def serialize_invitation(conn, row) -> Dict[str, Any]:
    project = conn.execute("SELECT id, name, description FROM projects WHERE id = ?", (row["project_id"],)).fetchone()
    inviter = load_users(conn, [row["invited_by"]]).get(int(row["invited_by"])) if row["invited_by"] is not None else None
    return {
        "id": row["id"],
        "email": row["email"],
        "project": {"id": project["id"], "name": project["name"], "description": project["description"]} if project else None,
        "invitedBy": {"id": inviter["id"], "name": inviter["name"], "email": inviter["email"]} if inviter else None,
        "role": row["role"],
        "token": row["token"],
        "status": row["status"],
        "expiresAt": row["expires_at"],
        "acceptedAt": row["accepted_at"],
        "createdAt": row["created_at"],
    }


def _is_expired(row) -> bool:
    expires = parse_rfc3339_datetime(row["expires_at"])
    return expires is None or expires < utcnow()


def _valid_invitation(conn, token: str):
    row = conn.execute("SELECT * FROM invitations WHERE token = ?", (token,)).fetchone()
    if not row:
        raise ApiError(404, "Invitation not found")
    if row["status"] == "pending" and _is_expired(row):
        conn.execute("UPDATE invitations SET status = 'expired', updated_at = ? WHERE id = ?", (iso(), row["id"]))
        conn.commit()
        raise ApiError(400, INVALID)
    if row["status"] != "pending":
        raise ApiError(400, INVALID)
    return row


@route("GET", "/api/invitations/<token>", access="public")
def get_invitation(conn, req: Request, ctx, token: str):
    row = _valid_invitation(conn, token)
    data = serialize_invitation(conn, row)
    data.pop("token")
    data["userExists"] = bool(conn.execute("SELECT 1 FROM users WHERE email = ?", (row["email"],)).fetchone())
    return ok(invitation=data)


@route("POST", "/api/invitations/<token>/accept", access="optional")
def accept_invitation(conn, req: Request, ctx, token: str):
    invitation = _valid_invitation(conn, token)
    project = get_project(conn, invitation["project_id"])
    session_token: Optional[str] = None

    if ctx["user"]:
        if ctx["user"]["email"].lower() != invitation["email"].lower():
            raise ApiError(403, "This invitation was sent to a different email address")
        user_id = int(ctx["user"]["id"])
    else:
        user_data = req.json.get("userData")
        if not isinstance(user_data, dict):
            raise ApiError(401, ctx["error"] or "Access denied. No token provided.")
        if conn.execute("SELECT 1 FROM users WHERE email = ?", (invitation["email"],)).fetchone():
            raise ApiError(400, "Please log in to accept this invitation")
        v = Validation(user_data)
        name = v.text("name", "Name", required=True, min_length=2, max_length=50)
        password = validate_password_field(v)
        v.check()
        try:
            user_id = create_user(conn, str(name), invitation["email"], str(password), "member")
        except sqlite3.IntegrityError:
            conn.rollback()
            raise ApiError(400, "Please log in to accept this invitation")
        session_token = create_session(conn, user_id, req.remote_addr, req.user_agent)
        logger.info("Created user %s from invitation %s", user_id, invitation["id"])

    now = iso()
    conn.execute(
        "UPDATE invitations SET status = 'accepted', accepted_at = ?, accepted_by = ?, updated_at = ? WHERE id = ?",
        (now, user_id, now, invitation["id"]),
    )
    project_ref = {"id": project["id"], "name": project["name"], "description": project["description"]}
    if is_project_member(conn, project, user_id):
        conn.commit()
        return ok(message="You are already a member of this project", alreadyMember=True, project=project_ref)

    conn.execute(
        "INSERT OR IGNORE INTO project_members (project_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
        (project["id"], user_id, invitation["role"], now),
    )
    user_row = get_user(conn, user_id)
    if invitation["invited_by"] is not None:
        create_notification(
            conn,
            int(invitation["invited_by"]),
            user_id,
            "project_joined",
            "Invitation Accepted",
            f'{user_row["name"]} joined the project "{project["name"]}"',
            data={"projectId": project["id"]},
            project_id=project["id"],
        )
    conn.commit()

    payload: Dict[str, Any] = {"project": project_ref}
    if session_token:
        payload["token"] = session_token
        payload["user"] = user_public(user_row)
    return ok(message="Successfully joined the project", **payload)


@route("GET", "/api/invitations")
def my_invitations(conn, req: Request, ctx):
    rows = conn.execute(
        "SELECT * FROM invitations WHERE email = ? AND status = 'pending' AND expires_at > ? ORDER BY created_at DESC, id DESC",
        (ctx["user"]["email"].lower(), iso()),
    ).fetchall()
    return ok(invitations=[serialize_invitation(conn, row) for row in rows])


@route("GET", "/api/invitations/by-email/<email>")
def invitations_by_email(conn, req: Request, ctx, email: str):
    user = ctx["user"]
    email = email.strip().lower()
    if email != user["email"].lower() and user.get("role") != "admin":
        raise ApiError(403, "Access denied")
    rows = conn.execute(
        "SELECT * FROM invitations WHERE email = ? AND status = 'pending' ORDER BY created_at DESC, id DESC", (email,)
    ).fetchall()
    return ok(invitations=[serialize_invitation(conn, row) for row in rows])


@route("DELETE", "/api/invitations/<token>")
def decline_invitation(conn, req: Request, ctx, token: str):
    row = conn.execute(
        "SELECT * FROM invitations WHERE token = ? AND email = ? AND status = 'pending'",
        (token, ctx["user"]["email"].lower()),
    ).fetchone()
    if not row:
        raise ApiError(404, "Invitation not found")
    conn.execute("UPDATE invitations SET status = 'cancelled', updated_at = ? WHERE id = ?", (iso(), row["id"]))
    conn.commit()
    return ok(message="Invitation declined successfully")
