"""Passwords, bearer sessions, login rate limiting and the /api/auth routes."""

from __future__ import annotations

import base64
import datetime as dt
import hashlib
import hmac
import logging
import secrets
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Tuple

from . import config, emails
from .common import user_public
from .util import avatar_initials, iso, parse_rfc3339_datetime, token_hash, user_color, utcnow
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

RATE_LIMIT: Dict[str, List[dt.datetime]] = {}
RATE_LIMIT_LOCK = threading.Lock()

RESET_TOKEN_MINUTES = 15
FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, a password reset link has been sent"


def hash_password(password: str, salt_b64: Optional[str] = None) -> Tuple[str, str]:
    salt = base64.b64decode(salt_b64) if salt_b64 else secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 310_000)
    return base64.b64encode(digest).decode("utf-8"), base64.b64encode(salt).decode("utf-8")


def verify_password(password: str, expected_hash: str, salt_b64: str) -> bool:
    computed, _ = hash_password(password, salt_b64)
    return hmac.compare_digest(computed, expected_hash)


def enforce_rate_limit(ip: str, max_attempts: Optional[int] = None, window_minutes: Optional[int] = None) -> bool:
    attempts = max_attempts or config.LOGIN_MAX_ATTEMPTS
    window = window_minutes or config.LOGIN_WINDOW_MINUTES
    now = utcnow()
    cutoff = now - dt.timedelta(minutes=window)
    with RATE_LIMIT_LOCK:
        for key in [k for k, events in RATE_LIMIT.items() if not events or events[-1] < cutoff]:
            del RATE_LIMIT[key]
        history = [event for event in RATE_LIMIT.get(ip, []) if event >= cutoff]
        if len(history) >= attempts:
            RATE_LIMIT[ip] = history
            return False
        history.append(now)
        RATE_LIMIT[ip] = history
    return True


def create_user(conn, name: str, email: str, password: str, role: str = "member") -> int:
    """Insert a user row; raises sqlite3.IntegrityError on a duplicate email."""
    pw_hash, salt = hash_password(password)
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO users (name, email, password_hash, password_salt, role, avatar, color, is_active, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
        """,
        (name, email.lower(), pw_hash, salt, role, avatar_initials(name), user_color(name), now, now),
    )
    return int(cur.lastrowid)


def set_password(conn, user_id: int, password: str) -> None:
    pw_hash, salt = hash_password(password)
    conn.execute(
        "UPDATE users SET password_hash = ?, password_salt = ?, updated_at = ? WHERE id = ?",
        (pw_hash, salt, iso(), user_id),
    )


def create_session(conn, user_id: int, ip: str, user_agent: str) -> str:
    raw_token = secrets.token_urlsafe(32)
    expires = utcnow() + dt.timedelta(days=config.SESSION_DAYS)
    conn.execute(
        "INSERT INTO sessions (user_id, token_hash, expires_at, created_at, last_seen_at, ip_address, user_agent) VALUES (?, ?, ?, ?, ?, ?, ?)",
        (user_id, token_hash(raw_token), iso(expires), iso(), iso(), ip, user_agent[:200]),
    )
    return raw_token


def revoke_sessions(conn, user_id: int) -> None:
    conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))


def get_auth_context(conn, req: Request) -> Dict[str, Any]:
    """Resolve the bearer token into ``{"user", "session_id", "error"}``.

    ``error`` carries the 401 message to use when the route needs a user.
    """
    token = req.bearer_token
    if not token:
        return {"user": None, "session_id": None, "error": "Access denied. No token provided."}

    session = conn.execute(
        """
        SELECT s.id AS session_id, s.expires_at, u.*
        FROM sessions s
        JOIN users u ON u.id = s.user_id
        WHERE s.token_hash = ?
        """,
        (token_hash(token),),
    ).fetchone()
    if not session:
        return {"user": None, "session_id": None, "error": "Invalid token."}

    expires_at = parse_rfc3339_datetime(session["expires_at"])
    if not expires_at or expires_at < utcnow():
        conn.execute("DELETE FROM sessions WHERE id = ?", (session["session_id"],))
        conn.commit()
        return {"user": None, "session_id": None, "error": "Token expired."}
    if not int(session["is_active"] or 0):
        return {"user": None, "session_id": None, "error": "Account is deactivated."}

    conn.execute("UPDATE sessions SET last_seen_at = ? WHERE id = ?", (iso(), session["session_id"]))
    conn.commit()
    user = {
        "id": int(session["id"]),
        "name": session["name"],
        "email": session["email"],
        "role": session["role"],
        "avatar": session["avatar"],
        "color": session["color"],
    }
    return {"user": user, "session_id": int(session["session_id"]), "error": ""}


def validate_password_field(v: Validation, field: str = "password") -> Optional[str]:
    raw = v.data.get(field)
    if raw is None or str(raw) == "":
        v.add(field, "Password is required")
        return None
    value = str(raw)
    if len(value) < 6:
        v.add(field, "Password must be at least 6 characters")
    return value


def _auth_payload(conn, user_id: int, req: Request) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    token = create_session(conn, user_id, req.remote_addr, req.user_agent)
    return {"token": token, "user": user_public(row)}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@route("POST", "/api/auth/register", access="public")
def register(conn, req: Request, ctx):
    v = Validation(req.json)
    name = v.text("name", "Name", required=True, min_length=2, max_length=50)
    email = v.email()
    password = validate_password_field(v)
    v.check()

    if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
        raise ApiError(400, "User already exists with this email")

    has_users = conn.execute("SELECT 1 FROM users LIMIT 1").fetchone()
    role = "member" if has_users else "admin"
    try:
        user_id = create_user(conn, name, email, password, role)
    except sqlite3.IntegrityError:
        conn.rollback()
        raise ApiError(400, "User already exists with this email")

    payload = _auth_payload(conn, user_id, req)
    conn.commit()
    emails.queue_and_send_email(conn, user_id, email, emails.welcome_message(name), "user", user_id)
    conn.commit()
    logger.info("Registered user %s (role=%s)", user_id, role)
    return ok(201, message="User registered successfully", **payload)


@route("POST", "/api/auth/login", access="public")
def login(conn, req: Request, ctx):
    if not enforce_rate_limit(req.remote_addr):
        raise ApiError(429, "Too many login attempts. Please try again later.")

    v = Validation(req.json)
    email = v.email()
    password = req.json.get("password")
    if not password:
        v.add("password", "Password is required")
    v.check()

    user = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    if not user or not verify_password(str(password), user["password_hash"], user["password_salt"]):
        raise ApiError(401, "Invalid credentials")
    if not int(user["is_active"] or 0):
        raise ApiError(401, "Account is deactivated.")

    conn.execute("UPDATE users SET last_login = ? WHERE id = ?", (iso(), user["id"]))
    payload = _auth_payload(conn, int(user["id"]), req)
    conn.commit()
    return ok(message="Login successful", **payload)


@route("GET", "/api/auth/me")
def me(conn, req: Request, ctx):
    row = conn.execute("SELECT * FROM users WHERE id = ?", (ctx["user"]["id"],)).fetchone()
    return ok(user=user_public(row))


@route("POST", "/api/auth/logout")
def logout(conn, req: Request, ctx):
    conn.execute("DELETE FROM sessions WHERE id = ?", (ctx["session_id"],))
    conn.commit()
    return ok(message="Logged out successfully")


@route("POST", "/api/auth/forgot-password", access="public")
def forgot_password(conn, req: Request, ctx):
    v = Validation(req.json)
    email = v.email()
    v.check()

    user = conn.execute("SELECT * FROM users WHERE email = ? AND is_active = 1", (email,)).fetchone()
    if user:
        raw = secrets.token_hex(32)
        expires = utcnow() + dt.timedelta(minutes=RESET_TOKEN_MINUTES)
        conn.execute("DELETE FROM password_resets WHERE user_id = ? AND used_at IS NULL", (user["id"],))
        conn.execute(
            "INSERT INTO password_resets (user_id, token_hash, expires_at, created_at) VALUES (?, ?, ?, ?)",
            (user["id"], token_hash(raw), iso(expires), iso()),
        )
        emails.queue_and_send_email(
            conn, int(user["id"]), user["email"], emails.password_reset_message(user["name"], raw), "password_reset", user["id"]
        )
        conn.commit()
    return ok(message=FORGOT_PASSWORD_MESSAGE)


@route("POST", "/api/auth/reset-password", access="public")
def reset_password(conn, req: Request, ctx):
    v = Validation(req.json)
    token = v.text("token", "Token", required=True)
    password = validate_password_field(v)
    v.check()

    row = conn.execute(
        "SELECT * FROM password_resets WHERE token_hash = ? AND used_at IS NULL", (token_hash(token or ""),)
    ).fetchone()
    expires_at = parse_rfc3339_datetime(row["expires_at"]) if row else None
    if not row or not expires_at or expires_at < utcnow():
        raise ApiError(400, "Invalid or expired reset token")

    set_password(conn, int(row["user_id"]), str(password))
    conn.execute("UPDATE password_resets SET used_at = ? WHERE id = ?", (iso(), row["id"]))
    revoke_sessions(conn, int(row["user_id"]))
    conn.commit()
    return ok(message="Password reset successful")


@route("PUT", "/api/auth/change-password")
def change_password(conn, req: Request, ctx):
    v = Validation(req.json)
    current = req.json.get("currentPassword")
    if not current:
        v.add("currentPassword", "Current password is required")
    new_password = validate_password_field(v, "newPassword")
    v.check()

    user = conn.execute("SELECT * FROM users WHERE id = ?", (ctx["user"]["id"],)).fetchone()
    if not verify_password(str(current), user["password_hash"], user["password_salt"]):
        raise ApiError(400, "Current password is incorrect")
    set_password(conn, int(user["id"]), str(new_password))
    conn.execute("DELETE FROM sessions WHERE user_id = ? AND id <> ?", (user["id"], ctx["session_id"]))
    conn.commit()
    return ok(message="Password changed successfully")
