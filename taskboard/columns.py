"""Board columns, the archive column and the per-project column cache.

A project's columns are unique by ``(project_id, status)``. The four default
columns are stored with the project; the archive column is created the first
time a card is archived.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import string
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from . import config
from .common import load_users, require_project_access
from .db import DEFAULT_COLUMNS
from .util import iso
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

ARCHIVE_STATUS = "archive"
COLUMN_COLORS = ["blue", "green", "yellow", "red", "purple", "pink", "indigo", "gray"]
ARCHIVE_RETRIES = 3

COLUMN_CACHE: Dict[int, Tuple[float, List[Dict[str, Any]]]] = {}
COLUMN_CACHE_LOCK = threading.Lock()


def invalidate_column_cache(project_id: Optional[int] = None) -> None:
    with COLUMN_CACHE_LOCK:
        if project_id is None:
            COLUMN_CACHE.clear()
        else:
            COLUMN_CACHE.pop(int(project_id), None)


def _cache_get(project_id: int) -> Optional[List[Dict[str, Any]]]:
    with COLUMN_CACHE_LOCK:
        entry = COLUMN_CACHE.get(project_id)
        if not entry:
            return None
        expires, columns = entry
        if expires < time.monotonic():
            COLUMN_CACHE.pop(project_id, None)
            return None
        return [dict(c) for c in columns]


def _cache_put(project_id: int, columns: List[Dict[str, Any]]) -> None:
    if config.COLUMN_CACHE_TTL <= 0:
        return
    with COLUMN_CACHE_LOCK:
        COLUMN_CACHE[project_id] = (time.monotonic() + config.COLUMN_CACHE_TTL, [dict(c) for c in columns])


def serialize_column(row, users: Optional[Dict[int, Dict[str, Any]]] = None) -> Dict[str, Any]:
    creator = row["created_by"]
    return {
        "id": row["id"],
        "project": row["project_id"],
        "name": row["name"],
        "status": row["status"],
        "color": row["color"],
        "position": row["position"],
        "isDefault": bool(row["is_default"]),
        "createdBy": (users or {}).get(int(creator)) if creator is not None else None,
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


def list_columns(conn, project_id: int, use_cache: bool = True) -> List[Dict[str, Any]]:
    """Columns of a project ordered by position."""
    if use_cache:
        cached = _cache_get(int(project_id))
        if cached is not None:
            return cached
    rows = conn.execute(
        "SELECT * FROM board_columns WHERE project_id = ? ORDER BY position, id", (project_id,)
    ).fetchall()
    users = load_users(conn, [row["created_by"] for row in rows])
    columns = [serialize_column(row, users) for row in rows]
    if use_cache:
        _cache_put(int(project_id), columns)
    return columns


def column_names(conn, project_id: int) -> Dict[str, str]:
    return {c["status"]: c["name"] for c in list_columns(conn, project_id)}


def get_column_by_status(conn, project_id: int, status: str):
    return conn.execute(
        "SELECT * FROM board_columns WHERE project_id = ? AND status = ?", (project_id, status)
    ).fetchone()


def ensure_default_columns(conn, project_id: int, user_id: Optional[int] = None) -> int:
    """Create any missing default columns. Returns how many were added."""
    created = 0
    now = iso()
    for col in DEFAULT_COLUMNS:
        cur = conn.execute(
            """
            INSERT OR IGNORE INTO board_columns (project_id, name, status, color, position, is_default, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (project_id, col["name"], col["status"], col["color"], col["position"], user_id, now, now),
        )
        if cur.rowcount and cur.rowcount > 0:
            created += 1
    if created:
        invalidate_column_cache(project_id)
    return created


def _next_position(conn, project_id: int, empty_default: int) -> int:
    row = conn.execute("SELECT MAX(position) AS p FROM board_columns WHERE project_id = ?", (project_id,)).fetchone()
    if not row or row["p"] is None:
        return empty_default
    return int(row["p"]) + 1


def ensure_archive_column(conn, project_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
    """Return the project's archive column, creating it when missing.

    The unique ``(project_id, status)`` index makes a racing insert fail with
    IntegrityError; the row that won is then fetched instead.
    """
    for attempt in range(ARCHIVE_RETRIES):
        existing = get_column_by_status(conn, project_id, ARCHIVE_STATUS)
        if existing:
            return dict(existing)
        now = iso()
        try:
            conn.execute(
                """
                INSERT INTO board_columns (project_id, name, status, color, position, is_default, created_by, created_at, updated_at)
                VALUES (?, 'Archive', ?, 'gray', ?, 0, ?, ?, ?)
                """,
                (project_id, ARCHIVE_STATUS, _next_position(conn, project_id, 0), user_id, now, now),
            )
        except sqlite3.IntegrityError:
            logger.info("Archive column for project %s created concurrently (attempt %s)", project_id, attempt + 1)
            continue
        invalidate_column_cache(project_id)
        created = get_column_by_status(conn, project_id, ARCHIVE_STATUS)
        if created:
            return dict(created)
    existing = get_column_by_status(conn, project_id, ARCHIVE_STATUS)
    if existing:
        return dict(existing)
    raise RuntimeError(f"Could not create archive column for project {project_id}")


def custom_status() -> str:
    alphabet = string.ascii_lowercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(9))
    return f"custom_{int(time.time() * 1000)}_{suffix}"


def _project_column(conn, project_id: int, column_id: int):
    row = conn.execute(
        "SELECT * FROM board_columns WHERE id = ? AND project_id = ?", (column_id, project_id)
    ).fetchone()
    if not row:
        raise ApiError(404, "Column not found")
    return row


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@route("GET", "/api/columns/projects/<int:project_id>/columns")
def get_columns(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    return ok(columns=list_columns(conn, project_id))


@route("POST", "/api/columns/projects/<int:project_id>/columns")
def create_column(conn, req: Request, ctx, project_id: int):
    v = Validation(req.json)
    name = v.text("name", "Column name", required=True, min_length=1, max_length=50)
    color = v.choice("color", "Color", COLUMN_COLORS, default="gray")
    v.check()
    require_project_access(conn, project_id, ctx["user"])

    now = iso()
    cur = conn.execute(
        """
        INSERT INTO board_columns (project_id, name, status, color, position, is_default, created_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
        """,
        (project_id, name, custom_status(), color, _next_position(conn, project_id, 4), ctx["user"]["id"], now, now),
    )
    conn.commit()
    invalidate_column_cache(project_id)
    row = conn.execute("SELECT * FROM board_columns WHERE id = ?", (cur.lastrowid,)).fetchone()
    users = load_users(conn, [row["created_by"]])
    return ok(201, message="Column created successfully", column=serialize_column(row, users))


@route("PUT", "/api/columns/projects/<int:project_id>/columns/reorder")
def reorder_columns(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    ids = req.json.get("columns")
    if not isinstance(ids, list):
        raise ApiError(400, "Validation failed", errors=[{"field": "columns", "message": "Columns must be an array"}])
    for index, column_id in enumerate(ids):
        if isinstance(column_id, dict):
            column_id = column_id.get("id")
        try:
            column_id = int(column_id)
        except (TypeError, ValueError):
            continue
        conn.execute(
            "UPDATE board_columns SET position = ?, updated_at = ? WHERE id = ? AND project_id = ?",
            (index, iso(), column_id, project_id),
        )
    conn.commit()
    invalidate_column_cache(project_id)
    return ok(message="Columns reordered successfully", columns=list_columns(conn, project_id))


@route("PUT", "/api/columns/projects/<int:project_id>/columns/<int:column_id>")
def update_column(conn, req: Request, ctx, project_id: int, column_id: int):
    v = Validation(req.json)
    name = v.text("name", "Column name", min_length=1, max_length=50)
    color = v.choice("color", "Color", COLUMN_COLORS)
    position = v.integer("position", "Position", minimum=0)
    v.check()
    require_project_access(conn, project_id, ctx["user"])
    row = _project_column(conn, project_id, column_id)

    conn.execute(
        "UPDATE board_columns SET name = ?, color = ?, position = ?, updated_at = ? WHERE id = ?",
        (
            name or row["name"],
            color or row["color"],
            row["position"] if position is None else position,
            iso(),
            column_id,
        ),
    )
    conn.commit()
    invalidate_column_cache(project_id)
    row = _project_column(conn, project_id, column_id)
    users = load_users(conn, [row["created_by"]])
    return ok(message="Column updated successfully", column=serialize_column(row, users))


@route("DELETE", "/api/columns/projects/<int:project_id>/columns/<int:column_id>")
def delete_column(conn, req: Request, ctx, project_id: int, column_id: int):
    require_project_access(conn, project_id, ctx["user"])
    row = _project_column(conn, project_id, column_id)
    if row["status"] == ARCHIVE_STATUS:
        raise ApiError(400, "Cannot delete the archive column")
    if int(row["is_default"] or 0):
        raise ApiError(400, "Cannot delete default columns")

    moved = conn.execute(
        "UPDATE cards SET status = 'todo', updated_at = ? WHERE project_id = ? AND status = ?",
        (iso(), project_id, row["status"]),
    ).rowcount
    conn.execute("DELETE FROM board_columns WHERE id = ?", (column_id,))
    conn.commit()
    invalidate_column_cache(project_id)
    return ok(message="Column deleted successfully", movedCards=max(0, moved))


def board_problems(conn) -> Dict[str, int]:
    """Count board states the API never produces on its own.

    Non-zero values are what ``scripts/fix_columns.py`` repairs.
    """
    missing_defaults = conn.execute(
        """
        SELECT COUNT(*) AS c FROM projects p
        WHERE (SELECT COUNT(*) FROM board_columns b WHERE b.project_id = p.id AND b.is_default = 1) < ?
        """,
        (len(DEFAULT_COLUMNS),),
    ).fetchone()["c"]
    missing_archive = conn.execute(
        """
        SELECT COUNT(DISTINCT c.project_id) AS c FROM cards c
        WHERE c.is_archived = 1
          AND NOT EXISTS (SELECT 1 FROM board_columns b WHERE b.project_id = c.project_id AND b.status = ?)
        """,
        (ARCHIVE_STATUS,),
    ).fetchone()["c"]
    orphan_cards = conn.execute(
        """
        SELECT COUNT(*) AS c FROM cards c
        WHERE c.is_archived = 0
          AND NOT EXISTS (SELECT 1 FROM board_columns b WHERE b.project_id = c.project_id AND b.status = c.status)
        """
    ).fetchone()["c"]
    return {
        "projects_missing_default_columns": int(missing_defaults),
        "projects_missing_archive_column": int(missing_archive),
        "cards_without_column": int(orphan_cards),
    }
