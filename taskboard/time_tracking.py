"""Time entries and the per-user active timer.

A user has at most one active timer (``active_timers.user_id`` is unique).
Starting a timer stops the previous one first, and a card's
``total_time_spent`` is recomputed from its entries after every change.
"""

from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .common import in_clause, load_users, require_admin, require_card_access, require_project_access
from .util import iso, page_params, pagination, parse_rfc3339_datetime, seconds_between, to_bool, to_int
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

ENTRY_TYPES = ["timer", "manual"]
SORT_COLUMNS = {"createdAt": "created_at", "workDate": "work_date", "duration": "duration"}


def update_card_total_time(conn, card_id: int) -> int:
    row = conn.execute("SELECT COALESCE(SUM(duration), 0) AS total FROM time_entries WHERE card_id = ?", (card_id,)).fetchone()
    total = int(row["total"] or 0)
    conn.execute("UPDATE cards SET total_time_spent = ? WHERE id = ?", (total, card_id))
    return total


def timer_elapsed(timer) -> int:
    return int(timer["accumulated_seconds"] or 0) + seconds_between(timer["started_at"])


def _card_refs(conn, card_ids: List[int]) -> Dict[int, Dict[str, Any]]:
    ids = sorted({int(i) for i in card_ids})
    if not ids:
        return {}
    rows = conn.execute(
        f"SELECT id, title, card_number, estimated_time FROM cards WHERE id IN ({in_clause(ids)})", tuple(ids)
    ).fetchall()
    return {
        int(r["id"]): {"id": r["id"], "title": r["title"], "cardNumber": r["card_number"], "estimatedTime": r["estimated_time"]}
        for r in rows
    }


def serialize_entries(conn, rows) -> List[Dict[str, Any]]:
    users = load_users(conn, [r["user_id"] for r in rows])
    cards = _card_refs(conn, [r["card_id"] for r in rows])
    return [
        {
            "id": r["id"],
            "card": cards.get(int(r["card_id"]), {"id": r["card_id"]}),
            "project": r["project_id"],
            "user": users.get(int(r["user_id"])),
            "duration": int(r["duration"]),
            "description": r["description"],
            "entryType": r["entry_type"],
            "workDate": r["work_date"],
            "timerStartedAt": r["timer_started_at"],
            "timerStoppedAt": r["timer_stopped_at"],
            "isBillable": bool(r["is_billable"]),
            "createdAt": r["created_at"],
            "updatedAt": r["updated_at"],
        }
        for r in rows
    ]


def _entry_payload(conn, entry_id: Optional[int]) -> Optional[Dict[str, Any]]:
    if entry_id is None:
        return None
    row = conn.execute("SELECT * FROM time_entries WHERE id = ?", (entry_id,)).fetchone()
    return serialize_entries(conn, [row])[0] if row else None


def serialize_timer(conn, timer) -> Dict[str, Any]:
    card = conn.execute("SELECT id, title, card_number FROM cards WHERE id = ?", (timer["card_id"],)).fetchone()
    project = conn.execute("SELECT id, name FROM projects WHERE id = ?", (timer["project_id"],)).fetchone()
    return {
        "id": timer["id"],
        "user": timer["user_id"],
        "card": {"id": card["id"], "title": card["title"], "cardNumber": card["card_number"]} if card else timer["card_id"],
        "project": {"id": project["id"], "name": project["name"]} if project else timer["project_id"],
        "startedAt": timer["started_at"],
        "accumulatedSeconds": int(timer["accumulated_seconds"] or 0),
        "elapsedSeconds": timer_elapsed(timer),
    }


def _insert_entry(conn, card_id: int, project_id: int, user_id: int, duration: int, entry_type: str, work_date: str,
                  description: str = "", started_at: Optional[str] = None, stopped_at: Optional[str] = None,
                  is_billable: bool = True) -> int:
    now = iso()
    cur = conn.execute(
        """
        INSERT INTO time_entries (card_id, project_id, user_id, duration, description, entry_type, work_date,
                                  timer_started_at, timer_stopped_at, is_billable, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (card_id, project_id, user_id, duration, description, entry_type, work_date, started_at, stopped_at,
         1 if is_billable else 0, now, now),
    )
    return int(cur.lastrowid)


def close_timer(conn, timer) -> Dict[str, Any]:
    """Turn a running timer into an entry (when it ran > 0s) and delete it.

    Returns ``{"entryId", "cardId", "cardTotalTime", "duration"}``.
    """
    duration = timer_elapsed(timer)
    entry_id = None
    if duration > 0:
        entry_id = _insert_entry(
            conn,
            int(timer["card_id"]),
            int(timer["project_id"]),
            int(timer["user_id"]),
            duration,
            "timer",
            timer["started_at"],
            started_at=timer["started_at"],
            stopped_at=iso(),
        )
    total = update_card_total_time(conn, int(timer["card_id"]))
    conn.execute("DELETE FROM active_timers WHERE id = ?", (timer["id"],))
    return {"entryId": entry_id, "cardId": int(timer["card_id"]), "cardTotalTime": total, "duration": duration}


def _active_timer(conn, user_id: int):
    return conn.execute("SELECT * FROM active_timers WHERE user_id = ?", (user_id,)).fetchone()


def _insert_timer(conn, user_id: int, card_id: int, project_id: int) -> None:
    now = iso()
    conn.execute(
        """
        INSERT INTO active_timers (user_id, card_id, project_id, started_at, accumulated_seconds, created_at)
        VALUES (?, ?, ?, ?, 0, ?)
        """,
        (user_id, card_id, project_id, now, now),
    )


def _trackable_card(conn, card_id: object, user: Dict[str, Any]) -> Dict[str, Any]:
    card = require_card_access(conn, card_id, user)
    if int(card["is_archived"] or 0):
        raise ApiError(400, "Cannot track time on archived cards")
    return card


# ---------------------------------------------------------------------------
# Timer routes
# ---------------------------------------------------------------------------


@route("POST", "/api/time-entries/timer/start")
def start_timer(conn, req: Request, ctx):
    user = ctx["user"]
    card_id = to_int(req.json.get("cardId"))
    if card_id is None:
        raise ApiError(404, "Card not found")
    card = _trackable_card(conn, card_id, user)

    previous = _active_timer(conn, user["id"])
    if previous:
        closed = close_timer(conn, previous)
        logger.info("Auto-stopped timer on card %s for user %s (%ss)", closed["cardId"], user["id"], closed["duration"])

    try:
        _insert_timer(conn, int(user["id"]), card_id, int(card["project_id"]))
    except sqlite3.IntegrityError:
        # another request started a timer for this user in between
        conn.execute("DELETE FROM active_timers WHERE user_id = ?", (user["id"],))
        _insert_timer(conn, int(user["id"]), card_id, int(card["project_id"]))
    conn.commit()

    timer = _active_timer(conn, user["id"])
    payload = serialize_timer(conn, timer)
    payload["elapsedSeconds"] = 0
    return ok(activeTimer=payload)


@route("POST", "/api/time-entries/timer/stop")
def stop_timer(conn, req: Request, ctx):
    timer = _active_timer(conn, ctx["user"]["id"])
    if not timer:
        raise ApiError(404, "No active timer found")
    closed = close_timer(conn, timer)
    conn.commit()
    return ok(entry=_entry_payload(conn, closed["entryId"]), cardTotalTime=closed["cardTotalTime"])


@route("GET", "/api/time-entries/timer/active")
def get_active_timer(conn, req: Request, ctx):
    timer = _active_timer(conn, ctx["user"]["id"])
    return ok(activeTimer=serialize_timer(conn, timer) if timer else None)


@route("DELETE", "/api/time-entries/timer/discard")
def discard_timer(conn, req: Request, ctx):
    timer = _active_timer(conn, ctx["user"]["id"])
    if not timer:
        raise ApiError(404, "No active timer found")
    conn.execute("DELETE FROM active_timers WHERE id = ?", (timer["id"],))
    conn.commit()
    return ok(message="Timer discarded")


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


@route("POST", "/api/time-entries")
def add_manual_entry(conn, req: Request, ctx):
    user = ctx["user"]
    v = Validation(req.json)
    card_id = v.integer("cardId", "Card", required=True)
    duration = v.integer("duration", "Duration", required=True)
    description = v.text("description", "Description", max_length=500, default="") or ""
    work_date = v.date("workDate", "Work date")
    v.check()
    if duration is None or duration <= 0:
        raise ApiError(400, "Duration must be greater than 0")

    card = _trackable_card(conn, card_id, user)
    entry_id = _insert_entry(
        conn,
        int(card_id),
        int(card["project_id"]),
        int(user["id"]),
        int(duration),
        "manual",
        work_date or iso(),
        description=description,
        is_billable=to_bool(req.json.get("isBillable"), True),
    )
    total = update_card_total_time(conn, int(card_id))
    conn.commit()
    return ok(201, entry=_entry_payload(conn, entry_id), cardTotalTime=total)


def _own_entry(conn, entry_id: int, user: Dict[str, Any], verb: str):
    row = conn.execute("SELECT * FROM time_entries WHERE id = ?", (entry_id,)).fetchone()
    if not row:
        raise ApiError(404, "Time entry not found")
    if int(row["user_id"]) != int(user["id"]):
        raise ApiError(403, f"You can only {verb} your own time entries")
    return row


@route("PUT", "/api/time-entries/<int:entry_id>")
def update_entry(conn, req: Request, ctx, entry_id: int):
    row = _own_entry(conn, entry_id, ctx["user"], "edit")
    v = Validation(req.json)
    duration = v.integer("duration", "Duration")
    description = v.text("description", "Description", max_length=500)
    work_date = v.date("workDate", "Work date")
    v.check()
    if "duration" in req.json and (duration is None or duration <= 0):
        raise ApiError(400, "Duration must be greater than 0")

    conn.execute(
        """
        UPDATE time_entries SET duration = ?, description = ?, work_date = ?, is_billable = ?, updated_at = ?
        WHERE id = ?
        """,
        (
            row["duration"] if duration is None else duration,
            row["description"] if description is None else description,
            work_date or row["work_date"],
            1 if to_bool(req.json.get("isBillable"), bool(row["is_billable"])) else 0,
            iso(),
            entry_id,
        ),
    )
    total = update_card_total_time(conn, int(row["card_id"]))
    conn.commit()
    return ok(entry=_entry_payload(conn, entry_id), cardTotalTime=total)


@route("DELETE", "/api/time-entries/<int:entry_id>")
def delete_entry(conn, req: Request, ctx, entry_id: int):
    row = _own_entry(conn, entry_id, ctx["user"], "delete")
    conn.execute("DELETE FROM time_entries WHERE id = ?", (entry_id,))
    total = update_card_total_time(conn, int(row["card_id"]))
    conn.commit()
    return ok(message="Time entry deleted", cardTotalTime=total)


@route("GET", "/api/time-entries/cards/<int:card_id>")
def card_entries(conn, req: Request, ctx, card_id: int):
    card = require_card_access(conn, card_id, ctx["user"])
    paging = page_params(req.query, 20, 100)
    total = conn.execute("SELECT COUNT(*) AS c FROM time_entries WHERE card_id = ?", (card_id,)).fetchone()["c"]
    rows = conn.execute(
        "SELECT * FROM time_entries WHERE card_id = ? ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        (card_id, paging["limit"], paging["offset"]),
    ).fetchall()
    return ok(
        entries=serialize_entries(conn, rows),
        totalTimeSpent=int(card["total_time_spent"] or 0),
        estimatedTime=int(card["estimated_time"] or 0),
        pagination=pagination(int(total or 0), paging["page"], paging["limit"]),
    )


@route("PUT", "/api/time-entries/cards/<int:card_id>/estimated")
def set_estimated_time(conn, req: Request, ctx, card_id: int):
    v = Validation(req.json)
    estimated = v.integer("estimatedTime", "Estimated time", minimum=0)
    v.check()
    require_card_access(conn, card_id, ctx["user"])
    conn.execute(
        "UPDATE cards SET estimated_time = ?, updated_at = ? WHERE id = ?", (estimated or 0, iso(), card_id)
    )
    conn.commit()
    row = conn.execute("SELECT id, estimated_time, total_time_spent FROM cards WHERE id = ?", (card_id,)).fetchone()
    return ok(card={"id": row["id"], "estimatedTime": row["estimated_time"], "totalTimeSpent": row["total_time_spent"]})


def project_time_summary(conn, project_id: int) -> Dict[str, Any]:
    spent = int(
        conn.execute(
            "SELECT COALESCE(SUM(duration), 0) AS t FROM time_entries WHERE project_id = ?", (project_id,)
        ).fetchone()["t"]
        or 0
    )
    estimated = int(
        conn.execute(
            "SELECT COALESCE(SUM(estimated_time), 0) AS t FROM cards WHERE project_id = ? AND is_archived = 0",
            (project_id,),
        ).fetchone()["t"]
        or 0
    )
    by_card_rows = conn.execute(
        """
        SELECT te.card_id, SUM(te.duration) AS spent, COUNT(*) AS entries
        FROM time_entries te JOIN cards c ON c.id = te.card_id
        WHERE te.project_id = ?
        GROUP BY te.card_id
        ORDER BY spent DESC, te.card_id
        """,
        (project_id,),
    ).fetchall()
    cards = _card_refs(conn, [r["card_id"] for r in by_card_rows])
    by_user_rows = conn.execute(
        """
        SELECT te.user_id, SUM(te.duration) AS spent, COUNT(*) AS entries
        FROM time_entries te JOIN users u ON u.id = te.user_id
        WHERE te.project_id = ?
        GROUP BY te.user_id
        ORDER BY spent DESC, te.user_id
        """,
        (project_id,),
    ).fetchall()
    users = load_users(conn, [r["user_id"] for r in by_user_rows])
    by_card = [
        {"card": cards.get(int(r["card_id"])), "timeSpent": int(r["spent"] or 0), "entryCount": int(r["entries"] or 0)}
        for r in by_card_rows
    ]
    return {
        "totalTimeSpent": spent,
        "totalEstimatedTime": estimated,
        "percentComplete": int(round(spent / estimated * 100)) if estimated > 0 else 0,
        "byCard": by_card,
        "byUser": [
            {"user": users.get(int(r["user_id"])), "timeSpent": int(r["spent"] or 0), "entryCount": int(r["entries"] or 0)}
            for r in by_user_rows
        ],
        "cardsWithTime": len(by_card),
    }


@route("GET", "/api/time-entries/projects/<int:project_id>/summary")
def project_summary(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    return ok(summary=project_time_summary(conn, project_id))


@route("GET", "/api/projects/<int:project_id>/time-tracking")
def project_time_report(conn, req: Request, ctx, project_id: int):
    require_admin(ctx["user"])
    project = require_project_access(conn, project_id, ctx["user"])
    return ok(project={"id": project["id"], "name": project["name"]}, summary=project_time_summary(conn, project_id))


def _end_of_day(value: str) -> Optional[str]:
    parsed = parse_rfc3339_datetime(value)
    if not parsed:
        return None
    end = dt.datetime.combine(parsed.date(), dt.time(23, 59, 59, 999000), tzinfo=dt.timezone.utc)
    return iso(end)


@route("GET", "/api/time-entries/projects/<int:project_id>/entries")
def project_entries(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    q = req.query
    paging = page_params(q, 50, 200)

    where = ["project_id = ?"]
    params: List[Any] = [project_id]
    start = parse_rfc3339_datetime(q.get("startDate"))
    if start:
        where.append("work_date >= ?")
        params.append(iso(start))
    end = _end_of_day(q.get("endDate", ""))
    if end:
        where.append("work_date <= ?")
        params.append(end)
    if to_int(q.get("userId")) is not None:
        where.append("user_id = ?")
        params.append(to_int(q.get("userId")))
    if to_int(q.get("cardId")) is not None:
        where.append("card_id = ?")
        params.append(to_int(q.get("cardId")))
    if q.get("entryType") in ENTRY_TYPES:
        where.append("entry_type = ?")
        params.append(q.get("entryType"))
    clause = " AND ".join(where)

    sort_col = SORT_COLUMNS.get(q.get("sortBy", "createdAt"), "created_at")
    direction = "ASC" if q.get("sortOrder") == "asc" else "DESC"

    stats_row = conn.execute(
        f"""
        SELECT COUNT(*) AS total, COALESCE(SUM(duration), 0) AS duration,
               COALESCE(SUM(CASE WHEN entry_type = 'timer' THEN 1 ELSE 0 END), 0) AS timers,
               COALESCE(SUM(CASE WHEN entry_type = 'manual' THEN 1 ELSE 0 END), 0) AS manuals
        FROM time_entries WHERE {clause}
        """,
        tuple(params),
    ).fetchone()
    rows = conn.execute(
        f"SELECT * FROM time_entries WHERE {clause} ORDER BY {sort_col} {direction}, id {direction} LIMIT ? OFFSET ?",
        tuple(params) + (paging["limit"], paging["offset"]),
    ).fetchall()

    user_ids = [r["user_id"] for r in conn.execute(
        "SELECT DISTINCT user_id FROM time_entries WHERE project_id = ?", (project_id,)
    ).fetchall()]
    filter_users = sorted(load_users(conn, user_ids).values(), key=lambda u: str(u["name"]).lower())
    card_ids = [r["card_id"] for r in conn.execute(
        "SELECT DISTINCT card_id FROM time_entries WHERE project_id = ?", (project_id,)
    ).fetchall()]
    filter_cards = sorted(_card_refs(conn, card_ids).values(), key=lambda c: c["cardNumber"])
    for card in filter_cards:
        card.pop("estimatedTime", None)

    total = int(stats_row["total"] or 0)
    return ok(
        entries=serialize_entries(conn, rows),
        stats={
            "totalDuration": int(stats_row["duration"] or 0),
            "totalEntries": total,
            "timerEntries": int(stats_row["timers"] or 0),
            "manualEntries": int(stats_row["manuals"] or 0),
        },
        filterOptions={"users": filter_users, "cards": filter_cards},
        pagination=pagination(total, paging["page"], paging["limit"]),
    )

