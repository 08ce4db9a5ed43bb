"""Cards: CRUD, archive/restore, assignment, comments, labels and attachments."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import emails
from .activities import log_activity
from .columns import ARCHIVE_STATUS, column_names, ensure_archive_column, get_column_by_status
from .comments import add_comment, add_log, comments_for, delete_entity_children, logs_for, resolve_mentions, update_comment
from .common import (
    can_access_project,
    get_user,
    in_clause,
    is_project_member,
    load_users,
    project_member_ids,
    require_card_access,
    require_project_access,
)
from .notifications import create_notification
from .uploads import (
    add_link_attachment,
    attachments_for,
    collect_files,
    delete_attachment,
    delete_entity_attachments,
    remove_files,
    save_uploads,
)
from .util import date_part, format_display_date, h, id_list, iso, to_bool, to_int, utcnow
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

PRIORITIES = ["low", "medium", "high", "urgent"]
LABEL_COLORS = [
    "red",
    "blue",
    "green",
    "yellow",
    "purple",
    "orange",
    "pink",
    "gray",
    "light-green",
    "dark-green",
    "light-yellow",
    "dark-yellow",
]
CARD_NUMBER_RETRIES = 5


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_cards(conn, rows, labels_by_status: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
    """Serialize card rows with their child records, fetched in bulk."""
    if not rows:
        return []
    ids = [int(row["id"]) for row in rows]
    marks = in_clause(ids)

    assignees: Dict[int, List[int]] = {i: [] for i in ids}
    for a in conn.execute(
        f"SELECT card_id, user_id FROM card_assignees WHERE card_id IN ({marks}) ORDER BY assigned_at, id", tuple(ids)
    ).fetchall():
        assignees[int(a["card_id"])].append(int(a["user_id"]))

    labels: Dict[int, List[Dict[str, Any]]] = {i: [] for i in ids}
    for lb in conn.execute(
        f"SELECT * FROM card_labels WHERE card_id IN ({marks}) ORDER BY id", tuple(ids)
    ).fetchall():
        labels[int(lb["card_id"])].append(
            {"id": lb["id"], "labelId": lb["label_id"], "name": lb["name"], "color": lb["color"]}
        )

    read_by: Dict[int, List[Tuple[int, str]]] = {i: [] for i in ids}
    for rb in conn.execute(
        f"SELECT card_id, user_id, read_at FROM card_read_by WHERE card_id IN ({marks})", tuple(ids)
    ).fetchall():
        read_by[int(rb["card_id"])].append((int(rb["user_id"]), rb["read_at"]))

    items: Dict[int, Tuple[int, int]] = {}
    for it in conn.execute(
        f"SELECT card_id, COUNT(*) AS total, SUM(completed) AS done FROM card_items WHERE card_id IN ({marks}) GROUP BY card_id",
        tuple(ids),
    ).fetchall():
        items[int(it["card_id"])] = (int(it["total"] or 0), int(it["done"] or 0))

    user_ids: List[Optional[int]] = [row["created_by"] for row in rows]
    user_ids.extend(row["completed_by"] for row in rows)
    for values in assignees.values():
        user_ids.extend(values)
    for entries in read_by.values():
        user_ids.extend(uid for uid, _ in entries)
    users = load_users(conn, user_ids)

    comments = comments_for(conn, "card", ids)
    logs = logs_for(conn, "card", ids)
    attachments = attachments_for(conn, "card", ids)

    out = []
    for row in rows:
        cid = int(row["id"])
        total_items, done_items = items.get(cid, (0, 0))
        label_map = labels_by_status or {}
        out.append(
            {
                "id": cid,
                "project": row["project_id"],
                "cardNumber": row["card_number"],
                "title": row["title"],
                "description": row["description"],
                "status": row["status"],
                "statusLabel": label_map.get(row["status"], row["status"]),
                "priority": row["priority"],
                "dueDate": row["due_date"],
                "position": row["position"],
                "order": row["position"],
                "isComplete": bool(row["is_complete"]),
                "completedAt": row["completed_at"],
                "completedBy": users.get(int(row["completed_by"])) if row["completed_by"] is not None else None,
                "isArchived": bool(row["is_archived"]),
                "archivedAt": row["archived_at"],
                "archivedBy": row["archived_by"],
                "originalStatus": row["original_status"],
                "estimatedTime": int(row["estimated_time"] or 0),
                "totalTimeSpent": int(row["total_time_spent"] or 0),
                "assignees": [users[uid] for uid in assignees[cid] if uid in users],
                "labels": labels[cid],
                "readBy": [{"user": uid, "readAt": read_at} for uid, read_at in read_by[cid]],
                "comments": comments.get(cid, []),
                "activityLog": logs.get(cid, []),
                "attachments": attachments.get(cid, []),
                "itemsCount": total_items,
                "completedItemsCount": done_items,
                "createdBy": users.get(int(row["created_by"])) if row["created_by"] is not None else None,
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
            }
        )
    return out


def card_payload(conn, card_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone()
    return serialize_cards(conn, [row], column_names(conn, int(row["project_id"])))[0]


def project_cards(conn, project_id: int, include_archived: bool = False) -> List[Dict[str, Any]]:
    where = "project_id = ?" if include_archived else "project_id = ? AND is_archived = 0"
    rows = conn.execute(
        f"SELECT * FROM cards WHERE {where} ORDER BY position, updated_at DESC", (project_id,)
    ).fetchall()
    return serialize_cards(conn, rows, column_names(conn, project_id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _status_label(conn, project_id: int, status: str) -> str:
    return column_names(conn, project_id).get(status, status)


def _auto_comment(conn, card_id: int, user: Dict[str, Any], body: str) -> None:
    add_comment(conn, "card", card_id, int(user["id"]), f"<p><strong>{h(user['name'])}</strong> {body}</p>")


def _touch(conn, card_id: int) -> None:
    conn.execute("UPDATE cards SET updated_at = ? WHERE id = ?", (iso(), card_id))


def _card_assignees(conn, card_id: int) -> List[int]:
    return [
        int(r["user_id"])
        for r in conn.execute("SELECT user_id FROM card_assignees WHERE card_id = ? ORDER BY id", (card_id,)).fetchall()
    ]


def _require_valid_status(conn, project_id: int, status: str) -> None:
    if status == ARCHIVE_STATUS:
        raise ApiError(400, "Use the archive action to archive cards")
    if not get_column_by_status(conn, project_id, status):
        raise ApiError(400, "Invalid status")


def _next_card_position(conn, project_id: int, status: str) -> int:
    row = conn.execute(
        "SELECT MAX(position) AS p FROM cards WHERE project_id = ? AND status = ?", (project_id, status)
    ).fetchone()
    return 0 if not row or row["p"] is None else int(row["p"]) + 1


def notify_assigned(conn, card: Dict[str, Any], project: Dict[str, Any], user_ids: List[int], actor: Dict[str, Any]) -> None:
    for uid in user_ids:
        if uid == int(actor["id"]):
            continue
        create_notification(
            conn,
            uid,
            int(actor["id"]),
            "card_assigned",
            "Card Assigned",
            f'You have been assigned to the card "{card["title"]}"',
            data={"cardId": card["id"], "projectId": project["id"]},
            project_id=project["id"],
            card_id=card["id"],
        )
        target = get_user(conn, uid)
        if target:
            emails.queue_and_send_email(
                conn, uid, target["email"], emails.card_assigned_message(target["name"], card, project, actor["name"]), "card", card["id"]
            )


def notify_unassigned(conn, card: Dict[str, Any], project: Dict[str, Any], user_ids: List[int], actor: Dict[str, Any]) -> None:
    for uid in user_ids:
        if uid == int(actor["id"]):
            continue
        create_notification(
            conn,
            uid,
            int(actor["id"]),
            "card_unassigned",
            "Card Unassigned",
            f'You have been removed from the card "{card["title"]}"',
            data={"cardId": card["id"], "projectId": project["id"]},
            project_id=project["id"],
            card_id=card["id"],
        )
        target = get_user(conn, uid)
        if target:
            emails.queue_and_send_email(
                conn, uid, target["email"], emails.card_unassigned_message(target["name"], card, project, actor["name"]), "card", card["id"]
            )


def _user_names(conn, user_ids: List[int]) -> str:
    users = load_users(conn, user_ids)
    return ", ".join(users[uid]["name"] for uid in user_ids if uid in users)


def set_assignees(conn, card: Dict[str, Any], new_ids: List[int]) -> Tuple[List[int], List[int]]:
    """Replace a card's assignees with the project members in ``new_ids``."""
    members = set(project_member_ids(conn, card["project_id"]))
    wanted = [uid for uid in new_ids if uid in members]
    current = _card_assignees(conn, card["id"])
    added = [uid for uid in wanted if uid not in current]
    removed = [uid for uid in current if uid not in wanted]
    now = iso()
    for uid in added:
        conn.execute(
            "INSERT OR IGNORE INTO card_assignees (card_id, user_id, assigned_at) VALUES (?, ?, ?)", (card["id"], uid, now)
        )
    for uid in removed:
        conn.execute("DELETE FROM card_assignees WHERE card_id = ? AND user_id = ?", (card["id"], uid))
    return added, removed


def _project_label_id(conn, project_id: int, name: str) -> Optional[int]:
    row = conn.execute(
        "SELECT id FROM labels WHERE project_id = ? AND name_key = ?", (project_id, name.strip().lower())
    ).fetchone()
    return int(row["id"]) if row else None


def add_card_label(conn, card: Dict[str, Any], name: str, color: str) -> None:
    exists = conn.execute(
        "SELECT 1 FROM card_labels WHERE card_id = ? AND LOWER(name) = ?", (card["id"], name.strip().lower())
    ).fetchone()
    if exists:
        raise ApiError(400, "Label already exists on this card")
    conn.execute(
        "INSERT INTO card_labels (card_id, label_id, name, color, created_at) VALUES (?, ?, ?, ?, ?)",
        (card["id"], _project_label_id(conn, card["project_id"], name), name.strip(), color, iso()),
    )


def _parse_labels(raw: Any) -> List[Tuple[str, str]]:
    out: List[Tuple[str, str]] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if isinstance(item, dict):
            name, color = str(item.get("name") or "").strip(), str(item.get("color") or "blue")
        else:
            name, color = str(item or "").strip(), "blue"
        if name and name.lower() not in {n.lower() for n, _ in out}:
            out.append((name[:50], color if color in LABEL_COLORS else "blue"))
    return out


def delete_cards(conn, card_ids: List[int]) -> List[Path]:
    """Remove cards and everything hanging off them.

    Returns the stored files to unlink once the transaction commits.
    """
    if not card_ids:
        return []
    marks = in_clause(card_ids)
    params = tuple(card_ids)
    files = delete_entity_attachments(conn, "card", card_ids)
    delete_entity_children(conn, "card", card_ids)
    conn.execute(f"DELETE FROM card_items WHERE card_id IN ({marks})", params)
    conn.execute(f"DELETE FROM time_entries WHERE card_id IN ({marks})", params)
    conn.execute(f"DELETE FROM active_timers WHERE card_id IN ({marks})", params)
    conn.execute(f"DELETE FROM card_assignees WHERE card_id IN ({marks})", params)
    conn.execute(f"DELETE FROM card_labels WHERE card_id IN ({marks})", params)
    conn.execute(f"DELETE FROM card_read_by WHERE card_id IN ({marks})", params)
    conn.execute(f"UPDATE notifications SET related_card_id = NULL WHERE related_card_id IN ({marks})", params)
    conn.execute(f"DELETE FROM cards WHERE id IN ({marks})", params)
    return files


def renumber_cards(conn) -> int:
    """Give every card a positive number that is unique within its project.

    Valid numbers are kept. Missing or repeated ones get the next free numbers
    in creation order. Returns how many cards changed.
    """
    changed = 0
    project_ids = [int(r["project_id"]) for r in conn.execute("SELECT DISTINCT project_id FROM cards ORDER BY project_id").fetchall()]
    for project_id in project_ids:
        rows = conn.execute(
            "SELECT id, card_number FROM cards WHERE project_id = ? ORDER BY created_at, id", (project_id,)
        ).fetchall()
        seen = set()
        broken: List[int] = []
        for row in rows:
            number = to_int(row["card_number"])
            if number is None or number < 1 or number in seen:
                broken.append(int(row["id"]))
            else:
                seen.add(number)
        next_number = max(seen, default=0) + 1
        for card_id in broken:
            conn.execute("UPDATE cards SET card_number = ? WHERE id = ?", (next_number, card_id))
            logger.info("Card %s in project %s renumbered to %s", card_id, project_id, next_number)
            next_number += 1
            changed += 1
    return changed


def insert_card(conn, project_id: int, values: Dict[str, Any]) -> int:
    for attempt in range(CARD_NUMBER_RETRIES):
        row = conn.execute("SELECT MAX(card_number) AS n FROM cards WHERE project_id = ?", (project_id,)).fetchone()
        number = (int(row["n"]) if row and row["n"] is not None else 0) + 1
        now = iso()
        try:
            cur = conn.execute(
                """
                INSERT INTO cards (project_id, card_number, title, description, status, priority, due_date, position,
                                   estimated_time, created_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    project_id,
                    number,
                    values["title"],
                    values["description"],
                    values["status"],
                    values["priority"],
                    values["due_date"],
                    values["position"],
                    values["estimated_time"],
                    values["created_by"],
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)
        except sqlite3.IntegrityError:
            logger.info("Card number %s taken in project %s, retrying (%s)", number, project_id, attempt + 1)
    raise ApiError(409, "Could not allocate a card number, please retry")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@route("GET", "/api/cards/projects/<int:project_id>/cards")
@route("GET", "/api/projects/<int:project_id>/cards")
def list_project_cards(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    cards = project_cards(conn, project_id, include_archived=to_bool(req.query.get("includeArchived")))
    return ok(cards=cards)


@route("POST", "/api/cards")
def create_card(conn, req: Request, ctx):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    title = v.text("title", "Title", required=True, min_length=1, max_length=200)
    description = v.text("description", "Description", default="") or ""
    project_key = "project" if body.get("project") not in (None, "") else "projectId"
    project_id = v.integer(project_key, "Project", required=True)
    priority = v.choice("priority", "Priority", PRIORITIES, default="medium")
    due_date = v.date("dueDate", "Due date")
    estimated = v.integer("estimatedTime", "Estimated time", minimum=0)
    v.check()

    project = require_project_access(conn, project_id, user)
    status = str(body.get("status") or "todo")
    _require_valid_status(conn, project["id"], status)

    card_id = insert_card(
        conn,
        project["id"],
        {
            "title": title,
            "description": description,
            "status": status,
            "priority": priority,
            "due_date": due_date,
            "position": _next_card_position(conn, project["id"], status),
            "estimated_time": estimated or 0,
            "created_by": user["id"],
        },
    )
    card = dict(conn.execute("SELECT * FROM cards WHERE id = ?", (card_id,)).fetchone())
    added, _ = set_assignees(conn, card, id_list(body.get("assignees")))
    for name, color in _parse_labels(body.get("labels")):
        add_card_label(conn, card, name, color)

    label = _status_label(conn, project["id"], status)
    _auto_comment(conn, card_id, user, f"created this card in <strong>{h(label)}</strong>")
    add_log(conn, "card", card_id, user["id"], "created", f"Card created in {label}")
    log_activity(conn, project["id"], user["id"], "card_created", f'Created card "{title}"', {"cardId": card_id})
    notify_assigned(conn, card, project, added, user)
    conn.commit()
    return ok(201, message="Card created successfully", card=card_payload(conn, card_id))


@route("GET", "/api/cards/due/today")
def due_today(conn, req: Request, ctx):
    return ok(cards=_due_cards(conn, ctx["user"], "today"))


@route("GET", "/api/cards/due/overdue")
def due_overdue(conn, req: Request, ctx):
    return ok(cards=_due_cards(conn, ctx["user"], "overdue"))


@route("GET", "/api/cards/due/upcoming")
def due_upcoming(conn, req: Request, ctx):
    return ok(cards=_due_cards(conn, ctx["user"], "upcoming"))


def _due_cards(conn, user: Dict[str, Any], window: str) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT c.* FROM cards c
        JOIN card_assignees ca ON ca.card_id = c.id
        JOIN projects p ON p.id = c.project_id
        WHERE ca.user_id = ? AND c.is_complete = 0 AND c.is_archived = 0
          AND c.due_date IS NOT NULL AND p.status <> 'inactive'
        ORDER BY c.due_date, c.id
        """,
        (user["id"],),
    ).fetchall()
    today = utcnow().date().isoformat()
    picked = []
    for row in rows:
        day = date_part(row["due_date"])
        if not day:
            continue
        if (window == "today" and day == today) or (window == "overdue" and day < today) or (
            window == "upcoming" and day > today
        ):
            picked.append(row)
    out: List[Dict[str, Any]] = []
    for project_id in sorted({int(r["project_id"]) for r in picked}):
        names = column_names(conn, project_id)
        out.extend(serialize_cards(conn, [r for r in picked if int(r["project_id"]) == project_id], names))
    out.sort(key=lambda c: (c["dueDate"] or "", c["id"]))
    return out


@route("PUT", "/api/cards/reorder")
def reorder_cards(conn, req: Request, ctx):
    user = ctx["user"]
    orders = req.json.get("cardOrders")
    if not isinstance(orders, list) or not orders:
        raise ApiError(400, "cardOrders array is required")
    updated = 0
    for entry in orders:
        if not isinstance(entry, dict):
            continue
        row = conn.execute("SELECT * FROM cards WHERE id = ?", (entry.get("cardId"),)).fetchone()
        if not row:
            continue
        card = dict(row)
        project = conn.execute("SELECT * FROM projects WHERE id = ?", (card["project_id"],)).fetchone()
        if not project or not can_access_project(conn, dict(project), user):
            continue
        new_status = str(entry.get("status") or card["status"])
        if new_status != card["status"]:
            if new_status == ARCHIVE_STATUS or not get_column_by_status(conn, card["project_id"], new_status):
                continue
            old_label = _status_label(conn, card["project_id"], card["status"])
            new_label = _status_label(conn, card["project_id"], new_status)
            _auto_comment(
                conn, card["id"], user, f"moved this card from <strong>{h(old_label)}</strong> to <strong>{h(new_label)}</strong>"
            )
            add_log(conn, "card", card["id"], user["id"], "status_changed", f"Status changed from {card['status']} to {new_status}")
        try:
            position = int(entry.get("order", card["position"]))
        except (TypeError, ValueError):
            position = card["position"]
        conn.execute(
            "UPDATE cards SET position = ?, status = ?, updated_at = ? WHERE id = ?",
            (position, new_status, iso(), card["id"]),
        )
        updated += 1
    if not updated:
        raise ApiError(400, "No cards were updated")
    conn.commit()
    return ok(message="Cards reordered successfully", updatedCount=updated)


@route("POST", "/api/cards/projects/<int:project_id>/cards/move-all")
@route("POST", "/api/projects/<int:project_id>/cards/move-all")
def move_all_cards(conn, req: Request, ctx, project_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    source = v.text("sourceStatus", "Source status", required=True)
    target = v.text("targetStatus", "Target status", required=True)
    v.check()
    if source == target:
        raise ApiError(400, "Source and target columns must be different")
    if ARCHIVE_STATUS in (source, target):
        raise ApiError(400, "Cannot move cards to or from the archive column")
    require_project_access(conn, project_id, user)
    if not get_column_by_status(conn, project_id, source) or not get_column_by_status(conn, project_id, target):
        raise ApiError(400, "Invalid source or target column")

    rows = conn.execute(
        "SELECT id FROM cards WHERE project_id = ? AND status = ? AND is_archived = 0 ORDER BY position, id",
        (project_id, source),
    ).fetchall()
    if not rows:
        raise ApiError(400, "No cards found in source column")

    next_pos = _next_card_position(conn, project_id, target)
    now = iso()
    source_label = _status_label(conn, project_id, source)
    target_label = _status_label(conn, project_id, target)
    for offset, row in enumerate(rows):
        conn.execute(
            "UPDATE cards SET status = ?, position = ?, updated_at = ? WHERE id = ?",
            (target, next_pos + offset, now, row["id"]),
        )
        add_log(conn, "card", row["id"], user["id"], "status_changed", f"Status changed from {source} to {target}")
    log_activity(
        conn,
        project_id,
        user["id"],
        "card_updated",
        f"Moved {len(rows)} card(s) from {source_label} to {target_label}",
        {"sourceStatus": source, "targetStatus": target, "count": len(rows)},
    )
    conn.commit()
    return ok(message=f"Moved {len(rows)} card(s) successfully", movedCount=len(rows))


@route("GET", "/api/cards/<int:card_id>")
def get_card_route(conn, req: Request, ctx, card_id: int):
    require_card_access(conn, card_id, ctx["user"])
    return ok(card=card_payload(conn, card_id))


@route("PUT", "/api/cards/<int:card_id>")
def update_card(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    title = v.text("title", "Title", min_length=1, max_length=200)
    priority = v.choice("priority", "Priority", PRIORITIES)
    due_date = v.date("dueDate", "Due date")
    estimated = v.integer("estimatedTime", "Estimated time", minimum=0)
    v.check()

    card = require_card_access(conn, card_id, user)
    project = card.pop("_project")
    sets: Dict[str, Any] = {}

    if "dueDate" in body:
        old_day, new_day = date_part(card["due_date"]), date_part(due_date)
        if old_day != new_day:
            sets["due_date"] = due_date
            _auto_comment(
                conn,
                card_id,
                user,
                f"changed the due date from <strong>{h(format_display_date(card['due_date']))}</strong> "
                f"to <strong>{h(format_display_date(due_date))}</strong>",
            )
    if title is not None and title != card["title"]:
        sets["title"] = title
        _auto_comment(conn, card_id, user, f"renamed the card from <strong>{h(card['title'])}</strong> to <strong>{h(title)}</strong>")
    if "description" in body:
        description = str(body.get("description") or "")
        if description != (card["description"] or ""):
            sets["description"] = description
            if not card["description"]:
                _auto_comment(conn, card_id, user, "added a description")
            elif not description.strip():
                _auto_comment(conn, card_id, user, "removed the description")
            else:
                _auto_comment(conn, card_id, user, "updated the description")
    if priority is not None and priority != card["priority"]:
        sets["priority"] = priority
    if estimated is not None:
        sets["estimated_time"] = estimated

    status_change: Optional[Tuple[str, str]] = None
    if body.get("status") not in (None, "") and body.get("status") != card["status"]:
        new_status = str(body["status"])
        _require_valid_status(conn, card["project_id"], new_status)
        old_label = _status_label(conn, card["project_id"], card["status"])
        new_label = _status_label(conn, card["project_id"], new_status)
        sets["status"] = new_status
        sets["position"] = _next_card_position(conn, card["project_id"], new_status)
        status_change = (old_label, new_label)
        _auto_comment(conn, card_id, user, f"moved this card from <strong>{h(old_label)}</strong> to <strong>{h(new_label)}</strong>")

    added: List[int] = []
    removed: List[int] = []
    if "assignees" in body:
        added, removed = set_assignees(conn, card, id_list(body.get("assignees")))
        if added:
            _auto_comment(conn, card_id, user, f"assigned <strong>{h(_user_names(conn, added))}</strong> to this card")
        if removed:
            _auto_comment(conn, card_id, user, f"removed <strong>{h(_user_names(conn, removed))}</strong> from this card")

    if "labels" in body:
        conn.execute("DELETE FROM card_labels WHERE card_id = ?", (card_id,))
        for name, color in _parse_labels(body.get("labels")):
            add_card_label(conn, card, name, color)

    if sets:
        assignments = ", ".join(f"{col} = ?" for col in sets)
        conn.execute(
            f"UPDATE cards SET {assignments}, updated_at = ? WHERE id = ?", tuple(sets.values()) + (iso(), card_id)
        )
    else:
        _touch(conn, card_id)
    add_log(conn, "card", card_id, user["id"], "updated", "Card was updated")

    card.update(sets)
    notify_assigned(conn, card, project, added, user)
    notify_unassigned(conn, card, project, removed, user)
    if status_change:
        for uid in _card_assignees(conn, card_id):
            if uid == int(user["id"]):
                continue
            create_notification(
                conn,
                uid,
                int(user["id"]),
                "card_updated",
                "Card Status Changed",
                f'"{card["title"]}" moved from {status_change[0]} to {status_change[1]}',
                project_id=project["id"],
                card_id=card_id,
            )
            target = get_user(conn, uid)
            if target:
                emails.queue_and_send_email(
                    conn,
                    uid,
                    target["email"],
                    emails.status_changed_message(target["name"], card, project, user["name"], *status_change),
                    "card",
                    card_id,
                )
    conn.commit()
    return ok(message="Card updated successfully", card=card_payload(conn, card_id))


@route("PUT", "/api/cards/<int:card_id>/status")
def update_card_status(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    status = str(req.json.get("status") or "").strip()
    if not status:
        raise ApiError(400, "Validation failed", errors=[{"field": "status", "message": "Status is required"}])
    card = require_card_access(conn, card_id, user)
    _require_valid_status(conn, card["project_id"], status)
    if status != card["status"]:
        old_label = _status_label(conn, card["project_id"], card["status"])
        new_label = _status_label(conn, card["project_id"], status)
        conn.execute(
            "UPDATE cards SET status = ?, position = ?, updated_at = ? WHERE id = ?",
            (status, _next_card_position(conn, card["project_id"], status), iso(), card_id),
        )
        _auto_comment(conn, card_id, user, f"moved this card from <strong>{h(old_label)}</strong> to <strong>{h(new_label)}</strong>")
        add_log(conn, "card", card_id, user["id"], "status_changed", f"Status changed from {card['status']} to {status}")
        conn.commit()
    return ok(message="Card status updated successfully", card=card_payload(conn, card_id))


@route("PUT", "/api/cards/<int:card_id>/archive")
def archive_card(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    if int(card["is_archived"] or 0):
        raise ApiError(400, "Card is already archived")
    ensure_archive_column(conn, card["project_id"], user["id"])
    now = iso()
    conn.execute(
        """
        UPDATE cards SET original_status = ?, status = ?, is_archived = 1, archived_at = ?, archived_by = ?, updated_at = ?
        WHERE id = ?
        """,
        (card["status"], ARCHIVE_STATUS, now, user["id"], now, card_id),
    )
    _auto_comment(conn, card_id, user, "archived this card")
    add_log(conn, "card", card_id, user["id"], "archived", "Card was archived")
    log_activity(conn, card["project_id"], user["id"], "card_updated", f'Archived card "{card["title"]}"', {"cardId": card_id})
    conn.commit()
    return ok(message="Card archived successfully", card=card_payload(conn, card_id))


@route("PUT", "/api/cards/<int:card_id>/restore")
def restore_card(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    if not int(card["is_archived"] or 0):
        raise ApiError(400, "Card is not archived")
    target = card["original_status"] or "todo"
    if target == ARCHIVE_STATUS or not get_column_by_status(conn, card["project_id"], target):
        target = "todo"
    conn.execute(
        """
        UPDATE cards SET status = ?, position = ?, is_archived = 0, archived_at = NULL, archived_by = NULL,
               original_status = NULL, updated_at = ?
        WHERE id = ?
        """,
        (target, _next_card_position(conn, card["project_id"], target), iso(), card_id),
    )
    _auto_comment(conn, card_id, user, "restored this card from archive")
    add_log(conn, "card", card_id, user["id"], "restored", "Card was restored from archive")
    conn.commit()
    return ok(message="Card restored successfully", card=card_payload(conn, card_id))


@route("DELETE", "/api/cards/<int:card_id>")
def delete_card(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    if not int(card["is_archived"] or 0):
        raise ApiError(400, "Only archived cards can be permanently deleted. Please archive the card first.")
    files = delete_cards(conn, [card_id])
    log_activity(conn, card["project_id"], user["id"], "card_deleted", f'Deleted card "{card["title"]}"', {"cardId": card_id})
    conn.commit()
    remove_files(files)
    return ok(message="Card permanently deleted")


@route("PUT", "/api/cards/<int:card_id>/complete")
def toggle_complete(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    complete = not bool(card["is_complete"])
    now = iso()
    conn.execute(
        "UPDATE cards SET is_complete = ?, completed_at = ?, completed_by = ?, updated_at = ? WHERE id = ?",
        (1 if complete else 0, now if complete else None, user["id"] if complete else None, now, card_id),
    )
    state = "complete" if complete else "incomplete"
    _auto_comment(conn, card_id, user, f"marked this card as <strong>{state}</strong>")
    add_log(conn, "card", card_id, user["id"], "marked_complete" if complete else "marked_incomplete", f"Card marked as {state}")
    conn.commit()
    return ok(message=f"Card marked as {state}", card=card_payload(conn, card_id))


@route("PUT", "/api/cards/<int:card_id>/read")
def mark_card_read(conn, req: Request, ctx, card_id: int):
    require_card_access(conn, card_id, ctx["user"])
    conn.execute(
        "INSERT OR IGNORE INTO card_read_by (card_id, user_id, read_at) VALUES (?, ?, ?)",
        (card_id, ctx["user"]["id"], iso()),
    )
    conn.commit()
    return ok(message="Card marked as read")


@route("POST", "/api/cards/<int:card_id>/assign")
def assign_user(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    target_id = v.integer("userId", "User", required=True)
    v.check()
    card = require_card_access(conn, card_id, user)
    project = card.pop("_project")
    target = get_user(conn, target_id)
    if not target:
        raise ApiError(404, "User not found")
    if not is_project_member(conn, project, int(target_id)):
        raise ApiError(400, "User is not a member of this project")
    if conn.execute("SELECT 1 FROM card_assignees WHERE card_id = ? AND user_id = ?", (card_id, target_id)).fetchone():
        raise ApiError(400, "User is already assigned to this card")
    conn.execute(
        "INSERT INTO card_assignees (card_id, user_id, assigned_at) VALUES (?, ?, ?)", (card_id, target_id, iso())
    )
    _auto_comment(conn, card_id, user, f"assigned <strong>{h(target['name'])}</strong> to this card")
    add_log(conn, "card", card_id, user["id"], "assigned", "User assigned to card")
    _touch(conn, card_id)
    notify_assigned(conn, card, project, [int(target_id)], user)
    conn.commit()
    return ok(message="User assigned successfully", card=card_payload(conn, card_id))


@route("DELETE", "/api/cards/<int:card_id>/assign/<int:user_id>")
def unassign_user(conn, req: Request, ctx, card_id: int, user_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    project = card.pop("_project")
    if not conn.execute("SELECT 1 FROM card_assignees WHERE card_id = ? AND user_id = ?", (card_id, user_id)).fetchone():
        raise ApiError(400, "User is not assigned to this card")
    target = get_user(conn, user_id)
    conn.execute("DELETE FROM card_assignees WHERE card_id = ? AND user_id = ?", (card_id, user_id))
    _auto_comment(conn, card_id, user, f"removed <strong>{h(target['name'] if target else 'a user')}</strong> from this card")
    add_log(conn, "card", card_id, user["id"], "unassigned", "User unassigned from card")
    _touch(conn, card_id)
    notify_unassigned(conn, card, project, [user_id], user)
    conn.commit()
    return ok(message="User unassigned successfully", card=card_payload(conn, card_id))


@route("POST", "/api/cards/<int:card_id>/comments")
def add_card_comment(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    body = dict(req.json)
    if body.get("text") in (None, "") and body.get("comment") not in (None, ""):
        body["text"] = body["comment"]
    v = Validation(body)
    text = v.text("text", "Comment", required=True, min_length=1, max_length=5000)
    v.check()

    card = require_card_access(conn, card_id, user)
    project = card.pop("_project")
    add_comment(conn, "card", card_id, user["id"], str(text))
    add_log(conn, "card", card_id, user["id"], "commented", "Added a comment")
    log_activity(conn, project["id"], user["id"], "comment_added", f'Commented on "{card["title"]}"', {"cardId": card_id})
    _touch(conn, card_id)

    assignees = _card_assignees(conn, card_id)
    mentioned = resolve_mentions(conn, project["id"], str(text), body.get("mentions"), int(user["id"]), assignees)
    for uid in mentioned:
        create_notification(
            conn,
            uid,
            int(user["id"]),
            "comment_mention",
            "You were mentioned in a comment",
            f'{user["name"]} mentioned you in a comment on "{card["title"]}"',
            project_id=project["id"],
            card_id=card_id,
        )
        target = get_user(conn, uid)
        if target:
            emails.queue_and_send_email(
                conn, uid, target["email"], emails.mention_message(target["name"], card["title"], project, user["name"], str(text)), "card", card_id
            )
    for uid in assignees:
        if uid == int(user["id"]) or uid in mentioned:
            continue
        create_notification(
            conn,
            uid,
            int(user["id"]),
            "comment_added",
            "New Comment",
            f'{user["name"]} commented on "{card["title"]}"',
            project_id=project["id"],
            card_id=card_id,
        )
    conn.commit()
    return ok(message="Comment added successfully", card=card_payload(conn, card_id))


@route("PUT", "/api/cards/<int:card_id>/comments/<int:comment_id>")
def edit_card_comment(conn, req: Request, ctx, card_id: int, comment_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    text = v.text("text", "Comment", required=True, min_length=1, max_length=5000)
    v.check()
    require_card_access(conn, card_id, user)
    update_comment(conn, "card", card_id, comment_id, user, str(text), allow_admin=True)
    add_log(conn, "card", card_id, user["id"], "comment_updated", "Updated a comment")
    conn.commit()
    return ok(message="Comment updated successfully", card=card_payload(conn, card_id))


@route("POST", "/api/cards/<int:card_id>/labels")
def add_label(conn, req: Request, ctx, card_id: int):
    v = Validation(req.json)
    name = v.text("name", "Label name", required=True, min_length=1, max_length=50)
    color = v.choice("color", "Color", LABEL_COLORS, default="blue")
    v.check()
    card = require_card_access(conn, card_id, ctx["user"])
    add_card_label(conn, card, str(name), str(color))
    _touch(conn, card_id)
    conn.commit()
    return ok(message="Label added successfully", card=card_payload(conn, card_id))


@route("DELETE", "/api/cards/<int:card_id>/labels/<int:label_id>")
def remove_label(conn, req: Request, ctx, card_id: int, label_id: int):
    require_card_access(conn, card_id, ctx["user"])
    cur = conn.execute("DELETE FROM card_labels WHERE id = ? AND card_id = ?", (label_id, card_id))
    if cur.rowcount <= 0:
        raise ApiError(404, "Label not found")
    _touch(conn, card_id)
    conn.commit()
    return ok(message="Label removed successfully", card=card_payload(conn, card_id))


@route("POST", "/api/cards/<int:card_id>/attachments")
def add_attachment(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    name = v.text("name", "Attachment name", required=True, min_length=1, max_length=200)
    url = v.url("url", "URL")
    if not url:
        v.add("url", "URL is required")
    v.check()
    card = require_card_access(conn, card_id, user)
    attachment = add_link_attachment(conn, "card", card_id, str(name), str(url), int(user["id"]))
    add_log(conn, "card", card_id, user["id"], "attachment_added", f"Added attachment {name}")
    log_activity(conn, card["project_id"], user["id"], "attachment_added", f'Added attachment to "{card["title"]}"', {"cardId": card_id})
    _touch(conn, card_id)
    conn.commit()
    return ok(201, message="Attachment added successfully", attachment=attachment, card=card_payload(conn, card_id))


@route("POST", "/api/cards/<int:card_id>/upload-files")
def upload_card_files(conn, req: Request, ctx, card_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    saved = save_uploads(conn, "card", card_id, collect_files(req.files), int(user["id"]))
    add_log(conn, "card", card_id, user["id"], "attachment_added", f"Uploaded {len(saved)} file(s)")
    log_activity(
        conn, card["project_id"], user["id"], "attachment_added", f'Uploaded {len(saved)} file(s) to "{card["title"]}"', {"cardId": card_id}
    )
    _touch(conn, card_id)
    conn.commit()
    return ok(message="Files uploaded successfully", files=saved, card=card_payload(conn, card_id))


@route("DELETE", "/api/cards/<int:card_id>/attachments/<int:attachment_id>")
def remove_attachment(conn, req: Request, ctx, card_id: int, attachment_id: int):
    user = ctx["user"]
    card = require_card_access(conn, card_id, user)
    removed, files = delete_attachment(conn, "card", card_id, attachment_id)
    add_log(conn, "card", card_id, user["id"], "attachment_removed", f"Removed attachment {removed['originalName']}")
    log_activity(conn, card["project_id"], user["id"], "attachment_removed", f'Removed attachment from "{card["title"]}"', {"cardId": card_id})
    _touch(conn, card_id)
    conn.commit()
    remove_files(files)
    return ok(message="Attachment deleted successfully", card=card_payload(conn, card_id))
