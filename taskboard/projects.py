"""Projects: listing, CRUD, archive lifecycle, members, credentials and descriptions."""

from __future__ import annotations

import json
import logging
import random
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from . import emails
from .activities import log_activity
from .cards import delete_cards, project_cards
from .columns import ensure_default_columns, invalidate_column_cache, list_columns
from .common import (
    get_project,
    get_user,
    in_clause,
    is_project_admin,
    is_project_member,
    load_users,
    project_member_ids,
    require_project_access,
    require_project_admin,
)
from .invitations import create_or_refresh_invitation
from .notifications import create_notification
from .stories import delete_stories
from .uploads import attachments_for, collect_files, delete_attachment, delete_entity_attachments, remove_files, save_uploads
from .util import date_part, iso, parse_meta_json
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

COLOR_PALETTE = [
    "#FF5733",
    "#55efc4",
    "#0984e3",
    "#d63031",
    "#fdcb6e",
    "#8D33FF",
    "#e84393",
    "#20bf6b",
    "#fa8231",
    "#2bcbba",
]
PROJECT_TYPES = ["Maintenance", "One Time", "On Going"]
PROJECT_STATUSES = ["active", "planning", "on-hold", "completed"]
MEMBER_ROLES = ["admin", "member"]
DEFAULT_SETTINGS = {"allowMemberInvite": False, "allowMemberCreateCards": True, "defaultCardPriority": "medium"}


def assign_bg_color(conn) -> str:
    """First palette color no other project uses, else a random hex color."""
    used = {row["bg_color"] for row in conn.execute("SELECT bg_color FROM projects").fetchall()}
    for color in COLOR_PALETTE:
        if color not in used:
            return color
    return "#{:06x}".format(random.randint(0, 0xFFFFFF))


def _settings(raw: Optional[str]) -> Dict[str, Any]:
    settings = dict(DEFAULT_SETTINGS)
    stored = parse_meta_json(raw, {})
    if isinstance(stored, dict):
        settings.update({k: v for k, v in stored.items() if k in DEFAULT_SETTINGS})
    return settings


def _members(conn, project_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    out: Dict[int, List[Dict[str, Any]]] = {pid: [] for pid in project_ids}
    if not project_ids:
        return out
    rows = conn.execute(
        f"SELECT * FROM project_members WHERE project_id IN ({in_clause(project_ids)}) ORDER BY joined_at, id",
        tuple(project_ids),
    ).fetchall()
    users = load_users(conn, [row["user_id"] for row in rows])
    for row in rows:
        user = users.get(int(row["user_id"]))
        if user:
            out[int(row["project_id"])].append({"user": user, "role": row["role"], "joinedAt": row["joined_at"]})
    return out


def serialize_projects(conn, rows) -> List[Dict[str, Any]]:
    if not rows:
        return []
    ids = [int(row["id"]) for row in rows]
    marks = in_clause(ids)
    owners = load_users(conn, [row["owner_id"] for row in rows])
    members = _members(conn, ids)
    attachments = attachments_for(conn, "project", ids)

    categories: Dict[int, Dict[str, Any]] = {}
    category_ids = sorted({int(r["category_id"]) for r in rows if r["category_id"] is not None})
    if category_ids:
        for c in conn.execute(
            f"SELECT id, name, color, icon FROM categories WHERE id IN ({in_clause(category_ids)})", tuple(category_ids)
        ).fetchall():
            categories[int(c["id"])] = {"id": c["id"], "name": c["name"], "color": c["color"], "icon": c["icon"]}

    counts: Dict[int, Dict[str, int]] = {}
    for c in conn.execute(
        f"""
        SELECT project_id, COUNT(*) AS total, SUM(is_complete) AS done FROM cards
        WHERE project_id IN ({marks}) AND is_archived = 0 GROUP BY project_id
        """,
        tuple(ids),
    ).fetchall():
        counts[int(c["project_id"])] = {"total": int(c["total"] or 0), "done": int(c["done"] or 0)}

    out = []
    for row in rows:
        pid = int(row["id"])
        out.append(
            {
                "id": pid,
                "name": row["name"],
                "description": row["description"],
                "clientName": row["client_name"],
                "projectType": row["project_type"],
                "projectStatus": row["status"],
                "status": row["status"],
                "category": categories.get(int(row["category_id"])) if row["category_id"] is not None else None,
                "startDate": row["start_date"],
                "endDate": row["end_date"],
                "owner": owners.get(int(row["owner_id"])),
                "members": members.get(pid, []),
                "color": row["color"],
                "bgColor": row["bg_color"],
                "liveSiteUrl": row["live_site_url"],
                "demoSiteUrl": row["demo_site_url"],
                "markupUrl": row["markup_url"],
                "settings": _settings(row["settings_json"]),
                "attachments": attachments.get(pid, []),
                "cardsCount": counts.get(pid, {}).get("total", 0),
                "completedCardsCount": counts.get(pid, {}).get("done", 0),
                "archivedAt": row["archived_at"],
                "archivedBy": row["archived_by"],
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
            }
        )
    return out


def project_payload(conn, project_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return serialize_projects(conn, [row])[0]


def has_credential_access(conn, project: Dict[str, Any], user: Dict[str, Any]) -> bool:
    if is_project_admin(conn, project, user):
        return True
    return bool(
        conn.execute(
            "SELECT 1 FROM project_credential_access WHERE project_id = ? AND user_id = ?", (project["id"], user["id"])
        ).fetchone()
    )


def _credentials(conn, project_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM project_credentials WHERE project_id = ? ORDER BY created_at, id", (project_id,)
    ).fetchall()
    return [
        {
            "id": r["id"],
            "label": r["label"],
            "value": r["value"],
            "createdBy": r["created_by"],
            "createdAt": r["created_at"],
            "updatedAt": r["updated_at"],
        }
        for r in rows
    ]


def _credential_access(conn, project_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM project_credential_access WHERE project_id = ? ORDER BY granted_at, id", (project_id,)
    ).fetchall()
    users = load_users(conn, [r["user_id"] for r in rows])
    return [
        {"user": users.get(int(r["user_id"])), "grantedBy": r["granted_by"], "grantedAt": r["granted_at"]}
        for r in rows
    ]


def _descriptions(conn, project_id: int) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM project_descriptions WHERE project_id = ? ORDER BY created_at DESC, id DESC", (project_id,)
    ).fetchall()
    users = load_users(conn, [r["created_by"] for r in rows])
    return [
        {
            "id": r["id"],
            "content": r["content"],
            "createdBy": users.get(int(r["created_by"])) if r["created_by"] is not None else None,
            "createdAt": r["created_at"],
            "updatedAt": r["updated_at"],
        }
        for r in rows
    ]


def project_detail(conn, project: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    data = project_payload(conn, int(project["id"]))
    data["columns"] = list_columns(conn, int(project["id"]))
    data["cards"] = project_cards(conn, int(project["id"]))
    data["descriptions"] = _descriptions(conn, int(project["id"]))
    access = has_credential_access(conn, project, user)
    data["hasCredentialAccess"] = access
    data["credentials"] = _credentials(conn, int(project["id"])) if access else []
    if is_project_admin(conn, project, user):
        data["credentialAccess"] = _credential_access(conn, int(project["id"]))
    return data


def purge_project(conn, project_id: int) -> Tuple[Dict[str, int], List[Path]]:
    """Delete a project and every row that belongs to it.

    Returns the deletion counts and the stored files to unlink after commit.
    """
    card_ids = [int(r["id"]) for r in conn.execute("SELECT id FROM cards WHERE project_id = ?", (project_id,)).fetchall()]
    story_ids = [int(r["id"]) for r in conn.execute("SELECT id FROM stories WHERE project_id = ?", (project_id,)).fetchall()]
    files = delete_cards(conn, card_ids)
    files += delete_stories(conn, story_ids)
    files += delete_entity_attachments(conn, "project", [project_id])
    for table in (
        "board_columns",
        "labels",
        "time_entries",
        "active_timers",
        "invitations",
        "activities",
        "project_credentials",
        "project_credential_access",
        "project_descriptions",
        "project_members",
        "user_pinned_projects",
        "user_recent_projects",
    ):
        conn.execute(f"DELETE FROM {table} WHERE project_id = ?", (project_id,))
    conn.execute("DELETE FROM notifications WHERE related_project_id = ?", (project_id,))
    conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    invalidate_column_cache(project_id)
    return {"cards": len(card_ids), "stories": len(story_ids)}, files


def _notify_members(
    conn, project: Dict[str, Any], actor: Dict[str, Any], type_: str, title: str, message: str, data: Optional[Dict[str, Any]] = None
) -> List[int]:
    notified = []
    for uid in project_member_ids(conn, project["id"]):
        if uid == int(actor["id"]):
            continue
        create_notification(conn, uid, int(actor["id"]), type_, title, message, data=data, project_id=project["id"])
        notified.append(uid)
    return notified


# ---------------------------------------------------------------------------
# Listing and CRUD
# ---------------------------------------------------------------------------


@route("GET", "/api/projects")
def list_projects(conn, req: Request, ctx):
    user = ctx["user"]
    if user.get("role") == "admin":
        rows = conn.execute(
            "SELECT * FROM projects WHERE status <> 'inactive' ORDER BY updated_at DESC, id DESC"
        ).fetchall()
    else:
        rows = conn.execute(
            """
            SELECT DISTINCT p.* FROM projects p
            LEFT JOIN project_members pm ON pm.project_id = p.id AND pm.user_id = ?
            WHERE p.status <> 'inactive' AND (p.owner_id = ? OR pm.user_id IS NOT NULL)
            ORDER BY p.updated_at DESC, p.id DESC
            """,
            (user["id"], user["id"]),
        ).fetchall()
    return ok(projects=serialize_projects(conn, rows))


def _validate_project(v: Validation, creating: bool) -> Dict[str, Any]:
    body = v.data
    status_key = "projectStatus" if "projectStatus" in body else "status"
    return {
        "name": v.text("name", "Project name", required=creating or "name" in body, min_length=1, max_length=100),
        "description": v.text("description", "Description", max_length=20000),
        "client_name": v.text("clientName", "Client name", max_length=100),
        "project_type": v.choice("projectType", "Project type", PROJECT_TYPES),
        "status": v.choice(status_key, "Project status", PROJECT_STATUSES),
        "start_date": v.date("startDate", "Start date"),
        "end_date": v.date("endDate", "End date"),
        "live_site_url": v.url("liveSiteUrl", "Live site URL") if "liveSiteUrl" in body else None,
        "demo_site_url": v.url("demoSiteUrl", "Demo site URL") if "demoSiteUrl" in body else None,
        "markup_url": v.url("markupUrl", "Markup URL") if "markupUrl" in body else None,
        "color": v.text("color", "Color", max_length=30),
        "category_id": v.integer("category", "Category") if body.get("category") not in (None, "") else None,
    }


def _check_category(conn, category_id: Optional[int]) -> None:
    if category_id is not None and not conn.execute("SELECT 1 FROM categories WHERE id = ?", (category_id,)).fetchone():
        raise ApiError(400, "Category not found")


@route("POST", "/api/projects", access="admin")
def create_project(conn, req: Request, ctx):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    values = _validate_project(v, creating=True)
    v.check()
    _check_category(conn, values["category_id"])

    settings = dict(DEFAULT_SETTINGS)
    if isinstance(body.get("settings"), dict):
        settings.update({k: val for k, val in body["settings"].items() if k in DEFAULT_SETTINGS})

    now = iso()
    cur = conn.execute(
        """
        INSERT INTO projects (name, description, client_name, project_type, category_id, start_date, end_date, owner_id,
                              status, color, bg_color, live_site_url, demo_site_url, markup_url, settings_json,
                              created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            values["name"],
            values["description"] or "",
            values["client_name"] or "",
            values["project_type"] or "One Time",
            values["category_id"],
            values["start_date"] or now,
            values["end_date"],
            user["id"],
            values["status"] or "active",
            values["color"] or "blue",
            assign_bg_color(conn),
            values["live_site_url"] or "",
            values["demo_site_url"] or "",
            values["markup_url"] or "",
            json.dumps(settings),
            now,
            now,
        ),
    )
    project_id = int(cur.lastrowid)
    conn.execute(
        "INSERT INTO project_members (project_id, user_id, role, joined_at) VALUES (?, ?, 'admin', ?)",
        (project_id, user["id"], now),
    )
    raw_members = body.get("members") if isinstance(body.get("members"), list) else []
    for entry in raw_members:
        member_id = entry.get("user") if isinstance(entry, dict) else entry
        if get_user(conn, member_id) and int(member_id) != int(user["id"]):
            conn.execute(
                "INSERT OR IGNORE INTO project_members (project_id, user_id, role, joined_at) VALUES (?, ?, 'member', ?)",
                (project_id, int(member_id), now),
            )
    ensure_default_columns(conn, project_id, int(user["id"]))

    project = get_project(conn, project_id)
    members = project_member_ids(conn, project_id)
    log_activity(
        conn,
        project_id,
        user["id"],
        "project_created",
        f'Created project "{project["name"]}"',
        {"projectName": project["name"], "projectType": project["project_type"], "membersCount": len(members)},
    )
    _notify_members(
        conn,
        project,
        user,
        "project_invite",
        "Added to Project",
        f'{user["name"]} added you to the project "{project["name"]}"',
        {"projectId": project_id},
    )
    conn.commit()
    logger.info("Project %s created by user %s", project_id, user["id"])
    return ok(201, message="Project created successfully", project=project_payload(conn, project_id))


@route("GET", "/api/projects/archived", access="admin")
def archived_projects(conn, req: Request, ctx):
    rows = conn.execute(
        "SELECT * FROM projects WHERE status = 'inactive' ORDER BY archived_at DESC, id DESC"
    ).fetchall()
    return ok(projects=serialize_projects(conn, rows))


@route("GET", "/api/projects/<int:project_id>")
def get_project_route(conn, req: Request, ctx, project_id: int):
    project = require_project_access(conn, project_id, ctx["user"])
    return ok(project=project_detail(conn, project, ctx["user"]))


TRACKED_FIELDS = [
    ("name", "name"),
    ("description", "description"),
    ("client_name", "client name"),
    ("project_type", "project type"),
    ("status", "project status"),
    ("live_site_url", "live site URL"),
    ("demo_site_url", "demo site URL"),
    ("markup_url", "markup URL"),
    ("color", "project color"),
    ("category_id", "category"),
]
PLAIN_CHANGES = {"description", "live_site_url", "demo_site_url", "markup_url", "color", "category_id"}


@route("PUT", "/api/projects/<int:project_id>")
def update_project(conn, req: Request, ctx, project_id: int):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    values = _validate_project(v, creating=False)
    v.check()
    project = require_project_admin(conn, project_id, user)
    _check_category(conn, values["category_id"])

    sets: Dict[str, Any] = {}
    changes: List[str] = []
    for key, label in TRACKED_FIELDS:
        new = values[key]
        if new is None or new == project[key]:
            continue
        sets[key] = new
        changes.append(label if key in PLAIN_CHANGES else f'{label} to "{new}"')
    # an explicit null or empty category clears it
    if "category" in body and body["category"] in (None, "") and project["category_id"] is not None:
        sets["category_id"] = None
        changes.append("category")
    for key, label in (("start_date", "start date"), ("end_date", "end date")):
        if values[key] is not None and date_part(values[key]) != date_part(project[key]):
            sets[key] = values[key]
            changes.append(f'{label} to "{date_part(values[key])}"')
    if isinstance(body.get("settings"), dict):
        settings = _settings(project["settings_json"])
        settings.update({k: val for k, val in body["settings"].items() if k in DEFAULT_SETTINGS})
        if settings != _settings(project["settings_json"]):
            sets["settings_json"] = json.dumps(settings)
            changes.append("settings")

    if not changes:
        return ok(message="No changes to update", project=project_payload(conn, project_id))

    assignments = ", ".join(f"{col} = ?" for col in sets)
    conn.execute(f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?", tuple(sets.values()) + (iso(), project_id))
    message = f"Updated project: {', '.join(changes)}"
    log_activity(conn, project_id, user["id"], "project_updated", message, {"changes": changes})
    updated = get_project(conn, project_id)
    for uid in _notify_members(conn, updated, user, "project_activity", "Project Activity", message, {"activityType": "project_updated"}):
        target = get_user(conn, uid)
        if target:
            emails.queue_and_send_email(
                conn, uid, target["email"], emails.project_update_message(target["name"], updated, user["name"], changes), "project", project_id
            )
    conn.commit()
    return ok(message="Project updated successfully", project=project_payload(conn, project_id))


@route("DELETE", "/api/projects/<int:project_id>", access="admin")
def archive_project(conn, req: Request, ctx, project_id: int):
    user = ctx["user"]
    project = get_project(conn, project_id)
    if project["status"] == "inactive":
        raise ApiError(400, "Project is already archived")
    now = iso()
    conn.execute(
        "UPDATE projects SET status = 'inactive', archived_at = ?, archived_by = ?, updated_at = ? WHERE id = ?",
        (now, user["id"], now, project_id),
    )
    log_activity(conn, project_id, user["id"], "project_deleted", f'Archived project "{project["name"]}"')
    conn.commit()
    return ok(message="Project archived successfully. It can be restored from the archived projects list.")


@route("PUT", "/api/projects/<int:project_id>/restore", access="admin")
def restore_project(conn, req: Request, ctx, project_id: int):
    project = get_project(conn, project_id)
    if project["status"] != "inactive":
        raise ApiError(400, "Project is not archived")
    conn.execute(
        "UPDATE projects SET status = 'active', archived_at = NULL, archived_by = NULL, updated_at = ? WHERE id = ?",
        (iso(), project_id),
    )
    log_activity(conn, project_id, ctx["user"]["id"], "project_updated", f'Restored project "{project["name"]}"')
    conn.commit()
    return ok(message="Project restored successfully", project=project_payload(conn, project_id))


@route("DELETE", "/api/projects/<int:project_id>/permanent", access="admin")
def permanent_delete_project(conn, req: Request, ctx, project_id: int):
    project = get_project(conn, project_id)
    counts, files = purge_project(conn, project_id)
    conn.commit()
    remove_files(files)
    logger.info(
        "Project %s permanently deleted by user %s (%s cards, %s stories)",
        project_id,
        ctx["user"]["id"],
        counts["cards"],
        counts["stories"],
    )
    return ok(message=f'Project "{project["name"]}" permanently deleted', deleted=counts)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@route("POST", "/api/projects/<int:project_id>/members")
def add_member(conn, req: Request, ctx, project_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    email = v.email()
    role = v.choice("role", "Role", MEMBER_ROLES, default="member")
    v.check()
    project = require_project_admin(conn, project_id, user)

    target = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    if target and int(target["is_active"] or 0):
        if is_project_member(conn, project, int(target["id"])):
            raise ApiError(400, "User is already a member of this project")
        conn.execute(
            "INSERT INTO project_members (project_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)",
            (project_id, target["id"], role, iso()),
        )
        create_notification(
            conn,
            int(target["id"]),
            int(user["id"]),
            "project_joined",
            "Added to Project",
            f'You have been added to the project "{project["name"]}"',
            data={"projectId": project_id},
            project_id=project_id,
        )
        emails.queue_and_send_email(
            conn,
            int(target["id"]),
            target["email"],
            emails.project_invitation_message(target["name"], project, user["name"]),
            "project",
            project_id,
        )
        log_activity(
            conn, project_id, user["id"], "member_added", f'Added {target["name"]} to the project', {"userId": target["id"]}
        )
        conn.commit()
        return ok(message="User added to project successfully", project=project_payload(conn, project_id))
    if target:
        raise ApiError(400, "User account is deactivated")

    invitation = create_or_refresh_invitation(conn, project, str(email), str(role), user)
    conn.commit()
    return ok(message="Invitation sent successfully", invitation=invitation)


@route("DELETE", "/api/projects/<int:project_id>/members/<int:member_id>")
def remove_member(conn, req: Request, ctx, project_id: int, member_id: int):
    user = ctx["user"]
    project = require_project_admin(conn, project_id, user)
    if int(project["owner_id"]) == int(member_id):
        raise ApiError(400, "Cannot remove project owner")
    target = get_user(conn, member_id)
    if not target:
        raise ApiError(404, "User not found")
    removed = conn.execute(
        "DELETE FROM project_members WHERE project_id = ? AND user_id = ?", (project_id, member_id)
    ).rowcount
    if removed <= 0:
        raise ApiError(404, "User is not a member of this project")

    conn.execute("DELETE FROM project_credential_access WHERE project_id = ? AND user_id = ?", (project_id, member_id))
    conn.execute(
        "UPDATE invitations SET status = 'cancelled', updated_at = ? WHERE project_id = ? AND email = ? AND status = 'pending'",
        (iso(), project_id, target["email"]),
    )
    conn.execute(
        "DELETE FROM card_assignees WHERE user_id = ? AND card_id IN (SELECT id FROM cards WHERE project_id = ?)",
        (member_id, project_id),
    )
    conn.execute(
        "DELETE FROM story_assignees WHERE user_id = ? AND story_id IN (SELECT id FROM stories WHERE project_id = ?)",
        (member_id, project_id),
    )
    create_notification(
        conn,
        int(member_id),
        int(user["id"]),
        "system",
        "Removed from Project",
        f'You have been removed from the project "{project["name"]}"',
        data={"projectId": project_id},
    )
    emails.queue_and_send_email(
        conn, int(member_id), target["email"], emails.member_removed_message(target["name"], project, user["name"]), "project", project_id
    )
    log_activity(
        conn, project_id, user["id"], "member_removed", f'Removed {target["name"]} from the project', {"userId": member_id}
    )
    conn.commit()
    return ok(message="Member removed successfully", project=project_payload(conn, project_id))


# ---------------------------------------------------------------------------
# Credentials (global admin)
# ---------------------------------------------------------------------------


def _credential_values(req: Request, creating: bool):
    v = Validation(req.json)
    label = v.text("label", "Label", required=creating, min_length=1, max_length=100)
    value = v.text("value", "Value", max_length=1000)
    v.check()
    return label, value


@route("POST", "/api/projects/<int:project_id>/credentials", access="admin")
def add_credential(conn, req: Request, ctx, project_id: int):
    label, value = _credential_values(req, creating=True)
    get_project(conn, project_id)
    now = iso()
    conn.execute(
        "INSERT INTO project_credentials (project_id, label, value, created_by, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
        (project_id, label, value or "", ctx["user"]["id"], now, now),
    )
    conn.commit()
    return ok(201, message="Credential added successfully", credentials=_credentials(conn, project_id))


def _credential(conn, project_id: int, credential_id: int):
    row = conn.execute(
        "SELECT * FROM project_credentials WHERE id = ? AND project_id = ?", (credential_id, project_id)
    ).fetchone()
    if not row:
        raise ApiError(404, "Credential not found")
    return row


@route("PUT", "/api/projects/<int:project_id>/credentials/<int:credential_id>", access="admin")
def update_credential(conn, req: Request, ctx, project_id: int, credential_id: int):
    label, value = _credential_values(req, creating=False)
    get_project(conn, project_id)
    row = _credential(conn, project_id, credential_id)
    conn.execute(
        "UPDATE project_credentials SET label = ?, value = ?, updated_at = ? WHERE id = ?",
        (label or row["label"], row["value"] if value is None else value, iso(), credential_id),
    )
    conn.commit()
    return ok(message="Credential updated successfully", credentials=_credentials(conn, project_id))


@route("DELETE", "/api/projects/<int:project_id>/credentials/<int:credential_id>", access="admin")
def delete_credential(conn, req: Request, ctx, project_id: int, credential_id: int):
    get_project(conn, project_id)
    _credential(conn, project_id, credential_id)
    conn.execute("DELETE FROM project_credentials WHERE id = ?", (credential_id,))
    conn.commit()
    return ok(message="Credential deleted successfully", credentials=_credentials(conn, project_id))


@route("POST", "/api/projects/<int:project_id>/credential-access/<int:member_id>", access="admin")
def grant_credential_access(conn, req: Request, ctx, project_id: int, member_id: int):
    user = ctx["user"]
    project = get_project(conn, project_id)
    target = get_user(conn, member_id)
    if not target or not is_project_member(conn, project, member_id):
        raise ApiError(400, "User is not a member of this project")
    if conn.execute(
        "SELECT 1 FROM project_credential_access WHERE project_id = ? AND user_id = ?", (project_id, member_id)
    ).fetchone():
        raise ApiError(400, "User already has credential access")
    conn.execute(
        "INSERT INTO project_credential_access (project_id, user_id, granted_by, granted_at) VALUES (?, ?, ?, ?)",
        (project_id, member_id, user["id"], iso()),
    )
    create_notification(
        conn,
        member_id,
        int(user["id"]),
        "credential_access",
        "Credential Access Granted",
        f'You have been granted access to view credentials for project "{project["name"]}"',
        data={"projectId": project_id},
        project_id=project_id,
    )
    emails.queue_and_send_email(
        conn, member_id, target["email"], emails.credential_access_message(target["name"], project, user["name"]), "project", project_id
    )
    conn.commit()
    return ok(message=f'Credential access granted to {target["name"]}', credentialAccess=_credential_access(conn, project_id))


@route("DELETE", "/api/projects/<int:project_id>/credential-access/<int:member_id>", access="admin")
def revoke_credential_access(conn, req: Request, ctx, project_id: int, member_id: int):
    user = ctx["user"]
    project = get_project(conn, project_id)
    removed = conn.execute(
        "DELETE FROM project_credential_access WHERE project_id = ? AND user_id = ?", (project_id, member_id)
    ).rowcount
    if removed <= 0:
        raise ApiError(404, "User does not have credential access")
    create_notification(
        conn,
        member_id,
        int(user["id"]),
        "credential_access_revoked",
        "Credential Access Revoked",
        f'Your credential access for project "{project["name"]}" has been revoked',
        data={"projectId": project_id},
        project_id=project_id,
    )
    target = get_user(conn, member_id)
    conn.commit()
    name = target["name"] if target else "user"
    return ok(message=f"Credential access revoked from {name}", credentialAccess=_credential_access(conn, project_id))


# ---------------------------------------------------------------------------
# Descriptions (global admin)
# ---------------------------------------------------------------------------


def _description_content(req: Request) -> str:
    v = Validation(req.json)
    content = v.text("content", "Content", required=True, min_length=1, max_length=10000)
    v.check()
    return str(content)


def _description(conn, project_id: int, description_id: int):
    row = conn.execute(
        "SELECT * FROM project_descriptions WHERE id = ? AND project_id = ?", (description_id, project_id)
    ).fetchone()
    if not row:
        raise ApiError(404, "Description not found")
    return row


@route("POST", "/api/projects/<int:project_id>/descriptions", access="admin")
def add_description(conn, req: Request, ctx, project_id: int):
    content = _description_content(req)
    get_project(conn, project_id)
    now = iso()
    conn.execute(
        "INSERT INTO project_descriptions (project_id, content, created_by, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
        (project_id, content, ctx["user"]["id"], now, now),
    )
    conn.commit()
    return ok(201, message="Description added successfully", descriptions=_descriptions(conn, project_id))


@route("PUT", "/api/projects/<int:project_id>/descriptions/<int:description_id>", access="admin")
def update_description(conn, req: Request, ctx, project_id: int, description_id: int):
    content = _description_content(req)
    get_project(conn, project_id)
    _description(conn, project_id, description_id)
    conn.execute(
        "UPDATE project_descriptions SET content = ?, updated_at = ? WHERE id = ?", (content, iso(), description_id)
    )
    conn.commit()
    return ok(message="Description updated successfully", descriptions=_descriptions(conn, project_id))


@route("DELETE", "/api/projects/<int:project_id>/descriptions/<int:description_id>", access="admin")
def delete_description(conn, req: Request, ctx, project_id: int, description_id: int):
    get_project(conn, project_id)
    _description(conn, project_id, description_id)
    conn.execute("DELETE FROM project_descriptions WHERE id = ?", (description_id,))
    conn.commit()
    return ok(message="Description deleted successfully", descriptions=_descriptions(conn, project_id))


# ---------------------------------------------------------------------------
# Attachments
# ---------------------------------------------------------------------------


@route("POST", "/api/projects/<int:project_id>/upload")
def upload_project_files(conn, req: Request, ctx, project_id: int):
    user = ctx["user"]
    require_project_access(conn, project_id, user)
    saved = save_uploads(conn, "project", project_id, collect_files(req.files), int(user["id"]))
    log_activity(conn, project_id, user["id"], "attachment_added", f"Added {len(saved)} file(s) to project")
    conn.execute("UPDATE projects SET updated_at = ? WHERE id = ?", (iso(), project_id))
    conn.commit()
    return ok(message=f"{len(saved)} file(s) uploaded successfully", files=saved, project=project_payload(conn, project_id))


@route("DELETE", "/api/projects/<int:project_id>/attachments/<int:attachment_id>")
def delete_project_attachment(conn, req: Request, ctx, project_id: int, attachment_id: int):
    user = ctx["user"]
    require_project_access(conn, project_id, user)
    removed, files = delete_attachment(conn, "project", project_id, attachment_id)
    log_activity(conn, project_id, user["id"], "attachment_removed", f'Removed file "{removed["originalName"]}" from project')
    conn.execute("UPDATE projects SET updated_at = ? WHERE id = ?", (iso(), project_id))
    conn.commit()
    remove_files(files)
    return ok(message="Attachment deleted successfully", project=project_payload(conn, project_id))
