"""Hierarchical stories (epic/story/task/bug) with comments, files and assignees."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import emails
from .comments import add_comment, add_log, comments_for, delete_entity_children, logs_for, resolve_mentions, update_comment
from .common import get_user, in_clause, is_project_member, load_users, project_member_ids, require_project_access
from .notifications import create_notification
from .uploads import attachments_for, collect_files, delete_attachment, delete_entity_attachments, remove_files, save_uploads
from .util import date_part, format_display_date, h, id_list, iso, parse_meta_json
from .web import ApiError, Request, Validation, ok, route

logger = logging.getLogger(__name__)

STATUSES = ["todo", "in_progress", "review", "done"]
PRIORITIES = ["low", "medium", "high", "urgent"]
STORY_TYPES = ["story", "task", "bug", "epic"]


def serialize_stories(conn, rows) -> List[Dict[str, Any]]:
    if not rows:
        return []
    ids = [int(row["id"]) for row in rows]
    marks = in_clause(ids)

    assignees: Dict[int, List[int]] = {i: [] for i in ids}
    for a in conn.execute(
        f"SELECT story_id, user_id FROM story_assignees WHERE story_id IN ({marks}) ORDER BY assigned_at, id", tuple(ids)
    ).fetchall():
        assignees[int(a["story_id"])].append(int(a["user_id"]))

    sub_counts = {
        int(r["parent_story_id"]): int(r["c"])
        for r in conn.execute(
            f"SELECT parent_story_id, COUNT(*) AS c FROM stories WHERE parent_story_id IN ({marks}) GROUP BY parent_story_id",
            tuple(ids),
        ).fetchall()
    }
    parent_ids = sorted({int(r["parent_story_id"]) for r in rows if r["parent_story_id"] is not None})
    parents: Dict[int, Dict[str, Any]] = {}
    if parent_ids:
        for p in conn.execute(
            f"SELECT id, title FROM stories WHERE id IN ({in_clause(parent_ids)})", tuple(parent_ids)
        ).fetchall():
            parents[int(p["id"])] = {"id": p["id"], "title": p["title"]}

    user_ids: List[Optional[int]] = [row["created_by"] for row in rows]
    for values in assignees.values():
        user_ids.extend(values)
    users = load_users(conn, user_ids)
    comments = comments_for(conn, "story", ids)
    logs = logs_for(conn, "story", ids)
    attachments = attachments_for(conn, "story", ids)

    out = []
    for row in rows:
        sid = int(row["id"])
        parent = row["parent_story_id"]
        out.append(
            {
                "id": sid,
                "project": row["project_id"],
                "parentStory": parents.get(int(parent)) if parent is not None else None,
                "title": row["title"],
                "description": row["description"],
                "status": row["status"],
                "priority": row["priority"],
                "storyType": row["story_type"],
                "labels": parse_meta_json(row["labels_json"], []),
                "dueDate": row["due_date"],
                "estimatedHours": row["estimated_hours"],
                "actualHours": row["actual_hours"],
                "assignees": [users[uid] for uid in assignees[sid] if uid in users],
                "comments": comments.get(sid, []),
                "activityLog": logs.get(sid, []),
                "attachments": attachments.get(sid, []),
                "subStoriesCount": sub_counts.get(sid, 0),
                "createdBy": users.get(int(row["created_by"])) if row["created_by"] is not None else None,
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
            }
        )
    return out


def story_payload(conn, story_id: int) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone()
    return serialize_stories(conn, [row])[0]


def require_story_access(conn, story_id: object, user: Dict[str, Any]) -> Dict[str, Any]:
    row = conn.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone()
    if not row:
        raise ApiError(404, "Story not found")
    story = dict(row)
    story["_project"] = require_project_access(conn, story["project_id"], user)
    return story


def _auto_comment(conn, story_id: int, user: Dict[str, Any], body: str) -> None:
    add_comment(conn, "story", story_id, int(user["id"]), f"<p><strong>{h(user['name'])}</strong> {body}</p>")


def _touch(conn, story_id: int) -> None:
    conn.execute("UPDATE stories SET updated_at = ? WHERE id = ?", (iso(), story_id))


def _story_assignees(conn, story_id: int) -> List[int]:
    return [
        int(r["user_id"])
        for r in conn.execute("SELECT user_id FROM story_assignees WHERE story_id = ? ORDER BY id", (story_id,)).fetchall()
    ]


def _set_assignees(conn, story: Dict[str, Any], new_ids: List[int]):
    members = set(project_member_ids(conn, story["project_id"]))
    wanted = [uid for uid in new_ids if uid in members]
    current = _story_assignees(conn, story["id"])
    added = [uid for uid in wanted if uid not in current]
    removed = [uid for uid in current if uid not in wanted]
    now = iso()
    for uid in added:
        conn.execute(
            "INSERT OR IGNORE INTO story_assignees (story_id, user_id, assigned_at) VALUES (?, ?, ?)", (story["id"], uid, now)
        )
    for uid in removed:
        conn.execute("DELETE FROM story_assignees WHERE story_id = ? AND user_id = ?", (story["id"], uid))
    return added, removed


def _notify_assigned(conn, story: Dict[str, Any], user_ids: List[int], actor: Dict[str, Any]) -> None:
    for uid in user_ids:
        create_notification(
            conn,
            uid,
            int(actor["id"]),
            "story_assigned",
            "Story Assigned",
            f'You have been assigned to the story "{story["title"]}"',
            data={"storyId": story["id"], "projectId": story["project_id"]},
            project_id=story["project_id"],
        )


def _names(conn, user_ids: List[int]) -> str:
    users = load_users(conn, user_ids)
    return ", ".join(users[uid]["name"] for uid in user_ids if uid in users)


def _labels_json(raw: Any) -> str:
    if not isinstance(raw, list):
        return "[]"
    return json.dumps([str(item)[:50] for item in raw if str(item or "").strip()])


def descendant_ids(conn, story_id: int) -> List[int]:
    """The story's id followed by every sub-story below it, breadth first."""
    found = [int(story_id)]
    frontier = [int(story_id)]
    while frontier:
        rows = conn.execute(
            f"SELECT id FROM stories WHERE parent_story_id IN ({in_clause(frontier)})", tuple(frontier)
        ).fetchall()
        frontier = [int(r["id"]) for r in rows if int(r["id"]) not in found]
        found.extend(frontier)
    return found


def delete_stories(conn, story_ids: List[int]) -> List[Path]:
    if not story_ids:
        return []
    marks = in_clause(story_ids)
    files = delete_entity_attachments(conn, "story", story_ids)
    delete_entity_children(conn, "story", story_ids)
    conn.execute(f"DELETE FROM story_assignees WHERE story_id IN ({marks})", tuple(story_ids))
    conn.execute(f"UPDATE stories SET parent_story_id = NULL WHERE id IN ({marks})", tuple(story_ids))
    conn.execute(f"DELETE FROM stories WHERE id IN ({marks})", tuple(story_ids))
    return files


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@route("GET", "/api/projects/<int:project_id>/stories")
def list_stories(conn, req: Request, ctx, project_id: int):
    require_project_access(conn, project_id, ctx["user"])
    rows = conn.execute(
        "SELECT * FROM stories WHERE project_id = ? ORDER BY created_at DESC, id DESC", (project_id,)
    ).fetchall()
    return ok(stories=serialize_stories(conn, rows))


@route("GET", "/api/stories/<int:story_id>")
def get_story(conn, req: Request, ctx, story_id: int):
    require_story_access(conn, story_id, ctx["user"])
    story = story_payload(conn, story_id)
    subs = conn.execute(
        "SELECT * FROM stories WHERE parent_story_id = ? ORDER BY created_at, id", (story_id,)
    ).fetchall()
    story["subStories"] = serialize_stories(conn, subs)
    return ok(story=story)


@route("GET", "/api/stories/<int:story_id>/substories")
def get_substories(conn, req: Request, ctx, story_id: int):
    row = conn.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone()
    if not row:
        raise ApiError(404, "Parent story not found")
    require_project_access(conn, row["project_id"], ctx["user"])
    subs = conn.execute(
        "SELECT * FROM stories WHERE parent_story_id = ? ORDER BY created_at DESC, id DESC", (story_id,)
    ).fetchall()
    return ok(subStories=serialize_stories(conn, subs))


@route("POST", "/api/stories")
def create_story(conn, req: Request, ctx):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    title = v.text("title", "Story title", required=True, min_length=1, max_length=200)
    description = v.text("description", "Description", max_length=50000, default="") or ""
    project_id = v.integer("project", "Project", required=True)
    parent_id = v.integer("parentStory", "Parent story")
    status = v.choice("status", "Status", STATUSES, default="todo")
    priority = v.choice("priority", "Priority", PRIORITIES, default="medium")
    story_type = v.choice("storyType", "Story type", STORY_TYPES, default="story")
    due_date = v.date("dueDate", "Due date")
    estimated = v.number("estimatedHours", "Estimated hours", minimum=0)
    if body.get("assignees") is not None and not isinstance(body.get("assignees"), list):
        v.add("assignees", "Assignees must be an array")
    if body.get("labels") is not None and not isinstance(body.get("labels"), list):
        v.add("labels", "Labels must be an array")
    v.check()

    project = require_project_access(conn, project_id, user)
    if parent_id is not None:
        parent = conn.execute(
            "SELECT id FROM stories WHERE id = ? AND project_id = ?", (parent_id, project["id"])
        ).fetchone()
        if not parent:
            raise ApiError(404, "Parent story not found")

    now = iso()
    cur = conn.execute(
        """
        INSERT INTO stories (project_id, parent_story_id, title, description, status, priority, story_type,
                             labels_json, due_date, estimated_hours, actual_hours, created_by, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
        """,
        (
            project["id"],
            parent_id,
            title,
            description,
            status,
            priority,
            story_type,
            _labels_json(body.get("labels")),
            due_date,
            estimated or 0,
            user["id"],
            now,
            now,
        ),
    )
    story_id = int(cur.lastrowid)
    story = dict(conn.execute("SELECT * FROM stories WHERE id = ?", (story_id,)).fetchone())
    added, _ = _set_assignees(conn, story, id_list(body.get("assignees")))
    add_log(conn, "story", story_id, user["id"], "created", "Story was created")
    _notify_assigned(conn, story, added, user)
    conn.commit()
    return ok(201, message="Story created successfully", story=story_payload(conn, story_id))


@route("PUT", "/api/stories/<int:story_id>")
def update_story(conn, req: Request, ctx, story_id: int):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    title = v.text("title", "Story title", min_length=1, max_length=200)
    description = v.text("description", "Description", max_length=50000)
    status = v.choice("status", "Status", STATUSES)
    priority = v.choice("priority", "Priority", PRIORITIES)
    story_type = v.choice("storyType", "Story type", STORY_TYPES)
    due_date = v.date("dueDate", "Due date")
    estimated = v.number("estimatedHours", "Estimated hours", minimum=0)
    actual = v.number("actualHours", "Actual hours", minimum=0)
    v.check()

    story = require_story_access(conn, story_id, user)
    story.pop("_project")
    sets: Dict[str, Any] = {}
    if title:
        sets["title"] = title
    if description is not None:
        sets["description"] = description
    if priority:
        sets["priority"] = priority
    if story_type:
        sets["story_type"] = story_type
    if estimated is not None:
        sets["estimated_hours"] = estimated
    if actual is not None:
        sets["actual_hours"] = actual
    if isinstance(body.get("labels"), list):
        sets["labels_json"] = _labels_json(body.get("labels"))

    if "dueDate" in body and date_part(due_date) != date_part(story["due_date"]):
        sets["due_date"] = due_date
        _auto_comment(
            conn,
            story_id,
            user,
            f"changed the due date from <strong>{h(format_display_date(story['due_date']))}</strong> "
            f"to <strong>{h(format_display_date(due_date))}</strong>",
        )
    if status and status != story["status"]:
        sets["status"] = status
        _auto_comment(
            conn, story_id, user, f"changed status from <strong>{h(story['status'])}</strong> to <strong>{h(status)}</strong>"
        )

    added: List[int] = []
    if isinstance(body.get("assignees"), list):
        added, removed = _set_assignees(conn, story, id_list(body.get("assignees")))
        if added:
            _auto_comment(conn, story_id, user, f"assigned <strong>{h(_names(conn, added))}</strong> to this story")
        if removed:
            _auto_comment(conn, story_id, user, f"removed <strong>{h(_names(conn, removed))}</strong> from this story")

    if sets:
        assignments = ", ".join(f"{col} = ?" for col in sets)
        conn.execute(
            f"UPDATE stories SET {assignments}, updated_at = ? WHERE id = ?", tuple(sets.values()) + (iso(), story_id)
        )
    else:
        _touch(conn, story_id)
    add_log(conn, "story", story_id, user["id"], "updated", "Story was updated")
    story.update(sets)
    _notify_assigned(conn, story, added, user)
    conn.commit()
    return ok(message="Story updated successfully", story=story_payload(conn, story_id))


@route("DELETE", "/api/stories/<int:story_id>")
def delete_story(conn, req: Request, ctx, story_id: int):
    require_story_access(conn, story_id, ctx["user"])
    ids = descendant_ids(conn, story_id)
    files = delete_stories(conn, ids)
    conn.commit()
    remove_files(files)
    logger.info("Deleted story %s with %s sub-stories", story_id, len(ids) - 1)
    return ok(message="Story and sub-stories deleted successfully", deletedCount=len(ids))


@route("POST", "/api/stories/<int:story_id>/comments")
def add_story_comment(conn, req: Request, ctx, story_id: int):
    user = ctx["user"]
    body = req.json
    v = Validation(body)
    text = v.text("text", "Comment", required=True, min_length=1, max_length=5000)
    v.check()

    story = require_story_access(conn, story_id, user)
    project = story.pop("_project")
    add_comment(conn, "story", story_id, user["id"], str(text))
    add_log(conn, "story", story_id, user["id"], "commented", "Added a comment")
    _touch(conn, story_id)

    mentioned = resolve_mentions(
        conn, project["id"], str(text), body.get("mentions"), int(user["id"]), _story_assignees(conn, story_id)
    )
    for uid in mentioned:
        create_notification(
            conn,
            uid,
            int(user["id"]),
            "comment_mention",
            "You were mentioned in a comment",
            f'{user["name"]} mentioned you in a comment on story "{story["title"]}"',
            data={"storyId": story_id, "projectId": project["id"]},
            project_id=project["id"],
        )
        target = get_user(conn, uid)
        if target:
            emails.queue_and_send_email(
                conn,
                uid,
                target["email"],
                emails.mention_message(target["name"], story["title"], project, user["name"], str(text)),
                "story",
                story_id,
            )
    conn.commit()
    return ok(message="Comment added successfully", story=story_payload(conn, story_id))


@route("PUT", "/api/stories/<int:story_id>/comments/<int:comment_id>")
def edit_story_comment(conn, req: Request, ctx, story_id: int, comment_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    text = v.text("text", "Comment", required=True, min_length=1, max_length=5000)
    v.check()
    require_story_access(conn, story_id, user)
    update_comment(conn, "story", story_id, comment_id, user, str(text), allow_admin=False)
    conn.commit()
    return ok(message="Comment updated successfully", story=story_payload(conn, story_id))


@route("POST", "/api/stories/<int:story_id>/upload-files")
def upload_story_files(conn, req: Request, ctx, story_id: int):
    user = ctx["user"]
    require_story_access(conn, story_id, user)
    saved = save_uploads(conn, "story", story_id, collect_files(req.files), int(user["id"]))
    add_log(conn, "story", story_id, user["id"], "attachment_added", f"Uploaded {len(saved)} file(s)")
    _touch(conn, story_id)
    conn.commit()
    return ok(message=f"{len(saved)} file(s) uploaded successfully", files=saved, story=story_payload(conn, story_id))


@route("DELETE", "/api/stories/<int:story_id>/attachments/<int:attachment_id>")
def remove_story_attachment(conn, req: Request, ctx, story_id: int, attachment_id: int):
    user = ctx["user"]
    require_story_access(conn, story_id, user)
    removed, files = delete_attachment(conn, "story", story_id, attachment_id)
    add_log(conn, "story", story_id, user["id"], "attachment_removed", f"Removed attachment {removed['originalName']}")
    _touch(conn, story_id)
    conn.commit()
    remove_files(files)
    return ok(message="Attachment removed successfully", story=story_payload(conn, story_id))


@route("POST", "/api/stories/<int:story_id>/assign")
def assign_story_user(conn, req: Request, ctx, story_id: int):
    user = ctx["user"]
    v = Validation(req.json)
    target_id = v.integer("userId", "User", required=True)
    v.check()
    story = require_story_access(conn, story_id, user)
    project = story.pop("_project")
    target = get_user(conn, target_id)
    if not target:
        raise ApiError(404, "User not found")
    if not is_project_member(conn, project, int(target_id)):
        raise ApiError(400, "User is not a member of this project")
    if conn.execute("SELECT 1 FROM story_assignees WHERE story_id = ? AND user_id = ?", (story_id, target_id)).fetchone():
        raise ApiError(400, "User is already assigned to this story")
    conn.execute(
        "INSERT INTO story_assignees (story_id, user_id, assigned_at) VALUES (?, ?, ?)", (story_id, target_id, iso())
    )
    _auto_comment(conn, story_id, user, f"assigned <strong>{h(target['name'])}</strong> to this story")
    add_log(conn, "story", story_id, user["id"], "assigned", "User assigned to story")
    _touch(conn, story_id)
    _notify_assigned(conn, story, [int(target_id)], user)
    conn.commit()
    return ok(message="User assigned successfully", story=story_payload(conn, story_id))


@route("DELETE", "/api/stories/<int:story_id>/assign/<int:user_id>")
def unassign_story_user(conn, req: Request, ctx, story_id: int, user_id: int):
    user = ctx["user"]
    require_story_access(conn, story_id, user)
    if not conn.execute("SELECT 1 FROM story_assignees WHERE story_id = ? AND user_id = ?", (story_id, user_id)).fetchone():
        raise ApiError(400, "User is not assigned to this story")
    target = get_user(conn, user_id)
    conn.execute("DELETE FROM story_assignees WHERE story_id = ? AND user_id = ?", (story_id, user_id))
    _auto_comment(conn, story_id, user, f"removed <strong>{h(target['name'] if target else 'a user')}</strong> from this story")
    add_log(conn, "story", story_id, user["id"], "unassigned", "User unassigned from story")
    _touch(conn, story_id)
    conn.commit()
    return ok(message="User unassigned successfully", story=story_payload(conn, story_id))
