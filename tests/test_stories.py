from __future__ import annotations

from conftest import create_project, headers, user_id


def _story(client, token, pid, **fields):
    body = {"title": "Checkout flow", "project": pid}
    body.update(fields)
    res = client.post("/api/stories", json=body, headers=headers(token))
    assert res.status_code == 201, res.get_json()
    return res.get_json()["story"]


def test_create_story_with_substories(client, admin):
    pid = create_project(client, admin)["id"]
    parent = _story(client, admin, pid, storyType="epic", labels=["payments"])
    assert parent["status"] == "todo"
    assert parent["priority"] == "medium"
    assert parent["labels"] == ["payments"]
    child = _story(client, admin, pid, title="Card form", parentStory=parent["id"])
    assert child["parentStory"] == {"id": parent["id"], "title": "Checkout flow"}

    detail = client.get(f"/api/stories/{parent['id']}", headers=headers(admin)).get_json()["story"]
    assert detail["subStoriesCount"] == 1
    assert [s["id"] for s in detail["subStories"]] == [child["id"]]

    missing = client.post("/api/stories", json={"title": "Orphan", "project": pid, "parentStory": 999}, headers=headers(admin))
    assert missing.status_code == 404
    assert missing.get_json()["message"] == "Parent story not found"


def test_update_story_writes_auto_comments(client, admin):
    pid = create_project(client, admin)["id"]
    story = _story(client, admin, pid)
    res = client.put(
        f"/api/stories/{story['id']}",
        json={"status": "in_progress", "dueDate": "2026-11-05", "estimatedHours": 6},
        headers=headers(admin),
    )
    updated = res.get_json()["story"]
    assert updated["status"] == "in_progress"
    assert updated["estimatedHours"] == 6
    texts = [c["text"] for c in updated["comments"]]
    assert any("changed status from <strong>todo</strong> to <strong>in_progress</strong>" in t for t in texts)
    assert any("to <strong>Nov 5, 2026</strong>" in t for t in texts)

    bad = client.put(f"/api/stories/{story['id']}", json={"status": "blocked"}, headers=headers(admin))
    assert bad.status_code == 400


def test_delete_story_cascades(client, admin):
    pid = create_project(client, admin)["id"]
    parent = _story(client, admin, pid)
    child = _story(client, admin, pid, title="Child", parentStory=parent["id"])
    _story(client, admin, pid, title="Grandchild", parentStory=child["id"])

    res = client.delete(f"/api/stories/{parent['id']}", headers=headers(admin)).get_json()
    assert res["deletedCount"] == 3
    assert client.get(f"/api/projects/{pid}/stories", headers=headers(admin)).get_json()["stories"] == []


def test_story_assignment_and_comments(client, admin, member):
    pid = create_project(client, admin)["id"]
    client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    max_id = user_id(client, member)
    story = _story(client, admin, pid)

    assigned = client.post(f"/api/stories/{story['id']}/assign", json={"userId": max_id}, headers=headers(admin)).get_json()
    assert [a["id"] for a in assigned["story"]["assignees"]] == [max_id]
    notes = client.get("/api/notifications", headers=headers(member)).get_json()["notifications"]
    assert notes[0]["type"] == "story_assigned"

    commented = client.post(f"/api/stories/{story['id']}/comments", json={"text": "Looks good"}, headers=headers(member)).get_json()
    comment_id = commented["story"]["comments"][0]["id"]
    # story comments can only be edited by their author, admins included
    denied = client.put(f"/api/stories/{story['id']}/comments/{comment_id}", json={"text": "Changed"}, headers=headers(admin))
    assert denied.status_code == 403
    edited = client.put(f"/api/stories/{story['id']}/comments/{comment_id}", json={"text": "Changed"}, headers=headers(member))
    assert edited.get_json()["story"]["comments"][0]["text"] == "Changed"

    removed = client.delete(f"/api/stories/{story['id']}/assign/{max_id}", headers=headers(admin)).get_json()
    assert removed["story"]["assignees"] == []
