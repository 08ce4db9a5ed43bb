from __future__ import annotations

from taskboard import columns

from conftest import create_card, create_project, headers, user_id


def _columns(client, token, pid):
    return client.get(f"/api/columns/projects/{pid}/columns", headers=headers(token)).get_json()["columns"]


def test_custom_column_lifecycle(client, admin):
    pid = create_project(client, admin)["id"]
    res = client.post(f"/api/columns/projects/{pid}/columns", json={"name": "QA", "color": "purple"}, headers=headers(admin))
    assert res.status_code == 201
    column = res.get_json()["column"]
    assert column["status"].startswith("custom_")
    assert column["position"] == 4
    assert column["isDefault"] is False

    card = create_card(client, admin, pid, status=column["status"])
    assert card["statusLabel"] == "QA"

    renamed = client.put(f"/api/columns/projects/{pid}/columns/{column['id']}", json={"name": "Testing"}, headers=headers(admin))
    assert renamed.get_json()["column"]["name"] == "Testing"

    deleted = client.delete(f"/api/columns/projects/{pid}/columns/{column['id']}", headers=headers(admin))
    assert deleted.get_json()["movedCards"] == 1
    moved = client.get(f"/api/cards/{card['id']}", headers=headers(admin)).get_json()["card"]
    assert moved["status"] == "todo"


def test_default_and_archive_columns_are_protected(client, admin):
    pid = create_project(client, admin)["id"]
    todo = _columns(client, admin, pid)[0]
    res = client.delete(f"/api/columns/projects/{pid}/columns/{todo['id']}", headers=headers(admin))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Cannot delete default columns"

    card = create_card(client, admin, pid)
    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))
    archive = [c for c in _columns(client, admin, pid) if c["status"] == "archive"][0]
    assert archive["color"] == "gray"
    assert archive["position"] == 4
    res = client.delete(f"/api/columns/projects/{pid}/columns/{archive['id']}", headers=headers(admin))
    assert res.get_json()["message"] == "Cannot delete the archive column"


def test_reorder_columns(client, admin):
    pid = create_project(client, admin)["id"]
    ids = [c["id"] for c in _columns(client, admin, pid)]
    res = client.put(f"/api/columns/projects/{pid}/columns/reorder", json={"columns": ids[::-1]}, headers=headers(admin))
    assert [c["id"] for c in res.get_json()["columns"]] == ids[::-1]


def test_card_numbers_and_positions(client, admin):
    pid = create_project(client, admin)["id"]
    first = create_card(client, admin, pid, title="One")
    second = create_card(client, admin, pid, title="Two")
    assert (first["cardNumber"], second["cardNumber"]) == (1, 2)
    assert (first["position"], second["position"]) == (0, 1)
    assert first["comments"][0]["text"].endswith("created this card in <strong>To Do</strong></p>")


def test_card_requires_known_status(client, admin):
    pid = create_project(client, admin)["id"]
    res = client.post("/api/cards", json={"title": "Bad", "project": pid, "status": "nowhere"}, headers=headers(admin))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Invalid status"
    archive = client.post("/api/cards", json={"title": "Bad", "project": pid, "status": "archive"}, headers=headers(admin))
    assert archive.status_code == 400


def test_status_move_appends_to_target_column(client, admin):
    pid = create_project(client, admin)["id"]
    create_card(client, admin, pid, title="Already doing", status="doing")
    card = create_card(client, admin, pid, title="Mover")
    res = client.put(f"/api/cards/{card['id']}/status", json={"status": "doing"}, headers=headers(admin))
    moved = res.get_json()["card"]
    assert moved["status"] == "doing"
    assert moved["position"] == 1
    assert moved["activityLog"][-1]["action"] == "status_changed"


def test_archive_restore_and_delete(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid, status="review")

    early = client.delete(f"/api/cards/{card['id']}", headers=headers(admin))
    assert early.status_code == 400
    assert early.get_json()["message"] == "Only archived cards can be permanently deleted. Please archive the card first."

    archived = client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin)).get_json()["card"]
    assert archived["isArchived"] is True
    assert archived["status"] == "archive"
    assert archived["originalStatus"] == "review"
    again = client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))
    assert again.get_json()["message"] == "Card is already archived"

    restored = client.put(f"/api/cards/{card['id']}/restore", headers=headers(admin)).get_json()["card"]
    assert restored["status"] == "review"
    assert restored["isArchived"] is False
    assert restored["originalStatus"] is None

    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))
    assert client.delete(f"/api/cards/{card['id']}", headers=headers(admin)).status_code == 200
    assert client.get(f"/api/cards/{card['id']}", headers=headers(admin)).status_code == 404


def test_restore_falls_back_to_todo(client, admin):
    pid = create_project(client, admin)["id"]
    column = client.post(f"/api/columns/projects/{pid}/columns", json={"name": "Blocked"}, headers=headers(admin)).get_json()["column"]
    card = create_card(client, admin, pid, status=column["status"])
    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))
    client.delete(f"/api/columns/projects/{pid}/columns/{column['id']}", headers=headers(admin))
    restored = client.put(f"/api/cards/{card['id']}/restore", headers=headers(admin)).get_json()["card"]
    assert restored["status"] == "todo"


def test_toggle_complete(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    done = client.put(f"/api/cards/{card['id']}/complete", headers=headers(admin)).get_json()
    assert done["message"] == "Card marked as complete"
    assert done["card"]["completedBy"]["id"] == user_id(client, admin)
    undone = client.put(f"/api/cards/{card['id']}/complete", headers=headers(admin)).get_json()
    assert undone["card"]["isComplete"] is False
    assert undone["card"]["completedAt"] is None


def test_assign_and_notify(client, admin, member):
    pid = create_project(client, admin)["id"]
    max_id = user_id(client, member)
    card = create_card(client, admin, pid)

    outsider = client.post(f"/api/cards/{card['id']}/assign", json={"userId": max_id}, headers=headers(admin))
    assert outsider.status_code == 400
    assert outsider.get_json()["message"] == "User is not a member of this project"

    client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    assigned = client.post(f"/api/cards/{card['id']}/assign", json={"userId": max_id}, headers=headers(admin))
    assert [a["id"] for a in assigned.get_json()["card"]["assignees"]] == [max_id]
    dup = client.post(f"/api/cards/{card['id']}/assign", json={"userId": max_id}, headers=headers(admin))
    assert dup.get_json()["message"] == "User is already assigned to this card"

    types = [n["type"] for n in client.get("/api/notifications", headers=headers(member)).get_json()["notifications"]]
    assert "card_assigned" in types

    unassigned = client.delete(f"/api/cards/{card['id']}/assign/{max_id}", headers=headers(admin))
    assert unassigned.get_json()["card"]["assignees"] == []


def test_comment_mentions_notify_members(client, admin, member):
    pid = create_project(client, admin)["id"]
    client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    card = create_card(client, admin, pid)

    res = client.post(f"/api/cards/{card['id']}/comments", json={"comment": "Can you check this @max?"}, headers=headers(admin))
    assert res.status_code == 200
    assert res.get_json()["card"]["comments"][0]["text"] == "Can you check this @max?"

    notes = client.get("/api/notifications", headers=headers(member)).get_json()
    assert notes["notifications"][0]["type"] == "comment_mention"
    assert notes["unreadCount"] >= 1


def test_member_cannot_edit_someone_elses_comment(client, admin, member):
    pid = create_project(client, admin)["id"]
    client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    card = create_card(client, admin, pid)
    comment = client.post(f"/api/cards/{card['id']}/comments", json={"text": "Original"}, headers=headers(admin)).get_json()
    comment_id = comment["card"]["comments"][0]["id"]

    res = client.put(f"/api/cards/{card['id']}/comments/{comment_id}", json={"text": "Edited"}, headers=headers(member))
    assert res.status_code == 403
    ok_res = client.put(f"/api/cards/{card['id']}/comments/{comment_id}", json={"text": "Edited"}, headers=headers(admin))
    assert ok_res.get_json()["card"]["comments"][0]["text"] == "Edited"


def test_card_labels_follow_project_catalogue(client, admin):
    pid = create_project(client, admin)["id"]
    label = client.post(f"/api/projects/{pid}/labels", json={"name": "Bug", "color": "red"}, headers=headers(admin)).get_json()["label"]
    dup = client.post(f"/api/projects/{pid}/labels", json={"name": "bug"}, headers=headers(admin))
    assert dup.get_json()["message"] == "Label with this name already exists"

    card = create_card(client, admin, pid)
    tagged = client.post(f"/api/cards/{card['id']}/labels", json={"name": "Bug", "color": "red"}, headers=headers(admin)).get_json()["card"]
    assert tagged["labels"][0]["labelId"] == label["id"]

    client.put(f"/api/projects/{pid}/labels/{label['id']}", json={"name": "Defect", "color": "orange"}, headers=headers(admin))
    refreshed = client.get(f"/api/cards/{card['id']}", headers=headers(admin)).get_json()["card"]
    assert refreshed["labels"][0]["name"] == "Defect"

    removed = client.delete(f"/api/projects/{pid}/labels/{label['id']}", headers=headers(admin)).get_json()
    assert removed["removedFromCards"] == 1


def test_reorder_and_move_all(client, admin):
    pid = create_project(client, admin)["id"]
    a = create_card(client, admin, pid, title="A")
    b = create_card(client, admin, pid, title="B")
    res = client.put(
        "/api/cards/reorder",
        json={"cardOrders": [{"cardId": b["id"], "status": "todo", "order": 0}, {"cardId": a["id"], "status": "todo", "order": 1}]},
        headers=headers(admin),
    )
    assert res.get_json()["updatedCount"] == 2

    moved = client.post(
        f"/api/projects/{pid}/cards/move-all", json={"sourceStatus": "todo", "targetStatus": "done"}, headers=headers(admin)
    )
    assert moved.get_json()["movedCount"] == 2
    cards = client.get(f"/api/projects/{pid}/cards", headers=headers(admin)).get_json()["cards"]
    assert {c["status"] for c in cards} == {"done"}

    empty = client.post(
        f"/api/projects/{pid}/cards/move-all", json={"sourceStatus": "todo", "targetStatus": "done"}, headers=headers(admin)
    )
    assert empty.get_json()["message"] == "No cards found in source column"


def test_checklist_items(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    base = f"/api/card-items/cards/{card['id']}/items"
    first = client.post(base, json={"title": "Draft"}, headers=headers(admin)).get_json()["item"]
    second = client.post(base, json={"title": "Review"}, headers=headers(admin)).get_json()["item"]
    assert (first["position"], second["position"]) == (0, 1)

    done = client.put(f"{base}/{first['id']}", json={"completed": True}, headers=headers(admin)).get_json()["item"]
    assert done["completed"] is True
    counted = client.get(f"/api/cards/{card['id']}", headers=headers(admin)).get_json()["card"]
    assert (counted["itemsCount"], counted["completedItemsCount"]) == (2, 1)

    reordered = client.put(f"{base}/reorder", json={"items": [second["id"], first["id"]]}, headers=headers(admin)).get_json()
    assert [i["id"] for i in reordered["items"]] == [second["id"], first["id"]]
    assert client.delete(f"{base}/{first['id']}", headers=headers(admin)).status_code == 200
    assert client.delete(f"{base}/{first['id']}", headers=headers(admin)).status_code == 404


def test_archive_column_race_returns_existing_row(client, admin, conn, monkeypatch):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))

    real_lookup = columns.get_column_by_status
    calls = []

    def stale_then_real(conn_, project_id, status):
        calls.append(status)
        # the first lookup misses, as if another request had not committed yet
        if len(calls) == 1:
            return None
        return real_lookup(conn_, project_id, status)

    monkeypatch.setattr(columns, "get_column_by_status", stale_then_real)
    archive = columns.ensure_archive_column(conn, pid)
    assert archive["status"] == "archive"
    assert len(calls) == 2
    count = conn.execute(
        "SELECT COUNT(*) AS c FROM board_columns WHERE project_id = ? AND status = 'archive'", (pid,)
    ).fetchone()["c"]
    assert count == 1
