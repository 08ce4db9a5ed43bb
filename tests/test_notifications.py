from __future__ import annotations

from conftest import create_project, headers, user_id


def test_notification_lifecycle(client, admin, member):
    max_id = user_id(client, member)
    created = client.post(
        "/api/notifications",
        json={"user": max_id, "type": "system", "title": "Heads up", "message": "Maintenance tonight"},
        headers=headers(admin),
    )
    assert created.status_code == 201
    note = created.get_json()["notification"]
    assert note["sender"]["name"] == "Ada Admin"
    assert note["isRead"] is False

    assert client.get("/api/notifications/unread-count", headers=headers(member)).get_json()["unreadCount"] == 1
    read = client.put(f"/api/notifications/{note['id']}/read", headers=headers(member)).get_json()["notification"]
    assert read["isRead"] is True
    assert read["readAt"]
    assert client.get("/api/notifications/unread-count", headers=headers(member)).get_json()["unreadCount"] == 0

    # other users cannot touch it
    assert client.delete(f"/api/notifications/{note['id']}", headers=headers(admin)).status_code == 404
    assert client.delete(f"/api/notifications/{note['id']}", headers=headers(member)).status_code == 200


def test_unknown_type_is_rejected(client, admin):
    res = client.post(
        "/api/notifications",
        json={"user": user_id(client, admin), "type": "party", "title": "x", "message": "y"},
        headers=headers(admin),
    )
    assert res.status_code == 400


def test_mark_all_read_and_unread_filter(client, admin, member):
    for name in ("One", "Two"):
        pid = create_project(client, admin, name=name)["id"]
        client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))

    listing = client.get("/api/notifications?unreadOnly=true", headers=headers(member)).get_json()
    assert listing["pagination"]["total"] == 2
    marked = client.put("/api/notifications/mark-all-read", headers=headers(member)).get_json()
    assert marked["updatedCount"] == 2
    assert client.get("/api/notifications?unreadOnly=true", headers=headers(member)).get_json()["notifications"] == []


def test_actor_is_never_notified(client, admin):
    pid = create_project(client, admin)["id"]
    client.put(f"/api/projects/{pid}", json={"clientName": "Acme"}, headers=headers(admin))
    assert client.get("/api/notifications", headers=headers(admin)).get_json()["notifications"] == []
