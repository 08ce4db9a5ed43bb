from __future__ import annotations

from conftest import create_project, headers, register, user_id


def _invite(client, token, pid, email="new@example.com"):
    res = client.post(f"/api/projects/{pid}/members", json={"email": email}, headers=headers(token))
    return res.get_json()["invitation"]


def test_lookup_invitation_hides_token(client, admin):
    pid = create_project(client, admin)["id"]
    invitation = _invite(client, admin, pid)
    res = client.get(f"/api/invitations/{invitation['token']}")
    data = res.get_json()["invitation"]
    assert "token" not in data
    assert data["userExists"] is False
    assert data["invitedBy"]["name"] == "Ada Admin"
    assert client.get("/api/invitations/not-a-token").status_code == 404


def test_accept_by_registering(client, admin):
    pid = create_project(client, admin)["id"]
    invitation = _invite(client, admin, pid)

    res = client.post(
        f"/api/invitations/{invitation['token']}/accept",
        json={"userData": {"name": "Nina New", "password": "secret123"}},
    )
    body = res.get_json()
    assert res.status_code == 200, body
    assert body["message"] == "Successfully joined the project"
    assert body["user"]["email"] == "new@example.com"
    assert body["user"]["role"] == "member"

    projects = client.get("/api/projects", headers=headers(body["token"])).get_json()["projects"]
    assert [p["id"] for p in projects] == [pid]
    inviter_notes = client.get("/api/notifications", headers=headers(admin)).get_json()["notifications"]
    assert inviter_notes[0]["title"] == "Invitation Accepted"

    reused = client.post(f"/api/invitations/{invitation['token']}/accept", json={"userData": {"name": "Nina", "password": "x" * 8}})
    assert reused.status_code == 400
    assert reused.get_json()["message"] == "Invalid or expired invitation"


def test_accept_requires_login_or_user_data(client, admin):
    pid = create_project(client, admin)["id"]
    invitation = _invite(client, admin, pid)
    res = client.post(f"/api/invitations/{invitation['token']}/accept")
    assert res.status_code == 401


def test_accept_while_logged_in(client, admin):
    pid = create_project(client, admin)["id"]
    invitation = _invite(client, admin, pid, "late@example.com")
    token = register(client, "Lee Late", "late@example.com")

    other = register(client, "Oscar Other", "other@example.com")
    wrong = client.post(f"/api/invitations/{invitation['token']}/accept", headers=headers(other))
    assert wrong.status_code == 403

    existing = client.post(
        f"/api/invitations/{invitation['token']}/accept", json={"userData": {"name": "Lee", "password": "secret123"}}
    )
    assert existing.get_json()["message"] == "Please log in to accept this invitation"

    mine = client.get("/api/invitations", headers=headers(token)).get_json()["invitations"]
    assert [i["id"] for i in mine] == [invitation["id"]]

    res = client.post(f"/api/invitations/{invitation['token']}/accept", headers=headers(token))
    assert res.get_json()["message"] == "Successfully joined the project"
    assert "token" not in res.get_json()
    detail = client.get(f"/api/projects/{pid}", headers=headers(token)).get_json()["project"]
    assert user_id(client, token) in [m["user"]["id"] for m in detail["members"]]


def test_decline_and_reinvite(client, admin):
    pid = create_project(client, admin)["id"]
    invitation = _invite(client, admin, pid, "maybe@example.com")
    token = register(client, "May Be", "maybe@example.com")

    res = client.delete(f"/api/invitations/{invitation['token']}", headers=headers(token))
    assert res.get_json()["message"] == "Invitation declined successfully"
    assert client.get(f"/api/invitations/{invitation['token']}").status_code == 400


def test_expired_invitation(client, admin, conn):
    pid = create_project(client, admin)["id"]
    invitation = _invite(client, admin, pid)
    conn.execute("UPDATE invitations SET expires_at = '2000-01-01T00:00:00.000+00:00' WHERE id = ?", (invitation["id"],))
    conn.commit()
    res = client.get(f"/api/invitations/{invitation['token']}")
    assert res.status_code == 400
    status = conn.execute("SELECT status FROM invitations WHERE id = ?", (invitation["id"],)).fetchone()["status"]
    assert status == "expired"


def test_invitations_by_email_is_restricted(client, admin, member):
    res = client.get("/api/invitations/by-email/ada@example.com", headers=headers(member))
    assert res.status_code == 403
    assert client.get("/api/invitations/by-email/max@example.com", headers=headers(member)).status_code == 200
