from __future__ import annotations

import io

from conftest import create_card, create_project, headers, register, user_id


def test_create_project_defaults(client, admin):
    project = create_project(client, admin, clientName="Acme", projectType="On Going")
    assert project["name"] == "Website Relaunch"
    assert project["clientName"] == "Acme"
    assert project["projectType"] == "On Going"
    assert project["status"] == "active"
    assert project["bgColor"].startswith("#")
    assert project["settings"]["allowMemberCreateCards"] is True
    assert [m["role"] for m in project["members"]] == ["admin"]

    detail = client.get(f"/api/projects/{project['id']}", headers=headers(admin)).get_json()["project"]
    assert [c["status"] for c in detail["columns"]] == ["todo", "doing", "review", "done"]
    assert detail["hasCredentialAccess"] is True
    assert detail["cards"] == []


def test_only_admins_create_projects(client, admin, member):
    res = client.post("/api/projects", json={"name": "Side Quest"}, headers=headers(member))
    assert res.status_code == 403


def test_project_validation(client, admin):
    res = client.post("/api/projects", json={"name": "", "projectType": "Weekly"}, headers=headers(admin))
    assert res.status_code == 400
    fields = {err["field"] for err in res.get_json()["errors"]}
    assert {"name", "projectType"} <= fields

    bad_category = client.post("/api/projects", json={"name": "X", "category": 999}, headers=headers(admin))
    assert bad_category.status_code == 400
    assert bad_category.get_json()["message"] == "Category not found"


def test_members_only_see_their_projects(client, admin, member):
    mine = create_project(client, admin, name="Shared")
    create_project(client, admin, name="Private")
    client.post(f"/api/projects/{mine['id']}/members", json={"email": "max@example.com"}, headers=headers(admin))

    names = [p["name"] for p in client.get("/api/projects", headers=headers(member)).get_json()["projects"]]
    assert names == ["Shared"]
    all_names = {p["name"] for p in client.get("/api/projects", headers=headers(admin)).get_json()["projects"]}
    assert all_names == {"Shared", "Private"}


def test_non_member_cannot_open_project(client, admin, member):
    project = create_project(client, admin)
    res = client.get(f"/api/projects/{project['id']}", headers=headers(member))
    assert res.status_code == 403
    assert res.get_json()["message"] == "Access denied. You are not a member of this project."
    assert client.get("/api/projects/9999", headers=headers(admin)).status_code == 404


def test_update_project_tracks_changes(client, admin, member, conn):
    project = create_project(client, admin)
    client.post(f"/api/projects/{project['id']}/members", json={"email": "max@example.com"}, headers=headers(admin))

    same = client.put(f"/api/projects/{project['id']}", json={"name": "Website Relaunch"}, headers=headers(admin))
    assert same.status_code == 200
    assert same.get_json()["message"] == "No changes to update"

    res = client.put(
        f"/api/projects/{project['id']}",
        json={"name": "Relaunch v2", "projectStatus": "on-hold", "liveSiteUrl": "https://acme.test"},
        headers=headers(admin),
    )
    assert res.status_code == 200
    updated = res.get_json()["project"]
    assert updated["name"] == "Relaunch v2"
    assert updated["status"] == "on-hold"
    assert updated["liveSiteUrl"] == "https://acme.test"

    activity = conn.execute(
        "SELECT message FROM activities WHERE project_id = ? AND type = 'project_updated'", (project["id"],)
    ).fetchone()
    assert activity["message"] == 'Updated project: name to "Relaunch v2", project status to "on-hold", live site URL'

    notes = client.get("/api/notifications", headers=headers(member)).get_json()["notifications"]
    assert any(n["type"] == "project_activity" for n in notes)


def test_plain_member_cannot_update(client, admin, member):
    project = create_project(client, admin)
    client.post(f"/api/projects/{project['id']}/members", json={"email": "max@example.com"}, headers=headers(admin))
    res = client.put(f"/api/projects/{project['id']}", json={"name": "Hijacked"}, headers=headers(member))
    assert res.status_code == 403


def test_add_and_remove_member(client, admin, member):
    project = create_project(client, admin)
    pid = project["id"]
    max_id = user_id(client, member)

    added = client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    assert added.get_json()["message"] == "User added to project successfully"
    again = client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    assert again.status_code == 400
    assert again.get_json()["message"] == "User is already a member of this project"

    card = create_card(client, admin, pid, assignees=[max_id])
    assert [a["id"] for a in card["assignees"]] == [max_id]

    owner = client.delete(f"/api/projects/{pid}/members/{user_id(client, admin)}", headers=headers(admin))
    assert owner.status_code == 400
    assert owner.get_json()["message"] == "Cannot remove project owner"

    removed = client.delete(f"/api/projects/{pid}/members/{max_id}", headers=headers(admin))
    assert removed.get_json()["message"] == "Member removed successfully"
    card_after = client.get(f"/api/cards/{card['id']}", headers=headers(admin)).get_json()["card"]
    assert card_after["assignees"] == []

    missing = client.delete(f"/api/projects/{pid}/members/{max_id}", headers=headers(admin))
    assert missing.status_code == 404
    assert missing.get_json()["message"] == "User is not a member of this project"


def test_unknown_email_gets_invitation(client, admin):
    project = create_project(client, admin)
    res = client.post(
        f"/api/projects/{project['id']}/members", json={"email": "new@example.com", "role": "admin"}, headers=headers(admin)
    )
    body = res.get_json()
    assert body["message"] == "Invitation sent successfully"
    assert body["invitation"]["status"] == "pending"
    assert body["invitation"]["role"] == "admin"
    assert body["invitation"]["project"]["id"] == project["id"]


def test_archive_restore_and_permanent_delete(client, admin):
    project = create_project(client, admin)
    pid = project["id"]
    create_card(client, admin, pid)

    archived = client.delete(f"/api/projects/{pid}", headers=headers(admin))
    assert archived.status_code == 200
    assert client.delete(f"/api/projects/{pid}", headers=headers(admin)).get_json()["message"] == "Project is already archived"
    assert client.get("/api/projects", headers=headers(admin)).get_json()["projects"] == []
    listed = client.get("/api/projects/archived", headers=headers(admin)).get_json()["projects"]
    assert [p["id"] for p in listed] == [pid]
    assert listed[0]["archivedBy"] == user_id(client, admin)

    restored = client.put(f"/api/projects/{pid}/restore", headers=headers(admin))
    assert restored.get_json()["project"]["status"] == "active"
    assert client.put(f"/api/projects/{pid}/restore", headers=headers(admin)).status_code == 400

    gone = client.delete(f"/api/projects/{pid}/permanent", headers=headers(admin)).get_json()
    assert gone["message"] == 'Project "Website Relaunch" permanently deleted'
    assert gone["deleted"] == {"cards": 1, "stories": 0}
    assert client.get(f"/api/projects/{pid}", headers=headers(admin)).status_code == 404


def test_credentials_and_access(client, admin, member):
    project = create_project(client, admin)
    pid = project["id"]
    max_id = user_id(client, member)
    client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))

    created = client.post(
        f"/api/projects/{pid}/credentials", json={"label": "FTP", "value": "user:pass"}, headers=headers(admin)
    )
    assert created.status_code == 201
    cred_id = created.get_json()["credentials"][0]["id"]

    hidden = client.get(f"/api/projects/{pid}", headers=headers(member)).get_json()["project"]
    assert hidden["hasCredentialAccess"] is False
    assert hidden["credentials"] == []
    assert "credentialAccess" not in hidden

    granted = client.post(f"/api/projects/{pid}/credential-access/{max_id}", headers=headers(admin))
    assert granted.get_json()["message"] == "Credential access granted to Max Member"
    dup = client.post(f"/api/projects/{pid}/credential-access/{max_id}", headers=headers(admin))
    assert dup.get_json()["message"] == "User already has credential access"

    visible = client.get(f"/api/projects/{pid}", headers=headers(member)).get_json()["project"]
    assert [c["label"] for c in visible["credentials"]] == ["FTP"]

    updated = client.put(f"/api/projects/{pid}/credentials/{cred_id}", json={"value": "user:new"}, headers=headers(admin))
    assert updated.get_json()["credentials"][0]["value"] == "user:new"

    revoked = client.delete(f"/api/projects/{pid}/credential-access/{max_id}", headers=headers(admin))
    assert revoked.get_json()["message"] == "Credential access revoked from Max Member"
    assert client.delete(f"/api/projects/{pid}/credential-access/{max_id}", headers=headers(admin)).status_code == 404

    assert client.delete(f"/api/projects/{pid}/credentials/{cred_id}", headers=headers(admin)).status_code == 200
    assert client.delete(f"/api/projects/{pid}/credentials/{cred_id}", headers=headers(admin)).status_code == 404


def test_credential_access_requires_membership(client, admin, member):
    project = create_project(client, admin)
    res = client.post(f"/api/projects/{project['id']}/credential-access/{user_id(client, member)}", headers=headers(admin))
    assert res.status_code == 400
    assert res.get_json()["message"] == "User is not a member of this project"


def test_descriptions(client, admin):
    pid = create_project(client, admin)["id"]
    res = client.post(f"/api/projects/{pid}/descriptions", json={"content": "Kickoff notes"}, headers=headers(admin))
    assert res.status_code == 201
    desc_id = res.get_json()["descriptions"][0]["id"]

    edited = client.put(
        f"/api/projects/{pid}/descriptions/{desc_id}", json={"content": "Kickoff notes v2"}, headers=headers(admin)
    )
    assert edited.get_json()["descriptions"][0]["content"] == "Kickoff notes v2"
    empty = client.post(f"/api/projects/{pid}/descriptions", json={"content": ""}, headers=headers(admin))
    assert empty.status_code == 400
    assert client.delete(f"/api/projects/{pid}/descriptions/{desc_id}", headers=headers(admin)).status_code == 200
    assert client.delete(f"/api/projects/{pid}/descriptions/{desc_id}", headers=headers(admin)).status_code == 404


def test_project_file_upload_and_download(client, admin):
    pid = create_project(client, admin)["id"]
    res = client.post(
        f"/api/projects/{pid}/upload",
        data={"files": (io.BytesIO(b"brief contents"), "brief.txt", "text/plain")},
        content_type="multipart/form-data",
        headers=headers(admin),
    )
    assert res.status_code == 200, res.get_json()
    body = res.get_json()
    assert body["message"] == "1 file(s) uploaded successfully"
    attachment = body["project"]["attachments"][0]
    assert attachment["originalName"] == "brief.txt"

    download = client.get(attachment["url"])
    assert download.status_code == 200
    assert download.data == b"brief contents"

    removed = client.delete(f"/api/projects/{pid}/attachments/{attachment['id']}", headers=headers(admin))
    assert removed.get_json()["project"]["attachments"] == []
    assert client.get(attachment["url"]).status_code == 404


def test_rejects_disallowed_file_type(client, admin):
    pid = create_project(client, admin)["id"]
    res = client.post(
        f"/api/projects/{pid}/upload",
        data={"files": (io.BytesIO(b"MZ"), "tool.exe", "application/x-msdownload")},
        content_type="multipart/form-data",
        headers=headers(admin),
    )
    assert res.status_code == 400
    assert "is not allowed" in res.get_json()["message"]


def test_new_member_registration_flow(client, admin):
    pid = create_project(client, admin)["id"]
    token = register(client, "Zoe Designer", "zoe@example.com")
    client.post(f"/api/projects/{pid}/members", json={"email": "zoe@example.com"}, headers=headers(admin))
    notes = client.get("/api/notifications", headers=headers(token)).get_json()["notifications"]
    assert notes[0]["type"] == "project_joined"
