from __future__ import annotations

from conftest import create_project, headers, user_id


def test_category_crud_and_counts(client, admin, member):
    res = client.post("/api/categories", json={"name": "Web", "color": "#10b981"}, headers=headers(admin))
    assert res.status_code == 201
    category = res.get_json()["category"]
    assert category["position"] == 0
    assert category["icon"] == "Folder"

    dup = client.post("/api/categories", json={"name": "web"}, headers=headers(admin))
    assert dup.get_json()["message"] == "Category with this name already exists"
    assert client.post("/api/categories", json={"name": "Print"}, headers=headers(member)).status_code == 403

    project = create_project(client, admin, category=category["id"])
    assert project["category"]["name"] == "Web"
    counted = client.get("/api/categories/with-counts", headers=headers(admin)).get_json()["categories"]
    assert counted[0]["projectCount"] == 1
    # members only count projects they can see
    assert client.get("/api/categories/with-counts", headers=headers(member)).get_json()["categories"][0]["projectCount"] == 0

    listed = client.get(f"/api/categories/{category['id']}/projects", headers=headers(admin)).get_json()
    assert [p["id"] for p in listed["projects"]] == [project["id"]]

    deleted = client.delete(f"/api/categories/{category['id']}", headers=headers(admin)).get_json()
    assert deleted["projectsUpdated"] == 1
    detail = client.get(f"/api/projects/{project['id']}", headers=headers(admin)).get_json()["project"]
    assert detail["category"] is None


def test_inactive_categories_are_hidden(client, admin):
    category = client.post("/api/categories", json={"name": "Old"}, headers=headers(admin)).get_json()["category"]
    client.put(f"/api/categories/{category['id']}", json={"isActive": False}, headers=headers(admin))
    assert client.get("/api/categories", headers=headers(admin)).get_json()["categories"] == []


def test_profile_update(client, admin, member):
    res = client.put("/api/users/profile", json={"name": "Maxine Member"}, headers=headers(member))
    user = res.get_json()["user"]
    assert user["name"] == "Maxine Member"
    assert user["avatar"] == "MM"

    taken = client.put("/api/users/profile", json={"email": "ada@example.com"}, headers=headers(member))
    assert taken.status_code == 400
    assert taken.get_json()["message"] == "Email already taken by another user"

    # role changes are ignored on the self-service route
    client.put("/api/users/profile", json={"role": "admin"}, headers=headers(member))
    assert client.get("/api/auth/me", headers=headers(member)).get_json()["user"]["role"] == "member"


def test_admin_user_management(client, admin):
    created = client.post(
        "/api/users", json={"name": "Cara Contractor", "email": "cara@example.com", "password": "secret123"}, headers=headers(admin)
    )
    assert created.status_code == 201
    cara = created.get_json()["user"]
    assert cara["role"] == "member"

    found = client.get("/api/users?search=cara", headers=headers(admin)).get_json()["users"]
    assert [u["id"] for u in found] == [cara["id"]]

    promoted = client.put(f"/api/users/{cara['id']}", json={"role": "admin"}, headers=headers(admin)).get_json()["user"]
    assert promoted["role"] == "admin"

    reset = client.post(f"/api/users/{cara['id']}/reset-password", json={"newPassword": "another1"}, headers=headers(admin))
    assert reset.status_code == 200
    login = client.post("/api/auth/login", json={"email": "cara@example.com", "password": "another1"})
    assert login.status_code == 200

    me = user_id(client, admin)
    assert client.delete(f"/api/users/{me}", headers=headers(admin)).get_json()["message"] == "You cannot delete your own account"


def test_pinned_projects(client, admin):
    first = create_project(client, admin, name="First")["id"]
    second = create_project(client, admin, name="Second")["id"]

    res = client.put("/api/users/me/pinned", json={"pinned": [second, first, second]}, headers=headers(admin))
    assert [p["id"] for p in res.get_json()["pinned"]] == [second, first]

    bad = client.put("/api/users/me/pinned", json={"pinned": ["abc"]}, headers=headers(admin))
    assert bad.status_code == 400
    assert bad.get_json()["message"] == "Invalid project id: abc"
    missing = client.put("/api/users/me/pinned", json={"pinned": [999]}, headers=headers(admin))
    assert missing.status_code == 404
    assert missing.get_json()["message"] == "Project not found: 999"


def test_recently_viewed(client, admin, member):
    pid = create_project(client, admin)["id"]
    res = client.post("/api/users/me/recently-viewed", json={"projectId": pid}, headers=headers(admin))
    assert [r["project"]["id"] for r in res.get_json()["recentlyViewed"]] == [pid]
    # viewing again does not duplicate the entry
    client.post("/api/users/me/recently-viewed", json={"projectId": pid}, headers=headers(admin))
    profile = client.get("/api/users/profile", headers=headers(admin)).get_json()["user"]
    assert len(profile["recentlyViewedProjects"]) == 1

    denied = client.post("/api/users/me/recently-viewed", json={"projectId": pid}, headers=headers(member))
    assert denied.status_code == 403


def test_activity_feeds(client, admin, member):
    pid = create_project(client, admin)["id"]
    client.post("/api/cards", json={"title": "First task", "project": pid}, headers=headers(admin))

    feed = client.get(f"/api/activities/project/{pid}", headers=headers(admin)).get_json()
    assert [a["type"] for a in feed["activities"]] == ["card_created", "project_created"]
    assert feed["activities"][1]["message"] == 'Created project "Website Relaunch"'

    recent = client.get("/api/activities/recent?limit=1", headers=headers(admin)).get_json()["activities"]
    assert len(recent) == 1
    assert client.get("/api/activities/recent", headers=headers(member)).get_json()["activities"] == []

    me = user_id(client, admin)
    assert client.get(f"/api/activities/user/{me}", headers=headers(member)).status_code == 403
    assert len(client.get(f"/api/activities/user/{me}", headers=headers(admin)).get_json()["activities"]) == 2


def test_null_category_clears_it(client, admin):
    category = client.post("/api/categories", json={"name": "Web"}, headers=headers(admin)).get_json()["category"]
    project = create_project(client, admin, category=category["id"])

    res = client.put(f"/api/projects/{project['id']}", json={"category": None}, headers=headers(admin))
    assert res.get_json()["project"]["category"] is None
    again = client.put(f"/api/projects/{project['id']}", json={"category": None}, headers=headers(admin))
    assert again.get_json()["message"] == "No changes to update"


def test_refresh_user_styles(client, admin, conn):
    from taskboard.users import refresh_user_styles
    from taskboard.util import user_color

    conn.execute("UPDATE users SET avatar = 'U', color = NULL WHERE email = 'ada@example.com'")
    assert refresh_user_styles(conn) == {"avatars": 1, "colors": 1}
    conn.commit()
    row = conn.execute("SELECT avatar, color FROM users WHERE email = 'ada@example.com'").fetchone()
    assert row["avatar"] == "AA"
    assert row["color"] == user_color("Ada Admin")
    assert refresh_user_styles(conn) == {"avatars": 0, "colors": 0}
