from __future__ import annotations

import re

from conftest import headers, register


def test_first_user_is_admin_and_later_users_are_members(client):
    first = client.post(
        "/api/auth/register", json={"name": "Ada Admin", "email": "Ada@Example.com", "password": "secret123"}
    ).get_json()
    second = client.post(
        "/api/auth/register", json={"name": "Max Member", "email": "max@example.com", "password": "secret123"}
    ).get_json()

    assert first["success"] is True
    assert first["user"]["role"] == "admin"
    assert first["user"]["email"] == "ada@example.com"
    assert first["user"]["avatar"] == "AA"
    assert second["user"]["role"] == "member"


def test_register_rejects_duplicate_email(client, admin):
    res = client.post("/api/auth/register", json={"name": "Ada Again", "email": "ada@example.com", "password": "secret123"})
    assert res.status_code == 400
    assert res.get_json()["message"] == "User already exists with this email"


def test_register_validation_errors(client):
    res = client.post("/api/auth/register", json={"name": "A", "email": "nope", "password": "123"})
    body = res.get_json()
    assert res.status_code == 400
    assert body["success"] is False
    assert body["message"] == "Validation failed"
    fields = {err["field"] for err in body["errors"]}
    assert {"name", "email", "password"} <= fields


def test_login_me_logout(client, admin):
    res = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "secret123"})
    assert res.status_code == 200
    token = res.get_json()["token"]
    assert res.get_json()["message"] == "Login successful"

    me = client.get("/api/auth/me", headers=headers(token)).get_json()
    assert me["user"]["name"] == "Ada Admin"
    assert me["user"]["lastLogin"]

    assert client.post("/api/auth/logout", headers=headers(token)).status_code == 200
    after = client.get("/api/auth/me", headers=headers(token))
    assert after.status_code == 401
    assert after.get_json()["message"] == "Invalid token."


def test_login_with_wrong_password(client, admin):
    res = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "wrong-one"})
    assert res.status_code == 401
    assert res.get_json()["message"] == "Invalid credentials"


def test_missing_token_is_rejected(client):
    res = client.get("/api/auth/me")
    assert res.status_code == 401
    assert res.get_json()["message"] == "Access denied. No token provided."


def test_login_rate_limit(client, admin, monkeypatch):
    from taskboard import config

    monkeypatch.setattr(config, "LOGIN_MAX_ATTEMPTS", 2)
    for _ in range(2):
        client.post("/api/auth/login", json={"email": "ada@example.com", "password": "wrong-one"})
    res = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "secret123"})
    assert res.status_code == 429


def test_forgot_and_reset_password(client, admin, conn):
    res = client.post("/api/auth/forgot-password", json={"email": "ada@example.com"})
    assert res.status_code == 200
    unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
    assert unknown.get_json()["message"] == res.get_json()["message"]

    row = conn.execute(
        "SELECT body, status FROM email_messages WHERE related_entity = 'password_reset' ORDER BY id DESC"
    ).fetchone()
    assert row["status"] == "skipped"
    token = re.search(r"/reset-password/([0-9a-f]{64})", row["body"]).group(1)

    done = client.post("/api/auth/reset-password", json={"token": token, "password": "brand-new"})
    assert done.status_code == 200
    again = client.post("/api/auth/reset-password", json={"token": token, "password": "another-one"})
    assert again.status_code == 400
    assert again.get_json()["message"] == "Invalid or expired reset token"

    # old sessions are revoked by the reset
    assert client.get("/api/auth/me", headers=headers(admin)).status_code == 401
    login = client.post("/api/auth/login", json={"email": "ada@example.com", "password": "brand-new"})
    assert login.status_code == 200


def test_change_password(client, admin):
    wrong = client.put(
        "/api/auth/change-password", json={"currentPassword": "nope-nope", "newPassword": "changed1"}, headers=headers(admin)
    )
    assert wrong.status_code == 400
    assert wrong.get_json()["message"] == "Current password is incorrect"

    res = client.put(
        "/api/auth/change-password", json={"currentPassword": "secret123", "newPassword": "changed1"}, headers=headers(admin)
    )
    assert res.status_code == 200
    assert client.get("/api/auth/me", headers=headers(admin)).status_code == 200
    assert client.post("/api/auth/login", json={"email": "ada@example.com", "password": "changed1"}).status_code == 200


def test_deactivated_user_cannot_use_token(client, admin):
    token = register(client, "Max Member", "max@example.com")
    me = client.get("/api/auth/me", headers=headers(token)).get_json()["user"]
    assert client.delete(f"/api/users/{me['id']}", headers=headers(admin)).status_code == 200
    assert client.get("/api/auth/me", headers=headers(token)).status_code == 401
    login = client.post("/api/auth/login", json={"email": "max@example.com", "password": "secret123"})
    assert login.status_code == 401


def test_rate_limit_forgets_idle_addresses():
    import datetime as dt

    from taskboard import auth
    from taskboard.util import utcnow

    auth.RATE_LIMIT.clear()
    auth.RATE_LIMIT["10.0.0.1"] = [utcnow() - dt.timedelta(hours=2)]
    auth.RATE_LIMIT["10.0.0.2"] = []
    assert auth.enforce_rate_limit("10.0.0.3", max_attempts=5, window_minutes=10)
    assert set(auth.RATE_LIMIT) == {"10.0.0.3"}
    auth.RATE_LIMIT.clear()
