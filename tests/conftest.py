from __future__ import annotations

import pytest

from taskboard import auth, columns, config, db
from taskboard.flask_app import flask_app


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DB_BACKEND", "sqlite")
    monkeypatch.setattr(config, "DB_PATH", tmp_path / "taskboard.db")
    monkeypatch.setattr(config, "UPLOAD_DIR", tmp_path / "uploads")
    monkeypatch.setattr(config, "SMTP_HOST", "")
    db.reset_bootstrap()
    columns.invalidate_column_cache()
    auth.RATE_LIMIT.clear()
    flask_app.config["TESTING"] = True
    with flask_app.test_client() as test_client:
        yield test_client
    db.reset_bootstrap()
    columns.invalidate_column_cache()


@pytest.fixture
def conn(client):
    connection = db.db_connect()
    yield connection
    connection.close()


def register(client, name: str, email: str, password: str = "secret123") -> str:
    res = client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
    assert res.status_code == 201, res.get_json()
    return res.get_json()["token"]


def headers(token: str):
    return {"Authorization": f"Bearer {token}"}


def create_project(client, token: str, **fields) -> dict:
    body = {"name": "Website Relaunch"}
    body.update(fields)
    res = client.post("/api/projects", json=body, headers=headers(token))
    assert res.status_code == 201, res.get_json()
    return res.get_json()["project"]


def create_card(client, token: str, project_id: int, title: str = "Write copy", **fields) -> dict:
    body = {"title": title, "project": project_id}
    body.update(fields)
    res = client.post("/api/cards", json=body, headers=headers(token))
    assert res.status_code == 201, res.get_json()
    return res.get_json()["card"]


def user_id(client, token: str) -> int:
    return client.get("/api/auth/me", headers=headers(token)).get_json()["user"]["id"]


@pytest.fixture
def admin(client):
    return register(client, "Ada Admin", "ada@example.com")


@pytest.fixture
def member(client, admin):
    return register(client, "Max Member", "max@example.com")
