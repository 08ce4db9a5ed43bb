from __future__ import annotations


def test_probes(client):
    assert client.get("/healthz").data == b"ok"
    ready = client.get("/readyz")
    assert ready.status_code == 200
    assert ready.data == b"ready"


def test_api_health(client):
    body = client.get("/api/health").get_json()
    assert body["success"] is True
    assert body["message"] == "Server is running"
    assert body["timestamp"]


def test_unknown_route_and_wrong_method(client, admin):
    missing = client.get("/api/nothing-here")
    assert missing.status_code == 404
    assert missing.get_json()["message"] == "Route not found"

    wrong = client.patch("/api/health")
    assert wrong.status_code == 405
    assert wrong.get_json()["message"] == "Method not allowed"


def test_member_hits_admin_route(client, member):
    res = client.get("/api/users", headers={"Authorization": f"Bearer {member}"})
    assert res.status_code == 403
    assert res.get_json()["message"] == "Access denied. Admin privileges required."


def test_invalid_json_body(client, admin):
    res = client.post(
        "/api/projects",
        data="{not json",
        content_type="application/json",
        headers={"Authorization": f"Bearer {admin}"},
    )
    assert res.status_code == 400
    assert res.get_json()["message"] == "Invalid JSON body"
