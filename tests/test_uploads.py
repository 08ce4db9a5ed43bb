from __future__ import annotations

import io

from taskboard import cards, config, uploads

from conftest import create_card, create_project, headers


def _upload(client, token, card_id, *files):
    return client.post(
        f"/api/cards/{card_id}/upload-files",
        data={"files": [(io.BytesIO(body), name, mimetype) for body, name, mimetype in files]},
        content_type="multipart/form-data",
        headers=headers(token),
    )


def _card(client, admin):
    pid = create_project(client, admin)["id"]
    return create_card(client, admin, pid)


def test_html_named_upload_is_served_as_a_download(client, admin):
    card = _card(client, admin)
    res = _upload(client, admin, card["id"], (b"<script>alert(document.cookie)</script>", "x.html", "text/plain"))
    assert res.status_code == 200, res.get_json()
    url = res.get_json()["files"][0]["url"]

    served = client.get(url)
    assert served.status_code == 200
    assert served.headers["Content-Type"].startswith("text/plain")
    assert served.headers["Content-Disposition"].startswith("attachment")
    assert served.headers["Content-Security-Policy"] == "default-src 'none'; sandbox"
    assert served.headers["X-Content-Type-Options"] == "nosniff"


def test_raster_images_render_inline_and_svg_does_not(client, admin):
    card = _card(client, admin)
    res = _upload(
        client,
        admin,
        card["id"],
        (b"\x89PNG\r\n\x1a\n", "shot.png", "image/png"),
        (b"<svg xmlns='http://www.w3.org/2000/svg'><script>alert(1)</script></svg>", "logo.svg", "image/svg+xml"),
    )
    png, svg = res.get_json()["files"]

    image = client.get(png["url"])
    assert image.headers["Content-Type"] == "image/png"
    assert image.headers["Content-Disposition"] == "inline"

    vector = client.get(svg["url"])
    assert vector.headers["Content-Disposition"] == 'attachment; filename="logo.svg"'
    assert vector.headers["Content-Security-Policy"] == "default-src 'none'; sandbox"


def test_api_responses_carry_security_headers(client):
    res = client.get("/api/health")
    assert res.headers["Permissions-Policy"] == "camera=(), microphone=(), geolocation=()"
    assert res.headers["Content-Security-Policy"].startswith("default-src 'self'")


def test_files_without_an_attachment_row_are_not_served(client, admin):
    stray = config.UPLOAD_DIR / "cards"
    stray.mkdir(parents=True, exist_ok=True)
    (stray / "stray.html").write_bytes(b"<h1>hi</h1>")
    assert client.get("/uploads/cards/stray.html").status_code == 404
    assert client.get("/uploads/../taskboard.db").status_code == 404


def test_too_many_files(client, admin):
    card = _card(client, admin)
    files = [(b"x", f"note{i}.txt", "text/plain") for i in range(6)]
    res = _upload(client, admin, card["id"], *files)
    assert res.status_code == 400
    assert res.get_json()["message"] == "Too many files. Maximum 5 files per upload."


def test_oversized_file(client, admin, monkeypatch):
    monkeypatch.setitem(uploads.LIMITS, "card", (5, 10))
    card = _card(client, admin)
    res = _upload(client, admin, card["id"], (b"x" * 11, "big.txt", "text/plain"))
    assert res.status_code == 400
    assert res.get_json()["message"].startswith("File big.txt is too large.")
    assert not (config.UPLOAD_DIR / "cards").exists()


def test_request_body_cap(client, admin, monkeypatch):
    pid = create_project(client, admin)["id"]
    monkeypatch.setattr(config, "MAX_FILE_SIZE", 64)
    res = client.post("/api/cards", json={"title": "x" * 200, "project": pid}, headers=headers(admin))
    assert res.status_code == 413
    assert res.get_json()["message"] == "Request body too large"

    upload = client.post(
        f"/api/projects/{pid}/upload",
        data={"files": (io.BytesIO(b"y" * 200), "notes.txt", "text/plain")},
        content_type="multipart/form-data",
        headers=headers(admin),
    )
    assert upload.status_code == 413


def test_failed_delete_keeps_stored_files(client, admin, conn, monkeypatch):
    card = _card(client, admin)
    url = _upload(client, admin, card["id"], (b"keep me", "keep.txt", "text/plain")).get_json()["files"][0]["url"]
    stored = config.UPLOAD_DIR / url[len("/uploads/"):]
    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))

    def fail(*args, **kwargs):
        raise RuntimeError("activity store unavailable")

    original = cards.log_activity
    monkeypatch.setattr(cards, "log_activity", fail)
    res = client.delete(f"/api/cards/{card['id']}", headers=headers(admin))
    assert res.status_code == 500
    assert stored.exists()
    assert conn.execute("SELECT COUNT(*) AS c FROM attachments WHERE url = ?", (url,)).fetchone()["c"] == 1
    assert client.get(url).data == b"keep me"

    monkeypatch.setattr(cards, "log_activity", original)
    assert client.delete(f"/api/cards/{card['id']}", headers=headers(admin)).status_code == 200
    assert not stored.exists()
