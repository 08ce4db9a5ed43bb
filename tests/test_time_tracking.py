from __future__ import annotations

import datetime as dt

from taskboard.util import iso, utcnow

from conftest import create_card, create_project, headers, user_id


def _backdate_timer(conn, uid: int, seconds: int) -> None:
    conn.execute(
        "UPDATE active_timers SET started_at = ? WHERE user_id = ?", (iso(utcnow() - dt.timedelta(seconds=seconds)), uid)
    )
    conn.commit()


def test_manual_entry_updates_card_total(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    res = client.post("/api/time-entries", json={"cardId": card["id"], "duration": 1800, "description": "Layout"}, headers=headers(admin))
    assert res.status_code == 201
    body = res.get_json()
    assert body["cardTotalTime"] == 1800
    assert body["entry"]["entryType"] == "manual"
    assert body["entry"]["isBillable"] is True

    zero = client.post("/api/time-entries", json={"cardId": card["id"], "duration": 0}, headers=headers(admin))
    assert zero.status_code == 400
    assert zero.get_json()["message"] == "Duration must be greater than 0"

    listing = client.get(f"/api/time-entries/cards/{card['id']}", headers=headers(admin)).get_json()
    assert listing["totalTimeSpent"] == 1800
    assert len(listing["entries"]) == 1


def test_timer_start_stop(client, admin, conn):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    uid = user_id(client, admin)

    started = client.post("/api/time-entries/timer/start", json={"cardId": card["id"]}, headers=headers(admin)).get_json()
    assert started["activeTimer"]["card"]["id"] == card["id"]
    _backdate_timer(conn, uid, 90)

    active = client.get("/api/time-entries/timer/active", headers=headers(admin)).get_json()["activeTimer"]
    assert active["elapsedSeconds"] >= 90

    stopped = client.post("/api/time-entries/timer/stop", headers=headers(admin)).get_json()
    assert stopped["entry"]["entryType"] == "timer"
    assert 90 <= stopped["entry"]["duration"] < 120
    assert stopped["cardTotalTime"] == stopped["entry"]["duration"]

    assert client.get("/api/time-entries/timer/active", headers=headers(admin)).get_json()["activeTimer"] is None
    again = client.post("/api/time-entries/timer/stop", headers=headers(admin))
    assert again.status_code == 404
    assert again.get_json()["message"] == "No active timer found"


def test_starting_second_timer_stops_the_first(client, admin, conn):
    pid = create_project(client, admin)["id"]
    first = create_card(client, admin, pid, title="First")
    second = create_card(client, admin, pid, title="Second")
    uid = user_id(client, admin)

    client.post("/api/time-entries/timer/start", json={"cardId": first["id"]}, headers=headers(admin))
    _backdate_timer(conn, uid, 60)
    client.post("/api/time-entries/timer/start", json={"cardId": second["id"]}, headers=headers(admin))

    active = client.get("/api/time-entries/timer/active", headers=headers(admin)).get_json()["activeTimer"]
    assert active["card"]["id"] == second["id"]
    assert conn.execute("SELECT COUNT(*) AS c FROM active_timers WHERE user_id = ?", (uid,)).fetchone()["c"] == 1
    total = client.get(f"/api/time-entries/cards/{first['id']}", headers=headers(admin)).get_json()["totalTimeSpent"]
    assert total >= 60


def test_discard_timer_records_nothing(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    client.post("/api/time-entries/timer/start", json={"cardId": card["id"]}, headers=headers(admin))
    assert client.delete("/api/time-entries/timer/discard", headers=headers(admin)).get_json()["message"] == "Timer discarded"
    listing = client.get(f"/api/time-entries/cards/{card['id']}", headers=headers(admin)).get_json()
    assert listing["entries"] == []
    assert client.delete("/api/time-entries/timer/discard", headers=headers(admin)).status_code == 404


def test_archived_cards_cannot_be_tracked(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))
    res = client.post("/api/time-entries/timer/start", json={"cardId": card["id"]}, headers=headers(admin))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Cannot track time on archived cards"


def test_only_owner_edits_entries(client, admin, member):
    pid = create_project(client, admin)["id"]
    client.post(f"/api/projects/{pid}/members", json={"email": "max@example.com"}, headers=headers(admin))
    card = create_card(client, admin, pid)
    entry = client.post("/api/time-entries", json={"cardId": card["id"], "duration": 600}, headers=headers(admin)).get_json()["entry"]

    denied = client.put(f"/api/time-entries/{entry['id']}", json={"duration": 60}, headers=headers(member))
    assert denied.status_code == 403
    assert denied.get_json()["message"] == "You can only edit your own time entries"
    assert client.delete(f"/api/time-entries/{entry['id']}", headers=headers(member)).status_code == 403

    edited = client.put(f"/api/time-entries/{entry['id']}", json={"duration": 900}, headers=headers(admin)).get_json()
    assert edited["cardTotalTime"] == 900
    deleted = client.delete(f"/api/time-entries/{entry['id']}", headers=headers(admin)).get_json()
    assert deleted["cardTotalTime"] == 0


def test_project_summary_and_entries(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid, estimatedTime=3600)
    client.post("/api/time-entries", json={"cardId": card["id"], "duration": 1800}, headers=headers(admin))

    summary = client.get(f"/api/time-entries/projects/{pid}/summary", headers=headers(admin)).get_json()["summary"]
    assert summary["totalTimeSpent"] == 1800
    assert summary["totalEstimatedTime"] == 3600
    assert summary["percentComplete"] == 50
    assert summary["byCard"][0]["card"]["id"] == card["id"]

    entries = client.get(f"/api/time-entries/projects/{pid}/entries?entryType=manual", headers=headers(admin)).get_json()
    assert entries["stats"] == {"totalDuration": 1800, "totalEntries": 1, "timerEntries": 0, "manualEntries": 1}
    assert [c["id"] for c in entries["filterOptions"]["cards"]] == [card["id"]]


def test_entries_end_date_is_inclusive(client, admin):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    for work_date, duration in (("2026-03-09T09:00:00Z", 600), ("2026-03-10T18:30:00Z", 900), ("2026-03-11T00:00:00Z", 1200)):
        res = client.post(
            "/api/time-entries", json={"cardId": card["id"], "duration": duration, "workDate": work_date}, headers=headers(admin)
        )
        assert res.status_code == 201, res.get_json()

    url = f"/api/time-entries/projects/{pid}/entries?startDate=2026-03-10&endDate=2026-03-10"
    body = client.get(url, headers=headers(admin)).get_json()
    assert [e["duration"] for e in body["entries"]] == [900]
    assert body["stats"]["totalDuration"] == 900

    through = client.get(f"/api/time-entries/projects/{pid}/entries?endDate=2026-03-10", headers=headers(admin)).get_json()
    assert sorted(e["duration"] for e in through["entries"]) == [600, 900]
