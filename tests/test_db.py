from __future__ import annotations

from taskboard import cards, columns, db
from taskboard.util import iso

from conftest import create_card, create_project, headers


def test_adapt_sql_for_postgres():
    assert db._adapt_sql_for_postgres("SELECT * FROM users WHERE email = ?") == "SELECT * FROM users WHERE email = %s"
    assert db._adapt_sql_for_postgres("SELECT '?' , name FROM t WHERE name LIKE ?") == "SELECT '?' , name FROM t WHERE name LIKE %s"
    assert db._adapt_sql_for_postgres("SELECT '50%' FROM t") == "SELECT '50%%' FROM t"
    adapted = db._adapt_sql_for_postgres("INSERT OR IGNORE INTO labels (name) VALUES (?)")
    assert adapted == "INSERT INTO labels (name) VALUES (%s) ON CONFLICT DO NOTHING"
    assert "BIGSERIAL PRIMARY KEY" in db._adapt_sql_for_postgres("CREATE TABLE t (id INTEGER PRIMARY KEY AUTOINCREMENT)")


def test_split_sql_script_respects_quotes():
    parts = db._split_sql_script("CREATE TABLE a (x TEXT DEFAULT ';'); CREATE TABLE b (y INTEGER);")
    assert parts == ["CREATE TABLE a (x TEXT DEFAULT ';')", "CREATE TABLE b (y INTEGER)"]


def test_init_db_is_idempotent(client, conn):
    client.get("/api/health")
    db.init_db()
    db.init_db()
    names = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()}
    assert {"users", "projects", "board_columns", "cards", "time_entries", "email_messages"} <= names


def test_dedupe_columns_keeps_oldest(client, admin, conn):
    pid = create_project(client, admin)["id"]
    conn.execute("DROP INDEX IF EXISTS idx_board_columns_project_status")
    now = iso()
    conn.execute(
        """
        INSERT INTO board_columns (project_id, name, status, color, position, is_default, created_at, updated_at)
        VALUES (?, 'To Do (copy)', 'todo', 'blue', 9, 1, ?, ?)
        """,
        (pid, now, now),
    )
    conn.commit()

    assert db.dedupe_columns(conn) == 1
    conn.commit()
    names = [r["name"] for r in conn.execute("SELECT name FROM board_columns WHERE project_id = ? AND status = 'todo'", (pid,))]
    assert names == ["To Do"]
    assert db.dedupe_columns(conn) == 0

    cols = client.get(f"/api/columns/projects/{pid}/columns", headers=headers(admin)).get_json()["columns"]
    assert len(cols) == 4


def test_init_db_reports_repairs(client, admin, conn):
    pid = create_project(client, admin)["id"]
    conn.execute("DROP INDEX IF EXISTS idx_board_columns_project_status")
    now = iso()
    conn.execute(
        """
        INSERT INTO board_columns (project_id, name, status, color, position, is_default, created_at, updated_at)
        VALUES (?, 'Doing again', 'doing', 'yellow', 8, 1, ?, ?)
        """,
        (pid, now, now),
    )
    conn.commit()
    assert db.init_db() == {"duplicate_columns_removed": 1}
    assert db.init_db() == {"duplicate_columns_removed": 0}


def test_board_problems(client, admin, conn):
    pid = create_project(client, admin)["id"]
    card = create_card(client, admin, pid)
    client.put(f"/api/cards/{card['id']}/archive", headers=headers(admin))
    assert set(columns.board_problems(conn).values()) == {0}

    conn.execute("DELETE FROM board_columns WHERE project_id = ? AND status IN ('archive', 'review')", (pid,))
    conn.commit()
    columns.invalidate_column_cache(pid)
    create_card(client, admin, pid, title="Orphan")
    conn.execute("UPDATE cards SET status = 'review' WHERE title = 'Orphan'")
    conn.commit()
    assert columns.board_problems(conn) == {
        "projects_missing_default_columns": 1,
        "projects_missing_archive_column": 1,
        "cards_without_column": 1,
    }


def test_renumber_cards(client, admin, conn):
    pid = create_project(client, admin)["id"]
    first = create_card(client, admin, pid, title="First")
    second = create_card(client, admin, pid, title="Second")
    conn.execute("UPDATE cards SET card_number = 0 WHERE id = ?", (first["id"],))
    conn.commit()

    assert cards.renumber_cards(conn) == 1
    conn.commit()
    numbers = {
        r["id"]: r["card_number"] for r in conn.execute("SELECT id, card_number FROM cards WHERE project_id = ?", (pid,))
    }
    assert numbers == {first["id"]: 3, second["id"]: 2}
    assert cards.renumber_cards(conn) == 0
