"""Database access: SQLite by default, PostgreSQL through a small compat layer.

All queries in the package are written for sqlite3 (``?`` placeholders,
``sqlite3.Row`` style access). When a PostgreSQL URL is configured the
connection is wrapped so the same calls keep working.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Tuple

from . import config

try:
    import psycopg
    from psycopg.rows import dict_row
except Exception:  # pragma: no cover - optional dependency path
    psycopg = None
    dict_row = None

logger = logging.getLogger(__name__)

BOOTSTRAPPED = False
BOOTSTRAP_LOCK = threading.Lock()
BOOTSTRAP_ERROR = ""

DEFAULT_COLUMNS: List[Dict[str, Any]] = [
    {"status": "todo", "name": "To Do", "color": "blue", "position": 0},
    {"status": "doing", "name": "Doing", "color": "yellow", "position": 1},
    {"status": "review", "name": "Review", "color": "purple", "position": 2},
    {"status": "done", "name": "Done", "color": "green", "position": 3},
]


class CompatRow(dict):
    """Row mapping that also supports numeric index access like sqlite3.Row."""

    def __init__(self, data: Dict[str, Any], order: List[str]):
        super().__init__(data)
        self._order = order

    def __getitem__(self, key: object) -> Any:  # type: ignore[override]
        if isinstance(key, int):
            return super().__getitem__(self._order[key])
        return super().__getitem__(str(key))


class CompatCursor:
    """Cursor wrapper with sqlite-like row behavior for PostgreSQL."""

    def __init__(self, cursor: Any, order: Optional[List[str]] = None, lastrowid: Optional[int] = None, rowcount: int = -1):
        self._cursor = cursor
        self._order = order or []
        self.lastrowid = lastrowid
        self._rowcount = rowcount

    @property
    def rowcount(self) -> int:
        return int(self._rowcount)

    def _wrap(self, row: Any) -> Any:
        if isinstance(row, dict):
            return CompatRow(row, self._order)
        if isinstance(row, tuple):
            mapped = {self._order[idx]: row[idx] for idx in range(min(len(self._order), len(row)))}
            return CompatRow(mapped, self._order)
        return row

    def fetchone(self):
        if self._cursor.description is None:
            return None
        row = self._cursor.fetchone()
        return None if row is None else self._wrap(row)

    def fetchall(self):
        if self._cursor.description is None:
            return []
        return [self._wrap(row) for row in self._cursor.fetchall()]


def _split_sql_script(script: str) -> List[str]:
    chunks = []
    buf: List[str] = []
    in_single = False
    for ch in script:
        if ch == "'":
            in_single = not in_single
        if ch == ";" and not in_single:
            stmt = "".join(buf).strip()
            if stmt:
                chunks.append(stmt)
            buf = []
        else:
            buf.append(ch)
    tail = "".join(buf).strip()
    if tail:
        chunks.append(tail)
    return chunks


def _replace_qmark_params(sql: str) -> str:
    out: List[str] = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
        if ch == "?" and not in_single:
            out.append("%s")
        elif ch == "%":
            # psycopg scans quoted literals for placeholders too
            out.append("%%")
        else:
            out.append(ch)
    return "".join(out)


def _adapt_sql_for_postgres(sql: str) -> str:
    text = sql.strip()
    pragma_match = re.match(r"PRAGMA\s+table_info\(([^)]+)\)", text, flags=re.IGNORECASE)
    if pragma_match:
        return (
            "SELECT column_name AS name, data_type AS type "
            "FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = %s "
            "ORDER BY ordinal_position"
        )
    text = re.sub(r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT", "BIGSERIAL PRIMARY KEY", text, flags=re.IGNORECASE)
    if re.match(r"^INSERT\s+OR\s+IGNORE\s+INTO", text, flags=re.IGNORECASE):
        text = re.sub(r"^INSERT\s+OR\s+IGNORE\s+INTO", "INSERT INTO", text, flags=re.IGNORECASE)
        text = f"{text} ON CONFLICT DO NOTHING"
    return _replace_qmark_params(text)


class PostgresCompatConnection:
    """Small DB-API compatibility layer so sqlite-style calls work on PostgreSQL.

    INSERT statements run inside a savepoint so a unique violation can be
    caught by the caller without aborting the surrounding transaction, the
    same way sqlite3 behaves.
    """

    def __init__(self, conn: Any):
        self._conn = conn

    def execute(self, sql: str, params: Tuple[Any, ...] = ()):
        pg_sql = _adapt_sql_for_postgres(sql)
        use_params = tuple(params)
        pragma_match = re.match(r"PRAGMA\s+table_info\(([^)]+)\)", sql.strip(), flags=re.IGNORECASE)
        if pragma_match:
            use_params = (pragma_match.group(1).strip().strip('"'),)
        is_insert = pg_sql.upper().startswith("INSERT")
        cur = self._conn.cursor()
        if is_insert:
            cur.execute("SAVEPOINT compat_insert")
        try:
            cur.execute(pg_sql, use_params)
        except Exception as exc:
            if is_insert:
                cur.execute("ROLLBACK TO SAVEPOINT compat_insert")
            # Keep sqlite IntegrityError handlers in business logic working.
            if str(getattr(exc, "sqlstate", "") or "").startswith("23"):
                raise sqlite3.IntegrityError(str(exc)) from exc
            raise
        order = [d.name for d in (cur.description or [])]
        inserted = cur.rowcount
        last_id = None
        if is_insert:
            cur.execute("RELEASE SAVEPOINT compat_insert")
            if inserted and inserted > 0:
                with self._conn.cursor() as c2:
                    c2.execute("SELECT LASTVAL() AS id")
                    row = c2.fetchone()
                    if isinstance(row, dict):
                        last_id = int(row["id"]) if row.get("id") is not None else None
                    elif isinstance(row, tuple) and row:
                        last_id = int(row[0])
        return CompatCursor(cur, order=order, lastrowid=last_id, rowcount=inserted)

    def executescript(self, script: str):
        for stmt in _split_sql_script(script):
            self.execute(stmt)
        self._conn.commit()

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    def close(self):
        self._conn.close()


def db_connect():
    if config.DB_BACKEND == "postgres":
        if psycopg is None:
            raise RuntimeError("PostgreSQL backend requested but psycopg is not installed.")
        raw = psycopg.connect(config.DATABASE_URL, row_factory=dict_row, autocommit=False)
        return PostgresCompatConnection(raw)

    db_path = config.DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=config.DB_BUSY_TIMEOUT_MS / 1000.0)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {config.DB_BUSY_TIMEOUT_MS}")
    conn.execute("PRAGMA foreign_keys = ON")
    journal = config.DB_JOURNAL_MODE if config.DB_JOURNAL_MODE in {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"} else "WAL"
    synchronous = config.DB_SYNCHRONOUS if config.DB_SYNCHRONOUS in {"OFF", "NORMAL", "FULL", "EXTRA"} else "NORMAL"
    conn.execute(f"PRAGMA journal_mode = {journal}")
    conn.execute(f"PRAGMA synchronous = {synchronous}")
    return conn


def ensure_column(conn, table: str, column: str, ddl: str) -> None:
    existing = set()
    for row in conn.execute(f"PRAGMA table_info({table})").fetchall():
        existing.add(str(row["name"] or "").lower())
    if column.lower() in existing:
        return
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
    except Exception as exc:
        msg = str(exc).lower()
        if "duplicate column name" not in msg and "already exists" not in msg:
            raise


def dedupe_columns(conn) -> int:
    """Delete duplicate (project_id, status) board columns, keeping the oldest row.

    Returns the number of rows removed.
    """
    dupes = conn.execute(
        """
        SELECT project_id, status, MIN(id) AS keep_id, COUNT(*) AS c
        FROM board_columns
        GROUP BY project_id, status
        HAVING COUNT(*) > 1
        """
    ).fetchall()
    removed = 0
    for row in dupes:
        cur = conn.execute(
            "DELETE FROM board_columns WHERE project_id = ? AND status = ? AND id <> ?",
            (row["project_id"], row["status"], row["keep_id"]),
        )
        removed += max(0, cur.rowcount)
    if removed:
        logger.warning("Removed %s duplicate board columns", removed)
    return removed


def run_schema_upgrades(conn) -> Dict[str, int]:
    """Apply additive, idempotent schema upgrades and report what was repaired.

    Duplicate board columns are cleaned up before the (project_id, status)
    unique index is created, so databases written before the index existed
    still upgrade.
    """
    ensure_column(conn, "users", "last_login", "TEXT")
    ensure_column(conn, "projects", "settings_json", "TEXT")
    ensure_column(conn, "projects", "archived_by", "INTEGER")
    ensure_column(conn, "cards", "original_status", "TEXT")
    ensure_column(conn, "cards", "estimated_time", "INTEGER NOT NULL DEFAULT 0")
    ensure_column(conn, "cards", "total_time_spent", "INTEGER NOT NULL DEFAULT 0")

    removed = dedupe_columns(conn)
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_board_columns_project_status ON board_columns (project_id, status)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_board_columns_position ON board_columns (project_id, position)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_cards_project_status ON cards (project_id, status, is_archived)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_comments_entity ON comments (entity, entity_id, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_log_entity ON activity_log (entity, entity_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_attachments_entity ON attachments (entity, entity_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, is_read, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_activities_project ON activities (project_id, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_time_entries_card ON time_entries (card_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_time_entries_project ON time_entries (project_id, work_date)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_stories_project ON stories (project_id, parent_story_id)")
    return {"duplicate_columns_removed": removed}


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'member',
    avatar TEXT,
    color TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_login TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_seen_at TEXT,
    ip_address TEXT,
    user_agent TEXT
);

CREATE TABLE IF NOT EXISTS password_resets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    token_hash TEXT NOT NULL UNIQUE,
    expires_at TEXT NOT NULL,
    used_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '#6366f1',
    icon TEXT NOT NULL DEFAULT 'Folder',
    position INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    client_name TEXT NOT NULL DEFAULT '',
    project_type TEXT NOT NULL DEFAULT 'One Time',
    category_id INTEGER REFERENCES categories(id) ON DELETE SET NULL,
    start_date TEXT NOT NULL,
    end_date TEXT,
    owner_id INTEGER NOT NULL REFERENCES users(id),
    status TEXT NOT NULL DEFAULT 'active',
    color TEXT NOT NULL DEFAULT '#3B82F6',
    bg_color TEXT,
    live_site_url TEXT NOT NULL DEFAULT '',
    demo_site_url TEXT NOT NULL DEFAULT '',
    markup_url TEXT NOT NULL DEFAULT '',
    settings_json TEXT,
    archived_at TEXT,
    archived_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_members (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role TEXT NOT NULL DEFAULT 'member',
    joined_at TEXT NOT NULL,
    UNIQUE (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS project_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    label TEXT NOT NULL,
    value TEXT NOT NULL DEFAULT '',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_credential_access (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    granted_by INTEGER,
    granted_at TEXT NOT NULL,
    UNIQUE (project_id, user_id)
);

CREATE TABLE IF NOT EXISTS project_descriptions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS board_columns (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    color TEXT NOT NULL DEFAULT 'gray',
    position INTEGER NOT NULL DEFAULT 0,
    is_default INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cards (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    card_number INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'todo',
    priority TEXT NOT NULL DEFAULT 'medium',
    due_date TEXT,
    position INTEGER NOT NULL DEFAULT 0,
    is_complete INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    completed_by INTEGER,
    is_archived INTEGER NOT NULL DEFAULT 0,
    archived_at TEXT,
    archived_by INTEGER,
    original_status TEXT,
    estimated_time INTEGER NOT NULL DEFAULT 0,
    total_time_spent INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (project_id, card_number)
);

CREATE TABLE IF NOT EXISTS card_assignees (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id INTEGER NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    assigned_at TEXT NOT NULL,
    UNIQUE (card_id, user_id)
);

CREATE TABLE IF NOT EXISTS card_labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id INTEGER NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    label_id INTEGER,
    name TEXT NOT NULL,
    color TEXT NOT NULL DEFAULT 'blue',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS card_read_by (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id INTEGER NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    read_at TEXT NOT NULL,
    UNIQUE (card_id, user_id)
);

CREATE TABLE IF NOT EXISTS card_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id INTEGER NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    completed INTEGER NOT NULL DEFAULT 0,
    position INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    color TEXT NOT NULL DEFAULT 'blue',
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (project_id, name_key)
);

CREATE TABLE IF NOT EXISTS stories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    parent_story_id INTEGER REFERENCES stories(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'todo',
    priority TEXT NOT NULL DEFAULT 'medium',
    story_type TEXT NOT NULL DEFAULT 'story',
    labels_json TEXT NOT NULL DEFAULT '[]',
    due_date TEXT,
    estimated_hours REAL NOT NULL DEFAULT 0,
    actual_hours REAL NOT NULL DEFAULT 0,
    created_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS story_assignees (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    story_id INTEGER NOT NULL REFERENCES stories(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    assigned_at TEXT NOT NULL,
    UNIQUE (story_id, user_id)
);

CREATE TABLE IF NOT EXISTS comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS activity_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    action TEXT NOT NULL,
    details TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity TEXT NOT NULL,
    entity_id INTEGER NOT NULL,
    filename TEXT NOT NULL DEFAULT '',
    original_name TEXT NOT NULL,
    mimetype TEXT NOT NULL DEFAULT '',
    size INTEGER NOT NULL DEFAULT 0,
    url TEXT NOT NULL,
    uploaded_by INTEGER,
    uploaded_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invitations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    invited_by INTEGER REFERENCES users(id) ON DELETE SET NULL,
    role TEXT NOT NULL DEFAULT 'member',
    token TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'pending',
    expires_at TEXT NOT NULL,
    accepted_at TEXT,
    accepted_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (email, project_id)
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    sender_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    read_at TEXT,
    data_json TEXT NOT NULL DEFAULT '{}',
    related_project_id INTEGER,
    related_card_id INTEGER,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS activities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
    type TEXT NOT NULL,
    message TEXT NOT NULL,
    details_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS time_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    card_id INTEGER NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    duration INTEGER NOT NULL CHECK (duration >= 0),
    description TEXT NOT NULL DEFAULT '',
    entry_type TEXT NOT NULL DEFAULT 'manual',
    work_date TEXT NOT NULL,
    timer_started_at TEXT,
    timer_stopped_at TEXT,
    is_billable INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS active_timers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL UNIQUE REFERENCES users(id) ON DELETE CASCADE,
    card_id INTEGER NOT NULL REFERENCES cards(id) ON DELETE CASCADE,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    started_at TEXT NOT NULL,
    accumulated_seconds INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS user_pinned_projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    position INTEGER NOT NULL DEFAULT 0,
    UNIQUE (user_id, project_id)
);

CREATE TABLE IF NOT EXISTS user_recent_projects (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    project_id INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    viewed_at TEXT NOT NULL,
    UNIQUE (user_id, project_id)
);

CREATE TABLE IF NOT EXISTS email_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recipient_user_id INTEGER,
    recipient_email TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT NOT NULL DEFAULT '',
    related_entity TEXT NOT NULL DEFAULT '',
    related_id TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    sent_at TEXT
);
"""


def init_db() -> Dict[str, int]:
    """Create the baseline schema and apply upgrades.

    Safe to call repeatedly: every statement is guarded with IF NOT EXISTS.
    Returns the upgrade report from run_schema_upgrades.
    """
    conn = db_connect()
    try:
        conn.executescript(SCHEMA)
        report = run_schema_upgrades(conn)
        conn.commit()
    finally:
        conn.close()
    return report


def ensure_bootstrap() -> None:
    """Initialize the database once per process."""
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    if BOOTSTRAPPED:
        return
    with BOOTSTRAP_LOCK:
        if BOOTSTRAPPED:
            return
        try:
            init_db()
            BOOTSTRAPPED = True
            BOOTSTRAP_ERROR = ""
            logger.info("Database ready (backend=%s)", config.DB_BACKEND)
        except Exception as exc:
            BOOTSTRAP_ERROR = str(exc)
            logger.exception("Database bootstrap failed")
            raise


def reset_bootstrap() -> None:
    global BOOTSTRAPPED, BOOTSTRAP_ERROR
    with BOOTSTRAP_LOCK:
        BOOTSTRAPPED = False
        BOOTSTRAP_ERROR = ""
