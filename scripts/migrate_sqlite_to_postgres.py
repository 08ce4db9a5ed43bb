#!/usr/bin/env python3
"""Migrate TaskBoard data from SQLite to PostgreSQL.

Usage:
  TASKBOARD_DATABASE_URL=postgresql://... python3 scripts/migrate_sqlite_to_postgres.py
  python3 scripts/migrate_sqlite_to_postgres.py --source /path/to/taskboard.db --truncate

The destination schema is created first through the normal bootstrap, so the
target only needs to be an empty (or truncatable) database.
"""

from __future__ import annotations

import argparse
import re
import sqlite3
import sys
from pathlib import Path
from typing import Dict, List

try:
    import psycopg
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"psycopg is required: {exc}")

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskboard import config
from taskboard.db import SCHEMA, ensure_bootstrap


def sqlite_tables(conn: sqlite3.Connection) -> List[str]:
    """Tables in schema order so parents load before the rows that reference them."""
    rows = conn.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type = 'table' AND name NOT LIKE 'sqlite_%'
        ORDER BY name
        """
    ).fetchall()
    present = [str(r[0]) for r in rows]
    ordered = [t for t in re.findall(r"CREATE TABLE IF NOT EXISTS (\w+)", SCHEMA) if t in present]
    return ordered + [t for t in present if t not in ordered]


def sqlite_columns(conn: sqlite3.Connection, table: str) -> List[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return [str(r[1]) for r in rows]


def pg_columns(cur, table: str) -> List[str]:
    cur.execute(
        """
        SELECT column_name
        FROM information_schema.columns
        WHERE table_schema = current_schema() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    )
    return [str(r[0]) for r in cur.fetchall()]


def reset_sequence(cur, table: str) -> None:
    """Move the id sequence past the copied rows."""
    cur.execute("SELECT pg_get_serial_sequence(%s, 'id')", (table,))
    row = cur.fetchone()
    if row and row[0]:
        cur.execute(f'SELECT setval(%s, COALESCE((SELECT MAX(id) FROM "{table}"), 0) + 1, false)', (row[0],))


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--source", default=str(ROOT / "data" / "taskboard.db"))
    parser.add_argument("--truncate", action="store_true", help="truncate destination tables before import")
    args = parser.parse_args()

    if config.DB_BACKEND != "postgres":
        raise SystemExit("Set TASKBOARD_DATABASE_URL (or DATABASE_URL) to a postgres:// URL first.")

    source_path = Path(args.source)
    if not source_path.exists():
        raise SystemExit(f"SQLite source not found: {source_path}")

    ensure_bootstrap()
    src = sqlite3.connect(str(source_path))
    src.row_factory = sqlite3.Row
    dst = psycopg.connect(config.DATABASE_URL, autocommit=False)

    migrated: Dict[str, int] = {}
    try:
        tables = sqlite_tables(src)
        with dst.cursor() as dcur:
            if args.truncate:
                for table in reversed(tables):
                    if pg_columns(dcur, table):
                        dcur.execute(f'TRUNCATE TABLE "{table}" RESTART IDENTITY CASCADE')
            for table in tables:
                dst_cols = set(pg_columns(dcur, table))
                cols = [c for c in sqlite_columns(src, table) if c in dst_cols]
                if not cols:
                    continue

                qcols = ", ".join(f'"{c}"' for c in cols)
                ph = ", ".join(["%s"] * len(cols))
                insert_sql = f'INSERT INTO "{table}" ({qcols}) VALUES ({ph}) ON CONFLICT DO NOTHING'

                rows = src.execute(f'SELECT {qcols} FROM "{table}"').fetchall()
                batch = [tuple(row[c] for c in cols) for row in rows]
                if batch:
                    dcur.executemany(insert_sql, batch)
                if "id" in cols:
                    reset_sequence(dcur, table)
                migrated[table] = len(batch)
        dst.commit()
    finally:
        src.close()
        dst.close()

    total = sum(migrated.values())
    print(f"MIGRATION_COMPLETE tables={len(migrated)} rows={total}")
    for table, count in sorted(migrated.items()):
        print(f"- {table}: {count}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
