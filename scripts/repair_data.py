#!/usr/bin/env python3
"""Repair card numbers and user display fields.

Cards without a valid per-project number, or sharing one, get the next free
numbers. User avatars and colors are recomputed from the current names.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskboard.cards import renumber_cards
from taskboard.db import db_connect, ensure_bootstrap
from taskboard.logging_setup import setup_logging
from taskboard.users import refresh_user_styles


def parse_args():
    parser = argparse.ArgumentParser(description="Repair card numbers and user avatars/colors.")
    parser.add_argument("--skip-cards", action="store_true", help="Leave card numbers untouched.")
    parser.add_argument("--skip-users", action="store_true", help="Leave user avatars and colors untouched.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    setup_logging()
    ensure_bootstrap()
    conn = db_connect()
    try:
        renumbered = 0 if args.skip_cards else renumber_cards(conn)
        styles = {"avatars": 0, "colors": 0} if args.skip_users else refresh_user_styles(conn)
        conn.commit()
    finally:
        conn.close()

    print("REPAIR_DATA_OK")
    print("cards_renumbered:", renumbered)
    print("avatars_updated:", styles["avatars"])
    print("colors_updated:", styles["colors"])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
