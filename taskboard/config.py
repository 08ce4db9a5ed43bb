"""Runtime configuration.

Values are read from the environment once at import. TASKBOARD_* variables take
precedence over the generic container variables (PORT, DATABASE_URL, ...).
"""

from __future__ import annotations

import os
from pathlib import Path

APP_NAME = "TaskBoard"
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = BASE_DIR / "data"

DB_PATH = Path(os.environ.get("TASKBOARD_DB_PATH", str(DATA_DIR / "taskboard.db")))
DATABASE_URL = os.environ.get("TASKBOARD_DATABASE_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("TASKBOARD_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("TASKBOARD_DB_JOURNAL_MODE", "WAL").strip().upper()
DB_SYNCHRONOUS = os.environ.get("TASKBOARD_DB_SYNCHRONOUS", "NORMAL").strip().upper()

SECRET_KEY = os.environ.get("TASKBOARD_SECRET_KEY", "change-this-secret-in-production")
SESSION_DAYS = max(1, int(os.environ.get("TASKBOARD_SESSION_DAYS", "7")))
ENVIRONMENT = os.environ.get("TASKBOARD_ENV", os.environ.get("NODE_ENV", "development"))
CLIENT_URL = os.environ.get("TASKBOARD_CLIENT_URL", os.environ.get("CLIENT_URL", "http://localhost:3000")).rstrip("/")

HOST = os.environ.get("TASKBOARD_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("TASKBOARD_PORT", os.environ.get("PORT", "5000")))
WSGI_THREADED = os.environ.get("TASKBOARD_WSGI_THREADED", "1") == "1"

UPLOAD_DIR = Path(os.environ.get("TASKBOARD_UPLOAD_DIR", str(BASE_DIR / "uploads")))
MAX_FILE_SIZE = max(1024 * 1024, int(os.environ.get("TASKBOARD_MAX_FILE_SIZE", str(25 * 1024 * 1024))))

SMTP_HOST = os.environ.get("TASKBOARD_SMTP_HOST", "").strip()
SMTP_PORT = int(os.environ.get("TASKBOARD_SMTP_PORT", "587"))
SMTP_USER = os.environ.get("TASKBOARD_SMTP_USER", "").strip()
SMTP_PASSWORD = os.environ.get("TASKBOARD_SMTP_PASSWORD", "")
SMTP_FROM = os.environ.get("TASKBOARD_SMTP_FROM", "").strip()
SMTP_USE_TLS = os.environ.get("TASKBOARD_SMTP_USE_TLS", "1") == "1"

LOG_LEVEL = os.environ.get("TASKBOARD_LOG_LEVEL", "INFO").strip().upper()
LOG_DIR = os.environ.get("TASKBOARD_LOG_DIR", "").strip()

COLUMN_CACHE_TTL = max(0, int(os.environ.get("TASKBOARD_COLUMN_CACHE_TTL", "300")))
LOGIN_MAX_ATTEMPTS = max(1, int(os.environ.get("TASKBOARD_LOGIN_MAX_ATTEMPTS", "8")))
LOGIN_WINDOW_MINUTES = max(1, int(os.environ.get("TASKBOARD_LOGIN_WINDOW_MINUTES", "10")))
