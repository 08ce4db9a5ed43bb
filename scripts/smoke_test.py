#!/usr/bin/env python3
"""Fast health smoke test for local/dev CI.

Runs in-process WSGI calls, no HTTP server needed.
"""

from __future__ import annotations

import io
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taskboard.db import ensure_bootstrap
from taskboard.server import app


def run_request(path="/healthz", method="GET", body=b"", headers=None):
    """Execute a minimal WSGI request against the app callable."""
    status_holder = {}

    def start_response(status, response_headers, exc_info=None):
        status_holder["status"] = status
        status_holder["headers"] = response_headers

    environ = {
        "REQUEST_METHOD": method,
        "PATH_INFO": path,
        "QUERY_STRING": "",
        "wsgi.input": io.BytesIO(body),
        "CONTENT_LENGTH": str(len(body)),
        "CONTENT_TYPE": "application/json",
        "REMOTE_ADDR": "127.0.0.1",
        "HTTP_USER_AGENT": "smoke-test",
    }
    environ.update(headers or {})

    payload = b"".join(app(environ, start_response))
    return status_holder["status"], payload.decode("utf-8", errors="ignore")


def main() -> int:
    ensure_bootstrap()
    status, body = run_request("/healthz")
    assert status.startswith("200"), f"health failed: {status}"
    assert body.strip() == "ok", "health payload missing"

    status, body = run_request("/readyz")
    assert status.startswith("200"), f"readiness failed: {status} {body}"

    status, body = run_request("/api/health")
    assert status.startswith("200"), f"api health failed: {status}"
    assert json.loads(body)["message"] == "Server is running"

    status, body = run_request("/api/projects")
    assert status.startswith("401"), f"auth gate missing: {status}"

    status, body = run_request("/api/does-not-exist")
    assert status.startswith("404"), f"unknown route: {status}"
    print("SMOKE_OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
