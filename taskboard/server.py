"""WSGI entrypoint and development server."""

from __future__ import annotations

import logging
import sqlite3
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIServer, make_server

from . import config
from .auth import get_auth_context
from .common import ADMIN_REQUIRED
from .db import db_connect, ensure_bootstrap
from .logging_setup import setup_logging
from .uploads import serve_upload
from .util import iso
from .web import ApiError, Request, Response, error_response, json_response, match_route, ok, route

# Route modules register themselves on import.
from . import (  # noqa: F401
    activities,
    auth,
    card_items,
    cards,
    categories,
    columns,
    invitations,
    labels,
    notifications,
    projects,
    stories,
    time_tracking,
    users,
)

logger = logging.getLogger(__name__)


class ThreadedWSGIServer(ThreadingMixIn, WSGIServer):
    """Thread-per-request WSGI server for small-team deployments."""

    daemon_threads = True


@route("GET", "/api/health", access="public")
def health(conn, req: Request, ctx):
    return ok(message="Server is running", timestamp=iso(), environment=config.ENVIRONMENT)


def _readiness(start_response):
    try:
        ensure_bootstrap()
        probe = db_connect()
        try:
            probe.execute("SELECT 1").fetchone()
        finally:
            probe.close()
    except Exception as exc:
        logger.warning("Readiness probe failed: %s", exc)
        return Response(f"not-ready: {exc}", status="503 Service Unavailable", content_type="text/plain").wsgi(start_response)
    return Response("ready", content_type="text/plain").wsgi(start_response)


def _dispatch(conn, req: Request) -> Response:
    handler, params, path_known = match_route(req.method, req.path)
    if handler is None:
        if path_known:
            return error_response(405, "Method not allowed")
        return error_response(404, "Route not found")
    fn, access = handler

    if access == "public":
        ctx = {"user": None, "session_id": None, "error": ""}
    else:
        ctx = get_auth_context(conn, req)
        if access in ("user", "admin") and not ctx["user"]:
            return error_response(401, ctx["error"])
        if access == "admin" and ctx["user"].get("role") != "admin":
            return error_response(403, ADMIN_REQUIRED)
    return fn(conn, req, ctx, **params)


def app(environ, start_response):
    """WSGI entrypoint.

    Health probes are answered before bootstrap; everything else gets a
    per-request connection that is closed when the response is built.
    """
    req = Request(environ)

    if req.path == "/healthz":
        return Response("ok", content_type="text/plain").wsgi(start_response)
    if req.path == "/readyz":
        return _readiness(start_response)

    try:
        ensure_bootstrap()
    except Exception:
        return error_response(503, "Database unavailable").wsgi(start_response)

    if req.method == "GET" and req.path.startswith("/uploads/"):
        conn = db_connect()
        try:
            response = serve_upload(conn, req.path[len("/uploads/"):])
        finally:
            conn.close()
        return response.wsgi(start_response)

    conn = db_connect()
    try:
        response = _dispatch(conn, req)
    except ApiError as exc:
        _rollback(conn)
        response = json_response(exc.payload(), status=exc.status)
    except sqlite3.IntegrityError as exc:
        _rollback(conn)
        logger.warning("Integrity error on %s %s: %s", req.method, req.path, exc)
        response = error_response(400, "Duplicate value")
    except Exception:
        _rollback(conn)
        logger.exception("Unhandled error on %s %s", req.method, req.path)
        response = error_response(500, "Internal server error")
    finally:
        conn.close()
    return response.wsgi(start_response)


def _rollback(conn) -> None:
    try:
        conn.rollback()
    except Exception:
        logger.debug("Rollback failed", exc_info=True)


def run() -> None:
    setup_logging()
    ensure_bootstrap()
    mode = "threaded" if config.WSGI_THREADED else "single-threaded"
    logger.info(
        "%s running on http://%s:%s (backend=%s, mode=%s)", config.APP_NAME, config.HOST, config.PORT, config.DB_BACKEND, mode
    )
    if config.WSGI_THREADED:
        server = make_server(config.HOST, config.PORT, app, server_class=ThreadedWSGIServer)
    else:
        server = make_server(config.HOST, config.PORT, app)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")


if __name__ == "__main__":
    run()
