"""Flask wrapper around the TaskBoard WSGI application.

Flask owns the process (CLI, dev server, test client); every request is
handed to ``server.app`` unchanged.
"""

from __future__ import annotations

import json
import os

import click
from flask import Flask, request

from . import config
from .db import ensure_bootstrap, init_db
from .logging_setup import setup_logging
from .server import app as wsgi_app

setup_logging()

flask_app = Flask(__name__, static_folder=None, template_folder=None)
flask_app.config["SECRET_KEY"] = config.SECRET_KEY
flask_app.config["MAX_CONTENT_LENGTH"] = config.MAX_FILE_SIZE


@flask_app.before_request
def setup_request():
    # Health probes must not depend on the DB bootstrap.
    if request.path in {"/healthz", "/readyz"}:
        return None
    try:
        ensure_bootstrap()
    except Exception:
        return flask_app.response_class(
            json.dumps({"success": False, "message": "Database unavailable"}), status=503, mimetype="application/json"
        )
    return None


@flask_app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
@flask_app.route("/<path:path>", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def catch_all(path):
    """Delegate to the WSGI app and convert its output to a Flask response."""
    response_data = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    body = b"".join(wsgi_app(request.environ, start_response))
    status_code = int(response_data.get("status", "200 OK").split()[0])
    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get("headers", []):
        response.headers[header_name] = header_value
    return response


@flask_app.cli.command("init-db")
def init_db_command():
    """Create the schema and apply upgrades."""
    report = init_db()
    click.echo(f"Database initialized ({config.DB_BACKEND})")
    click.echo(f"Duplicate board columns removed: {report['duplicate_columns_removed']}")


if __name__ == "__main__":
    flask_app.run(
        host=config.HOST,
        port=config.PORT,
        debug=os.environ.get("FLASK_DEBUG", "0") == "1",
        threaded=True,
    )
