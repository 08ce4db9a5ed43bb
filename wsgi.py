#!/usr/bin/env python3
"""WSGI entry point for production deployment.

- Gunicorn: gunicorn wsgi:application
- uWSGI: uwsgi --http :5000 --wsgi-file wsgi.py
- Waitress: waitress-serve --port=5000 wsgi:application
"""

from taskboard.flask_app import flask_app

application = flask_app

if __name__ == "__main__":
    application.run()
