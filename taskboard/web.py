"""Thin request/response layer and route table for the WSGI app."""

from __future__ import annotations

import json
import re
from http import HTTPStatus
from typing import Any, Callable, Dict, List, Optional, Pattern, Tuple
from urllib.parse import parse_qs

from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.formparser import parse_form_data

from . import config
from .util import EMAIL_RE, URL_RE, parse_iso, to_bool, to_float, to_int


class ApiError(Exception):
    """Raised by handlers; rendered as ``{"success": false, "message": ...}``."""

    def __init__(self, status: int, message: str, errors: Optional[List[Dict[str, str]]] = None, **extra: Any):
        super().__init__(message)
        self.status = status
        self.message = message
        self.errors = errors
        self.extra = extra

    def payload(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        body.update(self.extra)
        return body


class Request:
    """Wrapper over the WSGI environ with lazy JSON and multipart parsing."""

    def __init__(self, environ: dict):
        self.environ = environ
        self.method = environ.get("REQUEST_METHOD", "GET").upper()
        self.path = environ.get("PATH_INFO", "/") or "/"
        self.query = {k: v[0] for k, v in parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True).items()}
        self._json: Optional[Dict[str, Any]] = None
        self._form: Optional[Dict[str, str]] = None
        self._files: Optional[Dict[str, List[FileStorage]]] = None

    @property
    def content_type(self) -> str:
        return str(self.environ.get("CONTENT_TYPE", "") or "")

    @property
    def remote_addr(self) -> str:
        return str(self.environ.get("REMOTE_ADDR", "") or "unknown")

    @property
    def user_agent(self) -> str:
        return str(self.environ.get("HTTP_USER_AGENT", "") or "")

    @property
    def bearer_token(self) -> str:
        header = str(self.environ.get("HTTP_AUTHORIZATION", "") or "").strip()
        if header.lower().startswith("bearer "):
            return header[7:].strip()
        return ""

    @property
    def json(self) -> Dict[str, Any]:
        if self._json is None:
            self._json = self._parse_body()
        return self._json

    @property
    def files(self) -> Dict[str, List[FileStorage]]:
        if self._files is None:
            self._parse_multipart()
        return self._files or {}

    def _parse_body(self) -> Dict[str, Any]:
        if self.method not in {"POST", "PUT", "PATCH", "DELETE"}:
            return {}
        if "multipart/form-data" in self.content_type:
            self._parse_multipart()
            return dict(self._form or {})
        try:
            length = int(self.environ.get("CONTENT_LENGTH") or 0)
        except ValueError:
            length = 0
        if length > config.MAX_FILE_SIZE:
            raise ApiError(413, "Request body too large")
        raw = self.environ["wsgi.input"].read(length) if length else b""
        if not raw.strip():
            return {}
        if "application/x-www-form-urlencoded" in self.content_type:
            return {k: v[0] for k, v in parse_qs(raw.decode("utf-8")).items()}
        try:
            parsed = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ApiError(400, "Invalid JSON body")
        if not isinstance(parsed, dict):
            raise ApiError(400, "Invalid JSON body")
        return parsed

    def _parse_multipart(self) -> None:
        self._form = {}
        self._files = {}
        if "multipart/form-data" not in self.content_type:
            return
        try:
            _stream, form, files = parse_form_data(self.environ, max_content_length=config.MAX_FILE_SIZE)
        except RequestEntityTooLarge:
            raise ApiError(413, "Request body too large")
        self._form = {key: form.get(key) for key in form.keys()}
        self._files = {key: [f for f in files.getlist(key) if f and f.filename] for key in files.keys()}


DEFAULT_CSP = "default-src 'self'; style-src 'self'; script-src 'self'; img-src 'self' data:; base-uri 'self'; form-action 'self'"


class Response:
    """Simple response object that centralizes security headers."""

    def __init__(
        self,
        body: Any = "",
        status: str = "200 OK",
        content_type: str = "application/json; charset=utf-8",
        headers: Optional[List[Tuple[str, str]]] = None,
    ):
        self.body = body.encode("utf-8") if isinstance(body, str) else body
        self.status = status
        self.content_type = content_type
        self.headers = headers or []

    @property
    def status_code(self) -> int:
        return int(self.status.split()[0])

    def wsgi(self, start_response):
        sec_headers = [
            ("Content-Type", self.content_type),
            ("Content-Length", str(len(self.body))),
            ("X-Frame-Options", "DENY"),
            ("X-Content-Type-Options", "nosniff"),
            ("Referrer-Policy", "strict-origin-when-cross-origin"),
            ("Cache-Control", "no-store"),
            ("Permissions-Policy", "camera=(), microphone=(), geolocation=()"),
        ]
        if not any(name.lower() == "content-security-policy" for name, _ in self.headers):
            sec_headers.append(("Content-Security-Policy", DEFAULT_CSP))
        start_response(self.status, sec_headers + self.headers)
        return [self.body]


def status_line(code: int) -> str:
    try:
        return f"{code} {HTTPStatus(code).phrase}"
    except ValueError:
        return f"{code} Unknown"


def json_response(payload: object, status: int = 200) -> Response:
    return Response(json.dumps(payload, default=str), status=status_line(status))


def ok(status: int = 200, **payload: Any) -> Response:
    body: Dict[str, Any] = {"success": True}
    body.update(payload)
    return json_response(body, status=status)


def error_response(status: int, message: str, **extra: Any) -> Response:
    return json_response(ApiError(status, message, **extra).payload(), status=status)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

Handler = Callable[..., Response]
ROUTES: List[Tuple[str, Pattern[str], Tuple[str, ...], Handler, str]] = []

_PARAM_RE = re.compile(r"<(?:(int|str):)?([a-zA-Z_][a-zA-Z0-9_]*)>")


def _compile(pattern: str) -> Tuple[Pattern[str], Tuple[str, ...]]:
    int_names = tuple(name for kind, name in _PARAM_RE.findall(pattern) if kind == "int")

    def repl(match: "re.Match[str]") -> str:
        kind, name = match.group(1) or "str", match.group(2)
        if kind == "int":
            return f"(?P<{name}>[0-9]+)"
        return f"(?P<{name}>[^/]+)"

    return re.compile("^" + _PARAM_RE.sub(repl, pattern) + "/?$"), int_names


def route(method: str, pattern: str, access: str = "user") -> Callable[[Handler], Handler]:
    """Register a handler.

    ``access`` is one of ``public`` (no auth), ``optional`` (auth context
    loaded when a token is sent), ``user`` or ``admin``.
    """

    def decorator(fn: Handler) -> Handler:
        regex, int_names = _compile(pattern)
        ROUTES.append((method.upper(), regex, int_names, fn, access))
        return fn

    return decorator


def match_route(method: str, path: str) -> Tuple[Optional[Tuple[Handler, str]], Dict[str, Any], bool]:
    """Return ((handler, access), params, path_known) for a request."""
    path_known = False
    for route_method, regex, int_names, fn, access in ROUTES:
        m = regex.match(path)
        if not m:
            continue
        path_known = True
        if route_method != method:
            continue
        params: Dict[str, Any] = {}
        for key, value in m.groupdict().items():
            params[key] = int(value) if key in int_names else value
        return (fn, access), params, True
    return None, {}, path_known


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class Validation:
    """Collects field errors in the ``[{field, message}]`` shape clients expect."""

    def __init__(self, data: Optional[Dict[str, Any]]):
        self.data = data or {}
        self.errors: List[Dict[str, str]] = []

    def add(self, field: str, message: str) -> None:
        self.errors.append({"field": field, "message": message})

    def has(self, field: str) -> bool:
        return field in self.data and self.data[field] is not None

    def text(
        self,
        field: str,
        label: str,
        required: bool = False,
        min_length: int = 0,
        max_length: Optional[int] = None,
        default: Optional[str] = None,
    ) -> Optional[str]:
        raw = self.data.get(field)
        if raw is None:
            if required:
                self.add(field, f"{label} is required")
            return default
        value = str(raw).strip()
        if required and not value:
            self.add(field, f"{label} is required")
            return default
        if value and len(value) < min_length:
            self.add(field, f"{label} must be at least {min_length} characters")
        if max_length is not None and len(value) > max_length:
            if min_length:
                self.add(field, f"{label} must be between {min_length} and {max_length} characters")
            else:
                self.add(field, f"{label} cannot be more than {max_length} characters")
        return value

    def choice(self, field: str, label: str, options: List[str], required: bool = False, default: Optional[str] = None) -> Optional[str]:
        raw = self.data.get(field)
        if raw in (None, ""):
            if required:
                self.add(field, f"{label} is required")
            return default
        value = str(raw).strip()
        if value not in options:
            self.add(field, f"Invalid {label.lower()}")
            return default
        return value

    def email(self, field: str = "email", required: bool = True) -> Optional[str]:
        raw = self.data.get(field)
        value = str(raw or "").strip().lower()
        if not value:
            if required:
                self.add(field, "Email is required")
            return None
        if not EMAIL_RE.match(value):
            self.add(field, "Please provide a valid email")
            return None
        return value

    def url(self, field: str, label: str) -> Optional[str]:
        raw = self.data.get(field)
        value = str(raw or "").strip()
        if value and not URL_RE.match(value):
            self.add(field, f"{label} must be a valid URL starting with http:// or https://")
        return value

    def integer(self, field: str, label: str, required: bool = False, minimum: Optional[int] = None) -> Optional[int]:
        raw = self.data.get(field)
        if raw in (None, ""):
            if required:
                self.add(field, f"{label} is required")
            return None
        value = to_int(raw)
        if value is None:
            self.add(field, f"{label} must be a number")
            return None
        if minimum is not None and value < minimum:
            self.add(field, f"{label} must be at least {minimum}")
        return value

    def number(self, field: str, label: str, minimum: Optional[float] = None) -> Optional[float]:
        raw = self.data.get(field)
        if raw in (None, ""):
            return None
        if isinstance(raw, bool):
            self.add(field, f"{label} must be a number")
            return None
        value = to_float(raw, float("nan"))
        if value != value:
            self.add(field, f"{label} must be a number")
            return None
        if minimum is not None and value < minimum:
            self.add(field, f"{label} must be at least {minimum:g}")
        return value

    def date(self, field: str, label: str, required: bool = False) -> Optional[str]:
        raw = self.data.get(field)
        if raw in (None, ""):
            if required:
                self.add(field, f"{label} is required")
            return None
        value = parse_iso(raw)
        if value is None:
            self.add(field, f"{label} must be a valid date")
        return value

    def boolean(self, field: str, default: Optional[bool] = None) -> Optional[bool]:
        if field not in self.data:
            return default
        return to_bool(self.data.get(field), bool(default))

    def check(self) -> None:
        if self.errors:
            raise ApiError(400, "Validation failed", errors=self.errors)
