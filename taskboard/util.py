from __future__ import annotations

import datetime as dt
import hashlib
import html
import json
import re
from typing import Any, Dict, List, Optional

EMAIL_RE = re.compile(r"^\w+([.+-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,})+$")
URL_RE = re.compile(r"^https?://.+", re.IGNORECASE)


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def iso(ts: Optional[dt.datetime] = None) -> str:
    value = ts or utcnow()
    return value.isoformat(timespec="milliseconds")


def h(value: object) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def to_int(value: object, default: Optional[int] = None) -> Optional[int]:
    if value in (None, "") or isinstance(value, bool):
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def to_float(value: object, default: float = 0.0) -> float:
    if value in (None, "") or isinstance(value, bool):
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def to_bool(value: object, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def clamp_int(value: object, default: int, minimum: int, maximum: int) -> int:
    parsed = to_int(value, default)
    if parsed is None:
        parsed = default
    return max(minimum, min(maximum, parsed))


def parse_rfc3339_datetime(value: object) -> Optional[dt.datetime]:
    if value in (None, ""):
        return None
    normalized = str(value).strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(normalized)
    except ValueError:
        try:
            parsed = dt.datetime.strptime(normalized, "%Y-%m-%d")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def parse_iso(value: object) -> Optional[str]:
    """Normalize a client supplied date or datetime into a stored ISO string."""
    parsed = parse_rfc3339_datetime(value)
    return iso(parsed) if parsed else None


def date_part(value: object) -> Optional[str]:
    parsed = parse_rfc3339_datetime(value)
    return parsed.date().isoformat() if parsed else None


def format_display_date(value: object, fallback: str = "No due date") -> str:
    parsed = parse_rfc3339_datetime(value)
    if not parsed:
        return fallback
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"


def seconds_between(start: object, end: Optional[dt.datetime] = None) -> int:
    started = parse_rfc3339_datetime(start)
    if not started:
        return 0
    return max(0, int(((end or utcnow()) - started).total_seconds()))


def parse_meta_json(raw: Optional[str], default: Any = None) -> Any:
    if not raw:
        return {} if default is None else default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return {} if default is None else default


def avatar_initials(name: str) -> str:
    parts = [p for p in str(name or "").strip().split(" ") if p]
    if len(parts) >= 2:
        return (parts[0][0] + parts[-1][0]).upper()
    if len(parts) == 1:
        return parts[0][:2].upper()
    return "U"


USER_COLORS = [
    "bg-blue-600",
    "bg-green-600",
    "bg-purple-600",
    "bg-orange-600",
    "bg-pink-600",
    "bg-red-600",
    "bg-indigo-600",
    "bg-teal-600",
    "bg-yellow-600",
    "bg-gray-600",
    "bg-cyan-600",
    "bg-emerald-600",
    "bg-violet-600",
    "bg-rose-600",
    "bg-sky-600",
    "bg-lime-600",
]


def user_color(seed_text: str) -> str:
    # 32-bit string hash so the same name always maps to the same color
    seed = 0
    for ch in seed_text or "default":
        seed = ((seed << 5) - seed + ord(ch)) & 0xFFFFFFFF
    if seed & 0x80000000:
        seed -= 0x100000000
    return USER_COLORS[abs(seed) % len(USER_COLORS)]


def page_params(query: Dict[str, str], default_limit: int, max_limit: int = 200) -> Dict[str, int]:
    page = clamp_int(query.get("page"), 1, 1, 100000)
    limit = clamp_int(query.get("limit"), default_limit, 1, max_limit)
    return {"page": page, "limit": limit, "offset": (page - 1) * limit}


def pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    pages = (total + limit - 1) // limit if limit else 0
    return {"total": total, "page": page, "pages": pages, "limit": limit}


def id_list(values: object) -> List[int]:
    if not isinstance(values, list):
        return []
    out: List[int] = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("id")
        parsed = to_int(value)
        if parsed is not None and parsed not in out:
            out.append(parsed)
    return out
