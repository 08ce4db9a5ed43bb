"""Attachment storage on local disk.

Files land in ``UPLOAD_DIR/<entity>/<uuid>_<secure name>`` and are served
back from ``/uploads/<entity>/<file>``.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from werkzeug.datastructures import FileStorage
from werkzeug.security import safe_join
from werkzeug.utils import secure_filename

from . import config
from .common import in_clause, load_users
from .util import iso
from .web import ApiError, Response, status_line

logger = logging.getLogger(__name__)

MB = 1024 * 1024

ALLOWED_MIMETYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "image/bmp",
    "image/tiff",
    "image/x-icon",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
    "application/rtf",
    "application/zip",
    "application/json",
    "application/xml",
    "text/xml",
    "text/plain",
    "text/csv",
}

# Raster images are safe to render in the browser; SVG can carry script.
INLINE_MIMETYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
    "image/tiff",
    "image/x-icon",
}

UPLOAD_CSP = "default-src 'none'; sandbox"

# entity -> (max files per request, max bytes per file)
LIMITS: Dict[str, Tuple[int, int]] = {
    "card": (5, 10 * MB),
    "story": (5, 10 * MB),
    "project": (8, 8 * MB),
}


def _entity_dir(entity: str) -> Path:
    path = Path(config.UPLOAD_DIR) / f"{entity}s"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _file_size(storage: FileStorage) -> int:
    stream = storage.stream
    pos = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(pos)
    return size


def collect_files(files: Dict[str, List[FileStorage]]) -> List[FileStorage]:
    out: List[FileStorage] = []
    for key in sorted(files):
        out.extend(files[key])
    return out


def serialize_attachment(row, users: Optional[Dict[int, Dict[str, Any]]] = None) -> Dict[str, Any]:
    uploader = row["uploaded_by"]
    return {
        "id": row["id"],
        "filename": row["filename"],
        "originalName": row["original_name"],
        "name": row["original_name"],
        "mimetype": row["mimetype"],
        "size": row["size"],
        "url": row["url"],
        "uploadedBy": (users or {}).get(int(uploader), uploader) if uploader is not None else None,
        "uploadedAt": row["uploaded_at"],
    }


def attachments_for(conn, entity: str, entity_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
    out: Dict[int, List[Dict[str, Any]]] = {int(i): [] for i in entity_ids}
    if not entity_ids:
        return out
    rows = conn.execute(
        f"SELECT * FROM attachments WHERE entity = ? AND entity_id IN ({in_clause(entity_ids)}) ORDER BY uploaded_at, id",
        (entity,) + tuple(entity_ids),
    ).fetchall()
    users = load_users(conn, [row["uploaded_by"] for row in rows])
    for row in rows:
        out.setdefault(int(row["entity_id"]), []).append(serialize_attachment(row, users))
    return out


def save_uploads(conn, entity: str, entity_id: int, files: List[FileStorage], user_id: int) -> List[Dict[str, Any]]:
    """Validate and store uploaded files, returning the new attachment rows.

    Everything is validated before the first file is written.
    """
    max_files, max_size = LIMITS[entity]
    if not files:
        raise ApiError(400, "No files uploaded")
    if len(files) > max_files:
        raise ApiError(400, f"Too many files. Maximum {max_files} files per upload.")
    for storage in files:
        mimetype = (storage.mimetype or "").lower()
        if mimetype not in ALLOWED_MIMETYPES:
            raise ApiError(400, f"File type {mimetype or 'unknown'} is not allowed. Only images and documents are permitted.")
        if _file_size(storage) > max_size:
            raise ApiError(400, f"File {storage.filename} is too large. Maximum size is {max_size // MB}MB.")

    target_dir = _entity_dir(entity)
    created: List[Dict[str, Any]] = []
    for storage in files:
        original = storage.filename or "file"
        safe_name = secure_filename(original) or "file"
        stored = f"{uuid.uuid4().hex}_{safe_name}"
        storage.save(str(target_dir / stored))
        size = (target_dir / stored).stat().st_size
        url = f"/uploads/{entity}s/{stored}"
        cur = conn.execute(
            """
            INSERT INTO attachments (entity, entity_id, filename, original_name, mimetype, size, url, uploaded_by, uploaded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (entity, entity_id, stored, original, storage.mimetype or "", size, url, user_id, iso()),
        )
        row = conn.execute("SELECT * FROM attachments WHERE id = ?", (cur.lastrowid,)).fetchone()
        created.append(serialize_attachment(row))
    logger.info("Stored %s file(s) for %s %s", len(created), entity, entity_id)
    return created


def add_link_attachment(conn, entity: str, entity_id: int, name: str, url: str, user_id: int) -> Dict[str, Any]:
    cur = conn.execute(
        """
        INSERT INTO attachments (entity, entity_id, filename, original_name, mimetype, size, url, uploaded_by, uploaded_at)
        VALUES (?, ?, '', ?, 'text/uri-list', 0, ?, ?, ?)
        """,
        (entity, entity_id, name, url, user_id, iso()),
    )
    row = conn.execute("SELECT * FROM attachments WHERE id = ?", (cur.lastrowid,)).fetchone()
    return serialize_attachment(row)


def stored_path(entity: str, filename: str) -> Path:
    return Path(config.UPLOAD_DIR) / f"{entity}s" / filename


def remove_files(paths: Iterable[Path]) -> None:
    """Unlink stored files. Call only after the deleting transaction has committed."""
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove upload %s: %s", path, exc)


def delete_attachment(conn, entity: str, entity_id: int, attachment_id: int) -> Tuple[Dict[str, Any], List[Path]]:
    """Delete one attachment row, returning it and the stored file to remove after commit."""
    row = conn.execute(
        "SELECT * FROM attachments WHERE id = ? AND entity = ? AND entity_id = ?", (attachment_id, entity, entity_id)
    ).fetchone()
    if not row:
        raise ApiError(404, "Attachment not found")
    conn.execute("DELETE FROM attachments WHERE id = ?", (attachment_id,))
    files = [stored_path(entity, row["filename"])] if row["filename"] else []
    return serialize_attachment(row), files


def delete_entity_attachments(conn, entity: str, entity_ids: List[int]) -> List[Path]:
    if not entity_ids:
        return []
    rows = conn.execute(
        f"SELECT id, filename FROM attachments WHERE entity = ? AND entity_id IN ({in_clause(entity_ids)})",
        (entity,) + tuple(entity_ids),
    ).fetchall()
    conn.execute(
        f"DELETE FROM attachments WHERE entity = ? AND entity_id IN ({in_clause(entity_ids)})",
        (entity,) + tuple(entity_ids),
    )
    return [stored_path(entity, row["filename"]) for row in rows if row["filename"]]


def serve_upload(conn, rel_path: str) -> Response:
    """Return the stored file for ``/uploads/<rel_path>`` or a 404.

    The content type comes from the attachment row. Only raster images are
    shown inline; everything else is a download under a sandboxing CSP.
    """
    row = conn.execute(
        "SELECT mimetype, original_name FROM attachments WHERE url = ? AND filename != ''", (f"/uploads/{rel_path}",)
    ).fetchone()
    full = safe_join(str(config.UPLOAD_DIR), rel_path)
    if not row or not full or not os.path.isfile(full):
        return Response('{"success": false, "message": "File not found"}', status=status_line(404))
    mimetype = (row["mimetype"] or "").lower()
    content_type = mimetype if mimetype in ALLOWED_MIMETYPES else "application/octet-stream"
    if mimetype in INLINE_MIMETYPES:
        disposition = "inline"
    else:
        disposition = f'attachment; filename="{secure_filename(row["original_name"] or "") or "download"}"'
    with open(full, "rb") as fh:
        body = fh.read()
    return Response(
        body,
        content_type=content_type,
        headers=[("Content-Disposition", disposition), ("Content-Security-Policy", UPLOAD_CSP)],
    )
