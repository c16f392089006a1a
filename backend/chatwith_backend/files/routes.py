from __future__ import annotations

import logging
import mimetypes
import re
from http import HTTPStatus
from pathlib import Path
from typing import Any
from uuid import uuid4

from flask import Blueprint, current_app, jsonify, request, send_file
from werkzeug.utils import secure_filename

from ..auth.utils import AuthError, require_firebase_user
from ..config import DEFAULT_MAX_UPLOAD_SIZE
from ..firebase import get_firestore_client
from ..store.chats import NOT_FOUND_CODE, ChatStore, StoreError
from .extract import FileContentError, resolve_storage_path
from .types import FILE_TYPES, UPLOADABLE_TYPES, get_file_type

files_bp = Blueprint("files", __name__, url_prefix="/files")
log = logging.getLogger(__name__)

_YOUTUBE_URL = re.compile(
    r"^https?://(www\.|m\.)?(youtube\.com/(watch\?v=|shorts/|embed/)|youtu\.be/)[\w-]{6,}",
    re.IGNORECASE,
)

_STORE_ERROR_STATUS = {
    NOT_FOUND_CODE: HTTPStatus.NOT_FOUND,
    "permission_denied": HTTPStatus.FORBIDDEN,
    "unauthenticated": HTTPStatus.UNAUTHORIZED,
}


def _store_error_response(exc: StoreError) -> tuple[Any, int]:
    status = _STORE_ERROR_STATUS.get(exc.code, HTTPStatus.SERVICE_UNAVAILABLE)
    return (
        jsonify({"error": exc.code.upper(), "message": exc.message}),
        status,
    )


def _validation_error(message: str) -> tuple[Any, int]:
    return jsonify({"error": "INVALID_DATA", "message": message}), HTTPStatus.BAD_REQUEST


def _get_store() -> ChatStore:
    try:
        return ChatStore(get_firestore_client())
    except RuntimeError as exc:
        log.error("Firestore unavailable: %s", exc)
        raise StoreError("unavailable", "Database connection not available") from exc


def _get_upload_root() -> Path:
    upload_dir = current_app.config.get("UPLOADS_DIR")
    if not upload_dir:
        raise RuntimeError("UPLOADS_DIR is not configured for the application.")
    root = Path(upload_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@files_bp.get("/types")
def list_file_types() -> tuple[Any, int]:
    return jsonify({"items": [info.to_dict() for info in FILE_TYPES]}), HTTPStatus.OK


@files_bp.get("")
def list_files() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    try:
        files = _get_store().fetch_files(auth_ctx.uid)
    except StoreError as exc:
        return _store_error_response(exc)
    return jsonify({"items": files}), HTTPStatus.OK


@files_bp.get("/<file_id>")
def get_file(file_id: str) -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    try:
        file_row = _get_store().fetch_file(auth_ctx.uid, file_id)
    except StoreError as exc:
        return _store_error_response(exc)
    return jsonify(file_row), HTTPStatus.OK


def _create_youtube_file(uid: str, payload: dict[str, Any]) -> tuple[Any, int]:
    url = (payload.get("url") or "").strip()
    if not _YOUTUBE_URL.match(url):
        return _validation_error("A valid YouTube URL is required.")

    transcript = payload.get("transcript")
    if transcript is not None and not isinstance(transcript, str):
        return _validation_error("transcript must be a string.")

    try:
        file_row = _get_store().insert_file(
            uid,
            {
                "fileName": url,
                "fileType": "youtube",
                "mimeType": None,
                "size": len(transcript or ""),
                "storagePath": None,
                "sourceUrl": url,
                "transcript": (transcript or "").strip(),
            },
        )
    except StoreError as exc:
        return _store_error_response(exc)
    return jsonify({"file": file_row}), HTTPStatus.CREATED


def _save_uploaded_file(uid: str) -> tuple[Any, int]:
    file_type = get_file_type(request.form.get("fileType", type=str))
    if file_type is None:
        return _validation_error("fileType is required.")
    if file_type.coming_soon or file_type.type not in UPLOADABLE_TYPES:
        return _validation_error(f"Uploading {file_type.name} files is not supported yet.")

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _validation_error("file is required.")

    max_size = int(current_app.config.get("MAX_UPLOAD_SIZE", DEFAULT_MAX_UPLOAD_SIZE))

    filename = secure_filename(upload.filename) or "upload"
    mime_type = upload.mimetype or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    if not file_type.accepts(filename, mime_type):
        return _validation_error(f"{filename} is not a {file_type.name} file.")

    upload_root = _get_upload_root()
    user_dir = upload_root / secure_filename(uid)
    user_dir.mkdir(parents=True, exist_ok=True)

    file_id = uuid4().hex
    destination = user_dir / f"{file_id}_{filename}"
    try:
        upload.save(destination)
        size = destination.stat().st_size
    except OSError as exc:
        destination.unlink(missing_ok=True)
        log.exception("Unable to store upload for %s", uid)
        return (
            jsonify({"error": "UPLOAD_FAILED", "message": "Unable to store file.", "detail": str(exc)}),
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    if size == 0 or size > max_size:
        destination.unlink(missing_ok=True)
        return _validation_error("Uploaded file is empty." if size == 0 else "File exceeds maximum allowed size.")

    try:
        file_row = _get_store().insert_file(
            uid,
            {
                "fileName": filename,
                "fileType": file_type.type,
                "mimeType": mime_type,
                "size": size,
                "storagePath": str(destination.relative_to(upload_root)),
            },
            file_id=file_id,
        )
    except StoreError as exc:
        destination.unlink(missing_ok=True)
        return _store_error_response(exc)

    return jsonify({"file": file_row}), HTTPStatus.CREATED


@files_bp.post("")
def upload_file() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    if request.is_json:
        payload = request.get_json(silent=True) or {}
        file_type = get_file_type(payload.get("fileType")) if isinstance(payload, dict) else None
        if file_type is None or file_type.type != "youtube":
            return _validation_error("JSON uploads are only supported for YouTube links.")
        return _create_youtube_file(auth_ctx.uid, payload)

    if not request.content_type or "multipart/form-data" not in request.content_type:
        return _validation_error("Request must be multipart/form-data.")
    return _save_uploaded_file(auth_ctx.uid)


@files_bp.get("/<file_id>/download")
def download_file(file_id: str):
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return exc.to_response()

    try:
        file_row = _get_store().fetch_file(auth_ctx.uid, file_id)
    except StoreError as exc:
        return _store_error_response(exc)

    storage_path = file_row.get("storagePath")
    if not storage_path:
        return (
            jsonify({"error": "FILE_NOT_FOUND", "message": "File has no downloadable content."}),
            HTTPStatus.NOT_FOUND,
        )

    try:
        absolute_path = resolve_storage_path(_get_upload_root(), storage_path)
    except FileContentError:
        absolute_path = None
    if absolute_path is None or not absolute_path.exists():
        return (
            jsonify({"error": "FILE_NOT_FOUND", "message": "File not available."}),
            HTTPStatus.NOT_FOUND,
        )

    download_name = file_row.get("fileName") or absolute_path.name
    return send_file(
        absolute_path,
        mimetype=file_row.get("mimeType") or mimetypes.guess_type(download_name)[0],
        as_attachment=True,
        download_name=download_name,
        conditional=True,
    )
