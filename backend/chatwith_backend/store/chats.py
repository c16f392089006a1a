from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

log = logging.getLogger(__name__)

__all__ = [
    "CHATS_COLLECTION",
    "FILES_COLLECTION",
    "NOT_FOUND_CODE",
    "ChatStore",
    "StoreError",
]

CHATS_COLLECTION = "chats"
FILES_COLLECTION = "files"

NOT_FOUND_CODE = "not_found"

# Fields the caller may never overwrite through an update.
_PROTECTED_FIELDS = frozenset({"id", "uid", "createdAt"})


class StoreError(Exception):
    """Raised when a Firestore read or write fails.

    ``code`` is one of ``not_found``, ``permission_denied``, ``unauthenticated``,
    ``unavailable`` or ``store_error``.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"StoreError(code={self.code!r}, message={self.message!r})"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    return value


def _translate(exc: google_exceptions.GoogleAPICallError, action: str) -> StoreError:
    if isinstance(exc, google_exceptions.NotFound):
        code = NOT_FOUND_CODE
    elif isinstance(exc, google_exceptions.PermissionDenied):
        code = "permission_denied"
    elif isinstance(exc, google_exceptions.Unauthenticated):
        code = "unauthenticated"
    elif isinstance(exc, (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded)):
        code = "unavailable"
    else:
        code = "store_error"
    log.warning("Firestore %s failed (%s): %s", action, code, exc)
    return StoreError(code, str(exc) or f"Firestore {action} failed")


def _serialize_file(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "uid": data.get("uid"),
        "fileName": data.get("fileName"),
        "fileType": data.get("fileType"),
        "mimeType": data.get("mimeType"),
        "size": data.get("size"),
        "storagePath": data.get("storagePath"),
        "sourceUrl": data.get("sourceUrl"),
        "transcript": data.get("transcript"),
        "createdAt": _to_iso(data.get("createdAt")),
    }


def _serialize_chat(doc_id: str, data: Mapping[str, Any], file_row: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    return {
        "id": doc_id,
        "uid": data.get("uid"),
        "title": data.get("title"),
        "fileId": data.get("fileId"),
        "messages": list(data.get("messages") or []),
        "createdAt": _to_iso(data.get("createdAt")),
        "updatedAt": _to_iso(data.get("updatedAt")),
        "files": file_row,
    }


class ChatStore:
    """Typed access to the ``chats`` and ``files`` collections.

    Every read and write is scoped by the caller's ``uid``. A document owned by
    another user is indistinguishable from a missing one, so reads raise
    ``StoreError(NOT_FOUND_CODE)`` and writes report zero affected rows.
    """

    def __init__(self, db: Any) -> None:
        self._db = db

    def _chats(self):
        return self._db.collection(CHATS_COLLECTION)

    def _files(self):
        return self._db.collection(FILES_COLLECTION)

    def _owned_snapshot(self, collection, uid: str, doc_id: str, action: str):
        ref = collection.document(doc_id)
        try:
            snapshot = ref.get()
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, action) from exc
        if not snapshot.exists:
            return ref, None
        data = snapshot.to_dict() or {}
        if data.get("uid") != uid:
            return ref, None
        return ref, data

    def _embedded_file(self, uid: str, file_id: Any, cache: dict[str, Any]) -> Optional[dict[str, Any]]:
        if not isinstance(file_id, str) or not file_id:
            return None
        if file_id not in cache:
            _, data = self._owned_snapshot(self._files(), uid, file_id, "fetch file")
            cache[file_id] = _serialize_file(file_id, data) if data is not None else None
        return cache[file_id]

    # --- chats ---

    def fetch_chats(self, uid: str) -> list[dict[str, Any]]:
        query = (
            self._chats()
            .where(filter=FieldFilter("uid", "==", uid))
            .order_by("createdAt", direction=firebase_firestore.Query.DESCENDING)
        )
        try:
            docs = list(query.stream())
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "fetch chats") from exc

        file_cache: dict[str, Any] = {}
        rows = []
        for doc in docs:
            data = doc.to_dict() or {}
            if data.get("uid") != uid:
                continue
            rows.append(_serialize_chat(doc.id, data, self._embedded_file(uid, data.get("fileId"), file_cache)))
        return rows

    def fetch_chat(self, uid: str, chat_id: str) -> dict[str, Any]:
        _, data = self._owned_snapshot(self._chats(), uid, chat_id, "fetch chat")
        if data is None:
            raise StoreError(NOT_FOUND_CODE, f"Chat {chat_id} not found")
        return _serialize_chat(chat_id, data, self._embedded_file(uid, data.get("fileId"), {}))

    def insert_chat(self, uid: str, data: Mapping[str, Any]) -> dict[str, Any]:
        now = _now()
        payload = {key: value for key, value in data.items() if key not in _PROTECTED_FIELDS}
        payload.setdefault("messages", [])
        payload.update({"uid": uid, "createdAt": now, "updatedAt": now})

        ref = self._chats().document()
        try:
            ref.set(payload)
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "insert chat") from exc
        log.info("Created chat %s for user %s", ref.id, uid)
        return _serialize_chat(ref.id, payload, self._embedded_file(uid, payload.get("fileId"), {}))

    def update_chat(self, uid: str, chat_id: str, data: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        ref, current = self._owned_snapshot(self._chats(), uid, chat_id, "update chat")
        if current is None:
            return None

        updates = {key: value for key, value in data.items() if key not in _PROTECTED_FIELDS}
        updates["updatedAt"] = _now()
        try:
            ref.update(updates)
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "update chat") from exc

        current.update(updates)
        return _serialize_chat(chat_id, current, self._embedded_file(uid, current.get("fileId"), {}))

    def delete_chat(self, uid: str, chat_id: str) -> int:
        ref, current = self._owned_snapshot(self._chats(), uid, chat_id, "delete chat")
        if current is None:
            return 0
        try:
            ref.delete()
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "delete chat") from exc
        log.info("Deleted chat %s for user %s", chat_id, uid)
        return 1

    # --- files ---

    def lookup_file(self, file_id: str) -> Optional[dict[str, Any]]:
        """Return ``{"id", "uid"}`` for a file regardless of its owner, or ``None``."""
        try:
            snapshot = self._files().document(file_id).get()
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "verify file") from exc
        if not snapshot.exists:
            return None
        data = snapshot.to_dict() or {}
        return {"id": file_id, "uid": data.get("uid")}

    def fetch_files(self, uid: str) -> list[dict[str, Any]]:
        query = (
            self._files()
            .where(filter=FieldFilter("uid", "==", uid))
            .order_by("createdAt", direction=firebase_firestore.Query.DESCENDING)
        )
        try:
            docs = list(query.stream())
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "fetch files") from exc
        return [
            _serialize_file(doc.id, doc.to_dict() or {})
            for doc in docs
            if (doc.to_dict() or {}).get("uid") == uid
        ]

    def fetch_file(self, uid: str, file_id: str) -> dict[str, Any]:
        _, data = self._owned_snapshot(self._files(), uid, file_id, "fetch file")
        if data is None:
            raise StoreError(NOT_FOUND_CODE, f"File {file_id} not found")
        return _serialize_file(file_id, data)

    def insert_file(self, uid: str, data: Mapping[str, Any], file_id: Optional[str] = None) -> dict[str, Any]:
        payload = {key: value for key, value in data.items() if key not in _PROTECTED_FIELDS}
        payload.update({"uid": uid, "createdAt": _now()})

        ref = self._files().document(file_id) if file_id else self._files().document()
        try:
            ref.set(payload)
        except google_exceptions.GoogleAPICallError as exc:
            raise _translate(exc, "insert file") from exc
        log.info("Stored file %s (%s) for user %s", ref.id, payload.get("fileType"), uid)
        return _serialize_file(ref.id, payload)
