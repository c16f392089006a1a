from __future__ import annotations

import logging
from http import HTTPStatus
from pathlib import Path
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from ..ai.gemini import DEFAULT_MODEL
from ..auth.utils import AuthContext, AuthError, login_redirect_url, require_firebase_user
from ..firebase import get_firestore_client
from ..store.chats import ChatStore
from .cache import CacheRegistry
from .conversation import ConversationService
from .errors import ChatError, ChatErrorKind, create_retry_config
from .queries import ChatQueries

chats_bp = Blueprint("chats", __name__, url_prefix="/chats")
log = logging.getLogger(__name__)

# Fields a client may change through PATCH /chats/<id>.
_EDITABLE_FIELDS = ("title",)


def _parse_json_body() -> dict[str, Any]:
    if request.is_json:
        payload = request.get_json(silent=True) or {}
    else:
        payload = {}
    return payload if isinstance(payload, dict) else {}


def _flag_login_redirect() -> None:
    g.login_redirect = login_redirect_url()


def _chat_error_response(error: ChatError) -> tuple[Any, int, dict[str, str]]:
    body: dict[str, Any] = {"error": error.code, "message": error.message}
    headers: dict[str, str] = {}
    redirect_url = g.get("login_redirect")
    if error.code == ChatErrorKind.AUTH_EXPIRED and redirect_url:
        body["redirect"] = redirect_url
        headers["Location"] = redirect_url
    status = error.status or HTTPStatus.SERVICE_UNAVAILABLE
    return jsonify(body), status, headers


def _auth_error_response(exc: AuthError) -> tuple[Any, int, dict[str, str]]:
    if not exc.session_expired:
        return exc.to_response()
    _flag_login_redirect()
    return _chat_error_response(
        ChatError("Authentication expired. Please log in again.", ChatErrorKind.AUTH_EXPIRED, HTTPStatus.UNAUTHORIZED)
    )


def _cache_registry() -> CacheRegistry:
    registry = current_app.extensions.get("chat_caches")
    if registry is None:
        registry = current_app.extensions["chat_caches"] = CacheRegistry()
    return registry


def _build_store() -> ChatStore | None:
    try:
        return ChatStore(get_firestore_client())
    except RuntimeError as exc:
        log.error("Firestore unavailable: %s", exc)
        return None


def build_chat_queries(auth_ctx: AuthContext) -> ChatQueries:
    config = current_app.config
    store = _build_store()
    conversation = None
    if store is not None:
        conversation = ConversationService(
            store,
            api_key=config.get("GEMINI_API_KEY"),
            uploads_root=Path(config.get("UPLOADS_DIR") or "uploads"),
            model=config.get("GEMINI_MODEL") or DEFAULT_MODEL,
        )
    return ChatQueries(
        store,
        _cache_registry().for_user(auth_ctx.uid),
        auth_ctx.session(),
        conversation=conversation,
        retry_config=create_retry_config(config),
        stale_seconds=float(config.get("CHAT_STALE_SECONDS", 30)),
        on_auth_expired=_flag_login_redirect,
    )


@chats_bp.get("")
def list_chats() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    queries = build_chat_queries(auth_ctx)
    try:
        chats = queries.fetch_chats()
    except ChatError as exc:
        return _chat_error_response(exc)

    return jsonify({"items": chats}), HTTPStatus.OK


@chats_bp.get("/status")
def query_status() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    return jsonify(build_chat_queries(auth_ctx).status()), HTTPStatus.OK


@chats_bp.get("/<chat_id>")
def get_chat(chat_id: str) -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    queries = build_chat_queries(auth_ctx)
    try:
        chat = queries.fetch_chat(chat_id)
    except ChatError as exc:
        return _chat_error_response(exc)

    if chat is None:
        return (
            jsonify({"error": ChatErrorKind.CHAT_NOT_FOUND.value, "message": "Chat not found."}),
            HTTPStatus.NOT_FOUND,
        )
    return jsonify(chat), HTTPStatus.OK


@chats_bp.post("")
def create_chat() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    payload = _parse_json_body()
    chat_data: dict[str, Any] = {}
    title = payload.get("title")
    if isinstance(title, str) and title.strip():
        chat_data["title"] = title.strip()
    if payload.get("fileId") is not None:
        chat_data["fileId"] = payload.get("fileId")

    queries = build_chat_queries(auth_ctx)
    try:
        chat = queries.create_chat(chat_data)
    except ChatError as exc:
        return _chat_error_response(exc)

    return jsonify(chat), HTTPStatus.CREATED


@chats_bp.post("/from-file")
def start_chat_with_file() -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    payload = _parse_json_body()
    queries = build_chat_queries(auth_ctx)
    try:
        chat = queries.start_chat_with_file(payload.get("fileId"))
    except ChatError as exc:
        return _chat_error_response(exc)

    return jsonify(chat), HTTPStatus.CREATED


@chats_bp.patch("/<chat_id>")
def update_chat(chat_id: str) -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    payload = _parse_json_body()
    updates: dict[str, Any] = {}
    for field in _EDITABLE_FIELDS:
        if field in payload:
            value = payload.get(field)
            if not isinstance(value, str) or not value.strip():
                return _chat_error_response(
                    ChatError(f"{field} must be a non-empty string", ChatErrorKind.INVALID_DATA, HTTPStatus.BAD_REQUEST)
                )
            updates[field] = value.strip()

    queries = build_chat_queries(auth_ctx)
    try:
        chat = queries.update_chat(chat_id, updates)
    except ChatError as exc:
        return _chat_error_response(exc)

    return jsonify(chat), HTTPStatus.OK


@chats_bp.delete("/<chat_id>")
def delete_chat(chat_id: str):
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    queries = build_chat_queries(auth_ctx)
    try:
        queries.handle_delete_chat(chat_id)
    except ChatError as exc:
        return _chat_error_response(exc)

    return "", HTTPStatus.NO_CONTENT


@chats_bp.post("/<chat_id>/messages")
def send_message(chat_id: str) -> tuple[Any, int]:
    try:
        auth_ctx = require_firebase_user()
    except AuthError as exc:
        return _auth_error_response(exc)

    payload = _parse_json_body()
    content = payload.get("content")
    if not isinstance(content, str) or not content.strip():
        return (
            jsonify({"error": ChatErrorKind.INVALID_DATA.value, "message": "content is required."}),
            HTTPStatus.BAD_REQUEST,
        )

    queries = build_chat_queries(auth_ctx)
    try:
        chat = queries.fetch_chat(chat_id)
        if chat is None:
            raise ChatError("Chat not found.", ChatErrorKind.CHAT_NOT_FOUND, HTTPStatus.NOT_FOUND)
        if queries.conversation is None:
            raise ChatError("Database connection not available", ChatErrorKind.NO_SUPABASE, HTTPStatus.INTERNAL_SERVER_ERROR)

        history, reply = queries.conversation.respond(auth_ctx.uid, chat, content.strip())
        if not reply.ok:
            status = HTTPStatus.SERVICE_UNAVAILABLE if reply.error == "not_configured" else HTTPStatus.BAD_GATEWAY
            return (
                jsonify({"error": reply.error, "message": reply.text, "detail": reply.detail}),
                status,
            )

        updated = queries.update_chat(chat_id, {"messages": history})
    except ChatError as exc:
        return _chat_error_response(exc)

    return jsonify({"chat": updated, "reply": reply.text}), HTTPStatus.CREATED
