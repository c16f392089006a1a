from __future__ import annotations

import logging
from http import HTTPStatus
from pathlib import Path
from typing import Any, Mapping, Optional

from ..ai.gemini import DEFAULT_MODEL, ChatMessage, GeminiReply, send_message_to_gemini
from ..files.extract import FileContentError, extract_file_context
from ..store.chats import NOT_FOUND_CODE, ChatStore, StoreError
from .errors import ChatError, ChatErrorKind, error_from_store_error

log = logging.getLogger(__name__)

DEFAULT_CHAT_TITLE = "New chat"
MAX_TITLE_LENGTH = 80


def _title_for_file(file_row: Mapping[str, Any]) -> str:
    title = (file_row.get("fileName") or file_row.get("sourceUrl") or "").strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rstrip()
    return title or DEFAULT_CHAT_TITLE


class ConversationService:
    """Creates file-backed chats and produces model replies for them."""

    def __init__(
        self,
        store: ChatStore,
        *,
        api_key: Optional[str],
        uploads_root: Path,
        model: str = DEFAULT_MODEL,
    ) -> None:
        self._store = store
        self._api_key = api_key
        self._uploads_root = Path(uploads_root)
        self._model = model

    def create_chat_for_file(self, uid: str, file_id: str) -> dict[str, Any]:
        try:
            file_row = self._store.fetch_file(uid, file_id)
        except StoreError as exc:
            if exc.code == NOT_FOUND_CODE:
                raise ChatError("File not found", ChatErrorKind.FILE_NOT_FOUND, HTTPStatus.NOT_FOUND) from exc
            raise error_from_store_error(exc, "load file") from exc

        try:
            return self._store.insert_chat(uid, {"title": _title_for_file(file_row), "fileId": file_id, "messages": []})
        except StoreError as exc:
            raise error_from_store_error(exc, "create chat") from exc

    def respond(self, uid: str, chat: Mapping[str, Any], content: str) -> tuple[list[dict[str, str]], GeminiReply]:
        """Answer ``content`` in the context of ``chat``.

        Returns the chat history including the new user turn and, when the
        model answered, the model turn. Nothing is written to the store.
        """
        file_row = chat.get("files")
        if file_row is None and chat.get("fileId"):
            try:
                file_row = self._store.fetch_file(uid, chat["fileId"])
            except StoreError as exc:
                if exc.code != NOT_FOUND_CODE:
                    raise error_from_store_error(exc, "load file") from exc
                log.warning("Chat %s references missing file %s", chat.get("id"), chat.get("fileId"))
                file_row = None

        try:
            context = extract_file_context(file_row, self._uploads_root)
        except FileContentError as exc:
            log.warning("Unable to load content for chat %s: %s", chat.get("id"), exc)
            raise ChatError(str(exc), ChatErrorKind.FILE_NOT_FOUND, HTTPStatus.NOT_FOUND) from exc

        history = [ChatMessage.from_value(message).to_dict() for message in chat.get("messages") or []]
        history.append(ChatMessage(role="user", content=content).to_dict())

        reply = send_message_to_gemini(
            history,
            context.file_content,
            context.image_data,
            api_key=self._api_key,
            model=self._model,
            file_type=context.file_type,
        )
        if reply.ok:
            history.append(ChatMessage(role="model", content=reply.text).to_dict())
        else:
            log.warning("Gemini failed for chat %s: %s (%s)", chat.get("id"), reply.error, reply.detail)
        return history, reply
