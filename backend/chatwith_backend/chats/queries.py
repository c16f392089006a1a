from __future__ import annotations

import logging
import time
from http import HTTPStatus
from typing import Any, Callable, Mapping, Optional, TypeVar

from firebase_admin import auth as firebase_auth
from google.api_core import exceptions as google_exceptions

from ..auth.utils import AuthError, UserSession
from ..store.chats import NOT_FOUND_CODE, ChatStore, StoreError
from .cache import CHATS_QUERY_KEY, MutationState, QueryCache, QueryState, chat_key
from .conversation import ConversationService
from .errors import (
    ChatError,
    ChatErrorKind,
    RetryConfig,
    create_chat_error,
    error_from_store_error,
    is_chat_error,
    validate_chat_id,
    validate_data,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STALE_SECONDS = 30.0

_AUTH_MARKERS = ("JWT expired", "refresh_token_not_found", "Authentication required", "Token expired")
_NETWORK_MARKERS = ("Failed to fetch", "NetworkError", "Connection refused", "Connection reset")

_AUTH_EXCEPTIONS = (
    firebase_auth.ExpiredIdTokenError,
    firebase_auth.RevokedIdTokenError,
    google_exceptions.Unauthenticated,
)
_NETWORK_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
)


class ChatQueries:
    """Reads and writes a user's chats and keeps a :class:`QueryCache` in step.

    Reads go through a bounded retry policy. Mutations run once and, on
    success, patch the cache: create prepends to the list, update replaces the
    single entry and the list element, delete drops both.
    """

    def __init__(
        self,
        store: Optional[ChatStore],
        cache: QueryCache,
        session: UserSession,
        *,
        conversation: Optional[ConversationService] = None,
        retry_config: Optional[RetryConfig] = None,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        on_auth_expired: Optional[Callable[[], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self.cache = cache
        self.session = session
        self.conversation = conversation
        self.retry_config = retry_config or RetryConfig()
        self.stale_seconds = stale_seconds
        self._on_auth_expired = on_auth_expired
        self._sleep = sleep

    # --- state accessors ---

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id

    @property
    def chats(self) -> list[dict[str, Any]]:
        return self.cache.get_query_data(CHATS_QUERY_KEY) or []

    @property
    def chats_state(self) -> QueryState:
        return self.cache.query_state(CHATS_QUERY_KEY)

    def chat_state(self, chat_id: str) -> QueryState:
        return self.cache.query_state(chat_key(chat_id))

    def mutation_state(self, name: str) -> MutationState:
        return self.cache.mutation_state(name)

    @property
    def deleting_id(self) -> Optional[str]:
        return self.cache.deleting_id

    @deleting_id.setter
    def deleting_id(self, chat_id: Optional[str]) -> None:
        self.cache.deleting_id = chat_id

    def status(self) -> dict[str, Any]:
        return self.cache.status()

    # --- error handling ---

    def _redirect_to_login(self) -> None:
        if self._on_auth_expired is not None:
            self._on_auth_expired()

    def handle_error(self, error: BaseException, context: str) -> ChatError:
        """Classify ``error`` raised during ``context`` into a :class:`ChatError`."""
        log.error("Error in %s: %s", context, error)

        if is_chat_error(error):
            if error.code == ChatErrorKind.AUTH_EXPIRED:
                self._redirect_to_login()
            return error

        message = str(error)
        if (
            isinstance(error, _AUTH_EXCEPTIONS)
            or (isinstance(error, AuthError) and error.session_expired)
            or any(marker in message for marker in _AUTH_MARKERS)
        ):
            self._redirect_to_login()
            return create_chat_error(
                "Authentication expired. Please log in again.",
                ChatErrorKind.AUTH_EXPIRED,
                HTTPStatus.UNAUTHORIZED,
            )

        if isinstance(error, _NETWORK_EXCEPTIONS) or any(marker in message for marker in _NETWORK_MARKERS):
            return create_chat_error("Network error. Please check your connection.", ChatErrorKind.NETWORK_ERROR, 0)

        if isinstance(error, StoreError):
            return error_from_store_error(error, context)

        return create_chat_error(
            f"Unknown error in {context}: {message}" if message else f"Unknown error in {context}",
            ChatErrorKind.UNKNOWN_ERROR,
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    def _validate_user_auth(self) -> str:
        if not self.session.is_authenticated:
            raise create_chat_error("Authentication required", ChatErrorKind.AUTH_EXPIRED, HTTPStatus.UNAUTHORIZED)
        if not self.user_id:
            raise create_chat_error("User not authenticated", ChatErrorKind.NO_USER_ID, HTTPStatus.UNAUTHORIZED)
        if self._store is None:
            raise create_chat_error(
                "Database connection not available",
                ChatErrorKind.NO_SUPABASE,
                HTTPStatus.INTERNAL_SERVER_ERROR,
            )
        return self.user_id

    def _verify_file_owner(self, uid: str, file_id: Any) -> str:
        if not isinstance(file_id, str) or not file_id.strip():
            raise create_chat_error("Valid file ID is required", ChatErrorKind.INVALID_FILE_ID, HTTPStatus.BAD_REQUEST)
        file_id = file_id.strip()

        try:
            file_check = self._store.lookup_file(file_id)
        except StoreError as exc:
            raise error_from_store_error(exc, "verify file") from exc

        if not file_check:
            raise create_chat_error("File not found", ChatErrorKind.FILE_NOT_FOUND, HTTPStatus.NOT_FOUND)
        if file_check.get("uid") != uid:
            raise create_chat_error("File access denied", ChatErrorKind.FILE_ACCESS_DENIED, HTTPStatus.FORBIDDEN)
        return file_id

    # --- runners ---

    def _run_query(self, state: QueryState, context: str, fn: Callable[[], T]) -> T:
        state.start()
        while True:
            try:
                result = fn()
            except Exception as exc:
                error = self.handle_error(exc, context)
                state.failure_count += 1
                if self.retry_config.should_retry(state.failure_count, error):
                    delay = self.retry_config.delay(state.failure_count)
                    log.info("Retrying %s in %.1fs (attempt %d)", context, delay, state.failure_count + 1)
                    self._sleep(delay)
                    continue
                state.fail(error)
                if error is exc:
                    raise
                raise error from exc
            state.succeed()
            return result

    def _run_mutation(
        self,
        name: str,
        context: str,
        fn: Callable[[], T],
        on_success: Callable[[T], None],
    ) -> T:
        state = self.mutation_state(name)
        state.start()
        try:
            result = fn()
        except Exception as exc:
            error = self.handle_error(exc, name)
            state.fail(error)
            log.error("Failed to %s: %s", context, error)
            if error is exc:
                raise
            raise error from exc
        on_success(result)
        state.succeed(result)
        return result

    # --- cache updates ---

    def _update_chat_list_cache(self, updater: Callable[[Optional[list[dict[str, Any]]]], list[dict[str, Any]]]) -> None:
        self.cache.set_query_data(CHATS_QUERY_KEY, updater)

    def _add_chat_to_cache(self, new_chat: dict[str, Any]) -> None:
        self._update_chat_list_cache(lambda old: [new_chat, *(old or [])])

    def _update_chat_in_cache(self, updated_chat: dict[str, Any]) -> None:
        self.cache.set_query_data(chat_key(updated_chat["id"]), updated_chat)

        def _replace(old: Optional[list[dict[str, Any]]]) -> list[dict[str, Any]]:
            if not old:
                return [updated_chat]
            return [updated_chat if chat.get("id") == updated_chat["id"] else chat for chat in old]

        self._update_chat_list_cache(_replace)

    def _remove_chat_from_cache(self, chat_id: str) -> None:
        self.cache.remove_queries(chat_key(chat_id))
        self._update_chat_list_cache(lambda old: [chat for chat in (old or []) if chat.get("id") != chat_id])

    # --- queries ---

    def fetch_chats(self) -> list[dict[str, Any]]:
        """Fetch all chats of the signed-in user, newest first."""

        def _query() -> list[dict[str, Any]]:
            uid = self._validate_user_auth()
            try:
                data = self._store.fetch_chats(uid)
            except StoreError as exc:
                raise error_from_store_error(exc, "fetch chats") from exc
            if not isinstance(data, list):
                raise create_chat_error("Invalid data format received", ChatErrorKind.INVALID_DATA, HTTPStatus.INTERNAL_SERVER_ERROR)
            return data

        data = self._run_query(self.chats_state, "fetchChats", _query)
        self.cache.set_query_data(CHATS_QUERY_KEY, data)
        return data

    def fetch_chat(self, chat_id: str) -> Optional[dict[str, Any]]:
        """Fetch one chat. Returns ``None`` when it does not exist for this user."""
        state = self.chat_state(chat_id) if validate_chat_id(chat_id) else QueryState()
        key = chat_key(chat_id) if isinstance(chat_id, str) else None

        if key is not None and self.cache.is_fresh(key, self.stale_seconds):
            return self.cache.get_query_data(key)

        def _query() -> Optional[dict[str, Any]]:
            uid = self._validate_user_auth()
            if not validate_chat_id(chat_id):
                raise create_chat_error("Invalid chat ID provided", ChatErrorKind.INVALID_CHAT_ID, HTTPStatus.BAD_REQUEST)
            try:
                return self._store.fetch_chat(uid, chat_id)
            except StoreError as exc:
                if exc.code == NOT_FOUND_CODE:
                    return None
                raise error_from_store_error(exc, "fetch chat") from exc

        data = self._run_query(state, "fetchSingleChat", _query)
        if data is None:
            self.cache.remove_queries(key)
        else:
            self.cache.set_query_data(key, data)
        return data

    def get_chat_by_id(self, chat_id: str) -> Optional[dict[str, Any]]:
        """Look a chat up in the cache only: the single entry first, then the list."""
        if not validate_chat_id(chat_id):
            return None
        cached = self.cache.get_query_data(chat_key(chat_id))
        if cached:
            return cached
        return next((chat for chat in self.chats if chat and chat.get("id") == chat_id), None)

    # --- mutations ---

    def start_chat_with_file(self, file_id: str) -> dict[str, Any]:
        """Create a chat about ``file_id`` after checking the file belongs to the caller."""

        def _mutate() -> dict[str, Any]:
            uid = self._validate_user_auth()
            verified_id = self._verify_file_owner(uid, file_id)
            if self.conversation is None:
                raise create_chat_error("Chat service not available", ChatErrorKind.UNKNOWN_ERROR, HTTPStatus.INTERNAL_SERVER_ERROR)

            chat = self.conversation.create_chat_for_file(uid, verified_id)
            if not chat or not chat.get("id"):
                raise create_chat_error(
                    "Failed to create chat - invalid response",
                    ChatErrorKind.INVALID_CHAT_RESPONSE,
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                )
            return chat

        return self._run_mutation("startChatWithFile", "start chat with file", _mutate, self._add_chat_to_cache)

    def create_chat(self, chat_data: Mapping[str, Any]) -> dict[str, Any]:
        def _mutate() -> dict[str, Any]:
            uid = self._validate_user_auth()
            validate_data(chat_data, "chat data")
            payload = dict(chat_data)
            if payload.get("fileId") is not None:
                payload["fileId"] = self._verify_file_owner(uid, payload["fileId"])

            try:
                data = self._store.insert_chat(uid, payload)
            except StoreError as exc:
                raise error_from_store_error(exc, "create chat") from exc
            if not data:
                raise create_chat_error(
                    "No data returned from chat creation",
                    ChatErrorKind.NO_DATA_RETURNED,
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                )
            return data

        return self._run_mutation("createChat", "create chat", _mutate, self._add_chat_to_cache)

    def update_chat(self, chat_id: str, chat_data: Mapping[str, Any]) -> dict[str, Any]:
        def _mutate() -> dict[str, Any]:
            uid = self._validate_user_auth()
            if not validate_chat_id(chat_id):
                raise create_chat_error("Valid chat ID is required", ChatErrorKind.INVALID_CHAT_ID, HTTPStatus.BAD_REQUEST)
            validate_data(chat_data, "chat data")

            try:
                data = self._store.update_chat(uid, chat_id, chat_data)
            except StoreError as exc:
                raise error_from_store_error(exc, "update chat") from exc
            if not data:
                raise create_chat_error("Chat not found or access denied", ChatErrorKind.CHAT_NOT_FOUND, HTTPStatus.NOT_FOUND)
            return data

        return self._run_mutation("updateChat", "update chat", _mutate, self._update_chat_in_cache)

    def delete_chat(self, chat_id: str) -> str:
        def _mutate() -> str:
            uid = self._validate_user_auth()
            if not validate_chat_id(chat_id):
                raise create_chat_error("Valid chat ID is required", ChatErrorKind.INVALID_CHAT_ID, HTTPStatus.BAD_REQUEST)
            try:
                self._store.delete_chat(uid, chat_id)
            except StoreError as exc:
                raise error_from_store_error(exc, "delete chat") from exc
            return chat_id

        return self._run_mutation("deleteChat", "delete chat", _mutate, self._remove_chat_from_cache)

    def handle_delete_chat(self, chat_id: str) -> None:
        if not validate_chat_id(chat_id):
            raise create_chat_error("Valid chat ID is required", ChatErrorKind.INVALID_CHAT_ID, HTTPStatus.BAD_REQUEST)

        self.deleting_id = chat_id
        try:
            self.delete_chat(chat_id)
        finally:
            self.deleting_id = None
