from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any, Mapping

from ..store.chats import NOT_FOUND_CODE, StoreError

__all__ = [
    "ChatError",
    "ChatErrorKind",
    "RetryConfig",
    "create_chat_error",
    "create_retry_config",
    "error_from_store_error",
    "is_chat_error",
    "validate_chat_id",
    "validate_data",
]

MAX_ID_LENGTH = 128


class ChatErrorKind(str, Enum):
    AUTH_EXPIRED = "AUTH_EXPIRED"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_CHAT_ID = "INVALID_CHAT_ID"
    INVALID_FILE_ID = "INVALID_FILE_ID"
    NO_USER_ID = "NO_USER_ID"
    NO_SUPABASE = "NO_SUPABASE"
    INVALID_DATA = "INVALID_DATA"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_ACCESS_DENIED = "FILE_ACCESS_DENIED"
    CHAT_NOT_FOUND = "CHAT_NOT_FOUND"
    NO_DATA_RETURNED = "NO_DATA_RETURNED"
    INVALID_CHAT_RESPONSE = "INVALID_CHAT_RESPONSE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ChatError(Exception):
    """A classified failure of a chat query or mutation.

    ``code`` is a :class:`ChatErrorKind` value, or an upper-cased store code
    passed through unchanged. ``status`` is an HTTP status; network errors use 0.
    """

    def __init__(self, message: str, code: str, status: int) -> None:
        super().__init__(message)
        self.message = message
        self.code = code.value if isinstance(code, ChatErrorKind) else code
        self.status = status

    def __repr__(self) -> str:
        return f"ChatError(code={self.code!r}, status={self.status}, message={self.message!r})"


def create_chat_error(message: str, code: ChatErrorKind | str, status: int) -> ChatError:
    return ChatError(message, code, status)


def is_chat_error(error: Any) -> bool:
    return isinstance(error, ChatError)


_STORE_CODE_MAP: dict[str, tuple[ChatErrorKind | str, int]] = {
    "unauthenticated": (ChatErrorKind.AUTH_EXPIRED, HTTPStatus.UNAUTHORIZED),
    "unavailable": (ChatErrorKind.NETWORK_ERROR, 0),
    "permission_denied": ("PERMISSION_DENIED", HTTPStatus.FORBIDDEN),
    NOT_FOUND_CODE: ("NOT_FOUND", HTTPStatus.NOT_FOUND),
}


def error_from_store_error(error: StoreError, context: str) -> ChatError:
    """Translate a store failure raised while performing ``context``."""
    code, status = _STORE_CODE_MAP.get(error.code, (error.code.upper(), HTTPStatus.INTERNAL_SERVER_ERROR))
    return ChatError(f"Failed to {context}: {error.message}", code, int(status))


def validate_chat_id(chat_id: Any) -> bool:
    if not isinstance(chat_id, str):
        return False
    cleaned = chat_id.strip()
    return bool(cleaned) and "/" not in cleaned and len(cleaned) <= MAX_ID_LENGTH


def validate_data(data: Any, label: str) -> None:
    if not isinstance(data, Mapping) or not data:
        raise ChatError(f"Invalid {label} provided", ChatErrorKind.INVALID_DATA, HTTPStatus.BAD_REQUEST)


# Kinds that will fail the same way on every attempt.
_NON_RETRYABLE = frozenset(
    {
        ChatErrorKind.AUTH_EXPIRED.value,
        ChatErrorKind.INVALID_CHAT_ID.value,
        ChatErrorKind.INVALID_FILE_ID.value,
        ChatErrorKind.NO_USER_ID.value,
        ChatErrorKind.NO_SUPABASE.value,
        ChatErrorKind.INVALID_DATA.value,
        ChatErrorKind.FILE_NOT_FOUND.value,
        ChatErrorKind.FILE_ACCESS_DENIED.value,
        ChatErrorKind.CHAT_NOT_FOUND.value,
    }
)


@dataclass(slots=True, frozen=True)
class RetryConfig:
    """Bounded retry with exponential backoff for read queries."""

    retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def should_retry(self, failure_count: int, error: BaseException) -> bool:
        if failure_count > self.retries:
            return False
        if isinstance(error, ChatError):
            if error.code in _NON_RETRYABLE:
                return False
            if 400 <= error.status < 500:
                return False
        return True

    def delay(self, failure_count: int) -> float:
        return min(self.base_delay * (2 ** max(failure_count - 1, 0)), self.max_delay)


def create_retry_config(settings: Mapping[str, Any] | None = None) -> RetryConfig:
    """Build the shared retry policy from ``app.config``-style settings."""
    settings = settings or {}
    return RetryConfig(
        retries=int(settings.get("QUERY_RETRY_COUNT", 3)),
        base_delay=float(settings.get("QUERY_RETRY_BASE_DELAY", 1.0)),
        max_delay=float(settings.get("QUERY_RETRY_MAX_DELAY", 30.0)),
    )
