from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"
DEFAULT_MAX_UPLOAD_SIZE = 10 * 1024 * 1024


@dataclass(slots=True)
class AppConfig:
    port: int
    firebase_credentials_path: Path
    gemini_api_key: Optional[str]
    uploads_dir: Path
    firestore_database_id: Optional[str] = None
    gemini_model: str = DEFAULT_GEMINI_MODEL
    max_upload_size: int = DEFAULT_MAX_UPLOAD_SIZE
    login_url: str = "/login"
    query_retry_count: int = 3
    query_retry_base_delay: float = 1.0
    query_retry_max_delay: float = 30.0
    chat_stale_seconds: float = 30.0
    chat_cache_max_users: int = 1000
    chat_cache_idle_seconds: float = 1800.0
    cors_origins: tuple[str, ...] = ()
    log_level: str = "INFO"


def _resolve_path(path_str: str, base_dir: Path) -> Path:
    # Normalize Windows-style backslashes so paths work across OSes.
    path_str = path_str.strip().replace("\\", "/")
    candidate = Path(path_str).expanduser()
    if candidate.is_absolute():
        return candidate

    for root in (base_dir, base_dir.parent):
        resolved = (root / candidate).resolve()
        if resolved.exists():
            return resolved

    return (base_dir / candidate).resolve()


def _int_env(name: str, default: str, *, minimum: int | None = None) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from exc
    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got '{raw}'") from exc
    if value < 0:
        raise ConfigError(f"{name} must not be negative")
    return value


def _split_tokens(raw: str) -> tuple[str, ...]:
    tokens: list[str] = []
    for token in re.split(r"[\s,]+", raw):
        token_clean = token.strip()
        if token_clean:
            tokens.append(token_clean)
    return tuple(tokens)


def load_config() -> AppConfig:
    """Load configuration from environment variables/.env file."""
    backend_dir = Path(__file__).resolve().parent.parent
    load_dotenv(backend_dir / ".env")

    port = _int_env("PORT", "5000", minimum=1)

    credentials_path_raw = os.getenv("FIREBASE_CREDENTIALS_PATH")
    if not credentials_path_raw:
        raise ConfigError("FIREBASE_CREDENTIALS_PATH is required")

    credentials_path = _resolve_path(credentials_path_raw, backend_dir)
    if not credentials_path.exists():
        raise ConfigError(
            "Firebase credentials file not found at resolved path: "
            f"{credentials_path}"
        )

    gemini_api_key = (os.getenv("GEMINI_API_KEY") or "").strip() or None
    gemini_model = (os.getenv("GEMINI_MODEL") or "").strip() or DEFAULT_GEMINI_MODEL
    firestore_database_id = (os.getenv("FIRESTORE_DATABASE_ID") or "").strip() or None

    uploads_dir_raw = os.getenv("UPLOADS_DIR")
    if uploads_dir_raw:
        uploads_dir = _resolve_path(uploads_dir_raw, backend_dir)
    else:
        uploads_dir = (backend_dir / "uploads").resolve()
    uploads_dir.mkdir(parents=True, exist_ok=True)

    max_upload_size = _int_env("MAX_UPLOAD_SIZE", str(DEFAULT_MAX_UPLOAD_SIZE), minimum=1)

    login_url = (os.getenv("LOGIN_URL") or "").strip() or "/login"

    query_retry_count = _int_env("QUERY_RETRY_COUNT", "3", minimum=0)
    query_retry_base_delay = _float_env("QUERY_RETRY_BASE_DELAY", "1.0")
    query_retry_max_delay = _float_env("QUERY_RETRY_MAX_DELAY", "30.0")
    if query_retry_max_delay < query_retry_base_delay:
        raise ConfigError("QUERY_RETRY_MAX_DELAY must not be smaller than QUERY_RETRY_BASE_DELAY")
    chat_stale_seconds = _float_env("CHAT_STALE_SECONDS", "30")
    chat_cache_max_users = _int_env("CHAT_CACHE_MAX_USERS", "1000", minimum=1)
    chat_cache_idle_seconds = _float_env("CHAT_CACHE_IDLE_SECONDS", "1800")

    cors_origins = _split_tokens(os.getenv("CORS_ORIGINS", ""))
    if not cors_origins:
        cors_origins = (
            r"^https?://localhost(:[0-9]+)?$",
            r"^https?://127\.0\.0\.1(:[0-9]+)?$",
        )

    log_level = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got '{log_level}'")

    return AppConfig(
        port=port,
        firebase_credentials_path=credentials_path,
        gemini_api_key=gemini_api_key,
        uploads_dir=uploads_dir,
        firestore_database_id=firestore_database_id,
        gemini_model=gemini_model,
        max_upload_size=max_upload_size,
        login_url=login_url,
        query_retry_count=query_retry_count,
        query_retry_base_delay=query_retry_base_delay,
        query_retry_max_delay=query_retry_max_delay,
        chat_stale_seconds=chat_stale_seconds,
        chat_cache_max_users=chat_cache_max_users,
        chat_cache_idle_seconds=chat_cache_idle_seconds,
        cors_origins=cors_origins,
        log_level=log_level,
    )
