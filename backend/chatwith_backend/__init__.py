from __future__ import annotations

import logging

from flask import Flask
from flask_cors import CORS

from .chats import chats_bp
from .chats.cache import CacheRegistry
from .config import AppConfig, ConfigError, load_config
from .files import files_bp
from .firebase import init_firebase

log = logging.getLogger(__name__)


def create_app(config: AppConfig | None = None) -> Flask:
    """Application factory for the Chat With Anything backend."""
    if config is None:
        try:
            config = load_config()
        except ConfigError as exc:
            raise RuntimeError(f"Configuration error: {exc}") from exc

    app = Flask(__name__)
    app.config.update(
        PORT=config.port,
        FIREBASE_CREDENTIALS_PATH=str(config.firebase_credentials_path),
        FIRESTORE_DATABASE_ID=config.firestore_database_id,
        GEMINI_API_KEY=config.gemini_api_key,
        GEMINI_MODEL=config.gemini_model,
        UPLOADS_DIR=str(config.uploads_dir),
        MAX_UPLOAD_SIZE=config.max_upload_size,
        MAX_CONTENT_LENGTH=config.max_upload_size + 1024 * 1024,
        LOGIN_URL=config.login_url,
        QUERY_RETRY_COUNT=config.query_retry_count,
        QUERY_RETRY_BASE_DELAY=config.query_retry_base_delay,
        QUERY_RETRY_MAX_DELAY=config.query_retry_max_delay,
        CHAT_STALE_SECONDS=config.chat_stale_seconds,
        LOG_LEVEL=config.log_level,
    )

    CORS(app,
         resources={r"/*": {
             "origins": list(config.cors_origins),
             "methods": ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
             "allow_headers": ["Content-Type", "Authorization"],
             "expose_headers": ["Content-Type", "Location"],
             "supports_credentials": True,
             "max_age": 3600,
         }})

    init_firebase(config.firebase_credentials_path, database_id=config.firestore_database_id)

    app.extensions["chat_caches"] = CacheRegistry(
        max_users=config.chat_cache_max_users,
        max_idle=config.chat_cache_idle_seconds,
    )

    app.register_blueprint(chats_bp)
    app.register_blueprint(files_bp)

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    if not config.gemini_api_key:
        log.warning("GEMINI_API_KEY is not set; chat replies will fail until it is configured")

    return app
