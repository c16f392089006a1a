from __future__ import annotations

from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Optional

from flask import current_app, has_app_context, jsonify, request
from firebase_admin import auth as firebase_auth
from firebase_admin import exceptions as firebase_exceptions

DEFAULT_LOGIN_URL = "/login"

# Error codes that mean the caller's session is gone and they must sign in again.
SESSION_EXPIRED_ERRORS = frozenset({"unauthorized", "token_expired", "token_revoked"})

# Checked in order; the expired/revoked errors subclass InvalidIdTokenError.
_TOKEN_ERRORS: tuple[tuple[type[Exception], str, str], ...] = (
    (firebase_auth.ExpiredIdTokenError, "token_expired", "Authentication expired. Please log in again."),
    (firebase_auth.RevokedIdTokenError, "token_revoked", "Authentication token has been revoked."),
    (firebase_auth.InvalidIdTokenError, "invalid_token", "Authentication token is malformed."),
    (firebase_exceptions.InvalidArgumentError, "invalid_token", "Authentication token is malformed."),
)


class AuthError(Exception):
    """Raised when a request cannot be authenticated.

    Errors in ``SESSION_EXPIRED_ERRORS`` render with a ``redirect`` field and a
    ``Location`` header pointing at the login page.
    """

    def __init__(self, error: str, message: str, status: HTTPStatus) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status = status

    @property
    def session_expired(self) -> bool:
        return self.error in SESSION_EXPIRED_ERRORS

    def to_response(self) -> tuple[Any, int, dict[str, str]]:
        body: dict[str, Any] = {"error": self.error, "message": self.message}
        headers: dict[str, str] = {}
        if self.session_expired:
            body["redirect"] = headers["Location"] = login_redirect_url()
        return jsonify(body), self.status, headers


@dataclass(slots=True, frozen=True)
class UserSession:
    """Identity handed from the auth boundary to the chat queries."""

    user_id: Optional[str]
    is_authenticated: bool = True


@dataclass(slots=True)
class AuthContext:
    uid: str
    token: str
    decoded_token: dict[str, Any]

    def session(self) -> UserSession:
        return UserSession(user_id=self.uid, is_authenticated=True)


def login_redirect_url() -> str:
    if has_app_context():
        return current_app.config.get("LOGIN_URL") or DEFAULT_LOGIN_URL
    return DEFAULT_LOGIN_URL


def _bearer_token(auth_header: str) -> str:
    scheme, _, token = auth_header.strip().partition(" ")
    if not scheme:
        raise AuthError("unauthorized", "Authorization header is required.", HTTPStatus.UNAUTHORIZED)
    if scheme.lower() != "bearer":
        raise AuthError("unauthorized", "Authorization header must be of the form 'Bearer <token>'.", HTTPStatus.UNAUTHORIZED)
    token = token.strip()
    if not token:
        raise AuthError("unauthorized", "Bearer token is empty.", HTTPStatus.UNAUTHORIZED)
    return token


def verify_authorization_header(auth_header: Optional[str]) -> AuthContext:
    """Verify a raw ``Authorization`` header value against Firebase Auth."""
    token = _bearer_token(auth_header or "")

    try:
        decoded = firebase_auth.verify_id_token(token)
    except firebase_exceptions.FirebaseError as exc:
        for exc_type, code, message in _TOKEN_ERRORS:
            if isinstance(exc, exc_type):
                raise AuthError(code, message, HTTPStatus.UNAUTHORIZED) from None
        raise AuthError("firebase_auth_error", str(exc), HTTPStatus.INTERNAL_SERVER_ERROR) from exc
    except ValueError:
        raise AuthError("invalid_token", "Authentication token is malformed.", HTTPStatus.UNAUTHORIZED) from None

    uid = decoded.get("uid")
    if not isinstance(uid, str) or not uid:
        raise AuthError("invalid_token", "Authentication token missing uid claim.", HTTPStatus.UNAUTHORIZED)

    return AuthContext(uid=uid, token=token, decoded_token=decoded)


def require_firebase_user() -> AuthContext:
    """Authenticate the current request from its bearer token."""
    return verify_authorization_header(request.headers.get("Authorization"))
