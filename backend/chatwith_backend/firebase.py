from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud import firestore as gcloud_firestore

log = logging.getLogger(__name__)

_DEFAULT_DATABASE_IDS = frozenset({"(default)", "default", ""})


@dataclass(slots=True)
class _FirebaseState:
    app: Optional[firebase_admin.App] = None
    database_id: Optional[str] = None
    project_id: Optional[str] = None
    client: Any = None


_state = _FirebaseState()
_state_lock = threading.Lock()


def _project_id_from(credentials_path: Path) -> Optional[str]:
    override = (os.getenv("FIREBASE_PROJECT_ID") or "").strip()
    if override:
        return override
    try:
        return json.loads(Path(credentials_path).read_text(encoding="utf-8")).get("project_id")
    except (OSError, ValueError) as exc:
        log.warning("Could not read project_id from %s: %s", credentials_path, exc)
        return None


def init_firebase(credentials_path: Path, database_id: Optional[str] = None) -> firebase_admin.App:
    """Initialise the Firebase app once and select the Firestore database to use.

    Calling it again with a different ``database_id`` switches databases and
    drops the cached client.
    """
    with _state_lock:
        if _state.app is None:
            project_id = _project_id_from(credentials_path)
            if firebase_admin._apps:
                _state.app = firebase_admin.get_app()
            else:
                _state.app = firebase_admin.initialize_app(
                    credentials.Certificate(str(credentials_path)),
                    options={"projectId": project_id} if project_id else None,
                )
                log.info("Initialized Firebase app for project '%s'", project_id or "<auto>")
            _state.project_id = project_id or getattr(_state.app, "project_id", None)
        elif database_id == _state.database_id:
            return _state.app

        _state.database_id = database_id
        _state.client = None
        log.info("Using Firestore database '%s'", database_id or "(default)")
        return _state.app


def get_firestore_client() -> Any:
    """Return the shared Firestore client, creating it on first use."""
    with _state_lock:
        if _state.app is None:
            raise RuntimeError("Firebase is not initialised; call init_firebase() during app start-up.")
        if _state.client is not None:
            return _state.client

        if (_state.database_id or "") in _DEFAULT_DATABASE_IDS:
            _state.client = firestore.client(app=_state.app)
        else:
            if not _state.project_id:
                raise RuntimeError("Cannot open a named Firestore database without a project id.")
            _state.client = gcloud_firestore.Client(
                project=_state.project_id,
                credentials=_state.app.credential.get_credential(),
                database=_state.database_id,
            )
            log.debug("Opened Firestore database '%s' in project '%s'", _state.database_id, _state.project_id)
        return _state.client
