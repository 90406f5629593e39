"""
Firebase Admin bootstrap for the Firestore-backed ledger stores.

Process-wide and idempotent: the first caller initializes the default app with
Application Default Credentials, later callers reuse it. Local runs are
pointed at the Firestore emulator unless production access is explicitly
allowed, so a developer laptop never writes real ledgers by accident.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional

import firebase_admin
import google.auth
from firebase_admin import credentials, firestore
from google.auth import exceptions as auth_exceptions

from ledger_engine.common.logging import log_event

logger = logging.getLogger(__name__)

_PROJECT_ENV_VARS = ("FIREBASE_PROJECT_ID", "FIRESTORE_PROJECT_ID", "GOOGLE_CLOUD_PROJECT")
_MANAGED_RUNTIME_VARS = ("K_SERVICE", "CLOUD_RUN_JOB")
_app_lock = threading.Lock()


class FirestoreConfigError(RuntimeError):
    pass


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


def running_locally() -> bool:
    if _env("ENV").lower() == "local":
        return True
    if any(_env(n) for n in _MANAGED_RUNTIME_VARS):
        return False
    return not any(k.startswith("GAE_") for k in os.environ)


def check_local_firestore_target() -> None:
    """Raise FirestoreConfigError for a local run aimed at production Firestore."""
    if not running_locally() or _env("FIRESTORE_EMULATOR_HOST") or _env("ALLOW_PROD_FIRESTORE") == "1":
        return
    log_event(logger, "firestore.local_guard_refused", severity="ERROR")
    raise FirestoreConfigError(
        "local run without FIRESTORE_EMULATOR_HOST; set ALLOW_PROD_FIRESTORE=1 to use a real project"
    )


def _project_id(explicit: Optional[str]) -> str:
    project = explicit or next((v for v in map(_env, _PROJECT_ENV_VARS) if v), None)
    if project:
        return project
    try:
        _, project = google.auth.default()
    except auth_exceptions.DefaultCredentialsError as e:
        raise FirestoreConfigError("no Firebase project id configured and ADC is unavailable") from e
    if not project:
        raise FirestoreConfigError("set FIREBASE_PROJECT_ID; ADC did not supply a project id")
    return project


def _ensure_app(project_id: Optional[str]) -> firebase_admin.App:
    with _app_lock:
        try:
            return firebase_admin.get_app()
        except ValueError:
            pass
        project = _project_id(project_id)
        app = firebase_admin.initialize_app(credentials.ApplicationDefault(), {"projectId": project})
        log_event(logger, "firestore.initialized", project_id=project)
        return app


def get_firestore_client(*, project_id: Optional[str] = None):
    check_local_firestore_target()
    return firestore.client(app=_ensure_app(project_id))
