"""Operator token authentication for the allocation API."""

from __future__ import annotations

import secrets
import threading
from typing import Optional

from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing but a login is attempted."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when an operator token or session token does not match."""


class AuthService:
    """Exchanges the operator token for bearer sessions and validates them.

    With no ``ADMIN_TOKEN`` configured the gate is open.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: set[str] = set()
        self._lock = threading.Lock()

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    def _expected_token(self) -> str:
        if not self._settings.admin_token:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured; operator login is unavailable"
            )
        return self._settings.admin_token

    def login(self, provided_admin_token: str) -> str:
        expected = self._expected_token()
        if not secrets.compare_digest(provided_admin_token, expected):
            logger.warning("Operator login rejected")
            raise InvalidAdminTokenError("Invalid admin token")
        session = secrets.token_urlsafe(32)
        with self._lock:
            self._sessions.add(session)
        logger.info("Operator session opened | active_sessions=%s", len(self._sessions))
        return session

    def logout(self, bearer_token: str) -> None:
        with self._lock:
            self._sessions.discard(bearer_token)

    def validate_bearer_token(self, bearer_token: str) -> None:
        if not self.auth_enabled:
            return
        with self._lock:
            sessions = list(self._sessions)
        if not sessions:
            raise InvalidAdminTokenError("No active session. Login first.")
        if not any(secrets.compare_digest(bearer_token, session) for session in sessions):
            raise InvalidAdminTokenError("Invalid bearer token")
