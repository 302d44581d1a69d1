"""Backend user session for this device.

The session (token pair plus user profile) is persisted as JSON in the data
directory so the agent survives restarts without asking for credentials
again. Access tokens are refreshed when they are within five minutes of
expiry.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError

from calls.errors import AuthenticationError, BackendError, InvalidSignInError
from integrations.backend_client import BackendClient

LOGGER = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
MIN_PASSWORD_LENGTH = 6
REFRESH_MARGIN = timedelta(minutes=5)


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    STAFF = "staff"
    GUEST = "guest"

    @classmethod
    def from_backend(cls, value: str | None) -> UserRole:
        if value == "system_admin":
            return cls.ADMIN
        if value == "facility_manager":
            return cls.MANAGER
        if value == "guest":
            return cls.GUEST
        return cls.STAFF


class User(BaseModel):
    id: str
    email: str
    name: str | None = None
    facility_id: str | None = None
    role: UserRole = UserRole.STAFF

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name
        return self.email.split("@", 1)[0]

    @property
    def has_management_role(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.MANAGER)

    @classmethod
    def from_profile(cls, user_id: str, row: dict[str, Any] | None, fallback_email: str) -> User:
        if not row:
            return cls(id=user_id, email=fallback_email)
        # Family name first.
        full_name = f"{row.get('last_name') or ''}{row.get('first_name') or ''}".strip()
        return cls(
            id=user_id,
            email=row.get("email") or fallback_email,
            name=full_name or None,
            facility_id=row.get("facility_id"),
            role=UserRole.from_backend(row.get("role")),
        )


class AuthSession(BaseModel):
    user: User
    access_token: str
    refresh_token: str
    expires_at: datetime

    def is_token_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return bool(self.access_token) and now < self.expires_at

    def needs_refresh(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now + REFRESH_MARGIN >= self.expires_at


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _expiry_from_grant(grant: dict[str, Any]) -> datetime:
    if grant.get("expires_at"):
        return datetime.fromtimestamp(int(grant["expires_at"]), tz=timezone.utc)
    return datetime.now(timezone.utc) + timedelta(seconds=int(grant.get("expires_in") or 3600))


class TokenStore:
    """JSON file holding the current session."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def load(self) -> AuthSession | None:
        if not self._path.exists():
            return None
        try:
            return AuthSession.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            LOGGER.warning("Discarding unreadable auth session at %s: %s", self._path, exc)
            return None

    def save(self, session: AuthSession) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(session.model_dump_json(), encoding="utf-8")
        self._path.chmod(0o600)

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class AuthManager:
    def __init__(self, backend: BackendClient, store: TokenStore) -> None:
        self._backend = backend
        self._store = store
        self._session: AuthSession | None = store.load()
        self._refresh_lock = asyncio.Lock()

    @property
    def session(self) -> AuthSession | None:
        return self._session

    @property
    def user(self) -> User | None:
        return self._session.user if self._session else None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and self._session.is_token_valid()

    async def sign_in(self, email: str, password: str) -> User:
        email = normalize_email(email)
        password = password.strip()
        if not EMAIL_PATTERN.match(email):
            raise InvalidSignInError("Invalid email address.")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise InvalidSignInError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")

        try:
            grant = await self._backend.sign_in(email, password)
        except BackendError as exc:
            # GoTrue answers bad credentials with 400.
            if "invalid" in exc.detail.lower() or "credentials" in exc.detail.lower():
                raise AuthenticationError("Invalid login credentials.") from exc
            raise

        user_payload = grant.get("user") or {}
        user_id = str(user_payload.get("id") or "")
        if not user_id or not grant.get("access_token"):
            raise BackendError("Sign-in response is missing the user or token.")
        self._session = AuthSession(
            user=User(id=user_id, email=user_payload.get("email") or email),
            access_token=grant["access_token"],
            refresh_token=grant.get("refresh_token") or "",
            expires_at=_expiry_from_grant(grant),
        )

        try:
            profile = await self._backend.fetch_profile(user_id)
        except BackendError as exc:
            LOGGER.warning("Profile lookup for %s failed: %s", user_id, exc.detail)
            profile = None
        if self._session is None:
            raise AuthenticationError("Session was revoked during sign-in.")
        self._session.user = User.from_profile(user_id, profile, self._session.user.email)
        self._store.save(self._session)
        LOGGER.info("Signed in as %s (%s)", self._session.user.email, self._session.user.role.value)
        return self._session.user

    async def sign_out(self) -> None:
        session, self._session = self._session, None
        self._store.clear()
        if session is None:
            return
        try:
            await self._backend.sign_out(session.access_token)
        except (BackendError, AuthenticationError) as exc:
            LOGGER.warning("Backend sign-out failed; local session cleared anyway: %s", exc.detail)
        LOGGER.info("Signed out %s", session.user.email)

    async def access_token(self) -> str | None:
        """Current access token, refreshed first when close to expiry."""

        if self._session is None:
            return None
        if not self._session.needs_refresh():
            return self._session.access_token
        async with self._refresh_lock:
            if self._session is not None and self._session.needs_refresh():
                await self._refresh()
        return self._session.access_token if self._session else None

    async def _refresh(self) -> None:
        session = self._session
        if session is None or not session.refresh_token:
            return
        try:
            grant = await self._backend.refresh(session.refresh_token)
        except AuthenticationError:
            LOGGER.warning("Refresh token rejected; signing out")
            self._session = None
            self._store.clear()
            return
        except BackendError as exc:
            LOGGER.warning("Token refresh failed: %s", exc.detail)
            return
        self._session = session.model_copy(
            update={
                "access_token": grant.get("access_token") or session.access_token,
                # Refresh tokens rotate on some backends only.
                "refresh_token": grant.get("refresh_token") or session.refresh_token,
                "expires_at": _expiry_from_grant(grant),
            }
        )
        self._store.save(self._session)
        LOGGER.debug("Access token refreshed; expires at %s", self._session.expires_at.isoformat())
