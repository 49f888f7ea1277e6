from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from generous.config import Settings
from generous.logging import get_logger
from generous.storage.models import Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str, handle: Optional[str] = None) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_session(self, user_id: str, ttl_minutes: int = 60 * 24) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: Optional[str] = None


class AuthService:
    """Opaque session lookup for the workflow API.

    Credentials arrive either as ``Authorization: Bearer <session id>`` or in a
    ``session_id`` header. Sessions are issued out of band (see
    ``scripts/bootstrap_user.py``).
    """

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess:
            return None
        if sess.expires_at <= self._now():
            self.logger.info("session_expired", session_id=session_id)
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        return AuthContext(user_id=user.id, session_id=sess.id)

    async def authenticate(
        self, authorization: Optional[str], session_id: Optional[str]
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token:
            ctx = await self.resolve_session(token)
            if ctx:
                return ctx
        return await self.resolve_session(session_id)

    def issue_session(self, email: str, *, handle: Optional[str] = None) -> tuple[User, Session]:
        """Create the user if needed and hand back a fresh session."""
        user = self.store.get_user_by_email(email)
        if not user:
            user = self.store.create_user(email, handle)
            self.logger.info("user_created", user_id=user.id)
        sess = self.store.create_session(user.id, ttl_minutes=self.settings.session_ttl_minutes)
        self.logger.info("session_issued", user_id=user.id, session_id=sess.id)
        return user, sess

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
