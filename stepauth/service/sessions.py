from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from stepauth.config import Settings
from stepauth.logging import get_logger
from stepauth.service.errors import SessionInvalid
from stepauth.storage.common import AuthStore
from stepauth.storage.models import SessionRecord

logger = get_logger(__name__)

SESSION_EXPIRY_FORMAT = "%Y-%m-%d %H:%M:%S"


class SessionManager:
    """Creates, validates and revokes server-side sessions bound to a bearer token."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def format_expiry(self, session: SessionRecord) -> str:
        return session.expires_at.astimezone(self.settings.zone).strftime(SESSION_EXPIRY_FORMAT)

    async def create(
        self,
        user_id: str,
        token: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: str = "system",
    ) -> SessionRecord:
        session = SessionRecord.new(
            user_id,
            token,
            now=self._now(),
            ttl_hours=self.settings.session_ttl_hours,
            ip_address=ip,
            user_agent=user_agent,
            device_type=device_type,
        )
        await self.store.create_session(session)
        self.logger.info("session_created", user_id=user_id, session_id=session.id, ip=ip)
        return session

    async def validate(self, session_id: str) -> SessionRecord:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionInvalid(SessionInvalid.NOT_FOUND)
        if not session.is_active:
            raise SessionInvalid(SessionInvalid.INACTIVE)
        if session.expires_at <= self._now():
            raise SessionInvalid(SessionInvalid.EXPIRED)
        return session

    async def revoke(self, session_id: str) -> None:
        revoked = await self.store.revoke_session(session_id, self._now())
        self.logger.info("session_revoked", session_id=session_id, found=revoked)

    async def revoke_all(self, user_id: str) -> int:
        count = await self.store.revoke_user_sessions(user_id, self._now())
        self.logger.info("sessions_revoked", user_id=user_id, count=count)
        return count
