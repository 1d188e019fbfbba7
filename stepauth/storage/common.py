"""Storage contract and helpers shared between memory and postgres implementations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from stepauth.storage.models import Identity, OtpPurpose, OtpRecord, SessionRecord

_TRUTHY = {"true", "t", "1", "yes", "y", "on", "active"}


class AuthStore(Protocol):
    """Durable collaborator consumed by the login services.

    Every call is a suspension point; implementations must make each write a
    single atomic row operation.
    """

    async def get_identity_by_email(self, email: str, role: str) -> Optional[Identity]: ...

    async def get_identity_by_phone(self, phone: str, role: str) -> Optional[Identity]: ...

    async def create_otp(self, record: OtpRecord) -> OtpRecord: ...

    async def get_latest_otp(
        self, user_id: str, target: str, purpose: OtpPurpose
    ) -> Optional[OtpRecord]: ...

    async def mark_otp_used(self, otp_id: str) -> bool: ...

    async def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        """Count one attempt unless `max_attempts` are already spent; None when refused."""
        ...

    async def create_session(self, record: SessionRecord) -> SessionRecord: ...

    async def get_session(self, session_id: str) -> Optional[SessionRecord]: ...

    async def revoke_session(self, session_id: str, at: datetime) -> bool: ...

    async def revoke_user_sessions(self, user_id: str, at: datetime) -> int: ...

    async def close(self) -> None: ...


def coerce_active(value: Any) -> bool:
    """Convert legacy active-flag encodings ('true', 't', 1, ...) to a boolean.

    Applied once when a row crosses the store boundary so services only ever
    see real booleans.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUTHY


def ensure_aware(value: datetime) -> datetime:
    """Treat naive timestamps as UTC so comparisons never depend on server zone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
