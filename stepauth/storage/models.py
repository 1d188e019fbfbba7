from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OtpPurpose(str, Enum):
    """Why a one-time code was issued."""

    LOGIN = "LOGIN"
    PASSWORD_RESET = "PASSWORD_RESET"
    VERIFICATION = "VERIFICATION"


@dataclass
class Identity:
    user_id: str
    email: Optional[str]
    phone: Optional[str]
    password_hash: Optional[str]
    role: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class OtpRecord:
    id: str
    user_id: str
    code: str
    purpose: OtpPurpose
    created_at: datetime
    expires_at: datetime
    phone: Optional[str] = None
    email: Optional[str] = None
    is_used: bool = False
    attempts_count: int = 0
    ip_address: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        code: str,
        purpose: OtpPurpose,
        *,
        created_at: datetime,
        expires_at: datetime,
        phone: str | None = None,
        email: str | None = None,
        ip_address: str | None = None,
    ) -> "OtpRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            code=code,
            purpose=purpose,
            created_at=created_at,
            expires_at=expires_at,
            phone=phone,
            email=email,
            ip_address=ip_address,
        )

    def matches_target(self, target: str) -> bool:
        return target in {self.phone, self.email}


@dataclass
class SessionRecord:
    id: str
    user_id: str
    token: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    device_type: str = "system"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        *,
        now: datetime,
        ttl_hours: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_type: str = "system",
    ) -> "SessionRecord":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            created_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            last_activity_at=now,
            device_type=device_type,
            ip_address=ip_address,
            user_agent=user_agent,
        )
