from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from stepauth.logging import get_logger
from stepauth.storage.common import coerce_active
from stepauth.storage.errors import ConstraintViolation
from stepauth.storage.models import Identity, OtpPurpose, OtpRecord, SessionRecord


class MemoryStore:
    """In-process backing store for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.otps: List[OtpRecord] = []
        self.sessions: Dict[str, SessionRecord] = {}
        # Single lock so every read-modify-write is atomic per row
        self._lock = asyncio.Lock()

    # identities
    async def create_identity(
        self,
        *,
        email: Optional[str],
        phone: Optional[str],
        password_hash: Optional[str],
        role: str,
        is_active: object = True,
        user_id: Optional[str] = None,
    ) -> Identity:
        async with self._lock:
            for existing in self.identities.values():
                if existing.role != role:
                    continue
                if email and existing.email == email:
                    raise ConstraintViolation("email already exists for role", {"field": "email"})
                if phone and existing.phone == phone:
                    raise ConstraintViolation("phone already exists for role", {"field": "phone"})
            identity = Identity(
                user_id=user_id or str(uuid.uuid4()),
                email=email,
                phone=phone,
                password_hash=password_hash,
                role=role,
                is_active=coerce_active(is_active),
            )
            self.identities[identity.user_id] = identity
            return replace(identity)

    async def set_identity_active(self, user_id: str, is_active: bool) -> None:
        async with self._lock:
            identity = self.identities.get(user_id)
            if identity:
                identity.is_active = is_active

    async def get_identity_by_email(self, email: str, role: str) -> Optional[Identity]:
        async with self._lock:
            found = next(
                (i for i in self.identities.values() if i.email == email and i.role == role),
                None,
            )
            return replace(found) if found else None

    async def get_identity_by_phone(self, phone: str, role: str) -> Optional[Identity]:
        async with self._lock:
            found = next(
                (i for i in self.identities.values() if i.phone == phone and i.role == role),
                None,
            )
            return replace(found) if found else None

    # one-time codes
    async def create_otp(self, record: OtpRecord) -> OtpRecord:
        async with self._lock:
            if record.user_id not in self.identities:
                raise ConstraintViolation("otp user does not exist", {"user_id": record.user_id})
            self.otps.append(replace(record))
            return record

    async def get_latest_otp(
        self, user_id: str, target: str, purpose: OtpPurpose
    ) -> Optional[OtpRecord]:
        async with self._lock:
            candidates = [
                r
                for r in self.otps
                if r.user_id == user_id and r.purpose == purpose and r.matches_target(target)
            ]
            if not candidates:
                return None
            # max() keeps the first of equal timestamps; later appends must win ties
            latest = max(enumerate(candidates), key=lambda pair: (pair[1].created_at, pair[0]))[1]
            return replace(latest)

    async def mark_otp_used(self, otp_id: str) -> bool:
        async with self._lock:
            for record in self.otps:
                if record.id == otp_id:
                    if record.is_used:
                        return False
                    record.is_used = True
                    return True
            return False

    async def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        async with self._lock:
            for record in self.otps:
                if record.id == otp_id:
                    if record.attempts_count >= max_attempts:
                        return None
                    record.attempts_count += 1
                    return record.attempts_count
            return None

    # sessions
    async def create_session(self, record: SessionRecord) -> SessionRecord:
        async with self._lock:
            if record.user_id not in self.identities:
                raise ConstraintViolation("session user does not exist", {"user_id": record.user_id})
            self.sessions[record.id] = replace(record)
            return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        async with self._lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    async def revoke_session(self, session_id: str, at: datetime) -> bool:
        async with self._lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            sess.is_active = False
            sess.last_activity_at = at
            return True

    async def revoke_user_sessions(self, user_id: str, at: datetime) -> int:
        async with self._lock:
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                revoked += 1
                sess.is_active = False
                sess.last_activity_at = at
            return revoked

    async def close(self) -> None:
        return None
