from __future__ import annotations

import asyncio
import contextlib
import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from redis.exceptions import RedisError

from stepauth.config import Settings
from stepauth.logging import get_logger, mask_target
from stepauth.service.delivery import OtpNotifier
from stepauth.service.errors import (
    InternalError,
    OtpAttemptsExceeded,
    OtpExpired,
    OtpMismatch,
    OtpNotFound,
    OtpUsed,
)
from stepauth.storage.common import AuthStore
from stepauth.storage.models import Identity, OtpPurpose, OtpRecord
from stepauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

LOCAL_EXPIRY_FORMAT = "%d/%m/%Y %H:%M:%S"
_LOCK_POLL_SECONDS = 0.05


@dataclass
class IssuedCode:
    code: str
    expires_at: datetime
    expires_local: str
    record: OtpRecord


class OtpEngine:
    """Generates, persists, delivers and verifies numeric one-time codes.

    Only the most recent record for a (user, purpose) pair can be verified;
    older records stay in the store but are never looked at again. Issuance
    for the same pair is serialized so "latest" is well defined.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        notifier: OtpNotifier,
        *,
        cache: Optional[RedisCache] = None,
        clock: Optional[Callable[[], datetime]] = None,
        code_factory: Optional[Callable[[int], str]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.notifier = notifier
        self.cache = cache
        self._clock = clock
        self._code_factory = code_factory or self._generate_code
        self._local_locks: Dict[str, List[Any]] = {}
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    @staticmethod
    def _generate_code(length: int) -> str:
        return str(secrets.randbelow(10**length)).zfill(length)

    def _expiry_for(self, now: datetime) -> datetime:
        local_now = now.astimezone(self.settings.zone)
        expires = local_now + timedelta(minutes=self.settings.otp_ttl_minutes)
        return expires.astimezone(timezone.utc)

    def format_local(self, instant: datetime) -> str:
        return instant.astimezone(self.settings.zone).strftime(LOCAL_EXPIRY_FORMAT)

    @contextlib.asynccontextmanager
    async def _issue_lock(self, user_id: str, purpose: OtpPurpose) -> AsyncIterator[None]:
        key = RedisCache.lock_key("otp_issue", user_id, purpose.value)
        token = None
        if self.cache:
            try:
                token = await self._acquire_shared_lock(key)
            except RedisError as exc:
                self.logger.warning("issue_lock_cache_unavailable", key=key, error=str(exc))
        if token is None:
            async with self._local_lock(key):
                yield
            return
        try:
            yield
        finally:
            try:
                await self.cache.release_lock(key, token)
            except RedisError as exc:
                # the key expires on its own after issue_lock_ttl_seconds
                self.logger.warning("issue_lock_release_failed", key=key, error=str(exc))

    async def _acquire_shared_lock(self, key: str) -> str:
        ttl = self.settings.issue_lock_ttl_seconds
        deadline = time.monotonic() + ttl + 1
        token = await self.cache.acquire_lock(key, ttl)
        while token is None:
            if time.monotonic() >= deadline:
                raise InternalError(detail={"reason": "issue_lock_timeout"})
            await asyncio.sleep(_LOCK_POLL_SECONDS)
            token = await self.cache.acquire_lock(key, ttl)
        return token

    @contextlib.asynccontextmanager
    async def _local_lock(self, key: str) -> AsyncIterator[None]:
        # entry is [lock, holders]; dropped when nobody holds or waits on it
        entry = self._local_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._local_locks.pop(key, None)

    async def issue(
        self,
        identity: Identity,
        purpose: OtpPurpose,
        *,
        explicit_target: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> IssuedCode:
        phone = explicit_target or identity.phone
        email = identity.email
        async with self._issue_lock(identity.user_id, purpose):
            now = self._now()
            code = self._code_factory(self.settings.otp_length)
            record = OtpRecord.new(
                identity.user_id,
                code,
                purpose,
                created_at=now,
                expires_at=self._expiry_for(now),
                phone=phone,
                email=email,
                ip_address=ip,
            )
            await self.store.create_otp(record)
        self.logger.info(
            "otp_issued",
            user_id=identity.user_id,
            record_id=record.id,
            purpose=purpose.value,
            phone=mask_target(phone),
            email=mask_target(email),
        )
        await self.notifier.notify(code, purpose, phone=phone, email=email)
        return IssuedCode(
            code=code,
            expires_at=record.expires_at,
            expires_local=self.format_local(record.expires_at),
            record=record,
        )

    async def verify(
        self, user_id: str, target: str, purpose: OtpPurpose, submitted_code: Any
    ) -> OtpRecord:
        """Check ``submitted_code`` against the latest record; does not consume it."""
        record = await self.store.get_latest_otp(user_id, target, purpose)
        if record is None:
            self._rejected(user_id, "otp_not_found")
            raise OtpNotFound()
        if record.is_used:
            self._rejected(user_id, "otp_used", record)
            raise OtpUsed()
        if self._now() >= record.expires_at:
            self._rejected(user_id, "otp_expired", record)
            raise OtpExpired()
        budget = self.settings.otp_max_attempts
        if budget > 0 and await self.store.reserve_otp_attempt(record.id, budget) is None:
            self._rejected(user_id, "otp_attempts_exceeded", record)
            raise OtpAttemptsExceeded()
        submitted = "" if submitted_code is None else str(submitted_code).strip()
        if not hmac.compare_digest(submitted.encode(), record.code.strip().encode()):
            self._rejected(user_id, "otp_mismatch", record)
            raise OtpMismatch()
        return record

    async def consume(self, record: OtpRecord) -> None:
        if not await self.store.mark_otp_used(record.id):
            self._rejected(record.user_id, "otp_used", record)
            raise OtpUsed()
        self.logger.info("otp_consumed", user_id=record.user_id, record_id=record.id)

    def _rejected(self, user_id: str, reason: str, record: Optional[OtpRecord] = None) -> None:
        self.logger.info(
            "otp_rejected",
            user_id=user_id,
            reason=reason,
            record_id=record.id if record else None,
        )
