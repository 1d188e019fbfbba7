from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from stepauth.logging import get_logger
from stepauth.storage.common import coerce_active, ensure_aware
from stepauth.storage.errors import ConstraintViolation, SchemaMissing
from stepauth.storage.models import Identity, OtpPurpose, OtpRecord, SessionRecord

_OTP_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS users_otps (
    otp_id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    phone TEXT,
    email TEXT,
    otp_code TEXT NOT NULL,
    otp_type TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL,
    is_used BOOLEAN NOT NULL DEFAULT false,
    attempts_count INTEGER NOT NULL DEFAULT 0,
    ip_address TEXT
)
"""

_OTP_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS users_otps_lookup_idx
    ON users_otps (user_id, otp_type, created_at DESC)
"""

_SESSION_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS user_sessions (
    session_id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    jwt_token TEXT NOT NULL,
    device_type TEXT NOT NULL DEFAULT 'system',
    ip_address TEXT,
    user_agent TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_activity_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT true
)
"""

_SESSION_INDEX_DDL = """
CREATE INDEX IF NOT EXISTS user_sessions_user_idx ON user_sessions (user_id)
"""


class PostgresStore:
    """Postgres-backed store over an async psycopg pool.

    ``users`` belongs to the external identity service and is only read;
    ``users_otps`` and ``user_sessions`` are created on first open.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )
        self._opened = False

    async def open(self) -> None:
        if self._opened:
            return
        await self.pool.open()
        self._opened = True
        await self._verify_identity_table()
        await self._ensure_auth_tables()
        self.logger.info("postgres_store_opened")

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    def _connect(self):
        return self.pool.connection()

    async def _verify_identity_table(self) -> None:
        async with self._connect() as conn:
            cur = await conn.execute("SELECT to_regclass('public.users') AS name")
            row = await cur.fetchone()
        if not row or not row.get("name"):
            raise SchemaMissing("identity table 'users' is missing", {"table": "users"})

    async def _ensure_auth_tables(self) -> None:
        async with self._connect() as conn:
            for ddl in (_OTP_TABLE_DDL, _OTP_INDEX_DDL, _SESSION_TABLE_DDL, _SESSION_INDEX_DDL):
                await conn.execute(ddl)

    # identities
    @staticmethod
    def _identity_from_row(row: dict[str, Any]) -> Identity:
        return Identity(
            user_id=str(row["user_id"]),
            email=row.get("email"),
            phone=row.get("phone"),
            password_hash=row.get("password_hash"),
            role=row.get("role") or "",
            # legacy rows keep is_active as text
            is_active=coerce_active(row.get("is_active")),
        )

    async def get_identity_by_email(self, email: str, role: str) -> Optional[Identity]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT user_id, email, phone, password_hash, role, is_active
                FROM users
                WHERE email = %s AND role = %s
                LIMIT 1
                """,
                (email, role),
            )
            row = await cur.fetchone()
        return self._identity_from_row(row) if row else None

    async def get_identity_by_phone(self, phone: str, role: str) -> Optional[Identity]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT user_id, email, phone, password_hash, role, is_active
                FROM users
                WHERE phone = %s AND role = %s
                LIMIT 1
                """,
                (phone, role),
            )
            row = await cur.fetchone()
        return self._identity_from_row(row) if row else None

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
        identity = Identity(
            user_id=user_id or str(uuid.uuid4()),
            email=email,
            phone=phone,
            password_hash=password_hash,
            role=role,
            is_active=coerce_active(is_active),
        )
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO users (user_id, email, phone, password_hash, role, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        identity.user_id,
                        identity.email,
                        identity.phone,
                        identity.password_hash,
                        identity.role,
                        identity.is_active,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("identity already exists", {"email": email, "phone": phone})
        return identity

    # one-time codes
    @staticmethod
    def _otp_from_row(row: dict[str, Any]) -> OtpRecord:
        return OtpRecord(
            id=str(row["otp_id"]),
            user_id=str(row["user_id"]),
            code=str(row["otp_code"]),
            purpose=OtpPurpose(row["otp_type"]),
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            phone=row.get("phone"),
            email=row.get("email"),
            is_used=bool(row.get("is_used")),
            attempts_count=int(row.get("attempts_count") or 0),
            ip_address=row.get("ip_address"),
        )

    async def create_otp(self, record: OtpRecord) -> OtpRecord:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO users_otps
                    (otp_id, user_id, phone, email, otp_code, otp_type,
                     created_at, expires_at, is_used, attempts_count, ip_address)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.phone,
                    record.email,
                    record.code,
                    record.purpose.value,
                    record.created_at,
                    record.expires_at,
                    record.is_used,
                    record.attempts_count,
                    record.ip_address,
                ),
            )
        return record

    async def get_latest_otp(
        self, user_id: str, target: str, purpose: OtpPurpose
    ) -> Optional[OtpRecord]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT otp_id, user_id, phone, email, otp_code, otp_type, created_at,
                       expires_at, is_used, attempts_count, ip_address
                FROM users_otps
                WHERE user_id = %s AND otp_type = %s AND (phone = %s OR email = %s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, purpose.value, target, target),
            )
            row = await cur.fetchone()
        return self._otp_from_row(row) if row else None

    async def mark_otp_used(self, otp_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE users_otps
                SET is_used = true
                WHERE otp_id = %s AND is_used = false
                RETURNING otp_id
                """,
                (otp_id,),
            )
            row = await cur.fetchone()
        return row is not None

    async def reserve_otp_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE users_otps
                SET attempts_count = attempts_count + 1
                WHERE otp_id = %s AND attempts_count < %s
                RETURNING attempts_count
                """,
                (otp_id, max_attempts),
            )
            row = await cur.fetchone()
        return int(row["attempts_count"]) if row else None

    # sessions
    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=str(row["session_id"]),
            user_id=str(row["user_id"]),
            token=row["jwt_token"],
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            last_activity_at=ensure_aware(row["last_activity_at"]),
            device_type=row.get("device_type") or "system",
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=bool(row.get("is_active")),
        )

    async def create_session(self, record: SessionRecord) -> SessionRecord:
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO user_sessions
                    (session_id, user_id, jwt_token, device_type, ip_address, user_agent,
                     created_at, last_activity_at, expires_at, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.token,
                    record.device_type,
                    record.ip_address,
                    record.user_agent,
                    record.created_at,
                    record.last_activity_at,
                    record.expires_at,
                    record.is_active,
                ),
            )
        return record

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT session_id, user_id, jwt_token, device_type, ip_address, user_agent,
                       created_at, last_activity_at, expires_at, is_active
                FROM user_sessions
                WHERE session_id = %s
                """,
                (session_id,),
            )
            row = await cur.fetchone()
        return self._session_from_row(row) if row else None

    async def revoke_session(self, session_id: str, at: datetime) -> bool:
        try:
            uuid.UUID(session_id)
        except ValueError:
            return False
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE user_sessions
                SET is_active = false, last_activity_at = %s
                WHERE session_id = %s
                """,
                (at, session_id),
            )
        return cur.rowcount > 0

    async def revoke_user_sessions(self, user_id: str, at: datetime) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE user_sessions
                SET is_active = false, last_activity_at = %s
                WHERE user_id = %s AND is_active = true
                """,
                (at, user_id),
            )
        return cur.rowcount
