import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest

from conftest import T0
from stepauth.logging import get_logger
from stepauth.storage.errors import SchemaMissing
from stepauth.storage.models import OtpPurpose, OtpRecord, SessionRecord
from stepauth.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, row=None, rowcount=0):
        self.row = row
        self.rowcount = rowcount

    async def fetchone(self):
        return self.row


class FakeConnection:
    def __init__(self, results):
        self.results = results
        self.executed = []

    async def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, *results):
        self.conn = FakeConnection(list(results))

    @asynccontextmanager
    async def _connection(self):
        yield self.conn

    def connection(self):
        return self._connection()


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger(__name__)
    store.pool = FakePool(*results)
    store._opened = True
    return store


async def test_identity_row_coerces_legacy_active_flag():
    row = {
        "user_id": "u-1",
        "email": "a@x.com",
        "phone": "9000000001",
        "password_hash": "pw",
        "role": "USER",
        "is_active": "true",
    }
    store = _store(FakeCursor(row))
    identity = await store.get_identity_by_email("a@x.com", "USER")
    assert identity.is_active is True
    sql, params = store.pool.conn.executed[0]
    assert "WHERE email = %s AND role = %s" in sql
    assert params == ("a@x.com", "USER")


async def test_inactive_text_flag_maps_to_false():
    row = {"user_id": "u-1", "email": None, "phone": "9", "password_hash": "pw", "role": "USER", "is_active": "false"}
    store = _store(FakeCursor(row))
    identity = await store.get_identity_by_phone("9", "USER")
    assert identity.is_active is False


async def test_latest_otp_query_orders_by_creation():
    row = {
        "otp_id": uuid.uuid4(),
        "user_id": "u-1",
        "phone": "9000000001",
        "email": "a@x.com",
        "otp_code": "4821",
        "otp_type": "LOGIN",
        "created_at": T0.replace(tzinfo=None),
        "expires_at": T0 + timedelta(minutes=10),
        "is_used": False,
        "attempts_count": None,
        "ip_address": None,
    }
    store = _store(FakeCursor(row))
    record = await store.get_latest_otp("u-1", "9000000001", OtpPurpose.LOGIN)
    assert record.purpose is OtpPurpose.LOGIN
    assert record.created_at == T0
    assert record.attempts_count == 0
    sql, params = store.pool.conn.executed[0]
    assert "(phone = %s OR email = %s)" in sql
    assert "ORDER BY created_at DESC LIMIT 1" in sql
    assert params == ("u-1", "LOGIN", "9000000001", "9000000001")


async def test_mark_used_is_conditional_update():
    store = _store(FakeCursor({"otp_id": "x"}), FakeCursor(None))
    assert await store.mark_otp_used("x") is True
    assert await store.mark_otp_used("x") is False
    sql, _ = store.pool.conn.executed[0]
    assert "WHERE otp_id = %s AND is_used = false" in sql
    assert "RETURNING" in sql


async def test_reserve_attempt_is_bounded_in_the_update():
    store = _store(FakeCursor({"attempts_count": 3}), FakeCursor(None))
    assert await store.reserve_otp_attempt("x", 3) == 3
    assert await store.reserve_otp_attempt("x", 3) is None
    sql, params = store.pool.conn.executed[0]
    assert "SET attempts_count = attempts_count + 1" in sql
    assert "WHERE otp_id = %s AND attempts_count < %s" in sql
    assert params == ("x", 3)


async def test_create_otp_writes_purpose_value():
    store = _store()
    record = OtpRecord.new(
        "u-1", "4821", OtpPurpose.VERIFICATION, created_at=T0, expires_at=T0 + timedelta(minutes=10)
    )
    await store.create_otp(record)
    _sql, params = store.pool.conn.executed[0]
    assert params[0] == record.id
    assert params[5] == "VERIFICATION"


async def test_get_session_with_malformed_id_skips_query():
    store = _store()
    assert await store.get_session("not-a-uuid") is None
    assert await store.revoke_session("not-a-uuid", T0) is False
    assert store.pool.conn.executed == []


async def test_revoke_session_reports_rowcount():
    store = _store(FakeCursor(rowcount=1))
    session = SessionRecord.new("u-1", "tok", now=T0, ttl_hours=8)
    assert await store.revoke_session(session.id, T0) is True
    sql, params = store.pool.conn.executed[0]
    assert "SET is_active = false, last_activity_at = %s" in sql
    assert params == (T0, session.id)


async def test_revoke_user_sessions_only_active_rows():
    store = _store(FakeCursor(rowcount=3))
    assert await store.revoke_user_sessions("u-1", T0) == 3
    sql, _ = store.pool.conn.executed[0]
    assert "AND is_active = true" in sql


async def test_missing_identity_table_raises():
    store = _store(FakeCursor({"name": None}))
    with pytest.raises(SchemaMissing):
        await store._verify_identity_table()


async def test_auth_tables_created_if_missing():
    store = _store()
    await store._ensure_auth_tables()
    statements = [sql for sql, _ in store.pool.conn.executed]
    assert any("CREATE TABLE IF NOT EXISTS users_otps" in sql for sql in statements)
    assert any("CREATE TABLE IF NOT EXISTS user_sessions" in sql for sql in statements)
