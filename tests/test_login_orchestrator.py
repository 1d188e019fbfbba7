"""Tests for the three-step login flow and the legacy step dispatcher."""

import pytest

from conftest import RecordingChannel
from stepauth.service.credentials import CredentialVerifier, hash_password
from stepauth.service.delivery import OtpNotifier
from stepauth.service.errors import (
    InvalidCredentials,
    MobileRequired,
    OtpMismatch,
    OtpNotFound,
    OtpUsed,
    SessionCreationFailed,
    UnknownStep,
    ValidationError,
)
from stepauth.service.login import LoginOrchestrator, LoginStep
from stepauth.service.otp import OtpEngine
from stepauth.service.sessions import SessionManager
from stepauth.service.tokens import TokenSigner

EMAIL = "a@x.com"
PHONE = "9000000001"
PASSWORD = "Secret-123"


def _build(store, settings, clock, code="4821"):
    notifier = OtpNotifier(RecordingChannel("sms"), RecordingChannel("email"), timeout_seconds=1)
    otp = OtpEngine(store, settings, notifier, clock=clock, code_factory=lambda _n: code)
    sessions = SessionManager(store, settings, clock=clock)
    signer = TokenSigner(settings, clock=clock)
    return LoginOrchestrator(store, settings, CredentialVerifier(store), otp, sessions, signer)


@pytest.fixture
def orchestrator(memory_store, settings, clock):
    return _build(memory_store, settings, clock)


async def _identity(store, **overrides):
    fields = {
        "email": EMAIL,
        "phone": PHONE,
        "password_hash": hash_password(PASSWORD),
        "role": "USER",
    }
    fields.update(overrides)
    return await store.create_identity(**fields)


class TestCredentialValidation:
    async def test_valid_credentials_issue_code(self, orchestrator, memory_store):
        identity = await _identity(memory_store)
        result = await orchestrator.credential_validation(EMAIL, PASSWORD, "USER", "email_password")
        assert result.message == "Valid details. OTP sent"
        assert result.data == {
            "otp": "4821",
            "expires_at": "01/03/2024 12:10:00",
            "user_id": identity.user_id,
            "login_type": "email_password",
        }

    async def test_code_hidden_in_production(self, memory_store, settings, clock):
        await _identity(memory_store)
        prod = settings.model_copy(update={"environment": "production"})
        orchestrator = _build(memory_store, prod, clock)
        result = await orchestrator.credential_validation(EMAIL, PASSWORD, "USER")
        assert "otp" not in result.data

    async def test_wrong_password(self, orchestrator, memory_store):
        await _identity(memory_store)
        with pytest.raises(InvalidCredentials):
            await orchestrator.credential_validation(EMAIL, "wrong", "USER")
        assert memory_store.otps == []


class TestSendOtp:
    async def test_send_otp_to_mobile(self, orchestrator, memory_store):
        identity = await _identity(memory_store)
        result = await orchestrator.send_otp(PHONE, "USER", "mobile")
        assert result.message == "OTP sent"
        assert result.data["user_id"] == identity.user_id
        assert memory_store.otps[-1].phone == PHONE

    async def test_inactive_identity_rejected(self, orchestrator, memory_store):
        await _identity(memory_store, is_active="false")
        with pytest.raises(InvalidCredentials):
            await orchestrator.send_otp(PHONE, "USER")

    async def test_unknown_mobile_rejected(self, orchestrator):
        with pytest.raises(InvalidCredentials):
            await orchestrator.send_otp("9999999999", "USER")


class TestFinalLogin:
    async def test_full_flow_creates_session(self, orchestrator, memory_store):
        identity = await _identity(memory_store)
        await orchestrator.credential_validation(EMAIL, PASSWORD, "USER")
        result = await orchestrator.final_login(
            "USER", "4821", email=EMAIL, ip="10.0.0.1", user_agent="pytest"
        )

        assert result.message == "Login successful"
        data = result.data
        assert data["user_id"] == identity.user_id
        assert data["role"] == "USER"
        assert data["email"] == EMAIL
        assert data["session_status"] is True
        assert data["expiry"] == "2024-03-01 20:00:00"
        claims = orchestrator.signer.verify(data["token"])
        assert claims["user_id"] == identity.user_id
        assert claims["email"] == EMAIL
        session = await orchestrator.sessions.validate(data["session_id"])
        assert session.token == data["token"]
        assert session.ip_address == "10.0.0.1"

    async def test_mobile_flow(self, orchestrator, memory_store):
        await _identity(memory_store)
        await orchestrator.send_otp(PHONE, "USER")
        result = await orchestrator.final_login("USER", "4821", mobile=PHONE)
        assert result.data["session_status"] is True

    async def test_code_cannot_be_replayed(self, orchestrator, memory_store):
        await _identity(memory_store)
        await orchestrator.credential_validation(EMAIL, PASSWORD, "USER")
        await orchestrator.final_login("USER", "4821", email=EMAIL)
        with pytest.raises(OtpUsed):
            await orchestrator.final_login("USER", "4821", email=EMAIL)

    async def test_no_code_record_is_not_found(self, orchestrator, memory_store):
        await _identity(memory_store)
        with pytest.raises(OtpNotFound):
            await orchestrator.final_login("USER", "9999", email=EMAIL)

    async def test_wrong_code(self, orchestrator, memory_store):
        await _identity(memory_store)
        await orchestrator.credential_validation(EMAIL, PASSWORD, "USER")
        with pytest.raises(OtpMismatch):
            await orchestrator.final_login("USER", "0000", email=EMAIL)

    async def test_identity_without_phone_needs_mobile(self, orchestrator, memory_store):
        await _identity(memory_store, phone=None)
        with pytest.raises(MobileRequired) as excinfo:
            await orchestrator.final_login("USER", "4821", email=EMAIL)
        assert excinfo.value.status_code == 400

    async def test_inactive_identity_rejected(self, orchestrator, memory_store):
        identity = await _identity(memory_store)
        await orchestrator.credential_validation(EMAIL, PASSWORD, "USER")
        await memory_store.set_identity_active(identity.user_id, False)
        with pytest.raises(InvalidCredentials):
            await orchestrator.final_login("USER", "4821", email=EMAIL)

    async def test_session_failure_after_consume_burns_code(self, orchestrator, memory_store):
        await _identity(memory_store)
        await orchestrator.credential_validation(EMAIL, PASSWORD, "USER")

        async def broken_create(*args, **kwargs):
            raise RuntimeError("db down")

        orchestrator.sessions.create = broken_create
        with pytest.raises(SessionCreationFailed) as excinfo:
            await orchestrator.final_login("USER", "4821", email=EMAIL)
        assert excinfo.value.status_code == 500
        with pytest.raises(OtpUsed):
            await orchestrator.final_login("USER", "4821", email=EMAIL)


class TestDispatch:
    async def test_missing_step(self, orchestrator):
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.dispatch(None, {})
        assert excinfo.value.message == "step is required"

    async def test_unknown_step(self, orchestrator):
        with pytest.raises(UnknownStep) as excinfo:
            await orchestrator.dispatch("teleport", {})
        assert excinfo.value.message == "Unknown step: teleport"
        assert excinfo.value.status_code == 400

    async def test_step_payload_validated(self, orchestrator):
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.dispatch("credential_validation", {"email": EMAIL})
        assert excinfo.value.errors == [
            "login_type must be email_password",
            "password is required",
            "role is required",
        ]

    async def test_final_login_needs_email_or_mobile(self, orchestrator):
        with pytest.raises(ValidationError) as excinfo:
            await orchestrator.run_step(LoginStep.FINAL_LOGIN, {"role": "USER", "otp": "1"})
        assert excinfo.value.errors == ["email or mobile is required"]

    async def test_dispatch_runs_whole_flow(self, orchestrator, memory_store):
        await _identity(memory_store)
        first = await orchestrator.dispatch(
            "credential_validation",
            {"login_type": "email_password", "email": EMAIL, "password": PASSWORD, "role": "USER"},
        )
        assert first.data["otp"] == "4821"
        final = await orchestrator.dispatch(
            "final_login", {"role": "USER", "otp": "4821", "email": EMAIL}, user_agent="pytest"
        )
        assert final.message == "Login successful"

    async def test_blank_email_falls_through_to_mobile(self, orchestrator, memory_store):
        identity = await _identity(memory_store)
        await orchestrator.send_otp(PHONE, "USER")
        final = await orchestrator.run_step(
            LoginStep.FINAL_LOGIN, {"role": "USER", "otp": "4821", "email": "   ", "mobile": f" {PHONE} "}
        )
        assert final.message == "Login successful"
        assert final.data["user_id"] == identity.user_id
