from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from stepauth.config import Settings
from stepauth.logging import get_logger, mask_target
from stepauth.service.credentials import CredentialVerifier
from stepauth.service.errors import (
    InvalidCredentials,
    MobileRequired,
    SessionCreationFailed,
    UnknownStep,
    ValidationError,
)
from stepauth.service.otp import IssuedCode, OtpEngine
from stepauth.service.sessions import SessionManager
from stepauth.service.tokens import TokenSigner
from stepauth.storage.common import AuthStore
from stepauth.storage.models import Identity, OtpPurpose

logger = get_logger(__name__)

EMAIL_PASSWORD_LOGIN = "email_password"
MOBILE_LOGIN = "mobile"


class LoginStep(str, Enum):
    CREDENTIAL_VALIDATION = "credential_validation"
    SEND_OTP = "send_otp"
    FINAL_LOGIN = "final_login"


@dataclass
class StepResult:
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


def _missing(payload: Mapping[str, Any], name: str) -> bool:
    value = payload.get(name)
    return value is None or (isinstance(value, str) and not value.strip())


def _present(payload: Mapping[str, Any], name: str) -> Optional[str]:
    return None if _missing(payload, name) else str(payload[name]).strip()


def validate_step_payload(step: LoginStep, payload: Mapping[str, Any]) -> None:
    """Raise ValidationError listing every problem with ``payload`` for ``step``."""
    errors: List[str] = []
    if step is LoginStep.CREDENTIAL_VALIDATION:
        if payload.get("login_type") != EMAIL_PASSWORD_LOGIN:
            errors.append(f"login_type must be {EMAIL_PASSWORD_LOGIN}")
        for name in ("email", "password", "role"):
            if _missing(payload, name):
                errors.append(f"{name} is required")
    elif step is LoginStep.SEND_OTP:
        if payload.get("login_type") != MOBILE_LOGIN:
            errors.append(f"login_type must be {MOBILE_LOGIN}")
        for name in ("mobile", "role"):
            if _missing(payload, name):
                errors.append(f"{name} is required")
    else:
        for name in ("role", "otp"):
            if _missing(payload, name):
                errors.append(f"{name} is required")
        if _missing(payload, "email") and _missing(payload, "mobile"):
            errors.append("email or mobile is required")
    if errors:
        raise ValidationError(errors)


class LoginOrchestrator:
    """Sequences password check, code issuance and code verification into a session.

    Holds no per-login state; every step re-reads the identity from the store.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        verifier: CredentialVerifier,
        otp: OtpEngine,
        sessions: SessionManager,
        signer: TokenSigner,
    ) -> None:
        self.store = store
        self.settings = settings
        self.verifier = verifier
        self.otp = otp
        self.sessions = sessions
        self.signer = signer
        self.logger = logger

    def _issuance_payload(self, issued: IssuedCode, identity: Identity, login_type: Optional[str]) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.settings.otp_in_response_allowed:
            data["otp"] = issued.code
        data.update(
            {
                "expires_at": issued.expires_local,
                "user_id": identity.user_id,
                "login_type": login_type,
            }
        )
        return data

    async def credential_validation(
        self,
        email: str,
        password: str,
        role: str,
        login_type: Optional[str] = EMAIL_PASSWORD_LOGIN,
        *,
        ip: Optional[str] = None,
    ) -> StepResult:
        identity = await self.verifier.verify_credentials(email, role, password)
        issued = await self.otp.issue(identity, OtpPurpose.LOGIN, ip=ip)
        return StepResult("Valid details. OTP sent", self._issuance_payload(issued, identity, login_type))

    async def send_otp(
        self,
        mobile: str,
        role: str,
        login_type: Optional[str] = MOBILE_LOGIN,
        *,
        ip: Optional[str] = None,
    ) -> StepResult:
        identity = await self.store.get_identity_by_phone(mobile, role)
        if identity is None or not identity.is_active:
            self.logger.info("send_otp_rejected", phone=mask_target(mobile), role=role)
            raise InvalidCredentials()
        issued = await self.otp.issue(identity, OtpPurpose.LOGIN, explicit_target=mobile, ip=ip)
        return StepResult("OTP sent", self._issuance_payload(issued, identity, login_type))

    async def final_login(
        self,
        role: str,
        otp: Any,
        *,
        email: Optional[str] = None,
        mobile: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StepResult:
        identity: Optional[Identity] = None
        if email:
            identity = await self.store.get_identity_by_email(email, role)
        elif mobile:
            identity = await self.store.get_identity_by_phone(mobile, role)
        if identity is None or not identity.is_active:
            self.logger.info("final_login_rejected", reason="identity", role=role)
            raise InvalidCredentials()

        target = mobile or identity.phone
        if not target:
            raise MobileRequired()

        record = await self.otp.verify(identity.user_id, target, OtpPurpose.LOGIN, otp)
        await self.otp.consume(record)

        token = self.signer.sign(
            {"user_id": identity.user_id, "email": identity.email, "role": identity.role}
        )
        try:
            session = await self.sessions.create(
                identity.user_id, token, ip=ip, user_agent=user_agent
            )
        except Exception as exc:
            self.logger.error(
                "session_creation_failed", user_id=identity.user_id, error=str(exc)
            )
            raise SessionCreationFailed(detail={"user_id": identity.user_id}) from exc
        self.logger.info("login_completed", user_id=identity.user_id, session_id=session.id)
        return StepResult(
            "Login successful",
            {
                "session_id": session.id,
                "user_id": identity.user_id,
                "token": token,
                "expiry": self.sessions.format_expiry(session),
                "role": identity.role,
                "email": identity.email,
                "session_status": session.is_active,
            },
        )

    async def run_step(
        self,
        step: LoginStep,
        payload: Mapping[str, Any],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StepResult:
        validate_step_payload(step, payload)
        if step is LoginStep.CREDENTIAL_VALIDATION:
            return await self.credential_validation(
                payload["email"],
                payload["password"],
                payload["role"],
                payload.get("login_type"),
                ip=ip,
            )
        if step is LoginStep.SEND_OTP:
            return await self.send_otp(
                str(payload["mobile"]), payload["role"], payload.get("login_type"), ip=ip
            )
        return await self.final_login(
            payload["role"],
            payload["otp"],
            email=_present(payload, "email"),
            mobile=_present(payload, "mobile"),
            ip=ip,
            user_agent=user_agent,
        )

    async def dispatch(
        self,
        step: Optional[str],
        payload: Mapping[str, Any],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> StepResult:
        """Route a legacy ``{"step": ...}`` request to the matching step."""
        if not step:
            raise ValidationError(["step is required"], message="step is required")
        try:
            login_step = LoginStep(step)
        except ValueError:
            raise UnknownStep(str(step)) from None
        return await self.run_step(login_step, payload, ip=ip, user_agent=user_agent)
