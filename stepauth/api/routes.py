from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Header, Request

from stepauth.api.schemas import (
    CredentialValidationRequest,
    FinalLoginRequest,
    LegacyLoginRequest,
    SendOtpRequest,
    SessionRequest,
    client_info,
    envelope,
)
from stepauth.service.errors import InvalidToken
from stepauth.service.login import LoginStep, StepResult
from stepauth.service.runtime import get_runtime

router = APIRouter(prefix="/api")


def _ok(result: StepResult) -> Dict[str, Any]:
    return envelope(200, result.message, result.data)


async def _run_step(step: LoginStep, payload: Dict[str, Any], request: Request) -> Dict[str, Any]:
    runtime = get_runtime()
    info = client_info(request)
    result = await runtime.login.run_step(step, payload, ip=info.ip, user_agent=info.user_agent)
    return _ok(result)


@router.post("/auth/login", tags=["auth"])
async def legacy_login(request: Request, body: Optional[LegacyLoginRequest] = None):
    """Step-keyed login kept for older clients; ``step`` picks the handler."""
    runtime = get_runtime()
    payload = body.payload() if body else {}
    info = client_info(request)
    result = await runtime.login.dispatch(
        payload.pop("step", None), payload, ip=info.ip, user_agent=info.user_agent
    )
    return _ok(result)


@router.post("/auth/validate-credentials", tags=["auth"])
async def validate_credentials(request: Request, body: Optional[CredentialValidationRequest] = None):
    return await _run_step(LoginStep.CREDENTIAL_VALIDATION, body.payload() if body else {}, request)


@router.post("/auth/send-otp", tags=["auth"])
async def send_otp(request: Request, body: Optional[SendOtpRequest] = None):
    return await _run_step(LoginStep.SEND_OTP, body.payload() if body else {}, request)


@router.post("/auth/final-login", tags=["auth"])
async def final_login(request: Request, body: Optional[FinalLoginRequest] = None):
    return await _run_step(LoginStep.FINAL_LOGIN, body.payload() if body else {}, request)


@router.post("/sessions/validate", tags=["sessions"])
async def validate_session(body: SessionRequest):
    runtime = get_runtime()
    session = await runtime.sessions.validate(body.session_id)
    return envelope(
        200,
        "Session is valid",
        {
            "session_id": session.id,
            "user_id": session.user_id,
            "expiry": runtime.sessions.format_expiry(session),
            "session_status": session.is_active,
        },
    )


@router.post("/sessions/logout", tags=["sessions"])
async def logout(body: SessionRequest):
    runtime = get_runtime()
    await runtime.sessions.revoke(body.session_id)
    return envelope(200, "Logged out", {"session_id": body.session_id})


@router.post("/sessions/logout-all", tags=["sessions"])
async def logout_all(authorization: Optional[str] = Header(default=None)):
    """Revoke every session owned by the bearer token's user."""
    runtime = get_runtime()
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    claims = runtime.signer.verify(token) if token else None
    if not claims or not claims.get("user_id"):
        raise InvalidToken()
    revoked = await runtime.sessions.revoke_all(str(claims["user_id"]))
    return envelope(200, "Logged out from all sessions", {"revoked": revoked})
