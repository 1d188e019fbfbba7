from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Request
from pydantic import BaseModel, ConfigDict, field_validator


class _LoginBody(BaseModel):
    """Login request bodies; presence rules are enforced by the login service
    so that every route reports the same list of missing fields."""

    model_config = ConfigDict(extra="ignore")

    @field_validator("*", mode="before")
    @classmethod
    def _numbers_as_text(cls, value: Any) -> Any:
        # phone numbers and codes often arrive as JSON numbers
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class LegacyLoginRequest(_LoginBody):
    step: Optional[str] = None
    login_type: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    mobile: Optional[str] = None
    role: Optional[str] = None
    otp: Optional[str] = None


class CredentialValidationRequest(_LoginBody):
    login_type: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


class SendOtpRequest(_LoginBody):
    login_type: Optional[str] = None
    mobile: Optional[str] = None
    role: Optional[str] = None


class FinalLoginRequest(_LoginBody):
    role: Optional[str] = None
    otp: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None


class SessionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str


@dataclass
class ClientInfo:
    ip: Optional[str]
    user_agent: Optional[str]


def normalize_ip(raw_ip: Optional[str]) -> Optional[str]:
    if not raw_ip:
        return None
    if raw_ip == "::1":
        return "127.0.0.1"
    if raw_ip.startswith("::ffff:"):
        return raw_ip[len("::ffff:"):]
    return raw_ip


def client_info(request: Request) -> ClientInfo:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        raw_ip = forwarded.split(",")[0].strip()
    else:
        raw_ip = request.client.host if request.client else None
    return ClientInfo(ip=normalize_ip(raw_ip), user_agent=request.headers.get("user-agent"))


def envelope(status: int, message: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Flat response body: ``{status, message, **data}``."""
    body: Dict[str, Any] = {"status": status, "message": message}
    if data:
        body.update(data)
    return body
