from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Dict, Optional, Protocol

from stepauth.config import EmailProvider, Settings, SmsProvider
from stepauth.logging import get_logger, mask_target
from stepauth.service.errors import DeliveryFailure
from stepauth.storage.models import OtpPurpose

logger = get_logger(__name__)

_SMS_TEMPLATES = {
    OtpPurpose.LOGIN: "Your login OTP is {code}. Valid for {ttl} minutes. Do not share this OTP with anyone.",
    OtpPurpose.PASSWORD_RESET: "Your password reset OTP is {code}. Valid for {ttl} minutes. Do not share this OTP with anyone.",
    OtpPurpose.VERIFICATION: "Your verification OTP is {code}. Valid for {ttl} minutes. Do not share this OTP with anyone.",
}
_GENERIC_SMS_TEMPLATE = "Your OTP is {code}. Valid for {ttl} minutes."

_SUBJECTS = {
    OtpPurpose.LOGIN: "Your Login OTP",
    OtpPurpose.PASSWORD_RESET: "Password Reset OTP",
    OtpPurpose.VERIFICATION: "Verification OTP",
}
_GENERIC_SUBJECT = "Your OTP"


def message_for(code: str, purpose: Optional[OtpPurpose], ttl_minutes: int) -> str:
    template = _SMS_TEMPLATES.get(purpose, _GENERIC_SMS_TEMPLATE)
    return template.format(code=code, ttl=ttl_minutes)


def subject_for(purpose: Optional[OtpPurpose]) -> str:
    return _SUBJECTS.get(purpose, _GENERIC_SUBJECT)


def email_body_for(code: str, ttl_minutes: int) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body>
    <div style="font-family: Arial, sans-serif; padding: 20px;">
        <h2>Your OTP Code</h2>
        <p>Your OTP code is: <strong style="font-size: 24px; color: #007bff;">{code}</strong></p>
        <p>This OTP is valid for {ttl_minutes} minutes.</p>
        <p style="color: #dc3545;"><strong>Important:</strong> Do not share this OTP with anyone.</p>
        <p>If you did not request this OTP, please ignore this message.</p>
    </div>
</body>
</html>
"""


class DeliveryChannel(Protocol):
    name: str

    async def send_code(self, target: str, code: str, purpose: OtpPurpose) -> bool: ...


def _log_preview(code: str, purpose: Optional[OtpPurpose], ttl_minutes: int, reveal_code: bool) -> str:
    return message_for(code if reveal_code else "*" * len(code), purpose, ttl_minutes)


class ConsoleSmsChannel:
    """Writes SMS messages to the log instead of a carrier.

    The code itself is masked unless ``reveal_code`` is set.
    """

    name = "sms"

    def __init__(self, ttl_minutes: int, *, reveal_code: bool = False) -> None:
        self.ttl_minutes = ttl_minutes
        self.reveal_code = reveal_code

    async def send_code(self, target: str, code: str, purpose: OtpPurpose) -> bool:
        logger.info(
            "sms_dev_mode",
            to=mask_target(target),
            body_preview=_log_preview(code, purpose, self.ttl_minutes, self.reveal_code),
        )
        return True


class ConsoleEmailChannel:
    name = "email"

    def __init__(self, ttl_minutes: int, *, reveal_code: bool = False) -> None:
        self.ttl_minutes = ttl_minutes
        self.reveal_code = reveal_code

    async def send_code(self, target: str, code: str, purpose: OtpPurpose) -> bool:
        logger.info(
            "email_dev_mode",
            to=mask_target(target),
            subject=subject_for(purpose),
            body_preview=_log_preview(code, purpose, self.ttl_minutes, self.reveal_code),
        )
        return True


class SmtpEmailChannel:
    """Sends code emails over SMTP with STARTTLS or implicit TLS.

    ``smtplib`` blocks, so each send runs in a worker thread.
    """

    name = "email"

    def __init__(
        self,
        *,
        smtp_host: str,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "StepAuth",
        ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.ttl_minutes = ttl_minutes

    async def send_code(self, target: str, code: str, purpose: OtpPurpose) -> bool:
        subject = subject_for(purpose)
        html_body = email_body_for(code, self.ttl_minutes)
        text_body = message_for(code, purpose, self.ttl_minutes)
        return await asyncio.to_thread(self._send_email, target, subject, html_body, text_body)

    def _build_message(self, to_email: str, subject: str, html_body: str, text_body: str) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        msg = self._build_message(to_email, subject, html_body, text_body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", to=mask_target(to_email), host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_target(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=mask_target(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=mask_target(to_email), subject=subject)
        return True


def build_sms_channel(settings: Settings) -> Optional[DeliveryChannel]:
    if settings.sms_provider == SmsProvider.CONSOLE:
        return ConsoleSmsChannel(settings.otp_ttl_minutes, reveal_code=settings.is_development)
    logger.warning("sms_provider_unsupported", provider=str(settings.sms_provider))
    return None


def build_email_channel(settings: Settings) -> DeliveryChannel:
    if settings.email_provider == EmailProvider.SMTP and settings.smtp_host:
        return SmtpEmailChannel(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            ttl_minutes=settings.otp_ttl_minutes,
        )
    if settings.email_provider == EmailProvider.SMTP:
        logger.warning("smtp_not_configured", fallback="console")
    return ConsoleEmailChannel(settings.otp_ttl_minutes, reveal_code=settings.is_development)


class OtpNotifier:
    """Fans a code out to every present target; failures never reach the caller."""

    def __init__(
        self,
        sms: Optional[DeliveryChannel],
        email: Optional[DeliveryChannel],
        *,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.sms = sms
        self.email = email
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "OtpNotifier":
        return cls(
            build_sms_channel(settings),
            build_email_channel(settings),
            timeout_seconds=settings.delivery_timeout_seconds,
        )

    async def _deliver(self, channel: DeliveryChannel, target: str, code: str, purpose: OtpPurpose) -> bool:
        try:
            sent = await asyncio.wait_for(
                channel.send_code(target, code, purpose), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise DeliveryFailure(channel.name, "delivery timed out") from exc
        if not sent:
            raise DeliveryFailure(channel.name, "channel reported failure")
        return True

    async def notify(
        self,
        code: str,
        purpose: OtpPurpose,
        *,
        phone: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Dict[str, bool]:
        """Deliver ``code`` concurrently; returns per-channel success."""
        jobs = []
        if phone and self.sms:
            jobs.append((self.sms, phone))
        if email and self.email:
            jobs.append((self.email, email))
        if not jobs:
            logger.warning("otp_delivery_skipped", reason="no_target")
            return {}
        results = await asyncio.gather(
            *(self._deliver(channel, target, code, purpose) for channel, target in jobs),
            return_exceptions=True,
        )
        outcome: Dict[str, bool] = {}
        for (channel, target), result in zip(jobs, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(
                    "otp_delivery_failed",
                    channel=channel.name,
                    to=mask_target(target),
                    error_type=type(result).__name__,
                    error=str(result),
                )
                outcome[channel.name] = False
            else:
                outcome[channel.name] = True
        return outcome
