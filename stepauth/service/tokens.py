from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from stepauth.config import Settings
from stepauth.logging import get_logger

logger = get_logger(__name__)


class TokenSigner:
    """HS256 bearer tokens carrying ``iss``, ``aud``, ``iat`` and ``exp`` claims."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return self._clock() if self._clock else datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def sign(self, claims: dict[str, Any]) -> str:
        now = self._now()
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(hours=self.settings.jwt_ttl_hours)).timestamp()),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), default=str).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid token, or None."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        # Reject algorithm confusion
        if header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm", alg=header.get("alg"))
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
