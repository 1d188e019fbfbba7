from __future__ import annotations

import hmac
from typing import Optional

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from stepauth.logging import get_logger, mask_target
from stepauth.service.errors import InvalidCredentials
from stepauth.storage.common import AuthStore
from stepauth.storage.models import Identity

logger = get_logger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_pwd_hasher = PasswordHasher(type=Type.ID)


def hash_password(password: str) -> str:
    """Produce an argon2id hash suitable for seeding identities."""
    return _pwd_hasher.hash(password)


def verify_password(stored: Optional[str], password: str) -> bool:
    """Compare ``password`` against a stored credential of any supported kind.

    The stored value's prefix picks the scheme: argon2, bcrypt, or legacy
    plaintext. Malformed hashes are reported as a mismatch.
    """
    if not stored or password is None:
        return False
    if stored.startswith("$argon2"):
        try:
            return _pwd_hasher.verify(stored, password)
        except (InvalidHash, VerificationError):
            return False
    if stored.startswith(_BCRYPT_PREFIXES):
        # $2y$ is the PHP spelling of the same algorithm
        normalized = "$2b$" + stored[4:] if stored.startswith("$2y$") else stored
        try:
            return bcrypt.checkpw(password.encode("utf-8"), normalized.encode("utf-8"))
        except ValueError:
            return False
    return hmac.compare_digest(stored.encode("utf-8"), password.encode("utf-8"))


class CredentialVerifier:
    """Checks an (email, role) pair and a password against stored identities."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store
        self.logger = logger

    async def verify_credentials(self, email: str, role: str, password: str) -> Identity:
        identity = await self.store.get_identity_by_email(email, role)
        if identity is None:
            self.logger.info("credentials_rejected", reason="not_found", email=mask_target(email), role=role)
            raise InvalidCredentials()
        if not identity.is_active:
            self.logger.info("credentials_rejected", reason="inactive", user_id=identity.user_id)
            raise InvalidCredentials()
        if not verify_password(identity.password_hash, password):
            self.logger.info("credentials_rejected", reason="mismatch", user_id=identity.user_id)
            raise InvalidCredentials()
        self.logger.info("credentials_verified", user_id=identity.user_id, role=role)
        return identity
