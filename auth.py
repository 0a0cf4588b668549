"""Access guard: turns a bearer credential into the identity of a user."""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from jose import JWTError, jwt

from book import utcnow
from config import settings
from errors import ErrorKind, Result

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 120_000


@dataclass(frozen=True)
class Identity:
    user_id: int


def hash_password(password: str, salt: Optional[str] = None) -> str:
    """Return ``salt$hexdigest`` using PBKDF2-SHA256."""
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, credential_hash: str) -> bool:
    if not credential_hash or "$" not in credential_hash:
        return False
    salt, _ = credential_hash.split("$", 1)
    return hmac.compare_digest(hash_password(password, salt), credential_hash)


class AccessGuard:
    """Verifies JWT bearer tokens signed with the configured secret."""

    def __init__(self, secret_key: Optional[str] = None, algorithm: Optional[str] = None,
                 expiration_minutes: Optional[int] = None) -> None:
        self.secret_key = secret_key or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm
        self.expiration_minutes = expiration_minutes or settings.jwt_expiration_minutes

    def issue_token(self, user_id: int, now: Optional[datetime] = None) -> str:
        issued = now or utcnow()
        claims = {
            "userId": user_id,
            "sub": str(user_id),
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(minutes=self.expiration_minutes)).timestamp()),
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def resolve(self, credential: Optional[str]) -> Result:
        """Resolve ``Bearer <jwt>`` (or a bare token) to an ``Identity``."""
        if not credential or not credential.strip():
            return Result.failure(ErrorKind.UNAUTHORIZED, "Missing credentials.")
        token = credential.strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info(f"Rejected bearer token: {e}")
            return Result.failure(ErrorKind.UNAUTHORIZED, "Could not validate credentials.")

        raw_id = payload.get("userId", payload.get("sub"))
        try:
            user_id = int(raw_id)
        except (TypeError, ValueError):
            return Result.failure(ErrorKind.UNAUTHORIZED, "Token carries no user id.")
        return Result.success(Identity(user_id=user_id))
