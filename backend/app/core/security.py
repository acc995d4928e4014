# app/core/security.py
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from app.core.config import settings
from app.core.errors import InvalidTokenError

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

VERIFICATION_CODE_DIGITS = 6


# -------------------------
# Password hashing
# -------------------------
def hash_password(password: str) -> str:
    return pwd_context.hash(password)


@lru_cache(maxsize=1)
def _dummy_password_hash() -> str:
    return pwd_context.hash(secrets.token_urlsafe(16))


def verify_password(password: str, password_hash: str | None) -> bool:
    """
    Always runs a full argon2 verification, even when there is no stored hash
    (unknown email, social-only account), so response time does not reveal
    whether the account exists.
    """
    if not password_hash:
        pwd_context.verify(password, _dummy_password_hash())
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Malformed hash in the row
        return False


# -------------------------
# Opaque secrets
# -------------------------
def _require_jwt_secret() -> bytes:
    # Auth is always on -> JWT_SECRET must always exist
    secret = (settings.JWT_SECRET or "").strip()
    if not secret:
        raise RuntimeError("JWT_SECRET must be set (auth is required).")
    return secret.encode("utf-8")


def generate_verification_code() -> str:
    upper = 10**VERIFICATION_CODE_DIGITS
    return f"{secrets.randbelow(upper):0{VERIFICATION_CODE_DIGITS}d}"


def generate_opaque_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def hash_secret(raw: str) -> str:
    """
    Digest for codes and tokens stored at rest.
    HMAC keyed by JWT_SECRET so DB leaks can't be brute-forced offline.
    """
    return hmac.new(_require_jwt_secret(), raw.encode("utf-8"), hashlib.sha256).hexdigest()


def secret_matches(raw: str, expected_hash: str | None) -> bool:
    if not raw or not expected_hash:
        return False
    return hmac.compare_digest(hash_secret(raw), expected_hash)


# -------------------------
# JWT helpers
# -------------------------
def create_access_token(claims: dict[str, Any], *, issued_at: datetime) -> tuple[str, datetime]:
    """
    Access token used for API auth: Authorization: Bearer <token>
    Returns the encoded token and its absolute expiry.
    """
    secret = _require_jwt_secret()
    exp = issued_at + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        **claims,
        "purpose": "access",
        "iss": settings.JWT_ISSUER,
        "jti": secrets.token_hex(16),
        "iat": int(issued_at.timestamp()),
        "exp": int(exp.timestamp()),
    }

    token = jwt.encode(payload, secret.decode("utf-8"), algorithm=settings.JWT_ALGORITHM)
    return token, exp


def decode_access_token(token: str) -> dict[str, Any]:
    """Check signature, expiry, issuer and purpose; any failure is InvalidTokenError."""
    try:
        claims = jwt.decode(
            token,
            _require_jwt_secret().decode("utf-8"),
            algorithms=[settings.JWT_ALGORITHM],
            issuer=settings.JWT_ISSUER,
        )
    except JWTError as exc:
        raise InvalidTokenError("Invalid or expired token") from exc

    if claims.get("purpose") != "access":
        raise InvalidTokenError("Invalid token purpose")
    return claims
