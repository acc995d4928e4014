# app/dependencies/auth.py
from __future__ import annotations

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import BearerAuthError, InvalidTokenError
from app.core.security import decode_access_token
from app.models.user import User
from app.services.users import get_user_by_id

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the caller from ``Authorization: Bearer <access token>``.

    Only access JWTs are accepted (opaque refresh tokens fail to decode), and
    the account must not be soft-deleted.
    """
    if creds is None or creds.scheme.lower() != "bearer":
        raise BearerAuthError("Missing Authorization header")

    try:
        claims = decode_access_token(creds.credentials)
    except InvalidTokenError:
        raise BearerAuthError("Invalid or expired token") from None

    user = get_user_by_id(db, str(claims.get("sub") or "").strip())
    if user is None:
        raise BearerAuthError()
    return user
