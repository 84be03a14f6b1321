"""
Password hashing, JWT access tokens and the FastAPI dependencies that
resolve the calling user from a bearer token.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fulfillme.config import Settings, get_settings
from fulfillme.db import DbClient, UserRecord
from fulfillme.dependencies import get_db_client
from fulfillme.errors import AuthError, Forbidden, InvalidToken
from fulfillme.types import Role

bearer_scheme = HTTPBearer(auto_error=False)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


def create_access_token(
    user: UserRecord,
    settings: Optional[Settings] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    settings = settings or get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    payload = {"sub": user.user_id, "role": user.role.value, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Optional[Settings] = None) -> dict:
    """
    Verify the signature and expiry of ``token`` and return its claims.

    Raises:
        InvalidToken: the token is expired, tampered with or malformed.
    """
    settings = settings or get_settings()
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError as exc:
        raise InvalidToken("Token has expired") from exc
    except jwt.PyJWTError as exc:
        raise InvalidToken("Invalid token") from exc
    if not payload.get("sub"):
        raise InvalidToken("Invalid token")
    return payload


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
) -> UserRecord:
    if credentials is None or not credentials.credentials:
        raise AuthError("Authentication required")
    payload = decode_access_token(credentials.credentials, settings)
    user = db.get_user(payload["sub"])
    if not user:
        raise AuthError("User not found")
    return user


def require_role(role: Role):
    """Dependency factory restricting a route to one role."""

    def _dependency(user: UserRecord = Depends(get_current_user)) -> UserRecord:
        if user.role != role:
            raise Forbidden(f"Only {role.value}s can perform this action")
        return user

    return _dependency


require_asker = require_role(Role.ASKER)
require_fulfiller = require_role(Role.FULFILLER)
