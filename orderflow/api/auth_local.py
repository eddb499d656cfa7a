"""HS256 bearer tokens carrying the caller's user id (``sub``) and ``role``."""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from orderflow.application.schemas import Principal, Role
from orderflow.core_settings import get_settings

def create_access_token(user_id: int, role: str = Role.CUSTOMER.value, expires_minutes: int = 60) -> str:
    settings = get_settings()
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "role": Role(role).value,
        "iat": issued,
        "exp": issued + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)

def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG],
                          options={"require": ["sub", "exp"]})
    except jwt.PyJWTError:
        return None

def principal_from_token(token: str) -> Optional[Principal]:
    claims = decode_access_token(token)
    if claims is None:
        return None
    try:
        return Principal(user_id=int(claims["sub"]), role=Role(claims.get("role", Role.CUSTOMER.value)))
    except (KeyError, ValueError):
        return None
