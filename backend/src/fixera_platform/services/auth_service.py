"""JWT token management. Users authenticate elsewhere; this service only issues and reads tokens."""

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from fixera_platform.app.config import get_settings


def create_access_token(user_id: str, role: str, expires_minutes: Optional[int] = None) -> str:
    settings = get_settings()
    minutes = settings.jwt_expiration_minutes if expires_minutes is None else expires_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    payload = {"sub": user_id, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
