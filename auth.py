"""
Bearer tokens for the authenticated principal.

Issuing credentials (one-time passcodes) happens elsewhere; this module only
signs and reads the JWT whose ``sub`` is the user id.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

import settings


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> Optional[str]:
    """User id carried by token, or None if it is missing, expired or forged."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    user_id = payload.get("sub")
    return user_id if isinstance(user_id, str) else None
