"""
Security utilities: JWT bearer tokens.

Tokens are issued by the identity service; this module only verifies them.
``create_access_token`` exists for service-to-service calls and tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from jose import jwt, JWTError
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
import enum

from fleetdesk.core.config import settings

security = HTTPBearer()


def get_role_value(role: Union[str, enum.Enum]) -> str:
    """Get the string value of a role, handling both string and Enum types."""
    if isinstance(role, str) and not isinstance(role, enum.Enum):
        return role
    if hasattr(role, 'value'):
        return role.value
    return str(role)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token."""
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    if expires_delta:
        expire = now + expires_delta
    else:
        expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire, "iat": now})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return encoded_jwt


def decode_token(token: str) -> dict:
    """Decode and validate JWT token."""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
