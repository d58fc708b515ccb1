"""
Bearer-token authentication.
Access tokens are HS256 JWTs (the Supabase access-token format); the ``sub``
claim is the owner_id every job operation is scoped to.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from beyanname_ai.core.config import settings

logger = logging.getLogger(__name__)

# auto_error=False: a missing header must be 401, not HTTPBearer's default 403
bearer_scheme = HTTPBearer(auto_error=False)


class InvalidTokenError(ValueError):
    """Raised when a token is malformed, expired or has no subject."""


def create_access_token(owner_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Issue a token for ``owner_id``. Used by tests and service-to-service calls."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": owner_id, "exp": expire}
    if settings.AUTH_JWT_AUDIENCE:
        to_encode["aud"] = settings.AUTH_JWT_AUDIENCE
    return jwt.encode(to_encode, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)


def decode_owner_id(token: str) -> str:
    """
    Return the ``sub`` claim of a valid token.

    Raises:
        InvalidTokenError: bad signature, expired, wrong audience or no subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=[settings.AUTH_JWT_ALGORITHM],
            audience=settings.AUTH_JWT_AUDIENCE,
            options={"verify_aud": bool(settings.AUTH_JWT_AUDIENCE)},
        )
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e

    owner_id = payload.get("sub")
    if not owner_id or not isinstance(owner_id, str):
        raise InvalidTokenError("Token has no subject.")
    return owner_id


def get_current_owner(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """FastAPI dependency: resolve the bearer token to an owner_id or fail with 401."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise credentials_exception
    try:
        return decode_owner_id(credentials.credentials)
    except InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise credentials_exception
