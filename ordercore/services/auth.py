"""Principal tokens (issued by the user service, verified here)"""
from jose import JWTError, jwt
from datetime import datetime, timedelta
from typing import Optional
import logging

from ordercore.config import settings
from ordercore.models.schemas import Principal

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 30


class InvalidToken(Exception):
    """Token missing, expired, or carrying an unusable principal"""


def create_access_token(user_id: int, role: str, expires_delta: Optional[timedelta] = None) -> str:
    """Create JWT access token"""
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Principal:
    """Verify the token signature and expiry and return its principal"""
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Rejected access token: {e}")
        raise InvalidToken(str(e)) from e

    try:
        return Principal(id=int(claims["sub"]), role=claims["role"])
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Access token carries no usable principal: {e}")
        raise InvalidToken("Token carries no usable principal") from e
