"""
Bearer token authentication for portal owner endpoints
"""

import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chat.errors import UnauthorizedError

logger = logging.getLogger(__name__)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "your-secret-key-change-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_HOURS = 24

TOKEN_REGEX = re.compile(r"^[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+$")

security = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, expires_in: timedelta = timedelta(hours=JWT_EXPIRATION_HOURS)) -> str:
    """Issue an access token for `user_id`"""
    now = datetime.now(timezone.utc)
    payload = {
        "user_id": user_id,
        "type": "access",
        "exp": now + expires_in,
        "iat": now,
    }
    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
    """Verify a JWT: returns (payload, error_message)"""
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={"require": ["exp", "iat"]},
            leeway=60
        )
        if payload.get("type") == "refresh":
            return None, "Only access tokens are accepted in the Authorization header"
        if not payload.get("user_id"):
            return None, "Token does not identify a user"
        return payload, None
    except jwt.ExpiredSignatureError:
        return None, "Token has expired"
    except jwt.InvalidSignatureError:
        return None, "Token signature is invalid"
    except jwt.DecodeError:
        return None, "Token could not be decoded"
    except jwt.InvalidTokenError:
        return None, "Invalid token"


def _authenticate(credentials: Optional[HTTPAuthorizationCredentials]) -> Dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise UnauthorizedError("User authentication required")
    raw = (credentials.credentials or "").strip()
    if not TOKEN_REGEX.match(raw):
        raise UnauthorizedError("Malformed bearer token")
    payload, err = verify_token(raw)
    if err is not None:
        logger.info(f"Rejected bearer token: {err}")
        raise UnauthorizedError(err)
    return payload


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Dict[str, Any]:
    """Authenticated user payload; 401 envelope otherwise"""
    return _authenticate(credentials)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Optional[Dict[str, Any]]:
    """Anonymous visitors are allowed; an invalid token is treated as anonymous"""
    if credentials is None:
        return None
    try:
        return _authenticate(credentials)
    except UnauthorizedError:
        return None
