"""
Request authentication for the generation API.

Supports:
- Session JWT (HS256, ``sub`` claim is the user id)
- E2E test bypass via X-Test-Auth / X-Test-User-Id (never in production)
"""

import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException

from backend.settings import get_settings

logger = logging.getLogger(__name__)

_TEST_AUTH_VALUE = "true"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _decode_user_id(token: str) -> str:
    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT secret not configured; rejecting bearer token")
        raise HTTPException(status_code=401, detail="Authentication not configured")

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            options={"require": ["sub", "exp"], "verify_aud": bool(settings.jwt_audience)},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.info("Rejected bearer token: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(user_id)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    x_test_auth: Optional[str] = Header(None, alias="X-Test-Auth"),
    x_test_user_id: Optional[str] = Header(None, alias="X-Test-User-Id"),
) -> str:
    """
    Resolve the authenticated user id.

    Raises:
        HTTPException: 401 if no valid credentials were presented.
    """
    settings = get_settings()
    if x_test_auth == _TEST_AUTH_VALUE and x_test_user_id:
        if settings.is_production:
            logger.warning("Rejected test auth bypass in production")
            raise HTTPException(status_code=401, detail="Test auth not allowed")
        return x_test_user_id

    token = _bearer_token(authorization)
    if token is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return _decode_user_id(token)

