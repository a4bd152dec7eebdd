"""Bearer token authentication for the calendar API."""

from typing import Optional

import jwt
from fastapi import HTTPException, Request, status
import structlog

from calsync.config import settings

logger = structlog.get_logger()


def decode_access_token(token: str, secret: Optional[str], audience: Optional[str] = None) -> Optional[dict]:
    """
    Verify an HS256 access token.

    Returns:
        Token payload if valid, None otherwise
    """
    if not secret:
        logger.warning("jwt_secret_not_configured")
        return None

    options = {"require": ["sub"], "verify_aud": bool(audience)}
    try:
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options=options
        )

    except jwt.ExpiredSignatureError:
        logger.info("jwt_token_expired")
        return None

    except jwt.InvalidTokenError as e:
        logger.warning("jwt_invalid_token", error=str(e))
        return None


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user_id(request: Request) -> str:
    """
    FastAPI dependency resolving the authenticated user id.

    Raises:
        HTTPException: 401 when the bearer token is missing or invalid
    """
    token = _bearer_token(request)
    if not token:
        logger.warning("auth_missing_bearer", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token"
        )

    payload = decode_access_token(token, settings.auth_jwt_secret, settings.auth_jwt_audience)
    user_id = str(payload.get("sub") or "") if payload else ""
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token"
        )

    request.state.user_id = user_id
    return user_id
