"""
Owner authentication - bearer JWT verification.

Professionals sign in through the hosted auth provider, which issues HS256
tokens signed with the project's JWT secret. The `sub` claim is the
professional's id and becomes `owner_id` on every owned record.

Usage:
    from flashagenda.auth import get_current_owner

    @router.get("/agendas")
    async def list_agendas(owner_id: str = Depends(get_current_owner)):
        ...
"""

import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from .core.config import get_settings

logger = logging.getLogger(__name__)


def verify_owner_token(token: str) -> dict:
    """
    Verify a bearer token and return its decoded payload.

    Raises:
        HTTPException 401: token expired, malformed, wrongly signed or missing `sub`
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token verification failed: token has expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
    except jwt.InvalidTokenError as e:
        logger.warning(f"Token verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    if not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing subject",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_current_owner(authorization: Optional[str] = Header(None)) -> str:
    """FastAPI dependency returning the authenticated professional's id."""
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )
    payload = verify_owner_token(token.strip())
    return str(payload["sub"])
