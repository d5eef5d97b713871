"""
Caller resolution from identity-provider session tokens.

The identity provider issues a signed JWT whose ``sub`` claim is the
caller's external user id. It arrives either as a bearer token or in the
provider's ``__session`` cookie.
"""

from __future__ import annotations

import logging
from typing import Optional

import jwt
from fastapi import Depends, Request

from legacy_pages.config import Settings, get_settings

logger = logging.getLogger(__name__)

SESSION_COOKIE = "__session"


def extract_token(request: Request) -> Optional[str]:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return request.cookies.get(SESSION_COOKIE) or None


def decode_session_token(token: str, settings: Settings) -> dict:
    """
    Verify a session token and return its claims.

    Raises:
        jwt.InvalidTokenError if the token is invalid, expired, or no
        verification key is configured.
    """
    if not settings.auth_jwt_key:
        raise jwt.InvalidTokenError("auth_jwt_key is not configured")
    return jwt.decode(
        token,
        settings.auth_jwt_key,
        algorithms=settings.auth_jwt_algorithms,
        audience=settings.auth_jwt_audience,
        issuer=settings.auth_jwt_issuer,
        options={
            "require": ["sub"],
            "verify_aud": bool(settings.auth_jwt_audience),
        },
    )


def get_caller_id(
    request: Request, settings: Settings = Depends(get_settings)
) -> Optional[str]:
    """Return the caller's external id, or None when not signed in."""
    token = extract_token(request)
    if not token:
        return None
    try:
        claims = decode_session_token(token, settings)
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected session token: %s", exc)
        return None
    return str(claims["sub"])
