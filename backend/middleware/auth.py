"""
Buyer authentication helpers.

Access tokens are HS256 JWTs issued by the external session service; this
module only verifies them. A token is accepted from either:
  - Authorization: Bearer <jwt>
  - the `auth-token` cookie (set by the storefront after login)

The `sub` claim carries the user id.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt
from fastapi import Request

from config import settings
from domain.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def decode_access_token(token: str) -> dict:
    if not settings.jwt_secret:
        logger.error("JWT_SECRET not configured: cannot verify access tokens")
        raise UnauthorizedError("Server auth misconfigured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            options={"require": ["exp", "iat", "iss", "sub"]},
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Access token expired.")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid access token.")


def issue_access_token(*, user_id: int, email: str) -> str:
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    if not settings.jwt_secret:
        raise UnauthorizedError("Server auth misconfigured.")
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def extract_token(request: Request) -> Optional[str]:
    """Prefer the Authorization header, fall back to the session cookie."""
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token:
        return token
    return request.cookies.get(settings.auth_cookie_name) or None


async def get_current_user_id(request: Request) -> Optional[int]:
    """
    Best-effort authentication: returns the user id or None for anonymous.

    A token that is present but invalid is an error, not anonymity.
    """
    token = extract_token(request)
    if not token:
        return None
    payload = decode_access_token(token)
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        raise UnauthorizedError("Invalid access token subject.")
