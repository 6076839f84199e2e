"""
Bearer-token authentication helpers.

Sessions are issued by the external identity provider; this service only
verifies the HS256 access token it hands out and turns it into a Principal:

    sub   -> user id (string)
    email -> account email
    role  -> "customer" | "courier" | "admin"

issue_access_token() exists for the identity provider integration and tests.
"""
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional, TypedDict

import jwt
from fastapi import Header, HTTPException

from config import settings

logger = logging.getLogger(__name__)


class Principal(TypedDict):
    user_id: int
    email: str
    role: str


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
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
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
        raise HTTPException(status_code=401, detail="Access token expired.")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid access token.")


def issue_access_token(*, user_id: int, email: str, role: str) -> str:
    now = _now_utc()
    exp = now.replace(microsecond=0) + timedelta(minutes=settings.jwt_access_ttl_minutes)
    payload = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "email": email,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int(exp.timestamp()),
    }
    if not settings.jwt_secret:
        raise HTTPException(
            status_code=500,
            detail="Server auth misconfigured (JWT secret missing).",
        )
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def principal_from_token(token: str) -> Principal:
    payload = decode_access_token(token)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid access token subject.")
    email = payload.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Access token carries no email.")
    return Principal(user_id=user_id, email=email, role=payload.get("role", "customer"))


async def get_optional_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Optional[Principal]:
    """Principal when a bearer token is present, None otherwise."""
    token = _parse_bearer_token(authorization)
    if not token:
        return None
    return principal_from_token(token)


async def require_principal(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> Principal:
    token = _parse_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Provide Authorization: Bearer <token>.",
        )
    return principal_from_token(token)
