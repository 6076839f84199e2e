"""
Tests for bearer-token authentication and role guards.

Tests: token issue/decode, require_principal, require_customer/courier/admin.
"""
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException

from config import settings
from deps import require_admin, require_courier, require_customer
from domain.errors import PermissionDeniedError
from middleware.auth import (
    decode_access_token,
    get_optional_principal,
    issue_access_token,
    require_principal,
)


def bearer(user_id=7, email="reader@example.com", role="customer") -> str:
    return "Bearer " + issue_access_token(user_id=user_id, email=email, role=role)


class TestAccessTokens:

    @pytest.mark.unit
    def test_issue_and_decode_round_trip(self):
        token = issue_access_token(user_id=7, email="reader@example.com", role="courier")
        payload = decode_access_token(token)
        assert payload["sub"] == "7"
        assert payload["email"] == "reader@example.com"
        assert payload["role"] == "courier"
        assert payload["iss"] == settings.jwt_issuer

    @pytest.mark.unit
    def test_expired_token_is_401(self):
        now = datetime.now(timezone.utc)
        token = jwt.encode(
            {
                "iss": settings.jwt_issuer,
                "sub": "7",
                "email": "reader@example.com",
                "iat": int((now - timedelta(hours=2)).timestamp()),
                "exp": int((now - timedelta(hours=1)).timestamp()),
            },
            settings.jwt_secret,
            algorithm="HS256",
        )
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)
        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    @pytest.mark.unit
    def test_wrong_secret_is_401(self):
        token = jwt.encode(
            {"iss": settings.jwt_issuer, "sub": "7", "iat": 0, "exp": 4102444800},
            "some-other-secret",
            algorithm="HS256",
        )
        with pytest.raises(HTTPException) as exc_info:
            decode_access_token(token)
        assert exc_info.value.status_code == 401


class TestRequirePrincipal:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_header_is_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await require_principal(authorization=None)
        assert exc_info.value.status_code == 401
        assert "Authentication required" in exc_info.value.detail

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_bearer_scheme_is_401(self):
        with pytest.raises(HTTPException):
            await require_principal(authorization="Basic dXNlcjpwYXNz")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_token_gives_principal(self):
        principal = await require_principal(authorization=bearer(user_id=12, role="admin"))
        assert principal == {"user_id": 12, "email": "reader@example.com", "role": "admin"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_optional_principal(self):
        assert await get_optional_principal(authorization=None) is None
        principal = await get_optional_principal(authorization=bearer())
        assert principal["user_id"] == 7


class TestRoleGuards:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_guard_admits_admins(self):
        admin = {"user_id": 1, "email": "admin@example.com", "role": "admin"}
        assert await require_customer(principal=admin) == admin

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_guard_rejects_couriers(self):
        with pytest.raises(PermissionDeniedError):
            await require_customer(principal={"user_id": 2, "email": "c@example.com", "role": "courier"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_admin_and_courier_guards(self):
        customer = {"user_id": 3, "email": "r@example.com", "role": "customer"}
        with pytest.raises(PermissionDeniedError):
            await require_admin(principal=customer)
        with pytest.raises(PermissionDeniedError):
            await require_courier(principal=customer)
