"""
Unit tests for authentication.
"""

from datetime import timedelta

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from kvqueue.api.auth import (
    create_access_token,
    decode_token,
    get_optional_user,
    verify_cron_secret,
)
from kvqueue.config import get_settings
from kvqueue.constants import UserTier


def bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestTokens:
    """Tests for JWT helpers."""

    def test_create_and_decode(self):
        """Test a token round-trips its subject and plan."""
        token = create_access_token(user_id="user-1", plan=UserTier.PRO)

        token_data = decode_token(token)

        assert token_data.user_id == "user-1"
        assert token_data.plan == UserTier.PRO
        assert token_data.exp is not None

    def test_default_plan_is_free(self):
        assert decode_token(create_access_token(user_id="user-1")).plan == UserTier.FREE

    def test_unknown_plan_falls_back_to_free(self):
        """Test an unrecognised plan claim is treated as the free tier."""
        settings = get_settings()
        token = jwt.encode(
            {"sub": "user-1", "plan": "platinum", "exp": 4_102_444_800},
            settings.api_secret_key,
            algorithm=settings.api_algorithm,
        )

        assert decode_token(token).plan == UserTier.FREE

    def test_decode_expired_token(self):
        """Test decoding an expired token raises error."""
        token = create_access_token(user_id="user-1", expires_delta=timedelta(hours=-1))

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401

    def test_decode_invalid_token(self):
        with pytest.raises(HTTPException) as exc_info:
            decode_token("invalid-token")

        assert exc_info.value.status_code == 401

    def test_missing_subject(self):
        settings = get_settings()
        token = jwt.encode(
            {"exp": 4_102_444_800},
            settings.api_secret_key,
            algorithm=settings.api_algorithm,
        )

        with pytest.raises(HTTPException) as exc_info:
            decode_token(token)

        assert exc_info.value.status_code == 401


class TestDependencies:
    """Tests for the FastAPI auth dependencies."""

    @pytest.mark.asyncio
    async def test_anonymous_caller(self):
        assert await get_optional_user(None) is None

    @pytest.mark.asyncio
    async def test_authenticated_caller(self):
        token = create_access_token(user_id="user-1", plan=UserTier.ENTERPRISE)

        user = await get_optional_user(bearer(token))

        assert user.user_id == "user-1"
        assert user.plan == UserTier.ENTERPRISE

    @pytest.mark.asyncio
    async def test_bad_token_is_rejected(self):
        """Test a present but invalid token is not downgraded to anonymous."""
        with pytest.raises(HTTPException):
            await get_optional_user(bearer("garbage"))

    @pytest.mark.asyncio
    async def test_cron_secret(self):
        """Test only the configured secret passes."""
        await verify_cron_secret(bearer("test-cron-secret"))

        for credentials in (None, bearer("wrong"), bearer("")):
            with pytest.raises(HTTPException) as exc_info:
                await verify_cron_secret(credentials)
            assert exc_info.value.status_code == 401
