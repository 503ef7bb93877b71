"""
Authentication utilities.

Two schemes are in use:
- Optional user JWTs on job submission, used to pick the rate limit tier.
- A shared cron secret on drain, maintenance and admin routes.
"""

import hmac
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from kvqueue.config import get_settings
from kvqueue.constants import UserTier

# Security scheme; a missing header is not an error here, routes decide
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Claims kvqueue reads from a user token."""

    user_id: str
    plan: UserTier = UserTier.FREE
    exp: datetime


class AuthenticatedUser(BaseModel):
    """Caller identity used to key and scale rate limits."""

    user_id: str
    plan: UserTier = UserTier.FREE


def create_access_token(
    user_id: str,
    plan: UserTier = UserTier.FREE,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Mint a signed user token carrying the plan claim.

    Used by tests and the load generator; production tokens come from the
    identity provider sharing ``API_SECRET_KEY``.

    Args:
        user_id: Becomes the ``sub`` claim.
        plan: Tier that scales the caller's rate limits.
        expires_delta: Lifetime, defaulting to ``API_ACCESS_TOKEN_EXPIRE_MINUTES``.
    """
    settings = get_settings()
    lifetime = expires_delta or timedelta(minutes=settings.api_access_token_expire_minutes)
    issued_at = datetime.now(UTC)
    claims = {
        "sub": user_id,
        "plan": str(plan),
        "iat": issued_at,
        "exp": issued_at + lifetime,
    }
    return jwt.encode(claims, settings.api_secret_key, algorithm=settings.api_algorithm)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str) -> TokenData:
    """
    Verify a user token and read its claims.

    An unknown plan claim degrades to the free tier instead of failing.

    Raises:
        HTTPException: 401 for a bad signature, expiry or missing subject.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.api_secret_key, algorithms=[settings.api_algorithm])
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}") from e

    user_id = payload.get("sub")
    if not user_id:
        raise _unauthorized("Invalid token: missing subject")

    try:
        plan = UserTier(payload.get("plan", UserTier.FREE))
    except ValueError:
        plan = UserTier.FREE

    return TokenData(
        user_id=user_id,
        plan=plan,
        exp=datetime.fromtimestamp(payload["exp"], UTC),
    )


async def get_optional_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> AuthenticatedUser | None:
    """
    FastAPI dependency resolving the caller, if a token was sent.

    A present but invalid token is rejected rather than treated as
    anonymous.
    """
    if credentials is None:
        return None

    token_data = decode_token(credentials.credentials)
    return AuthenticatedUser(user_id=token_data.user_id, plan=token_data.plan)


async def verify_cron_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> None:
    """
    FastAPI dependency guarding operator routes with the shared secret.

    Raises:
        HTTPException: 401 if the secret is missing or wrong.
    """
    expected = get_settings().cron_secret
    if credentials is None or not hmac.compare_digest(
        credentials.credentials.encode("utf-8"), expected.encode("utf-8")
    ):
        raise _unauthorized("Invalid or missing cron secret")


OptionalUser = Annotated[AuthenticatedUser | None, Depends(get_optional_user)]
