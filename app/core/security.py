"""Bearer token signing and verification.

Tokens are issued by the identity provider in front of this API. This
module verifies the ones presented on requests and signs tokens for local
tooling and tests with the same shared secret.
"""

from datetime import UTC, datetime, timedelta
from typing import Literal
from uuid import UUID

from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from app.config import settings


class AccessTokenClaims(BaseModel):
    """Claims this API relies on; anything else in the token is ignored."""

    sub: UUID
    type: Literal["access"]
    exp: int
    iat: int | None = None


def create_access_token(
    user_id: UUID | str,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Sign an access token for a user.

    Args:
        user_id: User the token authenticates
        expires_delta: Lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT
    """
    issued_at = datetime.now(UTC)
    lifetime = expires_delta or timedelta(minutes=settings.access_token_expire_minutes)

    return jwt.encode(
        {
            "sub": str(user_id),
            "type": "access",
            "iat": issued_at,
            "exp": issued_at + lifetime,
        },
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> AccessTokenClaims | None:
    """
    Verify a bearer token.

    Returns:
        The token claims, or None if the signature, expiry or claims are invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )
        return AccessTokenClaims.model_validate(payload)
    except (JWTError, ValidationError):
        return None
