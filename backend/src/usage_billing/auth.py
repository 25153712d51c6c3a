"""Bearer token handling for the REST API."""
from datetime import datetime, timedelta
from uuid import UUID

import jwt

from usage_billing.config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 60


def create_access_token(user_id: UUID, expires_in: timedelta | None = None, **claims) -> str:
    """
    Create a signed access token whose ``sub`` claim is the user id.

    Args:
        user_id: User UUID
        expires_in: Token lifetime (defaults to one hour)
        **claims: Additional claims

    Returns:
        Encoded JWT
    """
    now = datetime.utcnow()
    payload = {
        "sub": str(user_id),
        "iat": now,
        "exp": now + (expires_in or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID:
    """
    Verify a token and return the user id from its ``sub`` claim.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired or has no usable subject
    """
    payload = jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        options={"require": ["sub", "exp"]},
    )
    try:
        return UUID(payload["sub"])
    except (TypeError, ValueError) as e:
        raise jwt.InvalidTokenError("Token subject is not a user id") from e
