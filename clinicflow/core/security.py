"""JWT verification for the authenticated caller identity."""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from clinicflow.config import Settings
from clinicflow.schemas.users import UserRole


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as seen by the core."""

    user_id: UUID
    role: UserRole
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        """Check whether the caller is an administrator."""
        return self.role == UserRole.ADMIN


def create_access_token(
    data: dict[str, Any],
    settings: Settings,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Tokens are normally minted by the auth service; this helper exists for
    scripts and tests that need to act as a given user.

    Args:
        data: Payload data to encode (``sub`` and ``role`` at minimum)
        settings: Settings carrying the signing key, algorithm and default lifetime
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(UTC) + expires_delta
    else:
        expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update(
        {
            "exp": expire,
            "iat": datetime.now(UTC),
            "type": "access",
        }
    )

    return jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str, settings: Settings) -> dict[str, Any] | None:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token to decode
        settings: Settings carrying the verification key and algorithm

    Returns:
        Decoded payload or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )

        # Verify token type
        if payload.get("type") != "access":
            return None

        return payload
    except JWTError:
        return None


def identity_from_token(token: str, settings: Settings) -> Identity | None:
    """
    Resolve a bearer token to an identity.

    Args:
        token: Raw JWT
        settings: Settings carrying the verification key and algorithm

    Returns:
        Identity, or None when the token is invalid, expired or incomplete
    """
    payload = decode_access_token(token, settings)
    if payload is None:
        return None

    user_id = payload.get("sub")
    role = payload.get("role")
    if not isinstance(user_id, str) or not isinstance(role, str):
        return None

    try:
        return Identity(
            user_id=UUID(user_id),
            role=UserRole(role.upper()),
            email=payload.get("email"),
        )
    except ValueError:
        return None
