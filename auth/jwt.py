"""
JWT token creation and verification utilities.

Tokens are issued by the identity service; this service only verifies them.
create_access_token() exists for local tooling and tests.
"""
import jwt
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from config import settings


JWT_SECRET = settings.jwt_secret
JWT_EXPIRES_MINUTES = settings.jwt_expires_minutes
JWT_ALGORITHM = settings.jwt_algorithm

# Validate JWT_SECRET is set
if not JWT_SECRET:
    raise RuntimeError(
        "JWT_SECRET environment variable is required. "
        "Please set JWT_SECRET to the secret shared with the identity service."
    )


def create_access_token(user_id: str, is_anonymous: bool = False, expires_minutes: Optional[int] = None) -> str:
    """
    Create a JWT access token for a user or guest.

    Args:
        user_id: Id of the user (or guest session)
        is_anonymous: True for guest sessions
        expires_minutes: Optional expiration time in minutes (defaults to JWT_EXPIRES_MINUTES)

    Returns:
        str: Encoded JWT token
    """
    if expires_minutes is None:
        expires_minutes = JWT_EXPIRES_MINUTES

    issued_at = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "is_anonymous": bool(is_anonymous),
        "exp": issued_at + timedelta(minutes=expires_minutes),
        "iat": issued_at,
    }

    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_and_verify_token(token: str) -> Tuple[Optional[Dict], Optional[str]]:
    """
    Decode and verify a JWT token.

    Returns:
        tuple: (payload dict, error_message)
        - If valid: (payload, None)
        - If invalid: (None, error_message)
    """
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
            options={"verify_exp": True, "require": ["sub", "exp"]}
        )
        return payload, None
    except jwt.ExpiredSignatureError:
        return None, "Token has expired"
    except jwt.InvalidTokenError as e:
        return None, f"Invalid token: {str(e)}"
