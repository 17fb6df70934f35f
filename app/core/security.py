"""
Security Module
===============

JWT validation for tokens issued by the authentication gateway.
Token issuance lives with the gateway; this service only reads them.
"""

from typing import Any, Optional

from jose import JWTError, jwt

from app.config import settings


def decode_token(token: str) -> Optional[dict[str, Any]]:
    """
    Decode and validate a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded payload if valid, None otherwise
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
        )
        return payload
    except JWTError:
        return None
