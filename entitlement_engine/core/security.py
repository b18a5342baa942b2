"""
Security Module
===============

Authentication and security utilities:
- JWT access token validation
- Internal API key comparison
"""

import hmac
from typing import Any, Optional

from jose import JWTError, jwt

from entitlement_engine.config import settings


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


def verify_internal_api_key(presented: Optional[str]) -> bool:
    """Constant-time check of a service-to-service API key."""
    expected = settings.INTERNAL_API_KEY
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
