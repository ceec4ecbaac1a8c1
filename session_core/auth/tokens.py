"""
Local JWT inspection.

Reads the ``exp`` claim without verifying the signature. The backend is
the only party that validates tokens; this is only used to decide whether
a refresh is due before making a request. Opaque (non-JWT) tokens have no
known expiry.
"""

import logging
from typing import Optional

from jose import jwt, JWTError

logger = logging.getLogger(__name__)


def get_token_expiry_ms(token: Optional[str]) -> Optional[int]:
    """Return the ``exp`` claim in epoch ms, or None if unknown."""
    if not token:
        return None
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return int(exp * 1000)
    return None


def is_token_expired(token: Optional[str], now_ms: int, leeway_ms: int = 0) -> bool:
    """
    Whether the token is expired, or will be within ``leeway_ms``.

    Missing tokens count as expired; tokens without a readable expiry do not.
    """
    if not token:
        return True
    expiry = get_token_expiry_ms(token)
    if expiry is None:
        return False
    return expiry - now_ms <= leeway_ms
