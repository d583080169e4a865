"""
JWT helpers shared by identity providers and the session manager
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from jose import jwt, JWTError


def decode_claims(token: Optional[str]) -> Dict[str, Any]:
    """
    Read JWT claims without verifying the signature

    Args:
        token: Encoded JWT

    Returns:
        Dict: Claims, or an empty dict when the token cannot be decoded
    """
    if not token:
        return {}
    try:
        return jwt.get_unverified_claims(token)
    except JWTError:
        return {}


def token_expiry(token: Optional[str]) -> Optional[datetime]:
    """Expiration time of a JWT from its 'exp' claim"""
    exp = decode_claims(token).get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, tz=timezone.utc)
