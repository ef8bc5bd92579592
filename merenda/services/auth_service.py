from typing import Optional

from jose import jwt, JWTError
import structlog

from merenda.config import settings

logger = structlog.get_logger()

# Tokens are issued by the school-management auth service; this service only
# verifies them with the public key.

_public_key: Optional[str] = None


def _load_public_key() -> str:
    global _public_key
    if _public_key is None:
        with open(settings.JWT_PUBLIC_KEY_PATH, "r") as f:
            _public_key = f.read()
    return _public_key


def decode_token(token: str) -> dict:
    """Decode and verify a JWT token. Raises JWTError on failure."""
    return jwt.decode(token, _load_public_key(), algorithms=[settings.JWT_ALGORITHM])


def verify_access_token(token: str) -> dict:
    """Verify an access token and return its claims."""
    payload = decode_token(token)
    if payload.get("type") != "access":
        raise JWTError("Not an access token")
    if not payload.get("tenant_id"):
        raise JWTError("Token carries no tenant")
    return payload
