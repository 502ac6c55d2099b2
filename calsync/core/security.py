# calsync/core/security.py
import base64
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from jose import jwt

from calsync.core.config import settings

logger = logging.getLogger(__name__)

ALGORITHM = settings.JWT_ALGORITHM


def create_access_token(
    subject: Union[str, Any], expires_delta: Optional[timedelta] = None
) -> str:
    """Issue a signed JWT whose ``sub`` is the user id."""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"exp": expire, "sub": str(subject)}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


@lru_cache()
def _fernet() -> Fernet:
    key = settings.TOKEN_ENCRYPTION_KEY
    if not key:
        # Stable derivation so tokens survive restarts without a dedicated key
        digest = hashlib.sha256(settings.SECRET_KEY.encode()).digest()
        key = base64.urlsafe_b64encode(digest).decode()
    return Fernet(key.encode())


def encrypt_token(value: Optional[str]) -> Optional[str]:
    """Encrypt an OAuth token for storage."""
    if not value:
        return None
    return _fernet().encrypt(value.encode()).decode()


def decrypt_token(value: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored OAuth token.

    Returns None when the ciphertext cannot be read (rotated key or corrupted
    row); callers treat that the same as a missing token.
    """
    if not value:
        return None
    try:
        return _fernet().decrypt(value.encode()).decode()
    except InvalidToken:
        logger.error("Stored calendar token could not be decrypted")
        return None


def generate_feed_token(nbytes: int = 32) -> str:
    """Random, URL-safe token for ICS feed URLs."""
    return secrets.token_urlsafe(nbytes)


def generate_hold_token() -> str:
    return f"hold_{secrets.token_urlsafe(24)}"


def generate_client_state() -> str:
    """Shared secret a provider echoes back on every push notification."""
    return secrets.token_urlsafe(24)


def client_state_matches(expected: Optional[str], received: Optional[str]) -> bool:
    if not expected:
        return True
    return received is not None and hmac.compare_digest(expected, received)


def fingerprint_customer(*parts: Optional[str]) -> Optional[str]:
    """Hash caller identity (phone, email) so holds never carry raw PII."""
    normalized = [p.strip().lower() for p in parts if p and p.strip()]
    if not normalized:
        return None
    return hashlib.sha256("|".join(normalized).encode()).hexdigest()
