"""
Encrypt calendar OAuth tokens at rest with Fernet.
TOKEN_ENCRYPTION_KEY must be a urlsafe base64 32-byte key (Fernet.generate_key()).
"""
import logging

from cryptography.fernet import Fernet, InvalidToken

from app.config import settings

logger = logging.getLogger(__name__)


def _cipher() -> Fernet:
    key = (settings.token_encryption_key or "").strip()
    if not key:
        raise RuntimeError("TOKEN_ENCRYPTION_KEY is not set; cannot store calendar credentials.")
    return Fernet(key.encode())


def encrypt_secret(value: str | None) -> str | None:
    if not value:
        return None
    return _cipher().encrypt(value.encode()).decode()


def decrypt_secret(value: str | None, *, ttl: int | None = None) -> str | None:
    """Plaintext, or None when the value is empty, undecryptable, or older than ttl seconds."""
    if not value:
        return None
    try:
        return _cipher().decrypt(value.encode(), ttl=ttl).decode()
    except InvalidToken:
        logger.warning("Encrypted value could not be decrypted (expired, or key rotated?)")
        return None
