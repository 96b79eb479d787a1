"""
Encryption for OAuth tokens at rest.

ENCRYPTION_KEY holds one or more comma-separated Fernet keys. The first key
encrypts; every key is tried on decrypt, which allows key rotation without
re-authorizing users.
"""

from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class EncryptionError(Exception):
    """Custom exception for encryption/decryption errors."""

    pass


@lru_cache(maxsize=4)
def _build_cipher(raw_keys: str) -> MultiFernet:
    keys = [k.strip() for k in raw_keys.split(",") if k.strip()]
    if not keys:
        raise EncryptionError("ENCRYPTION_KEY is empty")
    try:
        return MultiFernet([Fernet(k.encode("utf-8")) for k in keys])
    except Exception as e:
        logger.error("Failed to initialize Fernet cipher", error=str(e))
        raise EncryptionError(f"Invalid encryption key: {e}") from e


def _get_cipher() -> MultiFernet:
    if not settings.ENCRYPTION_KEY:
        raise EncryptionError("ENCRYPTION_KEY not configured in environment")
    return _build_cipher(settings.ENCRYPTION_KEY)


def encrypt_token(token: str) -> bytes:
    """
    Encrypt a token string for BYTEA storage.

    Raises:
        EncryptionError: If the token is empty or encryption fails
    """
    if not token or not isinstance(token, str):
        raise EncryptionError("Token must be a non-empty string")

    try:
        return _get_cipher().encrypt(token.encode("utf-8"))
    except EncryptionError:
        raise
    except Exception as e:
        logger.error("Failed to encrypt token", error=str(e))
        raise EncryptionError(f"Encryption failed: {e}") from e


def decrypt_token(encrypted_token: bytes) -> str:
    """
    Decrypt a token read from storage.

    Raises:
        EncryptionError: If decryption fails or the ciphertext was tampered with
    """
    if isinstance(encrypted_token, memoryview):
        encrypted_token = encrypted_token.tobytes()
    if not encrypted_token or not isinstance(encrypted_token, bytes):
        raise EncryptionError("Encrypted token must be non-empty bytes")

    try:
        return _get_cipher().decrypt(encrypted_token).decode("utf-8")
    except InvalidToken as e:
        logger.error("Token decryption failed - invalid token")
        raise EncryptionError("Invalid or corrupted token") from e


def encrypt_oauth_tokens(
    access_token: str, refresh_token: str | None = None
) -> tuple[bytes, bytes | None]:
    """Encrypt an access token and optional refresh token."""
    encrypted_access = encrypt_token(access_token)
    encrypted_refresh = encrypt_token(refresh_token) if refresh_token else None
    return encrypted_access, encrypted_refresh


def decrypt_oauth_tokens(
    encrypted_access: bytes, encrypted_refresh: bytes | None = None
) -> tuple[str, str | None]:
    """Decrypt an access token and optional refresh token."""
    access_token = decrypt_token(encrypted_access)
    refresh_token = decrypt_token(encrypted_refresh) if encrypted_refresh else None
    return access_token, refresh_token


def validate_encryption_config() -> bool:
    """True if a configured key can round-trip a sample value."""
    try:
        return decrypt_token(encrypt_token("encryption-check")) == "encryption-check"
    except Exception as e:
        logger.error("Encryption configuration validation failed", error=str(e))
        return False
