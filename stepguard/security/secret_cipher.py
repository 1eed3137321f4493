"""
Encryption of TOTP secrets at rest.

Secrets are encrypted with Fernet (AES-128-CBC + HMAC-SHA256) before they
are written to the database. The MFA service only holds the decrypted
secret in memory for the duration of a single verification.

Security Model:
- Encryption key stored as environment variable / Docker secret
- Protects against database breach (attacker sees only encrypted blobs)
- Key rotation: MultiFernet accepts old keys for decryption
"""
import logging
from typing import List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from ..utils.secrets import get_mfa_encryption_key

logger = logging.getLogger(__name__)


class SecretDecryptionError(Exception):
    """Stored ciphertext could not be decrypted with any configured key."""


class SecretCipher:
    """
    Encrypts and decrypts raw TOTP secrets.

    Key is read from MFA_SECRET_ENCRYPTION_KEY (or _FILE). Multiple keys may
    be given comma-separated; the first one encrypts, all of them decrypt.
    """

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        """
        Initialize cipher with key from environment or parameter.

        Args:
            key: URL-safe base64-encoded 32-byte Fernet key(s). If None, reads from env.
        """
        if key is None:
            key = get_mfa_encryption_key()

        if isinstance(key, bytes):
            key = key.decode("utf-8")

        keys: List[str] = [k.strip() for k in key.split(",") if k.strip()]
        if not keys:
            raise ValueError(
                "MFA_SECRET_ENCRYPTION_KEY not set. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )

        self._fernet = MultiFernet([Fernet(k.encode("utf-8")) for k in keys])

    def encrypt_secret(self, secret: bytes) -> str:
        """
        Encrypt a raw secret.

        Args:
            secret: Raw TOTP secret bytes.

        Returns:
            Fernet token as text, safe to store.
        """
        return self._fernet.encrypt(secret).decode("utf-8")

    def decrypt_secret(self, token: str) -> bytes:
        """
        Decrypt a stored secret.

        Args:
            token: Fernet token produced by encrypt_secret.

        Returns:
            Raw TOTP secret bytes.

        Raises:
            SecretDecryptionError: If the token is invalid for all keys.
        """
        try:
            return self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as e:
            logger.error("TOTP secret decryption failed")
            raise SecretDecryptionError("Failed to decrypt TOTP secret") from e

    def rotate(self, token: str) -> str:
        """Re-encrypt a stored secret with the primary key."""
        return self._fernet.rotate(token.encode("utf-8")).decode("utf-8")


_cipher: Optional[SecretCipher] = None


def get_secret_cipher() -> SecretCipher:
    """Get singleton SecretCipher."""
    global _cipher
    if _cipher is None:
        _cipher = SecretCipher()
    return _cipher
