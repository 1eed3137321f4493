"""
Security utilities for STEPGUARD.

This package provides:
- Encryption of TOTP secrets at rest
- Best-effort audit trail
"""
from .secret_cipher import SecretCipher, SecretDecryptionError, get_secret_cipher
from .audit import AuditAction, AuditTrail

__all__ = [
    "SecretCipher",
    "SecretDecryptionError",
    "get_secret_cipher",
    "AuditAction",
    "AuditTrail",
]
