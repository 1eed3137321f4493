"""
Shared utilities for STEPGUARD.

This package provides:
- Secrets management
"""
from .secrets import get_secret, get_required_secret, get_mfa_encryption_key, mask_secret

__all__ = ["get_secret", "get_required_secret", "get_mfa_encryption_key", "mask_secret"]
