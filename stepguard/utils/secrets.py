"""
Secrets management utilities for STEPGUARD.

Supports multiple secret sources:
1. {NAME}_FILE environment variable pointing at a file (Docker/Kubernetes secrets)
2. {NAME} environment variable (development)
3. /run/secrets/{name} (Docker secrets default path)

Usage:
    from stepguard.utils.secrets import get_secret

    key = get_secret("MFA_SECRET_ENCRYPTION_KEY")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)

SECRETS_DIR = "/run/secrets"


def _read_secret_file(path: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError as e:
        logger.warning(f"Failed to read secret file {path}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value from the first source that has it.

    Values are cached; call get_secret.cache_clear() after rotating a secret.

    Args:
        name: Secret name (e.g., "MFA_SECRET_ENCRYPTION_KEY")
        default: Default value if secret not found

    Returns:
        Secret value or default
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        secret = _read_secret_file(file_path)
        if secret:
            logger.debug(f"Loaded secret {name} from file")
            return secret

    env_value = os.environ.get(name)
    if env_value:
        logger.debug(f"Loaded secret {name} from environment")
        return env_value

    docker_secret_path = os.path.join(SECRETS_DIR, name.lower())
    if os.path.isfile(docker_secret_path):
        secret = _read_secret_file(docker_secret_path)
        if secret:
            logger.debug(f"Loaded secret {name} from Docker secrets")
            return secret

    if default is None:
        logger.warning(f"Secret {name} not found, no default provided")
    return default


def get_required_secret(name: str) -> str:
    """
    Get a required secret, raising an error if not found.

    Raises:
        ValueError: If secret not found
    """
    value = get_secret(name)
    if value is None:
        raise ValueError(
            f"Required secret '{name}' not found. "
            f"Set {name} or {name}_FILE environment variable."
        )
    return value


def get_mfa_encryption_key() -> str:
    """Get the Fernet key protecting TOTP secrets at rest."""
    return get_required_secret("MFA_SECRET_ENCRYPTION_KEY")


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """
    Mask a secret for safe logging.

    Args:
        secret: The secret to mask
        visible_chars: Number of characters to show at start and end

    Returns:
        Masked string like "abc...xyz"
    """
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
