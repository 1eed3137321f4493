"""
Recovery (backup) codes for MFA.

Codes are 8 hex characters shown as XXXX-XXXX. Only SHA-256 digests of the
normalized code are stored; each digest is consumed at most once.
"""
import hashlib
import re
import secrets
from typing import List, Optional

DEFAULT_RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_BYTES = 4

_NORMALIZED_PATTERN = re.compile(r"^[0-9A-F]{8}$")


def generate_recovery_codes(count: int = DEFAULT_RECOVERY_CODE_COUNT) -> List[str]:
    """
    Generate recovery codes for account recovery.

    These should be stored securely by the user and each can only be used once.

    Args:
        count: Number of codes to generate.

    Returns:
        List of unique codes formatted as XXXX-XXXX (uppercase hex).
    """
    codes: List[str] = []
    seen = set()
    while len(codes) < count:
        raw = secrets.token_hex(RECOVERY_CODE_BYTES).upper()
        if raw in seen:
            continue
        seen.add(raw)
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


def normalize_recovery_code(code: str) -> str:
    """Uppercase and strip hyphens and whitespace."""
    return "".join(code.split()).replace("-", "").upper()


def is_recovery_code_format(code: str) -> bool:
    """True if the code normalizes to 8 hex characters."""
    return bool(_NORMALIZED_PATTERN.match(normalize_recovery_code(code)))


def hash_recovery_code(code: str) -> str:
    """
    Hash a recovery code for storage.

    Args:
        code: Plain text recovery code (e.g., "A1B2-C3D4").

    Returns:
        Hex SHA-256 digest of the normalized code.
    """
    normalized = normalize_recovery_code(code)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def hash_recovery_codes(codes: List[str]) -> List[str]:
    """Hash a list of recovery codes for storage."""
    return [hash_recovery_code(code) for code in codes]


def find_matching_recovery_code(code: str, hashed_codes: List[str]) -> Optional[int]:
    """
    Find the index of a matching recovery code.

    Args:
        code: Plain text recovery code entered by user.
        hashed_codes: Stored digests.

    Returns:
        Index of the matching digest, or None if not found.
    """
    digest = hash_recovery_code(code)
    try:
        return hashed_codes.index(digest)
    except ValueError:
        return None


def consume_recovery_code(code: str, hashed_codes: List[str]) -> Optional[List[str]]:
    """
    Consume a recovery code.

    Returns:
        The remaining digests with the matched one removed, or None if the
        code does not match any stored digest.
    """
    index = find_matching_recovery_code(code, hashed_codes)
    if index is None:
        return None
    return hashed_codes[:index] + hashed_codes[index + 1:]
