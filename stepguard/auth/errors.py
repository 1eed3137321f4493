"""
Error taxonomy for the MFA core.

Each error carries a machine-readable code and the HTTP status the API
layer answers with. Messages are safe to show to the caller: a rejected
code never says why it was rejected.
"""
import math
import time
from typing import Optional


class MFAError(Exception):
    """Base class for errors surfaced to callers of the MFA service."""
    code = "MFA_ERROR"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ValidationError(MFAError):
    """Malformed input, e.g. a code that is not 6 digits or XXXX-XXXX."""
    code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(MFAError):
    """No valid session for the acting user."""
    code = "AUTH_REQUIRED"
    status_code = 401


class LockedError(MFAError):
    """Too many failed attempts; all attempts are rejected until locked_until."""
    code = "MFA_LOCKED"
    status_code = 429

    def __init__(self, locked_until: float, now: Optional[float] = None):
        now = time.time() if now is None else now
        self.locked_until = locked_until
        self.retry_after_seconds = max(0, math.ceil(locked_until - now))
        self.remaining_minutes = max(1, math.ceil(self.retry_after_seconds / 60))
        super().__init__(
            f"Too many verification attempts. Try again in {self.remaining_minutes} minute"
            f"{'s' if self.remaining_minutes != 1 else ''}."
        )


class InvalidCodeError(MFAError):
    """The submitted code did not verify."""
    code = "MFA_INVALID_CODE"
    status_code = 400

    def __init__(self, remaining_attempts: int):
        self.remaining_attempts = remaining_attempts
        super().__init__("Invalid verification code")


class NotEnrolledError(MFAError):
    """The operation needs an active (or pending) enrollment."""
    code = "MFA_NOT_ENROLLED"
    status_code = 400


class PolicyResolutionError(MFAError):
    """Storage failure while resolving tenant policy or security profile."""
    code = "POLICY_RESOLUTION_FAILED"
    status_code = 503


class StepUpRequiredError(MFAError):
    """The action needs enrollment or a fresh challenge first."""
    code = "MFA_CHALLENGE_REQUIRED"
    status_code = 401
