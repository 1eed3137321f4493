"""
Step-up MFA core.

Primitives (base32, totp, recovery, rate_limit) and the policy engine are
importable from here. The lifecycle service lives in stepguard.auth.service.
"""
from .errors import (
    MFAError,
    ValidationError,
    AuthenticationError,
    LockedError,
    InvalidCodeError,
    NotEnrolledError,
    PolicyResolutionError,
    StepUpRequiredError,
)
from .models import (
    Actor,
    CodeType,
    StepUpDecision,
    TenantSecurityPolicy,
    UserSecurityProfile,
)
from .policy import GATED_ACTIONS, StepUpPolicyEngine
from .rate_limit import RateLimiter, RateLimitRule, get_rate_limiter

__all__ = [
    "MFAError",
    "ValidationError",
    "AuthenticationError",
    "LockedError",
    "InvalidCodeError",
    "NotEnrolledError",
    "PolicyResolutionError",
    "StepUpRequiredError",
    "Actor",
    "CodeType",
    "StepUpDecision",
    "TenantSecurityPolicy",
    "UserSecurityProfile",
    "GATED_ACTIONS",
    "StepUpPolicyEngine",
    "RateLimiter",
    "RateLimitRule",
    "get_rate_limiter",
]
