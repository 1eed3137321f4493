"""
Data model for the step-up MFA core.

Plain dataclasses exchanged between the policy engine, the lifecycle
service and the storage adapters. None of these carry ORM state.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

DEFAULT_STEPUP_WINDOW_SECONDS = 300
MIN_STEPUP_WINDOW_SECONDS = 30   # one TOTP period

KNOWN_ROLES = ("owner", "admin", "manager", "finance", "developer")
DEFAULT_MFA_ROLES = ("owner", "admin")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class UserSecurityProfile:
    """Second-factor state of one user."""
    user_id: str
    totp_enabled: bool = False
    totp_secret: Optional[str] = None          # ciphertext, see SecretCipher
    recovery_code_hashes: List[str] = field(default_factory=list)
    last_verified_at: Optional[datetime] = None

    def __post_init__(self):
        self.last_verified_at = as_utc(self.last_verified_at)
        if self.totp_enabled and not self.totp_secret:
            raise ValueError(f"Profile {self.user_id} is enabled without a TOTP secret")

    @property
    def has_pending_secret(self) -> bool:
        return bool(self.totp_secret) and not self.totp_enabled

    def seconds_since_verification(self, now: datetime) -> float:
        """Elapsed seconds since the last verification, inf if never verified."""
        if self.last_verified_at is None:
            return float("inf")
        return (now - self.last_verified_at).total_seconds()

    def is_fresh(self, now: datetime, window_seconds: int) -> bool:
        return self.seconds_since_verification(now) < window_seconds

    def copy_with(self, **changes: Any) -> "UserSecurityProfile":
        return replace(self, **changes)


@dataclass
class TenantSecurityPolicy:
    """Per-tenant MFA requirements."""
    tenant_id: str
    require_mfa_for_role: Dict[str, bool] = field(default_factory=dict)
    stepup_window_seconds: int = DEFAULT_STEPUP_WINDOW_SECONDS

    def __post_init__(self):
        if self.stepup_window_seconds < MIN_STEPUP_WINDOW_SECONDS:
            raise ValueError(
                f"stepup_window_seconds must be >= {MIN_STEPUP_WINDOW_SECONDS}, "
                f"got {self.stepup_window_seconds}"
            )

    @classmethod
    def default(cls, tenant_id: str) -> "TenantSecurityPolicy":
        return cls(
            tenant_id=tenant_id,
            require_mfa_for_role={role: role in DEFAULT_MFA_ROLES for role in KNOWN_ROLES},
        )

    def requires_mfa(self, role: Optional[str]) -> bool:
        if not role:
            return False
        return bool(self.require_mfa_for_role.get(role, False))


@dataclass
class RateLimitEntry:
    """Attempt counter for one (scope, identity) key. Times are epoch seconds."""
    attempts: int
    window_start: float
    locked_until: Optional[float] = None

    def to_mapping(self) -> Dict[str, str]:
        mapping = {
            "attempts": str(self.attempts),
            "window_start": repr(self.window_start),
        }
        if self.locked_until is not None:
            mapping["locked_until"] = repr(self.locked_until)
        return mapping

    @classmethod
    def from_mapping(cls, mapping: Dict[Any, Any]) -> "RateLimitEntry":
        data = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in mapping.items()
        }
        locked_until = data.get("locked_until")
        return cls(
            attempts=int(data["attempts"]),
            window_start=float(data["window_start"]),
            locked_until=float(locked_until) if locked_until not in (None, "") else None,
        )


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a rate limit check."""
    allowed: bool
    remaining: int
    reset_at: float
    locked: bool = False
    locked_until: Optional[float] = None


class StepUpDecision(str, Enum):
    """Outcome of a step-up policy evaluation."""
    ALLOWED = "allowed"
    ENROLLMENT_REQUIRED = "enrollment_required"
    CHALLENGE_REQUIRED = "challenge_required"

    @property
    def error_code(self) -> Optional[str]:
        return {
            StepUpDecision.ENROLLMENT_REQUIRED: "MFA_ENROLL_REQUIRED",
            StepUpDecision.CHALLENGE_REQUIRED: "MFA_CHALLENGE_REQUIRED",
        }.get(self)


class CodeType(str, Enum):
    TOTP = "totp"
    RECOVERY = "recovery"


@dataclass(frozen=True)
class Membership:
    """Result of role and tenant resolution for a user."""
    role: Optional[str] = None
    tenant_id: Optional[str] = None
    is_super_admin: bool = False


@dataclass(frozen=True)
class Actor:
    """The user attempting a gated action."""
    user_id: str
    role: Optional[str] = None
    tenant_id: Optional[str] = None
    is_super_admin: bool = False

    @classmethod
    def from_membership(cls, user_id: str, membership: Membership) -> "Actor":
        return cls(
            user_id=user_id,
            role=membership.role,
            tenant_id=membership.tenant_id,
            is_super_admin=membership.is_super_admin,
        )


@dataclass(frozen=True)
class AuditEvent:
    """Immutable record of a security-relevant operation."""
    actor_id: str
    action: str
    outcome: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class EnrollmentResult:
    secret: str                  # base32, shown once for manual entry
    provisioning_uri: str
    qr_code_base64: Optional[str] = None


@dataclass(frozen=True)
class RecoveryCodesResult:
    recovery_codes: List[str]


@dataclass(frozen=True)
class ChallengeResult:
    verified_until: datetime
    valid_for_seconds: int
    recovery_code_used: bool
    remaining_attempts: int
    recovery_codes_remaining: int


@dataclass(frozen=True)
class MFAStatus:
    totp_enabled: bool
    pending_enrollment: bool
    recovery_codes_remaining: int
    last_verified_at: Optional[datetime]
