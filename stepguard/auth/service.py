"""
MFA lifecycle service.

Orchestrates enrollment, confirmation, step-up challenges, disable and
recovery-code regeneration on top of the TOTP engine, the rate limiter,
the security database and the audit trail.

Every code-checking operation:
1. Rejects malformed codes (no attempt is counted)
2. Counts the attempt against its rate-limit budget
3. Verifies and writes the profile in one locked transaction
4. Resets the budget after success

Failures raise the typed errors from errors.py; audit writes never do.
"""
import os
import re
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from . import base32, recovery, totp
from .errors import (
    InvalidCodeError,
    LockedError,
    NotEnrolledError,
    StepUpRequiredError,
    ValidationError,
)
from .models import (
    Actor,
    ChallengeResult,
    CodeType,
    EnrollmentResult,
    MFAStatus,
    RecoveryCodesResult,
    StepUpDecision,
    UserSecurityProfile,
    utcnow,
)
from .policy import StepUpPolicyEngine
from .rate_limit import (
    CHALLENGE_RULE,
    DISABLE_RULE,
    ENROLL_RULE,
    REGENERATE_RULE,
    VERIFY_RULE,
    KeyedLock,
    RateLimiter,
    RateLimitRule,
)
from ..security.audit import AuditAction, AuditTrail
from ..security.secret_cipher import SecretCipher

logger = logging.getLogger(__name__)

_TOTP_PATTERN = re.compile(r"^\d{6}$")


def resolve_code_type(code: str, code_type: Optional[str] = None) -> CodeType:
    """
    Determine whether a submitted code is a TOTP or a recovery code.

    Codes containing a hyphen are recovery codes unless a type is given.

    Raises:
        ValidationError: Unknown type or a code that does not fit its type.
    """
    if not code:
        raise ValidationError("Missing verification code")

    if code_type is None:
        resolved = CodeType.RECOVERY if "-" in code else CodeType.TOTP
    else:
        try:
            resolved = CodeType(code_type)
        except ValueError:
            raise ValidationError(f"Unknown code type: {code_type}")

    if resolved is CodeType.TOTP and not _TOTP_PATTERN.match(code.strip()):
        raise ValidationError("Verification code must be 6 digits")
    if resolved is CodeType.RECOVERY and not recovery.is_recovery_code_format(code):
        raise ValidationError("Recovery code must have the form XXXX-XXXX")

    return resolved


class MFAService:
    """
    Public surface of the MFA core.

    Example usage:
        service = MFAService(db, cipher, rate_limiter, AuditTrail(db))
        enrollment = service.enroll(user_id, account_name=email)
        codes = service.confirm_enrollment(user_id, "123456")
        service.challenge(user_id, "654321", client_ip="10.0.0.1")
    """

    def __init__(
        self,
        db,
        cipher: SecretCipher,
        rate_limiter: RateLimiter,
        audit: AuditTrail,
        policy_engine: Optional[StepUpPolicyEngine] = None,
        clock: Callable[[], datetime] = utcnow,
        require_stepup_for_regeneration: Optional[bool] = None,
    ):
        self.db = db
        self.cipher = cipher
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.policy_engine = policy_engine or StepUpPolicyEngine(db)
        self.clock = clock
        if require_stepup_for_regeneration is None:
            require_stepup_for_regeneration = (
                os.getenv("MFA_REGEN_REQUIRES_STEPUP", "true").lower() == "true"
            )
        self.require_stepup_for_regeneration = require_stepup_for_regeneration
        self._profile_locks = KeyedLock()

    # ==========================================
    # Enrollment
    # ==========================================

    def enroll(
        self,
        user_id: str,
        account_name: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> EnrollmentResult:
        """
        Start enrollment with a new secret.

        The secret is stored encrypted and stays pending until
        confirm_enrollment succeeds. Calling enroll again replaces a pending
        secret.

        Raises:
            LockedError: Too many enrollment attempts.
            ValidationError: Two-factor authentication is already enabled.
        """
        now = self.clock()
        self._count_attempt(ENROLL_RULE, (user_id,), now, user_id, AuditAction.ENROLL_LOCKED, client_ip)

        secret = totp.generate_secret()
        encrypted = self.cipher.encrypt_secret(secret)

        def _start(current: UserSecurityProfile) -> UserSecurityProfile:
            if current.totp_enabled:
                raise ValidationError("Two-factor authentication is already enabled")
            return UserSecurityProfile(user_id=user_id, totp_secret=encrypted)

        with self._profile_locks.hold(user_id):
            self.db.update_security_profile(user_id, _start)

        uri = totp.get_totp_provisioning_uri(secret, account_name or user_id)
        qr_code = totp.generate_qr_code_base64(uri)

        self.audit.record(user_id, AuditAction.ENROLL_INITIATED, "success", {"ip": client_ip})
        logger.info(f"MFA enrollment initiated for user {user_id}")

        return EnrollmentResult(
            secret=base32.encode(secret),
            provisioning_uri=uri,
            qr_code_base64=qr_code,
        )

    def confirm_enrollment(self, user_id: str, code: str, client_ip: str = "unknown") -> RecoveryCodesResult:
        """
        Enable two-factor authentication with the first code from the app.

        Returns:
            The plaintext recovery codes. They are never retrievable again.

        Raises:
            ValidationError: Malformed code, or already enabled.
            LockedError: Too many attempts.
            NotEnrolledError: No pending enrollment.
            InvalidCodeError: Code did not verify.
        """
        resolve_code_type(code, CodeType.TOTP.value)
        now = self.clock()
        attempt = self._count_attempt(
            VERIFY_RULE, (user_id, client_ip), now, user_id, AuditAction.VERIFY_LOCKED, client_ip
        )

        codes = recovery.generate_recovery_codes()

        def _enable(current: UserSecurityProfile) -> UserSecurityProfile:
            if current.totp_enabled:
                raise ValidationError("Two-factor authentication is already enabled")
            if not current.totp_secret:
                raise NotEnrolledError("No pending enrollment. Call enroll first.")
            if not totp.verify(self.cipher.decrypt_secret(current.totp_secret), code.strip(), now):
                raise InvalidCodeError(attempt.remaining)
            return current.copy_with(
                totp_enabled=True,
                recovery_code_hashes=recovery.hash_recovery_codes(codes),
                last_verified_at=now,
            )

        try:
            with self._profile_locks.hold(user_id):
                self.db.update_security_profile(user_id, _enable)
        except InvalidCodeError:
            self.audit.record(user_id, AuditAction.VERIFY_FAILED, "failure", {"ip": client_ip})
            raise

        self.rate_limiter.reset_rule(VERIFY_RULE, user_id, client_ip)
        self.audit.record(user_id, AuditAction.ENABLED, "success", {"ip": client_ip})
        logger.info(f"MFA enabled for user {user_id}")

        return RecoveryCodesResult(recovery_codes=codes)

    # ==========================================
    # Step-up
    # ==========================================

    def challenge(
        self,
        user_id: str,
        code: str,
        code_type: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> ChallengeResult:
        """
        Verify a TOTP or recovery code and refresh the step-up window.

        A matched recovery code is consumed in the same write that records
        the verification.

        Raises:
            ValidationError: Malformed code.
            LockedError: Too many attempts.
            NotEnrolledError: Two-factor authentication is not enabled.
            InvalidCodeError: Code did not verify.
        """
        resolved = resolve_code_type(code, code_type)
        now = self.clock()
        attempt = self._count_attempt(
            CHALLENGE_RULE, (user_id, client_ip), now, user_id, AuditAction.CHALLENGE_LOCKED, client_ip
        )

        def _verify(current: UserSecurityProfile) -> UserSecurityProfile:
            if not current.totp_enabled:
                raise NotEnrolledError("Two-factor authentication is not enabled")
            remaining = self._check_code(current, code, resolved, now)
            if remaining is None:
                raise InvalidCodeError(attempt.remaining)
            return current.copy_with(recovery_code_hashes=remaining, last_verified_at=now)

        try:
            with self._profile_locks.hold(user_id):
                window = self.policy_engine.verification_window(self.actor_for(user_id))
                profile = self.db.update_security_profile(user_id, _verify)
        except InvalidCodeError:
            self.audit.record(
                user_id, AuditAction.CHALLENGE_FAILED, "failure",
                {"ip": client_ip, "type": resolved.value},
            )
            raise

        self.rate_limiter.reset_rule(CHALLENGE_RULE, user_id, client_ip)

        used_recovery = resolved is CodeType.RECOVERY
        codes_left = len(profile.recovery_code_hashes)
        if used_recovery:
            self.audit.record(
                user_id, AuditAction.CHALLENGE_RECOVERY, "success",
                {"ip": client_ip, "recovery_codes_remaining": codes_left},
            )
            logger.info(f"Recovery code used by user {user_id}, {codes_left} remaining")
        else:
            self.audit.record(user_id, AuditAction.CHALLENGE_SUCCESS, "success", {"ip": client_ip})

        return ChallengeResult(
            verified_until=now + timedelta(seconds=window),
            valid_for_seconds=window,
            recovery_code_used=used_recovery,
            remaining_attempts=CHALLENGE_RULE.max_attempts,
            recovery_codes_remaining=codes_left,
        )

    def evaluate_step_up(
        self,
        actor: Actor,
        action: str,
        tenant_id: Optional[str] = None,
    ) -> StepUpDecision:
        """Decide whether actor may perform action now."""
        return self.policy_engine.evaluate(actor, action, tenant_id=tenant_id, now=self.clock())

    def actor_for(self, user_id: str, tenant_id: Optional[str] = None) -> Actor:
        """
        Build the Actor for a user from their membership.

        A requested tenant the user is not a member of is ignored; the
        actor then carries the user's own membership.
        """
        membership = self.db.resolve_role_and_tenant(user_id, tenant_id)
        if tenant_id is not None and membership.tenant_id is None:
            logger.warning(f"User {user_id} is not a member of tenant {tenant_id}, using own membership")
            membership = self.db.resolve_role_and_tenant(user_id)
        return Actor.from_membership(user_id, membership)

    # ==========================================
    # Disable & Recovery Codes
    # ==========================================

    def disable(
        self,
        user_id: str,
        code: str,
        code_type: Optional[str] = None,
        client_ip: str = "unknown",
    ) -> None:
        """
        Disable two-factor authentication after proof of possession.

        Clears the secret, all recovery codes and the last verification.

        Raises:
            ValidationError: Malformed code.
            LockedError: Too many attempts.
            NotEnrolledError: Two-factor authentication is not enabled.
            InvalidCodeError: Code did not verify.
        """
        resolved = resolve_code_type(code, code_type)
        now = self.clock()
        attempt = self._count_attempt(
            DISABLE_RULE, (user_id,), now, user_id, AuditAction.DISABLE_LOCKED, client_ip
        )

        def _clear(current: UserSecurityProfile) -> UserSecurityProfile:
            if not current.totp_enabled:
                raise NotEnrolledError("Two-factor authentication is not enabled")
            if self._check_code(current, code, resolved, now) is None:
                raise InvalidCodeError(attempt.remaining)
            return UserSecurityProfile(user_id=user_id)

        try:
            with self._profile_locks.hold(user_id):
                self.db.update_security_profile(user_id, _clear)
        except InvalidCodeError:
            self.audit.record(
                user_id, AuditAction.DISABLE_FAILED, "failure",
                {"ip": client_ip, "type": resolved.value},
            )
            raise

        self.rate_limiter.reset_rule(DISABLE_RULE, user_id)
        self.audit.record(user_id, AuditAction.DISABLED, "success", {"ip": client_ip, "type": resolved.value})
        logger.info(f"MFA disabled for user {user_id}")

    def regenerate_recovery_codes(self, user_id: str, client_ip: str = "unknown") -> RecoveryCodesResult:
        """
        Replace the whole recovery-code set.

        Unless configured otherwise, the user must have verified within
        their step-up window.

        Raises:
            LockedError: Too many regenerations.
            NotEnrolledError: Two-factor authentication is not enabled.
            StepUpRequiredError: Last verification is too old.
        """
        now = self.clock()
        self._count_attempt(
            REGENERATE_RULE, (user_id,), now, user_id, AuditAction.RECOVERY_REGEN_DENIED, client_ip
        )

        window = None
        if self.require_stepup_for_regeneration:
            window = self.policy_engine.verification_window(self.actor_for(user_id))

        codes = recovery.generate_recovery_codes()

        def _replace(current: UserSecurityProfile) -> UserSecurityProfile:
            if not current.totp_enabled:
                raise NotEnrolledError("Two-factor authentication is not enabled")
            if window is not None and not current.is_fresh(now, window):
                raise StepUpRequiredError("Recent verification required")
            return current.copy_with(recovery_code_hashes=recovery.hash_recovery_codes(codes))

        try:
            with self._profile_locks.hold(user_id):
                self.db.update_security_profile(user_id, _replace)
        except StepUpRequiredError:
            self.audit.record(
                user_id, AuditAction.RECOVERY_REGEN_DENIED, "stepup_required", {"ip": client_ip}
            )
            raise

        self.audit.record(
            user_id, AuditAction.RECOVERY_REGENERATED, "success",
            {"ip": client_ip, "count": len(codes)},
        )
        logger.info(f"Recovery codes regenerated for user {user_id}")

        return RecoveryCodesResult(recovery_codes=codes)

    def status(self, user_id: str) -> MFAStatus:
        """Current enrollment state of a user."""
        profile = self.db.load_security_profile(user_id) or UserSecurityProfile(user_id=user_id)
        return MFAStatus(
            totp_enabled=profile.totp_enabled,
            pending_enrollment=profile.has_pending_secret,
            recovery_codes_remaining=len(profile.recovery_code_hashes),
            last_verified_at=profile.last_verified_at,
        )

    # ==========================================
    # Helpers
    # ==========================================

    def _count_attempt(
        self,
        rule: RateLimitRule,
        identity: tuple,
        now: datetime,
        user_id: str,
        locked_action: str,
        client_ip: str,
    ):
        result = self.rate_limiter.check_rule(rule, *identity, now=now.timestamp())
        if result.allowed:
            return result

        logger.warning(f"MFA attempts locked for user {user_id} ({rule.scope})")
        self.audit.record(
            user_id, locked_action, "locked",
            {"ip": client_ip, "locked_until": result.locked_until},
        )
        raise LockedError(result.locked_until or result.reset_at, now=now.timestamp())

    def _check_code(
        self,
        profile: UserSecurityProfile,
        code: str,
        code_type: CodeType,
        now: datetime,
    ) -> Optional[List[str]]:
        """
        Check a code against a profile.

        Returns:
            The recovery hashes to store (one fewer if a recovery code
            matched), or None if the code did not verify.
        """
        if code_type is CodeType.RECOVERY:
            return recovery.consume_recovery_code(code, profile.recovery_code_hashes)

        secret = self.cipher.decrypt_secret(profile.totp_secret)
        if totp.verify(secret, code.strip(), now):
            return list(profile.recovery_code_hashes)
        return None
