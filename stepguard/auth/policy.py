"""
Step-up policy engine.

Decides whether an actor may perform a gated action now, must enroll in
MFA first, or must pass a fresh challenge. Nothing here is persisted; the
decision is recomputed from the actor's security profile and the tenant's
policy on every gated request.

Order of evaluation:
1. Super-admins always need MFA with a fixed 300-second window.
2. Without a tenant context the action is not gated.
3. A tenant without a policy row gets the default policy; this call is allowed.
   Actors without a role in the tenant never create a policy row.
4. Roles the policy does not cover are allowed.
5. Covered roles need enrollment and a verification inside the tenant window.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from .errors import PolicyResolutionError, ValidationError
from .models import (
    DEFAULT_STEPUP_WINDOW_SECONDS,
    Actor,
    StepUpDecision,
    UserSecurityProfile,
    utcnow,
)

logger = logging.getLogger(__name__)

SUPER_ADMIN_STEPUP_WINDOW_SECONDS = 300

GATED_ACTIONS = frozenset({
    "create-payment",
    "refund",
    "api-keys",
    "webhooks",
    "roles",
    "payout",
    "approvals",
    "alerts",
    "reconciliation",
    "export-large",
    "system_deposit",
    "system_withdrawal",
    "deposit_request",
    "withdrawal_request",
    "platform.settings.update",
    "webhooks.replay",
    "mfa.recovery_codes.regenerate",
})


class StepUpPolicyEngine:
    """
    Evaluates step-up requirements.

    Args:
        db: Storage collaborator with load_security_profile,
            load_tenant_policy and create_default_tenant_policy.
    """

    def __init__(self, db):
        self.db = db

    def evaluate(
        self,
        actor: Actor,
        action: str,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> StepUpDecision:
        """
        Decide whether actor may perform action.

        Args:
            actor: The acting user.
            action: One of GATED_ACTIONS.
            tenant_id: Tenant context of the action (defaults to actor.tenant_id).
            now: Evaluation time (aware UTC).

        Returns:
            StepUpDecision.

        Raises:
            ValidationError: Unknown action.
            PolicyResolutionError: Storage failure for a non-super-admin.
        """
        if action not in GATED_ACTIONS:
            raise ValidationError(f"Unknown gated action: {action}")

        now = now or utcnow()
        tenant_id = tenant_id if tenant_id is not None else actor.tenant_id

        logger.debug(
            f"Step-up check for user {actor.user_id}, action={action}, "
            f"role={actor.role}, tenant={tenant_id}, super_admin={actor.is_super_admin}"
        )

        if actor.is_super_admin:
            return self._evaluate_super_admin(actor, now)

        if not tenant_id:
            logger.debug("No tenant context, action not gated")
            return StepUpDecision.ALLOWED

        try:
            policy = self.db.load_tenant_policy(tenant_id)
            if policy is None:
                if actor.role is None:
                    logger.warning(
                        f"User {actor.user_id} has no role in tenant {tenant_id}, default policy not created"
                    )
                    return StepUpDecision.ALLOWED
                # First gated action in this tenant: seed the default policy,
                # which governs every later call.
                self.db.create_default_tenant_policy(tenant_id)
                logger.info(f"No security policy for tenant {tenant_id}, default created")
                return StepUpDecision.ALLOWED

            if not policy.requires_mfa(actor.role):
                return StepUpDecision.ALLOWED

            profile = self._load_profile(actor.user_id)
        except SQLAlchemyError as e:
            logger.error(f"Policy resolution failed for user {actor.user_id}, tenant {tenant_id}: {e}")
            raise PolicyResolutionError("Could not resolve security policy") from e

        return self._decide(profile, policy.stepup_window_seconds, now)

    def verification_window(self, actor: Actor, tenant_id: Optional[str] = None) -> int:
        """
        Seconds a verification stays valid for this actor.

        Raises:
            PolicyResolutionError: Storage failure while loading the policy.
        """
        if actor.is_super_admin:
            return SUPER_ADMIN_STEPUP_WINDOW_SECONDS

        tenant_id = tenant_id if tenant_id is not None else actor.tenant_id
        if not tenant_id:
            return DEFAULT_STEPUP_WINDOW_SECONDS

        try:
            policy = self.db.load_tenant_policy(tenant_id)
        except SQLAlchemyError as e:
            raise PolicyResolutionError("Could not resolve security policy") from e

        if policy is None:
            return DEFAULT_STEPUP_WINDOW_SECONDS
        return policy.stepup_window_seconds

    def _evaluate_super_admin(self, actor: Actor, now: datetime) -> StepUpDecision:
        try:
            profile = self._load_profile(actor.user_id)
        except SQLAlchemyError as e:
            logger.error(f"Profile lookup failed for super admin {actor.user_id}, requiring challenge: {e}")
            return StepUpDecision.CHALLENGE_REQUIRED

        return self._decide(profile, SUPER_ADMIN_STEPUP_WINDOW_SECONDS, now)

    def _load_profile(self, user_id: str) -> UserSecurityProfile:
        profile = self.db.load_security_profile(user_id)
        if profile is None:
            # Never enrolled
            return UserSecurityProfile(user_id=user_id)
        return profile

    @staticmethod
    def _decide(profile: UserSecurityProfile, window_seconds: int, now: datetime) -> StepUpDecision:
        if not profile.totp_enabled:
            return StepUpDecision.ENROLLMENT_REQUIRED

        if not profile.is_fresh(now, window_seconds):
            logger.debug(f"Verification for user {profile.user_id} older than {window_seconds}s")
            return StepUpDecision.CHALLENGE_REQUIRED

        return StepUpDecision.ALLOWED
