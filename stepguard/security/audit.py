"""
Best-effort audit trail for MFA operations.

Every state-changing or rejected MFA attempt is logged to the "audit"
logger and persisted as an AuditEvent. Persistence failures are logged and
never fail the operation being audited.
"""
import logging
from typing import Any, Dict, Optional

from ..auth.models import AuditEvent

audit_logger = logging.getLogger("audit")
logger = logging.getLogger(__name__)


class AuditAction:
    """Audit action names."""
    ENROLL_INITIATED = "mfa.enroll.initiated"
    ENROLL_LOCKED = "mfa.enroll.locked"
    ENABLED = "mfa.enabled"
    VERIFY_FAILED = "mfa.verify.failed"
    VERIFY_LOCKED = "mfa.verify.locked"
    CHALLENGE_SUCCESS = "mfa.challenge.success"
    CHALLENGE_RECOVERY = "mfa.challenge.recovery"
    CHALLENGE_FAILED = "mfa.challenge.failed"
    CHALLENGE_LOCKED = "mfa.challenge.locked"
    DISABLED = "mfa.disabled"
    DISABLE_FAILED = "mfa.disable.failed"
    DISABLE_LOCKED = "mfa.disable.locked"
    RECOVERY_REGENERATED = "mfa.recovery_codes.regenerated"
    RECOVERY_REGEN_DENIED = "mfa.recovery_codes.denied"


class AuditTrail:
    """
    Writes audit events through a storage collaborator.

    Args:
        db: Object with record_audit_event(AuditEvent), usually SecurityDB.
    """

    def __init__(self, db):
        self.db = db

    def record(
        self,
        actor_id: str,
        action: str,
        outcome: str,
        metadata: Optional[Dict[str, Any]] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[AuditEvent]:
        """
        Record an audit event.

        Returns:
            The event, or None if it could not be persisted.
        """
        event = AuditEvent(
            actor_id=actor_id,
            action=action,
            outcome=outcome,
            metadata=dict(metadata or {}),
            tenant_id=tenant_id,
        )
        audit_logger.info({
            "action": action,
            "actor_id": actor_id,
            "outcome": outcome,
            "tenant_id": tenant_id,
            **event.metadata,
        })

        try:
            self.db.record_audit_event(event)
        except Exception as e:
            # The audited operation must not fail because of its audit record
            logger.error(f"Failed to persist audit event {action} for {actor_id}: {e}")
            return None

        return event
