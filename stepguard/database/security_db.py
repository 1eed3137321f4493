"""
Database Manager for MFA Security State.

This module provides connection management and operations for:
- User security profiles (TOTP secret, recovery code hashes, last verification)
- Tenant security policies (per-role MFA requirements, step-up window)
- Membership lookup (role, tenant, super-admin flag)
- Session validation (sessions are issued by the identity provider)
- Audit events

SECURITY NOTE: TOTP secrets are stored encrypted (see security/secret_cipher.py)
and recovery codes only as SHA-256 digests. Plaintext never reaches this layer.
"""
import os
import logging
from typing import Callable, Dict, List, Optional
from datetime import datetime, timezone
from contextlib import contextmanager

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from ..auth.models import (
    AuditEvent,
    Membership,
    TenantSecurityPolicy,
    UserSecurityProfile,
    as_utc,
    utcnow,
)
from ..utils.secrets import get_secret, mask_secret

logger = logging.getLogger(__name__)

Base = declarative_base()


# =============================================================================
# DATABASE MODELS
# =============================================================================

class UserRecord(Base):
    """Identity provider user (read-only here)."""
    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_super_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class SessionRecord(Base):
    """Bearer session issued by the identity provider."""
    __tablename__ = "sessions"

    session_token = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class MembershipRecord(Base):
    """Tenant membership and role."""
    __tablename__ = "memberships"

    user_id = Column(String(64), ForeignKey("users.user_id", ondelete="CASCADE"), primary_key=True)
    tenant_id = Column(String(64), primary_key=True)
    role = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class SecurityProfileRecord(Base):
    """Second-factor state, one row per user."""
    __tablename__ = "user_security_profiles"

    user_id = Column(String(64), primary_key=True)
    totp_enabled = Column(Boolean, default=False, nullable=False)
    totp_secret = Column(Text, nullable=True)            # Fernet ciphertext
    recovery_code_hashes = Column(JSON, nullable=False, default=list)
    last_verified_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class TenantPolicyRecord(Base):
    """Per-tenant MFA policy singleton."""
    __tablename__ = "tenant_security_policies"

    tenant_id = Column(String(64), primary_key=True)
    require_mfa_for_role = Column(JSON, nullable=False, default=dict)
    stepup_window_seconds = Column(Integer, nullable=False, default=300)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)


class AuditEventRecord(Base):
    """Append-only audit trail."""
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=False)
    action = Column(String(100), nullable=False)
    outcome = Column(String(50), nullable=False)
    tenant_id = Column(String(64), nullable=True)
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_actor_created", "actor_id", "created_at"),
    )


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _profile_from_record(record: SecurityProfileRecord) -> UserSecurityProfile:
    return UserSecurityProfile(
        user_id=record.user_id,
        totp_enabled=bool(record.totp_enabled),
        totp_secret=record.totp_secret,
        recovery_code_hashes=list(record.recovery_code_hashes or []),
        last_verified_at=as_utc(record.last_verified_at),
    )


def _apply_profile(record: SecurityProfileRecord, profile: UserSecurityProfile) -> None:
    record.totp_enabled = profile.totp_enabled
    record.totp_secret = profile.totp_secret
    record.recovery_code_hashes = list(profile.recovery_code_hashes)
    record.last_verified_at = profile.last_verified_at
    record.updated_at = utcnow()


def _policy_from_record(record: TenantPolicyRecord) -> TenantSecurityPolicy:
    return TenantSecurityPolicy(
        tenant_id=record.tenant_id,
        require_mfa_for_role=dict(record.require_mfa_for_role or {}),
        stepup_window_seconds=record.stepup_window_seconds,
    )


# =============================================================================
# SECURITY DATABASE
# =============================================================================

class SecurityDB:
    """
    SQLAlchemy connection manager for MFA security state.

    Example usage:
        security_db = SecurityDB()
        security_db.init_schema()

        profile = security_db.load_security_profile(user_id)
        policy = security_db.load_tenant_policy(tenant_id)

        # Read-modify-write under a row lock
        security_db.update_security_profile(user_id, lambda p: p.copy_with(...))
    """

    def __init__(self, connection_string: Optional[str] = None):
        """
        Initialize database connection.

        Args:
            connection_string: SQLAlchemy URL. Uses DATABASE_URL or the
                             POSTGRES_* environment variables if not provided.
        """
        if connection_string is None:
            connection_string = os.getenv("DATABASE_URL") or self._build_database_url()

        if connection_string.startswith("sqlite"):
            # Single shared connection so in-memory databases survive across sessions
            self.engine = create_engine(
                connection_string,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self.engine = create_engine(
                connection_string,
                poolclass=QueuePool,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30,
                pool_pre_ping=True,  # Test connections before use (detect stale)
                pool_recycle=300,    # Recycle connections every 5 minutes
            )
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    @staticmethod
    def _build_database_url() -> str:
        """Build database URL from environment variables."""
        host = os.getenv("POSTGRES_HOST", "localhost")
        port = os.getenv("POSTGRES_PORT", "5432")
        db = os.getenv("POSTGRES_DB", "stepguard")
        user = os.getenv("POSTGRES_USER", "stepguard_user")
        password = get_secret("POSTGRES_PASSWORD", "")
        logger.debug(f"Database URL: postgresql://{user}:{mask_secret(password)}@{host}:{port}/{db}")
        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @contextmanager
    def get_session(self):
        """
        Get a database session with automatic cleanup.

        Usage:
            with security_db.get_session() as session:
                result = session.execute(query)
        """
        session = self.Session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_schema(self) -> None:
        """
        Initialize database schema (create tables if not exist).

        Call this once during application setup.
        """
        Base.metadata.create_all(self.engine)
        logger.info("Database schema initialized")

    # ==========================================
    # Security Profiles
    # ==========================================

    def load_security_profile(self, user_id: str) -> Optional[UserSecurityProfile]:
        """
        Get a user's security profile.

        Args:
            user_id: User identifier.

        Returns:
            UserSecurityProfile or None if the user never enrolled.
        """
        with self.get_session() as session:
            record = session.get(SecurityProfileRecord, user_id)
            if record is None:
                return None
            return _profile_from_record(record)

    def save_security_profile(self, profile: UserSecurityProfile) -> None:
        """
        Insert or replace a security profile in one transaction.

        Args:
            profile: Complete profile to persist.
        """
        with self.get_session() as session:
            record = session.get(SecurityProfileRecord, profile.user_id, with_for_update=True)
            if record is None:
                record = SecurityProfileRecord(user_id=profile.user_id)
                session.add(record)
            _apply_profile(record, profile)

        logger.debug(f"Saved security profile for user {profile.user_id}: enabled={profile.totp_enabled}")

    def update_security_profile(
        self,
        user_id: str,
        fn: Callable[[UserSecurityProfile], Optional[UserSecurityProfile]],
    ) -> UserSecurityProfile:
        """
        Read-modify-write a profile under a row lock.

        fn receives the current profile (an empty one if the row does not
        exist) and returns the replacement, or None to leave it unchanged.
        If fn raises, the transaction is rolled back and nothing is written.

        Returns:
            The profile as stored after the update.
        """
        with self.get_session() as session:
            record = session.execute(
                select(SecurityProfileRecord)
                .where(SecurityProfileRecord.user_id == user_id)
                .with_for_update()
            ).scalar_one_or_none()

            current = _profile_from_record(record) if record is not None else UserSecurityProfile(user_id=user_id)
            updated = fn(current)
            if updated is None:
                return current

            if record is None:
                record = SecurityProfileRecord(user_id=user_id)
                session.add(record)
            _apply_profile(record, updated)
            return updated

    # ==========================================
    # Tenant Policies
    # ==========================================

    def load_tenant_policy(self, tenant_id: str) -> Optional[TenantSecurityPolicy]:
        """
        Get a tenant's security policy.

        Returns:
            TenantSecurityPolicy or None if no policy row exists.
        """
        with self.get_session() as session:
            record = session.get(TenantPolicyRecord, tenant_id)
            if record is None:
                return None
            return _policy_from_record(record)

    def save_tenant_policy(self, policy: TenantSecurityPolicy) -> None:
        """Insert or replace a tenant policy."""
        with self.get_session() as session:
            record = session.get(TenantPolicyRecord, policy.tenant_id)
            if record is None:
                record = TenantPolicyRecord(tenant_id=policy.tenant_id)
                session.add(record)
            record.require_mfa_for_role = dict(policy.require_mfa_for_role)
            record.stepup_window_seconds = policy.stepup_window_seconds
            record.updated_at = utcnow()

    def create_default_tenant_policy(self, tenant_id: str) -> TenantSecurityPolicy:
        """
        Create the default policy for a tenant if none exists.

        Idempotent: a concurrent creator wins and its row is returned.

        Returns:
            The policy now stored for the tenant.
        """
        policy = TenantSecurityPolicy.default(tenant_id)
        try:
            with self.get_session() as session:
                existing = session.get(TenantPolicyRecord, tenant_id)
                if existing is not None:
                    return _policy_from_record(existing)
                session.add(TenantPolicyRecord(
                    tenant_id=tenant_id,
                    require_mfa_for_role=dict(policy.require_mfa_for_role),
                    stepup_window_seconds=policy.stepup_window_seconds,
                ))
        except IntegrityError:
            logger.debug(f"Default policy for tenant {tenant_id} created concurrently")
            stored = self.load_tenant_policy(tenant_id)
            if stored is not None:
                return stored
            raise

        logger.info(f"Created default security policy for tenant {tenant_id}")
        return policy

    # ==========================================
    # Membership & Sessions
    # ==========================================

    def resolve_role_and_tenant(self, user_id: str, tenant_id: Optional[str] = None) -> Membership:
        """
        Look up a user's role and tenant.

        Args:
            user_id: User identifier.
            tenant_id: Restrict to this tenant; otherwise the oldest membership.

        Returns:
            Membership (role and tenant are None for users without one).
        """
        with self.get_session() as session:
            user = session.get(UserRecord, user_id)
            is_super_admin = bool(user.is_super_admin) if user is not None else False

            query = select(MembershipRecord).where(MembershipRecord.user_id == user_id)
            if tenant_id is not None:
                query = query.where(MembershipRecord.tenant_id == tenant_id)
            membership = session.execute(
                query.order_by(MembershipRecord.created_at).limit(1)
            ).scalar_one_or_none()

            if membership is None:
                return Membership(is_super_admin=is_super_admin)

            return Membership(
                role=membership.role,
                tenant_id=membership.tenant_id,
                is_super_admin=is_super_admin,
            )

    def validate_session(self, session_token: str) -> Optional[Dict]:
        """
        Validate a bearer session token.

        Returns:
            User dict if the session is active and unexpired, None otherwise.
        """
        now = datetime.now(timezone.utc)
        with self.get_session() as session:
            row = session.execute(
                select(SessionRecord, UserRecord)
                .join(UserRecord, UserRecord.user_id == SessionRecord.user_id)
                .where(SessionRecord.session_token == session_token)
                .where(SessionRecord.is_active.is_(True))
            ).first()

            if row is None:
                return None

            session_record, user = row
            if as_utc(session_record.expires_at) <= now or not user.is_active:
                return None

            return {
                "user_id": user.user_id,
                "email": user.email,
                "is_active": user.is_active,
                "is_super_admin": user.is_super_admin,
            }

    # ==========================================
    # Audit Events
    # ==========================================

    def record_audit_event(self, event: AuditEvent) -> None:
        """
        Append an audit event.

        Args:
            event: Event to persist.
        """
        with self.get_session() as session:
            session.add(AuditEventRecord(
                actor_id=event.actor_id,
                action=event.action,
                outcome=event.outcome,
                tenant_id=event.tenant_id,
                details=dict(event.metadata),
                created_at=event.created_at,
            ))

    def list_audit_events(self, actor_id: Optional[str] = None, limit: int = 100) -> List[AuditEvent]:
        """
        Get recent audit events, oldest first.

        Args:
            actor_id: Only events of this actor.
            limit: Maximum number of events.
        """
        with self.get_session() as session:
            query = select(AuditEventRecord)
            if actor_id is not None:
                query = query.where(AuditEventRecord.actor_id == actor_id)
            records = session.execute(
                query.order_by(AuditEventRecord.id.desc()).limit(limit)
            ).scalars().all()

            return [
                AuditEvent(
                    actor_id=r.actor_id,
                    action=r.action,
                    outcome=r.outcome,
                    metadata=dict(r.details or {}),
                    tenant_id=r.tenant_id,
                    created_at=as_utc(r.created_at),
                )
                for r in reversed(records)
            ]


# Singleton instance
_security_db_instance: Optional[SecurityDB] = None


def get_security_db() -> SecurityDB:
    """
    Get singleton SecurityDB instance.

    Returns:
        SecurityDB instance.
    """
    global _security_db_instance
    if _security_db_instance is None:
        _security_db_instance = SecurityDB()
    return _security_db_instance
