"""
Tests for the security database.
"""
from datetime import datetime, timedelta, timezone

import pytest

from stepguard.auth.models import AuditEvent, Membership, TenantSecurityPolicy, UserSecurityProfile
from stepguard.database.security_db import SessionRecord


class TestSecurityProfiles:
    """Profile persistence."""

    def test_missing_profile(self, security_db):
        assert security_db.load_security_profile("user-1") is None

    def test_save_and_load(self, security_db):
        verified = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
        security_db.save_security_profile(UserSecurityProfile(
            user_id="user-1",
            totp_enabled=True,
            totp_secret="ciphertext",
            recovery_code_hashes=["a", "b"],
            last_verified_at=verified,
        ))

        profile = security_db.load_security_profile("user-1")

        assert profile.totp_enabled
        assert profile.totp_secret == "ciphertext"
        assert profile.recovery_code_hashes == ["a", "b"]
        assert profile.last_verified_at == verified
        assert profile.last_verified_at.tzinfo is not None

    def test_save_replaces(self, security_db):
        security_db.save_security_profile(UserSecurityProfile("user-1", True, "x", ["a"]))
        security_db.save_security_profile(UserSecurityProfile("user-1"))

        profile = security_db.load_security_profile("user-1")
        assert not profile.totp_enabled
        assert profile.recovery_code_hashes == []

    def test_update_creates_row(self, security_db):
        stored = security_db.update_security_profile(
            "user-1", lambda p: p.copy_with(totp_secret="pending")
        )

        assert stored.totp_secret == "pending"
        assert security_db.load_security_profile("user-1").totp_secret == "pending"

    def test_update_returning_none_writes_nothing(self, security_db):
        security_db.update_security_profile("user-1", lambda p: None)
        assert security_db.load_security_profile("user-1") is None

    def test_update_rolls_back_when_fn_raises(self, security_db):
        security_db.save_security_profile(UserSecurityProfile("user-1", True, "x", ["a", "b"]))

        def _fail(profile):
            profile.recovery_code_hashes.pop()
            raise RuntimeError("abort")

        with pytest.raises(RuntimeError):
            security_db.update_security_profile("user-1", _fail)

        assert security_db.load_security_profile("user-1").recovery_code_hashes == ["a", "b"]

    def test_enabled_without_secret_is_invalid(self):
        with pytest.raises(ValueError):
            UserSecurityProfile("user-1", totp_enabled=True)


class TestTenantPolicies:
    """Policy persistence."""

    def test_default_policy(self, security_db):
        created = security_db.create_default_tenant_policy("tenant-1")
        policy = security_db.load_tenant_policy("tenant-1")

        assert policy == created
        assert policy.requires_mfa("owner")
        assert policy.requires_mfa("admin")
        assert not policy.requires_mfa("developer")
        assert policy.stepup_window_seconds == 300

    def test_default_creation_is_idempotent(self, security_db):
        security_db.save_tenant_policy(TenantSecurityPolicy("tenant-1", {"owner": False}, 600))

        existing = security_db.create_default_tenant_policy("tenant-1")

        assert existing.stepup_window_seconds == 600
        assert not existing.requires_mfa("owner")

    def test_window_below_one_period_rejected(self):
        with pytest.raises(ValueError):
            TenantSecurityPolicy("tenant-1", stepup_window_seconds=10)


class TestMembershipAndSessions:
    """Identity lookups."""

    def test_resolve_membership(self, security_db, seed_user):
        seed_user("user-1", tenant_id="tenant-1", role="finance")

        membership = security_db.resolve_role_and_tenant("user-1")

        assert membership == Membership(role="finance", tenant_id="tenant-1", is_super_admin=False)

    def test_resolve_without_membership(self, security_db, seed_user):
        seed_user("root", is_super_admin=True)
        assert security_db.resolve_role_and_tenant("root") == Membership(is_super_admin=True)

    def test_resolve_unknown_tenant(self, security_db, seed_user):
        seed_user("user-1", tenant_id="tenant-1")
        assert security_db.resolve_role_and_tenant("user-1", "tenant-2").role is None

    def test_validate_session(self, security_db, seed_user):
        token = seed_user("user-1")

        user = security_db.validate_session(token)

        assert user["user_id"] == "user-1"
        assert user["email"] == "user-1@example.com"
        assert security_db.validate_session("bogus") is None

    def test_expired_session(self, security_db, seed_user):
        token = seed_user("user-1")
        with security_db.get_session() as session:
            record = session.get(SessionRecord, token)
            record.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)

        assert security_db.validate_session(token) is None


class TestAuditEvents:
    """Audit persistence."""

    def test_record_and_list(self, security_db):
        security_db.record_audit_event(AuditEvent("user-1", "mfa.enabled", "success", {"ip": "10.0.0.1"}))
        security_db.record_audit_event(AuditEvent("user-2", "mfa.disabled", "success"))
        security_db.record_audit_event(AuditEvent("user-1", "mfa.challenge.success", "success"))

        events = security_db.list_audit_events(actor_id="user-1")

        assert [e.action for e in events] == ["mfa.enabled", "mfa.challenge.success"]
        assert events[0].metadata == {"ip": "10.0.0.1"}
        assert len(security_db.list_audit_events()) == 3
