"""
Pytest configuration and shared fixtures for STEPGUARD tests.

This module provides common test fixtures for:
- SQLite-backed security database
- Fernet cipher for TOTP secrets
- Controllable clock
- Mock Redis client
- Seeded users, sessions and memberships
"""
import pytest
from datetime import datetime, timedelta, timezone

import redis
from cryptography.fernet import Fernet

from stepguard.auth.rate_limit import InMemoryRateLimitStore, RateLimiter
from stepguard.auth.service import MFAService
from stepguard.database.security_db import (
    MembershipRecord,
    SecurityDB,
    SessionRecord,
    UserRecord,
)
from stepguard.security.audit import AuditTrail
from stepguard.security.secret_cipher import SecretCipher


FIXED_NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# ============================================
# Clock
# ============================================

class FakeClock:
    """Callable clock returning a settable aware UTC datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def timestamp(self) -> float:
        return self.now.timestamp()


@pytest.fixture
def clock():
    """Clock fixed at FIXED_NOW until a test advances it."""
    return FakeClock(FIXED_NOW)


# ============================================
# Database Fixtures
# ============================================

@pytest.fixture
def security_db():
    """
    In-memory SQLite SecurityDB with schema.
    Discarded after the test completes.
    """
    db = SecurityDB("sqlite://")
    db.init_schema()
    yield db
    db.engine.dispose()


@pytest.fixture
def seed_user(security_db):
    """
    Factory inserting a user with an active session and optional membership.

    Returns the session token.
    """
    def _seed(
        user_id: str = "user-1",
        email: str = None,
        tenant_id: str = None,
        role: str = None,
        is_super_admin: bool = False,
        token: str = None,
    ) -> str:
        token = token or f"token-{user_id}"
        with security_db.get_session() as session:
            session.add(UserRecord(
                user_id=user_id,
                email=email or f"{user_id}@example.com",
                is_super_admin=is_super_admin,
            ))
            session.add(SessionRecord(
                session_token=token,
                user_id=user_id,
                expires_at=datetime.now(timezone.utc) + timedelta(hours=24),
            ))
            if tenant_id is not None:
                session.add(MembershipRecord(user_id=user_id, tenant_id=tenant_id, role=role or "owner"))
        return token

    return _seed


# ============================================
# MFA Fixtures
# ============================================

@pytest.fixture
def cipher():
    """Cipher with a fresh Fernet key."""
    return SecretCipher(Fernet.generate_key())


@pytest.fixture
def rate_limiter():
    """Enabled in-memory rate limiter."""
    return RateLimiter(InMemoryRateLimitStore(), enabled=True)


@pytest.fixture
def audit_trail(security_db):
    return AuditTrail(security_db)


@pytest.fixture
def mfa_service(security_db, cipher, rate_limiter, audit_trail, clock):
    """MFA service wired to the SQLite database and the fake clock."""
    return MFAService(
        db=security_db,
        cipher=cipher,
        rate_limiter=rate_limiter,
        audit=audit_trail,
        clock=clock,
        require_stepup_for_regeneration=True,
    )


# ============================================
# Redis Fixtures
# ============================================

class MockPipeline:
    """Pipeline for MockRedisClient: immediate until multi(), then buffered."""

    def __init__(self, client):
        self.client = client
        self.buffered = False
        self.commands = []

    def multi(self):
        self.buffered = True

    def _run(self, name, *args, **kwargs):
        if self.buffered:
            self.commands.append((name, args, kwargs))
            return self
        return getattr(self.client, name)(*args, **kwargs)

    def hgetall(self, key):
        return self._run("hgetall", key)

    def hset(self, key, mapping=None):
        return self._run("hset", key, mapping=mapping)

    def delete(self, key):
        return self._run("delete", key)

    def expire(self, key, seconds):
        return self._run("expire", key, seconds)

    def execute(self):
        results = [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.commands]
        self.commands = []
        return results


@pytest.fixture
def mock_redis_client():
    """
    Mock Redis client for testing rate limiting.
    Implements hash operations and transaction() with an in-memory store.
    """
    class MockRedisClient:
        def __init__(self):
            self.store = {}
            self.expiry = {}
            self.transactions = 0

        def ping(self):
            return True

        def hgetall(self, key):
            return dict(self.store.get(key, {}))

        def hset(self, key, mapping=None):
            self.store.setdefault(key, {}).update(mapping or {})
            return len(mapping or {})

        def delete(self, key):
            if key in self.store:
                del self.store[key]
            if key in self.expiry:
                del self.expiry[key]
            return True

        def expire(self, key, seconds):
            self.expiry[key] = seconds
            return True

        def transaction(self, func, *watches):
            self.transactions += 1
            pipe = MockPipeline(self)
            func(pipe)
            return pipe.execute()

    return MockRedisClient()


@pytest.fixture
def broken_redis_client():
    """Redis client whose every command fails with a connection error."""
    class BrokenRedisClient:
        def _fail(self, *args, **kwargs):
            raise redis.ConnectionError("Connection refused")

        ping = transaction = hgetall = delete = _fail

    return BrokenRedisClient()
