"""
Tests for the REST API.

Covers:
- Security headers and request tracking
- Bearer authentication
- MFA endpoints end to end over SQLite
- Error code mapping
- Step-up gating dependency
"""
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from stepguard.api.deps import get_client_ip, get_db, get_mfa_service, require_step_up
from stepguard.api.main import create_app
from stepguard.auth import base32, totp
from stepguard.auth.errors import PolicyResolutionError


# ============================================
# Test Fixtures
# ============================================

@pytest.fixture
def app(security_db, mfa_service):
    """Application wired to the SQLite database and the test service."""
    application = create_app()

    @application.post("/refunds", dependencies=[Depends(require_step_up("refund"))])
    async def create_refund():
        return {"status": "created"}

    application.dependency_overrides[get_db] = lambda: security_db
    application.dependency_overrides[get_mfa_service] = lambda: mfa_service
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers(seed_user):
    token = seed_user("user-1", tenant_id="tenant-1", role="owner")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def enrolled(client, auth_headers, clock):
    """Enroll and confirm through the API. Returns (raw secret, recovery codes)."""
    response = client.post("/mfa/enroll", headers=auth_headers)
    secret = base32.decode(response.json()["secret"])
    response = client.post("/mfa/verify", json={"code": totp.totp(secret, clock.now)}, headers=auth_headers)
    return secret, response.json()["recovery_codes"]


def _wrong_code(secret, now):
    valid = {totp.totp(secret, now.timestamp() + 30 * step) for step in range(-4, 5)}
    return next(c for c in (str(n).zfill(6) for n in range(1_000_000)) if c not in valid)


# ============================================
# Middleware
# ============================================

class TestMiddleware:
    """Headers added to every response."""

    def test_security_headers_present(self, client):
        response = client.get("/health/live")

        assert response.headers.get("X-Frame-Options") == "DENY"
        assert response.headers.get("X-Content-Type-Options") == "nosniff"
        assert response.headers.get("Cache-Control") == "no-store"
        assert "default-src 'none'" in response.headers.get("Content-Security-Policy", "")

    def test_request_id_echoed(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"
        assert float(response.headers["X-Process-Time-Ms"]) >= 0


# ============================================
# Authentication
# ============================================

class TestAuthentication:
    """Bearer sessions."""

    def test_missing_token(self, client):
        response = client.get("/mfa/status")

        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_REQUIRED"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token(self, client):
        response = client.get("/mfa/status", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid or expired token"


# ============================================
# MFA Endpoints
# ============================================

class TestEnrollmentFlow:
    """Enroll, verify, status."""

    def test_enroll(self, client, auth_headers):
        response = client.post("/mfa/enroll", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert len(data["secret"]) == 32
        assert data["provisioning_uri"].startswith("otpauth://totp/")
        assert "example.com" in data["provisioning_uri"]
        assert data["qr_code_base64"].startswith("data:image/png;base64,")

    def test_verify_returns_recovery_codes(self, client, auth_headers, enrolled):
        _, codes = enrolled
        assert len(codes) == 10

        status = client.get("/mfa/status", headers=auth_headers).json()
        assert status["totp_enabled"]
        assert status["recovery_codes_remaining"] == 10
        assert not status["pending_enrollment"]

    def test_enroll_twice_rejected(self, client, auth_headers, enrolled):
        response = client.post("/mfa/enroll", headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_verify_without_enroll(self, client, auth_headers):
        response = client.post("/mfa/verify", json={"code": "123456"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "MFA_NOT_ENROLLED"

    def test_short_code_rejected_by_schema(self, client, auth_headers):
        response = client.post("/mfa/verify", json={"code": "123"}, headers=auth_headers)

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestChallengeEndpoint:
    """Step-up challenge over HTTP."""

    def test_totp_challenge(self, client, auth_headers, enrolled, clock):
        secret, _ = enrolled
        clock.advance(3600)

        response = client.post(
            "/mfa/challenge",
            json={"code": totp.totp(secret, clock.now), "type": "totp"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"]
        assert data["valid_for_seconds"] == 300
        assert datetime.fromisoformat(data["verified_until"].replace("Z", "+00:00")) > clock.now

    def test_recovery_challenge(self, client, auth_headers, enrolled):
        _, codes = enrolled

        response = client.post("/mfa/challenge", json={"code": codes[0]}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["recovery_code_used"]
        assert response.json()["recovery_codes_remaining"] == 9

    def test_invalid_code(self, client, auth_headers, enrolled, clock):
        secret, _ = enrolled

        response = client.post(
            "/mfa/challenge", json={"code": _wrong_code(secret, clock.now)}, headers=auth_headers
        )

        assert response.status_code == 400
        data = response.json()
        assert data["code"] == "MFA_INVALID_CODE"
        assert data["detail"] == "Invalid verification code"
        assert data["remaining_attempts"] == 4

    def test_malformed_code(self, client, auth_headers, enrolled):
        response = client.post("/mfa/challenge", json={"code": "12ab56"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_lockout(self, client, auth_headers, enrolled, clock, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "testclient")
        secret, _ = enrolled
        wrong = _wrong_code(secret, clock.now)
        headers = {**auth_headers, "X-Forwarded-For": "10.0.0.1"}

        for _ in range(5):
            assert client.post("/mfa/challenge", json={"code": wrong}, headers=headers).status_code == 400

        response = client.post("/mfa/challenge", json={"code": wrong}, headers=headers)

        assert response.status_code == 429
        assert response.json()["code"] == "MFA_LOCKED"
        assert response.headers["Retry-After"] == "900"
        assert "locked_until" in response.json()

        # Another client behind the trusted proxy has its own budget
        other = {**auth_headers, "X-Forwarded-For": "10.0.0.2"}
        assert client.post("/mfa/challenge", json={"code": wrong}, headers=other).status_code == 400

    def test_rotating_forwarded_header_still_locks(self, client, auth_headers, enrolled, clock, monkeypatch):
        monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
        secret, _ = enrolled
        wrong = _wrong_code(secret, clock.now)

        statuses = [
            client.post(
                "/mfa/challenge",
                json={"code": wrong},
                headers={**auth_headers, "X-Forwarded-For": f"198.51.100.{i}"},
            ).status_code
            for i in range(10)
        ]

        assert statuses[:5] == [400] * 5
        assert statuses[5:] == [429] * 5

    def test_not_enrolled(self, client, auth_headers):
        response = client.post("/mfa/challenge", json={"code": "123456"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "MFA_NOT_ENROLLED"


class TestDisableAndRegenerate:
    """Disable and recovery codes."""

    def test_disable(self, client, auth_headers, enrolled, clock):
        secret, _ = enrolled

        response = client.post(
            "/mfa/disable", json={"code": totp.totp(secret, clock.now)}, headers=auth_headers
        )

        assert response.status_code == 204
        assert not client.get("/mfa/status", headers=auth_headers).json()["totp_enabled"]

    def test_regenerate(self, client, auth_headers, enrolled):
        _, old_codes = enrolled

        response = client.post("/mfa/recovery-codes", headers=auth_headers)

        assert response.status_code == 200
        assert not set(response.json()["recovery_codes"]) & set(old_codes)

    def test_regenerate_requires_fresh_verification(self, client, auth_headers, enrolled, clock):
        clock.advance(301)

        response = client.post("/mfa/recovery-codes", headers=auth_headers)

        assert response.status_code == 401
        assert response.json()["code"] == "MFA_CHALLENGE_REQUIRED"


# ============================================
# Step-up Policy
# ============================================

class TestStepUpEvaluate:
    """POST /mfa/step-up/evaluate."""

    def test_first_call_creates_policy(self, client, auth_headers, security_db):
        response = client.post("/mfa/step-up/evaluate", json={"action": "refund"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"decision": "allowed", "code": None}
        assert security_db.load_tenant_policy("tenant-1") is not None

    def test_enrollment_required(self, client, auth_headers, security_db):
        security_db.create_default_tenant_policy("tenant-1")

        response = client.post("/mfa/step-up/evaluate", json={"action": "payout"}, headers=auth_headers)

        assert response.json() == {"decision": "enrollment_required", "code": "MFA_ENROLL_REQUIRED"}

    def test_foreign_tenant_header_ignored(self, client, auth_headers, security_db):
        security_db.create_default_tenant_policy("tenant-1")
        headers = {**auth_headers, "X-Tenant-ID": "tenant-other"}

        response = client.post("/mfa/step-up/evaluate", json={"action": "payout"}, headers=headers)

        assert response.json() == {"decision": "enrollment_required", "code": "MFA_ENROLL_REQUIRED"}
        assert security_db.load_tenant_policy("tenant-other") is None

    def test_unknown_action(self, client, auth_headers):
        response = client.post("/mfa/step-up/evaluate", json={"action": "nuke"}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_policy_resolution_failure(self, app, client, auth_headers):
        failing = MagicMock()
        failing.evaluate_step_up.side_effect = PolicyResolutionError("Could not resolve security policy")
        app.dependency_overrides[get_mfa_service] = lambda: failing

        response = client.post("/mfa/step-up/evaluate", json={"action": "refund"}, headers=auth_headers)

        assert response.status_code == 503
        assert response.json()["code"] == "POLICY_RESOLUTION_FAILED"


class TestRequireStepUp:
    """Gating dependency for sensitive endpoints."""

    def test_gate_lifecycle(self, client, auth_headers, security_db, clock):
        # No policy yet: created, this call passes
        assert client.post("/refunds", headers=auth_headers).status_code == 200

        response = client.post("/refunds", headers=auth_headers)
        assert response.status_code == 401
        assert response.json()["code"] == "MFA_ENROLL_REQUIRED"

        secret = base32.decode(client.post("/mfa/enroll", headers=auth_headers).json()["secret"])
        client.post("/mfa/verify", json={"code": totp.totp(secret, clock.now)}, headers=auth_headers)
        assert client.post("/refunds", headers=auth_headers).status_code == 200

        clock.advance(300)
        response = client.post("/refunds", headers=auth_headers)
        assert response.status_code == 401
        assert response.json()["code"] == "MFA_CHALLENGE_REQUIRED"

        client.post("/mfa/challenge", json={"code": totp.totp(secret, clock.now)}, headers=auth_headers)
        assert client.post("/refunds", headers=auth_headers).json() == {"status": "created"}


# ============================================
# Health & Errors
# ============================================

class TestHealth:
    """Health endpoints."""

    def test_health(self, client, security_db):
        with patch("stepguard.api.routes.health.get_db", return_value=security_db), \
             patch("stepguard.api.routes.health.get_redis_client", return_value=None):
            response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["redis"] == "fallback_mode (in-memory)"

    def test_ready(self, client, security_db):
        with patch("stepguard.api.routes.health.get_db", return_value=security_db):
            assert client.get("/health/ready").json() == {"status": "ready"}

    def test_not_ready(self, client):
        broken = MagicMock()
        broken.get_session.side_effect = RuntimeError("db down")
        with patch("stepguard.api.routes.health.get_db", return_value=broken):
            response = client.get("/health/ready")

        assert response.status_code == 503


class TestErrorHandling:
    """Generic error mapping."""

    def test_unhandled_exception(self, app, auth_headers):
        failing = MagicMock()
        failing.status.side_effect = RuntimeError("boom")
        app.dependency_overrides[get_mfa_service] = lambda: failing

        response = TestClient(app, raise_server_exceptions=False).get("/mfa/status", headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["code"] == "INTERNAL_ERROR"


class TestClientIp:
    """Client address resolution."""

    def _request(self, headers, host="192.168.1.5"):
        request = MagicMock()
        request.headers = headers
        request.client.host = host
        return request

    def test_socket_peer(self, monkeypatch):
        monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
        assert get_client_ip(self._request({})) == "192.168.1.5"

    def test_forwarding_headers_ignored_from_untrusted_peer(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.10.0.0/16")
        request = self._request({"x-forwarded-for": "10.0.0.1", "cf-connecting-ip": "10.0.0.9"})

        assert get_client_ip(request) == "192.168.1.5"

    def test_rightmost_untrusted_hop(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "192.168.1.0/24")

        spoofed = self._request({"x-forwarded-for": "10.0.0.1, 10.0.0.2"})
        chained = self._request({"x-forwarded-for": "10.0.0.1, 192.168.1.7"})

        assert get_client_ip(spoofed) == "10.0.0.2"
        assert get_client_ip(chained) == "10.0.0.1"

    def test_cloudflare_header_from_trusted_peer(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "192.168.1.5")
        assert get_client_ip(self._request({"cf-connecting-ip": "10.0.0.9"})) == "10.0.0.9"

    def test_peer_name_entry(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "edge-proxy, 10.0.0.0/8")
        request = self._request({"x-forwarded-for": "203.0.113.4"}, host="edge-proxy")

        assert get_client_ip(request) == "203.0.113.4"
