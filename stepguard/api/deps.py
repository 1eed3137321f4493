"""
FastAPI Dependencies for STEPGUARD API.

Provides:
- Database connection
- Authentication (bearer sessions issued by the identity provider)
- Client address resolution
- MFA service wiring
- Step-up gating for sensitive endpoints
"""
import os
import logging
import ipaddress
from typing import Callable, Dict, List, Optional, Set, Tuple

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..auth.errors import AuthenticationError, StepUpRequiredError
from ..auth.models import StepUpDecision
from ..auth.rate_limit import get_rate_limiter
from ..auth.service import MFAService
from ..database.security_db import SecurityDB, get_security_db
from ..security.audit import AuditTrail
from ..security.secret_cipher import get_secret_cipher

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)


# ============================================
# Database Dependencies
# ============================================

def get_db() -> SecurityDB:
    """Get database connection."""
    return get_security_db()


# ============================================
# Authentication Dependencies
# ============================================

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: SecurityDB = Depends(get_db),
) -> Dict:
    """
    Validate bearer token and return current user.

    Raises:
        AuthenticationError: If token is missing, invalid, or expired.
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")

    user = db.validate_session(credentials.credentials)

    if user is None:
        raise AuthenticationError("Invalid or expired token")

    return user


def _trusted_proxies() -> Tuple[List, Set[str]]:
    """
    Parse TRUSTED_PROXIES: comma-separated addresses, CIDR networks or
    peer names (e.g. "10.0.0.0/8,127.0.0.1").
    """
    networks = []
    names = set()
    for entry in os.getenv("TRUSTED_PROXIES", "").split(","):
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            names.add(entry)
    return networks, names


def _is_trusted_proxy(address: str, proxies: Tuple[List, Set[str]]) -> bool:
    networks, names = proxies
    if address in names:
        return True
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def get_client_ip(request: Request) -> str:
    """
    Coarse network origin of the caller.

    Forwarding headers are only honoured when the socket peer is a trusted
    proxy (TRUSTED_PROXIES). Then the client is the rightmost
    X-Forwarded-For hop that is not itself a trusted proxy, or
    CF-Connecting-IP. Otherwise the socket peer is the client.
    """
    peer = request.client.host if request.client else "unknown"

    proxies = _trusted_proxies()
    if not _is_trusted_proxy(peer, proxies):
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not _is_trusted_proxy(hop, proxies):
                return hop
        if hops:
            return hops[0]

    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()

    return peer


# ============================================
# MFA Service
# ============================================

_mfa_service: Optional[MFAService] = None


def get_mfa_service(db: SecurityDB = Depends(get_db)) -> MFAService:
    """Get singleton MFA service."""
    global _mfa_service
    if _mfa_service is None:
        _mfa_service = MFAService(
            db=db,
            cipher=get_secret_cipher(),
            rate_limiter=get_rate_limiter(),
            audit=AuditTrail(db),
        )
    return _mfa_service


# ============================================
# Step-up Gating
# ============================================

def require_step_up(action: str) -> Callable:
    """
    Build a dependency that gates an endpoint behind step-up MFA.

    Usage:
        @router.post("/refunds", dependencies=[Depends(require_step_up("refund"))])

    The dependency resolves to the current user when the action is allowed
    and raises StepUpRequiredError (MFA_ENROLL_REQUIRED or
    MFA_CHALLENGE_REQUIRED) otherwise.
    """
    async def _check_step_up(
        request: Request,
        user: Dict = Depends(get_current_user),
        service: MFAService = Depends(get_mfa_service),
    ) -> Dict:
        tenant_id = request.headers.get("X-Tenant-ID")
        actor = service.actor_for(user["user_id"], tenant_id)
        decision = service.evaluate_step_up(actor, action)

        if decision is StepUpDecision.ALLOWED:
            return user

        logger.info(f"Step-up required for user {user['user_id']} on {action}: {decision.value}")
        if decision is StepUpDecision.ENROLLMENT_REQUIRED:
            raise StepUpRequiredError(
                "Two-factor authentication must be enabled for this action",
                code=decision.error_code,
            )
        raise StepUpRequiredError("Recent verification required", code=decision.error_code)

    return _check_step_up
