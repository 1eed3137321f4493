"""
MFA Endpoints.

Provides enrollment, step-up challenges, disable, recovery codes and
step-up policy evaluation. Errors are raised as MFAError subclasses and
rendered by the application's error handler.
"""
import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, Request, status

from ..models import (
    MFAEnrollRequest,
    MFAEnrollResponse,
    MFAVerifyRequest,
    MFACodeRequest,
    MFAChallengeResponse,
    MFAStatusResponse,
    RecoveryCodesResponse,
    StepUpEvaluateRequest,
    StepUpEvaluateResponse,
    ErrorResponse,
)
from ..deps import get_current_user, get_client_ip, get_mfa_service
from ...auth.service import MFAService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/mfa", tags=["MFA"])

_CODE_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid or malformed code, or not enrolled"},
    401: {"model": ErrorResponse, "description": "Authentication required"},
    429: {"model": ErrorResponse, "description": "Too many attempts, temporarily locked"},
}


@router.post(
    "/enroll",
    response_model=MFAEnrollResponse,
    responses={
        400: {"model": ErrorResponse, "description": "2FA already enabled"},
        429: {"model": ErrorResponse, "description": "Too many enrollment attempts"},
    },
)
async def enroll(
    request: Request,
    body: Optional[MFAEnrollRequest] = None,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Start MFA enrollment.

    Returns a QR code and secret for authenticator app setup.
    2FA is not active until verified with /mfa/verify.
    """
    result = service.enroll(
        user["user_id"],
        account_name=(body.account_name if body else None) or user["email"],
        client_ip=get_client_ip(request),
    )

    return MFAEnrollResponse(
        secret=result.secret,
        provisioning_uri=result.provisioning_uri,
        qr_code_base64=result.qr_code_base64,
    )


@router.post("/verify", response_model=RecoveryCodesResponse, responses=_CODE_ERRORS)
async def verify_enrollment(
    request: Request,
    verification: MFAVerifyRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Verify MFA enrollment and enable it.

    Returns recovery codes - store these securely, they are shown only once!
    """
    result = service.confirm_enrollment(
        user["user_id"],
        verification.code,
        client_ip=get_client_ip(request),
    )
    return RecoveryCodesResponse(recovery_codes=result.recovery_codes)


@router.post("/challenge", response_model=MFAChallengeResponse, responses=_CODE_ERRORS)
async def challenge(
    request: Request,
    body: MFACodeRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Step-up challenge.

    Accepts a TOTP code or a recovery code. Recovery codes are consumed on use.
    """
    result = service.challenge(
        user["user_id"],
        body.code,
        code_type=body.type,
        client_ip=get_client_ip(request),
    )

    return MFAChallengeResponse(
        verified_until=result.verified_until,
        valid_for_seconds=result.valid_for_seconds,
        recovery_code_used=result.recovery_code_used,
        recovery_codes_remaining=result.recovery_codes_remaining,
    )


@router.post("/disable", status_code=status.HTTP_204_NO_CONTENT, responses=_CODE_ERRORS)
async def disable(
    request: Request,
    body: MFACodeRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Disable MFA for the current user.

    Requires a current TOTP code or a recovery code.
    """
    service.disable(
        user["user_id"],
        body.code,
        code_type=body.type,
        client_ip=get_client_ip(request),
    )
    return None


@router.post(
    "/recovery-codes",
    response_model=RecoveryCodesResponse,
    responses={
        400: {"model": ErrorResponse, "description": "2FA not enabled"},
        401: {"model": ErrorResponse, "description": "Recent verification required"},
        429: {"model": ErrorResponse, "description": "Too many regenerations"},
    },
)
async def regenerate_recovery_codes(
    request: Request,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Replace all recovery codes.

    Previously issued codes stop working immediately.
    """
    result = service.regenerate_recovery_codes(user["user_id"], client_ip=get_client_ip(request))
    return RecoveryCodesResponse(recovery_codes=result.recovery_codes)


@router.get("/status", response_model=MFAStatusResponse)
async def mfa_status(
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Get MFA status of the current user.
    """
    current = service.status(user["user_id"])

    return MFAStatusResponse(
        totp_enabled=current.totp_enabled,
        pending_enrollment=current.pending_enrollment,
        recovery_codes_remaining=current.recovery_codes_remaining,
        last_verified_at=current.last_verified_at,
    )


@router.post(
    "/step-up/evaluate",
    response_model=StepUpEvaluateResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Unknown action"},
        503: {"model": ErrorResponse, "description": "Policy could not be resolved"},
    },
)
async def evaluate_step_up(
    request: Request,
    body: StepUpEvaluateRequest,
    user: Dict = Depends(get_current_user),
    service: MFAService = Depends(get_mfa_service),
):
    """
    Evaluate whether the current user may perform a gated action now.

    Lets clients prompt for enrollment or a challenge before submitting
    the action itself.
    """
    tenant_id = body.tenant_id or request.headers.get("X-Tenant-ID")
    actor = service.actor_for(user["user_id"], tenant_id)
    decision = service.evaluate_step_up(actor, body.action)

    return StepUpEvaluateResponse(decision=decision.value, code=decision.error_code)
