"""
Pydantic Models for STEPGUARD API.

Request and response models for all API endpoints.
"""
from datetime import datetime
from typing import Optional, List, Dict, Literal
from pydantic import BaseModel, Field, ConfigDict


# ============================================
# Enrollment Models
# ============================================

class MFAEnrollRequest(BaseModel):
    """Optional label shown in the authenticator app (defaults to the account email)."""
    account_name: Optional[str] = Field(None, max_length=255, description="Authenticator label")


class MFAEnrollResponse(BaseModel):
    """Enrollment response with QR code. 2FA stays off until /mfa/verify succeeds."""
    secret: str = Field(..., description="Base32 secret for manual entry")
    provisioning_uri: str
    qr_code_base64: Optional[str] = None


class MFAVerifyRequest(BaseModel):
    """First code from the authenticator app."""
    code: str = Field(..., min_length=6, max_length=6, description="6-digit TOTP code")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"code": "123456"}
        }
    )


class RecoveryCodesResponse(BaseModel):
    """
    Recovery codes, shown exactly once.

    Each code can be used a single time in place of a TOTP code.
    """
    recovery_codes: List[str] = Field(..., description="One-time recovery codes (store securely!)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "recovery_codes": [
                    "A1B2-C3D4",
                    "E5F6-0718",
                    "9ABC-DEF0",
                ]
            }
        }
    )


# ============================================
# Challenge Models
# ============================================

class MFACodeRequest(BaseModel):
    """
    Code submitted for a challenge or to disable 2FA.

    Either a 6-digit TOTP code or a recovery code (XXXX-XXXX). When type is
    omitted, codes containing a hyphen are treated as recovery codes.
    """
    code: str = Field(..., min_length=6, max_length=12)
    type: Optional[Literal["totp", "recovery"]] = Field(None, description="Code type")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"code": "123456", "type": "totp"}
        }
    )


class MFAChallengeResponse(BaseModel):
    """Successful step-up."""
    success: bool = True
    verified_until: datetime
    valid_for_seconds: int
    recovery_code_used: bool = False
    recovery_codes_remaining: int


class MFAStatusResponse(BaseModel):
    """Enrollment state of the current user."""
    totp_enabled: bool
    pending_enrollment: bool
    recovery_codes_remaining: int
    last_verified_at: Optional[datetime] = None


# ============================================
# Step-up Policy Models
# ============================================

class StepUpEvaluateRequest(BaseModel):
    """Gated action to evaluate for the current user."""
    action: str = Field(..., min_length=1, max_length=100, description="Gated action name")
    tenant_id: Optional[str] = Field(None, description="Tenant context (defaults to the user's membership)")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"action": "refund", "tenant_id": "tenant-1"}
        }
    )


class StepUpEvaluateResponse(BaseModel):
    """Step-up decision."""
    decision: Literal["allowed", "enrollment_required", "challenge_required"]
    code: Optional[str] = Field(None, description="MFA_ENROLL_REQUIRED or MFA_CHALLENGE_REQUIRED")


# ============================================
# Health Models
# ============================================

class HealthStatus(BaseModel):
    """Health check response."""
    status: str = Field(..., description="healthy or unhealthy")
    version: str
    services: Dict[str, str]
    timestamp: datetime


# ============================================
# Error Models
# ============================================

class ErrorResponse(BaseModel):
    """
    Standard error response.

    All API errors return this format with an error message,
    optional detail, and error code for programmatic handling.
    """
    error: str = Field(..., description="Error type/summary")
    detail: Optional[str] = Field(None, description="Detailed error message")
    code: Optional[str] = Field(None, description="Error code for programmatic handling")
    remaining_attempts: Optional[int] = Field(None, description="Attempts left before lockout")
    locked_until: Optional[datetime] = Field(None, description="End of the lockout")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error": "Unauthorized",
                "detail": "Recent verification required",
                "code": "MFA_CHALLENGE_REQUIRED"
            }
        }
    )
