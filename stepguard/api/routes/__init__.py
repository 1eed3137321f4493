"""
API Routes for STEPGUARD.
"""
from .mfa import router as mfa_router
from .health import router as health_router

__all__ = [
    "mfa_router",
    "health_router",
]
