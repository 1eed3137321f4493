"""
STEPGUARD - Step-Up Multi-Factor Authentication Service.

Second-factor verification for an already-authenticated session.

This package provides TOTP enrollment and verification, single-use recovery
codes, rate limiting with temporary lockout, and a per-tenant, per-role
step-up policy engine that decides when a sensitive action needs a fresh
challenge.
"""

__version__ = "0.1.0"
__author__ = "STEPGUARD Team"
