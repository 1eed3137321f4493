"""
Database access for STEPGUARD.

This package provides:
- security_db: SQLAlchemy store for security profiles, tenant policies,
  memberships, sessions and audit events
"""
from .security_db import SecurityDB, get_security_db

__all__ = ["SecurityDB", "get_security_db"]
