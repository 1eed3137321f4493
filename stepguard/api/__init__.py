"""
STEPGUARD REST API.

FastAPI-based REST API for step-up multi-factor authentication.
"""
from .main import app, create_app

__all__ = ["app", "create_app"]
