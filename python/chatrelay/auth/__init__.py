"""Authentication and authorization module.

This module provides:
- Token verification (HS256 shared-secret verifier)
- Auth middleware for FastAPI
- Request state with viewer identity and grants
"""

from chatrelay.auth.middleware import AuthMiddleware, Viewer, get_optional_viewer, get_viewer
from chatrelay.auth.verifier import JwtSecretVerifier, TokenVerifier

__all__ = [
    "AuthMiddleware",
    "Viewer",
    "get_viewer",
    "get_optional_viewer",
    "JwtSecretVerifier",
    "TokenVerifier",
]
