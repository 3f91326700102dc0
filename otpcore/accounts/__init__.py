# otpcore/accounts/__init__.py
"""
Accounts Package

This package provides:
- JWT token management (create_token, verify_token)
- The user directory used to flip contact verification flags
- FastAPI dependencies for authenticated routes

Submodules:
- auth: tokens, UserDirectory, get_current_user_id
"""

from __future__ import annotations

__all__ = [
    "create_token",
    "verify_token",
    "UserDirectory",
    "get_current_user_id",
]


# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    """Lazy import pattern for clean module loading."""
    if name in __all__:
        from . import auth
        return getattr(auth, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
