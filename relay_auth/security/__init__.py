"""Request hardening for the relay admin API."""

from .csrf import SAFE_METHODS, CsrfGuard

__all__ = ["CsrfGuard", "SAFE_METHODS"]
