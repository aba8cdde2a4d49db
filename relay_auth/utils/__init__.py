"""Utility functions and classes."""

from . import encoding
from .errors import (
    CeremonyBusyError,
    ConfigurationError,
    CsrfRejectedError,
    LoginError,
    RelayAuthError,
    SecondFactorRequiredError,
    SessionError,
    SessionExpiredError,
    TransientError,
)
from .logging_config import setup_logging

__all__ = [
    "encoding",
    "RelayAuthError",
    "ConfigurationError",
    "TransientError",
    "SessionError",
    "LoginError",
    "SecondFactorRequiredError",
    "SessionExpiredError",
    "CsrfRejectedError",
    "CeremonyBusyError",
    "setup_logging",
]
