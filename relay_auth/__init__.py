"""relay-auth - Credential and device-authorization ceremonies for the SMTP relay admin API."""

__version__ = "0.1.0"

from .core.client import RelayAdminClient
from .core.config import Settings, StoragePolicy
from .core.scheduling import CancellationToken, Clock, MonotonicClock
from .mfa import (
    CeremonyKind,
    CeremonyOutcome,
    DuplicateOrUnknownCredentialError,
    EnrollmentClient,
    FactorKind,
    MfaEnrollment,
    MfaOffer,
    PlatformAuthenticator,
    PlatformCeremonyError,
    TransportOrServerError,
    UserCancelledOrTimedOutError,
    WebAuthnCeremony,
    WebAuthnCeremonyCoordinator,
    WebAuthnError,
)
from .oauth import (
    ApplicationConfig,
    DeviceFlowCoordinator,
    DeviceFlowError,
    DeviceFlowPhase,
    DeviceFlowSession,
    MaterializedApplication,
)
from .security import CsrfGuard
from .session import Session, SessionManager
from .utils.errors import (
    CeremonyBusyError,
    CsrfRejectedError,
    LoginError,
    RelayAuthError,
    SecondFactorRequiredError,
    SessionExpiredError,
)
from .utils.logging_config import setup_logging

__all__ = [
    "RelayAdminClient",
    "Settings",
    "StoragePolicy",
    "CancellationToken",
    "Clock",
    "MonotonicClock",
    # Session
    "Session",
    "SessionManager",
    "CsrfGuard",
    # Device flow
    "ApplicationConfig",
    "DeviceFlowCoordinator",
    "DeviceFlowError",
    "DeviceFlowPhase",
    "DeviceFlowSession",
    "MaterializedApplication",
    # MFA
    "CeremonyKind",
    "CeremonyOutcome",
    "EnrollmentClient",
    "FactorKind",
    "MfaEnrollment",
    "MfaOffer",
    "PlatformAuthenticator",
    "PlatformCeremonyError",
    "WebAuthnCeremony",
    "WebAuthnCeremonyCoordinator",
    # Errors
    "RelayAuthError",
    "LoginError",
    "SecondFactorRequiredError",
    "SessionExpiredError",
    "CsrfRejectedError",
    "CeremonyBusyError",
    "DuplicateOrUnknownCredentialError",
    "TransportOrServerError",
    "UserCancelledOrTimedOutError",
    "WebAuthnError",
    "setup_logging",
]
