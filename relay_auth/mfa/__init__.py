"""Second factors: selection policy, WebAuthn ceremonies, enrollment management."""

from . import policy
from .policy import FactorKind, MfaOffer, resolve
from .enrollments import EnrollmentClient, EnrollmentError, MfaEnrollment, MfaStatus
from .webauthn import (
    AssertionCredential,
    AssertionResult,
    AuthenticationOptions,
    CeremonyKind,
    CeremonyOutcome,
    DuplicateOrUnknownCredentialError,
    PlatformAuthenticator,
    PlatformCeremonyError,
    RegistrationCredential,
    RegistrationOptions,
    TransportOrServerError,
    UserCancelledOrTimedOutError,
    WebAuthnCeremony,
    WebAuthnCeremonyCoordinator,
    WebAuthnError,
)

__all__ = [
    "policy",
    "FactorKind",
    "MfaOffer",
    "resolve",
    "EnrollmentClient",
    "EnrollmentError",
    "MfaEnrollment",
    "MfaStatus",
    "AssertionCredential",
    "AssertionResult",
    "AuthenticationOptions",
    "CeremonyKind",
    "CeremonyOutcome",
    "DuplicateOrUnknownCredentialError",
    "PlatformAuthenticator",
    "PlatformCeremonyError",
    "RegistrationCredential",
    "RegistrationOptions",
    "TransportOrServerError",
    "UserCancelledOrTimedOutError",
    "WebAuthnCeremony",
    "WebAuthnCeremonyCoordinator",
    "WebAuthnError",
]
