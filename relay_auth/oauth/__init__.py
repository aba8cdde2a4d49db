"""Device authorization grant and application registration."""

from .app_registration import (
    ApplicationConfig,
    ApplicationRegistrationError,
    MaterializedApplication,
    RegisteredApplication,
    create_application,
)
from .device_flow import (
    DEFAULT_SLOT,
    DeviceFlowCallback,
    DeviceFlowCoordinator,
    DeviceFlowDeniedError,
    DeviceFlowError,
    DeviceFlowExpiredError,
    DeviceFlowInitiationError,
    DeviceFlowPhase,
    DeviceFlowSession,
    DeviceFlowStateError,
    validate_identity_hint,
)

__all__ = [
    "ApplicationConfig",
    "ApplicationRegistrationError",
    "MaterializedApplication",
    "RegisteredApplication",
    "create_application",
    "DEFAULT_SLOT",
    "DeviceFlowCallback",
    "DeviceFlowCoordinator",
    "DeviceFlowDeniedError",
    "DeviceFlowError",
    "DeviceFlowExpiredError",
    "DeviceFlowInitiationError",
    "DeviceFlowPhase",
    "DeviceFlowSession",
    "DeviceFlowStateError",
    "validate_identity_hint",
]
