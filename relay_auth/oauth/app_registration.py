"""Application registration after a successful device authorization.

Once the administrator has signed in through the device flow, the relay
server uses the administrator's token to create the Entra ID application
the relay sends mail through. This is a plain request/response step.
"""

import logging
from typing import TYPE_CHECKING

import httpx
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError
from pydantic.alias_generators import to_camel

from ..utils.errors import RelayAuthError, TransientError

if TYPE_CHECKING:
    from ..session.session_manager import SessionManager

logger = logging.getLogger(__name__)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApplicationConfig(_CamelModel):
    """Settings for the application the relay registers."""

    display_name: str = Field(default="SMTP Relay for Exchange Online", min_length=1)
    auth_method: str = Field(default="device_code", description="How the relay authenticates")
    api_method: str = Field(
        default="graph_api", description="'graph_api' for Graph sendMail, 'smtp_oauth' for SMTP"
    )
    use_client_secret: bool = False
    client_secret_expiry: int = Field(default=365, gt=0, description="Secret lifetime in days")


class RegisteredApplication(_CamelModel):
    """The application as created in the tenant."""

    app_id: str
    id: str | None = None
    display_name: str | None = None
    tenant_id: str | None = None


class MaterializedApplication(_CamelModel):
    """Result of the create-app step."""

    application: RegisteredApplication
    consent_url: str | None = None
    client_secret: SecretStr | None = None
    next_step: str | None = None


class ApplicationRegistrationError(RelayAuthError):
    """Raised when the server fails to create the application."""

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message)


async def create_application(
    session_manager: "SessionManager",
    flow_id: str,
    config: ApplicationConfig,
    path: str,
) -> MaterializedApplication:
    """Ask the server to create the application for an authenticated flow.

    Args:
        session_manager: Session used for the authenticated call
        flow_id: Flow identifier of the authenticated device flow
        config: Application settings
        path: Create-app endpoint path

    Returns:
        The registered application, plus consent URL and client secret when issued

    Raises:
        ApplicationRegistrationError: If the request fails or the response is malformed
    """
    logger.info(f"Creating application '{config.display_name}' for flow {flow_id}")
    try:
        response = await session_manager.request(
            "POST",
            path,
            json={"flowId": flow_id, "appConfig": config.model_dump(by_alias=True)},
        )
    except (httpx.HTTPError, TransientError) as e:
        raise ApplicationRegistrationError("transport_error", str(e)) from e

    try:
        data = response.json()
    except ValueError:
        data = {}

    if not response.is_success or not isinstance(data, dict) or data.get("error"):
        error = data.get("error") if isinstance(data, dict) else None
        logger.error(f"Application creation failed (HTTP {response.status_code}): {error}")
        raise ApplicationRegistrationError(
            error or f"http_{response.status_code}",
            data.get("error_description") if isinstance(data, dict) else None,
        )

    try:
        result = MaterializedApplication.model_validate(data)
    except ValidationError as e:
        raise ApplicationRegistrationError("invalid_response", str(e)) from e

    logger.info(f"Created application {result.application.app_id}")
    return result
