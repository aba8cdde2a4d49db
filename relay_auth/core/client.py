"""Admin client that wires the authentication components to one HTTP client.

All components share a single httpx.AsyncClient, so the httpOnly session
cookies, the anti-forgery token and the renewal state stay consistent.
"""

import logging
from typing import Any, Self

import httpx

from ..mfa.enrollments import EnrollmentClient
from ..mfa.webauthn import PlatformAuthenticator, WebAuthnCeremonyCoordinator
from ..oauth.device_flow import DeviceFlowCoordinator
from ..security.csrf import CsrfGuard
from ..session.session_manager import SessionManager
from ..utils.errors import ConfigurationError
from .config import Settings, StoragePolicy, settings as default_settings
from .scheduling import Clock, MonotonicClock

logger = logging.getLogger(__name__)


class RelayAdminClient:
    """Authenticated client for the relay admin API.

    Example:
        async with RelayAdminClient(platform=authenticator) as relay:
            await relay.sessions.login("admin", password)
            flow = await relay.device_flow.initiate("organizations")
            ...
    """

    def __init__(
        self,
        settings: Settings | None = None,
        platform: PlatformAuthenticator | None = None,
        clock: Clock | None = None,
        storage_policy: StoragePolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            settings: Engine settings (default: global settings)
            platform: Authenticator bridge; required for WebAuthn ceremonies
            clock: Time source (default: event loop monotonic clock)
            storage_policy: Override for settings.storage_policy
            transport: Custom httpx transport (e.g. httpx.MockTransport in tests)
        """
        self.settings = settings or default_settings
        self.clock = clock or MonotonicClock()
        self.http = httpx.AsyncClient(
            base_url=self.settings.base_url,
            timeout=self.settings.request_timeout,
            transport=transport,
        )
        self.csrf = CsrfGuard(self.http, self.settings)
        self.sessions = SessionManager(
            self.http, self.csrf, self.settings, self.clock, storage_policy
        )
        self.device_flow = DeviceFlowCoordinator(self.sessions, self.settings, self.clock)
        self.enrollments = EnrollmentClient(self.sessions, self.settings)
        self._webauthn = (
            WebAuthnCeremonyCoordinator(self.sessions, platform, self.settings, self.clock)
            if platform is not None
            else None
        )

    @property
    def webauthn(self) -> WebAuthnCeremonyCoordinator:
        """WebAuthn ceremonies.

        Raises:
            ConfigurationError: If the client was created without a platform authenticator
        """
        if self._webauthn is None:
            raise ConfigurationError("No platform authenticator configured for WebAuthn ceremonies")
        return self._webauthn

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated request to any admin API endpoint."""
        return await self.sessions.request(method, path, **kwargs)

    async def close(self) -> None:
        """Cancel all background work, then close the HTTP client."""
        self.device_flow.cancel_all()
        if self._webauthn is not None:
            self._webauthn.cancel_all()
        await self.sessions.close()
        await self.http.aclose()
        logger.debug("Relay admin client closed")

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
