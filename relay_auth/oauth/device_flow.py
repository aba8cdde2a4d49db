"""OAuth 2.0 Device Authorization Grant (RFC 8628) driven through the relay.

The relay server holds the device code and talks to the identity provider.
This module drives the flow from the admin client:

1. Ask the server to start a device authorization for a tenant
2. Show the user code and verification URL to the administrator
3. Poll the server until the administrator signs in on another device
4. Hand back the administrator identity, then create the application once

Each attempt is an explicit state machine (DeviceFlowSession) driven by a
poll loop task. The loop never has more than one poll outstanding, stops on
the first terminal outcome and reports it exactly once.
"""

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx

from ..core.config import Settings, settings as default_settings
from ..core.scheduling import CancellationToken, Clock, DeadlineExceeded, race_deadline
from ..utils.errors import CsrfRejectedError, RelayAuthError, SessionExpiredError, TransientError
from .app_registration import ApplicationConfig, MaterializedApplication, create_application

if TYPE_CHECKING:
    from ..session.session_manager import SessionManager

logger = logging.getLogger(__name__)

DEFAULT_SLOT = "default"

SPECIAL_TENANTS = frozenset({"common", "organizations", "consumers"})
_TENANT_GUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")

_DENIED_ERRORS = frozenset({"access_denied", "authorization_declined"})
_EXPIRED_ERRORS = frozenset({"expired_token", "code_expired"})


class DeviceFlowPhase(str, Enum):
    """Phases of one device authorization attempt."""

    INITIATED = "initiated"
    POLLING = "polling"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (DeviceFlowPhase.INITIATED, DeviceFlowPhase.POLLING)


class DeviceFlowError(RelayAuthError):
    """Base exception for device flow errors."""

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message)


class DeviceFlowInitiationError(DeviceFlowError):
    """The server refused to start a device authorization."""

    pass


class DeviceFlowExpiredError(DeviceFlowError):
    """Device code has expired."""

    pass


class DeviceFlowDeniedError(DeviceFlowError):
    """User denied the authorization request."""

    pass


class DeviceFlowStateError(DeviceFlowError):
    """An operation was invoked in a phase that does not allow it."""

    pass


@dataclass
class DeviceFlowSession:
    """One outstanding device authorization attempt.

    Instants (expires_at, next_poll_at) are on the coordinator's clock.
    """

    flow_id: str
    user_code: str
    verification_url: str
    interval: float
    expires_at: float
    message: str | None = None
    slot: str = DEFAULT_SLOT

    phase: DeviceFlowPhase = DeviceFlowPhase.INITIATED
    next_poll_at: float | None = None
    poll_count: int = 0
    consecutive_transport_errors: int = 0

    # Terminal outcome
    subject: str | None = None
    roles: list[str] = field(default_factory=list)
    error: str | None = None
    error_description: str | None = None

    materialized: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    def to_error(self) -> DeviceFlowError | None:
        """Exception describing a non-successful terminal outcome, if any."""
        if self.phase in (DeviceFlowPhase.INITIATED, DeviceFlowPhase.POLLING):
            return None
        if self.phase is DeviceFlowPhase.AUTHENTICATED:
            return None
        if self.phase is DeviceFlowPhase.CANCELLED:
            return DeviceFlowError("cancelled", "Device authorization was cancelled")
        if self.phase is DeviceFlowPhase.EXPIRED or self.error in _EXPIRED_ERRORS:
            return DeviceFlowExpiredError(self.error or "expired_token", self.error_description)
        if self.error in _DENIED_ERRORS:
            return DeviceFlowDeniedError(self.error or "access_denied", self.error_description)
        return DeviceFlowError(self.error or "unknown_error", self.error_description)

    def instructions(self, now: float) -> str:
        """Human-readable sign-in instructions for this attempt."""
        minutes = max(0, int(self.expires_at - now)) // 60
        return (
            f"To authorize, visit {self.verification_url} and enter the code {self.user_code}. "
            f"The code expires in {minutes} minutes."
        )


# Type alias for the terminal-outcome callback
DeviceFlowCallback = Callable[[DeviceFlowSession], Awaitable[None] | None]


@dataclass
class _PollLoop:
    session: DeviceFlowSession
    token: CancellationToken
    done: asyncio.Future
    on_terminal: DeviceFlowCallback | None = None
    task: asyncio.Task | None = None


def validate_identity_hint(identity_hint: str) -> str:
    """Validate and normalize a tenant identifier.

    Accepts a tenant GUID or one of 'common', 'organizations', 'consumers'.

    Raises:
        DeviceFlowInitiationError: If the hint is empty or malformed
    """
    if not isinstance(identity_hint, str) or not identity_hint.strip():
        raise DeviceFlowInitiationError("invalid_request", "Tenant ID is required")

    tenant = identity_hint.strip().lower()
    if tenant not in SPECIAL_TENANTS and not _TENANT_GUID_RE.match(tenant):
        raise DeviceFlowInitiationError("invalid_request", "Invalid tenant ID format")
    return tenant


def _roles_claim(value: Any) -> list[str]:
    """Normalize a roles claim sent as a single string or a list."""
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, list):
        return [role for role in value if isinstance(role, str)]
    return []


def _interpret_poll_response(response: httpx.Response) -> tuple[str, dict[str, Any]]:
    """Classify a poll response as pending, slow_down, success, error or transport."""
    try:
        data = response.json()
    except ValueError:
        data = None

    if not isinstance(data, dict):
        if response.status_code >= 500:
            return "transport", {"error": f"HTTP {response.status_code}"}
        return "error", {
            "error": "invalid_response",
            "error_description": f"Unreadable poll response (HTTP {response.status_code})",
        }

    error = data.get("error")
    if error == "authorization_pending" or (data.get("pending") and not error):
        return "pending", data
    if error == "slow_down" or data.get("slowDown"):
        return "slow_down", data
    if data.get("success") and not error and response.is_success:
        return "success", data
    if error:
        return "error", data
    if response.status_code >= 500:
        return "transport", {"error": f"HTTP {response.status_code}"}
    return "error", {
        "error": "invalid_response",
        "error_description": f"Unrecognized poll response (HTTP {response.status_code})",
    }


class DeviceFlowCoordinator:
    """Drives device authorization attempts, one per logical slot.

    A slot is one wizard instance: starting a new attempt in a slot cancels
    the previous one.

    Example:
        coordinator = DeviceFlowCoordinator(session_manager)
        flow = await coordinator.initiate("contoso-tenant-guid")
        show(flow.instructions(clock.now()))
        coordinator.start_polling(flow, on_terminal=update_wizard)
        ...
        if flow.phase is DeviceFlowPhase.AUTHENTICATED:
            app = await coordinator.materialize(flow)
    """

    def __init__(
        self,
        session_manager: "SessionManager",
        settings: Settings | None = None,
        clock: Clock | None = None,
    ):
        """Initialize the coordinator.

        Args:
            session_manager: Session used for the authenticated API calls
            settings: Engine settings (default: the session manager's settings)
            clock: Time source (default: the session manager's clock)
        """
        self.session_manager = session_manager
        self.settings = settings or getattr(session_manager, "settings", None) or default_settings
        self.clock = clock or session_manager.clock
        self._loops: dict[str, _PollLoop] = {}
        self._pending: dict[str, DeviceFlowSession] = {}
        self._callback_tasks: set[asyncio.Task] = set()

    def active_session(self, slot: str = DEFAULT_SLOT) -> DeviceFlowSession | None:
        """The non-terminal attempt in a slot, if any."""
        loop = self._loops.get(slot)
        if loop is not None:
            return loop.session
        return self._pending.get(slot)

    async def initiate(self, identity_hint: str, slot: str = DEFAULT_SLOT) -> DeviceFlowSession:
        """Start a device authorization attempt.

        Cancels any attempt already running in the same slot.

        Args:
            identity_hint: Tenant ID the administrator signs in to
            slot: Logical wizard instance

        Returns:
            DeviceFlowSession with the user code, verification URL, interval and expiry

        Raises:
            DeviceFlowInitiationError: If the hint is malformed or the server refuses
            SessionExpiredError: If the admin session could not be renewed
        """
        tenant = validate_identity_hint(identity_hint)
        self.cancel_slot(slot)

        logger.info(f"Starting device authorization for tenant {tenant}")
        try:
            response = await self.session_manager.request(
                "POST", self.settings.device_flow_init_path, json={"tenantId": tenant}
            )
        except (httpx.HTTPError, TransientError, CsrfRejectedError) as e:
            logger.error(f"Device authorization request failed: {e}")
            raise DeviceFlowInitiationError("transport_error", str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success or data.get("error") or data.get("success") is False:
            error = data.get("error") or f"http_{response.status_code}"
            logger.error(f"Device authorization rejected: {error}")
            raise DeviceFlowInitiationError(
                error, data.get("error_description") or data.get("message")
            )

        try:
            flow_id = str(data["flowId"])
            user_code = str(data["userCode"])
            verification_url = str(data["verificationUrl"])
            expires_in = float(data["expiresIn"])
            interval = float(data.get("interval") or self.settings.device_flow_default_interval)
        except (KeyError, TypeError, ValueError) as e:
            raise DeviceFlowInitiationError(
                "invalid_response", f"Missing or invalid field in init response: {e}"
            ) from e
        if not (math.isfinite(interval) and interval > 0):
            raise DeviceFlowInitiationError(
                "invalid_response", f"Poll interval must be positive, got {interval}"
            )
        if not (math.isfinite(expires_in) and expires_in > 0):
            raise DeviceFlowInitiationError(
                "invalid_response", f"Code lifetime must be positive, got {expires_in}"
            )

        session = DeviceFlowSession(
            flow_id=flow_id,
            user_code=user_code,
            verification_url=verification_url,
            interval=interval,
            expires_at=self.clock.now() + expires_in,
            message=data.get("message"),
            slot=slot,
        )
        self._pending[slot] = session
        logger.debug(f"Device flow {flow_id}: interval={interval}s, expires_in={expires_in}s")
        return session

    def start_polling(
        self,
        session: DeviceFlowSession,
        on_terminal: DeviceFlowCallback | None = None,
    ) -> asyncio.Task:
        """Start the poll loop for an attempt.

        Replaces any loop running for a different attempt in the same slot.
        Must be called from within a running event loop.

        Args:
            session: Attempt returned by initiate()
            on_terminal: Called exactly once with the session when it reaches
                a terminal phase. May be sync or async.

        Returns:
            The poll loop task

        Raises:
            DeviceFlowStateError: If the attempt is terminal or already polling
        """
        if session.is_terminal:
            raise DeviceFlowStateError("invalid_state", f"Device flow is {session.phase.value}")

        existing = self._loops.get(session.slot)
        if existing is not None:
            if existing.session is session:
                raise DeviceFlowStateError("invalid_state", "Device flow is already polling")
            self.cancel(existing.session)
        if self._pending.get(session.slot) is session:
            del self._pending[session.slot]

        loop = _PollLoop(
            session=session,
            token=CancellationToken(),
            done=asyncio.get_running_loop().create_future(),
            on_terminal=on_terminal,
        )
        self._loops[session.slot] = loop
        loop.task = asyncio.ensure_future(self._run(loop))
        return loop.task

    def cancel(self, session: DeviceFlowSession) -> None:
        """Cancel an attempt. No further polls are sent and no error is reported."""
        loop = self._loops.get(session.slot)
        if loop is not None and loop.session is session:
            loop.token.cancel()
            self._finish(loop, DeviceFlowPhase.CANCELLED)
            if loop.task is not None and loop.task is not asyncio.current_task():
                loop.task.cancel()
            return

        if self._pending.get(session.slot) is session:
            del self._pending[session.slot]
        if not session.is_terminal:
            session.phase = DeviceFlowPhase.CANCELLED
            logger.info(f"Device flow {session.flow_id} cancelled")

    def cancel_slot(self, slot: str = DEFAULT_SLOT) -> None:
        """Cancel whatever attempt is active in a slot."""
        session = self.active_session(slot)
        if session is not None:
            self.cancel(session)

    def cancel_all(self) -> None:
        """Cancel every active attempt (component teardown)."""
        for slot in list(self._loops) + list(self._pending):
            self.cancel_slot(slot)

    async def wait(self, session: DeviceFlowSession) -> DeviceFlowSession:
        """Wait until a polling attempt reaches a terminal phase.

        Raises:
            DeviceFlowStateError: If the attempt is neither terminal nor polling
        """
        if session.is_terminal:
            return session
        loop = self._loops.get(session.slot)
        if loop is None or loop.session is not session:
            raise DeviceFlowStateError("invalid_state", "Device flow is not polling")
        return await asyncio.shield(loop.done)

    async def authorize(
        self,
        identity_hint: str,
        on_initiated: DeviceFlowCallback | None = None,
        slot: str = DEFAULT_SLOT,
    ) -> DeviceFlowSession:
        """Run a complete device authorization.

        Args:
            identity_hint: Tenant ID the administrator signs in to
            on_initiated: Optional callback invoked with the new attempt so the
                user code can be shown (sync or async)
            slot: Logical wizard instance

        Returns:
            The authenticated DeviceFlowSession

        Raises:
            DeviceFlowInitiationError: If the attempt cannot be started
            DeviceFlowExpiredError: If the code expires first
            DeviceFlowDeniedError: If the administrator declines
            DeviceFlowError: For other terminal failures and cancellation
        """
        session = await self.initiate(identity_hint, slot)

        if on_initiated:
            try:
                result = on_initiated(session)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning(f"Device authorization callback failed: {e}")

        logger.info("Waiting for administrator authorization...")
        self.start_polling(session)
        await self.wait(session)

        error = session.to_error()
        if error is not None:
            raise error
        return session

    async def materialize(
        self, session: DeviceFlowSession, app_config: ApplicationConfig | None = None
    ) -> MaterializedApplication:
        """Create the application for an authenticated attempt.

        Called at most once per attempt; a second call raises even if the
        first one failed.

        Raises:
            DeviceFlowStateError: If the attempt is not authenticated or was
                already materialized
            ApplicationRegistrationError: If the server fails to create it
        """
        if session.phase is not DeviceFlowPhase.AUTHENTICATED:
            raise DeviceFlowStateError(
                "not_authenticated", f"Device flow is {session.phase.value}"
            )
        if session.materialized:
            raise DeviceFlowStateError(
                "already_materialized", "Application was already created for this flow"
            )

        session.materialized = True
        return await create_application(
            self.session_manager,
            session.flow_id,
            app_config or ApplicationConfig(),
            self.settings.device_flow_create_app_path,
        )

    async def _run(self, loop: _PollLoop) -> None:
        session = loop.session
        token = loop.token
        session.next_poll_at = self.clock.now() + session.interval

        try:
            while not token.cancelled:
                now = self.clock.now()
                if now >= session.expires_at:
                    self._finish(
                        loop,
                        DeviceFlowPhase.EXPIRED,
                        error="expired_token",
                        error_description="Device code expired before authorization completed",
                    )
                    return

                if now < session.next_poll_at:
                    await self.clock.sleep(min(session.next_poll_at, session.expires_at) - now)
                    continue

                if session.phase is DeviceFlowPhase.INITIATED:
                    session.phase = DeviceFlowPhase.POLLING
                session.poll_count += 1
                tick_at = now

                try:
                    verdict, data = await race_deadline(
                        self._poll_once(session), self.clock, session.expires_at
                    )
                except DeadlineExceeded:
                    logger.debug(f"Device flow {session.flow_id}: poll outstanding at expiry")
                    continue

                if token.cancelled:
                    logger.debug(f"Discarding poll response for cancelled flow {session.flow_id}")
                    return
                self._apply(loop, verdict, data, tick_at)

        except asyncio.CancelledError:
            if not token.cancelled:
                self._finish(loop, DeviceFlowPhase.CANCELLED)
            raise

    async def _poll_once(self, session: DeviceFlowSession) -> tuple[str, dict[str, Any]]:
        try:
            response = await self.session_manager.request(
                "POST", self.settings.device_flow_poll_path, json={"flowId": session.flow_id}
            )
        except SessionExpiredError as e:
            return "error", {"error": "session_expired", "error_description": str(e)}
        except CsrfRejectedError as e:
            return "error", {"error": "csrf_rejected", "error_description": str(e)}
        except (httpx.HTTPError, TransientError) as e:
            return "transport", {"error": str(e)}
        return _interpret_poll_response(response)

    def _apply(self, loop: _PollLoop, verdict: str, data: dict[str, Any], tick_at: float) -> None:
        session = loop.session
        if verdict != "transport":
            session.consecutive_transport_errors = 0

        if verdict == "success":
            self._finish(
                loop,
                DeviceFlowPhase.AUTHENTICATED,
                subject=data.get("subject") or data.get("adminUser"),
                roles=_roles_claim(data.get("roles")),
            )
            return

        if verdict == "error":
            self._finish(
                loop,
                DeviceFlowPhase.FAILED,
                error=str(data.get("error")),
                error_description=data.get("error_description") or data.get("message"),
            )
            return

        if verdict == "transport":
            session.consecutive_transport_errors += 1
            logger.warning(
                f"Network error during polling "
                f"({session.consecutive_transport_errors}/"
                f"{self.settings.device_flow_max_transport_errors}): {data.get('error')}"
            )
            if (
                session.consecutive_transport_errors
                >= self.settings.device_flow_max_transport_errors
            ):
                self._finish(
                    loop,
                    DeviceFlowPhase.FAILED,
                    error="transport_error",
                    error_description=str(data.get("error")),
                )
                return

        elif verdict == "slow_down":
            session.interval += self.settings.device_flow_slow_down_increment
            logger.debug(f"Slowing down, new interval: {session.interval}s")
        else:
            logger.debug(f"Authorization pending, waiting {session.interval}s...")

        # Ticks that fell due while the poll was outstanding are skipped
        next_poll_at = tick_at + session.interval
        now = self.clock.now()
        if next_poll_at < now:
            missed = math.ceil((now - next_poll_at) / session.interval)
            next_poll_at += missed * session.interval
        session.next_poll_at = next_poll_at

    def _finish(self, loop: _PollLoop, phase: DeviceFlowPhase, **outcome: Any) -> None:
        session = loop.session
        if session.is_terminal:
            return

        session.phase = phase
        for name, value in outcome.items():
            setattr(session, name, value)
        loop.token.cancel()
        if self._loops.get(session.slot) is loop:
            del self._loops[session.slot]
        if not loop.done.done():
            loop.done.set_result(session)

        if phase is DeviceFlowPhase.AUTHENTICATED:
            logger.info(f"Device authorization successful for {session.subject or 'administrator'}")
        elif phase is DeviceFlowPhase.CANCELLED:
            logger.info(f"Device flow {session.flow_id} cancelled")
        else:
            logger.warning(f"Device flow {session.flow_id} {phase.value}: {session.error}")

        if loop.on_terminal is None:
            return
        try:
            result = loop.on_terminal(session)
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._callback_tasks.add(task)
                task.add_done_callback(self._callback_finished)
        except Exception as e:
            logger.warning(f"Device flow callback failed: {e}")

    def _callback_finished(self, task: asyncio.Task) -> None:
        self._callback_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Device flow callback failed: {task.exception()}")
