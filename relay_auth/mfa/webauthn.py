"""WebAuthn registration and authentication ceremonies.

The relay server acts as relying party: it issues the options, verifies the
attestation or assertion and records the credential. This module runs the
client half of each ceremony:

1. Fetch options from the server (begin) and decode their binary fields
2. Hand them to the platform authenticator (create/get)
3. Encode the authenticator's response as base64url and submit it (complete)

Only one ceremony of each kind can be pending per account. The slot is
reserved before the first network call, so a second begin fails fast.
"""

import asyncio
import logging
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..core.config import Settings, settings as default_settings
from ..core.scheduling import CancellationToken, Clock, DeadlineExceeded, race_deadline
from ..utils import encoding
from ..utils.errors import CeremonyBusyError, CsrfRejectedError, RelayAuthError, TransientError
from .enrollments import MfaEnrollment
from .policy import FactorKind

if TYPE_CHECKING:
    from ..session.session_manager import SessionManager

logger = logging.getLogger(__name__)

T = TypeVar("T")

ES256 = -7
RS256 = -257

_USER_CANCELLED_NAMES = frozenset({"NotAllowedError", "AbortError"})
_DUPLICATE_NAMES = frozenset({"InvalidStateError"})


class CeremonyKind(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class CeremonyOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Errors
class WebAuthnError(RelayAuthError):
    """Base exception for ceremony failures.

    Carries the ceremony kind so registration and authentication failures
    can be told apart.
    """

    def __init__(self, kind: CeremonyKind, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class UserCancelledOrTimedOutError(WebAuthnError):
    """The user dismissed the prompt, the ceremony was cancelled, or it timed out."""

    pass


class DuplicateOrUnknownCredentialError(WebAuthnError):
    """The authenticator already holds a credential for this account, or knows none."""

    pass


class TransportOrServerError(WebAuthnError):
    """Network failure, server rejection, or malformed options or response."""

    pass


class PlatformCeremonyError(Exception):
    """Raised by a PlatformAuthenticator, named after the DOMException it mirrors."""

    def __init__(self, name: str, message: str = ""):
        super().__init__(message or name)
        self.name = name


# Options as issued by the server
class _OptionsModel(BaseModel):
    # Fields without a declared counterpart (extensions, hints) pass through in model_extra
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        """Treat null fields as omitted so defaults apply."""
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class RelyingParty(_OptionsModel):
    name: str
    id: str | None = None


class UserEntity(_OptionsModel):
    id: bytes
    name: str
    display_name: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def decode_id(cls, v: Any) -> bytes:
        return encoding.decode_binary_field(v)


class CredentialParameters(_OptionsModel):
    type: str = "public-key"
    alg: int


class CredentialDescriptor(_OptionsModel):
    type: str = "public-key"
    id: bytes
    transports: list[str] | None = None

    @field_validator("id", mode="before")
    @classmethod
    def decode_id(cls, v: Any) -> bytes:
        return encoding.decode_binary_field(v)


class AuthenticatorSelection(_OptionsModel):
    authenticator_attachment: str = "cross-platform"
    user_verification: str = "preferred"
    require_resident_key: bool = False
    resident_key: str | None = None


def _default_cred_params() -> list[CredentialParameters]:
    return [CredentialParameters(alg=ES256), CredentialParameters(alg=RS256)]


class RegistrationOptions(_OptionsModel):
    """Credential creation options, with defaults for omitted fields."""

    challenge: bytes
    rp: RelyingParty
    user: UserEntity
    pub_key_cred_params: list[CredentialParameters] = Field(default_factory=_default_cred_params)
    authenticator_selection: AuthenticatorSelection = Field(default_factory=AuthenticatorSelection)
    attestation: str = "direct"
    timeout: int | None = Field(default=None, gt=0)
    exclude_credentials: list[CredentialDescriptor] = Field(default_factory=list)

    @field_validator("challenge", mode="before")
    @classmethod
    def decode_challenge(cls, v: Any) -> bytes:
        return encoding.decode_binary_field(v)


class AuthenticationOptions(_OptionsModel):
    """Credential request options, with defaults for omitted fields."""

    challenge: bytes
    rp_id: str | None = None
    allow_credentials: list[CredentialDescriptor] = Field(default_factory=list)
    user_verification: str = "preferred"
    timeout: int | None = Field(default=None, gt=0)

    @field_validator("challenge", mode="before")
    @classmethod
    def decode_challenge(cls, v: Any) -> bytes:
        return encoding.decode_binary_field(v)


# Platform authenticator results
@dataclass
class RegistrationCredential:
    """Result of navigator.credentials.create() or its native equivalent."""

    id: str
    raw_id: bytes
    client_data_json: bytes
    attestation_object: bytes
    transports: list[str] = field(default_factory=list)
    type: str = "public-key"


@dataclass
class AssertionCredential:
    """Result of navigator.credentials.get() or its native equivalent."""

    id: str
    raw_id: bytes
    client_data_json: bytes
    authenticator_data: bytes
    signature: bytes
    user_handle: bytes | None = None
    type: str = "public-key"


class PlatformAuthenticator(Protocol):
    """Bridge to the platform's authenticator API.

    Implementations raise PlatformCeremonyError with the DOMException name
    (NotAllowedError, InvalidStateError, ...) when the ceremony fails.
    """

    async def create(self, options: RegistrationOptions) -> RegistrationCredential: ...

    async def get(self, options: AuthenticationOptions) -> AssertionCredential: ...


@dataclass
class WebAuthnCeremony:
    """One registration or authentication attempt for an account."""

    kind: CeremonyKind
    account: str
    options: RegistrationOptions | AuthenticationOptions | None = None
    deadline: float | None = None
    outcome: CeremonyOutcome = CeremonyOutcome.PENDING
    failure_reason: str | None = None
    backup_codes: list[str] = field(default_factory=list)

    token: CancellationToken = field(default_factory=CancellationToken, repr=False)
    platform_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_pending(self) -> bool:
        return self.outcome is CeremonyOutcome.PENDING


@dataclass
class AssertionResult:
    """A verified authentication ceremony."""

    credential_id: str
    verified: bool = True
    mfa_token: str | None = None


def _registration_payload(credential: RegistrationCredential) -> dict[str, Any]:
    response: dict[str, Any] = {
        "clientDataJSON": encoding.encode(credential.client_data_json),
        "attestationObject": encoding.encode(credential.attestation_object),
    }
    if credential.transports:
        response["transports"] = list(credential.transports)
    return {
        "id": credential.id,
        "rawId": encoding.encode(credential.raw_id),
        "type": credential.type,
        "response": response,
    }


def _assertion_payload(credential: AssertionCredential) -> dict[str, Any]:
    return {
        "id": credential.id,
        "rawId": encoding.encode(credential.raw_id),
        "type": credential.type,
        "response": {
            "clientDataJSON": encoding.encode(credential.client_data_json),
            "authenticatorData": encoding.encode(credential.authenticator_data),
            "signature": encoding.encode(credential.signature),
            "userHandle": (
                encoding.encode(credential.user_handle) if credential.user_handle else None
            ),
        },
    }


class WebAuthnCeremonyCoordinator:
    """Runs WebAuthn ceremonies against the relay server.

    Registration requires a logged-in session and goes through the session
    manager. Authentication is the second step of a login, so it runs before
    any session exists and only carries the anti-forgery token.

    Example:
        coordinator = WebAuthnCeremonyCoordinator(session_manager, platform)
        ceremony = await coordinator.begin_registration("admin")
        enrollment = await coordinator.complete_registration(ceremony, "YubiKey 5C")
    """

    def __init__(
        self,
        session_manager: "SessionManager",
        platform: PlatformAuthenticator,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ):
        self.session_manager = session_manager
        self.platform = platform
        self.settings = settings or getattr(session_manager, "settings", None) or default_settings
        self.clock = clock or session_manager.clock
        self._pending: dict[tuple[str, CeremonyKind], WebAuthnCeremony] = {}

    def pending_ceremony(self, account: str, kind: CeremonyKind) -> WebAuthnCeremony | None:
        return self._pending.get((account, kind))

    async def begin_registration(self, account_hint: str) -> WebAuthnCeremony:
        """Fetch credential creation options for the logged-in account.

        Raises:
            CeremonyBusyError: If a registration is already pending for the account
            TransportOrServerError: If the options cannot be fetched or decoded
        """
        ceremony = self._reserve(account_hint, CeremonyKind.REGISTRATION)
        try:
            data = await self._post(ceremony, self.settings.webauthn_register_begin_path)
            options = self._parse_options(ceremony, RegistrationOptions, data)
            return self._arm(ceremony, options)
        except BaseException as e:
            self._abort(ceremony, e)
            raise

    async def complete_registration(
        self, ceremony: WebAuthnCeremony, device_label: str
    ) -> MfaEnrollment:
        """Create the credential on the authenticator and register it.

        Args:
            ceremony: Ceremony returned by begin_registration()
            device_label: Name for the key, shown in the device list

        Returns:
            The new enrollment. Backup codes issued with the first enrollment
            are stored on ceremony.backup_codes.

        Raises:
            ValueError: If the label is blank
            UserCancelledOrTimedOutError: If the user dismissed the prompt,
                the ceremony was cancelled, or its deadline passed
            DuplicateOrUnknownCredentialError: If the key is already registered
            TransportOrServerError: If the server call fails
        """
        label = device_label.strip() if device_label else ""
        if not label:
            raise ValueError("Device label is required")
        self._check_ready(ceremony, CeremonyKind.REGISTRATION)

        try:
            credential = await self._platform_call(
                ceremony, self.platform.create(ceremony.options)
            )
            data = await self._post(
                ceremony,
                self.settings.webauthn_register_complete_path,
                {"credential": _registration_payload(credential), "deviceName": label},
            )
            self._check_verified(ceremony, data)

            ceremony.backup_codes = [str(c) for c in data.get("backupCodes") or []]
            enrollment = MfaEnrollment(
                kind=FactorKind.SECURITY_KEY,
                credential_id=str(data.get("credentialID") or credential.id),
                label=label,
            )
            self._settle(ceremony, CeremonyOutcome.SUCCESS)
            logger.info(f"Registered security key '{label}' for {ceremony.account}")
            return enrollment
        except BaseException as e:
            self._abort(ceremony, e)
            raise

    async def begin_authentication(self, account_hint: str) -> WebAuthnCeremony:
        """Fetch credential request options for an account.

        Raises:
            CeremonyBusyError: If an authentication is already pending for the account
            TransportOrServerError: If the options cannot be fetched or decoded
        """
        if not account_hint:
            raise ValueError("Account is required")
        ceremony = self._reserve(account_hint, CeremonyKind.AUTHENTICATION)
        try:
            data = await self._post(
                ceremony,
                self.settings.webauthn_authenticate_begin_path,
                {"username": account_hint},
            )
            options = self._parse_options(ceremony, AuthenticationOptions, data)
            return self._arm(ceremony, options)
        except BaseException as e:
            self._abort(ceremony, e)
            raise

    async def complete_authentication(self, ceremony: WebAuthnCeremony) -> AssertionResult:
        """Get an assertion from the authenticator and have the server verify it.

        Raises:
            UserCancelledOrTimedOutError: If the user dismissed the prompt,
                the ceremony was cancelled, or its deadline passed
            DuplicateOrUnknownCredentialError: If no allowed credential is present
            TransportOrServerError: If the server call fails or rejects the assertion
        """
        self._check_ready(ceremony, CeremonyKind.AUTHENTICATION)

        try:
            credential = await self._platform_call(ceremony, self.platform.get(ceremony.options))
            data = await self._post(
                ceremony,
                self.settings.webauthn_authenticate_complete_path,
                {"credential": _assertion_payload(credential)},
            )
            self._check_verified(ceremony, data)

            result = AssertionResult(credential_id=credential.id, mfa_token=data.get("mfaToken"))
            self._settle(ceremony, CeremonyOutcome.SUCCESS)
            logger.info(f"Security key verified for {ceremony.account}")
            return result
        except BaseException as e:
            self._abort(ceremony, e)
            raise

    def cancel(self, ceremony: WebAuthnCeremony) -> None:
        """Cancel a pending ceremony and abandon any platform call in flight."""
        if not ceremony.is_pending:
            return
        ceremony.token.cancel()
        self._settle(ceremony, CeremonyOutcome.CANCELLED, "cancelled")
        if ceremony.platform_task is not None and not ceremony.platform_task.done():
            ceremony.platform_task.cancel()
        logger.info(f"{ceremony.kind.value.capitalize()} ceremony cancelled for {ceremony.account}")

    def cancel_all(self) -> None:
        for ceremony in list(self._pending.values()):
            self.cancel(ceremony)

    def _reserve(self, account: str, kind: CeremonyKind) -> WebAuthnCeremony:
        key = (account, kind)
        existing = self._pending.get(key)
        if existing is not None:
            if existing.deadline is not None and self.clock.now() >= existing.deadline:
                self._settle(existing, CeremonyOutcome.CANCELLED, "timeout")
            else:
                raise CeremonyBusyError(account, kind.value)

        ceremony = WebAuthnCeremony(kind=kind, account=account)
        self._pending[key] = ceremony
        return ceremony

    def _arm(self, ceremony: WebAuthnCeremony, options: Any) -> WebAuthnCeremony:
        if ceremony.token.cancelled:
            raise UserCancelledOrTimedOutError(ceremony.kind, "Ceremony was cancelled")
        if options.timeout is None:
            options.timeout = self.settings.webauthn_default_timeout_ms
        ceremony.options = options
        ceremony.deadline = self.clock.now() + options.timeout / 1000
        logger.debug(f"{ceremony.kind.value} options ready for {ceremony.account}")
        return ceremony

    def _check_ready(self, ceremony: WebAuthnCeremony, kind: CeremonyKind) -> None:
        if ceremony.kind is not kind:
            raise WebAuthnError(kind, f"Expected a {kind.value} ceremony")
        if ceremony.token.cancelled or ceremony.outcome is CeremonyOutcome.CANCELLED:
            raise UserCancelledOrTimedOutError(kind, "Ceremony was cancelled")
        if not ceremony.is_pending or ceremony.options is None:
            raise WebAuthnError(kind, f"Ceremony is {ceremony.outcome.value}")

    def _parse_options(self, ceremony: WebAuthnCeremony, model: type[T], data: dict) -> T:
        options = data.get("data") if isinstance(data.get("data"), dict) else data
        try:
            return model.model_validate(options)
        except (ValidationError, ValueError) as e:
            raise TransportOrServerError(ceremony.kind, f"Malformed ceremony options: {e}") from e

    async def _platform_call(self, ceremony: WebAuthnCeremony, call: Awaitable[T]) -> T:
        task = asyncio.ensure_future(call)
        ceremony.platform_task = task
        try:
            result = await race_deadline(task, self.clock, ceremony.deadline)
        except DeadlineExceeded:
            raise UserCancelledOrTimedOutError(ceremony.kind, "Ceremony timed out") from None
        except asyncio.CancelledError:
            if ceremony.token.cancelled:
                raise UserCancelledOrTimedOutError(
                    ceremony.kind, "Ceremony was cancelled"
                ) from None
            raise
        except PlatformCeremonyError as e:
            if e.name in _USER_CANCELLED_NAMES:
                raise UserCancelledOrTimedOutError(ceremony.kind, str(e)) from e
            if e.name in _DUPLICATE_NAMES:
                raise DuplicateOrUnknownCredentialError(ceremony.kind, str(e)) from e
            raise WebAuthnError(ceremony.kind, f"{e.name}: {e}") from e
        finally:
            ceremony.platform_task = None

        if ceremony.token.cancelled:
            logger.debug(f"Discarding late authenticator result for {ceremony.account}")
            raise UserCancelledOrTimedOutError(ceremony.kind, "Ceremony was cancelled")
        return result

    async def _post(
        self, ceremony: WebAuthnCeremony, path: str, body: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        kwargs = {"json": body} if body is not None else {}
        try:
            if ceremony.kind is CeremonyKind.REGISTRATION:
                response = await self.session_manager.request("POST", path, **kwargs)
            else:
                request = self.session_manager.client.build_request("POST", path, **kwargs)
                response = await self.session_manager.csrf.send(request)
        except (httpx.HTTPError, TransientError, CsrfRejectedError) as e:
            raise TransportOrServerError(ceremony.kind, f"Request failed: {e}") from e

        if ceremony.token.cancelled:
            raise UserCancelledOrTimedOutError(ceremony.kind, "Ceremony was cancelled")

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            error = data.get("error") if isinstance(data, dict) else None
            raise TransportOrServerError(
                ceremony.kind,
                error or f"Server returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if not isinstance(data, dict):
            raise TransportOrServerError(ceremony.kind, "Malformed server response")
        return data

    def _check_verified(self, ceremony: WebAuthnCeremony, data: dict[str, Any]) -> None:
        if data.get("verified") is True or data.get("success") is True:
            return
        raise TransportOrServerError(
            ceremony.kind, data.get("error") or "Server did not verify the credential"
        )

    def _settle(
        self, ceremony: WebAuthnCeremony, outcome: CeremonyOutcome, reason: str | None = None
    ) -> None:
        if not ceremony.is_pending:
            return
        ceremony.outcome = outcome
        ceremony.failure_reason = reason
        ceremony.token.cancel()
        key = (ceremony.account, ceremony.kind)
        if self._pending.get(key) is ceremony:
            del self._pending[key]

    def _abort(self, ceremony: WebAuthnCeremony, error: BaseException) -> None:
        if isinstance(error, UserCancelledOrTimedOutError):
            reason = "timeout" if "timed out" in str(error) else "cancelled"
            self._settle(ceremony, CeremonyOutcome.CANCELLED, reason)
        elif isinstance(error, asyncio.CancelledError):
            self._settle(ceremony, CeremonyOutcome.CANCELLED, "cancelled")
        else:
            logger.warning(f"{ceremony.kind.value.capitalize()} ceremony failed: {error}")
            self._settle(ceremony, CeremonyOutcome.FAILED, str(error) or type(error).__name__)
