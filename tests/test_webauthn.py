"""Tests for WebAuthn registration and authentication ceremonies."""

import asyncio
from typing import Any

import pytest

from fakes import FakeClock, FakePlatform, RelayStub
from relay_auth.core.config import Settings
from relay_auth.mfa.policy import FactorKind
from relay_auth.mfa.webauthn import (
    ES256,
    RS256,
    CeremonyKind,
    CeremonyOutcome,
    DuplicateOrUnknownCredentialError,
    PlatformCeremonyError,
    TransportOrServerError,
    UserCancelledOrTimedOutError,
    WebAuthnCeremonyCoordinator,
    WebAuthnError,
)
from relay_auth.session.session_manager import SessionManager
from relay_auth.utils import encoding
from relay_auth.utils.errors import CeremonyBusyError

REGISTER_BEGIN = "/api/mfa/fido2/register/begin"
REGISTER_COMPLETE = "/api/mfa/fido2/register/complete"
AUTH_BEGIN = "/api/mfa/fido2/authenticate/begin"
AUTH_COMPLETE = "/api/mfa/fido2/authenticate/complete"

CHALLENGE = b"registration-challenge-0123456789"


def registration_options(**overrides: Any) -> dict[str, Any]:
    """Creation options as the relay's FIDO2 manager emits them, wrapped in {success, data}."""
    options = {
        "challenge": encoding.encode(CHALLENGE),
        "rp": {"name": "SMTP Relay Dashboard", "id": "localhost"},
        "user": {
            "id": {"type": "Buffer", "data": [1, 2, 3, 4]},
            "name": "admin",
            "displayName": "admin",
        },
        "excludeCredentials": [],
        **overrides,
    }
    return {"success": True, "data": options}


def authentication_options(**overrides: Any) -> dict[str, Any]:
    options = {
        "challenge": encoding.encode(b"auth-challenge"),
        "rpId": "localhost",
        "allowCredentials": [
            {"id": encoding.encode(b"cred-1"), "type": "public-key", "transports": ["usb", "nfc"]}
        ],
        "userVerification": "preferred",
        **overrides,
    }
    return {"success": True, "data": options}


@pytest.fixture
def coordinator(
    session_manager: SessionManager, platform: FakePlatform, settings: Settings, clock: FakeClock
) -> WebAuthnCeremonyCoordinator:
    return WebAuthnCeremonyCoordinator(session_manager, platform, settings, clock)


class TestRegistrationOptions:
    """Tests for decoding creation options and applying defaults."""

    @pytest.mark.asyncio
    async def test_defaults_for_omitted_fields(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        """Test that omitted fields get the documented defaults before reaching the platform."""
        relay.on("POST", REGISTER_BEGIN, registration_options())
        relay.on("POST", REGISTER_COMPLETE, {"success": True, "credentialID": "Y3JlZC0x"})

        ceremony = await coordinator.begin_registration("admin")
        await coordinator.complete_registration(ceremony, "YubiKey 5C")

        options = platform.create_calls[0]
        assert options.attestation == "direct"
        assert [p.alg for p in options.pub_key_cred_params] == [ES256, RS256]
        assert options.authenticator_selection.authenticator_attachment == "cross-platform"
        assert options.authenticator_selection.user_verification == "preferred"
        assert options.authenticator_selection.require_resident_key is False
        assert options.timeout == 60_000

    @pytest.mark.asyncio
    async def test_null_fields_treated_as_omitted(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on(
            "POST",
            REGISTER_BEGIN,
            registration_options(attestation=None, pubKeyCredParams=None, timeout=None),
        )

        ceremony = await coordinator.begin_registration("admin")

        assert ceremony.options.attestation == "direct"
        assert len(ceremony.options.pub_key_cred_params) == 2
        coordinator.cancel(ceremony)

    @pytest.mark.asyncio
    async def test_binary_fields_decoded(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub, clock: FakeClock
    ) -> None:
        """Test that challenge and user id arrive as bytes, whatever their wire shape."""
        relay.on(
            "POST",
            REGISTER_BEGIN,
            registration_options(attestation="none", timeout=30_000),
        )

        ceremony = await coordinator.begin_registration("admin")

        assert ceremony.options.challenge == CHALLENGE
        assert ceremony.options.user.id == b"\x01\x02\x03\x04"
        assert ceremony.options.user.display_name == "admin"
        assert ceremony.options.attestation == "none"
        assert ceremony.deadline == clock.now() + 30
        coordinator.cancel(ceremony)

    @pytest.mark.asyncio
    async def test_unwrapped_options_accepted(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options()["data"])

        ceremony = await coordinator.begin_registration("admin")

        assert ceremony.options.challenge == CHALLENGE
        coordinator.cancel(ceremony)

    @pytest.mark.asyncio
    async def test_malformed_options(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        """Test that undecodable options fail the ceremony and release the slot."""
        relay.on("POST", REGISTER_BEGIN, registration_options(challenge="not base64!"))

        with pytest.raises(TransportOrServerError) as exc_info:
            await coordinator.begin_registration("admin")

        assert exc_info.value.kind is CeremonyKind.REGISTRATION
        assert coordinator.pending_ceremony("admin", CeremonyKind.REGISTRATION) is None

    @pytest.mark.parametrize("timeout", [0, -1000])
    @pytest.mark.asyncio
    async def test_non_positive_timeout_is_server_fault(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
        timeout: int,
    ) -> None:
        """Test that an unusable timeout is reported as a server error, not a user timeout."""
        relay.on("POST", REGISTER_BEGIN, registration_options(timeout=timeout))

        with pytest.raises(TransportOrServerError):
            await coordinator.begin_registration("admin")

        assert platform.create_calls == []
        assert coordinator.pending_ceremony("admin", CeremonyKind.REGISTRATION) is None

    @pytest.mark.asyncio
    async def test_unmodelled_fields_reach_platform(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        relay.on(
            "POST",
            REGISTER_BEGIN,
            registration_options(
                authenticatorSelection={
                    "authenticatorAttachment": "cross-platform",
                    "residentKey": "discouraged",
                    "requireResidentKey": False,
                },
                extensions={"credProps": True},
            ),
        )
        relay.on("POST", REGISTER_COMPLETE, {"success": True, "credentialID": "Y3JlZC0x"})

        ceremony = await coordinator.begin_registration("admin")
        await coordinator.complete_registration(ceremony, "YubiKey 5C")

        options = platform.create_calls[0]
        assert options.authenticator_selection.resident_key == "discouraged"
        assert options.model_extra == {"extensions": {"credProps": True}}

    @pytest.mark.asyncio
    async def test_begin_server_error(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on(
            "POST",
            REGISTER_BEGIN,
            (500, {"error": "Failed to start FIDO2 registration", "code": "FIDO2_REG_BEGIN_ERROR"}),
        )

        with pytest.raises(TransportOrServerError) as exc_info:
            await coordinator.begin_registration("admin")

        assert exc_info.value.status_code == 500
        assert "Failed to start FIDO2 registration" in str(exc_info.value)


class TestRegistration:
    """Tests for completing a registration ceremony."""

    @pytest.mark.asyncio
    async def test_complete_registration(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        """Test that the credential is encoded as base64url and submitted with its label."""
        relay.on("POST", REGISTER_BEGIN, registration_options())
        relay.on(
            "POST",
            REGISTER_COMPLETE,
            {
                "success": True,
                "message": "Security key registered successfully",
                "credentialID": "Y3JlZC0x",
                "backupCodes": ["AAAA-1111", "BBBB-2222"],
            },
        )

        ceremony = await coordinator.begin_registration("admin")
        enrollment = await coordinator.complete_registration(ceremony, "  YubiKey 5C  ")

        assert enrollment.kind is FactorKind.SECURITY_KEY
        assert enrollment.credential_id == "Y3JlZC0x"
        assert enrollment.label == "YubiKey 5C"
        assert ceremony.outcome is CeremonyOutcome.SUCCESS
        assert ceremony.backup_codes == ["AAAA-1111", "BBBB-2222"]
        assert coordinator.pending_ceremony("admin", CeremonyKind.REGISTRATION) is None

        body = relay.body(relay.calls("POST", REGISTER_COMPLETE)[0])
        assert body["deviceName"] == "YubiKey 5C"
        credential = body["credential"]
        assert credential["id"] == "Y3JlZC0x"
        assert credential["rawId"] == encoding.encode(b"cred-1")
        assert credential["type"] == "public-key"
        assert encoding.decode(credential["response"]["clientDataJSON"]) == (
            b'{"type":"webauthn.create"}'
        )
        assert encoding.decode(credential["response"]["attestationObject"]) == b"\xa3attestation"
        assert credential["response"]["transports"] == ["usb"]

    @pytest.mark.asyncio
    async def test_blank_label_rejected(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub, platform: FakePlatform
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options())

        ceremony = await coordinator.begin_registration("admin")
        with pytest.raises(ValueError):
            await coordinator.complete_registration(ceremony, "   ")

        assert platform.create_calls == []
        assert ceremony.outcome is CeremonyOutcome.PENDING
        coordinator.cancel(ceremony)

    @pytest.mark.asyncio
    async def test_concurrent_begin_is_busy(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        """Test that two concurrent begins for one account yield one ceremony."""
        relay.on("POST", REGISTER_BEGIN, registration_options())

        results = await asyncio.gather(
            coordinator.begin_registration("admin"),
            coordinator.begin_registration("admin"),
            return_exceptions=True,
        )

        ceremonies = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(ceremonies) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CeremonyBusyError)
        assert len(relay.calls("POST", REGISTER_BEGIN)) == 1
        coordinator.cancel(ceremonies[0])

    @pytest.mark.asyncio
    async def test_different_kinds_do_not_conflict(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options())
        relay.on("POST", AUTH_BEGIN, authentication_options())

        registration = await coordinator.begin_registration("admin")
        authentication = await coordinator.begin_authentication("admin")

        assert registration.kind is CeremonyKind.REGISTRATION
        assert authentication.kind is CeremonyKind.AUTHENTICATION
        coordinator.cancel_all()
        assert registration.outcome is CeremonyOutcome.CANCELLED
        assert authentication.outcome is CeremonyOutcome.CANCELLED

    @pytest.mark.asyncio
    async def test_user_cancelled_on_platform(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        """Test that NotAllowedError maps to UserCancelledOrTimedOutError and frees the slot."""
        relay.on("POST", REGISTER_BEGIN, registration_options())
        platform.error = PlatformCeremonyError("NotAllowedError", "The operation was not allowed")

        ceremony = await coordinator.begin_registration("admin")
        with pytest.raises(UserCancelledOrTimedOutError) as exc_info:
            await coordinator.complete_registration(ceremony, "YubiKey")

        assert exc_info.value.kind is CeremonyKind.REGISTRATION
        assert ceremony.outcome is CeremonyOutcome.CANCELLED
        assert relay.calls("POST", REGISTER_COMPLETE) == []

        again = await coordinator.begin_registration("admin")
        assert again is not ceremony
        coordinator.cancel(again)

    @pytest.mark.asyncio
    async def test_duplicate_credential(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options())
        platform.error = PlatformCeremonyError("InvalidStateError", "Credential already registered")

        ceremony = await coordinator.begin_registration("admin")
        with pytest.raises(DuplicateOrUnknownCredentialError):
            await coordinator.complete_registration(ceremony, "YubiKey")

        assert ceremony.outcome is CeremonyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_server_rejects_attestation(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options())
        relay.on(
            "POST",
            REGISTER_COMPLETE,
            (400, {"error": "Registration verification failed", "code": "VERIFICATION_FAILED"}),
        )

        ceremony = await coordinator.begin_registration("admin")
        with pytest.raises(TransportOrServerError) as exc_info:
            await coordinator.complete_registration(ceremony, "YubiKey")

        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "Registration verification failed"
        assert ceremony.outcome is CeremonyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_ceremony_deadline(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
        clock: FakeClock,
    ) -> None:
        """Test that a platform call outliving the ceremony timeout is abandoned."""
        relay.on("POST", REGISTER_BEGIN, registration_options(timeout=10_000))
        platform.hold = asyncio.Event()

        ceremony = await coordinator.begin_registration("admin")
        task = asyncio.ensure_future(coordinator.complete_registration(ceremony, "YubiKey"))
        await clock.advance(9)
        assert not task.done()

        await clock.advance(1)
        with pytest.raises(UserCancelledOrTimedOutError):
            await task
        assert ceremony.outcome is CeremonyOutcome.CANCELLED
        assert ceremony.failure_reason == "timeout"
        assert relay.calls("POST", REGISTER_COMPLETE) == []

    @pytest.mark.asyncio
    async def test_cancel_abandons_platform_call(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
        clock: FakeClock,
    ) -> None:
        """Test that cancel() interrupts the authenticator and discards its result."""
        relay.on("POST", REGISTER_BEGIN, registration_options())
        platform.hold = asyncio.Event()

        ceremony = await coordinator.begin_registration("admin")
        task = asyncio.ensure_future(coordinator.complete_registration(ceremony, "YubiKey"))
        await clock.settle()
        coordinator.cancel(ceremony)
        platform.hold.set()

        with pytest.raises(UserCancelledOrTimedOutError):
            await task
        assert ceremony.outcome is CeremonyOutcome.CANCELLED
        assert ceremony.failure_reason == "cancelled"
        assert relay.calls("POST", REGISTER_COMPLETE) == []

    @pytest.mark.asyncio
    async def test_complete_after_cancel(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub, platform: FakePlatform
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options())

        ceremony = await coordinator.begin_registration("admin")
        coordinator.cancel(ceremony)
        with pytest.raises(UserCancelledOrTimedOutError):
            await coordinator.complete_registration(ceremony, "YubiKey")

        assert platform.create_calls == []


class TestAuthentication:
    """Tests for authentication ceremonies during login."""

    @pytest.mark.asyncio
    async def test_authentication_round(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        """Test the full assertion ceremony."""
        relay.on("POST", AUTH_BEGIN, authentication_options())
        relay.on(
            "POST",
            AUTH_COMPLETE,
            {"success": True, "message": "Authentication successful", "mfaToken": "fido2-verified"},
        )

        ceremony = await coordinator.begin_authentication("admin")
        result = await coordinator.complete_authentication(ceremony)

        assert result.verified
        assert result.mfa_token == "fido2-verified"
        assert result.credential_id == "Y3JlZC0x"
        assert ceremony.outcome is CeremonyOutcome.SUCCESS

        assert relay.body(relay.calls("POST", AUTH_BEGIN)[0]) == {"username": "admin"}
        options = platform.get_calls[0]
        assert options.challenge == b"auth-challenge"
        assert options.allow_credentials[0].id == b"cred-1"
        assert options.allow_credentials[0].transports == ["usb", "nfc"]
        assert options.timeout == 60_000

        response = relay.body(relay.calls("POST", AUTH_COMPLETE)[0])["credential"]["response"]
        assert encoding.decode(response["authenticatorData"]) == b"\x49\x96auth-data"
        assert encoding.decode(response["signature"]) == b"\x30\x45signature"
        assert response["userHandle"] is None

    @pytest.mark.asyncio
    async def test_user_handle_encoded_when_present(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        relay.on("POST", AUTH_BEGIN, authentication_options())
        relay.on("POST", AUTH_COMPLETE, {"verified": True})
        platform.user_handle = b"\x01\x02"

        ceremony = await coordinator.begin_authentication("admin")
        result = await coordinator.complete_authentication(ceremony)

        assert result.mfa_token is None
        response = relay.body(relay.calls("POST", AUTH_COMPLETE)[0])["credential"]["response"]
        assert response["userHandle"] == "AQI"

    @pytest.mark.asyncio
    async def test_authentication_defaults(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on(
            "POST",
            AUTH_BEGIN,
            authentication_options(userVerification=None, allowCredentials=None),
        )

        ceremony = await coordinator.begin_authentication("admin")

        assert ceremony.options.user_verification == "preferred"
        assert ceremony.options.allow_credentials == []
        assert ceremony.options.timeout == 60_000
        coordinator.cancel(ceremony)

    @pytest.mark.asyncio
    async def test_zero_timeout_rejected(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub, platform: FakePlatform
    ) -> None:
        relay.on("POST", AUTH_BEGIN, authentication_options(timeout=0))

        with pytest.raises(TransportOrServerError) as exc_info:
            await coordinator.begin_authentication("admin")

        assert exc_info.value.kind is CeremonyKind.AUTHENTICATION
        assert platform.get_calls == []

    @pytest.mark.asyncio
    async def test_unverified_assertion(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on("POST", AUTH_BEGIN, authentication_options())
        relay.on("POST", AUTH_COMPLETE, {"success": False, "error": "Authentication verification failed"})

        ceremony = await coordinator.begin_authentication("admin")
        with pytest.raises(TransportOrServerError) as exc_info:
            await coordinator.complete_authentication(ceremony)

        assert exc_info.value.kind is CeremonyKind.AUTHENTICATION
        assert ceremony.outcome is CeremonyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_unknown_credential(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        relay.on("POST", AUTH_BEGIN, authentication_options())
        platform.error = PlatformCeremonyError("InvalidStateError")

        ceremony = await coordinator.begin_authentication("admin")
        with pytest.raises(DuplicateOrUnknownCredentialError) as exc_info:
            await coordinator.complete_authentication(ceremony)

        assert exc_info.value.kind is CeremonyKind.AUTHENTICATION

    @pytest.mark.asyncio
    async def test_unexpected_platform_error(
        self,
        coordinator: WebAuthnCeremonyCoordinator,
        relay: RelayStub,
        platform: FakePlatform,
    ) -> None:
        relay.on("POST", AUTH_BEGIN, authentication_options())
        platform.error = PlatformCeremonyError("SecurityError", "Invalid domain")

        ceremony = await coordinator.begin_authentication("admin")
        with pytest.raises(WebAuthnError) as exc_info:
            await coordinator.complete_authentication(ceremony)

        assert not isinstance(exc_info.value, UserCancelledOrTimedOutError)
        assert ceremony.outcome is CeremonyOutcome.FAILED

    @pytest.mark.asyncio
    async def test_wrong_ceremony_kind(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        relay.on("POST", REGISTER_BEGIN, registration_options())

        ceremony = await coordinator.begin_registration("admin")
        with pytest.raises(WebAuthnError):
            await coordinator.complete_authentication(ceremony)
        coordinator.cancel(ceremony)

    @pytest.mark.asyncio
    async def test_authentication_does_not_attempt_renewal(
        self, coordinator: WebAuthnCeremonyCoordinator, relay: RelayStub
    ) -> None:
        """Test that a pre-login 401 is reported rather than triggering session renewal."""
        relay.on("POST", AUTH_BEGIN, (401, {"error": "Authentication required"}))

        with pytest.raises(TransportOrServerError) as exc_info:
            await coordinator.begin_authentication("admin")

        assert exc_info.value.status_code == 401
        assert relay.calls("POST", "/api/auth/refresh") == []
