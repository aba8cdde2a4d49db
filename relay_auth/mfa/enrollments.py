"""Second-factor enrollment management for the logged-in account.

Reads enrollment status and manages registered security keys and backup
codes. Every call goes through the session manager, so it renews and
retries on 401 like any other authenticated request.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.config import Settings, settings as default_settings
from ..utils.errors import CsrfRejectedError, RelayAuthError, TransientError
from .policy import FactorKind

if TYPE_CHECKING:
    from ..session.session_manager import SessionManager

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 50


class MfaEnrollment(BaseModel):
    """A registered second factor. The server owns it; this is a view."""

    model_config = ConfigDict(populate_by_name=True)

    kind: FactorKind = FactorKind.SECURITY_KEY
    credential_id: str = Field(alias="id")
    label: str | None = Field(default=None, alias="name")
    created_at: datetime | None = Field(default=None, alias="registered")
    last_used_at: datetime | None = Field(default=None, alias="lastUsed")


class MfaStatus(BaseModel):
    """Enrollment summary for the current account."""

    factors: frozenset[FactorKind] = frozenset()
    security_keys: list[MfaEnrollment] = Field(default_factory=list)
    backup_codes_remaining: int = 0
    enforced: bool = False

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "MfaStatus":
        """Create from the status payload ({totp, fido2, backup, enforced})."""
        factors = set()
        if (data.get("totp") or {}).get("enabled"):
            factors.add(FactorKind.TOTP)
        fido2 = data.get("fido2") or {}
        if fido2.get("enabled"):
            factors.add(FactorKind.SECURITY_KEY)
        return cls(
            factors=frozenset(factors),
            security_keys=[MfaEnrollment.model_validate(d) for d in fido2.get("devices") or []],
            backup_codes_remaining=int((data.get("backup") or {}).get("remaining") or 0),
            enforced=bool(data.get("enforced")),
        )


class EnrollmentError(RelayAuthError):
    """Raised when an enrollment management call fails."""

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class EnrollmentClient:
    """Manage enrolled factors for the logged-in account."""

    def __init__(self, session_manager: "SessionManager", settings: Settings | None = None):
        self.session_manager = session_manager
        self.settings = settings or getattr(session_manager, "settings", None) or default_settings

    async def status(self) -> MfaStatus:
        """Get enrolled factor kinds, registered keys and remaining backup codes."""
        data = await self._call("GET", self.settings.mfa_status_path)
        try:
            return MfaStatus.from_api(_payload(data))
        except (ValidationError, TypeError, ValueError, AttributeError) as e:
            raise EnrollmentError(f"Invalid MFA status response: {e}", code="INVALID_RESPONSE") from e

    async def list_security_keys(self) -> list[MfaEnrollment]:
        """List the security keys registered for the account."""
        data = await self._call("GET", self.settings.mfa_devices_path)
        devices = _payload(data)
        if not isinstance(devices, list):
            raise EnrollmentError("Invalid device list response", code="INVALID_RESPONSE")
        try:
            return [MfaEnrollment.model_validate(device) for device in devices]
        except ValidationError as e:
            raise EnrollmentError(f"Invalid device in response: {e}", code="INVALID_RESPONSE") from e

    async def rename_security_key(self, credential_id: str, label: str) -> None:
        """Rename a registered security key.

        Raises:
            ValueError: If the label is blank or too long
            EnrollmentError: If the server rejects the change
        """
        label = label.strip()
        if not label or len(label) > MAX_LABEL_LENGTH:
            raise ValueError(f"Label must be 1-{MAX_LABEL_LENGTH} characters")
        await self._call("PUT", self._device_path(credential_id), json={"name": label})
        logger.info(f"Renamed security key {credential_id}")

    async def remove_security_key(self, credential_id: str) -> None:
        """Remove a registered security key."""
        await self._call("DELETE", self._device_path(credential_id))
        logger.info(f"Removed security key {credential_id}")

    async def generate_backup_codes(self) -> list[str]:
        """Generate a fresh set of backup codes, invalidating the previous set."""
        data = await self._call("POST", self.settings.mfa_backup_codes_path)
        payload = _payload(data)
        codes = payload.get("codes") if isinstance(payload, dict) else None
        if not isinstance(codes, list):
            raise EnrollmentError("Invalid backup codes response", code="INVALID_RESPONSE")
        logger.info(f"Generated {len(codes)} backup codes")
        return [str(code) for code in codes]

    def _device_path(self, credential_id: str) -> str:
        if not credential_id:
            raise ValueError("Credential ID is required")
        return f"{self.settings.mfa_devices_path}/{quote(credential_id, safe='')}"

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self.session_manager.request(method, path, **kwargs)
        except (httpx.HTTPError, TransientError, CsrfRejectedError) as e:
            raise EnrollmentError(f"Request failed: {e}", code="TRANSPORT_ERROR") from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success or data.get("success") is False:
            logger.warning(f"{method} {path} failed (HTTP {response.status_code})")
            raise EnrollmentError(
                data.get("error") or f"Request failed (HTTP {response.status_code})",
                code=data.get("code"),
                status_code=response.status_code,
            )
        return data


def _payload(data: dict[str, Any]) -> Any:
    """Unwrap the {success, data} envelope used by the MFA endpoints."""
    return data["data"] if "data" in data else data
