"""Second-factor selection policy.

Given the factors enrolled for an account, decide which ceremonies to offer
and whether the user needs to be asked at all.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class FactorKind(str, Enum):
    """Kinds of second factor an account can enroll."""

    SECURITY_KEY = "fido2"
    TOTP = "totp"

    @classmethod
    def parse(cls, value: "str | FactorKind") -> "FactorKind":
        """Parse a factor kind from an enum member or a wire name.

        Raises:
            ValueError: If the name is not a known factor kind
        """
        if isinstance(value, FactorKind):
            return value
        normalized = value.strip().lower().replace("-", "_")
        try:
            return _ALIASES[normalized]
        except KeyError:
            raise ValueError(f"Unknown MFA factor kind: {value!r}") from None


_ALIASES = {
    "fido2": FactorKind.SECURITY_KEY,
    "security_key": FactorKind.SECURITY_KEY,
    "webauthn": FactorKind.SECURITY_KEY,
    "totp": FactorKind.TOTP,
    "app_code": FactorKind.TOTP,
}

# Lower sorts first
_PREFERENCE = {FactorKind.SECURITY_KEY: 0, FactorKind.TOTP: 1}


@dataclass(frozen=True)
class MfaOffer:
    """Ceremonies to offer for one login, most preferred first."""

    ceremonies: tuple[FactorKind, ...]

    @property
    def preferred(self) -> FactorKind | None:
        return self.ceremonies[0] if self.ceremonies else None

    @property
    def requires_prompt(self) -> bool:
        """Whether the user has to choose between factors."""
        return len(self.ceremonies) > 1

    @property
    def auto_selected(self) -> FactorKind | None:
        """The factor to start without prompting, for single-factor accounts."""
        return self.ceremonies[0] if len(self.ceremonies) == 1 else None


def resolve(enrolled: Iterable["str | FactorKind"]) -> MfaOffer:
    """Order the enrolled factors into the ceremonies to offer.

    Security keys are preferred over app codes. Unknown factor names are
    ignored so a newer server does not break older clients.
    """
    kinds: set[FactorKind] = set()
    for value in enrolled:
        try:
            kinds.add(FactorKind.parse(value))
        except ValueError:
            continue
    return MfaOffer(tuple(sorted(kinds, key=_PREFERENCE.__getitem__)))
