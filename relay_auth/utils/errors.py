"""Error types for the relay authentication engine."""


class RelayAuthError(Exception):
    """Base exception for relay authentication errors."""

    pass


class ConfigurationError(RelayAuthError):
    """Raised when configuration is missing or invalid."""

    pass


class TransientError(RelayAuthError):
    """Raised when a network round-trip failed in a way worth retrying."""

    pass


# Session errors
class SessionError(RelayAuthError):
    """Base exception for session lifecycle errors."""

    pass


class LoginError(SessionError):
    """Raised when the server rejects a login attempt."""

    def __init__(self, message: str, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class SecondFactorRequiredError(LoginError):
    """Raised when the password was accepted but a second factor is needed."""

    def __init__(self, methods: list[str], preferred: str | None = None):
        super().__init__("Second factor required", code="MFA_REQUIRED", status_code=200)
        self.methods = methods
        self.preferred = preferred


class SessionExpiredError(SessionError):
    """Raised when the session could not be renewed and has been cleared."""

    def __init__(self, reason: str = "Session expired. Log in again"):
        super().__init__(reason)


# Anti-forgery errors
class CsrfRejectedError(RelayAuthError):
    """Raised when the server rejects the anti-forgery token twice in a row."""

    def __init__(self, code: str | None = None):
        message = f"Anti-forgery token rejected ({code})" if code else "Anti-forgery token rejected"
        super().__init__(message)
        self.code = code


# Ceremony errors
class CeremonyBusyError(RelayAuthError):
    """Raised when a ceremony of the same kind is already pending for an account."""

    def __init__(self, account: str, kind: str):
        super().__init__(f"A {kind} ceremony is already in progress for {account}")
        self.account = account
        self.kind = kind
