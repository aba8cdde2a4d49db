"""Authenticated session lifecycle for the relay admin API.

The relay issues a short-lived access cookie and a long-lived refresh cookie,
both httpOnly. This module keeps the session alive:

- login/logout against the auth endpoints
- silent renewal on a timer, shortly before the access cookie expires
- one-shot renewal and retry when any request comes back 401

Only one renewal is ever in flight. Callers that hit a 401 while it runs
await the same renewal instead of starting their own.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..core.config import Settings, StoragePolicy, settings as default_settings
from ..core.scheduling import Clock, MonotonicClock
from ..mfa import policy
from ..mfa.policy import FactorKind
from ..security.csrf import CsrfGuard
from ..utils.errors import (
    CsrfRejectedError,
    LoginError,
    SecondFactorRequiredError,
    SessionExpiredError,
    TransientError,
)

logger = logging.getLogger(__name__)

# Type alias for a zero-argument request factory passed to with_auth()
RequestFactory = Callable[[], Awaitable[httpx.Response]]


@dataclass
class Session:
    """An authenticated principal and the expiry of its access cookie."""

    subject: str
    role: str
    expires_at: float
    user_id: str | None = None
    permissions: list[str] = field(default_factory=list)
    mfa_factors: frozenset[FactorKind] = frozenset()
    renewing: bool = False
    cached: bool = False  # Restored from the local cache, not confirmed by the server

    def expires_in(self, now: float) -> float:
        """Seconds until the access cookie expires."""
        return self.expires_at - now

    @classmethod
    def from_user(
        cls,
        user: dict[str, Any],
        expires_at: float,
        factors: Iterable[FactorKind] = (),
        cached: bool = False,
    ) -> "Session":
        """Create from the user object returned by login or /me."""
        user_id = user.get("id")
        return cls(
            subject=str(user.get("username") or user.get("subject") or ""),
            role=str(user.get("role") or "viewer"),
            expires_at=expires_at,
            user_id=str(user_id) if user_id is not None else None,
            permissions=list(user.get("permissions") or []),
            mfa_factors=frozenset(factors),
            cached=cached,
        )


class SessionCache:
    """Process-local mirror of non-sensitive user info.

    Holds only username and role, never tokens, and is never persisted.
    """

    def __init__(self) -> None:
        self._data: dict[str, str] | None = None

    def store(self, session: Session) -> None:
        self._data = {"username": session.subject, "role": session.role}

    def load(self) -> dict[str, str] | None:
        return dict(self._data) if self._data else None

    def clear(self) -> None:
        self._data = None


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _factors_from_user(user: dict[str, Any]) -> set[FactorKind]:
    factors: set[FactorKind] = set()
    for method in user.get("mfaMethods") or []:
        try:
            factors.add(FactorKind.parse(method))
        except (ValueError, AttributeError):
            continue
    if user.get("twoFactorEnabled") or user.get("totpEnabled"):
        factors.add(FactorKind.TOTP)
    if user.get("fido2Enabled"):
        factors.add(FactorKind.SECURITY_KEY)
    return factors


class SessionManager:
    """Owns the authenticated session and wraps outbound calls with renewal.

    Example:
        manager = SessionManager(client, CsrfGuard(client))
        try:
            await manager.login("admin", password)
        except SecondFactorRequiredError as e:
            await manager.login("admin", password, totp_code=prompt(e.methods))

        response = await manager.request("GET", "/api/queue")
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        csrf: CsrfGuard,
        settings: Settings | None = None,
        clock: Clock | None = None,
        storage_policy: StoragePolicy | None = None,
    ):
        """Initialize the session manager.

        Args:
            client: HTTP client bound to the relay API (holds the auth cookies)
            csrf: Anti-forgery guard sharing the same client
            settings: Engine settings (default: global settings)
            clock: Time source for expiry and the renewal timer
            storage_policy: Override for settings.storage_policy
        """
        self.client = client
        self.csrf = csrf
        self.settings = settings or default_settings
        self.clock = clock or MonotonicClock()
        self.storage_policy = storage_policy or self.settings.storage_policy
        self.cache = SessionCache() if self.storage_policy is StoragePolicy.COOKIE_WITH_CACHE else None

        self._session: Session | None = None
        self._renewal: asyncio.Task[bool] | None = None
        self._renewal_generation = 0
        self._renewal_failures = 0
        self._timer: asyncio.Task[None] | None = None

    def current_session(self) -> Session | None:
        """Return the current session, or None when logged out."""
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and not self._session.cached

    async def login(
        self,
        username: str,
        password: str,
        totp_code: str | None = None,
        security_key_verified: bool = False,
    ) -> Session:
        """Log in with username and password, plus a second factor if enrolled.

        Args:
            username: Account name
            password: Account password
            totp_code: Authenticator app code for accounts with TOTP
            security_key_verified: Set after a successful WebAuthn assertion
                for this account; the server checks its own record of it

        Returns:
            The new Session

        Raises:
            SecondFactorRequiredError: If a second factor must be supplied
            LoginError: If the server rejects the attempt
        """
        if not username or not password:
            raise LoginError("Username and password are required", code="MISSING_CREDENTIALS")

        body: dict[str, Any] = {"username": username, "password": password}
        if totp_code:
            body["totpToken"] = totp_code
        if security_key_verified:
            body["fido2Response"] = True

        request = self.client.build_request("POST", self.settings.login_path, json=body)
        try:
            response = await self.csrf.send(request)
        except httpx.HTTPError as e:
            raise LoginError(f"Login request failed: {e}", code="TRANSPORT_ERROR") from e

        data = _json_body(response)
        if not response.is_success:
            logger.warning(f"Login rejected for {username} (HTTP {response.status_code})")
            raise LoginError(
                data.get("error") or f"Login failed (HTTP {response.status_code})",
                code=data.get("code"),
                status_code=response.status_code,
            )

        if data.get("requiresTwoFactor"):
            offer = policy.resolve(data.get("mfaMethods") or [])
            logger.info(f"Second factor required for {username}")
            raise SecondFactorRequiredError(
                [kind.value for kind in offer.ceremonies],
                preferred=offer.preferred.value if offer.preferred else None,
            )

        user = data.get("user") or {"username": username}
        factors = _factors_from_user(user)
        if totp_code:
            factors.add(FactorKind.TOTP)
        if security_key_verified:
            factors.add(FactorKind.SECURITY_KEY)

        session = self._establish(user, factors)
        logger.info(f"Logged in as {session.subject} ({session.role})")
        return session

    async def check_session(self) -> Session | None:
        """Probe the server for an existing session (e.g. after a restart).

        Returns:
            The confirmed session, a cached one if the server is unreachable
            and the storage policy allows it, or None
        """
        try:
            response = await self.with_auth(lambda: self.client.get(self.settings.me_path))
        except SessionExpiredError:
            return None
        except (httpx.HTTPError, TransientError) as e:
            logger.warning(f"Session check failed: {e}")
            return self._restore_from_cache()

        if not response.is_success:
            logger.warning(f"Session check returned HTTP {response.status_code}")
            return self._restore_from_cache()

        user = _json_body(response)
        current = self._session
        if current is not None and not current.cached and current.subject == user.get("username"):
            return current

        factors = _factors_from_user(user)
        if current is not None and current.subject == user.get("username"):
            factors |= current.mfa_factors
        return self._establish(user, factors)

    async def logout(self) -> None:
        """Log out on the server and always clear local session state."""
        self._stop_timer()
        request = self.client.build_request("POST", self.settings.logout_path)
        try:
            response = await self.csrf.send(request)
            if not response.is_success:
                logger.warning(f"Logout returned HTTP {response.status_code}")
        except (httpx.HTTPError, CsrfRejectedError) as e:
            logger.warning(f"Logout request failed: {e}")
        finally:
            self._clear()
            logger.info("Logged out")

    async def with_auth(self, send: RequestFactory) -> httpx.Response:
        """Run a request, renewing the session once if it comes back 401.

        Args:
            send: Zero-argument coroutine factory that performs the request.
                It is called at most twice.

        Returns:
            The response to the original call or to its single retry

        Raises:
            SessionExpiredError: If renewal fails or the retry is also 401
            TransientError: If renewal hit a network error but the session
                is still within its failure budget
        """
        generation = self._renewal_generation
        response = await send()
        if response.status_code != 401:
            return response
        await response.aclose()

        if self._renewal_generation != generation:
            # Another caller renewed while this request was in flight
            logger.debug("Renewal already completed, retrying request")
        elif not await self.renew():
            if self._session is None:
                raise SessionExpiredError()
            raise TransientError("Session renewal failed, try again")

        response = await send()
        if response.status_code == 401:
            await response.aclose()
            logger.warning("Request still unauthorized after renewal, clearing session")
            self._clear()
            raise SessionExpiredError()
        return response

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send an authenticated, anti-forgery-protected request.

        Keyword arguments are passed to httpx.AsyncClient.build_request().
        """

        async def send() -> httpx.Response:
            request = self.client.build_request(method, path, **kwargs)
            return await self.csrf.send(request)

        return await self.with_auth(send)

    async def renew(self) -> bool:
        """Renew the access cookie, joining a renewal already in flight.

        Returns:
            True if the session was renewed
        """
        if self._renewal is None or self._renewal.done():
            self._renewal = asyncio.ensure_future(self._refresh())
        # Shielded so one cancelled caller does not abort the shared renewal
        return await asyncio.shield(self._renewal)

    async def _refresh(self) -> bool:
        session = self._session
        if session is not None:
            session.renewing = True
        try:
            request = self.client.build_request("POST", self.settings.refresh_path)
            try:
                response = await self.csrf.send(request)
            except httpx.HTTPError as e:
                self._renewal_failures += 1
                logger.warning(
                    f"Session renewal failed ({self._renewal_failures}/"
                    f"{self.settings.max_renewal_failures}): {e}"
                )
                if self._renewal_failures >= self.settings.max_renewal_failures:
                    logger.error("Giving up on session renewal")
                    self._clear()
                return False
            except CsrfRejectedError as e:
                logger.error(f"Session renewal rejected: {e}")
                self._clear()
                return False

            await response.aclose()
            if not response.is_success:
                logger.warning(f"Session renewal rejected (HTTP {response.status_code})")
                self._clear()
                return False

            self._renewal_failures = 0
            self._renewal_generation += 1
            if self._session is not None:
                self._session.expires_at = self.clock.now() + self.settings.access_token_lifetime
            logger.info("Session renewed")
            return True
        finally:
            if session is not None:
                session.renewing = False

    def _establish(self, user: dict[str, Any], factors: Iterable[FactorKind]) -> Session:
        session = Session.from_user(
            user,
            expires_at=self.clock.now() + self.settings.access_token_lifetime,
            factors=factors,
        )
        self._session = session
        self._renewal_failures = 0
        if self.cache is not None:
            self.cache.store(session)
        self._start_timer()
        return session

    def _restore_from_cache(self) -> Session | None:
        if self.cache is None:
            return None
        cached = self.cache.load()
        if not cached:
            return None
        logger.info(f"Using cached session info for {cached['username']}")
        self._session = Session.from_user(cached, expires_at=self.clock.now(), cached=True)
        return self._session

    def _clear(self) -> None:
        self._session = None
        if self.cache is not None:
            self.cache.clear()
        self._stop_timer()

    def _start_timer(self) -> None:
        self._stop_timer()
        self._timer = asyncio.ensure_future(self._renewal_loop())

    def _stop_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _renewal_loop(self) -> None:
        """Renew proactively so an idle client does not silently expire."""
        retry_delay = max(
            1.0, self.settings.renew_before_expiry / max(1, self.settings.max_renewal_failures)
        )
        while self._session is not None and not self._session.cached:
            session = self._session
            due_at = session.expires_at - self.settings.renew_before_expiry
            await self.clock.sleep(due_at - self.clock.now())

            if self._session is not session:
                return
            if session.expires_at - self.settings.renew_before_expiry > self.clock.now():
                # Renewed by a 401 retry in the meantime
                continue

            logger.debug("Proactive session renewal")
            if await self.renew():
                continue
            if self._session is None:
                logger.info("Session renewal failed, renewal timer stopped")
                return
            await self.clock.sleep(retry_delay)

    async def close(self) -> None:
        """Stop background work without contacting the server."""
        self._stop_timer()
        if self._renewal is not None and not self._renewal.done():
            self._renewal.cancel()
