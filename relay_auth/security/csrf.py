"""Anti-forgery token handling for mutating requests.

The relay API requires an ``X-CSRF-Token`` header on every state-changing
request. The token is fetched lazily before the first mutating request and
refreshed exactly once when the server rejects it.
"""

import asyncio
import logging

import httpx

from ..core.config import Settings, settings as default_settings
from ..utils.errors import CsrfRejectedError

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _rejection_code(response: httpx.Response) -> str | None:
    """Return the anti-forgery error code of a 403 response, or None."""
    if response.status_code != 403:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None

    code = str(body.get("code") or "")
    if code.upper().startswith("CSRF"):
        return code
    if "csrf" in str(body.get("error") or "").lower():
        return code or "CSRF_TOKEN_INVALID"
    return None


class CsrfGuard:
    """Owns the anti-forgery token shared by all requests of one client.

    The token is mutated only by fetch_token(), which runs before the first
    mutating request and once after a rejection.
    """

    def __init__(self, client: httpx.AsyncClient, settings: Settings | None = None):
        """Initialize the guard.

        Args:
            client: HTTP client bound to the relay API (shares its cookie jar)
            settings: Engine settings (default: global settings)
        """
        self.client = client
        self.settings = settings or default_settings
        self._token: str | None = None
        self._fetch_lock = asyncio.Lock()

    @property
    def token(self) -> str | None:
        """The cached anti-forgery token, if one has been fetched."""
        return self._token

    @staticmethod
    def is_mutating(request: httpx.Request) -> bool:
        return request.method.upper() not in SAFE_METHODS

    async def fetch_token(self) -> str | None:
        """Fetch a fresh token from the server and cache it.

        Returns:
            The new token, or None if the server did not provide one
        """
        try:
            response = await self.client.get(self.settings.csrf_token_path)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to fetch CSRF token: {e}")
            return self._token

        token = (data.get("csrfToken") or data.get("token")) if isinstance(data, dict) else None
        if not token:
            logger.warning("CSRF token endpoint returned no token")
            return self._token

        self._token = token
        logger.debug("Fetched CSRF token")
        return token

    async def _ensure_token(self) -> str | None:
        async with self._fetch_lock:
            if self._token is None:
                await self.fetch_token()
            return self._token

    async def attach(self, request: httpx.Request) -> httpx.Request:
        """Attach the anti-forgery header to a mutating request.

        Fetches a token first if none has been cached yet. Safe requests are
        returned untouched.
        """
        if not self.is_mutating(request):
            return request

        token = await self._ensure_token()
        if token:
            request.headers[self.settings.csrf_header_name] = token
        return request

    async def handle_rejection(
        self, request: httpx.Request, response: httpx.Response
    ) -> httpx.Response:
        """Retry a request once if the server rejected its anti-forgery token.

        Returns:
            The original response if it was not a rejection, otherwise the
            response to the single retry

        Raises:
            CsrfRejectedError: If the retry is rejected as well
        """
        if not self.is_mutating(request) or _rejection_code(response) is None:
            return response

        logger.info(f"CSRF token rejected for {request.method} {request.url.path}, refreshing")
        await response.aclose()

        async with self._fetch_lock:
            token = await self.fetch_token()
        if token:
            request.headers[self.settings.csrf_header_name] = token

        retry = await self.client.send(request)
        code = _rejection_code(retry)
        if code is not None:
            logger.error(f"CSRF token rejected twice for {request.method} {request.url.path}")
            raise CsrfRejectedError(code)
        return retry

    async def send(self, request: httpx.Request) -> httpx.Response:
        """Send a request with anti-forgery protection and one-shot retry."""
        await self.attach(request)
        response = await self.client.send(request)
        return await self.handle_rejection(request, response)
