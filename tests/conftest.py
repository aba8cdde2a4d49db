"""Pytest configuration and fixtures for relay_auth tests."""

from typing import Any

import httpx
import pytest
import pytest_asyncio

from fakes import BASE_URL, FakeClock, FakePlatform, RelayStub
from relay_auth.core.config import Settings
from relay_auth.security.csrf import CsrfGuard
from relay_auth.session.session_manager import SessionManager


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(_env_file=None, base_url=BASE_URL)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relay() -> RelayStub:
    return RelayStub()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest_asyncio.fixture
async def http(relay: RelayStub):
    """HTTP client routed to the relay stub."""
    async with httpx.AsyncClient(
        base_url=BASE_URL, transport=httpx.MockTransport(relay.handler)
    ) as client:
        yield client


@pytest.fixture
def csrf(http: httpx.AsyncClient, settings: Settings) -> CsrfGuard:
    return CsrfGuard(http, settings)


@pytest_asyncio.fixture
async def session_manager(
    http: httpx.AsyncClient, csrf: CsrfGuard, settings: Settings, clock: FakeClock
):
    """Session manager on the virtual clock; background work stopped on teardown."""
    manager = SessionManager(http, csrf, settings, clock)
    yield manager
    await manager.close()


@pytest.fixture
def admin_user() -> dict[str, Any]:
    return {
        "id": 1,
        "username": "admin",
        "role": "admin",
        "permissions": ["config:write", "users:read"],
    }
