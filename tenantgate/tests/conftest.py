from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from tenantgate.apps.api.main import create_app
from tenantgate.core.config import get_settings
from tenantgate.services.container import AuthServices
from tenantgate.tests.utils.auth import FakeClock, memory_services


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    # Keep every test on in-memory stores regardless of the developer's .env.
    monkeypatch.setenv("STORE_BACKEND", "memory")
    monkeypatch.setenv("COUNTER_BACKEND", "memory")
    monkeypatch.setenv("NOTIFY_BACKEND", "memory")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(clock: FakeClock) -> AuthServices:
    return memory_services(clock=clock)


@pytest.fixture
async def client(services: AuthServices) -> AsyncClient:
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
