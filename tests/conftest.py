"""
Pytest configuration and fixtures for Greeter tests.

Provides:
- Async test database with SQLite
- A fake webhook endpoint on httpx.MockTransport
- Wired services and an API test client
- Factory fixtures for creating test data
"""

import json
from collections.abc import AsyncGenerator
from datetime import date
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import StaticPool
from sqlalchemy.ext.asyncio import create_async_engine

from greeter.bootstrap import Services, build_services
from greeter.config import AppConfig, Settings
from greeter.core.database import Database
from greeter.main import app
from greeter.models import User
from greeter.schemas.user import UserCreate

# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
TEST_CONFIG_PATH = str(Path(__file__).parent / "config.test.yml")
WEBHOOK_URL = "http://webhook.test/greetings"


# Override settings for testing
class TestSettings(Settings):
    database_url: str = TEST_DATABASE_URL
    debug: bool = True
    scheduler_enabled: bool = False
    webhook_endpoint: str = WEBHOOK_URL
    config_path: str = TEST_CONFIG_PATH


class FakeWebhook:
    """Records posted greetings and answers with scripted status codes.

    ``statuses`` is consumed one per request; once empty every request gets
    ``default_status``. ``fail_with`` raises a transport error instead.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.fail_with: Exception | None = None

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return httpx.Response(status, json={"ok": status < 400})


@pytest.fixture
def test_settings() -> Settings:
    return TestSettings()


@pytest.fixture
def app_config(test_settings: Settings) -> AppConfig:
    return AppConfig(test_settings)


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[Database, None]:
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )
    db = Database(engine)
    await db.create_all()

    yield db

    await db.close()


@pytest.fixture
def webhook() -> FakeWebhook:
    return FakeWebhook()


@pytest_asyncio.fixture
async def http_client(webhook: FakeWebhook) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(webhook.handler)) as client:
        yield client


@pytest.fixture
def services(app_config: AppConfig, database: Database, http_client: httpx.AsyncClient) -> Services:
    return build_services(app_config, database, http_client)


@pytest_asyncio.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client bound to the test services."""
    from greeter.core.rate_limit import limiter

    app.state.services = services

    # Reset rate limiter storage before each test
    limiter.reset()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    del app.state.services


# ============================================================================
# Factory Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def user_factory(services: Services):
    """Factory for creating test users through the user store."""

    async def _create_user(
        first_name: str = "Ada",
        last_name: str = "Lovelace",
        birthday: date = date(1990, 3, 15),
        location: str = "Asia/Tokyo",
    ) -> User:
        return await services.users.create_user(
            UserCreate(
                first_name=first_name,
                last_name=last_name,
                birthday=birthday,
                location=location,
            )
        )

    return _create_user
