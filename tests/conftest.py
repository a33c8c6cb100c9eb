import os
from datetime import datetime, timedelta, timezone

# settings are read at import time; point them at test values first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["INTEGRATION_SECRET_KEY"] = "test-integration-secret-key-0123456789abcdef"
os.environ["OUTBOX_CRON_SECRET"] = "test-cron-secret"
os.environ["OUTBOX_RUNNER_ENABLED"] = "false"
os.environ["TELEMETRY_ENABLED"] = "false"
os.environ["ENABLE_BUFFER_INTEGRATION"] = "true"
os.environ["ENABLE_GBP_INTEGRATION"] = "true"
os.environ["BUFFER_CLIENT_ID"] = "buffer-client"
os.environ["BUFFER_CLIENT_SECRET"] = "buffer-secret"
os.environ["BUFFER_REDIRECT_URI"] = "http://test/v1/integrations/buffer/oauth/callback"

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import relay.models  # noqa: F401
from relay.core.config import Settings
from relay.core.crypto import SecretVault
from relay.core.signing import StateSigner
from relay.models.base import Base
from relay.providers.http import ProviderHttpClient

TEST_SECRET = os.environ["INTEGRATION_SECRET_KEY"]
OWNER = "usr_1"
BRAND = "brand_1"


class FrozenClock:
    def __init__(self, now: datetime):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingTransport:
    """httpx.MockTransport handler that keeps every request it answered."""

    def __init__(self, responder=None):
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responder is None:
            raise AssertionError(f"unexpected HTTP call: {request.method} {request.url}")
        return self._responder(request)


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def vault():
    return SecretVault(TEST_SECRET)


@pytest.fixture
def signer():
    return StateSigner(TEST_SECRET)


@pytest.fixture
def test_settings():
    return Settings(
        integration_secret_key=TEST_SECRET,
        enable_buffer_integration=True,
        enable_twilio_integration=True,
        enable_gbp_integration=True,
        enable_email_integration=True,
        twilio_account_sid="AC123",
        twilio_auth_token="twilio-token",
        twilio_from_number="+15550001111",
        google_client_id="google-client",
        google_client_secret="google-secret",
        google_redirect_uri="http://test/v1/integrations/google/oauth/callback",
        sendgrid_api_key="sg-key",
        digest_from_email="digest@relay.test",
    )


@pytest.fixture
async def make_http():
    clients: list[ProviderHttpClient] = []

    def _make(responder=None) -> tuple[ProviderHttpClient, RecordingTransport]:
        recorder = RecordingTransport(responder)
        client = ProviderHttpClient(timeout_seconds=5, transport=httpx.MockTransport(recorder))
        clients.append(client)
        return client, recorder

    yield _make
    for client in clients:
        await client.aclose()


@pytest.fixture
async def async_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
