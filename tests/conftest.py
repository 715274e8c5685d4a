"""Test fixtures: fresh in-memory database and event system per test."""

import os
from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force an in-memory database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

from eventflow.config import Settings  # noqa: E402
from eventflow.database import create_engine_from_settings, create_session_factory, create_tables  # noqa: E402
from eventflow.system import EventSystem  # noqa: E402


class FakeReceiver:
    """Stands in for a tenant's webhook endpoint behind httpx.MockTransport."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.error: Exception | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, text="ok" if self.status_code < 400 else "boom")


class FakeEmailSender:
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, to_email, subject, html_body, text_body=""):
        self.sent.append({"to": to_email, "subject": subject, "html": html_body})


class FakeSocket:
    """Minimal WebSocket double for ConnectionManager."""

    def __init__(self, fail: bool = False):
        self.accepted = False
        self.fail = fail
        self.messages: list[str] = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, data: str):
        if self.fail:
            raise RuntimeError("socket closed")
        self.messages.append(data)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        job_poll_interval_ms=20,
        webhook_auto_disable_after=10,
    )


@pytest_asyncio.fixture
async def engine(settings):
    eng = create_engine_from_settings(settings)
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def receiver() -> FakeReceiver:
    return FakeReceiver()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest_asyncio.fixture
async def event_system(settings, session_factory, receiver, email_sender) -> AsyncGenerator[EventSystem, None]:
    system = EventSystem(
        settings=settings,
        session_factory=session_factory,
        email=email_sender,
        transport=httpx.MockTransport(receiver),
    )
    yield system
    await system.shutdown()


@pytest_asyncio.fixture
async def client(event_system) -> AsyncGenerator[AsyncClient, None]:
    from eventflow.main import create_app

    app = create_app(event_system)
    # ASGITransport skips the lifespan; wire handlers without the timer
    await event_system.initialize(start_processing=False)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_socket():
    return FakeSocket
