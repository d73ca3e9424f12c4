"""Shared test fixtures for all test modules."""

import uuid

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from readiness_webhooks.database import create_all_tables
from readiness_webhooks.schemas.webhook import WebhookEndpointCreate
from readiness_webhooks.services.webhook_service import WebhookManager
from readiness_webhooks.services.webhook_store import WebhookStore

# Well-known tenant ids used across all tests
ORG_ID = "00000000-0000-0000-0000-00000000000a"
OTHER_ORG_ID = "00000000-0000-0000-0000-00000000000b"
USER_ID = "00000000-0000-0000-0000-000000000001"
OTHER_USER_ID = "00000000-0000-0000-0000-000000000002"

HOOK_URL = "https://example.com/hook"


class Receiver:
    """Stands in for customer endpoints behind an httpx.MockTransport.

    Records every request and answers with scripted outcomes per URL, in
    order. An outcome is a status code, a (status, body) tuple, or an
    exception to raise. Once a URL's script runs out it answers 200.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._scripts: dict[str, list] = {}
        self._always: dict[str, object] = {}

    def script(self, *outcomes, url: str = HOOK_URL):
        self._scripts.setdefault(url, []).extend(outcomes)

    def always(self, outcome, url: str = HOOK_URL):
        self._always[url] = outcome

    def requests_to(self, url: str = HOOK_URL) -> list[httpx.Request]:
        return [request for request in self.requests if str(request.url) == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        script = self._scripts.get(url)
        if script:
            outcome = script.pop(0)
        else:
            outcome = self._always.get(url, 200)

        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            status, body = outcome
            return httpx.Response(status, text=body)
        return httpx.Response(outcome, text="ok")


class RecordingSleep:
    """Replaces asyncio.sleep in the retry loop; keeps the requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """A fresh SQLite database per test.

    A file database gives every session its own connection, so concurrent
    delivery tasks cannot roll back each other's writes.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}")
    await create_all_tables(bind=engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return WebhookStore(session_factory)


@pytest.fixture
def receiver():
    return Receiver()


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest_asyncio.fixture
async def manager(store, receiver, recorded_sleep):
    """A WebhookManager wired to the test database and mock receiver."""
    manager = WebhookManager(
        store,
        transport=httpx.MockTransport(receiver.handler),
        sleep=recorded_sleep,
    )
    yield manager
    await manager.wait_idle(timeout=5)


@pytest.fixture
def register(manager):
    """Register an endpoint with sensible defaults; keyword args override them."""

    async def _register(
        organization_id: str = ORG_ID,
        user_id: str = USER_ID,
        **overrides,
    ):
        fields = {
            "name": f"hook-{uuid.uuid4().hex[:8]}",
            "url": HOOK_URL,
            "events": ["survey.created"],
        }
        fields.update(overrides)
        return await manager.register_webhook(user_id, organization_id, WebhookEndpointCreate(**fields))

    return _register
