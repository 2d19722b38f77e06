"""Tests for web routes and API endpoints.

Tests the FastAPI application routes using httpx AsyncClient with a
no-op lifespan, covering the landing page, status, watcher control,
recent mail, auth and the 503 path when startup failed.
"""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from conftest import FakeClassifier, FakeMailbox, make_record
from mailfilter.config_schema import AppConfig
from mailfilter.db import StateStore
from mailfilter.engine.watcher import EmailWatcher
from mailfilter.web.app import create_app

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@asynccontextmanager
async def _noop_lifespan(app: FastAPI):
    """No-op lifespan that preserves existing app.state."""
    yield


@pytest.fixture
def web_mailbox(mailbox: FakeMailbox) -> FakeMailbox:
    mailbox.account_email = AsyncMock(return_value="me@example.com")
    return mailbox


@pytest.fixture
async def watcher(
    web_mailbox: FakeMailbox,
    classifier: FakeClassifier,
    store: StateStore,
    sample_config: AppConfig,
):
    w = EmailWatcher(
        web_mailbox,
        classifier,
        store,
        labels=sample_config.labels,
        settings=sample_config.watcher.model_copy(update={"poll_interval_ms": 3_600_000}),
    )
    yield w
    await w.stop()


@pytest.fixture
def auth() -> MagicMock:
    return MagicMock()


@pytest.fixture
def app(
    sample_config: AppConfig,
    watcher: EmailWatcher,
    web_mailbox: FakeMailbox,
    auth: MagicMock,
    store: StateStore,
) -> FastAPI:
    """Create a FastAPI app with test dependencies."""
    test_app = create_app()
    test_app.router.lifespan_context = _noop_lifespan

    classifier = MagicMock()
    classifier.is_ready.return_value = True

    test_app.state.startup_error = None
    test_app.state.config = sample_config
    test_app.state.auth = auth
    test_app.state.mailbox = web_mailbox
    test_app.state.classifier = classifier
    test_app.state.store = store
    test_app.state.watcher = watcher
    return test_app


@pytest.fixture
async def client(app: FastAPI) -> AsyncClient:
    """Return an httpx AsyncClient for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestPages:
    async def test_landing_page(self, client: AsyncClient):
        response = await client.get("/")

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "AI-Important" in response.text
        assert "signed in" in response.text

    async def test_health(self, client: AsyncClient):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestStatus:
    async def test_status(self, client: AsyncClient):
        response = await client.get("/api/status")

        data = response.json()
        assert response.status_code == 200
        assert data["auth"] == {"authenticated": True, "email": "me@example.com"}
        assert data["classifier"]["ready"] is True
        assert data["watcher"]["isRunning"] is False
        assert data["watcher"]["processedCount"] == 0
        assert data["watcher"]["totalProcessed"] == 0
        assert "last_run" not in data["watcher"]
        assert data["labels"]["junk"] == "AI-Junk"

    async def test_auth_status_signed_out(self, client: AsyncClient, web_mailbox: FakeMailbox):
        web_mailbox.is_authenticated = False

        response = await client.get("/auth/status")

        assert response.json() == {"authenticated": False}


class TestWatcherControl:
    """start / stop / poll over HTTP."""

    async def test_start_and_stop(self, client: AsyncClient, watcher: EmailWatcher):
        response = await client.post("/api/watcher/start")
        assert response.json() == {"success": True, "message": "Watcher started"}
        assert watcher.is_running

        response = await client.post("/api/watcher/start")
        assert response.json()["message"] == "Watcher already running"

        response = await client.post("/api/watcher/stop")
        assert response.json()["message"] == "Watcher stopped"

        response = await client.post("/api/watcher/stop")
        assert response.json()["message"] == "Watcher was not running"

    async def test_start_unauthenticated(self, client: AsyncClient, web_mailbox: FakeMailbox):
        web_mailbox.is_authenticated = False

        response = await client.post("/api/watcher/start")

        assert response.status_code == 500
        assert "mailfilter login" in response.json()["detail"]

    async def test_poll_once(self, client: AsyncClient, web_mailbox: FakeMailbox):
        web_mailbox.seed(make_record("a"))

        response = await client.get("/api/watcher/poll")

        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Poll completed"
        assert data["result"]["classified"] == 1
        assert data["result"]["cycleId"]
        assert data["stats"]["processed"] == 1
        assert data["stats"]["lastRun"] is not None

    async def test_poll_while_running(self, client: AsyncClient):
        await client.post("/api/watcher/start")

        response = await client.get("/api/watcher/poll")

        assert response.json()["message"] == "Watcher already running"


class TestRecentEmails:
    async def test_recent(self, client: AsyncClient, web_mailbox: FakeMailbox):
        web_mailbox.seed(make_record("a"), make_record("b"))

        response = await client.get("/api/emails/recent", params={"count": 5})

        data = response.json()
        assert data["count"] == 2
        assert data["messages"][0]["id"] == "b"
        assert data["messages"][0]["labels"] == ["INBOX"]

    async def test_count_capped(self, client: AsyncClient, web_mailbox: FakeMailbox):
        await client.get("/api/emails/recent", params={"count": 500})
        assert ("fetch_recent_inbox", 50) in web_mailbox.calls

    async def test_count_must_be_positive(self, client: AsyncClient):
        response = await client.get("/api/emails/recent", params={"count": 0})
        assert response.status_code == 422

    async def test_unauthenticated(self, client: AsyncClient, web_mailbox: FakeMailbox):
        web_mailbox.is_authenticated = False
        response = await client.get("/api/emails/recent")
        assert response.status_code == 401


class TestAuth:
    async def test_logout_resets_watcher(
        self,
        client: AsyncClient,
        auth: MagicMock,
        watcher: EmailWatcher,
        web_mailbox: FakeMailbox,
        store: StateStore,
    ):
        web_mailbox.seed(make_record("a"))
        await client.post("/api/watcher/start")

        response = await client.post("/auth/logout")

        assert response.json()["success"] is True
        auth.logout.assert_called_once()
        assert not watcher.is_running
        assert watcher.ledger.size() == 0
        assert (await store.load()).ids == []


class TestStartupFailure:
    async def test_routes_answer_503(self, app: FastAPI, client: AsyncClient):
        for name in ("config", "auth", "mailbox", "classifier", "store", "watcher"):
            setattr(app.state, name, None)
        app.state.startup_error = "Configuration file not found"

        response = await client.get("/api/status")

        assert response.status_code == 503
        assert "Configuration file not found" in response.json()["detail"]

    async def test_health_still_answers(self, app: FastAPI, client: AsyncClient):
        app.state.watcher = None
        response = await client.get("/api/health")
        assert response.status_code == 200
