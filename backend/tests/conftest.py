"""
Pytest configuration and shared test helpers for backend tests.

Services run against mongomock-motor, an in-memory Motor-compatible database.
Generation goes through FakeProvider so no LLM is called.
"""
import asyncio
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from auth import issue_token
from assignsavvy.models.tools import GenerationResult, DetectionResult, DetectionIssue
from assignsavvy.services.container import build_services
from assignsavvy.services.plan_registry import count_words
from assignsavvy.services.providers import GenerationProvider


class FakeProvider(GenerationProvider):
    """Deterministic provider.

    words: fixed output length (default: constraints["target_words"]).
    error: exception raised from every call.
    delay: seconds to sleep before answering.
    """

    def __init__(self, words=None, content=None, error=None, delay=0, originality_score=92.0):
        self.words = words
        self.content = content
        self.error = error
        self.delay = delay
        self.originality_score = originality_score
        self.calls = []

    async def generate(self, prompt, constraints):
        self.calls.append(("generate", prompt, constraints))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        content = self.content
        if content is None:
            words = self.words if self.words is not None else constraints.get("target_words", 100)
            content = " ".join(["word"] * words)
        return GenerationResult(content=content, word_count=count_words(content))

    async def detect(self, text):
        self.calls.append(("detect", text, None))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return DetectionResult(
            originality_score=self.originality_score,
            issues=[DetectionIssue(excerpt=text[:20], reason="Generic phrasing", severity="low")],
        )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["assignsavvy_test"]


@pytest.fixture
def provider():
    return FakeProvider()


@pytest_asyncio.fixture
async def services(db, provider):
    bundle = build_services(db, provider=provider, timeout=2)
    await bundle.ensure_indexes()
    return bundle


@pytest.fixture
def make_account(db, services):
    """Open an account, then overwrite fields (plan_type, credits...) for the scenario."""

    async def _make(user_id="user-1", **fields):
        await services.ledger.open_account(user_id, email=f"{user_id}@example.com")
        if fields:
            await db.users.update_one({"user_id": user_id}, {"$set": fields})
        return await services.ledger.get_account(user_id)

    return _make


@pytest.fixture
def client(services):
    """TestClient for server:app with the in-memory services installed."""
    from server import app
    app.state.services = services
    return TestClient(app)


@pytest_asyncio.fixture
async def api(services):
    """Async client for tests that also set up state with await."""
    from server import app
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


def auth_header(user_id="user-1", **claims):
    token = issue_token(user_id, **claims)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return auth_header
