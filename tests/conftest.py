# tests/conftest.py
import os
import tempfile

# Settings are read at import time, so the environment is prepared before robot_api loads
_TMP = tempfile.mkdtemp(prefix="robot-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/robot.db"
os.environ["STORAGE_DIR"] = os.path.join(_TMP, "storage")
os.environ["SSRF_RESOLVE_DNS"] = "false"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["WEBHOOK_SECRET"] = "server-webhook-secret-0123"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ.pop("REDIS_URL", None)

import asyncio
from typing import Any, Dict, List, Optional

import pytest
import requests

from robot_api import config
from robot_api.db import Base, SessionLocal, engine
from robot_api.services import ledger
from robot_api.services.cache import cache
from robot_api.services.collaborators import (Collaborators, ExtractResult, RenderResult,
                                              get_collaborators)

BASE_URL = os.getenv("BASE_URL") or os.getenv("APP_BASE_URL")

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


class BaseUrlSession(requests.Session):
    def __init__(self, base_url: str):
        super().__init__()
        self._base = base_url.rstrip("/")

    def request(self, method, url, *args, **kwargs):
        # Allow relative paths like "/v1/health"
        if not url.lower().startswith("http"):
            url = f"{self._base}/{url.lstrip('/')}"
        return super().request(method, url, *args, **kwargs)


class FakeRenderer:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.content = "<h1>Widget</h1> Price: $10"
        self.blocked = False
        self.error: Optional[Exception] = None
        self.delay = 0.0

    async def render(self, url, options):
        self.calls.append({"url": url, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return RenderResult(content=self.content, title="Widget", blocked=self.blocked)


class FakeExtractor:
    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.data: Any = {"title": "Widget", "price": "$10"}
        self.error: Optional[Exception] = None

    async def extract(self, content, fields, schema, instructions):
        self.calls.append({"content": content, "fields": fields, "schema": schema, "instructions": instructions})
        if self.error is not None:
            raise self.error
        return ExtractResult(data=self.data, usage={"input_tokens": 30, "output_tokens": 12})


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch, tmp_path):
    """Empty database, object store and counters for every test"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    monkeypatch.setattr(config, "STORAGE_DIR", str(tmp_path / "storage"))
    cache.clear()
    yield
    cache.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fakes():
    return Collaborators(renderer=FakeRenderer(), extractor=FakeExtractor())


@pytest.fixture(scope="session")
def app():
    from robot_api.main import app as application
    return application


@pytest.fixture(scope="session")
def session_client(app):
    """
    Detect test environment:
    - Unit test mode: TestClient against the in-process app
    - E2E mode (BASE_URL set): BaseUrlSession against a running server
    """
    if BASE_URL:
        yield BaseUrlSession(BASE_URL)
        return
    from fastapi.testclient import TestClient
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def client(app, session_client, fakes):
    app.dependency_overrides[get_collaborators] = lambda: fakes
    yield session_client
    app.dependency_overrides.clear()


@pytest.fixture
def api_key(db):
    """(key id, plaintext) of a free-tier key with 50 credits"""
    key, plaintext = ledger.create_key(db, "user-1", "free", 50)
    return key.id, plaintext


@pytest.fixture
def api_headers(api_key):
    return {"x-api-key": api_key[1]}


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)
