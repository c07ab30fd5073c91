"""Pytest configuration and fixtures for the routines backend tests."""

import os
import time

# occurrence arithmetic runs on local wall-clock time; pin it before any import computes one
os.environ["TZ"] = "UTC"
time.tzset()

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from taskwatch import models  # noqa: F401  registers tables
from taskwatch.cache.advisory_lock import StateStoreAdvisoryLock
from taskwatch.cache.state_store import InMemoryStateStore
from taskwatch.config import Settings, get_settings
from taskwatch.db.config import get_engine
from taskwatch.dependencies import get_state_store
from taskwatch.events.publisher import RoutineEventPublisher
from taskwatch.main import app
from taskwatch.services.exception_store import ExceptionStore
from taskwatch.services.guide_service import GuideService
from taskwatch.services.history_store import HistoryStore
from taskwatch.services.repeating_session_service import RepeatingSessionService
from taskwatch.services.rule_store import RuleStore
from taskwatch.utils.metrics import metrics_collector

USER_ID = "user-1"


@pytest.fixture(autouse=True)
def reset_metrics():
    """Counters are process-global; start every test from zero."""
    metrics_collector.reset()
    yield


@pytest.fixture
def engine():
    """Fresh in-memory database with every table created."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(test_engine)
    try:
        yield test_engine
    finally:
        SQLModel.metadata.drop_all(test_engine)
        test_engine.dispose()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def publisher(settings):
    return RoutineEventPublisher(settings)


@pytest.fixture
def rule_store(state_store, engine, publisher):
    return RuleStore(state_store, engine, publisher)


@pytest.fixture
def offline_rule_store(state_store, publisher):
    """Rule store sharing the cache but without a database."""
    return RuleStore(state_store, None, publisher)


@pytest.fixture
def history_store(engine):
    return HistoryStore(engine)


@pytest.fixture
def exception_store(state_store, engine, publisher, settings):
    return ExceptionStore(state_store, engine, publisher, settings)


@pytest.fixture
def lock(state_store):
    return StateStoreAdvisoryLock(state_store)


@pytest.fixture
def service(rule_store, history_store, exception_store, lock, settings):
    return RepeatingSessionService(rule_store, history_store, exception_store, lock, settings)


@pytest.fixture
def guide_service(rule_store, history_store, exception_store):
    return GuideService(rule_store, history_store, exception_store)


@pytest.fixture
def client(engine):
    """API client bound to the in-memory database and a fresh cache."""
    cache = InMemoryStateStore()
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_state_store] = lambda: cache
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def make_token(user_id: str) -> str:
    payload = {"sub": user_id, "email": f"{user_id}@example.com"}
    return jwt.encode(payload, get_settings().auth_secret, algorithm="HS256")


@pytest.fixture
def headers_for():
    """Bearer headers for an arbitrary user id."""
    def build(user_id: str) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return build


@pytest.fixture
def auth_headers(headers_for):
    return headers_for(USER_ID)
