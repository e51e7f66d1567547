# iching/conftest.py
import os

import pytest

# Settings are read at import time; pin test mode before any iching import
os.environ.setdefault("ENV", "test")

from iching.features.storage.kv import InMemoryKeyValueStore
from iching.tests.mocks import FakeGateway


@pytest.fixture(scope="function", autouse=True)
def ledger_db():
    """
    Fresh in-memory ledger for every test.

    Uses TEST_DATABASE_URL when set (e.g. a disposable Postgres), otherwise a
    shared-connection SQLite database that lives for the duration of the test.
    """
    from iching.core.database import init_engine, create_all_tables, drop_all_tables, dispose_engine

    init_engine(os.getenv("TEST_DATABASE_URL") or "sqlite://")
    create_all_tables()
    yield
    drop_all_tables()
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    from iching.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    """TestClient over a fresh app wired to the fake gateway."""
    from fastapi.testclient import TestClient
    from iching.main import create_app

    return TestClient(create_app(gateway=gateway), raise_server_exceptions=False)
