# chatgate/conftest.py
import os
import sys
from pathlib import Path

# Test configuration must be in place before chatgate.core.config is imported
os.environ.setdefault("ENV", "test")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite://")
os.environ.setdefault("ALLOW_HEADER_AUTH", "true")
os.environ.setdefault("AUTH_JWT_SECRET", "test-secret")

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """Fresh schema for every test (SQLite in memory)."""
    from chatgate.core.database import reset_database

    reset_database()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    from chatgate.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture
def app_client():
    """TestClient whose dispatcher is replaced by scripted backends.

    Yields (client, backends) where backends maps name -> ScriptedBackend.
    """
    from fastapi.testclient import TestClient
    from chatgate.main import app
    from chatgate.features.ai.backends import ModelDispatcher
    from chatgate.tests.fakes import ScriptedBackend

    original = app.state.dispatcher
    backends = {
        "hosted": ScriptedBackend("hosted", ["Hi! How can I help?"]),
        "self-hosted": ScriptedBackend("self-hosted", ["Hello from the local model."]),
    }
    app.state.dispatcher = ModelDispatcher(backends)
    try:
        yield TestClient(app, raise_server_exceptions=False), backends
    finally:
        app.state.dispatcher = original
