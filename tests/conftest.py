from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fakes import FakeModelConnector, FakeTelephonyProvider  # noqa: E402

FROM_NUMBER = "+15550000001"


@pytest.fixture(scope="session")
def app():
    # Settings are cached on first import; pin them before main is loaded.
    os.environ["TWILIO_FROM_NUMBER"] = FROM_NUMBER
    os.environ["PUBLIC_BASE_URL"] = "https://bridge.example.com/"
    os.environ.pop("OPENAI_API_KEY", None)

    import importlib

    from config.settings import get_settings

    get_settings.cache_clear()
    main = importlib.import_module("main")
    return main.app


@pytest.fixture()
def store():
    from calls.store import CallStore

    return CallStore()


@pytest.fixture()
def provider() -> FakeTelephonyProvider:
    return FakeTelephonyProvider()


@pytest.fixture()
def model_connector() -> FakeModelConnector:
    return FakeModelConnector()


@pytest.fixture()
def controller(store, provider):
    from calls.controller import CallController

    return CallController(store, provider, default_from=FROM_NUMBER, default_timeout_seconds=60)


@pytest.fixture()
def manager(store, model_connector):
    from bridge.functions import build_default_registry
    from bridge.manager import SessionManager

    return SessionManager(store, build_default_registry(), model_connector)


@pytest.fixture()
def client(app, store, controller, manager):
    # Never reach Twilio or the realtime model from tests.
    import api.dependencies as deps

    app.dependency_overrides[deps.get_call_store] = lambda: store
    app.dependency_overrides[deps.get_call_controller] = lambda: controller
    app.dependency_overrides[deps.get_session_manager] = lambda: manager

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
