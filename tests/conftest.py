"""Shared test fixtures for hassbridge.

Provides test settings and a fake Home Assistant wired into the real
cache, resolver, coordinator and join engine.
"""

from __future__ import annotations

import pytest
from pydantic import SecretStr

from hassbridge.ha.identity import IdentityResolver
from hassbridge.ha.mutations import MutationCoordinator
from hassbridge.ha.registry import RegistryCache
from hassbridge.ha.search import RegistryJoinEngine
from hassbridge.ha.traces import TraceReader
from hassbridge.settings import Settings
from tests.fakes import FakeHA, Wired

# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="testing",
        debug=True,
        ha_url="http://localhost:8123",
        ha_token=SecretStr("test-token"),
        mlflow_tracking_uri=None,
        ws_connect_timeout=1.0,
        ws_request_timeout=1.0,
        ws_backoff_base=0.0,
        ws_reconnect_max_retries=2,
    )


@pytest.fixture(autouse=True)
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Point get_settings() lookups at the test settings (keeps MLflow off)."""
    from hassbridge import settings, tracing

    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    monkeypatch.setattr(tracing, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# FAKE HOME ASSISTANT
# =============================================================================


@pytest.fixture
def fake_ha() -> FakeHA:
    return FakeHA()


@pytest.fixture
def wired(fake_ha: FakeHA) -> Wired:
    """Real components on top of the fake backend."""
    cache = RegistryCache(fake_ha.ws, fake_ha.rest, category_scopes=["automation"])  # type: ignore[arg-type]
    resolver = IdentityResolver(cache)
    return Wired(
        ha=fake_ha,
        cache=cache,
        resolver=resolver,
        mutations=MutationCoordinator(fake_ha.ws, fake_ha.rest, cache, resolver),  # type: ignore[arg-type]
        search=RegistryJoinEngine(cache),
        traces=TraceReader(fake_ha.ws, resolver),  # type: ignore[arg-type]
    )
