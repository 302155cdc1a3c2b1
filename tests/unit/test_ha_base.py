"""Unit tests for hassbridge/ha/base.py (HARestClient, config, URL handling)."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from hassbridge.exceptions import AuthError, HAClientError, TransportError
from hassbridge.ha.base import HAClientConfig, HARestClient


def _client(handler, **config_kwargs) -> HARestClient:
    """REST client whose HTTP layer is served by ``handler``."""
    config_kwargs.setdefault("ha_url", "http://local:8123")
    config_kwargs.setdefault("ha_token", "tok")
    client = HARestClient(config=HAClientConfig(**config_kwargs))
    client._http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


class TestHAClientConfig:
    def test_required_fields(self):
        cfg = HAClientConfig(ha_url="http://ha.local:8123", ha_token="tok")
        assert cfg.ha_url == "http://ha.local:8123"
        assert cfg.ha_token == "tok"
        assert cfg.timeout == 30
        assert cfg.url_preference == "auto"

    def test_ws_url_from_http(self):
        cfg = HAClientConfig(ha_url="http://ha.local:8123/", ha_token="tok")
        assert cfg.ws_url == "ws://ha.local:8123/api/websocket"

    def test_ws_url_from_https(self):
        cfg = HAClientConfig(ha_url="https://ha.example.com", ha_token="tok")
        assert cfg.ws_url == "wss://ha.example.com/api/websocket"

    def test_from_settings(self, test_settings):
        cfg = HAClientConfig.from_settings(test_settings)
        assert cfg.ha_url == "http://localhost:8123"
        assert cfg.ha_token == "test-token"

    def test_init_without_config_uses_settings(self):
        mock_settings = MagicMock()
        mock_settings.ha_url = "http://ha.local:8123"
        mock_settings.ha_url_remote = None
        mock_settings.ha_token.get_secret_value.return_value = "test-token"
        mock_settings.ha_timeout = 10
        mock_settings.ha_url_preference = "auto"

        with patch("hassbridge.ha.base.get_settings", return_value=mock_settings):
            client = HARestClient()

        assert client.config.ha_url == "http://ha.local:8123"
        assert client.config.timeout == 10


class TestBuildUrlsToTry:
    def _client_with_pref(self, pref, remote=None):
        cfg = HAClientConfig(
            ha_url="http://local:8123",
            ha_url_remote=remote,
            ha_token="tok",
            url_preference=pref,
        )
        return HARestClient(config=cfg)

    def test_auto_local_only(self):
        assert self._client_with_pref("auto")._build_urls_to_try() == ["http://local:8123"]

    def test_auto_with_remote(self):
        client = self._client_with_pref("auto", remote="https://remote:8123")
        assert client._build_urls_to_try() == ["http://local:8123", "https://remote:8123"]

    def test_local_preference(self):
        client = self._client_with_pref("local", remote="https://remote:8123")
        assert client._build_urls_to_try() == ["http://local:8123"]

    def test_remote_preference(self):
        client = self._client_with_pref("remote", remote="https://remote:8123")
        assert client._build_urls_to_try() == ["https://remote:8123"]

    def test_remote_preference_without_remote_falls_back(self):
        assert self._client_with_pref("remote")._build_urls_to_try() == ["http://local:8123"]


class TestRequest:
    @pytest.mark.asyncio
    async def test_sends_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            return httpx.Response(200, json=[])

        client = _client(handler)
        assert await client.get_states() == []
        assert seen["auth"] == "Bearer tok"
        await client.close()

    @pytest.mark.asyncio
    async def test_404_is_none(self):
        client = _client(lambda request: httpx.Response(404, text="Not found"))

        assert await client.get_config("automation", "missing") is None
        assert await client.delete_config("automation", "missing") is False

    @pytest.mark.asyncio
    async def test_registry_listing_not_served_is_none(self):
        """Stock HA has no REST entity or area registry; that is not an empty one."""
        client = _client(lambda request: httpx.Response(404, text="404: Not Found"))

        assert await client.get_entity_registry() is None
        assert await client.get_area_registry() is None

    @pytest.mark.asyncio
    async def test_registry_listing_served(self):
        client = _client(lambda request: httpx.Response(200, json=[{"entity_id": "light.a"}]))

        assert await client.get_entity_registry() == [{"entity_id": "light.a"}]

    @pytest.mark.asyncio
    async def test_401_raises_auth_error(self):
        client = _client(lambda request: httpx.Response(401))

        with pytest.raises(AuthError) as exc_info:
            await client.get_states()
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_server_error_is_final(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(500, text="boom")

        client = _client(handler, ha_url_remote="http://remote:8123")

        with pytest.raises(HAClientError) as exc_info:
            await client.get_config("automation", "1")
        assert exc_info.value.status_code == 500
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_remote_on_connect_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "local":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"version": "2025.1.0"})

        client = _client(handler, ha_url_remote="http://remote:8123")

        assert await client.get_version() == "2025.1.0"
        assert client._active_url == "http://remote:8123"

    @pytest.mark.asyncio
    async def test_all_urls_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = _client(handler)

        with pytest.raises(TransportError, match="All connection attempts failed"):
            await client.get_states()


class TestConfigEntries:
    @pytest.mark.asyncio
    async def test_save_posts_to_internal_id(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"result": "ok"})

        client = _client(handler)
        result = await client.save_config("automation", "1700000000000", {"alias": "A"})

        assert result == {"result": "ok"}
        assert seen == {
            "method": "POST",
            "path": "/api/config/automation/config/1700000000000",
            "body": {"alias": "A"},
        }

    @pytest.mark.asyncio
    async def test_unknown_domain_rejected(self):
        client = _client(lambda request: httpx.Response(200, json={}))

        with pytest.raises(HAClientError, match="no config API"):
            await client.get_config("light", "x")

    @pytest.mark.asyncio
    async def test_delete_existing(self):
        client = _client(lambda request: httpx.Response(200, json={"result": "ok"}))

        assert await client.delete_config("automation", "1") is True
