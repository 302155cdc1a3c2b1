"""Stateless REST surface for Home Assistant.

Provides the HTTP client used as fallback when the WebSocket client is
not READY, and as the only path for config-entry CRUD, which the socket
API does not expose. Includes URL fallback (local, then remote) and a
pooled ``httpx.AsyncClient``.
"""

import time
from typing import Any, cast
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from hassbridge.exceptions import AuthError, HAClientError, TransportError
from hassbridge.settings import Settings, get_settings
from hassbridge.tracing import log_metric, trace_ha_call

# Config domains that expose /api/config/<domain>/config/<id>
CONFIG_DOMAINS = frozenset({"automation", "script", "scene"})


class HAClientConfig(BaseModel):
    """Configuration for HA clients."""

    ha_url: str = Field(..., description="Home Assistant URL (primary/local)")
    ha_url_remote: str | None = Field(None, description="Home Assistant remote URL (fallback)")
    ha_token: str = Field(..., description="Home Assistant token")
    timeout: int = Field(default=30, description="Request timeout in seconds")
    url_preference: str = Field(
        default="auto",
        description="Which URL to use: 'auto' (local then remote), 'local', or 'remote'",
    )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HAClientConfig":
        """Build the client config from application settings."""
        settings = settings or get_settings()
        return cls(
            ha_url=settings.ha_url,
            ha_url_remote=settings.ha_url_remote,
            ha_token=settings.ha_token.get_secret_value(),
            timeout=settings.ha_timeout,
            url_preference=settings.ha_url_preference,
        )

    @property
    def ws_url(self) -> str:
        """WebSocket endpoint derived from the primary URL."""
        base = self.ha_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/api/websocket"


class HARestClient:
    """HTTP client for the Home Assistant REST API.

    Handles connection management, URL fallback, and HTTP requests.
    Responses with 404 are returned as ``None``; every other failure
    raises a typed error.
    """

    def __init__(self, config: HAClientConfig | None = None):
        """Initialize the REST client.

        Args:
            config: Optional configuration (uses settings if not provided)
        """
        self.config = config or HAClientConfig.from_settings()
        self._connected = False
        self._active_url: str | None = None  # Which URL is currently working
        self._http_client: httpx.AsyncClient | None = None

    @trace_ha_call("ha.rest.connect")
    async def connect(self) -> None:
        """Verify the REST surface is reachable and the token accepted.

        URL order is determined by url_preference setting.
        """
        errors = []
        for url in self._build_urls_to_try():
            try:
                async with httpx.AsyncClient(timeout=5) as client:
                    response = await client.get(f"{url}/api/", headers=self._headers())
            except httpx.HTTPError as e:
                errors.append(f"{url}: {type(e).__name__}")
                continue

            if response.status_code == 200:
                self._active_url = url
                self._connected = True
                return
            if response.status_code in (401, 403):
                raise AuthError(
                    "Home Assistant rejected the access token",
                    "connect",
                    status_code=response.status_code,
                )
            errors.append(f"{url}: HTTP {response.status_code}")

        raise TransportError(
            f"All connection attempts failed: {'; '.join(errors)}",
            "connect",
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.config.ha_token}",
            "Content-Type": "application/json",
        }

    def _build_urls_to_try(self) -> list[str]:
        """Build ordered list of URLs to try based on url_preference.

        Returns:
            List of URLs in the order they should be attempted.
        """
        pref = self.config.url_preference

        if pref == "remote":
            if self.config.ha_url_remote:
                return [self.config.ha_url_remote]
            # Remote preferred but not configured; fall back to local
            return [self.config.ha_url]

        if pref == "local":
            return [self.config.ha_url]

        # "auto": local first, remote as fallback
        urls = [self.config.ha_url]
        if self.config.ha_url_remote:
            urls.append(self.config.ha_url_remote)
        return urls

    def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create a shared httpx.AsyncClient with connection pooling."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout,
                limits=httpx.Limits(
                    max_keepalive_connections=20,
                    max_connections=100,
                ),
            )
        return self._http_client

    async def close(self) -> None:
        """Close the shared HTTP client and release connections."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        """Make a request to HA, with automatic URL fallback.

        Only transport failures move on to the next URL; an HTTP error
        status from a reachable server is final.

        Args:
            method: HTTP method
            path: API path (without base URL)
            json: JSON body
            params: Query parameters

        Returns:
            Response JSON, ``{}`` for an empty body, or ``None`` on 404
        """
        start_time = time.perf_counter()
        client = self._get_http_client()

        # Build list of URLs to try, prioritising the active URL
        base_urls = self._build_urls_to_try()
        if self._active_url and self._active_url in base_urls:
            urls_to_try = [self._active_url] + [u for u in base_urls if u != self._active_url]
        else:
            urls_to_try = base_urls

        errors = []
        for url in urls_to_try:
            try:
                response = await client.request(
                    method,
                    f"{url}{path}",
                    headers=self._headers(),
                    json=json,
                    params=params,
                )
            except httpx.ConnectError:
                errors.append(f"{url}: Connection failed")
                continue
            except httpx.TimeoutException:
                errors.append(f"{url}: Timeout")
                continue
            except httpx.HTTPError as e:
                errors.append(f"{url}: {type(e).__name__}")
                continue

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_metric(f"ha.request.{method.lower()}.duration_ms", duration_ms)
            self._active_url = url  # Remember working URL

            if response.status_code in (200, 201):
                return response.json() if response.content else {}
            if response.status_code == 404:
                return None
            if response.status_code in (401, 403):
                raise AuthError(
                    "Home Assistant rejected the access token",
                    "request",
                    {"path": path},
                    status_code=response.status_code,
                )
            raise HAClientError(
                f"{method} {path} failed: HTTP {response.status_code} {response.text[:200]}",
                "request",
                {"path": path},
                status_code=response.status_code,
            )

        raise TransportError(
            f"All connection attempts failed: {'; '.join(errors)}",
            "request",
            {"path": path},
        )

    @trace_ha_call("ha.rest.get_version")
    async def get_version(self) -> str:
        """Get Home Assistant version.

        Returns:
            Version string (e.g., "2024.1.0")
        """
        data = await self._request("GET", "/api/config")
        if data:
            return cast("str", data.get("version", "unknown"))
        raise HAClientError("Failed to get HA version", "get_version")

    # ------------------------------------------------------------------
    # State and registry listings
    # ------------------------------------------------------------------

    async def get_states(self) -> list[dict[str, Any]]:
        """List every entity state."""
        states = await self._request("GET", "/api/states")
        return states if isinstance(states, list) else []

    async def get_state(self, entity_id: str) -> dict[str, Any] | None:
        """Get one entity state, or None if HA does not know it."""
        return await self._request("GET", f"/api/states/{quote(entity_id)}")

    async def get_entity_registry(self) -> list[dict[str, Any]] | None:
        """List entity registry entries.

        Returns:
            The entries, or None when the backend does not serve the
            registry over REST (stock HA answers 404)
        """
        result = await self._request("GET", "/api/config/entity_registry")
        if result is None:
            return None
        return result if isinstance(result, list) else []

    async def get_area_registry(self) -> list[dict[str, Any]] | None:
        """List area registry entries, or None when not served over REST."""
        result = await self._request("GET", "/api/config/area_registry/list")
        if result is None:
            return None
        return result if isinstance(result, list) else []

    # ------------------------------------------------------------------
    # Config entries (automation / script / scene)
    # ------------------------------------------------------------------

    @staticmethod
    def _config_path(domain: str, internal_id: str) -> str:
        if domain not in CONFIG_DOMAINS:
            raise HAClientError(f"Domain '{domain}' has no config API", "config")
        return f"/api/config/{domain}/config/{quote(internal_id, safe='')}"

    @trace_ha_call("ha.rest.get_config")
    async def get_config(self, domain: str, internal_id: str) -> dict[str, Any] | None:
        """Read a stored config entry.

        Args:
            domain: automation, script, or scene
            internal_id: Backend config key (not the entity id suffix)

        Returns:
            Config dict or None if not found
        """
        return await self._request("GET", self._config_path(domain, internal_id))

    @trace_ha_call("ha.rest.save_config")
    async def save_config(
        self,
        domain: str,
        internal_id: str,
        config: dict[str, Any],
    ) -> dict[str, Any]:
        """Create or replace a config entry.

        HA treats a POST to an unknown key as a create, so callers must
        resolve ``internal_id`` before using this for an update.
        """
        result = await self._request("POST", self._config_path(domain, internal_id), json=config)
        return result or {}

    @trace_ha_call("ha.rest.delete_config")
    async def delete_config(self, domain: str, internal_id: str) -> bool:
        """Delete a config entry. Returns False if it did not exist."""
        result = await self._request("DELETE", self._config_path(domain, internal_id))
        return result is not None


__all__ = ["CONFIG_DOMAINS", "HAClientConfig", "HARestClient"]
