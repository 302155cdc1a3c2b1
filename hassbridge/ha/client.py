"""Composition root for the Home Assistant layer.

Builds one protocol client and one REST client and hands them to the
cache, resolver, coordinator, join engine and trace reader. Callers
construct an :class:`HACore` explicitly and pass it where it is needed.

Usage::

    core = build_core()
    await core.start()
    page = await core.search.search(SearchFilter(domain="light"))
    result = await core.mutations.update_automation("office_lamp", {"alias": "Desk"})
    await core.close()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from hassbridge.exceptions import ConfigurationError, TransportError
from hassbridge.ha.base import HAClientConfig, HARestClient
from hassbridge.ha.identity import IdentityResolver
from hassbridge.ha.mutations import MutationCoordinator
from hassbridge.ha.registry import RegistryCache
from hassbridge.ha.search import RegistryJoinEngine
from hassbridge.ha.traces import TraceReader
from hassbridge.ha.websocket import BackoffPolicy, ConnectionState, HAWebSocketClient
from hassbridge.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class HACore:
    """Every HA-facing component, sharing one connection."""

    ws: HAWebSocketClient
    rest: HARestClient
    cache: RegistryCache
    resolver: IdentityResolver
    mutations: MutationCoordinator
    search: RegistryJoinEngine
    traces: TraceReader

    async def start(self) -> None:
        """Connect the socket; the REST surface still serves if that fails.

        Raises:
            AuthError: The token was rejected.
        """
        try:
            await self.ws.connect()
        except TransportError as e:
            logger.warning("WebSocket unavailable, continuing on REST: %s", e)

    async def close(self) -> None:
        await self.ws.disconnect()
        await self.rest.close()


def build_core(
    settings: Settings | None = None,
    *,
    config: HAClientConfig | None = None,
) -> HACore:
    """Wire the HA components from settings.

    Raises:
        ConfigurationError: No access token is configured.
    """
    settings = settings or get_settings()
    config = config or HAClientConfig.from_settings(settings)
    if not config.ha_token:
        raise ConfigurationError("HA_TOKEN is not set")

    ws = HAWebSocketClient(
        config.ws_url,
        config.ha_token,
        connect_timeout=settings.ws_connect_timeout,
        request_timeout=settings.ws_request_timeout,
        backoff=BackoffPolicy(
            base=settings.ws_backoff_base,
            maximum=settings.ws_backoff_max,
            max_retries=settings.ws_reconnect_max_retries,
        ),
    )
    rest = HARestClient(config)
    cache = RegistryCache(ws, rest, category_scopes=settings.category_scopes)

    def _on_state(state: ConnectionState) -> None:
        # Registry data may have changed while the socket was down
        if state is ConnectionState.READY:
            cache.invalidate()

    ws.add_state_listener(_on_state)

    resolver = IdentityResolver(cache)
    return HACore(
        ws=ws,
        rest=rest,
        cache=cache,
        resolver=resolver,
        mutations=MutationCoordinator(ws, rest, cache, resolver),
        search=RegistryJoinEngine(cache),
        traces=TraceReader(ws, resolver),
    )


__all__ = ["HACore", "build_core"]
