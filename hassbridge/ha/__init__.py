"""Home Assistant client layer.

Persistent WebSocket client, REST fallback, registry cache, identity
resolution, verified mutations, registry search and automation traces.
"""

from hassbridge.ha.base import HAClientConfig, HARestClient
from hassbridge.ha.client import HACore, build_core
from hassbridge.ha.identity import IdentityResolver, ResolvedIdentity
from hassbridge.ha.mutations import MutationCoordinator, MutationResult, Step
from hassbridge.ha.registry import RegistryCache
from hassbridge.ha.search import EntityView, Page, RegistryJoinEngine, SearchFilter
from hassbridge.ha.traces import TraceReader, TraceSummary
from hassbridge.ha.websocket import (
    BackoffPolicy,
    ConnectionState,
    HAWebSocketClient,
    Subscription,
)

__all__ = [
    "BackoffPolicy",
    "ConnectionState",
    "EntityView",
    "HAClientConfig",
    "HACore",
    "HARestClient",
    "HAWebSocketClient",
    "IdentityResolver",
    "MutationCoordinator",
    "MutationResult",
    "Page",
    "RegistryCache",
    "RegistryJoinEngine",
    "ResolvedIdentity",
    "SearchFilter",
    "Step",
    "Subscription",
    "TraceReader",
    "TraceSummary",
    "build_core",
]
