"""Cached snapshots of Home Assistant's registries.

HA keeps entities, devices, areas, labels and categories in separate
registries keyed independently, and the state machine on top. This module
fetches each of them once, keeps an immutable per-kind snapshot, and hands
the snapshots to the identity resolver and the join engine.

The socket is the preferred source. When it is not READY, kinds that the
REST API may list (entities, areas, states) are fetched over HTTP; the
others raise :class:`~hassbridge.exceptions.NotReadyError`, and so does a
REST listing the backend answers with 404 (stock HA serves no entity or
area registry over REST).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from hassbridge.exceptions import CommandError, NotReadyError, TransportError
from hassbridge.ha.base import HARestClient
from hassbridge.ha.records import (
    AreaRecord,
    CategoryRecord,
    DeviceRecord,
    EntityRecord,
    LabelRecord,
    StateRecord,
    parse_record,
)
from hassbridge.ha.websocket import HAWebSocketClient
from hassbridge.tracing import trace_ha_call

logger = logging.getLogger(__name__)

ENTITIES = "entities"
DEVICES = "devices"
AREAS = "areas"
LABELS = "labels"
CATEGORIES = "categories"
STATES = "states"

KINDS = (ENTITIES, DEVICES, AREAS, LABELS, CATEGORIES, STATES)

DEFAULT_CATEGORY_SCOPES = ("automation", "script", "scene", "helpers")

# Socket command listing each registry
_WS_COMMANDS = {
    ENTITIES: "config/entity_registry/list",
    DEVICES: "config/device_registry/list",
    AREAS: "config/area_registry/list",
    LABELS: "config/label_registry/list",
}

# Record tag of the rows each kind lists
_RECORD_KINDS = {
    ENTITIES: "entity",
    DEVICES: "device",
    AREAS: "area",
    LABELS: "label",
    CATEGORIES: "category",
    STATES: "state",
}

Snapshot = Mapping[str, Any]


def _build(kind: str, items: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """Parse raw registry rows, skipping rows HA sent without a key."""
    records: dict[str, Any] = {}
    for item in items:
        try:
            record = parse_record(_RECORD_KINDS[kind], item)
        except PydanticValidationError as e:
            logger.warning("Skipping malformed %s row: %s", kind, e.errors()[:1])
            continue
        records[record.key] = record
    return records


class RegistryCache:
    """Read-shared cache over HA's registries.

    Each kind is fetched lazily, published as a read-only mapping, and
    replaced wholesale on the next fetch. Concurrent loads of one kind
    coalesce behind a per-kind lock.

    Args:
        ws: Protocol client (preferred source).
        rest: Stateless REST client (fallback source).
        category_scopes: Category registry scopes to load.
        ttl_seconds: Snapshot lifetime; ``None`` keeps snapshots until
            :meth:`invalidate`.
    """

    def __init__(
        self,
        ws: HAWebSocketClient,
        rest: HARestClient,
        *,
        category_scopes: Iterable[str] = DEFAULT_CATEGORY_SCOPES,
        ttl_seconds: float | None = None,
    ) -> None:
        self._ws = ws
        self._rest = rest
        self._category_scopes = tuple(category_scopes)
        self._ttl_seconds = ttl_seconds

        self._snapshots: dict[str, Snapshot] = {}
        self._fetched_at: dict[str, float] = {}
        self._generation: dict[str, int] = dict.fromkeys(KINDS, 0)
        self._locks: dict[str, asyncio.Lock] = {kind: asyncio.Lock() for kind in KINDS}

    # ------------------------------------------------------------------
    # Snapshot management
    # ------------------------------------------------------------------

    def _fresh(self, kind: str) -> Snapshot | None:
        snapshot = self._snapshots.get(kind)
        if snapshot is None:
            return None
        if self._ttl_seconds is not None:
            age = time.monotonic() - self._fetched_at.get(kind, 0.0)
            if age >= self._ttl_seconds:
                return None
        return snapshot

    async def _ensure(self, kind: str) -> Snapshot:
        """Return the snapshot for ``kind``, fetching it if needed."""
        snapshot = self._fresh(kind)
        if snapshot is not None:
            return snapshot

        async with self._locks[kind]:
            # Another caller may have finished the fetch while we waited
            snapshot = self._fresh(kind)
            if snapshot is not None:
                return snapshot

            generation = self._generation[kind]
            records = await self._fetch(kind)
            snapshot = MappingProxyType(records)
            # An invalidate() during the fetch means this data may predate a write
            if self._generation[kind] == generation:
                self._snapshots[kind] = snapshot
                self._fetched_at[kind] = time.monotonic()
            return snapshot

    def invalidate(self, *kinds: str) -> None:
        """Drop cached snapshots, forcing a re-fetch on next access.

        Args:
            kinds: Registry kinds to drop; all kinds when omitted.
        """
        for kind in kinds or KINDS:
            if kind not in self._generation:
                raise ValueError(f"Unknown registry kind: {kind}")
            self._generation[kind] += 1
            self._snapshots.pop(kind, None)
            self._fetched_at.pop(kind, None)
        logger.debug("Registry cache invalidated: %s", ", ".join(kinds or KINDS))

    def is_cached(self, kind: str) -> bool:
        return self._fresh(kind) is not None

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    @trace_ha_call("ha.registry.fetch")
    async def _fetch(self, kind: str) -> dict[str, Any]:
        if kind == ENTITIES:
            rows = await self._list(kind, self._rest.get_entity_registry)
        elif kind == AREAS:
            rows = await self._list(kind, self._rest.get_area_registry)
        elif kind in (DEVICES, LABELS):
            rows = await self._list(kind)
        elif kind == CATEGORIES:
            return await self._fetch_categories()
        elif kind == STATES:
            rows = await self._list_states()
        else:
            raise ValueError(f"Unknown registry kind: {kind}")
        return _build(kind, rows)

    async def _list(
        self,
        kind: str,
        rest_fallback: Callable[[], Any] | None = None,
    ) -> list[dict[str, Any]]:
        """List one registry over the socket, or REST when allowed."""
        if self._ws.is_connected():
            try:
                result = await self._ws.send({"type": _WS_COMMANDS[kind]})
                return result if isinstance(result, list) else []
            except TransportError as e:
                if rest_fallback is None:
                    raise
                logger.info("Socket listing of %s failed (%s), using REST", kind, e)

        if rest_fallback is None:
            raise NotReadyError(
                f"The {kind} registry is only available over the WebSocket API",
                "registry",
                {"kind": kind},
            )
        rows = await rest_fallback()
        # Stock HA answers 404: an empty snapshot would read as "no entries"
        if rows is None:
            raise NotReadyError(
                f"The {kind} registry is not served over REST and the WebSocket is down",
                "registry",
                {"kind": kind},
            )
        return rows if isinstance(rows, list) else []

    async def _list_states(self) -> list[dict[str, Any]]:
        if self._ws.is_connected():
            try:
                return await self._ws.get_states()
            except TransportError as e:
                logger.info("Socket state listing failed (%s), using REST", e)
        return await self._rest.get_states()

    async def _fetch_categories(self) -> dict[str, CategoryRecord]:
        if not self._ws.is_connected():
            raise NotReadyError(
                "The category registry is only available over the WebSocket API",
                "registry",
                {"kind": CATEGORIES},
            )
        records: dict[str, CategoryRecord] = {}
        for scope in self._category_scopes:
            try:
                rows = await self._ws.send({"type": "config/category_registry/list", "scope": scope})
            except CommandError as e:
                logger.warning("Could not list categories for scope %s: %s", scope, e)
                continue
            scoped = [{**row, "scope": scope} for row in rows or []]
            records.update(_build(CATEGORIES, scoped))
        return records

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    async def entities(self) -> Mapping[str, EntityRecord]:
        """Entity registry keyed by entity id."""
        return await self._ensure(ENTITIES)

    async def devices(self) -> Mapping[str, DeviceRecord]:
        """Device registry keyed by device id."""
        return await self._ensure(DEVICES)

    async def areas(self) -> Mapping[str, AreaRecord]:
        """Area registry keyed by area id."""
        return await self._ensure(AREAS)

    async def labels(self) -> Mapping[str, LabelRecord]:
        """Label registry keyed by label id."""
        return await self._ensure(LABELS)

    async def categories(self) -> Mapping[str, CategoryRecord]:
        """Category registry keyed by ``<scope>:<category_id>``."""
        return await self._ensure(CATEGORIES)

    async def states(self) -> Mapping[str, StateRecord]:
        """Entity states keyed by entity id."""
        return await self._ensure(STATES)

    async def get_entity(self, entity_id: str) -> EntityRecord | None:
        return (await self.entities()).get(entity_id)

    async def get_state(self, entity_id: str) -> StateRecord | None:
        return (await self.states()).get(entity_id)


__all__ = [
    "AREAS",
    "CATEGORIES",
    "DEFAULT_CATEGORY_SCOPES",
    "DEVICES",
    "ENTITIES",
    "KINDS",
    "LABELS",
    "STATES",
    "RegistryCache",
]
