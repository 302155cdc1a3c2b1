"""Denormalized entity search across HA's registries.

HA stores entities, devices, areas, labels and categories in separate
registries. The join engine stitches them into one view per entity:

- entity -> device by ``device_id``
- area from the entity, else from its device
- labels from the entity and its device
- display names for area, labels and categories

then filters, sorts by entity id and slices a page.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, computed_field

from hassbridge.exceptions import HAClientError, NotFoundError
from hassbridge.ha.records import (
    AreaRecord,
    CategoryRecord,
    DeviceRecord,
    EntityRecord,
    LabelRecord,
    StateRecord,
)
from hassbridge.ha.registry import AREAS, CATEGORIES, DEVICES, ENTITIES, LABELS, STATES, RegistryCache
from hassbridge.tracing import log_metric, trace_ha_call

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50


class SearchFilter(BaseModel):
    """Criteria for :meth:`RegistryJoinEngine.search`; unset fields match everything."""

    domain: str | None = None
    device_class: str | None = None
    area: str | None = Field(default=None, description="Area id or name")
    state: str | None = None
    labels: list[str] = Field(default_factory=list, description="Label ids or names")
    match_all: bool = Field(default=False, description="Require every label (ALL) vs any (ANY)")
    include_unlabeled: bool = Field(default=False, description="Also admit entities with no labels")
    query: str | None = Field(default=None, description="Substring of entity id or name")
    category: str | None = Field(default=None, description="Category id or name")


class EntityView(BaseModel):
    """One entity joined with its device, area, labels and categories."""

    entity_id: str
    domain: str
    name: str | None = None
    state: str | None = None
    device_class: str | None = None
    platform: str | None = None
    unique_id: str | None = None
    device_id: str | None = None
    device_name: str | None = None
    area_id: str | None = None
    area_name: str | None = None
    labels: list[str] = Field(default_factory=list)
    label_names: list[str] = Field(default_factory=list)
    categories: dict[str, str] = Field(default_factory=dict)
    category_names: dict[str, str] = Field(default_factory=dict)


class Page(BaseModel):
    """One slice of a filtered, ordered result set."""

    items: list[EntityView]
    total_found: int
    offset: int
    limit: int
    unavailable: list[str] = Field(
        default_factory=list,
        description="Registry kinds that could not be fetched for this search",
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total_found

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class _Registries:
    """One consistent set of snapshots for a single search."""

    def __init__(self) -> None:
        self.entities: Mapping[str, EntityRecord] = {}
        self.states: Mapping[str, StateRecord] = {}
        self.devices: Mapping[str, DeviceRecord] = {}
        self.areas: Mapping[str, AreaRecord] = {}
        self.labels: Mapping[str, LabelRecord] = {}
        self.categories: Mapping[str, CategoryRecord] = {}
        self.unavailable: list[str] = []


class RegistryJoinEngine:
    """Read-only search over the joined registries.

    Usage::

        engine = RegistryJoinEngine(cache)
        page = await engine.search(SearchFilter(domain="light", area="Kitchen"))
    """

    def __init__(self, cache: RegistryCache) -> None:
        self._cache = cache

    async def _load(self) -> _Registries:
        regs = _Registries()
        loaders = {
            ENTITIES: self._cache.entities,
            STATES: self._cache.states,
            DEVICES: self._cache.devices,
            AREAS: self._cache.areas,
            LABELS: self._cache.labels,
            CATEGORIES: self._cache.categories,
        }
        failure: HAClientError | None = None
        for kind, loader in loaders.items():
            try:
                setattr(regs, kind, await loader())
            except HAClientError as e:
                logger.warning("Registry %s unavailable, search continues without it: %s", kind, e)
                regs.unavailable.append(kind)
                failure = e
        if ENTITIES in regs.unavailable and STATES in regs.unavailable and failure is not None:
            raise failure
        return regs

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------

    @staticmethod
    def _join(entity_id: str, regs: _Registries) -> EntityView:
        entry = regs.entities.get(entity_id)
        state = regs.states.get(entity_id)
        device = regs.devices.get(entry.device_id) if entry and entry.device_id else None

        # The entity's own area overrides the device's
        area_id = (entry.area_id if entry else None) or (device.area_id if device else None)
        area = regs.areas.get(area_id) if area_id else None

        labels = list(entry.labels) if entry else []
        for label_id in device.labels if device else []:
            if label_id not in labels:
                labels.append(label_id)

        categories = dict(entry.categories) if entry else {}
        category_names = {
            scope: regs.categories[f"{scope}:{cid}"].name
            for scope, cid in categories.items()
            if f"{scope}:{cid}" in regs.categories
        }

        device_class = None
        if entry:
            device_class = entry.device_class or entry.original_device_class
        if device_class is None and state is not None:
            device_class = state.attributes.get("device_class")

        name = (entry.display_name if entry else None) or (state.friendly_name if state else None)

        return EntityView(
            entity_id=entity_id,
            domain=entity_id.split(".", 1)[0],
            name=name,
            state=state.state if state else None,
            device_class=device_class,
            platform=entry.platform if entry else None,
            unique_id=entry.unique_id if entry else None,
            device_id=device.id if device else (entry.device_id if entry else None),
            device_name=device.display_name if device else None,
            area_id=area_id,
            area_name=area.name if area else None,
            labels=labels,
            label_names=[regs.labels[lid].name for lid in labels if lid in regs.labels],
            categories=categories,
            category_names=category_names,
        )

    # ------------------------------------------------------------------
    # Filters
    # ------------------------------------------------------------------

    @staticmethod
    def _label_ids(reference: str, regs: _Registries) -> set[str]:
        """Ids a filter label stands for: itself, plus labels named like it."""
        wanted = reference.strip().casefold()
        ids = {reference}
        ids.update(lb.label_id for lb in regs.labels.values() if lb.name.casefold() == wanted)
        return ids

    def _matches(self, view: EntityView, flt: SearchFilter, regs: _Registries) -> bool:
        if flt.domain and view.domain != flt.domain:
            return False
        if flt.device_class and view.device_class != flt.device_class:
            return False
        if flt.state is not None and view.state != flt.state:
            return False
        if flt.area:
            wanted = flt.area.strip().casefold()
            if view.area_id != flt.area and (view.area_name or "").casefold() != wanted:
                return False
        if flt.category:
            wanted = flt.category.strip().casefold()
            if flt.category not in view.categories.values() and wanted not in {
                n.casefold() for n in view.category_names.values()
            }:
                return False
        if flt.query:
            needle = flt.query.strip().casefold()
            if needle not in view.entity_id.casefold() and needle not in (view.name or "").casefold():
                return False
        if flt.labels:
            if not view.labels:
                return flt.include_unlabeled
            have = set(view.labels)
            hits = [bool(have & self._label_ids(label, regs)) for label in flt.labels]
            return all(hits) if flt.match_all else any(hits)
        return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @trace_ha_call("ha.search")
    async def search(
        self,
        flt: SearchFilter | None = None,
        offset: int = 0,
        limit: int = DEFAULT_LIMIT,
    ) -> Page:
        """Filter the joined registries and return one page.

        Results are ordered by entity id, so consecutive offsets partition
        the filtered set without gaps or duplicates.

        Raises:
            ValueError: ``offset`` is negative or ``limit`` is not positive.
        """
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        flt = flt or SearchFilter()

        regs = await self._load()
        entity_ids = sorted(set(regs.entities) | set(regs.states))
        found = [
            view
            for view in (self._join(eid, regs) for eid in entity_ids)
            if self._matches(view, flt, regs)
        ]
        log_metric("ha.search.total_found", len(found))

        return Page(
            items=found[offset : offset + limit],
            total_found=len(found),
            offset=offset,
            limit=limit,
            unavailable=regs.unavailable,
        )

    async def describe(self, entity_id: str) -> EntityView:
        """Joined view of a single entity.

        Raises:
            NotFoundError: Neither the entity registry nor the states know it.
        """
        regs = await self._load()
        if entity_id not in regs.entities and entity_id not in regs.states:
            raise NotFoundError(
                f"Entity '{entity_id}' not found",
                reference=entity_id,
                reason="no_match",
            )
        return self._join(entity_id, regs)


__all__ = ["DEFAULT_LIMIT", "EntityView", "Page", "RegistryJoinEngine", "SearchFilter"]
