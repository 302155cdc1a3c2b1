"""Verified writes against Home Assistant.

Every mutation runs the same pipeline::

    VALIDATING -> RESOLVING -> APPLYING -> VERIFYING -> DONE | FAILED

The payload is checked before any network call, the target is resolved
to its internal id from the registries, the write goes to the one surface
that supports it, and the result is re-read and compared field by field.
A write that cannot be confirmed is reported as a failure.
"""

from __future__ import annotations

import copy
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from hassbridge.exceptions import (
    AmbiguousError,
    HassBridgeError,
    NotFoundError,
    NotReadyError,
    ValidationError,
    VerificationError,
)
from hassbridge.ha.base import HARestClient
from hassbridge.ha.identity import IdentityResolver, ResolvedIdentity
from hassbridge.ha.registry import ENTITIES, STATES, RegistryCache
from hassbridge.ha.websocket import HAWebSocketClient
from hassbridge.schema import normalize_automation, validate_config_payload
from hassbridge.tracing import log_param, trace_ha_call

logger = logging.getLogger(__name__)

LabelMode = Literal["replace", "add", "remove"]

_CONFIG_KINDS = (ENTITIES, STATES)
_REGISTRY_KINDS = (ENTITIES,)


class Step(str, Enum):
    """Stage of a mutation run."""

    VALIDATING = "validating"
    RESOLVING = "resolving"
    APPLYING = "applying"
    VERIFYING = "verifying"
    DONE = "done"
    FAILED = "failed"


class MutationResult(BaseModel):
    """Outcome of one mutation, safe to hand back to the caller."""

    success: bool
    operation: str
    step: Step
    failed_step: Step | None = None
    internal_id: str | None = None
    entity_id: str | None = None
    verified: bool = False
    data: dict[str, Any] = Field(default_factory=dict)
    error_kind: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class _Run:
    """Mutable progress of one mutation, reported on failure."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.step = Step.VALIDATING
        self.internal_id: str | None = None
        self.entity_id: str | None = None

    def at(self, step: Step) -> None:
        logger.debug("%s: %s", self.operation, step.value)
        self.step = step

    def identify(self, identity: ResolvedIdentity) -> None:
        self.internal_id = identity.internal_id
        self.entity_id = identity.entity_id


def generate_config_id() -> str:
    """New config id in the format HA's frontend uses (epoch milliseconds)."""
    return str(int(time.time() * 1000))


def diff_fields(expected: Mapping[str, Any], observed: Mapping[str, Any]) -> list[str]:
    """Keys of ``expected`` whose value differs in ``observed``."""
    return [key for key, value in expected.items() if observed.get(key) != value]


class MutationCoordinator:
    """Runs validated, identity-resolved and verified writes.

    Config writes (create, update, delete, duplicate) go through the REST
    config API, the only surface that has them. Registry writes (area,
    labels, category) go through the socket, the only surface that has
    ``config/entity_registry/update``.

    Usage::

        coordinator = MutationCoordinator(ws, rest, cache, resolver)
        result = await coordinator.update_automation("office_lamp", {"alias": "Desk"})
        if not result.success:
            print(result.error_kind, result.detail)
    """

    def __init__(
        self,
        ws: HAWebSocketClient,
        rest: HARestClient,
        cache: RegistryCache,
        resolver: IdentityResolver,
        *,
        domain: str = "automation",
    ) -> None:
        self._ws = ws
        self._rest = rest
        self._cache = cache
        self._resolver = resolver
        self._domain = domain

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _execute(
        self,
        operation: str,
        body: Callable[[_Run], Awaitable[dict[str, Any]]],
        touched: Iterable[str],
    ) -> MutationResult:
        run = _Run(operation)
        log_param("ha.mutation.operation", operation)
        try:
            data = await body(run)
        except HassBridgeError as e:
            logger.warning("%s failed while %s: %s", operation, run.step.value, e)
            return MutationResult(
                success=False,
                operation=operation,
                step=Step.FAILED,
                failed_step=run.step,
                internal_id=run.internal_id,
                entity_id=run.entity_id,
                error_kind=e.kind,
                detail=e.to_detail(),
            )
        finally:
            self._cache.invalidate(*touched)

        run.at(Step.DONE)
        logger.info("%s done (%s)", operation, run.entity_id or run.internal_id)
        return MutationResult(
            success=True,
            operation=operation,
            step=Step.DONE,
            internal_id=run.internal_id,
            entity_id=run.entity_id,
            verified=True,
            data=data,
        )

    # ------------------------------------------------------------------
    # Config reads
    # ------------------------------------------------------------------

    async def _read_config(self, internal_id: str, entity_id: str | None) -> dict[str, Any] | None:
        """Re-read a stored config, normalized for comparison."""
        if entity_id and self._ws.is_connected():
            config = await self._ws.get_automation_config(entity_id)
        else:
            config = await self._rest.get_config(self._domain, internal_id)
        if config is None:
            return None
        return normalize_automation(copy.deepcopy(config))

    async def _verify_config(
        self,
        internal_id: str,
        entity_id: str | None,
        expected: Mapping[str, Any],
    ) -> dict[str, Any]:
        observed = await self._read_config(internal_id, entity_id)
        if observed is None:
            raise VerificationError(
                f"Could not re-read {self._domain} '{internal_id}' after writing it",
                expected=dict(expected),
                observed=None,
                fields=list(expected),
            )
        mismatched = diff_fields(expected, observed)
        if mismatched:
            raise VerificationError(
                f"{self._domain} '{internal_id}' differs from the request after writing",
                expected={k: expected[k] for k in mismatched},
                observed={k: observed.get(k) for k in mismatched},
                fields=mismatched,
            )
        return observed

    async def _entity_for(self, internal_id: str) -> str | None:
        """Entity id HA assigned to a config id, if it has registered it yet."""
        self._cache.invalidate(ENTITIES)
        try:
            entities = await self._cache.entities()
        except NotReadyError:
            # Entity registry is socket-only on stock HA; states carry the id too
            self._cache.invalidate(STATES)
            prefix = f"{self._domain}."
            for state in (await self._cache.states()).values():
                if state.entity_id.startswith(prefix) and state.config_id == internal_id:
                    return state.entity_id
            return None
        for entity in entities.values():
            if entity.domain == self._domain and entity.unique_id == internal_id:
                return entity.entity_id
        return None

    # ------------------------------------------------------------------
    # Config mutations
    # ------------------------------------------------------------------

    @trace_ha_call("ha.mutation.create_automation", span_type="CHAIN")
    async def create_automation(self, payload: str | Mapping[str, Any]) -> MutationResult:
        """Create an automation from a full config (mapping or YAML)."""

        async def body(run: _Run) -> dict[str, Any]:
            config = validate_config_payload(payload)

            run.at(Step.RESOLVING)
            internal_id = str(config.get("id") or generate_config_id())
            if await self._rest.get_config(self._domain, internal_id) is not None:
                raise ValidationError(
                    f"An {self._domain} with id '{internal_id}' already exists",
                    errors=[f"id: '{internal_id}' is already in use"],
                )
            config["id"] = internal_id
            run.internal_id = internal_id

            run.at(Step.APPLYING)
            await self._rest.save_config(self._domain, internal_id, config)

            run.at(Step.VERIFYING)
            await self._verify_config(internal_id, None, config)
            run.entity_id = await self._entity_for(internal_id)
            return {"config": config}

        return await self._execute("create_automation", body, _CONFIG_KINDS)

    @trace_ha_call("ha.mutation.update_automation", span_type="CHAIN")
    async def update_automation(
        self,
        reference: str,
        payload: str | Mapping[str, Any],
    ) -> MutationResult:
        """Merge ``payload`` over an existing automation's config.

        Only the keys present in ``payload`` change. Repeating the same
        update is idempotent because the target is resolved to the same
        internal id every time.
        """

        async def body(run: _Run) -> dict[str, Any]:
            patch = validate_config_payload(payload, partial=True)

            run.at(Step.RESOLVING)
            identity = await self._resolver.resolve(reference, self._domain)
            run.identify(identity)
            internal_id = identity.internal_id
            assert internal_id is not None  # nosec B101 - guaranteed by resolve()
            if "id" in patch and str(patch["id"]) != internal_id:
                raise ValidationError(
                    "The id of an existing automation cannot be changed",
                    errors=[f"id: expected '{internal_id}', got '{patch['id']}'"],
                )

            run.at(Step.APPLYING)
            current = await self._rest.get_config(self._domain, internal_id)
            if current is None:
                raise NotFoundError(
                    f"No stored config for '{identity.entity_id}'",
                    reference=reference,
                    candidates=[identity.to_dict()],
                    reason="config_missing",
                )
            merged = {**normalize_automation(copy.deepcopy(current)), **patch, "id": internal_id}
            merged = validate_config_payload(merged)
            await self._rest.save_config(self._domain, internal_id, merged)

            run.at(Step.VERIFYING)
            await self._verify_config(internal_id, identity.entity_id, patch)
            return {"config": merged, "updated_fields": sorted(patch)}

        return await self._execute("update_automation", body, _CONFIG_KINDS)

    @trace_ha_call("ha.mutation.delete_automation", span_type="CHAIN")
    async def delete_automation(self, reference: str) -> MutationResult:
        """Delete an automation, verified by its absence afterwards."""

        async def body(run: _Run) -> dict[str, Any]:
            run.at(Step.RESOLVING)
            identity = await self._resolver.resolve(reference, self._domain)
            run.identify(identity)
            internal_id = identity.internal_id
            assert internal_id is not None  # nosec B101 - guaranteed by resolve()

            run.at(Step.APPLYING)
            if not await self._rest.delete_config(self._domain, internal_id):
                raise NotFoundError(
                    f"No stored config for '{identity.entity_id}'",
                    reference=reference,
                    candidates=[identity.to_dict()],
                    reason="config_missing",
                )

            run.at(Step.VERIFYING)
            remaining = await self._rest.get_config(self._domain, internal_id)
            if remaining is not None:
                raise VerificationError(
                    f"'{identity.entity_id}' still exists after delete",
                    expected={"exists": False},
                    observed={"exists": True},
                    fields=["exists"],
                )
            return {"deleted": True}

        return await self._execute("delete_automation", body, _CONFIG_KINDS)

    @trace_ha_call("ha.mutation.duplicate_automation", span_type="CHAIN")
    async def duplicate_automation(
        self,
        reference: str,
        alias: str | None = None,
    ) -> MutationResult:
        """Copy an automation under a fresh internal id."""

        async def body(run: _Run) -> dict[str, Any]:
            if alias is not None and not alias.strip():
                raise ValidationError("alias must not be empty", errors=["alias: empty string"])

            run.at(Step.RESOLVING)
            source = await self._resolver.resolve(reference, self._domain)
            assert source.internal_id is not None  # nosec B101 - guaranteed by resolve()
            current = await self._rest.get_config(self._domain, source.internal_id)
            if current is None:
                raise NotFoundError(
                    f"No stored config for '{source.entity_id}'",
                    reference=reference,
                    candidates=[source.to_dict()],
                    reason="config_missing",
                )

            internal_id = generate_config_id()
            config = normalize_automation(copy.deepcopy(current))
            config["id"] = internal_id
            config["alias"] = alias or f"{current.get('alias') or source.entity_id} (copy)"
            config = validate_config_payload(config)
            run.internal_id = internal_id

            run.at(Step.APPLYING)
            await self._rest.save_config(self._domain, internal_id, config)

            run.at(Step.VERIFYING)
            await self._verify_config(internal_id, None, config)
            run.entity_id = await self._entity_for(internal_id)
            return {"config": config, "source": source.to_dict()}

        return await self._execute("duplicate_automation", body, _CONFIG_KINDS)

    # ------------------------------------------------------------------
    # Registry mutations
    # ------------------------------------------------------------------

    async def _update_entity_registry(self, entity_id: str, changes: dict[str, Any]) -> None:
        if not self._ws.is_connected():
            raise NotReadyError(
                "Entity registry updates require the WebSocket connection",
                "config/entity_registry/update",
                {"entity_id": entity_id},
            )
        await self._ws.send({"type": "config/entity_registry/update", "entity_id": entity_id, **changes})

    async def _verify_entity(self, entity_id: str, expected: dict[str, Any]) -> dict[str, Any]:
        self._cache.invalidate(ENTITIES)
        entry = await self._cache.get_entity(entity_id)
        if entry is None:
            raise VerificationError(
                f"Could not re-read registry entry for '{entity_id}'",
                expected=expected,
                observed=None,
                fields=list(expected),
            )
        observed = {
            "area_id": entry.area_id,
            "labels": sorted(entry.labels),
            "categories": dict(entry.categories),
        }
        mismatched = diff_fields(expected, observed)
        if mismatched:
            raise VerificationError(
                f"Registry entry for '{entity_id}' differs from the request",
                expected={k: expected[k] for k in mismatched},
                observed={k: observed.get(k) for k in mismatched},
                fields=mismatched,
            )
        return observed

    async def _resolve_entity(self, run: _Run, reference: str, domain: str | None) -> str:
        identity = await self._resolver.resolve(
            reference, domain or self._domain, require_internal_id=False
        )
        run.identify(identity)
        return identity.entity_id

    @trace_ha_call("ha.mutation.assign_area", span_type="CHAIN")
    async def assign_area(
        self,
        reference: str,
        area: str | None,
        *,
        domain: str | None = None,
    ) -> MutationResult:
        """Set (or clear, with ``None``) an entity's area by id or name."""

        async def body(run: _Run) -> dict[str, Any]:
            if area is not None and not area.strip():
                raise ValidationError("area must not be empty", errors=["area: empty string"])

            run.at(Step.RESOLVING)
            entity_id = await self._resolve_entity(run, reference, domain)
            area_id = await self._resolve_area(area) if area is not None else None

            run.at(Step.APPLYING)
            await self._update_entity_registry(entity_id, {"area_id": area_id})

            run.at(Step.VERIFYING)
            await self._verify_entity(entity_id, {"area_id": area_id})
            return {"area_id": area_id}

        return await self._execute("assign_area", body, _REGISTRY_KINDS)

    @trace_ha_call("ha.mutation.assign_labels", span_type="CHAIN")
    async def assign_labels(
        self,
        reference: str,
        labels: list[str],
        mode: LabelMode = "replace",
        *,
        domain: str | None = None,
    ) -> MutationResult:
        """Replace, add to, or remove from an entity's labels."""

        async def body(run: _Run) -> dict[str, Any]:
            if mode not in ("replace", "add", "remove"):
                raise ValidationError(
                    f"Unknown label mode '{mode}'",
                    errors=["mode: expected one of replace, add, remove"],
                )
            if isinstance(labels, str) or not isinstance(labels, list):
                raise ValidationError(
                    "labels must be a list",
                    errors=[f"labels: expected a list, got {type(labels).__name__}"],
                )

            run.at(Step.RESOLVING)
            entity_id = await self._resolve_entity(run, reference, domain)
            label_ids = [await self._resolve_label(label) for label in labels]
            # Merge onto the live entry
            self._cache.invalidate(ENTITIES)
            entry = await self._cache.get_entity(entity_id)
            current = list(entry.labels) if entry is not None else []

            if mode == "replace":
                new_labels = list(dict.fromkeys(label_ids))
            elif mode == "add":
                new_labels = current + [lid for lid in dict.fromkeys(label_ids) if lid not in current]
            else:
                new_labels = [lid for lid in current if lid not in label_ids]

            run.at(Step.APPLYING)
            await self._update_entity_registry(entity_id, {"labels": new_labels})

            run.at(Step.VERIFYING)
            await self._verify_entity(entity_id, {"labels": sorted(new_labels)})
            return {"labels": new_labels, "mode": mode}

        return await self._execute("assign_labels", body, _REGISTRY_KINDS)

    @trace_ha_call("ha.mutation.assign_category", span_type="CHAIN")
    async def assign_category(
        self,
        reference: str,
        category: str | None,
        scope: str,
        *,
        domain: str | None = None,
    ) -> MutationResult:
        """Set (or clear, with ``None``) an entity's category within one scope."""

        async def body(run: _Run) -> dict[str, Any]:
            if not scope or not scope.strip():
                raise ValidationError(
                    "A category scope is required",
                    errors=["scope: required (e.g. 'automation')"],
                )

            run.at(Step.RESOLVING)
            entity_id = await self._resolve_entity(run, reference, domain)
            category_id = (
                await self._resolve_category(category, scope) if category is not None else None
            )
            # Expected state is computed from the live entry
            self._cache.invalidate(ENTITIES)
            entry = await self._cache.get_entity(entity_id)
            categories = dict(entry.categories) if entry is not None else {}
            if category_id is None:
                categories.pop(scope, None)
            else:
                categories[scope] = category_id

            run.at(Step.APPLYING)
            await self._update_entity_registry(entity_id, {"categories": {scope: category_id}})

            run.at(Step.VERIFYING)
            await self._verify_entity(entity_id, {"categories": categories})
            return {"scope": scope, "category_id": category_id}

        return await self._execute("assign_category", body, _REGISTRY_KINDS)

    # ------------------------------------------------------------------
    # Registry lookups
    # ------------------------------------------------------------------

    async def _resolve_area(self, area: str) -> str:
        areas = await self._cache.areas()
        if area in areas:
            return area
        matches = [a.area_id for a in areas.values() if a.name.casefold() == area.strip().casefold()]
        return _single(matches, area, "area")

    async def _resolve_label(self, label: str) -> str:
        registry = await self._cache.labels()
        if label in registry:
            return label
        matches = [
            lb.label_id for lb in registry.values() if lb.name.casefold() == label.strip().casefold()
        ]
        return _single(matches, label, "label")

    async def _resolve_category(self, category: str, scope: str) -> str:
        scoped = [c for c in (await self._cache.categories()).values() if c.scope == scope]
        matches = [c.category_id for c in scoped if c.category_id == category]
        if not matches:
            matches = [c.category_id for c in scoped if c.name.casefold() == category.strip().casefold()]
        return _single(matches, category, f"{scope} category")


def _single(matches: list[str], reference: str, what: str) -> str:
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise NotFoundError(f"No {what} matches '{reference}'", reference=reference, reason="no_match")
    raise AmbiguousError(
        f"'{reference}' matches {len(matches)} {what} entries",
        reference=reference,
        candidates=[{"id": m} for m in matches],
        reason="multiple_matches",
    )


__all__ = [
    "MutationCoordinator",
    "MutationResult",
    "Step",
    "diff_fields",
    "generate_config_id",
]
