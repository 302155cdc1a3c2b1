"""Resolve caller references to HA's authoritative identifiers.

A caller may name an automation by its entity id (``automation.x``), a
bare slug (``x``) or its alias (``"Office Lamp"``). Config writes need the
backend's internal config id, which is only available from the registries:
the entity registry's ``unique_id`` and the ``id`` state attribute. It is
never derived from the text of the entity id.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from hassbridge.exceptions import (
    AmbiguousError,
    HAClientError,
    IdentityConflictError,
    NotFoundError,
)
from hassbridge.ha.records import EntityRecord, StateRecord
from hassbridge.ha.registry import RegistryCache

logger = logging.getLogger(__name__)

CONFIG_REGISTRY = "config_registry"
STATE_REGISTRY = "state_registry"

_QUALIFIED = re.compile(r"^([a-z0-9_]+)\.([A-Za-z0-9_]+)$")


def slugify(text: str) -> str:
    """Lowercase, ASCII-fold and join words with underscores."""
    folded = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode()
    return re.sub(r"[^a-z0-9]+", "_", folded.lower()).strip("_")


def alias_matches(reference_slug: str, alias: str) -> bool:
    """True if the slug equals the alias slug or is a whole-word run inside it."""
    alias_slug = slugify(alias)
    if not reference_slug or not alias_slug:
        return False
    if alias_slug == reference_slug:
        return True
    return f"_{reference_slug}_" in f"_{alias_slug}_"


@dataclass(frozen=True)
class ResolvedIdentity:
    """An automation reference mapped onto the backend's identifiers."""

    internal_id: str | None
    entity_id: str
    alias: str | None
    sources: frozenset[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "internal_id": self.internal_id,
            "entity_id": self.entity_id,
            "alias": self.alias,
            "sources": sorted(self.sources),
        }


@dataclass
class _Candidate:
    entity_id: str
    entry: EntityRecord | None
    state: StateRecord | None

    @property
    def aliases(self) -> list[str]:
        names = []
        if self.entry is not None and self.entry.display_name:
            names.append(self.entry.display_name)
        if self.state is not None and self.state.friendly_name:
            names.append(self.state.friendly_name)
        return names

    @property
    def alias(self) -> str | None:
        aliases = self.aliases
        return aliases[0] if aliases else None

    def summary(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "alias": self.alias}


class IdentityResolver:
    """Maps caller references onto entity ids and internal config ids.

    Results are computed from the current registry snapshots on every
    call and never cached.
    """

    def __init__(self, cache: RegistryCache, *, default_domain: str = "automation") -> None:
        self._cache = cache
        self._default_domain = default_domain

    async def resolve(
        self,
        reference: str,
        domain: str | None = None,
        *,
        require_internal_id: bool = True,
    ) -> ResolvedIdentity:
        """Resolve a reference to one backend object.

        Args:
            reference: Entity id, bare slug or alias.
            domain: Domain for unqualified references (defaults to the
                resolver's default domain).
            require_internal_id: Fail unless a registry provides the
                internal config id. Registry-only writes (area, labels)
                need the entity id alone.

        Raises:
            NotFoundError: Nothing matches, or the match has no internal id.
            AmbiguousError: More than one object matches.
            IdentityConflictError: The two registries disagree.
        """
        raw = reference
        reference = (reference or "").strip()
        if not reference:
            raise NotFoundError("Empty reference", reference=raw, reason="empty")

        qualified = _QUALIFIED.match(reference)
        if qualified:
            domain, object_id = qualified.group(1), qualified.group(2)
        else:
            domain = domain or self._default_domain
            object_id = reference

        entries, states = await self._load()
        candidates = self._candidates(domain, entries, states)

        # Only a fully qualified entity id is unambiguous on its own
        entity_id = f"{domain}.{object_id}"
        match = candidates.get(entity_id) if qualified else None
        if match is None:
            match = self._match(reference, domain, candidates)

        return self._identify(match, reference, entries, states, require_internal_id)

    async def _load(
        self,
    ) -> tuple[Mapping[str, EntityRecord] | None, Mapping[str, StateRecord] | None]:
        """Fetch both registries, tolerating one of them being unavailable."""
        entries: Mapping[str, EntityRecord] | None = None
        states: Mapping[str, StateRecord] | None = None
        failure: HAClientError | None = None
        try:
            entries = await self._cache.entities()
        except HAClientError as e:
            logger.warning("Entity registry unavailable for resolution: %s", e)
            failure = e
        try:
            states = await self._cache.states()
        except HAClientError as e:
            logger.warning("State registry unavailable for resolution: %s", e)
            failure = e
        if entries is None and states is None and failure is not None:
            raise failure
        return entries, states

    @staticmethod
    def _candidates(
        domain: str,
        entries: Mapping[str, EntityRecord] | None,
        states: Mapping[str, StateRecord] | None,
    ) -> dict[str, _Candidate]:
        prefix = f"{domain}."
        ids = {eid for eid in (entries or {}) if eid.startswith(prefix)}
        ids |= {eid for eid in (states or {}) if eid.startswith(prefix)}
        return {
            eid: _Candidate(
                entity_id=eid,
                entry=(entries or {}).get(eid),
                state=(states or {}).get(eid),
            )
            for eid in sorted(ids)
        }

    @staticmethod
    def _match(
        reference: str,
        domain: str,
        candidates: dict[str, _Candidate],
    ) -> _Candidate:
        """Exactly one candidate named by entity id or alias, or raise."""
        reference_slug = slugify(reference)
        named = {f"{domain}.{reference}", f"{domain}.{reference_slug}"}
        matches = [
            c
            for c in candidates.values()
            if c.entity_id in named
            or any(alias_matches(reference_slug, alias) for alias in c.aliases)
        ]
        if len(matches) == 1:
            return matches[0]
        if not matches:
            raise NotFoundError(
                f"No {domain} matches '{reference}'",
                reference=reference,
                reason="no_match",
            )
        raise AmbiguousError(
            f"'{reference}' matches {len(matches)} {domain} entities",
            reference=reference,
            candidates=[c.summary() for c in matches],
            reason="multiple_matches",
        )

    @staticmethod
    def _identify(
        match: _Candidate,
        reference: str,
        entries: Mapping[str, EntityRecord] | None,
        states: Mapping[str, StateRecord] | None,
        require_internal_id: bool,
    ) -> ResolvedIdentity:
        config_id = match.entry.unique_id if match.entry is not None else None
        state_id = match.state.config_id if match.state is not None else None

        # Disabled entities have no state, so only an enabled entry can conflict
        if entries is not None and states is not None:
            only_in_config = (
                match.entry is not None and match.entry.disabled_by is None and match.state is None
            )
            only_in_state = match.state is not None and state_id is not None and match.entry is None
            if only_in_config or only_in_state:
                raise IdentityConflictError(
                    f"'{match.entity_id}' exists in only one registry",
                    reference=reference,
                    candidates=[match.summary()],
                    reason="existence_mismatch",
                )
            if config_id and state_id and config_id != state_id:
                raise IdentityConflictError(
                    f"Registries disagree on the internal id of '{match.entity_id}'",
                    reference=reference,
                    candidates=[
                        {**match.summary(), "source": CONFIG_REGISTRY, "internal_id": config_id},
                        {**match.summary(), "source": STATE_REGISTRY, "internal_id": state_id},
                    ],
                    reason="internal_id_mismatch",
                )

        sources = set()
        if config_id:
            sources.add(CONFIG_REGISTRY)
        if state_id:
            sources.add(STATE_REGISTRY)
        internal_id = config_id or state_id

        if require_internal_id and internal_id is None:
            raise NotFoundError(
                f"'{match.entity_id}' has no internal id in any registry",
                reference=reference,
                candidates=[match.summary()],
                reason="no_internal_id",
            )

        if not sources:
            if match.entry is not None:
                sources.add(CONFIG_REGISTRY)
            if match.state is not None:
                sources.add(STATE_REGISTRY)

        return ResolvedIdentity(
            internal_id=internal_id,
            entity_id=match.entity_id,
            alias=match.alias,
            sources=frozenset(sources),
        )


__all__ = [
    "CONFIG_REGISTRY",
    "STATE_REGISTRY",
    "IdentityResolver",
    "ResolvedIdentity",
    "alias_matches",
    "slugify",
]
