"""Home Assistant config schemas.

Registers the automation schemas with the global registry on import.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hassbridge.schema.core import AUTOMATION, AUTOMATION_PATCH, registry
from hassbridge.schema.ha.automation import HAAutomation, HAAutomationPatch

if TYPE_CHECKING:
    from pydantic import BaseModel


def _register_ha_schemas() -> None:
    """Register HA schemas. Idempotent; skips already-registered names."""
    schemas: dict[str, type[BaseModel]] = {
        AUTOMATION: HAAutomation,
        AUTOMATION_PATCH: HAAutomationPatch,
    }
    for name, model in schemas.items():
        if name not in registry.list_schemas():
            registry.register(name, model)


_register_ha_schemas()

__all__ = ["HAAutomation", "HAAutomationPatch"]
