"""Typed records for Home Assistant registries.

Each registry HA keeps (entities, devices, areas, labels, categories) and
the state machine get one pydantic model. Fields the join engine or the
resolver rely on are declared; anything else HA sends is retained in the
model's extra bag and exposed as ``extras``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class _Record(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def extras(self) -> dict[str, Any]:
        """Backend fields not declared on the model."""
        return dict(self.model_extra or {})

    @field_validator("labels", mode="before", check_fields=False)
    @classmethod
    def _none_labels(cls, v: Any) -> Any:
        return [] if v is None else v


class EntityRecord(_Record):
    """Entity registry entry (``config/entity_registry/list``).

    ``unique_id`` is the config registry's internal id for config-backed
    entities such as automations.
    """

    kind: Literal["entity"] = "entity"
    entity_id: str
    unique_id: str | None = None
    platform: str | None = None
    device_id: str | None = None
    area_id: str | None = None
    labels: list[str] = Field(default_factory=list)
    categories: dict[str, str] = Field(default_factory=dict)
    name: str | None = None
    original_name: str | None = None
    device_class: str | None = None
    original_device_class: str | None = None
    disabled_by: str | None = None
    hidden_by: str | None = None

    @field_validator("categories", mode="before")
    @classmethod
    def _none_categories(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def key(self) -> str:
        return self.entity_id

    @property
    def domain(self) -> str:
        return self.entity_id.split(".", 1)[0]

    @property
    def display_name(self) -> str | None:
        return self.name or self.original_name


class DeviceRecord(_Record):
    """Device registry entry."""

    kind: Literal["device"] = "device"
    id: str
    name: str | None = None
    name_by_user: str | None = None
    area_id: str | None = None
    labels: list[str] = Field(default_factory=list)
    manufacturer: str | None = None
    model: str | None = None

    @property
    def key(self) -> str:
        return self.id

    @property
    def display_name(self) -> str | None:
        return self.name_by_user or self.name


class AreaRecord(_Record):
    """Area registry entry."""

    kind: Literal["area"] = "area"
    area_id: str
    name: str
    floor_id: str | None = None
    aliases: list[str] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.area_id


class LabelRecord(_Record):
    """Label registry entry."""

    kind: Literal["label"] = "label"
    label_id: str
    name: str
    color: str | None = None
    icon: str | None = None

    @property
    def key(self) -> str:
        return self.label_id


class CategoryRecord(_Record):
    """Category registry entry.

    Categories are scoped (automation, script, ...); the same id may only be
    unique inside its scope, so the key includes the scope.
    """

    kind: Literal["category"] = "category"
    category_id: str
    name: str
    scope: str
    icon: str | None = None

    @property
    def key(self) -> str:
        return f"{self.scope}:{self.category_id}"


class StateRecord(_Record):
    """Current state of one entity."""

    kind: Literal["state"] = "state"
    entity_id: str
    state: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    last_changed: str | None = None
    last_updated: str | None = None

    @property
    def key(self) -> str:
        return self.entity_id

    @property
    def friendly_name(self) -> str | None:
        name = self.attributes.get("friendly_name")
        return str(name) if name is not None else None

    @property
    def config_id(self) -> str | None:
        """Internal config id exposed by config-backed entities (attribute ``id``)."""
        value = self.attributes.get("id")
        return str(value) if value not in (None, "") else None


RegistryRecord = Annotated[
    EntityRecord | DeviceRecord | AreaRecord | LabelRecord | CategoryRecord,
    Field(discriminator="kind"),
]

_registry_record_adapter: TypeAdapter[RegistryRecord] = TypeAdapter(RegistryRecord)


def parse_record(kind: str, row: dict[str, Any]) -> RegistryRecord | StateRecord:
    """Parse one raw backend row as the record type tagged ``kind``.

    HA's rows carry no tag of their own; the registry they were listed from
    decides the type. Raises pydantic's ``ValidationError`` for malformed rows.
    """
    if kind == "state":
        return StateRecord.model_validate(row)
    return _registry_record_adapter.validate_python({**row, "kind": kind})


__all__ = [
    "AreaRecord",
    "CategoryRecord",
    "DeviceRecord",
    "EntityRecord",
    "LabelRecord",
    "RegistryRecord",
    "StateRecord",
    "parse_record",
]
