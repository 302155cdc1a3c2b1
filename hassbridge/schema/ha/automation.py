"""Structural schema for Home Assistant automation configs.

Only the shape of a config is checked here: which keys hold lists, which
hold mappings, and which keys a recognised block cannot do without.
Trigger, condition and action bodies otherwise pass through untouched,
and block types this module does not know are accepted as-is so that
new HA features never fail validation.

Both pre-2024.1 keys (``trigger``/``platform``/``service``) and the newer
spelling (``triggers``/``trigger``/``action``) are accepted; the core
normalizes to the older keys before validating.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from hassbridge.schema.ha.common import Mode

Duration = str | int | float | dict[str, Any]
Block = dict[str, Any]

# =============================================================================
# TRIGGERS
# =============================================================================


class _TriggerBase(BaseModel):
    id: str | None = None
    enabled: bool | str | None = None
    variables: dict[str, Any] | None = None

    model_config = {"extra": "allow"}


class StateTrigger(_TriggerBase):
    platform: Literal["state"]
    entity_id: str | list[str]
    to: str | list[str] | None = None
    from_: str | list[str] | None = Field(default=None, alias="from")
    for_: Duration | None = Field(default=None, alias="for")
    attribute: str | None = None


class NumericStateTrigger(_TriggerBase):
    platform: Literal["numeric_state"]
    entity_id: str | list[str]
    above: float | str | None = None
    below: float | str | None = None
    attribute: str | None = None
    value_template: str | None = None
    for_: Duration | None = Field(default=None, alias="for")


class TimeTrigger(_TriggerBase):
    platform: Literal["time"]
    at: str | dict[str, Any] | list[str | dict[str, Any]]


class TimePatternTrigger(_TriggerBase):
    platform: Literal["time_pattern"]
    hours: str | int | None = None
    minutes: str | int | None = None
    seconds: str | int | None = None


class SunTrigger(_TriggerBase):
    platform: Literal["sun"]
    event: str = Field(..., description="'sunrise' or 'sunset'")
    offset: str | None = None


class EventTrigger(_TriggerBase):
    platform: Literal["event"]
    event_type: str | list[str]
    event_data: dict[str, Any] | None = None


class TemplateTrigger(_TriggerBase):
    platform: Literal["template"]
    value_template: str
    for_: Duration | None = Field(default=None, alias="for")


class DeviceTrigger(_TriggerBase):
    """Device automation trigger; its remaining fields are integration specific."""

    platform: Literal["device"]
    device_id: str
    domain: str
    type: str | None = None


class ZoneTrigger(_TriggerBase):
    platform: Literal["zone"]
    entity_id: str | list[str]
    zone: str
    event: str


class WebhookTrigger(_TriggerBase):
    platform: Literal["webhook"]
    webhook_id: str
    allowed_methods: list[str] | None = None
    local_only: bool | None = None


class MqttTrigger(_TriggerBase):
    platform: Literal["mqtt"]
    topic: str
    payload: str | None = None


class HomeassistantTrigger(_TriggerBase):
    platform: Literal["homeassistant"]
    event: str = Field(..., description="'start' or 'shutdown'")


class GenericTrigger(_TriggerBase):
    """Any trigger platform without a dedicated model."""

    platform: str


# =============================================================================
# CONDITIONS
# =============================================================================


class _ConditionBase(BaseModel):
    alias: str | None = None
    enabled: bool | str | None = None

    model_config = {"extra": "allow"}


class StateCondition(_ConditionBase):
    condition: Literal["state"]
    entity_id: str | list[str]
    state: str | list[str]
    attribute: str | None = None
    for_: Duration | None = Field(default=None, alias="for")


class NumericStateCondition(_ConditionBase):
    condition: Literal["numeric_state"]
    entity_id: str | list[str]
    above: float | str | None = None
    below: float | str | None = None


class TemplateCondition(_ConditionBase):
    condition: Literal["template"]
    value_template: str


class TimeCondition(_ConditionBase):
    condition: Literal["time"]
    after: str | None = None
    before: str | None = None
    weekday: str | list[str] | None = None


class TriggerCondition(_ConditionBase):
    condition: Literal["trigger"]
    id: str | list[str]


class _CompoundCondition(_ConditionBase):
    conditions: list[Block] | Block | str


class AndCondition(_CompoundCondition):
    condition: Literal["and"]


class OrCondition(_CompoundCondition):
    condition: Literal["or"]


class NotCondition(_CompoundCondition):
    condition: Literal["not"]


class GenericCondition(_ConditionBase):
    """Any condition type without a dedicated model."""

    condition: str


# =============================================================================
# ACTIONS
# =============================================================================


class _ActionBase(BaseModel):
    alias: str | None = None
    enabled: bool | str | None = None
    continue_on_error: bool | None = None

    model_config = {"extra": "allow"}


class ServiceAction(_ActionBase):
    service: str = Field(..., description="Service to call (domain.service)")
    target: dict[str, Any] | str | None = None
    data: dict[str, Any] | str | None = None
    response_variable: str | None = None


class DelayAction(_ActionBase):
    delay: Duration


class WaitTemplateAction(_ActionBase):
    wait_template: str
    timeout: Duration | None = None
    continue_on_timeout: bool | None = None


class WaitForTriggerAction(_ActionBase):
    wait_for_trigger: list[Block] | Block
    timeout: Duration | None = None
    continue_on_timeout: bool | None = None


class EventAction(_ActionBase):
    event: str
    event_data: dict[str, Any] | None = None


class ConditionAction(_ActionBase):
    condition: str


class RepeatAction(_ActionBase):
    repeat: dict[str, Any]


class ChooseAction(_ActionBase):
    choose: list[Block] | Block
    default: list[Block] | Block | None = None


class IfAction(_ActionBase):
    if_: list[Block] | Block | str = Field(..., alias="if")
    then: list[Block] | Block
    else_: list[Block] | Block | None = Field(default=None, alias="else")


class ParallelAction(_ActionBase):
    parallel: list[Block | list[Block]] | Block


class SequenceAction(_ActionBase):
    sequence: list[Block]


class VariablesAction(_ActionBase):
    variables: dict[str, Any]


class StopAction(_ActionBase):
    stop: str
    error: bool | None = None


class GenericAction(_ActionBase):
    """Any action without a dedicated model (scene activation, device actions, ...)."""

    pass


# =============================================================================
# TOP-LEVEL AUTOMATION
# =============================================================================


class HAAutomation(BaseModel):
    """A complete automation config as stored by HA's config API.

    Triggers, conditions and actions accept a single mapping or a list of
    mappings; anything else is a shape error.
    """

    id: str | None = None
    alias: str | None = None
    description: str | None = None
    trigger: list[Block] | Block
    condition: list[Block] | Block | None = None
    action: list[Block] | Block
    mode: Mode = Mode.SINGLE
    max: int | None = None
    max_exceeded: str | None = None
    variables: dict[str, Any] | None = None
    trigger_variables: dict[str, Any] | None = None
    initial_state: bool | None = None
    trace: dict[str, Any] | None = None

    model_config = {"extra": "allow"}


class HAAutomationPatch(HAAutomation):
    """A partial automation config merged over the stored one on update."""

    trigger: list[Block] | Block | None = None  # type: ignore[assignment]
    action: list[Block] | Block | None = None  # type: ignore[assignment]
    mode: Mode | None = None  # type: ignore[assignment]


# =============================================================================
# MODEL MAPS
# =============================================================================

TRIGGER_MODEL_MAP: dict[str, type[_TriggerBase]] = {
    "state": StateTrigger,
    "numeric_state": NumericStateTrigger,
    "time": TimeTrigger,
    "time_pattern": TimePatternTrigger,
    "sun": SunTrigger,
    "event": EventTrigger,
    "template": TemplateTrigger,
    "device": DeviceTrigger,
    "zone": ZoneTrigger,
    "webhook": WebhookTrigger,
    "mqtt": MqttTrigger,
    "homeassistant": HomeassistantTrigger,
}

CONDITION_MODEL_MAP: dict[str, type[_ConditionBase]] = {
    "state": StateCondition,
    "numeric_state": NumericStateCondition,
    "template": TemplateCondition,
    "time": TimeCondition,
    "trigger": TriggerCondition,
    "and": AndCondition,
    "or": OrCondition,
    "not": NotCondition,
}

# Checked in order; the first key present in an action picks its model
ACTION_KEY_MAP: dict[str, type[_ActionBase]] = {
    "service": ServiceAction,
    "delay": DelayAction,
    "wait_template": WaitTemplateAction,
    "wait_for_trigger": WaitForTriggerAction,
    "event": EventAction,
    "repeat": RepeatAction,
    "choose": ChooseAction,
    "if": IfAction,
    "parallel": ParallelAction,
    "sequence": SequenceAction,
    "variables": VariablesAction,
    "stop": StopAction,
    "condition": ConditionAction,
}


__all__ = [
    "ACTION_KEY_MAP",
    "CONDITION_MODEL_MAP",
    "TRIGGER_MODEL_MAP",
    "GenericAction",
    "GenericCondition",
    "GenericTrigger",
    "HAAutomation",
    "HAAutomationPatch",
]
