"""Structural validation of configuration payloads.

Pydantic models are compiled to JSON Schema via ``.model_json_schema()``
and checked with the jsonschema library; each trigger, condition and
action block is then checked against its typed model. Validation never
touches the network.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

import jsonschema  # type: ignore[import-untyped,unused-ignore]
import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from hassbridge.exceptions import ValidationError

AUTOMATION = "ha.automation"
AUTOMATION_PATCH = "ha.automation.patch"

# =============================================================================
# MODELS
# =============================================================================


class SchemaIssue(BaseModel):
    """A single validation error with location context.

    Attributes:
        path: JSONPath-style location of the error (e.g., "trigger[0].platform").
        message: Human-readable error description.
        schema_path: JSON Schema path that triggered the error.
    """

    path: str
    message: str
    schema_path: str = ""

    def __str__(self) -> str:
        if self.path:
            return f"{self.path}: {self.message}"
        return self.message


class ValidationResult(BaseModel):
    """Outcome of validating one payload against a named schema."""

    valid: bool
    errors: list[SchemaIssue] = Field(default_factory=list)
    schema_name: str


# =============================================================================
# SCHEMA REGISTRY
# =============================================================================


class SchemaRegistry:
    """Maps schema names to pydantic models and their compiled JSON Schemas.

    Schemas compile on first use.
    """

    def __init__(self) -> None:
        self._models: dict[str, type[BaseModel]] = {}
        self._compiled: dict[str, dict[str, Any]] = {}

    def register(self, name: str, model: type[BaseModel]) -> None:
        """Register a model under a schema name.

        Raises:
            ValueError: If name is already registered.
        """
        if name in self._models:
            raise ValueError(f"Schema '{name}' is already registered")
        self._models[name] = model
        self._compiled.pop(name, None)

    def list_schemas(self) -> list[str]:
        return list(self._models.keys())

    def get_json_schema(self, name: str) -> dict[str, Any]:
        """Get the compiled JSON Schema for a registered schema.

        Raises:
            KeyError: If schema name is not registered.
        """
        if name not in self._models:
            raise KeyError(f"Schema '{name}' is not registered")

        if name not in self._compiled:
            schema = self._models[name].model_json_schema()
            # HA configs carry keys beyond the model; only the top level is opened
            schema.setdefault("additionalProperties", True)
            self._compiled[name] = schema

        return self._compiled[name]

    def validate(self, name: str, data: dict[str, Any]) -> ValidationResult:
        """Validate a data dict against a registered schema."""
        json_schema = self.get_json_schema(name)
        validator = jsonschema.validators.validator_for(json_schema)(json_schema)

        errors = [
            SchemaIssue(
                path=_format_json_path(error.absolute_path),
                message=error.message,
                schema_path=_format_json_path(error.absolute_schema_path),
            )
            for error in validator.iter_errors(data)
        ]
        return ValidationResult(valid=not errors, errors=errors, schema_name=name)


registry = SchemaRegistry()


# =============================================================================
# TOP-LEVEL API
# =============================================================================


def parse_payload(payload: str | Mapping[str, Any]) -> dict[str, Any]:
    """Turn a YAML/JSON string or a mapping into a normalized dict copy.

    The caller's object is never modified.

    Raises:
        ValidationError: The string is not valid YAML or not a mapping.
    """
    if isinstance(payload, str):
        try:
            data = yaml.safe_load(payload)
        except yaml.YAMLError as exc:
            raise ValidationError(
                "Invalid YAML syntax",
                errors=[f"Invalid YAML syntax: {exc}"],
            ) from exc
    else:
        data = payload

    if not isinstance(data, Mapping):
        raise ValidationError(
            "Configuration must be a mapping",
            errors=[f"Expected a mapping (object), got {type(data).__name__}"],
        )
    return normalize_automation(copy.deepcopy(dict(data)))


def validate_payload(
    data: dict[str, Any],
    schema_name: str = AUTOMATION,
    *,
    registry: SchemaRegistry | None = None,
) -> ValidationResult:
    """Validate an already-normalized dict; returns every issue found."""
    reg = registry or _get_default_registry()
    result = reg.validate(schema_name, data)
    content_errors = _validate_automation_contents(data)
    if content_errors:
        result = ValidationResult(
            valid=False,
            errors=result.errors + content_errors,
            schema_name=schema_name,
        )
    return result


def validate_config_payload(
    payload: str | Mapping[str, Any],
    *,
    partial: bool = False,
) -> dict[str, Any]:
    """Parse, normalize and structurally validate an automation config.

    Args:
        payload: Mapping or YAML string.
        partial: Validate as an update patch (``trigger``/``action`` optional).

    Returns:
        The normalized config (a fresh copy).

    Raises:
        ValidationError: With one entry per problem in ``errors``.
    """
    data = parse_payload(payload)
    result = validate_payload(data, AUTOMATION_PATCH if partial else AUTOMATION)
    if not result.valid:
        raise ValidationError(
            f"Invalid automation config ({len(result.errors)} error(s))",
            errors=[str(e) for e in result.errors],
        )
    return data


def _get_default_registry() -> SchemaRegistry:
    # Importing the ha package registers its schemas
    import hassbridge.schema.ha  # noqa: F401

    return registry


# =============================================================================
# HELPERS
# =============================================================================


def _format_json_path(path: Any) -> str:
    """Format a jsonschema deque path as a JSONPath-style string.

    Examples:
        deque([]) -> ""
        deque(["trigger", 0, "platform"]) -> "trigger[0].platform"
    """
    parts: list[str] = []
    for segment in path:
        if isinstance(segment, int):
            parts.append(f"[{segment}]")
        elif parts:
            parts.append(f".{segment}")
        else:
            parts.append(str(segment))
    return "".join(parts)


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return value
    return []


# =============================================================================
# HA 2024.1+ NORMALIZATION
# =============================================================================


def normalize_automation(data: dict[str, Any]) -> dict[str, Any]:
    """Rewrite HA 2024.1+ keys to the older spelling, in place.

    - triggers/conditions/actions -> trigger/condition/action
    - ``trigger`` -> ``platform`` inside trigger blocks
    - ``action: domain.service`` -> ``service`` inside action blocks
    """
    for plural, singular in (
        ("triggers", "trigger"),
        ("conditions", "condition"),
        ("actions", "action"),
    ):
        if plural in data and singular not in data:
            data[singular] = data.pop(plural)

    for trigger in _as_list(data.get("trigger")):
        if isinstance(trigger, dict) and "trigger" in trigger and "platform" not in trigger:
            trigger["platform"] = trigger.pop("trigger")

    for action in _as_list(data.get("action")):
        if not isinstance(action, dict) or "action" not in action or "service" in action:
            continue
        # Only service names are renamed; other uses of the key stay as-is
        value = action["action"]
        if isinstance(value, str) and "." in value:
            action["service"] = action.pop("action")

    return data


# =============================================================================
# CONTENT VALIDATION
# =============================================================================


def _model_errors(model: type[BaseModel], block: dict[str, Any], path: str) -> list[SchemaIssue]:
    try:
        model.model_validate(block)
    except PydanticValidationError as exc:
        issues = []
        for e in exc.errors():
            loc = ".".join(str(part) for part in e["loc"])
            issues.append(SchemaIssue(path=f"{path}.{loc}" if loc else path, message=e["msg"]))
        return issues
    return []


def _validate_automation_contents(data: dict[str, Any]) -> list[SchemaIssue]:
    """Check each trigger/condition/action block against its typed model.

    Blocks that are not mappings were already reported by the JSON Schema
    pass and are skipped here.
    """
    from hassbridge.schema.ha.automation import (
        ACTION_KEY_MAP,
        CONDITION_MODEL_MAP,
        TRIGGER_MODEL_MAP,
        GenericCondition,
        GenericTrigger,
    )

    errors: list[SchemaIssue] = []

    for i, trigger in enumerate(_as_list(data.get("trigger"))):
        if not isinstance(trigger, dict):
            continue
        platform = trigger.get("platform")
        if platform is None:
            errors.append(
                SchemaIssue(
                    path=f"trigger[{i}]",
                    message="Missing required 'platform' key (or 'trigger' in HA 2024.1+ syntax)",
                )
            )
            continue
        model = TRIGGER_MODEL_MAP.get(str(platform), GenericTrigger)
        errors.extend(_model_errors(model, trigger, f"trigger[{i}]"))

    for i, condition in enumerate(_as_list(data.get("condition"))):
        if not isinstance(condition, dict):
            continue
        cond_type = condition.get("condition")
        if cond_type is None:
            errors.append(
                SchemaIssue(path=f"condition[{i}]", message="Missing required 'condition' key")
            )
            continue
        cond_model = CONDITION_MODEL_MAP.get(str(cond_type), GenericCondition)
        errors.extend(_model_errors(cond_model, condition, f"condition[{i}]"))

    for i, action in enumerate(_as_list(data.get("action"))):
        if not isinstance(action, dict):
            continue
        action_model = next((m for key, m in ACTION_KEY_MAP.items() if key in action), None)
        # Unknown action types are accepted unchecked
        if action_model is not None:
            errors.extend(_model_errors(action_model, action, f"action[{i}]"))

    return errors


__all__ = [
    "AUTOMATION",
    "AUTOMATION_PATCH",
    "SchemaIssue",
    "SchemaRegistry",
    "ValidationResult",
    "normalize_automation",
    "parse_payload",
    "registry",
    "validate_config_payload",
    "validate_payload",
]
