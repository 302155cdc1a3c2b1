"""Structural validation for Home Assistant configuration payloads.

Usage::

    from hassbridge.schema import validate_config_payload

    config = validate_config_payload(yaml_or_dict)
"""

from __future__ import annotations

# Auto-register HA schemas on import
import hassbridge.schema.ha  # noqa: F401
from hassbridge.schema.core import (
    SchemaIssue,
    SchemaRegistry,
    ValidationResult,
    normalize_automation,
    parse_payload,
    registry,
    validate_config_payload,
    validate_payload,
)

__all__ = [
    "SchemaIssue",
    "SchemaRegistry",
    "ValidationResult",
    "normalize_automation",
    "parse_payload",
    "registry",
    "validate_config_payload",
    "validate_payload",
]
