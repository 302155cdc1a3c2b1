"""Unit tests for the schema validation core.

Covers SchemaRegistry, payload parsing, 2024.1+ normalization and
validate_config_payload().
"""

from __future__ import annotations

import copy
import textwrap

import pytest
from pydantic import BaseModel

from hassbridge.exceptions import ValidationError

VALID = {
    "alias": "Porch light at sunset",
    "trigger": [{"platform": "sun", "event": "sunset"}],
    "action": [{"service": "light.turn_on", "target": {"entity_id": "light.porch"}}],
}


class TestSchemaIssue:
    def test_str_includes_path(self) -> None:
        from hassbridge.schema.core import SchemaIssue

        issue = SchemaIssue(path="trigger[0].platform", message="missing")
        assert str(issue) == "trigger[0].platform: missing"

    def test_str_without_path(self) -> None:
        from hassbridge.schema.core import SchemaIssue

        assert str(SchemaIssue(path="", message="bad")) == "bad"


class TestSchemaRegistry:
    """Test SchemaRegistry in isolation from the HA schemas."""

    class _Thing(BaseModel):
        name: str
        count: int = 0

    def test_register_and_list(self) -> None:
        from hassbridge.schema.core import SchemaRegistry

        reg = SchemaRegistry()
        reg.register("test.thing", self._Thing)
        assert reg.list_schemas() == ["test.thing"]

    def test_duplicate_registration_raises(self) -> None:
        from hassbridge.schema.core import SchemaRegistry

        reg = SchemaRegistry()
        reg.register("test.thing", self._Thing)
        with pytest.raises(ValueError, match="already registered"):
            reg.register("test.thing", self._Thing)

    def test_unknown_schema_raises_key_error(self) -> None:
        from hassbridge.schema.core import SchemaRegistry

        with pytest.raises(KeyError):
            SchemaRegistry().get_json_schema("nope")

    def test_json_schema_is_compiled_once(self) -> None:
        from hassbridge.schema.core import SchemaRegistry

        reg = SchemaRegistry()
        reg.register("test.thing", self._Thing)
        assert reg.get_json_schema("test.thing") is reg.get_json_schema("test.thing")

    def test_validate_reports_paths(self) -> None:
        from hassbridge.schema.core import SchemaRegistry

        reg = SchemaRegistry()
        reg.register("test.thing", self._Thing)

        result = reg.validate("test.thing", {"name": "x", "count": "many"})

        assert result.valid is False
        assert [e.path for e in result.errors] == ["count"]

    def test_ha_schemas_registered_on_import(self) -> None:
        from hassbridge.schema import registry
        from hassbridge.schema.core import AUTOMATION, AUTOMATION_PATCH

        assert AUTOMATION in registry.list_schemas()
        assert AUTOMATION_PATCH in registry.list_schemas()


class TestParsePayload:
    def test_yaml_string(self) -> None:
        from hassbridge.schema import parse_payload

        data = parse_payload("alias: Test\ntrigger: []\naction: []\n")
        assert data == {"alias": "Test", "trigger": [], "action": []}

    def test_invalid_yaml(self) -> None:
        from hassbridge.schema import parse_payload

        with pytest.raises(ValidationError) as exc_info:
            parse_payload("alias: [unclosed")
        assert exc_info.value.errors[0].startswith("Invalid YAML syntax")

    def test_non_mapping_rejected(self) -> None:
        from hassbridge.schema import parse_payload

        with pytest.raises(ValidationError, match="mapping"):
            parse_payload("- just\n- a list\n")

    def test_input_mapping_is_not_modified(self) -> None:
        from hassbridge.schema import parse_payload

        payload = {
            "triggers": [{"trigger": "state", "entity_id": "light.a"}],
            "actions": [{"action": "light.turn_off"}],
        }
        original = copy.deepcopy(payload)

        parse_payload(payload)

        assert payload == original


class TestNormalize:
    def test_2024_keys_are_rewritten(self) -> None:
        from hassbridge.schema import normalize_automation

        data = normalize_automation(
            {
                "triggers": [{"trigger": "state", "entity_id": "light.a", "to": "on"}],
                "conditions": [{"condition": "state", "entity_id": "sun.sun", "state": "below_horizon"}],
                "actions": [{"action": "light.turn_on", "target": {"entity_id": "light.b"}}],
            }
        )

        assert data["trigger"] == [{"platform": "state", "entity_id": "light.a", "to": "on"}]
        assert data["condition"][0]["condition"] == "state"
        assert data["action"] == [{"service": "light.turn_on", "target": {"entity_id": "light.b"}}]
        assert "triggers" not in data and "actions" not in data

    def test_singular_key_wins_over_plural(self) -> None:
        from hassbridge.schema import normalize_automation

        data = normalize_automation({"trigger": [], "triggers": [{"platform": "sun"}]})
        assert data["trigger"] == []

    def test_non_service_action_key_is_kept(self) -> None:
        from hassbridge.schema import normalize_automation

        data = normalize_automation({"action": [{"action": "{{ dynamic }}"}]})
        assert data["action"] == [{"action": "{{ dynamic }}"}]

    def test_single_block_is_normalized(self) -> None:
        from hassbridge.schema import normalize_automation

        data = normalize_automation({"trigger": {"trigger": "sun", "event": "sunset"}})
        assert data["trigger"] == {"platform": "sun", "event": "sunset"}


class TestValidateConfigPayload:
    def test_valid_config_returns_copy(self) -> None:
        from hassbridge.schema import validate_config_payload

        config = validate_config_payload(VALID)

        assert config == VALID
        assert config is not VALID

    def test_new_syntax_yaml_is_accepted(self) -> None:
        from hassbridge.schema import validate_config_payload

        config = validate_config_payload(
            textwrap.dedent(
                """
            alias: Motion
            triggers:
              - trigger: state
                entity_id: binary_sensor.hall
                to: "on"
            actions:
              - action: light.turn_on
                target:
                  entity_id: light.hall
            """
            )
        )

        assert config["trigger"][0]["platform"] == "state"
        assert config["action"][0]["service"] == "light.turn_on"

    def test_single_mapping_accepted_for_lists(self) -> None:
        from hassbridge.schema import validate_config_payload

        config = validate_config_payload(
            {
                "trigger": {"platform": "time", "at": "07:00:00"},
                "action": {"delay": "00:00:05"},
            }
        )
        assert config["trigger"]["at"] == "07:00:00"

    def test_scalar_where_list_expected_is_rejected(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError) as exc_info:
            validate_config_payload({"trigger": "sunset", "action": []})

        assert any(e.startswith("trigger:") for e in exc_info.value.errors)

    def test_missing_required_keys(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError) as exc_info:
            validate_config_payload({"alias": "Nothing"})

        joined = " ".join(exc_info.value.errors)
        assert "'trigger' is a required property" in joined
        assert "'action' is a required property" in joined

    def test_invalid_mode(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError) as exc_info:
            validate_config_payload({**VALID, "mode": "sometimes"})

        assert any(e.startswith("mode:") for e in exc_info.value.errors)

    def test_unknown_action_type_is_accepted(self) -> None:
        from hassbridge.schema import validate_config_payload

        config = validate_config_payload(
            {**VALID, "action": [{"scene": "scene.movie_night"}, {"device_id": "abc", "domain": "x"}]}
        )
        assert config["action"][0] == {"scene": "scene.movie_night"}

    def test_unknown_trigger_platform_is_accepted(self) -> None:
        from hassbridge.schema import validate_config_payload

        validate_config_payload({**VALID, "trigger": [{"platform": "calendar", "event": "start"}]})

    def test_known_block_missing_field(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError) as exc_info:
            validate_config_payload({**VALID, "trigger": [{"platform": "state", "to": "on"}]})

        assert any(e.startswith("trigger[0].entity_id") for e in exc_info.value.errors)

    def test_trigger_without_platform(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError) as exc_info:
            validate_config_payload({**VALID, "trigger": [{"entity_id": "light.a"}]})

        assert any("platform" in e for e in exc_info.value.errors)

    def test_every_problem_is_reported(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError) as exc_info:
            validate_config_payload(
                {
                    "trigger": [{"platform": "state"}],
                    "condition": [{"entity_id": "light.a"}],
                    "action": [{"delay": None}],
                }
            )

        paths = {e.split(":", 1)[0] for e in exc_info.value.errors}
        assert {"trigger[0].entity_id", "condition[0]"} <= paths
        assert any(p.startswith("action[0]") for p in paths)

    def test_partial_patch_needs_no_trigger_or_action(self) -> None:
        from hassbridge.schema import validate_config_payload

        assert validate_config_payload({"alias": "Renamed"}, partial=True) == {"alias": "Renamed"}

    def test_partial_patch_still_checks_shape(self) -> None:
        from hassbridge.schema import validate_config_payload

        with pytest.raises(ValidationError):
            validate_config_payload({"action": "light.turn_on"}, partial=True)
