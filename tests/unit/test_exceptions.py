"""Tests for exception hierarchy and correlation ID support."""

import uuid

import pytest

from hassbridge.exceptions import (
    AmbiguousError,
    AuthError,
    CommandError,
    ConnectionLostError,
    HAClientError,
    HassBridgeError,
    IdentityConflictError,
    NotFoundError,
    NotReadyError,
    RequestTimeoutError,
    ResolutionError,
    TransportError,
    ValidationError,
    VerificationError,
)


class TestHassBridgeError:
    """Test base HassBridgeError class."""

    def test_auto_generates_correlation_id(self):
        error = HassBridgeError("Test error")
        uuid.UUID(error.correlation_id)

    def test_accepts_custom_correlation_id(self):
        error = HassBridgeError("Test error", correlation_id="abc")
        assert error.correlation_id == "abc"

    def test_unique_correlation_ids(self):
        assert HassBridgeError("1").correlation_id != HassBridgeError("2").correlation_id

    def test_kind_is_class_name(self):
        assert NotReadyError("x").kind == "NotReadyError"

    def test_detail_carries_message_and_correlation_id(self):
        error = HassBridgeError("boom", correlation_id="cid")
        assert error.to_detail() == {"message": "boom", "correlation_id": "cid"}


class TestHAClientError:
    def test_tool_status_and_details_in_detail(self):
        error = HAClientError("failed", "request", {"path": "/api/states"}, status_code=500)

        detail = error.to_detail()

        assert detail["tool"] == "request"
        assert detail["status_code"] == 500
        assert detail["path"] == "/api/states"

    @pytest.mark.parametrize(
        "cls",
        [TransportError, NotReadyError, ConnectionLostError, AuthError, RequestTimeoutError, CommandError],
    )
    def test_protocol_errors_are_client_errors(self, cls):
        assert issubclass(cls, HAClientError)

    def test_transport_family(self):
        assert issubclass(NotReadyError, TransportError)
        assert issubclass(ConnectionLostError, TransportError)
        assert not issubclass(AuthError, TransportError)

    def test_request_timeout_is_a_timeout(self):
        assert isinstance(RequestTimeoutError("late"), TimeoutError)

    def test_command_error_code(self):
        error = CommandError("nope", code="not_found", tool="trace/get")

        assert error.code == "not_found"
        assert error.to_detail()["code"] == "not_found"
        assert error.tool == "trace/get"


class TestResolutionErrors:
    def test_hierarchy(self):
        assert issubclass(NotFoundError, ResolutionError)
        assert issubclass(AmbiguousError, ResolutionError)
        assert issubclass(IdentityConflictError, AmbiguousError)

    def test_detail(self):
        error = AmbiguousError(
            "two matches",
            reference="lamp",
            candidates=[{"entity_id": "automation.a"}, {"entity_id": "automation.b"}],
            reason="multiple_matches",
        )

        detail = error.to_detail()

        assert detail["reference"] == "lamp"
        assert len(detail["candidates"]) == 2
        assert detail["reason"] == "multiple_matches"


class TestMutationErrors:
    def test_validation_errors_list(self):
        error = ValidationError("bad", errors=["trigger: required"])
        assert error.to_detail()["errors"] == ["trigger: required"]

    def test_verification_detail(self):
        error = VerificationError(
            "diverged",
            expected={"alias": "A"},
            observed={"alias": "B"},
            fields=["alias"],
        )

        detail = error.to_detail()

        assert detail["expected"] == {"alias": "A"}
        assert detail["observed"] == {"alias": "B"}
        assert detail["mismatched_fields"] == ["alias"]
