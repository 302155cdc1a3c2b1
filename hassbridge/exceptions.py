"""hassbridge exception hierarchy.

Base exceptions for the protocol, resolution, validation and verification
layers, all with correlation ID support.

Usage:
    from hassbridge.exceptions import AmbiguousError, TransportError

    try:
        identity = await resolver.resolve("office_lamp")
    except AmbiguousError as e:
        logger.warning("Ambiguous reference %s: %s", e.reference, e.candidates)
"""

import uuid
from typing import Any


class HassBridgeError(Exception):
    """Base exception for all hassbridge errors.

    Carries a correlation_id for tracing errors across layers.
    """

    def __init__(self, message: str, *, correlation_id: str | None = None):
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Error kind reported to callers (the class name)."""
        return type(self).__name__

    def to_detail(self) -> dict[str, Any]:
        """Structured diagnostic detail for caller-facing results."""
        return {"message": str(self), "correlation_id": self.correlation_id}


# =============================================================================
# PROTOCOL / TRANSPORT
# =============================================================================


class HAClientError(HassBridgeError):
    """Errors from Home Assistant client operations.

    Raised when socket or REST calls fail, with optional tool name
    and detail context for diagnostics.
    """

    def __init__(
        self,
        message: str,
        tool: str | None = None,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        correlation_id: str | None = None,
    ):
        self.tool = tool
        self.details = details or {}
        self.status_code = status_code
        super().__init__(message, correlation_id=correlation_id)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        if self.tool:
            detail["tool"] = self.tool
        if self.status_code is not None:
            detail["status_code"] = self.status_code
        detail.update(self.details)
        return detail


class TransportError(HAClientError):
    """The backend could not be reached (socket or HTTP)."""

    pass


class NotReadyError(TransportError):
    """A socket request was issued while the connection was not READY."""

    pass


class ConnectionLostError(TransportError):
    """The connection dropped while a request was in flight."""

    pass


class AuthError(HAClientError):
    """The backend rejected the credential."""

    pass


class RequestTimeoutError(HAClientError, TimeoutError):
    """A correlated response did not arrive before the caller's deadline."""

    pass


class CommandError(HAClientError):
    """The backend answered a command with ``success: false``."""

    def __init__(self, message: str, *, code: str | None = None, **kwargs: Any):
        self.code = code
        super().__init__(message, **kwargs)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        if self.code:
            detail["code"] = self.code
        return detail


# =============================================================================
# IDENTITY RESOLUTION
# =============================================================================


class ResolutionError(HassBridgeError):
    """A caller reference could not be mapped onto one backend object."""

    def __init__(
        self,
        message: str,
        *,
        reference: str,
        candidates: list[dict[str, Any]] | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ):
        self.reference = reference
        self.candidates = candidates or []
        self.reason = reason
        super().__init__(message, **kwargs)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["reference"] = self.reference
        detail["candidates"] = self.candidates
        if self.reason:
            detail["reason"] = self.reason
        return detail


class NotFoundError(ResolutionError):
    """No registry record matches the reference."""

    pass


class AmbiguousError(ResolutionError):
    """More than one registry record matches the reference."""

    pass


class IdentityConflictError(AmbiguousError):
    """Config registry and state registry disagree about the reference."""

    pass


# =============================================================================
# MUTATION
# =============================================================================


class ValidationError(HassBridgeError):
    """A configuration payload is structurally malformed."""

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs: Any):
        self.errors = errors or []
        super().__init__(message, **kwargs)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["errors"] = self.errors
        return detail


class VerificationError(HassBridgeError):
    """A write was applied but the re-read state diverges from the request."""

    def __init__(
        self,
        message: str,
        *,
        expected: dict[str, Any],
        observed: dict[str, Any] | None,
        fields: list[str] | None = None,
        **kwargs: Any,
    ):
        self.expected = expected
        self.observed = observed
        self.fields = fields or []
        super().__init__(message, **kwargs)

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail.update(
            {
                "expected": self.expected,
                "observed": self.observed,
                "mismatched_fields": self.fields,
            }
        )
        return detail


class ConfigurationError(HassBridgeError):
    """Errors from application configuration."""

    pass
