"""MLflow tracing for Home Assistant client operations.

Provides span decorators and param/metric logging. MLflow is an optional
dependency: when it is not installed, or no tracking URI is configured,
every helper here is a no-op and decorated functions run untraced.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from hassbridge.settings import get_settings

if TYPE_CHECKING:
    import types

_logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

_mlflow_available: bool = True
_mlflow_initialized: bool = False


def _safe_import_mlflow() -> types.ModuleType | None:
    """Safely import MLflow, returning None if unavailable."""
    global _mlflow_available
    if not _mlflow_available:
        return None
    try:
        import mlflow

        # Re-suppress noisy loggers after MLflow configures its own
        from hassbridge.logging_config import suppress_noisy_loggers

        suppress_noisy_loggers()
        return mlflow
    except ImportError:
        _mlflow_available = False
        _logger.debug("MLflow not installed, tracing disabled")
        return None


def _ensure_mlflow_initialized() -> types.ModuleType | None:
    """Return the mlflow module once it is pointed at the configured tracking URI."""
    global _mlflow_initialized, _mlflow_available

    uri = get_settings().mlflow_tracking_uri
    if not uri:
        return None

    mlflow = _safe_import_mlflow()
    if mlflow is None or _mlflow_initialized:
        return mlflow

    try:
        mlflow.set_tracking_uri(uri)
        _mlflow_initialized = True
        return mlflow
    except Exception as e:
        _mlflow_available = False
        _logger.debug("MLflow initialization failed: %s", e)
        return None


def log_param(key: str, value: object) -> None:
    """Log a parameter to the active run."""
    mlflow = _ensure_mlflow_initialized()
    if mlflow is None:
        return

    try:
        if mlflow.active_run():
            mlflow.log_param(key, value)
    except Exception as e:
        _logger.debug("Failed to log param %s: %s", key, e)


def log_metric(key: str, value: float, step: int | None = None) -> None:
    """Log a metric to the active run."""
    mlflow = _ensure_mlflow_initialized()
    if mlflow is None:
        return

    try:
        if mlflow.active_run():
            mlflow.log_metric(key, value, step=step)
    except Exception as e:
        _logger.debug("Failed to log metric %s: %s", key, e)


def trace_ha_call(
    name: str,
    span_type: str = "RETRIEVER",
) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """Trace an HA client method with an MLflow span.

    The wrapped function is invoked exactly once; exceptions propagate
    unchanged and are recorded on the span by MLflow.

    Args:
        name: Name for the span (e.g., "ha.search")
        span_type: MLflow span type
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> Any:
                mlflow = _ensure_mlflow_initialized()
                if mlflow is None:
                    return await func(*args, **kwargs)  # type: ignore[misc]
                with mlflow.start_span(name=name, span_type=span_type):
                    return await func(*args, **kwargs)  # type: ignore[misc]

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            mlflow = _ensure_mlflow_initialized()
            if mlflow is None:
                return func(*args, **kwargs)
            with mlflow.start_span(name=name, span_type=span_type):
                return func(*args, **kwargs)

        return sync_wrapper

    return decorator


__all__ = ["log_metric", "log_param", "trace_ha_call"]
