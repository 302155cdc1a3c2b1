"""Automation run traces.

HA records the last runs of every automation and exposes them over the
WebSocket API only (``trace/list`` and ``trace/get``), keyed by the
automation's internal config id rather than its entity id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from hassbridge.exceptions import CommandError, NotFoundError, NotReadyError
from hassbridge.ha.identity import IdentityResolver, ResolvedIdentity
from hassbridge.ha.websocket import HAWebSocketClient

logger = logging.getLogger(__name__)


class TraceSummary(BaseModel):
    """One entry of ``trace/list``."""

    model_config = ConfigDict(extra="allow")

    run_id: str
    timestamp: str | None = None
    state: str | None = None
    script_execution: str | None = None
    last_step: str | None = None
    error: str | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _start_time(cls, v: Any) -> Any:
        # HA sends {"start": ..., "finish": ...}
        if isinstance(v, dict):
            return v.get("start")
        return v

    @property
    def has_error(self) -> bool:
        return bool(self.error) or self.script_execution == "error"

    @property
    def started_at(self) -> datetime | None:
        return _parse_time(self.timestamp)


def _parse_time(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


class TraceReader:
    """Lists and fetches automation traces by caller reference."""

    def __init__(self, ws: HAWebSocketClient, resolver: IdentityResolver) -> None:
        self._ws = ws
        self._resolver = resolver

    async def _resolve(self, reference: str) -> ResolvedIdentity:
        if not self._ws.is_connected():
            raise NotReadyError(
                "Automation traces are only available over the WebSocket API",
                "trace",
            )
        return await self._resolver.resolve(reference, "automation")

    async def list_traces(
        self,
        reference: str,
        *,
        has_error: bool | None = None,
        state: str | None = None,
        script_execution: str | None = None,
        since: str | datetime | None = None,
        limit: int | None = None,
    ) -> list[TraceSummary]:
        """Traces of one automation, newest first.

        Args:
            reference: Automation entity id, slug or alias.
            has_error: Keep only runs that did (or did not) fail.
            state: Trace state (``running``, ``stopped``, ``debugged``).
            script_execution: How the run ended (``finished``, ``error``, ...).
            since: Drop runs that started before this time.
            limit: Cap on the number of traces returned.
        """
        identity = await self._resolve(reference)
        raw = await self._ws.send(
            {"type": "trace/list", "domain": "automation", "item_id": identity.internal_id}
        )

        traces = [TraceSummary.model_validate(item) for item in raw or [] if item.get("run_id")]
        since_dt = _parse_time(since)
        if has_error is not None:
            traces = [t for t in traces if t.has_error == has_error]
        if state is not None:
            traces = [t for t in traces if t.state == state]
        if script_execution is not None:
            traces = [t for t in traces if t.script_execution == script_execution]
        if since_dt is not None:
            traces = [t for t in traces if t.started_at is not None and t.started_at >= since_dt]

        traces.sort(key=lambda t: t.started_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        if limit is not None:
            traces = traces[: max(limit, 0)]
        logger.debug("%d trace(s) for %s", len(traces), identity.entity_id)
        return traces

    async def get_trace(self, reference: str, run_id: str) -> dict[str, Any]:
        """Full trace of one run.

        Raises:
            NotFoundError: HA has no trace with that run id.
        """
        identity = await self._resolve(reference)
        try:
            trace = await self._ws.send(
                {
                    "type": "trace/get",
                    "domain": "automation",
                    "item_id": identity.internal_id,
                    "run_id": run_id,
                }
            )
        except CommandError as e:
            if e.code == "not_found":
                raise NotFoundError(
                    f"No trace '{run_id}' for {identity.entity_id}",
                    reference=run_id,
                    reason="no_trace",
                ) from e
            raise
        return trace or {}


__all__ = ["TraceReader", "TraceSummary"]
