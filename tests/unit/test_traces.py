"""Unit tests for TraceReader."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from hassbridge.exceptions import NotFoundError, NotReadyError
from hassbridge.ha.traces import TraceSummary
from tests.fakes import Wired


def _trace(run_id: str, start: str, execution: str = "finished", **extra: object) -> dict[str, object]:
    return {
        "run_id": run_id,
        "timestamp": {"start": start, "finish": start},
        "state": "stopped",
        "script_execution": execution,
        "last_step": "action/0",
        **extra,
    }


@pytest.fixture
def traced(wired: Wired) -> Wired:
    wired.ha.add_automation("1001", "Office Lamp")
    wired.ha.traces["1001"] = [
        _trace("r1", "2026-01-01T08:00:00+00:00"),
        _trace("r3", "2026-01-03T08:00:00+00:00", "error", error="Service not found"),
        _trace("r2", "2026-01-02T08:00:00+00:00", "failed_conditions"),
    ]
    return wired


class TestTraceSummary:
    def test_timestamp_dict_uses_start(self) -> None:
        summary = TraceSummary.model_validate(_trace("r1", "2026-01-01T08:00:00+00:00"))

        assert summary.timestamp == "2026-01-01T08:00:00+00:00"
        assert summary.started_at == datetime(2026, 1, 1, 8, tzinfo=timezone.utc)

    def test_has_error_from_execution(self) -> None:
        assert TraceSummary(run_id="x", script_execution="error").has_error is True
        assert TraceSummary(run_id="x", script_execution="finished").has_error is False

    def test_extra_fields_kept(self) -> None:
        summary = TraceSummary.model_validate({"run_id": "x", "trigger": "state of light.a"})
        assert summary.model_extra == {"trigger": "state of light.a"}


class TestListTraces:
    @pytest.mark.asyncio
    async def test_newest_first_by_internal_id(self, traced: Wired) -> None:
        traces = await traced.traces.list_traces("Office Lamp")

        assert [t.run_id for t in traces] == ["r3", "r2", "r1"]

    @pytest.mark.asyncio
    async def test_filters(self, traced: Wired) -> None:
        errors = await traced.traces.list_traces("office_lamp", has_error=True)
        clean = await traced.traces.list_traces("office_lamp", has_error=False, limit=1)
        recent = await traced.traces.list_traces("office_lamp", since="2026-01-02T00:00:00+00:00")
        skipped = await traced.traces.list_traces(
            "office_lamp", script_execution="failed_conditions"
        )

        assert [t.run_id for t in errors] == ["r3"]
        assert [t.run_id for t in clean] == ["r2"]
        assert [t.run_id for t in recent] == ["r3", "r2"]
        assert [t.run_id for t in skipped] == ["r2"]

    @pytest.mark.asyncio
    async def test_no_traces(self, wired: Wired) -> None:
        wired.ha.add_automation("2002", "Quiet One")

        assert await wired.traces.list_traces("quiet_one") == []

    @pytest.mark.asyncio
    async def test_requires_socket(self, traced: Wired) -> None:
        traced.ha.connected = False

        with pytest.raises(NotReadyError):
            await traced.traces.list_traces("office_lamp")


class TestGetTrace:
    @pytest.mark.asyncio
    async def test_get_trace(self, traced: Wired) -> None:
        trace = await traced.traces.get_trace("office_lamp", "r3")

        assert trace["error"] == "Service not found"

    @pytest.mark.asyncio
    async def test_unknown_run(self, traced: Wired) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await traced.traces.get_trace("office_lamp", "nope")

        assert exc_info.value.reason == "no_trace"
