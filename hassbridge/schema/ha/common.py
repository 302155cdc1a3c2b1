"""Shared types for Home Assistant config schemas."""

from __future__ import annotations

from enum import Enum


class Mode(str, Enum):
    """Home Assistant automation/script execution mode.

    Controls how HA handles new triggers while a previous run is active.
    """

    SINGLE = "single"
    RESTART = "restart"
    QUEUED = "queued"
    PARALLEL = "parallel"


__all__ = ["Mode"]
