"""
Pydantic model for the snapshot handed to publishers.

Defines the MeterSnapshot model: one published reading of the meter with
energy totals in Wh and the estimated signed power in W.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-006)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class MeterSnapshot(BaseModel):
    """A single published snapshot of meter totals and estimated power.

    The device_id and ts are injected by the session (not read from the
    meter), so building a snapshot never touches the wall clock itself.

    Attributes:
        device_id: Identifier of the reading device (configured).
        ts: Timestamp of the snapshot.
        identification: Identification line sent by the meter on sign-on,
            without the leading ``/`` (e.g. ``"ISK5ME162-0033"``).
        serial_number: Meter serial number (register C.1.0), 0 if unknown.
        energy_positive_wh: Cumulative imported energy (1.8.0) in Wh.
        energy_negative_wh: Cumulative exported energy (2.8.0) in Wh.
        power_w: Estimated net power in W.
            Positive = importing, negative = exporting.
        uptime_s: Seconds since the session started.
        diagnostics: Free-form counters (restarts, checksum errors, ...).
    """

    device_id: str
    ts: datetime
    identification: str = ""
    serial_number: int = Field(default=0, ge=0)
    energy_positive_wh: int = Field(ge=0)
    energy_negative_wh: int = Field(ge=0)
    power_w: float
    uptime_s: int = Field(default=0, ge=0)
    diagnostics: dict[str, Any] = Field(default_factory=dict)
