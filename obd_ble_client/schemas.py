"""Pydantic v2 models for the client's outward observability surface.

Everything here is a snapshot: readers poll the client and get a copy,
never a reference to live state.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

class DiscoveredDevice(BaseModel):
    """A device reported by the transport during a scan."""

    address: str = Field(..., description="Transport address, e.g. BLE MAC")
    name: str = Field(default="", description="Advertised local name")
    service_uuids: List[str] = Field(
        default_factory=list,
        description="Advertised service UUIDs",
    )

    model_config = {"frozen": True}

    @field_validator("service_uuids")
    @classmethod
    def normalise_uuids(cls, v: List[str]) -> List[str]:
        return [uuid.lower() for uuid in v]

    def advertises(self, service_uuid: str) -> bool:
        """Return ``True`` if *service_uuid* is in the advertisement."""
        return service_uuid.lower() in self.service_uuids


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

class PIDReading(BaseModel):
    """Last successfully decoded value of one telemetry field."""

    value: float = Field(..., description="Decoded physical value")
    unit: str = Field(..., description="Engineering unit, e.g. 'rpm'")
    updated_at: float = Field(..., description="Clock time of the update")


class TelemetrySnapshot(BaseModel):
    """Current telemetry, each field as of its own last update."""

    readings: Dict[str, PIDReading] = Field(default_factory=dict)
    last_update: Optional[float] = Field(
        default=None,
        description="Clock time of the most recent successful parse",
    )

    def value(self, field: str) -> Optional[float]:
        reading = self.readings.get(field)
        return reading.value if reading is not None else None


class StatisticsSnapshot(BaseModel):
    """Command and connection counters."""

    total_commands: int = 0
    successful_commands: int = 0
    failed_commands: int = 0
    reconnect_attempts: int = 0
    average_response_ms: Optional[float] = Field(
        default=None,
        description="Two-sample rolling average; None before the first reply",
    )
    success_rate: float = Field(default=0.0, description="Percent, 0-100")
    connected_seconds: float = Field(
        default=0.0,
        description="Cumulative uptime of finished sessions",
    )
    uptime_seconds: float = Field(
        default=0.0,
        description="Uptime of the current session, 0 when not connected",
    )


class ClientStatus(BaseModel):
    """Everything an outside observer can poll in one call."""

    state: str
    telemetry: TelemetrySnapshot
    statistics: StatisticsSnapshot
