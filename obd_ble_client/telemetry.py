"""Decoded telemetry values and command/connection statistics."""

from __future__ import annotations

from typing import Dict, Optional

from obd_ble_client.pid_codec import TelemetryField
from obd_ble_client.schemas import PIDReading, StatisticsSnapshot, TelemetrySnapshot


class TelemetryStore:
    """Latest value per telemetry field.

    Fields are updated independently as their PID replies are parsed;
    a failed parse leaves the previous value in place.
    """

    def __init__(self) -> None:
        self._readings: Dict[TelemetryField, PIDReading] = {}
        self._last_update: Optional[float] = None

    def update(
        self, field: TelemetryField, value: float, unit: str, now: float
    ) -> None:
        self._readings[field] = PIDReading(value=value, unit=unit, updated_at=now)
        self._last_update = now

    def get(self, field: TelemetryField) -> Optional[float]:
        reading = self._readings.get(field)
        return reading.value if reading is not None else None

    def snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(
            readings={
                field.value: reading.model_copy()
                for field, reading in self._readings.items()
            },
            last_update=self._last_update,
        )


class Statistics:
    """Counters, rolling latency and connected time."""

    def __init__(self) -> None:
        self.total_commands = 0
        self.successful_commands = 0
        self.failed_commands = 0
        self.reconnect_attempts = 0
        self.average_response_ms: Optional[float] = None
        self.connected_seconds = 0.0
        self.last_connection_time: Optional[float] = None

    # -- command outcomes ---------------------------------------------------

    def record_issued(self) -> None:
        self.total_commands += 1

    def record_success(self, response_ms: float) -> None:
        self.successful_commands += 1
        if self.average_response_ms is None:
            self.average_response_ms = response_ms
        else:
            self.average_response_ms = (self.average_response_ms + response_ms) / 2

    def record_failure(self) -> None:
        self.failed_commands += 1

    # -- connection ---------------------------------------------------------

    def record_reconnect_attempt(self) -> None:
        self.reconnect_attempts += 1

    def record_connected(self, now: float) -> None:
        self.last_connection_time = now

    def record_disconnected(self, now: float) -> float:
        """Fold the session that just ended into the cumulative uptime.

        Returns the length of that session in seconds.
        """
        session = self.uptime(now)
        self.connected_seconds += session
        self.last_connection_time = None
        return session

    # -- derived ------------------------------------------------------------

    @property
    def success_rate(self) -> float:
        """Successful commands as a percentage of those issued."""
        if self.total_commands == 0:
            return 0.0
        return self.successful_commands * 100.0 / self.total_commands

    def uptime(self, now: float) -> float:
        if self.last_connection_time is None:
            return 0.0
        return max(0.0, now - self.last_connection_time)

    def snapshot(self, now: float) -> StatisticsSnapshot:
        return StatisticsSnapshot(
            total_commands=self.total_commands,
            successful_commands=self.successful_commands,
            failed_commands=self.failed_commands,
            reconnect_attempts=self.reconnect_attempts,
            average_response_ms=self.average_response_ms,
            success_rate=self.success_rate,
            connected_seconds=self.connected_seconds,
            uptime_seconds=self.uptime(now),
        )
