"""Decoders for single-frame Mode 01 PID replies.

Every parser takes the trimmed reply text of an ELM327 adapter (ASCII hex,
spaces allowed) and returns the decoded physical value, or ``None`` when
the reply does not belong to the PID or is malformed.  Parsers fail
closed: a short reply, a mismatched echo or bad hex never yields a
best-effort value and never raises.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple


class TelemetryField(str, Enum):
    """Identifier of a decoded telemetry quantity."""

    RPM = "rpm"
    SPEED = "speed"
    COOLANT_TEMP = "coolant_temp"
    OIL_TEMP = "oil_temp"
    FUEL_LEVEL = "fuel_level"
    THROTTLE_POS = "throttle_pos"
    ENGINE_LOAD = "engine_load"
    AIRFLOW_RATE = "airflow_rate"


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def parse_engine_speed(reply: str) -> Optional[float]:
    """PID 0C: ``(A*256 + B) / 4`` rpm."""
    data = _compact(reply)
    if len(data) < 8 or not data.startswith("410C"):
        return None
    word = _hex_word(data)
    if word is None:
        return None
    return word / 4.0


def parse_vehicle_speed(reply: str) -> Optional[float]:
    """PID 0D: ``A`` km/h."""
    data = _compact(reply)
    if len(data) < 6 or not data.startswith("410D"):
        return None
    a = _hex_byte(data, 4)
    if a is None:
        return None
    return float(a)


def parse_temperature(reply: str) -> Optional[float]:
    """PIDs 05 (coolant) and 5C (oil): ``A - 40`` degC."""
    data = _compact(reply)
    if len(data) < 6 or data[2:4] not in _TEMPERATURE_PIDS:
        return None
    a = _hex_byte(data, 4)
    if a is None:
        return None
    return float(a - 40)


def parse_percentage(reply: str) -> Optional[float]:
    """PIDs 2F, 11 and 04: ``A * 100 / 255`` percent.

    Only the length is checked; the echoed mode/PID is not, since the
    same scaling is shared by several PIDs.
    """
    data = _compact(reply)
    if len(data) < 6:
        return None
    a = _hex_byte(data, 4)
    if a is None:
        return None
    return a * 100.0 / 255.0


def parse_airflow(reply: str) -> Optional[float]:
    """PID 10: ``(A*256 + B) / 100`` g/s."""
    data = _compact(reply)
    if len(data) < 8 or not data.startswith("4110"):
        return None
    word = _hex_word(data)
    if word is None:
        return None
    return word / 100.0


_TEMPERATURE_PIDS = ("05", "5C")


# ---------------------------------------------------------------------------
# Tagged parser variant
# ---------------------------------------------------------------------------

class PidKind(str, Enum):
    """Kind of PID payload; each kind carries its own decoder."""

    ENGINE_SPEED = "engine_speed"
    VEHICLE_SPEED = "vehicle_speed"
    TEMPERATURE = "temperature"
    PERCENTAGE = "percentage"
    AIRFLOW = "airflow"

    def decode(self, reply: str) -> Optional[float]:
        return _DECODERS[self](reply)


_DECODERS: Dict[PidKind, Callable[[str], Optional[float]]] = {
    PidKind.ENGINE_SPEED: parse_engine_speed,
    PidKind.VEHICLE_SPEED: parse_vehicle_speed,
    PidKind.TEMPERATURE: parse_temperature,
    PidKind.PERCENTAGE: parse_percentage,
    PidKind.AIRFLOW: parse_airflow,
}


@dataclass(frozen=True)
class PidDefinition:
    """One pollable telemetry PID."""

    command: str  # e.g. "010C"
    field: TelemetryField
    kind: PidKind
    unit: str


# Polled in this order, one request in flight at a time.
TELEMETRY_PIDS: Tuple[PidDefinition, ...] = (
    PidDefinition("010C", TelemetryField.RPM, PidKind.ENGINE_SPEED, "rpm"),
    PidDefinition("010D", TelemetryField.SPEED, PidKind.VEHICLE_SPEED, "km/h"),
    PidDefinition("0105", TelemetryField.COOLANT_TEMP, PidKind.TEMPERATURE, "degC"),
    PidDefinition("015C", TelemetryField.OIL_TEMP, PidKind.TEMPERATURE, "degC"),
    PidDefinition("012F", TelemetryField.FUEL_LEVEL, PidKind.PERCENTAGE, "percent"),
    PidDefinition("0111", TelemetryField.THROTTLE_POS, PidKind.PERCENTAGE, "percent"),
    PidDefinition("0104", TelemetryField.ENGINE_LOAD, PidKind.PERCENTAGE, "percent"),
    PidDefinition("0110", TelemetryField.AIRFLOW_RATE, PidKind.AIRFLOW, "g/s"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _compact(reply: str) -> str:
    """Strip surrounding whitespace and embedded spaces."""
    return reply.strip().replace(" ", "")


def _hex_byte(data: str, offset: int) -> Optional[int]:
    pair = data[offset:offset + 2]
    # int(..., 16) would accept "+F", " F" or "0x"; only plain hex digits count.
    if len(pair) != 2 or not all(c in _HEX_DIGITS for c in pair):
        return None
    return int(pair, 16)


def _hex_word(data: str) -> Optional[int]:
    """Big-endian two-byte payload at offsets [4:8)."""
    a = _hex_byte(data, 4)
    b = _hex_byte(data, 6)
    if a is None or b is None:
        return None
    return a * 256 + b
