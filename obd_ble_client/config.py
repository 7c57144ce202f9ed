"""Client configuration via environment variables.

Uses pydantic-settings so every field can be overridden with an
env var.  Simulation is the zero-hardware default.

Note: ``env_prefix`` is empty, so field names map directly to env vars
(e.g. ``LOG_LEVEL``, ``OBD_TRANSPORT``).
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings

# Nordic UART Service, as exposed by BLE ELM327 bridges.
NUS_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_TX_CHAR_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_CHAR_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"


class ClientSettings(BaseSettings):
    """OBD BLE client runtime settings."""

    model_config = {"env_prefix": "", "env_file": ".env", "extra": "ignore"}

    # -- transport / device -------------------------------------------------
    obd_transport: str = Field(
        default="sim",
        description="'ble' for a real adapter, or 'sim' for simulation mode",
    )
    device_name: str = Field(
        default="OBD2_Simulator_BLE",
        description="Advertised name to match when the service UUID is absent",
    )
    service_uuid: str = Field(
        default=NUS_SERVICE_UUID,
        description="Advertised service UUID that identifies the adapter",
    )
    tx_char_uuid: str = Field(
        default=NUS_TX_CHAR_UUID,
        description="Characteristic written with commands",
    )
    rx_char_uuid: str = Field(
        default=NUS_RX_CHAR_UUID,
        description="Characteristic notifying adapter replies",
    )
    connect_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound on link setup and characteristic discovery",
    )

    # -- simulation ---------------------------------------------------------
    obd_sim_scenario: str = Field(
        default="healthy",
        description="Simulation scenario name (from simulation_scenarios.json)",
    )

    # -- protocol timing ----------------------------------------------------
    command_timeout_seconds: float = Field(
        default=2.0,
        description="Seconds to wait for a PID reply before failing it",
    )
    command_interval_seconds: float = Field(
        default=0.1,
        description="Minimum seconds between command queue ticks",
    )
    poll_interval_seconds: float = Field(
        default=0.05,
        description="Seconds between polls of the client in the run loop",
    )

    # -- connection health --------------------------------------------------
    auto_reconnect: bool = Field(
        default=True,
        description="Rescan after link loss or connect failure",
    )
    reconnect_cooldown_seconds: float = Field(
        default=10.0,
        description="Minimum dwell in DISCONNECTED/ERROR before rescanning",
    )
    scan_duration_seconds: float = Field(
        default=10.0,
        description="Give up a scan with no matching device after this long",
    )

    # -- behaviour ----------------------------------------------------------
    status_interval_seconds: float = Field(
        default=2.0,
        description="Seconds between client_status log events",
    )
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(
        default="console",
        description="Log output format: 'console' or 'json'",
    )

    # -- derived ------------------------------------------------------------
    @property
    def is_simulation(self) -> bool:
        """Return ``True`` when the client is running in simulation mode."""
        return self.obd_transport.strip().lower() == "sim"
