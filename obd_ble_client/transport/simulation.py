"""Fixture-based ELM327 emulator (no hardware required).

Loads scenarios from ``fixtures/simulation_scenarios.json``.  Each
scenario lists the devices seen during a scan and the reply to every
PID request.  Replies are delivered synchronously from :meth:`send`,
split into fragments the way BLE notifications split them.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog

from obd_ble_client.schemas import DiscoveredDevice
from obd_ble_client.transport.base import Transport, TransportError

logger = structlog.get_logger(__name__)

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"

_ELM_VERSION = "ELM327 v1.5"
_REPLY_END = "\r\r>"
_HEX = frozenset("0123456789ABCDEF")


class SimulationTransport(Transport):
    """Emulates a BLE ELM327 adapter from a JSON scenario."""

    def __init__(self, scenario: str = "healthy") -> None:
        super().__init__()
        self._scenario_name = scenario
        self._scenario = _get_scenario(scenario)
        self._scanning = False
        self._connected = False
        self._echo = True
        self._spaces = True
        self.sent: List[str] = []

    # -- discovery ----------------------------------------------------------

    def start_scan(self) -> None:
        self._scanning = True
        for entry in self._scenario.get("devices", []):
            # The listener may stop the scan from inside the callback.
            if not self._scanning or self.listener is None:
                break
            self.listener.on_device_discovered(DiscoveredDevice(**entry))

    def stop_scan(self) -> None:
        self._scanning = False

    @property
    def scanning(self) -> bool:
        return self._scanning

    # -- lifecycle ----------------------------------------------------------

    def connect(self, device: DiscoveredDevice) -> bool:
        if self._scenario.get("connect_fails", False):
            logger.info("sim_connect_refused", address=device.address)
            return False
        known = {entry["address"] for entry in self._scenario.get("devices", [])}
        if device.address not in known:
            return False
        self._connected = True
        self._echo = True
        self._spaces = True
        return True

    def disconnect(self) -> None:
        self._connected = False

    def is_connected(self) -> bool:
        return self._connected

    def drop_link(self) -> None:
        """Simulate the adapter going out of range."""
        if not self._connected:
            return
        self._connected = False
        if self.listener is not None:
            self.listener.on_link_lost()

    # -- data ---------------------------------------------------------------

    def send(self, data: bytes) -> None:
        if not self._connected:
            raise TransportError("SimulationTransport is not connected")
        command = data.decode("ascii").strip().upper()
        self.sent.append(command)

        reply = self._respond(command)
        if reply is None:
            return
        if self._echo:
            reply = command + "\r" + reply
        self._deliver(reply + _REPLY_END)

    # -- internal -----------------------------------------------------------

    def _respond(self, command: str) -> Optional[str]:
        if command.startswith("AT"):
            return self._handle_at(command[2:])
        if command in self._scenario.get("silent_commands", []):
            return None
        if not command or not all(c in _HEX for c in command):
            return "?"
        reply = self._scenario.get("responses", {}).get(command, "NO DATA")
        if not self._spaces and reply != "NO DATA":
            reply = reply.replace(" ", "")
        return reply

    def _handle_at(self, setting: str) -> str:
        if setting == "Z":
            self._echo = True
            self._spaces = True
            return _ELM_VERSION
        if setting in ("E0", "E1"):
            self._echo = setting == "E1"
        elif setting in ("S0", "S1"):
            self._spaces = setting == "S1"
        return "OK"

    def _deliver(self, text: str) -> None:
        if self.listener is None:
            return
        size = max(1, int(self._scenario.get("fragment_size", 20)))
        payload = text.encode("ascii")
        for start in range(0, len(payload), size):
            self.listener.on_data_received(payload[start:start + size])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def _get_scenario(name: str) -> Dict[str, Any]:
    scenarios = _load_scenarios()
    if name not in scenarios:
        available = ", ".join(sorted(scenarios))
        raise ValueError(
            f"Unknown simulation scenario '{name}'. Available: {available}"
        )
    return scenarios[name]
