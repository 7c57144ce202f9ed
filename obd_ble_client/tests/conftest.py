"""Shared pytest fixtures for OBD BLE client tests."""

from __future__ import annotations

import concurrent.futures
from typing import Callable, Dict, Generator, List, Optional

import pytest

from obd_ble_client.config import NUS_SERVICE_UUID, ClientSettings
from obd_ble_client.schemas import DiscoveredDevice
from obd_ble_client.transport.base import Transport, TransportError

ADAPTER = DiscoveredDevice(
    address="C4:7F:51:00:10:02",
    name="OBD2_Simulator_BLE",
    service_uuids=[NUS_SERVICE_UUID],
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(Transport):
    """Transport double: records every call, replies only when told to."""

    def __init__(
        self,
        devices: Optional[List[DiscoveredDevice]] = None,
        *,
        connect_ok: bool = True,
    ) -> None:
        super().__init__()
        self.devices = devices if devices is not None else [ADAPTER]
        self.connect_ok = connect_ok
        self.sent: List[str] = []
        self.connected = False
        self.scanning = False
        self.scan_starts = 0
        self.connect_calls = 0
        self.fail_sends = False
        # When set, start_connect() returns a future the test resolves.
        self.hold_connect = False
        self.pending_connects: List[concurrent.futures.Future] = []

    def start_scan(self) -> None:
        self.scanning = True
        self.scan_starts += 1
        for device in self.devices:
            if not self.scanning:
                break
            assert self.listener is not None
            self.listener.on_device_discovered(device)

    def stop_scan(self) -> None:
        self.scanning = False

    def start_connect(self, device: DiscoveredDevice) -> concurrent.futures.Future:
        if not self.hold_connect:
            return super().start_connect(device)
        self.connect_calls += 1
        future: concurrent.futures.Future = concurrent.futures.Future()
        self.pending_connects.append(future)
        return future

    def finish_connect(self, ok: bool = True) -> None:
        """Resolve the oldest held connect as the radio would."""
        self.connected = ok
        self.pending_connects.pop(0).set_result(ok)

    def connect(self, device: DiscoveredDevice) -> bool:
        self.connect_calls += 1
        self.connected = self.connect_ok
        return self.connect_ok

    def disconnect(self) -> None:
        self.connected = False

    def send(self, data: bytes) -> None:
        if not self.connected or self.fail_sends:
            raise TransportError("not connected")
        self.sent.append(data.decode("ascii"))

    # -- test helpers -------------------------------------------------------

    def reply(self, *fragments: str) -> None:
        assert self.listener is not None
        for fragment in fragments:
            self.listener.on_data_received(fragment.encode("ascii"))

    def lose_link(self) -> None:
        self.connected = False
        assert self.listener is not None
        self.listener.on_link_lost()

    @property
    def sent_commands(self) -> List[str]:
        return [line.rstrip("\r") for line in self.sent]


# Replies to the default PID set, keyed by command.
PID_REPLIES: Dict[str, str] = {
    "010C": "41 0C 1A F8",
    "010D": "41 0D 50",
    "0105": "41 05 64",
    "015C": "41 5C 78",
    "012F": "41 2F 7F",
    "0111": "41 11 33",
    "0104": "41 04 40",
    "0110": "41 10 01 F4",
}


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests."""
    from obd_ble_client.transport import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> ClientSettings:
    return ClientSettings(
        obd_transport="sim",
        command_timeout_seconds=2.0,
        command_interval_seconds=0.1,
        reconnect_cooldown_seconds=10.0,
        scan_duration_seconds=10.0,
        auto_reconnect=True,
    )


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def adapter() -> DiscoveredDevice:
    return ADAPTER


@pytest.fixture()
def pid_replies() -> Dict[str, str]:
    return dict(PID_REPLIES)


@pytest.fixture()
def make_transport() -> Callable[..., RecordingTransport]:
    """Factory for transports with custom devices or connect outcome."""
    return RecordingTransport
