"""Tests for obd_ble_client.transport.ble -- BleakTransport against a fake bleak."""

from __future__ import annotations

import asyncio
import sys
import time
import types
from types import SimpleNamespace
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest

from obd_ble_client.config import (
    NUS_RX_CHAR_UUID,
    NUS_SERVICE_UUID,
    NUS_TX_CHAR_UUID,
    ClientSettings,
)
from obd_ble_client.connection import ConnectionState, ConnectionStateMachine
from obd_ble_client.schemas import DiscoveredDevice
from obd_ble_client.transport.base import TransportError, TransportListener
from obd_ble_client.transport.ble import BleakTransport

ADAPTER = DiscoveredDevice(
    address="C4:7F:51:00:10:02",
    name="OBD2_Simulator_BLE",
    service_uuids=[NUS_SERVICE_UUID],
)


# ---------------------------------------------------------------------------
# Fake bleak
# ---------------------------------------------------------------------------


class FakeBleakError(Exception):
    pass


class _Service:
    def __init__(self, chars: Dict[str, List[str]]) -> None:
        self._chars = chars

    def get_characteristic(self, uuid: str) -> Any:
        if uuid not in self._chars:
            return None
        return SimpleNamespace(uuid=uuid, properties=self._chars[uuid])


class _Services:
    def __init__(self, services: Dict[str, Dict[str, List[str]]]) -> None:
        self._services = services

    def get_service(self, uuid: str) -> Optional[_Service]:
        if uuid not in self._services:
            return None
        return _Service(self._services[uuid])


class _FakeClient:
    def __init__(self, radio: "_Radio", device: Any, disconnected_callback: Any) -> None:
        self.radio = radio
        self.address = getattr(device, "address", device)
        self.disconnected_callback = disconnected_callback
        self.connected = False
        self.disconnect_calls = 0
        self.notify_callback: Optional[Callable[[Any, bytearray], None]] = None
        self.writes: List[Tuple[Any, bytes, bool]] = []
        radio.clients.append(self)

    @property
    def services(self) -> _Services:
        return _Services(self.radio.services)

    async def connect(self) -> bool:
        if self.radio.connect_delay:
            await asyncio.sleep(self.radio.connect_delay)
        if self.radio.connect_error is not None:
            raise self.radio.connect_error
        self.connected = True
        return True

    async def start_notify(self, char: Any, callback: Any) -> None:
        if self.radio.notify_delay:
            await asyncio.sleep(self.radio.notify_delay)
        if self.radio.notify_error is not None:
            raise self.radio.notify_error
        self.notify_callback = callback

    async def write_gatt_char(self, char: Any, data: bytes, response: bool = True) -> None:
        if self.radio.write_error is not None:
            raise self.radio.write_error
        self.writes.append((char, data, response))

    async def disconnect(self) -> bool:
        was_connected = self.connected
        self.connected = False
        if was_connected and self.disconnected_callback is not None:
            self.disconnected_callback(self)
        self.disconnect_calls += 1
        return True


class _FakeScanner:
    def __init__(self, radio: "_Radio", detection_callback: Any) -> None:
        self.radio = radio
        self.callback = detection_callback
        self.running = False

    async def start(self) -> None:
        self.running = True
        self.radio.scan_starts += 1
        for device, advertisement in self.radio.advertisements:
            self.callback(device, advertisement)

    async def stop(self) -> None:
        self.running = False


class _Radio:
    """Programmable stand-in for the bleak package and the air around it."""

    def __init__(self) -> None:
        self.clients: List[_FakeClient] = []
        self.advertisements: List[Tuple[Any, Any]] = []
        self.scan_starts = 0
        self.services: Dict[str, Dict[str, List[str]]] = {
            NUS_SERVICE_UUID: {
                NUS_TX_CHAR_UUID: ["write-without-response"],
                NUS_RX_CHAR_UUID: ["notify"],
            }
        }
        self.connect_delay = 0.0
        self.notify_delay = 0.0
        self.connect_error: Optional[Exception] = None
        self.notify_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None

    def advertise(self, address: str, local_name: str, service_uuids: List[str]) -> None:
        self.advertisements.append(
            (
                SimpleNamespace(address=address, name=None),
                SimpleNamespace(local_name=local_name, service_uuids=service_uuids),
            )
        )

    def open_links(self) -> int:
        return sum(1 for client in self.clients if client.connected)

    def modules(self) -> Tuple[types.ModuleType, types.ModuleType]:
        radio = self
        bleak = types.ModuleType("bleak")
        exc = types.ModuleType("bleak.exc")
        exc.BleakError = FakeBleakError  # type: ignore[attr-defined]
        bleak.exc = exc  # type: ignore[attr-defined]

        def client_factory(device: Any, disconnected_callback: Any = None) -> _FakeClient:
            return _FakeClient(radio, device, disconnected_callback)

        def scanner_factory(detection_callback: Any) -> _FakeScanner:
            return _FakeScanner(radio, detection_callback)

        bleak.BleakClient = client_factory  # type: ignore[attr-defined]
        bleak.BleakScanner = scanner_factory  # type: ignore[attr-defined]
        return bleak, exc


class _Listener(TransportListener):
    def __init__(self) -> None:
        self.devices: List[DiscoveredDevice] = []
        self.data: List[bytes] = []
        self.links_lost = 0

    def on_device_discovered(self, device: DiscoveredDevice) -> None:
        self.devices.append(device)

    def on_data_received(self, data: bytes) -> None:
        self.data.append(data)

    def on_link_lost(self) -> None:
        self.links_lost += 1


def _wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def _make_transport(connect_timeout: float = 1.0) -> BleakTransport:
    return BleakTransport(
        NUS_SERVICE_UUID,
        NUS_TX_CHAR_UUID,
        NUS_RX_CHAR_UUID,
        connect_timeout=connect_timeout,
    )


@pytest.fixture()
def radio(monkeypatch: pytest.MonkeyPatch) -> _Radio:
    radio = _Radio()
    bleak, exc = radio.modules()
    monkeypatch.setitem(sys.modules, "bleak", bleak)
    monkeypatch.setitem(sys.modules, "bleak.exc", exc)
    return radio


@pytest.fixture()
def ble(radio: _Radio) -> Generator[BleakTransport, None, None]:
    transport = _make_transport()
    yield transport
    transport.close()


@pytest.fixture()
def listener(ble: BleakTransport) -> _Listener:
    listener = _Listener()
    ble.bind(listener)
    return listener


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def test_scan_reports_advertisements(radio, ble, listener) -> None:
    radio.advertise("C4:7F:51:00:10:02", "OBD2_Simulator_BLE", [NUS_SERVICE_UUID.upper()])
    ble.start_scan()
    assert _wait_for(lambda: len(listener.devices) == 1)

    device = listener.devices[0]
    assert device.name == "OBD2_Simulator_BLE"
    assert device.advertises(NUS_SERVICE_UUID)
    ble.stop_scan()


def test_scan_without_bleak_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setitem(sys.modules, "bleak", None)
    transport = _make_transport()
    with pytest.raises(TransportError, match="bleak is required"):
        transport.start_scan()
    with pytest.raises(TransportError):
        transport.start_connect(ADAPTER)
    transport.close()


# ---------------------------------------------------------------------------
# Connecting
# ---------------------------------------------------------------------------


def test_connect_subscribes_and_forwards_notifications(radio, ble, listener) -> None:
    assert ble.connect(ADAPTER) is True
    client = radio.clients[0]
    assert client.connected
    assert client.notify_callback is not None

    client.notify_callback(None, bytearray(b"41 0C 1A F8\r\r>"))
    assert listener.data == [b"41 0C 1A F8\r\r>"]


@pytest.mark.parametrize(
    "services",
    [
        {},
        {NUS_SERVICE_UUID: {NUS_TX_CHAR_UUID: ["write"]}},
        {NUS_SERVICE_UUID: {NUS_TX_CHAR_UUID: ["write"], NUS_RX_CHAR_UUID: ["read"]}},
    ],
    ids=["no-service", "no-rx", "rx-not-notifiable"],
)
def test_incomplete_service_releases_link(radio, ble, listener, services) -> None:
    radio.services = services
    assert ble.connect(ADAPTER) is False
    assert radio.open_links() == 0
    assert listener.links_lost == 0
    with pytest.raises(TransportError):
        ble.send(b"010C\r")


def test_connect_error_reports_failure(radio, ble) -> None:
    radio.connect_error = FakeBleakError("device not found")
    assert ble.connect(ADAPTER) is False
    assert radio.open_links() == 0


def test_subscribe_error_releases_link(radio, ble) -> None:
    radio.notify_error = FakeBleakError("notify refused")
    assert ble.connect(ADAPTER) is False
    assert radio.clients[0].disconnect_calls == 1
    assert radio.open_links() == 0


def test_connect_timeout_releases_link(radio) -> None:
    radio.notify_delay = 5.0
    transport = _make_transport(connect_timeout=0.2)
    try:
        assert transport.connect(ADAPTER) is False
        assert radio.open_links() == 0
    finally:
        transport.close()


def test_cancelled_connect_releases_link(radio, ble) -> None:
    radio.notify_delay = 5.0
    future = ble.start_connect(ADAPTER)
    assert _wait_for(lambda: radio.open_links() == 1)
    future.cancel()
    assert _wait_for(lambda: radio.open_links() == 0)


def test_start_connect_returns_immediately(radio, ble) -> None:
    radio.connect_delay = 0.5
    started = time.monotonic()
    future = ble.start_connect(ADAPTER)
    assert time.monotonic() - started < 0.25
    assert not future.done()
    assert future.result(timeout=2.0) is True


# ---------------------------------------------------------------------------
# Link lifetime
# ---------------------------------------------------------------------------


def test_send_writes_without_response(radio, ble) -> None:
    assert ble.connect(ADAPTER)
    ble.send(b"010C\r")
    client = radio.clients[0]
    assert _wait_for(lambda: len(client.writes) == 1)
    char, data, response = client.writes[0]
    assert char.uuid == NUS_TX_CHAR_UUID
    assert data == b"010C\r"
    assert response is False


def test_send_without_link_raises(ble) -> None:
    with pytest.raises(TransportError):
        ble.send(b"010C\r")


def test_failed_write_reported_as_link_loss(radio, ble, listener) -> None:
    assert ble.connect(ADAPTER)
    radio.write_error = FakeBleakError("write failed")
    ble.send(b"010C\r")
    assert _wait_for(lambda: listener.links_lost == 1)
    with pytest.raises(TransportError):
        ble.send(b"010D\r")


def test_own_disconnect_is_not_link_loss(radio, ble, listener) -> None:
    assert ble.connect(ADAPTER)
    client = radio.clients[0]
    ble.disconnect()
    assert _wait_for(lambda: client.disconnect_calls == 1)
    assert not client.connected
    assert listener.links_lost == 0


def test_peer_disconnect_is_link_loss(radio, ble, listener) -> None:
    assert ble.connect(ADAPTER)
    client = radio.clients[0]
    client.disconnected_callback(client)
    assert listener.links_lost == 1
    with pytest.raises(TransportError):
        ble.send(b"010C\r")


def test_close_releases_link_and_thread(radio) -> None:
    transport = _make_transport()
    assert transport.connect(ADAPTER)
    thread = transport._thread
    assert thread is not None and thread.is_alive()

    transport.close()
    assert not thread.is_alive()
    assert radio.open_links() == 0
    transport.close()


# ---------------------------------------------------------------------------
# Driven by the state machine
# ---------------------------------------------------------------------------


def _poll_until(machine: ConnectionStateMachine, state: ConnectionState) -> bool:
    def reached() -> bool:
        machine.poll()
        return machine.state is state

    return _wait_for(reached)


def test_poll_never_waits_for_connect(radio, ble) -> None:
    radio.advertise(ADAPTER.address, ADAPTER.name, [NUS_SERVICE_UUID])
    radio.connect_delay = 0.5
    machine = ConnectionStateMachine(ble, ClientSettings(obd_transport="ble"))
    machine.start()
    assert _wait_for(lambda: machine.state is ConnectionState.CONNECTING)

    started = time.monotonic()
    machine.poll()
    assert time.monotonic() - started < 0.25
    assert machine.state is ConnectionState.CONNECTING

    assert _poll_until(machine, ConnectionState.INITIALIZING)
    assert radio.open_links() == 1
    machine.stop()
    assert _wait_for(lambda: radio.open_links() == 0)


def test_stop_while_connecting_releases_link(radio, ble) -> None:
    radio.advertise(ADAPTER.address, ADAPTER.name, [NUS_SERVICE_UUID])
    radio.connect_delay = 0.3
    machine = ConnectionStateMachine(ble, ClientSettings(obd_transport="ble"))
    machine.start()
    assert _wait_for(lambda: machine.state is ConnectionState.CONNECTING)
    machine.poll()
    machine.stop()

    assert _wait_for(lambda: len(radio.clients) == 1 and radio.clients[0].disconnect_calls == 1)
    assert radio.open_links() == 0
    assert machine.state is ConnectionState.DISCONNECTED
