"""BleakTransport -- BLE UART link to an ELM327 bridge.

``bleak`` is imported lazily inside methods so that simulation mode
works without it installed.  bleak is asyncio-based while the client is
polled synchronously, so every coroutine runs on a private event loop
in a daemon thread.  Scanner detections, notifications and disconnects
therefore reach the listener on that thread.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import threading
from typing import Any, Callable, Coroutine, Dict, Optional

import structlog

from obd_ble_client.schemas import DiscoveredDevice
from obd_ble_client.transport.base import Transport, TransportError

logger = structlog.get_logger(__name__)


class BleakTransport(Transport):
    """Nordic-UART style transport: write commands to TX, replies on RX."""

    def __init__(
        self,
        service_uuid: str,
        tx_char_uuid: str,
        rx_char_uuid: str,
        *,
        connect_timeout: float = 10.0,
    ) -> None:
        super().__init__()
        self._service_uuid = service_uuid.lower()
        self._tx_uuid = tx_char_uuid.lower()
        self._rx_uuid = rx_char_uuid.lower()
        self._connect_timeout = connect_timeout

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._scanner: Any = None  # bleak.BleakScanner (lazy)
        self._client: Any = None  # bleak.BleakClient of the open link
        self._tx_char: Any = None
        self._connecting: Optional[concurrent.futures.Future] = None
        # address -> BLEDevice, so connect() reuses the scanned handle
        self._seen: Dict[str, Any] = {}

    # -- discovery ----------------------------------------------------------

    def start_scan(self) -> None:
        _require_bleak()
        self._fire(self._start_scan(), "ble_scan_failed")

    def stop_scan(self) -> None:
        if self._scanner is not None:
            self._fire(self._stop_scan(), "ble_scan_stop_failed")

    async def _start_scan(self) -> None:
        bleak = _import_bleak()
        if self._scanner is None:
            self._scanner = bleak.BleakScanner(detection_callback=self._on_detection)
        self._seen.clear()
        try:
            await self._scanner.start()
        except bleak.exc.BleakError as exc:
            logger.warning("ble_scan_failed", error=str(exc))

    async def _stop_scan(self) -> None:
        bleak = _import_bleak()
        try:
            await self._scanner.stop()
        except bleak.exc.BleakError as exc:
            logger.debug("ble_scan_stop_failed", error=str(exc))

    def _on_detection(self, device: Any, advertisement: Any) -> None:
        self._seen[device.address] = device
        if self.listener is None:
            return
        self.listener.on_device_discovered(
            DiscoveredDevice(
                address=device.address,
                name=advertisement.local_name or device.name or "",
                service_uuids=list(advertisement.service_uuids or []),
            )
        )

    # -- lifecycle ----------------------------------------------------------

    def start_connect(self, device: DiscoveredDevice) -> concurrent.futures.Future:
        """Open the link on the transport thread; the future never blocks the caller.

        The future resolves to ``False`` when the link, the service or
        either characteristic cannot be set up within ``connect_timeout``.
        """
        _require_bleak()
        future = self._submit(self._connect(device.address))
        self._connecting = future
        return future

    def connect(self, device: DiscoveredDevice) -> bool:
        return self.start_connect(device).result()

    async def _connect(self, address: str) -> bool:
        bleak = _import_bleak()
        client = bleak.BleakClient(
            self._seen.get(address, address),
            disconnected_callback=self._on_disconnected,
        )
        try:
            tx_char = await asyncio.wait_for(
                self._open(client), timeout=self._connect_timeout
            )
        except (bleak.exc.BleakError, asyncio.TimeoutError, OSError) as exc:
            logger.warning(
                "ble_connect_failed",
                address=address,
                error=str(exc) or type(exc).__name__,
            )
            tx_char = None
        except asyncio.CancelledError:
            await self._release(client)
            raise

        if tx_char is None:
            await self._release(client)
            return False

        self._client = client
        self._tx_char = tx_char
        logger.info("ble_connected", address=address)
        return True

    async def _open(self, client: Any) -> Any:
        """Connect *client* and subscribe to RX; return the TX characteristic."""
        await client.connect()
        service = client.services.get_service(self._service_uuid)
        if service is None:
            logger.warning("ble_service_missing", uuid=self._service_uuid)
            return None

        tx_char = service.get_characteristic(self._tx_uuid)
        rx_char = service.get_characteristic(self._rx_uuid)
        if tx_char is None or rx_char is None:
            logger.warning(
                "ble_characteristic_missing",
                tx_found=tx_char is not None,
                rx_found=rx_char is not None,
            )
            return None
        if "notify" not in rx_char.properties:
            logger.warning("ble_rx_not_notifiable", uuid=self._rx_uuid)
            return None

        await client.start_notify(rx_char, self._on_notify)
        return tx_char

    async def _release(self, client: Any) -> None:
        """Tear down a link that never became the transport's own."""
        bleak = _import_bleak()
        try:
            await client.disconnect()
        except (bleak.exc.BleakError, OSError) as exc:
            logger.debug("ble_release_failed", error=str(exc))

    def disconnect(self) -> None:
        client, self._client = self._client, None
        self._tx_char = None
        if client is not None:
            self._fire(client.disconnect(), "ble_disconnect_failed")

    def close(self) -> None:
        if self._loop is None:
            return
        connecting, self._connecting = self._connecting, None
        if connecting is not None:
            # A link opened by it is released below.
            concurrent.futures.wait([connecting], timeout=self._connect_timeout)

        pending = []
        if self._scanner is not None:
            pending.append(self._submit(self._stop_scan()))
        client, self._client = self._client, None
        self._tx_char = None
        if client is not None:
            pending.append(self._submit(client.disconnect()))
        # wait() collects failures instead of raising them.
        concurrent.futures.wait(pending, timeout=self._connect_timeout)

        loop, thread = self._loop, self._thread
        self._loop, self._thread = None, None
        loop.call_soon_threadsafe(loop.stop)
        if thread is not None:
            thread.join(timeout=self._connect_timeout)
        loop.close()

    def _on_disconnected(self, client: Any) -> None:
        if client is not self._client:
            # Our own disconnect() already released it.
            return
        self._client = None
        self._tx_char = None
        logger.info("ble_link_lost", address=client.address)
        if self.listener is not None:
            self.listener.on_link_lost()

    # -- data ---------------------------------------------------------------

    def send(self, data: bytes) -> None:
        client, tx_char = self._client, self._tx_char
        if client is None or tx_char is None:
            raise TransportError("BleakTransport is not connected")
        self._fire(
            client.write_gatt_char(tx_char, data, response=False),
            "ble_write_failed",
            on_failure=lambda: self._on_disconnected(client),
        )

    def _on_notify(self, _sender: Any, data: bytearray) -> None:
        if self.listener is not None:
            self.listener.on_data_received(bytes(data))

    # -- internal -----------------------------------------------------------

    def _submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                target=self._loop.run_forever,
                name="ble-transport",
                daemon=True,
            )
            self._thread.start()
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _fire(
        self,
        coro: Coroutine[Any, Any, Any],
        event: str,
        *,
        on_failure: Optional[Callable[[], None]] = None,
    ) -> concurrent.futures.Future:
        """Submit *coro* without waiting; log *event* if it raises."""

        def _done(future: concurrent.futures.Future) -> None:
            if future.cancelled():
                return
            exc = future.exception()
            if exc is None:
                return
            logger.warning(event, error=str(exc), error_type=type(exc).__name__)
            if on_failure is not None:
                on_failure()

        future = self._submit(coro)
        future.add_done_callback(_done)
        return future


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _import_bleak() -> Any:
    """Lazy-import bleak so it's only needed for a real adapter."""
    try:
        import bleak  # type: ignore[import-untyped]
        import bleak.exc  # noqa: F401
        return bleak
    except ImportError as exc:
        raise ImportError(
            "bleak is required for BLE mode. "
            "Install it with: pip install bleak"
        ) from exc


def _require_bleak() -> None:
    """Fail fast, on the caller's thread, when bleak is missing."""
    try:
        _import_bleak()
    except ImportError as exc:
        raise TransportError(str(exc)) from exc
