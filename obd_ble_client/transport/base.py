"""Abstract byte-stream transport to an ELM327 adapter."""

from __future__ import annotations

import concurrent.futures
from abc import ABC, abstractmethod
from typing import Optional

from obd_ble_client.schemas import DiscoveredDevice


class TransportError(RuntimeError):
    """Raised by a transport when the link cannot carry a request."""


class TransportListener(ABC):
    """Receiver of transport events.

    A transport is bound to exactly one listener via
    :meth:`Transport.bind`; callbacks may arrive on a thread other than
    the one polling the client.
    """

    @abstractmethod
    def on_device_discovered(self, device: DiscoveredDevice) -> None:
        """A device was seen while scanning."""

    @abstractmethod
    def on_data_received(self, data: bytes) -> None:
        """A notification fragment arrived from the adapter."""

    @abstractmethod
    def on_link_lost(self) -> None:
        """The link dropped without :meth:`Transport.disconnect`."""


class Transport(ABC):
    """Unified interface for the adapter link.

    Concrete implementations: ``SimulationTransport`` (in-process ELM327
    emulator) and ``BleakTransport`` (BLE UART service via bleak).
    """

    def __init__(self) -> None:
        self._listener: Optional[TransportListener] = None

    def bind(self, listener: TransportListener) -> None:
        """Route all events of this transport to *listener*."""
        self._listener = listener

    @property
    def listener(self) -> Optional[TransportListener]:
        return self._listener

    @abstractmethod
    def start_scan(self) -> None:
        """Begin reporting nearby devices to the listener."""

    @abstractmethod
    def stop_scan(self) -> None:
        """Stop discovery.  Safe to call when no scan is running."""

    @abstractmethod
    def connect(self, device: DiscoveredDevice) -> bool:
        """Open the link, resolve the UART characteristics and subscribe.

        Returns ``False`` if any step fails; a partially opened link is
        torn down before returning.
        """

    def start_connect(self, device: DiscoveredDevice) -> concurrent.futures.Future:
        """Begin :meth:`connect` and return a future of its outcome.

        Transports whose connect blocks override this to run it
        elsewhere.  The default runs :meth:`connect` inline and returns
        an already resolved future.
        """
        future: concurrent.futures.Future = concurrent.futures.Future()
        try:
            future.set_result(self.connect(device))
        except TransportError as exc:
            future.set_exception(exc)
        return future

    @abstractmethod
    def disconnect(self) -> None:
        """Close the link.  Does not report ``on_link_lost``."""

    @abstractmethod
    def send(self, data: bytes) -> None:
        """Write *data* to the adapter without waiting for a reply.

        Raises :class:`TransportError` when no link is open.
        """

    def close(self) -> None:
        """Release every resource held by the transport."""
        self.disconnect()
