"""Adapter transport abstraction layer.

Provides ``Transport`` ABC with two concrete implementations:

* ``SimulationTransport`` -- fixture-based ELM327 emulator, no hardware.
* ``BleakTransport``      -- BLE UART link via bleak (lazy-imported).
"""

from obd_ble_client.transport.base import Transport, TransportError, TransportListener

__all__ = ["Transport", "TransportError", "TransportListener"]
