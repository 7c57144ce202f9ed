"""OBD BLE Client -- ELM327 protocol engine over a BLE UART link.

Scans for an adapter, runs the ELM327 initialization sequence and then
polls a fixed set of Mode 01 PIDs one request at a time, decoding the
replies into live telemetry.  A fixture-driven simulation transport
makes the whole pipeline runnable without hardware.
"""

__version__ = "0.1.0"
