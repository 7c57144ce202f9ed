"""Main asyncio polling loop for the OBD BLE client."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional

import structlog

from obd_ble_client.config import ClientSettings
from obd_ble_client.connection import ConnectionStateMachine
from obd_ble_client.transport.base import Transport

logger = structlog.get_logger(__name__)


def create_transport(settings: ClientSettings) -> Transport:
    """Factory: return the right transport for the current config.

    ``BleakTransport`` is imported lazily so simulation mode works
    without bleak installed.
    """
    if settings.is_simulation:
        from obd_ble_client.transport.simulation import SimulationTransport

        return SimulationTransport(scenario=settings.obd_sim_scenario)

    from obd_ble_client.transport.ble import BleakTransport

    return BleakTransport(
        service_uuid=settings.service_uuid,
        tx_char_uuid=settings.tx_char_uuid,
        rx_char_uuid=settings.rx_char_uuid,
        connect_timeout=settings.connect_timeout_seconds,
    )


async def run_client(
    settings: ClientSettings,
    *,
    duration: Optional[float] = None,
    transport: Optional[Transport] = None,
) -> ConnectionStateMachine:
    """Run the client until shutdown (or for *duration* seconds).

    Parameters
    ----------
    settings:
        Fully-resolved client configuration.
    duration:
        If given, stop after this many seconds.
    transport:
        Overrides the transport chosen by :func:`create_transport`.

    Returns the stopped client so callers can inspect final statistics.
    """
    shutdown_event = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
    # On Windows, SIGINT is handled by the default KeyboardInterrupt.

    if transport is None:
        transport = create_transport(settings)
    client = ConnectionStateMachine(transport, settings)

    client.start()
    try:
        await _loop(client, settings, shutdown_event, duration=duration)
    finally:
        client.stop()
        transport.close()
        if sys.platform != "win32":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        _log_status(client, "client_stopped")
    return client


async def _loop(
    client: ConnectionStateMachine,
    settings: ClientSettings,
    shutdown_event: asyncio.Event,
    *,
    duration: Optional[float],
) -> None:
    """Poll the client and periodically log its status."""
    loop = asyncio.get_running_loop()
    deadline = None if duration is None else loop.time() + duration
    next_status = loop.time() + settings.status_interval_seconds

    while not shutdown_event.is_set():
        client.poll()

        now = loop.time()
        if now >= next_status:
            _log_status(client, "client_status")
            next_status = now + settings.status_interval_seconds
        if deadline is not None and now >= deadline:
            return

        await _interruptible_sleep(settings.poll_interval_seconds, shutdown_event)


def _log_status(client: ConnectionStateMachine, event: str) -> None:
    status = client.status()
    logger.info(
        event,
        state=status.state,
        telemetry={
            name: round(reading.value, 2)
            for name, reading in status.telemetry.readings.items()
        },
        **status.statistics.model_dump(),
    )


async def _interruptible_sleep(
    seconds: float, event: asyncio.Event
) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
