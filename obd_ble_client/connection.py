"""Connection lifecycle and the client's single polling entry point.

``ConnectionStateMachine`` owns the link to the adapter: it scans for a
matching device, connects, runs the ELM327 initialization sequence and
then hands each poll to the :class:`CommandQueue`.  It is also the
:class:`TransportListener` the transport reports to, so inbound
fragments, discoveries and link loss all funnel through one lock.

State flow::

    DISCONNECTED -> SCANNING -> CONNECTING -> INITIALIZING -> CONNECTED
                                    |
                                    +-> ERROR

Link loss drops back to DISCONNECTED, a scan with no match in its window
ends there too.  DISCONNECTED and ERROR rescan once the reconnect
cooldown has passed since the last state change.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from enum import Enum
from typing import Callable, Dict, Iterable, Optional, Tuple

import structlog

from obd_ble_client.command_queue import CommandQueue
from obd_ble_client.config import ClientSettings
from obd_ble_client.framer import ResponseFramer
from obd_ble_client.pid_codec import TELEMETRY_PIDS, PidDefinition
from obd_ble_client.schemas import (
    ClientStatus,
    DiscoveredDevice,
    StatisticsSnapshot,
    TelemetrySnapshot,
)
from obd_ble_client.telemetry import Statistics, TelemetryStore
from obd_ble_client.transport.base import Transport, TransportError, TransportListener

logger = structlog.get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    INITIALIZING = "initializing"
    CONNECTED = "connected"
    ERROR = "error"


STATE_LABELS: Dict[ConnectionState, str] = {
    ConnectionState.DISCONNECTED: "DISCONNECTED",
    ConnectionState.SCANNING: "SCANNING",
    ConnectionState.CONNECTING: "CONNECTING",
    ConnectionState.INITIALIZING: "INITIALIZING",
    ConnectionState.CONNECTED: "CONNECTED",
    ConnectionState.ERROR: "ERROR",
}

_unlabelled = set(ConnectionState) - set(STATE_LABELS)
if _unlabelled:
    raise RuntimeError(f"ConnectionState members without a label: {_unlabelled}")

# States in which the transport link is open.
_LINK_UP = (ConnectionState.INITIALIZING, ConnectionState.CONNECTED)

# ELM327 setup: wait before the first command, then (command, settle time).
_INIT_LEAD_IN = 0.5
_INIT_SEQUENCE: Tuple[Tuple[str, float], ...] = (
    ("ATZ", 1.5),  # reset
    ("ATE0", 0.2),  # echo off
    ("ATL0", 0.2),  # linefeeds off
    ("ATS0", 0.2),  # spaces off
    ("ATSP0", 0.5),  # automatic protocol
)

LINE_TERMINATOR = "\r"


class ConnectionStateMachine(TransportListener):
    """Drives scanning, connection, initialization and PID polling.

    Call :meth:`start` once, then :meth:`poll` repeatedly.  Nothing in
    here blocks: the connect is started with
    ``transport.start_connect`` and its future is checked on later
    polls, the same way initialization waits out its delays.  No exception
    escapes :meth:`poll`: transport failures, timeouts and parse errors
    surface only through :attr:`state` and :meth:`statistics`.
    """

    def __init__(
        self,
        transport: Transport,
        settings: Optional[ClientSettings] = None,
        *,
        pids: Iterable[PidDefinition] = TELEMETRY_PIDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings if settings is not None else ClientSettings()
        self._transport = transport
        self._pids = tuple(pids)
        self._clock = clock
        # Re-entrant: transports may call back synchronously from send()
        # or start_scan() while the poll holds the lock.
        self._lock = threading.RLock()

        self._state = ConnectionState.DISCONNECTED
        self._last_state_change = clock()
        self._running = False
        self._target: Optional[DiscoveredDevice] = None
        self._scan_started_at = 0.0
        self._init_step = 0
        self._init_next_at = 0.0
        # Outcome of the transport connect started from CONNECTING.
        self._connecting: Optional[concurrent.futures.Future] = None

        self._telemetry = TelemetryStore()
        self._stats = Statistics()
        self._framer = ResponseFramer()
        self._queue = CommandQueue(
            self._send_command,
            self._telemetry,
            self._stats,
            min_interval=self._settings.command_interval_seconds,
        )

        transport.bind(self)

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Begin scanning for the adapter."""
        with self._lock:
            self._running = True
            if self._state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                self._start_scan(self._clock())

    def stop(self) -> None:
        """Disconnect and stop reconnecting."""
        with self._lock:
            self._running = False
            self.disconnect()

    def disconnect(self) -> None:
        """Close the link and clear every outstanding request.

        Idempotent.  With auto-reconnect on (and the client still
        running) a rescan follows after the cooldown.
        """
        with self._lock:
            now = self._clock()
            if self._state is ConnectionState.SCANNING:
                self._transport.stop_scan()
            elif self._state in _LINK_UP:
                self._transport.disconnect()
                self._end_session(now)
            connecting, self._connecting = self._connecting, None
            if connecting is not None:
                self._abandon_connect(connecting)
            self._target = None
            self._set_state(ConnectionState.DISCONNECTED, now)

    # -- polling ------------------------------------------------------------

    def poll(self) -> None:
        """Advance the state machine by one step."""
        now = self._clock()
        with self._lock:
            if not self._running:
                return
            state = self._state
            if state is ConnectionState.SCANNING:
                self._check_scan_window(now)
            elif state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                self._maybe_reconnect(now)
            elif state in _LINK_UP:
                try:
                    if state is ConnectionState.INITIALIZING:
                        self._advance_init(now)
                    else:
                        self._queue.tick(now)
                        if self._queue.check_timeout(now):
                            # A partial late reply must not prefix the next one.
                            self._framer.clear()
                except TransportError as exc:
                    logger.warning("send_failed", error=str(exc))
                    self._transport.disconnect()
                    self._drop_link(now)
            elif state is ConnectionState.CONNECTING:
                self._check_connect(now)

            target = None
            if self._state is ConnectionState.CONNECTING and self._connecting is None:
                target = self._target

        if target is not None:
            self._begin_connect(target)

    # -- TransportListener --------------------------------------------------

    def on_device_discovered(self, device: DiscoveredDevice) -> None:
        with self._lock:
            if self._state is not ConnectionState.SCANNING:
                # A match already stopped the scan; ignore stragglers.
                return
            matched_by = self._match(device)
            logger.debug(
                "device_discovered",
                address=device.address,
                name=device.name,
                matched_by=matched_by,
            )
            if matched_by is None:
                return

            logger.info(
                "device_matched",
                address=device.address,
                name=device.name,
                matched_by=matched_by,
            )
            self._transport.stop_scan()
            self._target = device
            self._set_state(ConnectionState.CONNECTING, self._clock())

    def on_data_received(self, data: bytes) -> None:
        with self._lock:
            if self._state not in _LINK_UP:
                logger.debug("data_dropped", state=self._state.value, data=data)
                return
            logger.debug("fragment_received", data=data, buffer=self._framer.pending)
            reply = self._framer.feed(data)
            if reply is None:
                return
            logger.debug("reply_received", reply=reply)
            self._queue.on_reply(reply)

    def on_link_lost(self) -> None:
        with self._lock:
            if self._state not in _LINK_UP:
                return
            self._drop_link(self._clock())

    # -- observability ------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def state_label(self) -> str:
        return STATE_LABELS[self.state]

    @property
    def last_state_change(self) -> float:
        with self._lock:
            return self._last_state_change

    @property
    def target(self) -> Optional[DiscoveredDevice]:
        with self._lock:
            return self._target

    @property
    def command_queue(self) -> CommandQueue:
        return self._queue

    @property
    def framer(self) -> ResponseFramer:
        return self._framer

    def is_connected(self) -> bool:
        return self.state in _LINK_UP

    def telemetry(self) -> TelemetrySnapshot:
        with self._lock:
            return self._telemetry.snapshot()

    def statistics(self) -> StatisticsSnapshot:
        with self._lock:
            return self._stats.snapshot(self._clock())

    def status(self) -> ClientStatus:
        with self._lock:
            return ClientStatus(
                state=STATE_LABELS[self._state],
                telemetry=self._telemetry.snapshot(),
                statistics=self._stats.snapshot(self._clock()),
            )

    def success_rate(self) -> float:
        with self._lock:
            return self._stats.success_rate

    def uptime(self) -> float:
        """Seconds since the current session connected, 0 when down."""
        with self._lock:
            return self._stats.uptime(self._clock())

    # -- internal: scanning -------------------------------------------------

    def _start_scan(self, now: float) -> None:
        self._target = None
        self._scan_started_at = now
        self._set_state(ConnectionState.SCANNING, now)
        logger.info(
            "scan_started",
            device_name=self._settings.device_name,
            service_uuid=self._settings.service_uuid,
        )
        try:
            self._transport.start_scan()
        except TransportError as exc:
            logger.warning("scan_failed", error=str(exc))
            self._set_state(ConnectionState.ERROR, now)

    def _check_scan_window(self, now: float) -> None:
        if now - self._scan_started_at <= self._settings.scan_duration_seconds:
            return
        logger.info(
            "scan_timeout",
            device_name=self._settings.device_name,
            seconds=self._settings.scan_duration_seconds,
        )
        self._transport.stop_scan()
        self._set_state(ConnectionState.DISCONNECTED, now)

    def _match(self, device: DiscoveredDevice) -> Optional[str]:
        """Return how *device* matches the target, or ``None``."""
        if device.advertises(self._settings.service_uuid):
            return "service"
        if device.name == self._settings.device_name:
            return "name"
        return None

    def _maybe_reconnect(self, now: float) -> None:
        if not self._settings.auto_reconnect:
            return
        if now - self._last_state_change <= self._settings.reconnect_cooldown_seconds:
            return
        self._stats.record_reconnect_attempt()
        logger.info(
            "reconnect_attempt",
            attempt=self._stats.reconnect_attempts,
            previous=STATE_LABELS[self._state],
        )
        self._start_scan(now)

    # -- internal: connecting -----------------------------------------------

    def _begin_connect(self, target: DiscoveredDevice) -> None:
        logger.info("connecting", address=target.address, name=target.name)
        try:
            future = self._transport.start_connect(target)
        except TransportError as exc:
            logger.warning("connect_error", address=target.address, error=str(exc))
            future = concurrent.futures.Future()
            future.set_result(False)

        with self._lock:
            if (
                self._state is not ConnectionState.CONNECTING
                or self._target is not target
                or self._connecting is not None
            ):
                # Disconnected or stopped while the link was being opened.
                self._abandon_connect(future)
                return
            self._connecting = future
            # Transports that connect inline are already done.
            self._check_connect(self._clock())

    def _check_connect(self, now: float) -> None:
        future = self._connecting
        if future is None or not future.done():
            return
        self._connecting = None
        target = self._target
        address = target.address if target is not None else None

        if not _connect_succeeded(future, address):
            logger.warning("connect_failed", address=address)
            self._target = None
            self._set_state(ConnectionState.ERROR, now)
            return

        logger.info("link_established", address=address)
        self._stats.record_connected(now)
        self._reset_session()
        self._init_step = 0
        self._init_next_at = now + _INIT_LEAD_IN
        self._set_state(ConnectionState.INITIALIZING, now)

    def _abandon_connect(self, future: concurrent.futures.Future) -> None:
        """Close the link an unwanted connect attempt opens, once it finishes."""

        def _release(done: concurrent.futures.Future) -> None:
            if done.cancelled() or done.exception() is not None:
                return
            if done.result():
                logger.info("abandoned_link_closed")
                self._transport.disconnect()

        future.add_done_callback(_release)

    def _advance_init(self, now: float) -> None:
        if now < self._init_next_at:
            return
        if self._init_step < len(_INIT_SEQUENCE):
            command, settle = _INIT_SEQUENCE[self._init_step]
            self._init_step += 1
            self._init_next_at = now + settle
            self._send_command(command)
            return

        self._queue.load(self._pids, self._settings.command_timeout_seconds)
        self._set_state(ConnectionState.CONNECTED, now)

    # -- internal: session --------------------------------------------------

    def _send_command(self, command: str) -> None:
        self._transport.send((command + LINE_TERMINATOR).encode("ascii"))
        logger.debug("command_sent", command=command)

    def _reset_session(self) -> None:
        """Forget the queue, any in-flight request and buffered text."""
        self._queue.reset()
        self._framer.clear()

    def _end_session(self, now: float) -> float:
        uptime = self._stats.record_disconnected(now)
        self._reset_session()
        return uptime

    def _drop_link(self, now: float) -> None:
        uptime = self._end_session(now)
        self._target = None
        self._set_state(ConnectionState.DISCONNECTED, now)
        logger.warning(
            "link_lost",
            uptime_s=round(uptime, 3),
            auto_reconnect=self._settings.auto_reconnect,
        )

    def _set_state(self, new_state: ConnectionState, now: float) -> None:
        if new_state is self._state:
            return
        previous = self._state
        self._state = new_state
        self._last_state_change = now
        logger.info(
            "state_changed",
            state=STATE_LABELS[new_state],
            previous=STATE_LABELS[previous],
        )


def _connect_succeeded(future: concurrent.futures.Future, address: Optional[str]) -> bool:
    """Read a finished connect future without letting its error escape."""
    if future.cancelled():
        logger.warning("connect_cancelled", address=address)
        return False
    exc = future.exception()
    if exc is not None:
        logger.warning("connect_error", address=address, error=str(exc))
        return False
    return bool(future.result())
