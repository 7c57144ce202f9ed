"""Cyclic PID command queue with a single request in flight.

The queue owns the cursor and the in-flight bookkeeping.  Each tick it
settles the current slot (parse, update telemetry, advance) and issues
the next request when nothing is outstanding.  Timeouts are detected by
polling elapsed time so a lost reply never stalls the cycle.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Tuple

import structlog

from obd_ble_client.pid_codec import PidDefinition, PidKind, TelemetryField
from obd_ble_client.telemetry import Statistics, TelemetryStore

logger = structlog.get_logger(__name__)

NO_DATA = "NODATA"
TIMEOUT = "TIMEOUT"


@dataclass
class CommandSlot:
    """One pollable command and the state of its current request."""

    command: str
    field: TelemetryField
    parser: PidKind
    unit: str
    timeout: float
    sent_at: Optional[float] = None
    completed: bool = False
    timed_out: bool = False
    raw_response: str = ""

    @property
    def in_flight(self) -> bool:
        return self.sent_at is not None and not self.completed

    def complete(self, response: str) -> None:
        self.raw_response = response
        self.completed = True

    def clear(self) -> None:
        self.sent_at = None
        self.completed = False
        self.timed_out = False
        self.raw_response = ""


class CommandQueue:
    """Drives one request/response cycle at a time over a fixed PID set.

    Parameters
    ----------
    send:
        Writes a command line to the adapter.  Called only after the slot
        is marked in flight, so a transport that answers synchronously
        still finds the request outstanding.
    telemetry, statistics:
        Written only by this queue (statistics: command counters only).
    min_interval:
        Minimum seconds between processing ticks.
    """

    def __init__(
        self,
        send: Callable[[str], None],
        telemetry: TelemetryStore,
        statistics: Statistics,
        *,
        min_interval: float = 0.1,
    ) -> None:
        self._send = send
        self._telemetry = telemetry
        self._stats = statistics
        self._min_interval = min_interval
        self._slots: List[CommandSlot] = []
        self._index = 0
        self._last_tick: Optional[float] = None

    # -- setup --------------------------------------------------------------

    def add(self, definition: PidDefinition, timeout: float) -> CommandSlot:
        slot = CommandSlot(
            command=definition.command,
            field=definition.field,
            parser=definition.kind,
            unit=definition.unit,
            timeout=timeout,
        )
        self._slots.append(slot)
        return slot

    def load(self, definitions: Iterable[PidDefinition], timeout: float) -> None:
        for definition in definitions:
            self.add(definition, timeout)
        logger.info("command_queue_ready", commands=len(self._slots))

    def reset(self) -> None:
        """Drop every slot and any outstanding request."""
        self._slots.clear()
        self._index = 0
        self._last_tick = None

    # -- state --------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def slots(self) -> Tuple[CommandSlot, ...]:
        return tuple(self._slots)

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current(self) -> Optional[CommandSlot]:
        if not self._slots:
            return None
        return self._slots[self._index]

    @property
    def in_flight(self) -> bool:
        slot = self.current
        return slot is not None and slot.in_flight

    # -- processing ---------------------------------------------------------

    def tick(self, now: float) -> None:
        """Settle the current slot and issue the next request.

        Rate limited to one pass per ``min_interval``.
        """
        if self._last_tick is not None and now - self._last_tick < self._min_interval:
            return
        self._last_tick = now

        if not self._slots:
            return

        slot = self._slots[self._index]
        if slot.completed:
            self._settle(slot, now)
            self._index = (self._index + 1) % len(self._slots)
            slot.clear()

        if not self.in_flight:
            self._issue(self._slots[self._index], now)

    def check_timeout(self, now: float) -> bool:
        """Force-complete the in-flight slot if its timeout has passed."""
        slot = self.current
        if slot is None or slot.sent_at is None or slot.completed:
            return False
        if now - slot.sent_at <= slot.timeout:
            return False

        slot.complete(TIMEOUT)
        slot.timed_out = True
        self._stats.record_failure()
        logger.warning(
            "command_timeout",
            command=slot.command,
            timeout_s=slot.timeout,
        )
        return True

    def on_reply(self, reply: str) -> bool:
        """Complete the in-flight slot with *reply*.

        Returns ``False`` and drops the reply when nothing is in flight,
        e.g. a late answer to a request that already timed out.
        """
        slot = self.current
        if slot is None or not slot.in_flight:
            logger.debug("reply_dropped", reply=reply)
            return False
        slot.complete(reply)
        return True

    # -- internal -----------------------------------------------------------

    def _settle(self, slot: CommandSlot, now: float) -> None:
        if slot.timed_out:
            # Already counted as failed when it timed out.
            return

        response = slot.raw_response
        if not response or _is_no_data(response):
            self._stats.record_failure()
            logger.warning("no_data", command=slot.command, response=response)
            return

        value = slot.parser.decode(response)
        if value is None:
            self._stats.record_failure()
            logger.warning("parse_failed", command=slot.command, response=response)
            return

        self._telemetry.update(slot.field, value, slot.unit, now)
        sent_at = slot.sent_at if slot.sent_at is not None else now
        self._stats.record_success((now - sent_at) * 1000.0)
        logger.debug(
            "command_parsed",
            command=slot.command,
            field=slot.field.value,
            value=value,
        )

    def _issue(self, slot: CommandSlot, now: float) -> None:
        slot.sent_at = now
        self._stats.record_issued()
        self._send(slot.command)


def _is_no_data(response: str) -> bool:
    return response.replace(" ", "").upper().startswith(NO_DATA)
