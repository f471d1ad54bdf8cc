"""
IEC 62056-21 Mode C session: the protocol state machine.

One MeterSession owns one meter connection. It signs on at 300 baud, reads
the identification, switches to 9600 baud when the meter supports it, takes
one data readout, breaks, signs on again in programming mode and then polls
the energy registers one by one, forever:

    LOGIN -> AWAIT_IDENTIFICATION -> REQUEST_DATA_MODE -> AWAIT_READOUT
      -> RESTART -> LOGIN2 -> AWAIT_IDENTIFICATION2 -> REQUEST_PROGRAM_MODE
      -> AWAIT_PROGRAM_ACK -> REQUEST_REGISTER(i) -> AWAIT_REGISTER(i) ...
      -> MAYBE_PUBLISH -> SLEEP -> REQUEST_REGISTER(0) ...

Meters that do not offer 9600 baud stay at 300 baud and are read through
repeated data readouts (READOUT_SLOW).

``poll()`` never blocks: it does at most one frame's worth of work and
returns, so the caller can interleave other duties. Transmissions are gated
by a "not before" timestamp that enforces the turnaround time after a
received frame. A watchdog restarts the handshake from LOGIN when a state
makes no progress for too long; there is no other retry limit.

Errors on the line (checksum, overflow, NAK, bad values) are logged and
counted in ``diagnostics`` but never raised.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-008)
- 2026-10-19: Count external pulses and report the gap extremes (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from iecreader.src.framing import (
    BAUD_IDS,
    DEFAULT_CAPACITY,
    DISCONNECT,
    LOGIN_REQUEST,
    MODE_PROGRAMMING,
    MODE_READOUT,
    SOH,
    ChecksumError,
    FramingOverflowError,
    ReceiveBuffer,
    checksum,
    option_select,
    payload_of,
    read_request,
)
from iecreader.src.gauge import EnergyGaugePair
from iecreader.src.models import MeterSnapshot
from iecreader.src.readout import parse_data_set, parse_readout
from iecreader.src.registers import (
    POLLED_REGISTERS,
    RegisterId,
    ValueTable,
    code_of,
    id_of,
)

if TYPE_CHECKING:
    from iecreader.src.transport import ByteTransport

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

LOW_BAUD: int = 300
HIGH_BAUD_ID: str = "5"
HIGH_BAUD: int = BAUD_IDS[HIGH_BAUD_ID]
LOW_BAUD_ID: str = "0"

TURNAROUND_MS: int = 20
"""Minimum time between receiving a frame and sending the next one."""

DEFAULT_STALL_TIMEOUT_MS: int = 20_000
"""Watchdog limit. A 300 baud data readout alone takes several seconds."""

DEFAULT_SLEEP_INTERVAL_MS: int = 2_000
DEFAULT_PULSE_SETTLE_MS: int = 1_000
"""Delay after a pulse so the meter's own counter has ticked over."""

PUBLISH_HEARTBEAT_MS: int = 120_000
PUBLISH_HIGH_POWER_MS: int = 60_000
PUBLISH_SIGNIFICANT_MS: int = 25_000
HIGH_POWER_W: float = 1000.0


class State(enum.Enum):
    """Protocol states. There is no terminal state."""

    LOGIN = "login"
    LOGIN2 = "login2"
    AWAIT_IDENTIFICATION = "await_identification"
    AWAIT_IDENTIFICATION2 = "await_identification2"
    REQUEST_DATA_MODE = "request_data_mode"
    REQUEST_PROGRAM_MODE = "request_program_mode"
    AWAIT_READOUT = "await_readout"
    READOUT_SLOW = "readout_slow"
    AWAIT_PROGRAM_ACK = "await_program_ack"
    RESTART = "restart"
    REQUEST_REGISTER = "request_register"
    AWAIT_REGISTER = "await_register"
    MAYBE_PUBLISH = "maybe_publish"
    SLEEP = "sleep"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def monotonic_ms() -> int:
    """Milliseconds from the monotonic clock (Python ints do not wrap)."""
    return time.monotonic_ns() // 1_000_000


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def publish_due(elapsed_ms: int | None, power_w: float, significant: bool) -> bool:
    """Decide whether a snapshot should be published now.

    Args:
        elapsed_ms: Time since the previous publish, ``None`` if there was
            none yet (always due).
        power_w: Current signed power estimate.
        significant: Whether the estimator reports a significant change.
    """
    if elapsed_ms is None:
        return True
    return (
        elapsed_ms >= PUBLISH_HEARTBEAT_MS
        or (elapsed_ms >= PUBLISH_HIGH_POWER_MS and abs(power_w) > HIGH_POWER_W)
        or (elapsed_ms >= PUBLISH_SIGNIFICANT_MS and significant)
    )


def parse_identification(line: bytes) -> str | None:
    """Return the identification text after ``/``, or ``None`` if invalid.

    ``b"/ISK5ME162-0033\\r\\n"`` yields ``"ISK5ME162-0033"``: a 3-character
    manufacturer id, the baud rate character, then the free-form ident.
    """
    start = line.find(b"/")
    if start < 0:
        return None
    text = bytes(b & 0x7F for b in line[start + 1 :]).decode("ascii", errors="replace")
    text = text.rstrip("\r\n")
    if len(text) < 4:
        return None
    return text


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class MeterSession:
    """Mode C state machine for a single meter.

    Args:
        transport: Serial line (see :class:`~iecreader.src.transport.ByteTransport`).
        device_id: Identifier embedded in published snapshots.
        publish: Called with a :class:`MeterSnapshot` whenever the publish
            policy says so. Must not block.
        pulse: Optional zero-argument callable returning True when an
            external pulse (LED blink) was seen; shortens SLEEP. Sampled
            on every poll; the count and the shortest and longest gap
            between pulses land in ``diagnostics``.
        clock: Millisecond monotonic clock, injectable for tests.
        wallclock: UTC wall clock used for snapshot timestamps.
        stall_timeout_ms: Watchdog limit per state.
        sleep_interval_ms: Pause between register poll rounds.
        pulse_settle_ms: Pause after a pulse before polling.
        registers: Registers polled in programming mode, in order.
        buffer_capacity: Receive buffer size in bytes.
    """

    def __init__(
        self,
        transport: ByteTransport,
        *,
        device_id: str,
        publish: Callable[[MeterSnapshot], None],
        pulse: Callable[[], bool] | None = None,
        clock: Callable[[], int] = monotonic_ms,
        wallclock: Callable[[], datetime] = _utcnow,
        stall_timeout_ms: int = DEFAULT_STALL_TIMEOUT_MS,
        sleep_interval_ms: int = DEFAULT_SLEEP_INTERVAL_MS,
        pulse_settle_ms: int = DEFAULT_PULSE_SETTLE_MS,
        registers: Sequence[RegisterId] = POLLED_REGISTERS,
        buffer_capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        if not registers:
            raise ValueError("At least one register must be polled")
        self._transport = transport
        self._device_id = device_id
        self._publish = publish
        self._pulse = pulse
        self._clock = clock
        self._wallclock = wallclock
        self._stall_timeout_ms = stall_timeout_ms
        self._sleep_interval_ms = sleep_interval_ms
        self._pulse_settle_ms = pulse_settle_ms
        self._registers = tuple(registers)

        now = clock()
        self._started_ms = now
        self._state = State.LOGIN
        self._retry_state = State.LOGIN
        self._state_since = now
        self._last_publish_ms: int | None = None
        self._register_index = 0
        self._buffer = ReceiveBuffer(buffer_capacity)
        self._identification = ""
        self._write_not_before = now
        self._readout_requested = False
        self._pulse_seen_ms: int | None = None
        self._last_pulse_ms: int | None = None

        self.gauges = EnergyGaugePair()
        self.values = ValueTable()
        self.diagnostics: dict[str, int] = {
            "watchdog_restarts": 0,
            "checksum_errors": 0,
            "naks": 0,
            "overflows": 0,
            "value_errors": 0,
            "publishes": 0,
            "pulses": 0,
        }

        self._handlers: dict[State, Callable[[int], None]] = {
            State.LOGIN: self._on_login,
            State.LOGIN2: self._on_login,
            State.AWAIT_IDENTIFICATION: self._on_await_identification,
            State.AWAIT_IDENTIFICATION2: self._on_await_identification,
            State.REQUEST_DATA_MODE: self._on_request_data_mode,
            State.REQUEST_PROGRAM_MODE: self._on_request_program_mode,
            State.AWAIT_READOUT: self._on_await_readout,
            State.READOUT_SLOW: self._on_readout_slow,
            State.AWAIT_PROGRAM_ACK: self._on_await_program_ack,
            State.RESTART: self._on_restart,
            State.REQUEST_REGISTER: self._on_request_register,
            State.AWAIT_REGISTER: self._on_await_register,
            State.MAYBE_PUBLISH: self._on_maybe_publish,
            State.SLEEP: self._on_sleep,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> State:
        return self._state

    @property
    def identification(self) -> str:
        """Identification line of the meter, empty before the first sign-on."""
        return self._identification

    @property
    def register_index(self) -> int:
        """Index into the polled registers of the pending/next request."""
        return self._register_index

    @property
    def state_since(self) -> int:
        return self._state_since

    def poll(self, now_ms: int | None = None) -> None:
        """Advance the state machine by at most one frame.

        Args:
            now_ms: Current monotonic time; read from the clock when omitted.
        """
        now = self._clock() if now_ms is None else now_ms
        self._sample_pulse(now)
        if self._check_watchdog(now):
            return
        self._handlers[self._state](now)

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    def _transition(self, state: State, now: int) -> None:
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        self._state_since = now
        if state is State.SLEEP:
            self._pulse_seen_ms = None

    def _check_watchdog(self, now: int) -> bool:
        if self._state is State.SLEEP:
            return False
        if now - self._state_since <= self._stall_timeout_ms:
            return False
        logger.warning(
            "No progress in state %s for %d ms, restarting handshake",
            self._state.value,
            now - self._state_since,
        )
        self.diagnostics["watchdog_restarts"] += 1
        self._buffer.clear()
        self._readout_requested = False
        self._transition(State.LOGIN, now)
        return True

    def _send(self, data: bytes, next_state: State, now: int) -> None:
        """Write *data*, remember who wrote it (for NAK) and move on."""
        self._buffer.clear()
        self._transport.write(data)
        self._retry_state = self._state
        self._transition(next_state, now)

    def _receive(self, now: int, complete: Callable[[], bool]) -> bytes | None:
        """Consume waiting bytes until *complete* holds.

        Returns the received bytes once complete. Returns ``None`` while
        incomplete, after an overflow, and after a NAK (in which case the
        session has already gone back to the state that sent the request).
        """
        while self._transport.bytes_available():
            byte = self._transport.read_byte()
            try:
                self._buffer.push(byte)
            except FramingOverflowError as exc:
                logger.warning("Dropping receive buffer in %s: %s", self._state.value, exc)
                self.diagnostics["overflows"] += 1
                return None

            if complete():
                data = bytes(self._buffer)
                self._buffer.clear()
                self._write_not_before = now + TURNAROUND_MS
                return data

            if self._buffer.nak_received:
                logger.warning(
                    "NAK received in %s, repeating %s",
                    self._state.value,
                    self._retry_state.value,
                )
                self.diagnostics["naks"] += 1
                self._buffer.clear()
                self._write_not_before = now + TURNAROUND_MS
                self._transition(self._retry_state, now)
                return None
        return None

    def _receive_frame(self, now: int) -> bytes | None:
        """Receive a complete frame and verify its BCC."""
        frame = self._receive(now, self._buffer.has_frame)
        if frame is None:
            return None
        try:
            checksum(frame)
        except ChecksumError as exc:
            logger.warning("Dropping frame in %s: %s", self._state.value, exc)
            self.diagnostics["checksum_errors"] += 1
            return None
        return frame

    def _can_write(self, now: int) -> bool:
        return now >= self._write_not_before

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    def _on_login(self, now: int) -> None:
        if not self._can_write(now):
            return
        self._transport.set_speed(LOW_BAUD)
        self._readout_requested = False
        next_state = (
            State.AWAIT_IDENTIFICATION
            if self._state is State.LOGIN
            else State.AWAIT_IDENTIFICATION2
        )
        self._send(LOGIN_REQUEST, next_state, now)

    def _on_await_identification(self, now: int) -> None:
        line = self._receive(now, self._buffer.has_line)
        if line is None:
            return

        ident = parse_identification(line)
        if ident is None:
            logger.warning("Ignoring malformed identification %r", line)
            return

        if ident != self._identification:
            logger.info("Meter identification: %s", ident)
        self._identification = ident

        if ident[3] != HIGH_BAUD_ID:
            logger.debug("Meter offers baud id %r, staying at %d baud", ident[3], LOW_BAUD)
            self._transition(State.READOUT_SLOW, now)
        elif self._state is State.AWAIT_IDENTIFICATION:
            self._transition(State.REQUEST_DATA_MODE, now)
        else:
            self._transition(State.REQUEST_PROGRAM_MODE, now)

    def _on_request_data_mode(self, now: int) -> None:
        if not self._can_write(now):
            return
        self._send(option_select(HIGH_BAUD_ID, MODE_READOUT), State.AWAIT_READOUT, now)
        self._transport.set_speed(HIGH_BAUD)

    def _on_request_program_mode(self, now: int) -> None:
        if not self._can_write(now):
            return
        self._send(
            option_select(HIGH_BAUD_ID, MODE_PROGRAMMING), State.AWAIT_PROGRAM_ACK, now
        )
        self._transport.set_speed(HIGH_BAUD)

    def _on_await_program_ack(self, now: int) -> None:
        frame = self._receive(now, self._buffer.has_frame)
        if frame is None:
            return

        ok = frame[frame.find(bytes((SOH,))) :].startswith(bytes((SOH,)) + b"P0")
        if ok:
            try:
                checksum(frame)
            except ChecksumError as exc:
                logger.warning("Bad programming mode acknowledgement: %s", exc)
                self.diagnostics["checksum_errors"] += 1
                ok = False
        else:
            logger.warning("Unexpected programming mode acknowledgement %r", frame)

        if not ok:
            self._transition(State.REQUEST_PROGRAM_MODE, now)
            return

        self._register_index = 0
        self._transition(State.REQUEST_REGISTER, now)

    def _on_restart(self, now: int) -> None:
        if not self._can_write(now):
            return
        self._send(DISCONNECT, State.LOGIN2, now)

    # ------------------------------------------------------------------
    # Data readout
    # ------------------------------------------------------------------

    def _on_await_readout(self, now: int) -> None:
        frame = self._receive_frame(now)
        if frame is None:
            return
        self._apply_readout(parse_readout(payload_of(frame)), now)
        self._transition(State.RESTART, now)

    def _on_readout_slow(self, now: int) -> None:
        # The meter waits for an option select; ask for a readout at the
        # speed we already have.
        if not self._readout_requested:
            if not self._can_write(now):
                return
            self._buffer.clear()
            self._transport.write(option_select(LOW_BAUD_ID, MODE_READOUT))
            self._retry_state = State.LOGIN2
            self._readout_requested = True
            return

        frame = self._receive_frame(now)
        if frame is None:
            return
        self._readout_requested = False
        self._apply_readout(parse_readout(payload_of(frame)), now)
        self._maybe_publish(now)
        self._transition(State.RESTART, now)

    def _apply_readout(self, table: ValueTable, now: int) -> None:
        logger.debug("Readout: %s", table.as_dict())
        self.values = table
        for register_id in (RegisterId.POSITIVE_ENERGY, RegisterId.NEGATIVE_ENERGY):
            if table[register_id] > 0:
                self._feed_gauge(register_id, table[register_id], now)

    # ------------------------------------------------------------------
    # Register polling
    # ------------------------------------------------------------------

    def _on_request_register(self, now: int) -> None:
        if not self._can_write(now):
            return
        code = code_of(self._registers[self._register_index])
        self._send(read_request(code), State.AWAIT_REGISTER, now)

    def _on_await_register(self, now: int) -> None:
        frame = self._receive_frame(now)
        if frame is None:
            return

        register_id = self._registers[self._register_index]
        try:
            code, value = parse_data_set(payload_of(frame))
        except ValueError as exc:
            logger.warning("Register %s: %s", code_of(register_id), exc)
            self.diagnostics["value_errors"] += 1
        else:
            if code and id_of(code) is not register_id:
                logger.warning(
                    "Asked for %s but got %r, ignoring", code_of(register_id), code
                )
            else:
                self.values[register_id] = value
                self._feed_gauge(register_id, value, now)

        self._register_index += 1
        if self._register_index < len(self._registers):
            self._transition(State.REQUEST_REGISTER, now)
        else:
            self._transition(State.MAYBE_PUBLISH, now)

    def _feed_gauge(self, register_id: RegisterId, value: int, now: int) -> None:
        if register_id is RegisterId.POSITIVE_ENERGY:
            self.gauges.feed_positive(now, value)
        elif register_id is RegisterId.NEGATIVE_ENERGY:
            self.gauges.feed_negative(now, value)

    # ------------------------------------------------------------------
    # Publishing and sleeping
    # ------------------------------------------------------------------

    def _on_maybe_publish(self, now: int) -> None:
        self._maybe_publish(now)
        self._transition(State.SLEEP, now)

    def _maybe_publish(self, now: int) -> None:
        elapsed = None if self._last_publish_ms is None else now - self._last_publish_ms
        power = self.gauges.instantaneous_power()
        if not publish_due(elapsed, power, self.gauges.is_significant_change()):
            return

        snapshot = MeterSnapshot(
            device_id=self._device_id,
            ts=self._wallclock(),
            identification=self._identification,
            serial_number=self.values[RegisterId.SERIAL_NUMBER],
            energy_positive_wh=self.gauges.positive.energy_total,
            energy_negative_wh=self.gauges.negative.energy_total,
            power_w=round(power, 1),
            uptime_s=(now - self._started_ms) // 1000,
            diagnostics=dict(self.diagnostics),
        )
        self._publish(snapshot)
        self.diagnostics["publishes"] += 1
        self.gauges.reset()
        self._last_publish_ms = now
        logger.info(
            "Published: +%d Wh, -%d Wh, %.1f W",
            snapshot.energy_positive_wh,
            snapshot.energy_negative_wh,
            snapshot.power_w,
        )

    def _sample_pulse(self, now: int) -> None:
        """Count pulses and track the shortest and longest gap between them."""
        if self._pulse is None or not self._pulse():
            return
        self.diagnostics["pulses"] += 1
        if self._last_pulse_ms is not None:
            gap = now - self._last_pulse_ms
            shortest = self.diagnostics.get("pulse_interval_min_ms", gap)
            longest = self.diagnostics.get("pulse_interval_max_ms", gap)
            self.diagnostics["pulse_interval_min_ms"] = min(shortest, gap)
            self.diagnostics["pulse_interval_max_ms"] = max(longest, gap)
        self._last_pulse_ms = now
        if self._state is State.SLEEP and self._pulse_seen_ms is None:
            self._pulse_seen_ms = now

    def _on_sleep(self, now: int) -> None:
        slept = now - self._state_since >= self._sleep_interval_ms
        settled = (
            self._pulse_seen_ms is not None
            and now - self._pulse_seen_ms >= self._pulse_settle_ms
        )
        if slept or settled:
            self._register_index = 0
            self._transition(State.REQUEST_REGISTER, now)
