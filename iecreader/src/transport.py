"""
Serial byte transport for the meter's optical (IEC 62056-21) probe.

The session only needs four things from the line: change speed, ask how many
bytes are waiting, read one byte, and write a message. ``ByteTransport`` is
that interface; ``SerialTransport`` implements it with pyserial using the
Mode C line settings (7 data bits, even parity, 1 stop bit) and
non-blocking reads.

A pulse sensor (e.g. a photodiode on the meter LED) may be wired to one of
the modem status inputs of the same adapter; ``ModemLinePulse`` turns that
line into the pulse callable the session samples.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-007)
- 2026-10-19: Modem status lines as an external pulse input (STORY-015)

TODO:
- None
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Protocol

import serial

logger = logging.getLogger(__name__)

INITIAL_BAUD: int = 300
"""Every Mode C session starts at 300 baud."""

WRITE_TIMEOUT_S: float = 2.0
"""Upper bound for a write at 300 baud (longest message is ~30 bytes)."""

MODEM_LINES: tuple[str, ...] = ("cts", "dsr", "ri", "cd")
"""Modem status inputs pyserial exposes as boolean properties."""


class ByteTransport(Protocol):
    """What the protocol session needs from the serial line."""

    def set_speed(self, baud: int) -> None: ...

    def bytes_available(self) -> int: ...

    def read_byte(self) -> int: ...

    def write(self, data: bytes) -> None: ...


class SerialTransport:
    """pyserial-backed transport in 7E1 framing.

    Args:
        port: Device path or pyserial URL (e.g. ``/dev/ttyUSB0`` or
            ``socket://10.0.0.5:8000`` for a networked probe).

    Usage::

        with SerialTransport("/dev/ttyUSB0") as transport:
            session = MeterSession(transport, ...)
    """

    def __init__(self, port: str) -> None:
        self._port = port
        self._serial: serial.SerialBase | None = None

    def open(self) -> None:
        """Open the port at the initial speed."""
        self._serial = serial.serial_for_url(
            self._port,
            baudrate=INITIAL_BAUD,
            bytesize=serial.SEVENBITS,
            parity=serial.PARITY_EVEN,
            stopbits=serial.STOPBITS_ONE,
            timeout=0,
            write_timeout=WRITE_TIMEOUT_S,
        )
        logger.info("Opened serial port %s at %d baud (7E1)", self._port, INITIAL_BAUD)

    def close(self) -> None:
        if self._serial is not None:
            self._serial.close()
            self._serial = None

    def __enter__(self) -> SerialTransport:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    @property
    def _port_handle(self) -> serial.SerialBase:
        if self._serial is None:
            raise serial.SerialException(f"Serial port {self._port} is not open")
        return self._serial

    # ------------------------------------------------------------------
    # ByteTransport
    # ------------------------------------------------------------------

    def set_speed(self, baud: int) -> None:
        """Switch line speed after all queued output has been sent."""
        port = self._port_handle
        if port.baudrate == baud:
            return
        port.flush()
        port.baudrate = baud
        logger.debug("Serial port %s switched to %d baud", self._port, baud)

    def bytes_available(self) -> int:
        return self._port_handle.in_waiting

    def read_byte(self) -> int:
        data = self._port_handle.read(1)
        if not data:
            raise serial.SerialException("read_byte() called with no byte waiting")
        return data[0]

    def write(self, data: bytes) -> None:
        self._port_handle.write(data)

    # ------------------------------------------------------------------
    # Modem status
    # ------------------------------------------------------------------

    def modem_line(self, name: str) -> bool:
        """Current level of a modem status input (``cts``, ``dsr``, ``ri``, ``cd``)."""
        if name not in MODEM_LINES:
            raise ValueError(f"Unknown modem line {name!r}, expected one of {MODEM_LINES}")
        return bool(getattr(self._port_handle, name))


class ModemLinePulse:
    """Rising-edge detector on a modem status input.

    Each call samples the line once and returns True only on a low-to-high
    transition, so a pulse held high across several polls counts once.

    Args:
        transport: Open serial transport sharing the pulse sensor's adapter.
        line: One of :data:`MODEM_LINES`.
    """

    def __init__(self, transport: SerialTransport, line: str) -> None:
        if line not in MODEM_LINES:
            raise ValueError(f"Unknown modem line {line!r}, expected one of {MODEM_LINES}")
        self._transport = transport
        self._line = line
        self._level = False

    def __call__(self) -> bool:
        level = self._transport.modem_line(self._line)
        rising = level and not self._level
        self._level = level
        return rising
