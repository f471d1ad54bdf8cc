"""
IEC 62056-21 frame codec: block check character and frame assembly.

A Mode C frame starts with SOH (command messages) or STX (data messages),
ends with ETX and is followed by one block check character (BCC). The BCC
is the XOR of every byte after the first start marker up to and including
the ETX.

Operations:
- checksum(data): compute or verify the BCC of a frame.
- with_checksum(data): append the BCC to an unterminated frame.
- data_block(payload) / command(cmd, data): build outgoing frames.
- payload_of(frame): the bytes between STX and ETX.
- ReceiveBuffer: bounded accumulator deciding when a line or frame is done.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-003)

TODO:
- None
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Control characters
# ---------------------------------------------------------------------------

SOH = 0x01
STX = 0x02
ETX = 0x03
ACK = 0x06
NAK = 0x15

CRLF = b"\r\n"

START_MARKERS = frozenset((SOH, STX))

DEFAULT_CAPACITY = 1024
"""Receive buffer size; the ME-162 data readout is well below this."""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class FrameError(Exception):
    """Base class for all framing problems."""


class FramingOverflowError(FrameError):
    """The receive buffer filled up before a terminator arrived."""


class ChecksumError(FrameError):
    """The block check character could not be computed or did not match."""


class NoCheckableDataError(ChecksumError):
    """No SOH/STX start marker was found."""


class NoTerminatorError(ChecksumError):
    """A start marker was found but no ETX followed it."""


class ChecksumMismatchError(ChecksumError):
    """The trailing BCC differs from the computed one."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"BCC mismatch: computed 0x{expected:02x}, received 0x{received:02x}")
        self.expected = expected
        self.received = received


# ---------------------------------------------------------------------------
# Block check character
# ---------------------------------------------------------------------------


def checksum(data: bytes) -> int:
    """Compute (and, when present, verify) the BCC of *data*.

    Scans forward to the first SOH or STX and XORs every byte after it up
    to and including the first ETX. If a byte follows the ETX it must equal
    the computed value.

    Args:
        data: Raw frame bytes, with or without a trailing BCC.

    Returns:
        The computed BCC.

    Raises:
        NoCheckableDataError: No start marker in *data*.
        NoTerminatorError: No ETX after the start marker.
        ChecksumMismatchError: Trailing byte differs from the computed BCC.
    """
    start = next((i for i, byte in enumerate(data) if byte in START_MARKERS), None)
    if start is None:
        raise NoCheckableDataError("no SOH/STX in data")

    bcc = 0
    for pos in range(start + 1, len(data)):
        bcc ^= data[pos]
        if data[pos] == ETX:
            break
    else:
        raise NoTerminatorError("no ETX after start marker")

    if pos + 1 < len(data) and data[pos + 1] != bcc:
        raise ChecksumMismatchError(bcc, data[pos + 1])
    return bcc


def with_checksum(data: bytes) -> bytes:
    """Return *data* (ending in ETX) with its BCC appended."""
    return data + bytes((checksum(data),))


def data_block(payload: bytes) -> bytes:
    """Build ``STX payload ETX BCC``."""
    return with_checksum(bytes((STX,)) + payload + bytes((ETX,)))


def command(cmd: bytes, data: bytes | None = None) -> bytes:
    """Build a programming mode command message.

    ``SOH cmd STX data ETX BCC`` when *data* is given, otherwise
    ``SOH cmd ETX BCC`` (the break command has no data set).
    """
    frame = bytes((SOH,)) + cmd
    if data is not None:
        frame += bytes((STX,)) + data
    return with_checksum(frame + bytes((ETX,)))


def payload_of(frame: bytes) -> bytes:
    """Return the bytes strictly between the STX (or SOH) and the ETX.

    Falls back to the first start marker when the frame has no STX.
    """
    start = frame.find(bytes((STX,)))
    if start < 0:
        start = next((i for i, byte in enumerate(frame) if byte in START_MARKERS), -1)
    end = frame.find(bytes((ETX,)), start + 1)
    if end < 0:
        end = len(frame)
    return frame[start + 1 : end]


# ---------------------------------------------------------------------------
# Fixed wire messages
# ---------------------------------------------------------------------------

LOGIN_REQUEST = b"/?!" + CRLF
"""Sign-on request, always sent at 300 baud."""

DISCONNECT = command(b"B0")
"""Break command; its BCC is always ``q``."""

PROGRAM_MODE_ACK = command(b"P0", b"()")
"""What the meter answers after switching to programming mode."""

BAUD_IDS: dict[str, int] = {
    "0": 300,
    "1": 600,
    "2": 1200,
    "3": 2400,
    "4": 4800,
    "5": 9600,
    "6": 19200,
}
"""Mode C baud rate identification characters."""

MODE_READOUT = "0"
MODE_PROGRAMMING = "1"
MODE_BINARY = "2"


def option_select(baud_id: str, mode: str, protocol: str = "0") -> bytes:
    """Build the acknowledgement/option select message ``ACK V Z Y CR LF``."""
    return bytes((ACK,)) + f"{protocol}{baud_id}{mode}".encode("ascii") + CRLF


def read_request(code: str) -> bytes:
    """Build the ``R1`` read command for a single register."""
    return command(b"R1", f"{code}()".encode("ascii"))


# ---------------------------------------------------------------------------
# Receive buffer
# ---------------------------------------------------------------------------


class ReceiveBuffer:
    """Bounded byte accumulator for one incoming line or frame.

    Args:
        capacity: Maximum number of bytes held before an overflow.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self._capacity = capacity
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def __bytes__(self) -> bytes:
        return bytes(self._data)

    def push(self, byte: int) -> None:
        """Append one byte.

        Raises:
            FramingOverflowError: The buffer was already full. The buffer
                is cleared before raising.
        """
        if len(self._data) >= self._capacity:
            self._data.clear()
            raise FramingOverflowError(f"receive buffer exceeded {self._capacity} bytes")
        self._data.append(byte)

    def clear(self) -> None:
        self._data.clear()

    @property
    def nak_received(self) -> bool:
        """True when the last byte pushed was a NAK."""
        return bool(self._data) and self._data[-1] == NAK

    def has_line(self) -> bool:
        """True when the buffer ends with CR LF."""
        return self._data.endswith(CRLF)

    def has_frame(self) -> bool:
        """True when the last two bytes are ETX followed by a BCC."""
        return len(self._data) >= 2 and self._data[-2] == ETX
