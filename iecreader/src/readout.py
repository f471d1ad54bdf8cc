"""
Pure parser for IEC 62056-21 data readouts and single data sets.

A data readout is the payload between STX and ETX of the meter's bulk dump:
CR LF separated ``code(value)`` entries, optionally closed by a bare ``!``
line. Values are decoded to non-negative integers; energy values in the
fixed-point ``NNNNNNN.NNN*kWh`` notation become integer watt-hours.

Malformed entries and unknown codes are skipped, never fatal: the matching
ValueTable field simply keeps its default of zero.

This is a pure module: no I/O, no clock.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import logging
import re

from iecreader.src.registers import ValueTable, id_of

logger = logging.getLogger(__name__)

_KWH_RE = re.compile(r"^(\d{7})\.(\d{3})\*kWh$")
_INT_RE = re.compile(r"^\d+$")

END_MARKER = "!"


# ---------------------------------------------------------------------------
# Value and entry decoding
# ---------------------------------------------------------------------------


def parse_value(text: str) -> int:
    """Decode a register value into a non-negative integer.

    ``0032826.545*kWh`` becomes ``32826545`` (Wh); plain digit strings are
    parsed as integers.

    Raises:
        ValueError: *text* is neither notation.
    """
    match = _KWH_RE.match(text)
    if match:
        return int(match.group(1)) * 1000 + int(match.group(2))
    if _INT_RE.match(text):
        return int(text)
    raise ValueError(f"unparseable register value {text!r}")


def parse_entry(line: str) -> tuple[str, str] | None:
    """Split ``code(value)`` into ``(code, value)``.

    Returns ``None`` when the line has no ``(`` ... ``)`` pair.
    """
    open_pos = line.find("(")
    if open_pos < 0:
        return None
    close_pos = line.find(")", open_pos + 1)
    if close_pos < 0:
        return None
    return line[:open_pos].strip(), line[open_pos + 1 : close_pos]


def _decode(payload: bytes | str) -> str:
    if isinstance(payload, str):
        return payload
    # Strip a possible parity bit; the line runs 7E1.
    return bytes(b & 0x7F for b in payload).decode("ascii", errors="replace")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_readout(payload: bytes | str) -> ValueTable:
    """Decode a data readout payload into a fresh ValueTable.

    Args:
        payload: Bytes between STX and ETX of a readout frame.

    Returns:
        A ValueTable with every recognised, well-formed entry filled in.
    """
    table = ValueTable()
    for raw_line in _decode(payload).splitlines():
        line = raw_line.strip()
        if not line or line == END_MARKER:
            continue

        entry = parse_entry(line)
        if entry is None:
            logger.debug("Readout line %r: no code(value) entry, skipped", line)
            continue
        code, text = entry

        register_id = id_of(code)
        if register_id is None:
            logger.debug("Readout code %r not in catalog, skipped", code)
            continue

        try:
            table[register_id] = parse_value(text)
        except ValueError:
            logger.warning("Readout code %r: malformed value %r, skipped", code, text)

    return table


def parse_data_set(payload: bytes | str) -> tuple[str, int]:
    """Decode a single ``[code](value)`` data set from a register response.

    The code is optional; some meters answer a read request with just
    ``(value)``.

    Returns:
        ``(code, value)``; *code* is empty when the meter omitted it.

    Raises:
        ValueError: No ``(value)`` pair, or the value is malformed.
    """
    entry = parse_entry(_decode(payload).strip())
    if entry is None:
        raise ValueError(f"no (value) in data set {payload!r}")
    code, text = entry
    return code, parse_value(text)
