"""
IEC 62056-21 register catalog -- single source of truth for OBIS codes.

Defines the closed, ordered set of data identifiers this reader understands
for the ISKRA ME-162 meter family, the bidirectional code <-> identifier
mapping, and the fixed-size value table that readouts are decoded into.

Codes outside the catalog are not errors: the meter reports more fields in
its data readout than are modelled here, and those are simply ignored.

References:
    - IEC 62056-21:2002, Annex A (data readout) and 6.3 (programming mode)
    - ISKRA ME-162 technical description, OBIS list

CHANGELOG:
- 2026-10-18: Initial creation (STORY-002)

TODO:
- None
"""

from __future__ import annotations

import enum
from collections.abc import Iterator
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


class RegisterId(enum.Enum):
    """Recognised meter registers, in catalog order."""

    SERIAL_NUMBER = "C.1.0"
    FATAL_ERROR = "F.F"
    TIME = "0.9.1"
    DATE = "0.9.2"
    POSITIVE_ENERGY = "1.8.0"
    NEGATIVE_ENERGY = "2.8.0"


@dataclass(frozen=True, slots=True)
class RegisterDef:
    """Definition of a single meter register.

    Attributes:
        register_id: Catalog identifier.
        name: Unique human-readable identifier used as dict key.
        unit: Engineering unit of the decoded integer (``"Wh"`` for the
            energy counters, empty for identifiers and flags).
        description: Free-text description of the register.
    """

    register_id: RegisterId
    name: str
    unit: str = ""
    description: str = ""

    @property
    def code(self) -> str:
        """OBIS code as sent on the wire (e.g. ``"1.8.0"``)."""
        return self.register_id.value


REGISTERS: list[RegisterDef] = [
    RegisterDef(
        register_id=RegisterId.SERIAL_NUMBER,
        name="serial_number",
        description="Meter serial number",
    ),
    RegisterDef(
        register_id=RegisterId.FATAL_ERROR,
        name="fatal_error",
        description="Fatal error flags (0 when healthy)",
    ),
    RegisterDef(
        register_id=RegisterId.TIME,
        name="time",
        description="Meter clock as hhmmss",
    ),
    RegisterDef(
        register_id=RegisterId.DATE,
        name="date",
        description="Meter date as 1yymmdd",
    ),
    RegisterDef(
        register_id=RegisterId.POSITIVE_ENERGY,
        name="positive_energy",
        unit="Wh",
        description="Cumulative imported active energy (A+)",
    ),
    RegisterDef(
        register_id=RegisterId.NEGATIVE_ENERGY,
        name="negative_energy",
        unit="Wh",
        description="Cumulative exported active energy (A-)",
    ),
]
"""All catalog registers in recommended read order."""

POLLED_REGISTERS: tuple[RegisterId, ...] = (
    RegisterId.POSITIVE_ENERGY,
    RegisterId.NEGATIVE_ENERGY,
)
"""Registers read one by one in programming mode, in poll order."""

_BY_CODE: dict[str, RegisterId] = {reg.code: reg.register_id for reg in REGISTERS}


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def code_of(register_id: RegisterId) -> str:
    """Return the OBIS code for *register_id*."""
    return register_id.value


def id_of(code: str) -> RegisterId | None:
    """Return the catalog identifier for *code*, or ``None`` if unknown."""
    return _BY_CODE.get(code.strip())


class ValueTable:
    """Fixed-size mapping of every catalog register to a non-negative int.

    All entries start at zero. Energy registers are stored in Wh. A fresh
    table is built for every readout so nothing carries over between
    parses.
    """

    def __init__(self) -> None:
        self._values: dict[RegisterId, int] = {rid: 0 for rid in RegisterId}

    def __getitem__(self, register_id: RegisterId) -> int:
        return self._values[register_id]

    def __setitem__(self, register_id: RegisterId, value: int) -> None:
        if value < 0:
            raise ValueError(f"Register {register_id.value}: negative value {value}")
        self._values[register_id] = value

    def __iter__(self) -> Iterator[RegisterId]:
        return iter(self._values)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ValueTable):
            return NotImplemented
        return self._values == other._values

    def __repr__(self) -> str:
        body = ", ".join(f"{rid.value}={val}" for rid, val in self._values.items())
        return f"ValueTable({body})"

    def as_dict(self) -> dict[str, int]:
        """Return the table keyed by register name (for logging/publishing)."""
        return {reg.name: self._values[reg.register_id] for reg in REGISTERS}
