"""
Tests for the data readout parser.

Verifies kWh fixed-point conversion, plain integer values, skipping of
unknown codes and malformed entries, and single data set parsing.

CHANGELOG:
- 2026-10-18: Initial creation -- TDD tests written first (STORY-004)

TODO:
- None
"""

from __future__ import annotations

import pytest
from iecreader.src.readout import (
    parse_data_set,
    parse_entry,
    parse_readout,
    parse_value,
)
from iecreader.src.registers import RegisterId, ValueTable

# Data readout as sent by an ISKRA ME-162, trimmed.
_READOUT = (
    b"C.1.0(28342193)\r\n"
    b"0.0.0(28342193)\r\n"
    b"1.8.0(0032826.545*kWh)\r\n"
    b"3.8.2(bogus)\r\n"
    b"2.8.0(0000000.001*kWh)\r\n"
    b"F.F(0000000)\r\n"
    b"0.9.1(1012345)\r\n"
    b"0.9.2(1201018)\r\n"
    b"!\r\n"
)


class TestParseValue:
    def test_kwh_to_wh(self) -> None:
        assert parse_value("0032826.545*kWh") == 32826545

    def test_smallest_kwh(self) -> None:
        assert parse_value("0000000.001*kWh") == 1

    def test_plain_integer(self) -> None:
        assert parse_value("28342193") == 28342193

    def test_leading_zeros(self) -> None:
        assert parse_value("0000000") == 0

    @pytest.mark.parametrize(
        "text",
        [
            "bogus",
            "",
            "-5",
            "12.5",
            "032826.545*kWh",  # 6 integer digits
            "0032826.54*kWh",  # 2 fractional digits
            "0032826.545*Wh",
            "0032826.545 kWh",
        ],
    )
    def test_malformed(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_value(text)


class TestParseEntry:
    def test_split(self) -> None:
        assert parse_entry("1.8.0(0032826.545*kWh)") == ("1.8.0", "0032826.545*kWh")

    def test_missing_paren(self) -> None:
        assert parse_entry("1.8.0") is None
        assert parse_entry("1.8.0(123") is None

    def test_empty_value(self) -> None:
        assert parse_entry("1.8.0()") == ("1.8.0", "")


class TestParseReadout:
    def test_worked_example(self) -> None:
        table = parse_readout(_READOUT)
        assert table[RegisterId.SERIAL_NUMBER] == 28342193
        assert table[RegisterId.POSITIVE_ENERGY] == 32826545
        assert table[RegisterId.NEGATIVE_ENERGY] == 1
        assert table[RegisterId.FATAL_ERROR] == 0
        assert table[RegisterId.TIME] == 1012345
        assert table[RegisterId.DATE] == 1201018

    def test_accepts_str(self) -> None:
        table = parse_readout("1.8.0(0000001.000*kWh)\r\n!\r\n")
        assert table[RegisterId.POSITIVE_ENERGY] == 1000

    def test_malformed_known_field_stays_zero(self) -> None:
        table = parse_readout(b"1.8.0(garbage)\r\n2.8.0(0000000.002*kWh)\r\n")
        assert table[RegisterId.POSITIVE_ENERGY] == 0
        assert table[RegisterId.NEGATIVE_ENERGY] == 2

    def test_empty_payload(self) -> None:
        assert parse_readout(b"") == ValueTable()

    def test_lines_without_entries_are_skipped(self) -> None:
        table = parse_readout(b"garbage\r\n\r\nC.1.0(42)\r\n")
        assert table[RegisterId.SERIAL_NUMBER] == 42

    def test_parity_bit_is_stripped(self) -> None:
        payload = bytes(b | 0x80 for b in b"C.1.0(42)") + b"\r\n"
        assert parse_readout(payload)[RegisterId.SERIAL_NUMBER] == 42

    def test_fresh_table_per_parse(self) -> None:
        first = parse_readout(b"C.1.0(42)\r\n")
        second = parse_readout(b"1.8.0(0000000.005*kWh)\r\n")
        assert first[RegisterId.SERIAL_NUMBER] == 42
        assert second[RegisterId.SERIAL_NUMBER] == 0


class TestParseDataSet:
    def test_with_code(self) -> None:
        assert parse_data_set(b"1.8.0(0032826.545*kWh)") == ("1.8.0", 32826545)

    def test_without_code(self) -> None:
        assert parse_data_set(b"(0000000.001*kWh)") == ("", 1)

    def test_error_response(self) -> None:
        with pytest.raises(ValueError):
            parse_data_set(b"(ERROR)")

    def test_no_value(self) -> None:
        with pytest.raises(ValueError):
            parse_data_set(b"1.8.0")
