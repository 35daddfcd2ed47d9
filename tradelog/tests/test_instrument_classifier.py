"""Tests for broker symbol decoding."""

from datetime import date

import pytest

from tradelog.models import InstrumentDescriptor
from tradelog.parsers.instrument_classifier import (
    DEFAULT_FUTURES_POINT_VALUE,
    canonical_symbol,
    decode_instrument,
    occ_symbol,
    parse_futures_symbol,
    parse_occ_symbol,
    parse_option_description,
    third_friday,
)


class TestOptions:
    def test_padded_occ(self):
        inst = parse_occ_symbol("AAPL  240119C00150000")
        assert inst.instrument_type == "option"
        assert inst.underlying == "AAPL"
        assert inst.expiration == date(2024, 1, 19)
        assert inst.strike == 150.0
        assert inst.option_type == "call"
        assert inst.multiplier == 100

    def test_compact_occ_fractional_strike(self):
        inst = parse_occ_symbol("SPY250321P00450500")
        assert inst.strike == 450.5
        assert inst.option_type == "put"

    def test_occ_bad_date(self):
        assert parse_occ_symbol("AAPL241319C00150000") is None

    def test_dotted(self):
        inst = parse_option_description(".AAPL240119C150")
        assert inst.underlying == "AAPL"
        assert inst.strike == 150.0

    def test_spaced_readable(self):
        inst = parse_option_description("AAPL 19 JAN 24 150 C")
        assert inst.expiration == date(2024, 1, 19)
        assert inst.option_type == "call"

    def test_slashed_readable(self):
        inst = parse_option_description("TSLA 02/16/2024 $200.00 PUT")
        assert inst.expiration == date(2024, 2, 16)
        assert inst.strike == 200.0
        assert inst.option_type == "put"

    def test_occ_symbol_roundtrip(self):
        inst = InstrumentDescriptor(
            instrument_type="option", underlying="NVDA", strike=140.0,
            expiration=date(2025, 3, 21), option_type="put", multiplier=100,
        )
        assert occ_symbol(inst) == "NVDA250321P00140000"

    def test_occ_symbol_needs_expiration_and_strike(self):
        with pytest.raises(ValueError):
            occ_symbol(InstrumentDescriptor(instrument_type="option", underlying="AAPL"))
        with pytest.raises(ValueError):
            occ_symbol(InstrumentDescriptor(
                instrument_type="option", underlying="AAPL", expiration=date(2024, 1, 19),
            ))


class TestFutures:
    def test_single_digit_year(self):
        inst = parse_futures_symbol("ESM4", trade_date=date(2024, 3, 4))
        assert inst.underlying == "ES"
        assert inst.multiplier == 50
        assert inst.expiration == date(2024, 6, 21)

    def test_two_digit_year(self):
        inst = parse_futures_symbol("NQU24")
        assert inst.underlying == "NQ"
        assert inst.multiplier == 20
        assert inst.expiration.year == 2024

    def test_decade_rollover(self):
        inst = parse_futures_symbol("ESH0", trade_date=date(2029, 12, 1))
        assert inst.expiration.year == 2030

    def test_point_values(self):
        assert parse_futures_symbol("CLZ4").multiplier == 1000
        assert parse_futures_symbol("GCQ4").multiplier == 100
        assert parse_futures_symbol("MYMZ4").multiplier == 0.5
        assert parse_futures_symbol("HGN4").multiplier == 12500

    def test_unknown_root_uses_default(self):
        assert parse_futures_symbol("ABCZ4").multiplier == DEFAULT_FUTURES_POINT_VALUE

    def test_leading_slash(self):
        assert parse_futures_symbol("/MESZ24").underlying == "MES"

    def test_third_friday(self):
        assert third_friday(2024, 3) == date(2024, 3, 15)
        assert third_friday(2024, 6) == date(2024, 6, 21)


class TestDecodeInstrument:
    def test_stock(self):
        inst = decode_instrument("AAPL")
        assert inst.instrument_type == "stock"
        assert inst.multiplier == 1

    def test_known_futures_root(self):
        assert decode_instrument("ESM4").instrument_type == "future"

    def test_unknown_root_needs_hint(self):
        assert decode_instrument("GMZ5").instrument_type == "stock"
        assert decode_instrument("GMZ5", futures_hint=True).instrument_type == "future"

    def test_option_before_futures(self):
        assert decode_instrument("ES240119C05000000").instrument_type == "option"

    def test_cusip_is_stock(self):
        inst = decode_instrument("037833100")
        assert inst.instrument_type == "stock"

    def test_canonical_symbol(self):
        code = "AAPL 19 JAN 24 150 C"
        assert canonical_symbol(code, decode_instrument(code)) == "AAPL240119C00150000"
        assert canonical_symbol(" msft ", decode_instrument("MSFT")) == "MSFT"
