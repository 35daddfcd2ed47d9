"""Tests for broker format detection and header location."""

from tradelog.parsers.format_detector import (
    BROKER_FORMATS,
    decode_content,
    detect_format,
    find_header_line,
    split_header,
)

from conftest import (
    ETRADE_CSV,
    GENERIC_CSV,
    IBKR_CSV,
    LIGHTSPEED_CSV,
    SCHWAB_CSV,
    THINKORSWIM_CSV,
    TRADOVATE_CSV,
)


class TestDetectFormat:
    def test_generic(self):
        assert detect_format(GENERIC_CSV) == "generic"

    def test_schwab_after_title_row(self):
        assert detect_format(SCHWAB_CSV) == "schwab"

    def test_thinkorswim_statement(self):
        assert detect_format(THINKORSWIM_CSV) == "thinkorswim"

    def test_ibkr_activity_statement(self):
        assert detect_format(IBKR_CSV) == "ibkr"

    def test_lightspeed(self):
        assert detect_format(LIGHTSPEED_CSV) == "lightspeed"

    def test_tradovate(self):
        assert detect_format(TRADOVATE_CSV) == "tradovate"

    def test_etrade(self):
        assert detect_format(ETRADE_CSV) == "etrade"

    def test_bytes_with_bom(self):
        raw = ("\ufeff" + TRADOVATE_CSV).encode("utf-8")
        assert detect_format(raw) == "tradovate"

    def test_latin1_bytes(self):
        raw = "Symbol,Side,Quantity,Price,Date\nNESTLÉ,Buy,1,10,03/04/2024\n".encode("latin-1")
        assert detect_format(raw) == "generic"

    def test_empty_buffer_is_generic(self):
        assert detect_format(b"") == "generic"
        assert detect_format("   \n\n") == "generic"

    def test_garbage_is_generic(self):
        assert detect_format(b"\x00\x01\x02 not a csv") == "generic"

    def test_specific_format_wins_over_earlier_generic_line(self):
        content = (
            "Symbol,Quantity,Price\n"
            "orderId,B/S,Contract,avgPrice,filledQty,Fill Time\n"
        )
        assert detect_format(content) == "tradovate"

    def test_header_beyond_inspection_window(self):
        preamble = "".join(f"note line {i}\n" for i in range(12))
        assert detect_format(preamble + TRADOVATE_CSV) == "generic"

    def test_ibkr_needs_price_column(self):
        assert detect_format("TradeID,Symbol,Quantity\n1,AAPL,5\n") == "generic"

    def test_every_result_is_a_known_format(self):
        for content in (GENERIC_CSV, SCHWAB_CSV, IBKR_CSV, "", "x"):
            assert detect_format(content) in BROKER_FORMATS


class TestHeaderHelpers:
    def test_decode_strips_bom_from_text(self):
        assert decode_content("\ufeffA,B") == "A,B"

    def test_split_header_lowercases_and_unquotes(self):
        assert split_header('"Date","Fees & Comm"') == ["date", "fees & comm"]

    def test_split_header_tab_delimited(self):
        assert split_header("Date\tAction\tSymbol") == ["date", "action", "symbol"]

    def test_find_header_skips_title_row(self):
        assert find_header_line(SCHWAB_CSV.splitlines(), "schwab") == 1

    def test_find_header_missing(self):
        assert find_header_line(["a,b", "1,2"], "tradovate") is None

    def test_generic_falls_back_to_first_non_empty_line(self):
        assert find_header_line(["", "foo,bar", "1,2"], "generic") == 1
