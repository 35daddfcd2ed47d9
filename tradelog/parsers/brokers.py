"""Per-broker row adapters.

Each adapter only declares where its export keeps the fields and overrides
the hooks its quirks need. Side resolution, number parsing and validation
all happen in ``RowNormalizer.normalize``.
"""

from __future__ import annotations

from datetime import datetime

from ..models import InstrumentDescriptor
from .instrument_classifier import (
    decode_instrument,
    option_descriptor,
    parse_occ_symbol,
)
from .row_normalizer import RowNormalizer, parse_amount, parse_number


class GenericNormalizer(RowNormalizer):
    """Plain "Symbol, Side, Quantity, Price, Date" layouts."""

    broker = "generic"


class LightspeedNormalizer(RowNormalizer):
    """Lightspeed trade blotter export.

    Carries a CUSIP column next to Symbol and splits regulatory fees into
    one column per fee type.
    """

    broker = "lightspeed"
    columns = {
        "symbol": ("Symbol",),
        "cusip": ("CUSIP",),
        "side": ("Side",),
        "side_text": ("Buy/Sell",),
        "quantity": ("Qty", "Quantity"),
        "price": ("Price", "Execution Price"),
        "date": ("Trade Date",),
        "time": ("Execution Time", "Exec Time"),
        "commission": ("Commission Amount", "Commission"),
        "external_id": ("Trade Number",),
        "security_type": ("Security Type",),
    }
    fee_columns = ("FeeSEC", "FeeMF", "Fee1", "Fee2", "Fee3", "FeeStamp", "FeeTAF", "Fee4")


class ThinkorswimNormalizer(RowNormalizer):
    """thinkorswim Account Trade History section.

    Quantity is signed; options are spread over Exp / Strike / Type columns
    and futures symbols carry a leading slash.
    """

    broker = "thinkorswim"
    quantity_signed = True
    columns = {
        "symbol": ("Symbol",),
        "side": ("Side",),
        "quantity": ("Qty",),
        "price": ("Price",),
        "date": ("Exec Time",),
        "commission": ("Commission", "Comm"),
        "fees": ("Fees", "Misc Fees"),
        "expiration": ("Exp",),
        "strike": ("Strike",),
        "type": ("Type",),
    }

    def symbol_code(self, row: dict[str, str]) -> str:
        return super().symbol_code(row).lstrip("/")

    def instrument(
        self, row: dict[str, str], code: str, when: datetime
    ) -> InstrumentDescriptor:
        kind = self.get(row, "type").upper()
        if kind in ("CALL", "PUT"):
            exp = self.get(row, "expiration").upper()
            strike = parse_amount(self.get(row, "strike"))
            for fmt in ("%d %b %y", "%d %b %Y", "%m/%d/%Y", "%m/%d/%y"):
                try:
                    expiration = datetime.strptime(exp, fmt).date()
                except ValueError:
                    continue
                return option_descriptor(code, expiration, strike, kind)
        if kind == "FUTURE":
            return decode_instrument(code, trade_date=when.date(), futures_hint=True)
        return super().instrument(row, code, when)


class IBKRNormalizer(RowNormalizer):
    """Interactive Brokers activity statement and Flex query exports."""

    broker = "ibkr"
    quantity_signed = True
    columns = {
        "symbol": ("Symbol",),
        "side": ("Buy/Sell",),
        "quantity": ("Quantity",),
        "price": ("T. Price", "TradePrice"),
        "date": ("Date/Time", "DateTime", "TradeDate"),
        "time": ("TradeTime",),
        "commission": ("Comm/Fee", "IBCommission", "Commission"),
        "fees": ("Fees",),
        "external_id": ("IBExecID", "TradeID"),
        "currency": ("Currency", "CurrencyPrimary"),
        "multiplier": ("Multiplier",),
        "asset": ("Asset Category", "AssetClass"),
        "put_call": ("Put/Call",),
        "strike": ("Strike",),
        "expiry": ("Expiry",),
        "record": ("Header",),
        "discriminator": ("DataDiscriminator", "LevelOfDetail"),
    }

    def is_non_trade(self, row: dict[str, str]) -> bool:
        record = self.get(row, "record").lower()
        if record and record != "data":
            return True
        kind = self.get(row, "discriminator").lower()
        if kind and kind not in ("order", "trade", "execution"):
            return True
        return super().is_non_trade(row)

    def instrument(
        self, row: dict[str, str], code: str, when: datetime
    ) -> InstrumentDescriptor:
        asset = self.get(row, "asset").lower()
        try:
            multiplier = parse_number(self.get(row, "multiplier"))
        except ValueError:
            multiplier = None

        if asset.startswith("opt") or "option" in asset:
            inst = parse_occ_symbol(code)
            if inst is None:
                expiry = self.get(row, "expiry")
                right = self.get(row, "put_call")
                strike = parse_amount(self.get(row, "strike"))
                expiration = None
                for fmt in ("%Y%m%d", "%Y-%m-%d"):
                    try:
                        expiration = datetime.strptime(expiry, fmt).date()
                        break
                    except ValueError:
                        continue
                if expiration and right and strike:
                    underlying = code.split()[0]
                    inst = option_descriptor(underlying, expiration, strike, right)
            if inst is None:
                inst = decode_instrument(code, trade_date=when.date())
        elif asset.startswith("fut") or "future" in asset:
            inst = decode_instrument(code, trade_date=when.date(), futures_hint=True)
        else:
            inst = super().instrument(row, code, when)

        if multiplier and multiplier > 0:
            inst.multiplier = multiplier
        return inst


class ETradeNormalizer(RowNormalizer):
    """E*TRADE transaction history ("Bought" / "Sold" rows)."""

    broker = "etrade"
    columns = {
        "symbol": ("Symbol",),
        "side": ("Transaction Type",),
        "side_text": ("Description",),
        "quantity": ("Quantity",),
        "price": ("Price",),
        "date": ("Transaction Date",),
        "commission": ("Commission",),
        "fees": ("Fees",),
        "security_type": ("Security Type",),
    }


class SchwabNormalizer(RowNormalizer):
    """Charles Schwab transaction history, comma or tab delimited."""

    broker = "schwab"
    columns = {
        "symbol": ("Symbol",),
        "side": ("Action",),
        "side_text": ("Description",),
        "quantity": ("Quantity",),
        "price": ("Price",),
        "date": ("Date",),
        "commission": ("Fees & Comm",),
    }


class TradovateNormalizer(RowNormalizer):
    """Tradovate orders / fills export. Futures only."""

    broker = "tradovate"
    futures_only = True
    columns = {
        "symbol": ("Contract",),
        "side": ("B/S",),
        "quantity": ("filledQty", "Filled Qty", "Quantity"),
        "price": ("avgPrice", "Avg Fill Price"),
        "date": ("Fill Time", "Timestamp", "Date"),
        "commission": ("Commission",),
        "external_id": ("orderId", "Order ID", "fillId"),
        "status": ("Status",),
    }


NORMALIZERS: dict[str, type[RowNormalizer]] = {
    "generic": GenericNormalizer,
    "lightspeed": LightspeedNormalizer,
    "thinkorswim": ThinkorswimNormalizer,
    "ibkr": IBKRNormalizer,
    "etrade": ETradeNormalizer,
    "schwab": SchwabNormalizer,
    "tradovate": TradovateNormalizer,
}


def get_normalizer(broker: str) -> RowNormalizer:
    """Fresh adapter instance for a broker tag."""
    try:
        return NORMALIZERS[broker.lower()]()
    except KeyError:
        raise ValueError(f"Unknown broker format: {broker!r}") from None


def supported_brokers() -> list[str]:
    return sorted(NORMALIZERS)
