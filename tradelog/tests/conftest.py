"""Shared fixtures for the tradelog test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from tradelog.models import ExecutionRecord, InstrumentDescriptor

T0 = datetime(2024, 3, 4, 9, 30, 0)


def make_exec(
    side: str,
    quantity: float,
    price: float,
    minutes: float = 0,
    symbol: str = "AAPL",
    commission: float = 0.0,
    fees: float = 0.0,
    external_id: Optional[str] = None,
    multiplier: float = 1,
    instrument_type: str = "stock",
) -> ExecutionRecord:
    """Build an execution ``minutes`` after the market open on T0."""
    return ExecutionRecord(
        symbol=symbol,
        side=side,
        quantity=quantity,
        price=price,
        timestamp=T0 + timedelta(minutes=minutes),
        commission=commission,
        fees=fees,
        external_id=external_id,
        instrument_code=symbol,
        instrument=InstrumentDescriptor(
            instrument_type=instrument_type, underlying=symbol, multiplier=multiplier
        ),
    )


class FakeClock:
    """Settable UTC clock for queue and cache timing."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 3, 4, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeEpochClock:
    """Settable float clock for MemoryCache."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def epoch_clock() -> FakeEpochClock:
    return FakeEpochClock()


GENERIC_CSV = """Symbol,Side,Quantity,Price,Date,Time,Commission
AAPL,Buy,100,10.00,03/04/2024,09:30:00,1.00
AAPL,Sell,100,12.00,03/04/2024,10:15:00,1.00
MSFT,Buy,10,400.00,03/04/2024,11:00:00,0.50
"""

SCHWAB_CSV = (
    '"Transactions for account XXXX-1234 as of 03/05/2024"\n'
    '"Date","Action","Symbol","Description","Quantity","Price","Fees & Comm","Amount"\n'
    '"03/04/2024","Buy","AAPL","APPLE INC","100","$10.00","$0.65","-$1,000.65"\n'
    '"03/05/2024 as of 03/04/2024","Sell","AAPL","APPLE INC","100","$12.50","$0.65","$1,249.35"\n'
    '"03/05/2024","Qualified Dividend","MSFT","MICROSOFT CORP","","","","$7.50"\n'
)

THINKORSWIM_CSV = """Account Statement for 123456789 since 3/1/24 through 3/5/24

Account Trade History
,Exec Time,Spread,Side,Qty,Pos Effect,Symbol,Exp,Strike,Type,Price,Net Price,Order Type
,3/4/24 09:31:02,STOCK,BUY,+100,TO OPEN,AAPL,,,STOCK,170.50,170.50,LMT
,3/4/24 09:45:10,SINGLE,BUY,+2,TO OPEN,SPY,19 APR 24,500,CALL,3.20,3.20,LMT
,3/4/24 10:05:00,STOCK,SELL,-100,TO CLOSE,AAPL,,,STOCK,171.00,171.00,LMT

Profits and Losses
Symbol,Description,P/L Open
AAPL,APPLE INC,$50.00
"""

IBKR_CSV = """Statement,Header,Field Name,Field Value
Statement,Data,BrokerName,Interactive Brokers
Trades,Header,DataDiscriminator,Asset Category,Currency,Symbol,Date/Time,Quantity,T. Price,Comm/Fee,Multiplier
Trades,Data,Order,Stocks,USD,AAPL,"2024-03-04, 09:30:00",100,170.5,-1,1
Trades,Data,Order,Stocks,USD,AAPL,"2024-03-04, 10:00:00",-100,172,-1,1
Trades,SubTotal,,Stocks,USD,AAPL,,0,,-2,
Trades,Data,Order,Futures,USD,ESM4,"2024-03-04, 11:00:00",1,5100,-2.25,50
Dividends,Header,Currency,Date,Description,Amount
Dividends,Data,USD,2024-03-05,AAPL Cash Dividend,24.00
"""

LIGHTSPEED_CSV = """Trade Date,Execution Time,Symbol,CUSIP,Security Type,Side,Qty,Price,Commission Amount,FeeSEC,FeeTAF,Trade Number
03/04/2024,09:30:00,AAPL,037833100,E,B,100,10.00,1.00,0.00,0.01,T1
03/04/2024,10:00:00,AAPL,037833100,E,S,100,11.00,1.00,0.02,0.01,T2
"""

TRADOVATE_CSV = """orderId,Account,B/S,Contract,Product,avgPrice,filledQty,Fill Time,Status
101,DEMO1,Buy,ESM4,ES,5100.00,1,03/04/2024 09:30:00,Filled
102,DEMO1,Sell,ESM4,ES,5102.00,1,03/04/2024 09:40:00,Filled
103,DEMO1,Buy,NQM4,NQ,18000.00,1,03/04/2024 09:50:00,Canceled
"""

ETRADE_CSV = """Transaction Date,Transaction Type,Security Type,Symbol,Quantity,Amount,Price,Commission,Description
03/04/24,Bought,EQ,AAPL,100,-1000.00,10.00,0,APPLE INC
03/05/24,Sold,EQ,AAPL,-100,1200.00,12.00,0,APPLE INC
03/06/24,Dividend,EQ,MSFT,,7.50,,0,MICROSOFT CORP DIV
"""
