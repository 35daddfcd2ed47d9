"""Tests for round-trip reconstruction and duplicate handling."""

import random
from datetime import timedelta

import pytest

from tradelog.models import ExecutionRecord
from tradelog.reconstruction.dedup import DedupGuard, execution_identity
from tradelog.reconstruction.position_reconstructor import (
    PositionReconstructor,
    split_execution,
)

from conftest import T0, make_exec


def reconstruct(executions, **kwargs):
    return PositionReconstructor().reconstruct("AAPL", executions, **kwargs)


class TestClosedTrades:
    def test_simple_long_round_trip(self):
        trades = reconstruct([
            make_exec("buy", 100, 10, 0, commission=1),
            make_exec("sell", 100, 12, 5, commission=1),
        ])
        assert len(trades) == 1
        t = trades[0]
        assert t.side == "long"
        assert t.entry_price == 10
        assert t.exit_price == 12
        assert t.pnl == pytest.approx(200 - 2)
        assert t.quantity == 100
        assert t.entry_time == T0
        assert t.exit_time == T0 + timedelta(minutes=5)
        assert not t.is_update
        assert t.source_trade_id is None

    def test_short_round_trip(self):
        trades = reconstruct([
            make_exec("sell", 50, 20, 0),
            make_exec("buy", 50, 18, 1),
        ])
        assert len(trades) == 1
        assert trades[0].side == "short"
        assert trades[0].pnl == pytest.approx(100)
        assert trades[0].pnl_percent == pytest.approx(10)

    def test_partial_fills_weighted_prices(self):
        trades = reconstruct([
            make_exec("buy", 100, 10, 0),
            make_exec("buy", 100, 12, 1),
            make_exec("sell", 50, 13, 2),
            make_exec("sell", 150, 14, 3),
        ])
        assert len(trades) == 1
        t = trades[0]
        assert t.entry_price == pytest.approx(11)
        assert t.exit_price == pytest.approx(13.75)
        assert t.pnl == pytest.approx(550)
        assert len(t.executions) == 4

    def test_same_timestamp_buy_then_sell_closes(self):
        trades = reconstruct([
            make_exec("buy", 100, 10, 0),
            make_exec("sell", 100, 10, 0),
        ])
        assert len(trades) == 1
        assert not trades[0].is_open

    def test_input_order_is_sorted_by_time(self):
        trades = reconstruct([
            make_exec("sell", 100, 12, 5),
            make_exec("buy", 100, 10, 0),
        ])
        assert len(trades) == 1
        assert trades[0].side == "long"

    def test_futures_multiplier(self):
        trades = PositionReconstructor().reconstruct("ESM4", [
            make_exec("buy", 1, 5100, 0, symbol="ESM4", multiplier=50, instrument_type="future"),
            make_exec("sell", 1, 5102, 1, symbol="ESM4", multiplier=50, instrument_type="future"),
        ])
        t = trades[0]
        assert t.pnl == pytest.approx(100)
        assert t.entry_price == pytest.approx(5100)
        assert t.entry_value == pytest.approx(255000)

    def test_entry_price_reproduces_entry_value(self):
        trades = reconstruct([
            make_exec("buy", 3, 10.37, 0),
            make_exec("buy", 7, 11.91, 1),
            make_exec("sell", 10, 12, 2),
        ])
        t = trades[0]
        assert abs(t.entry_price * t.quantity - t.entry_value) < 1e-6

    def test_fractional_quantities_close_exactly(self):
        trades = reconstruct([
            make_exec("buy", 0.1, 100, 0),
            make_exec("buy", 0.2, 100, 1),
            make_exec("sell", 0.3, 110, 2),
        ])
        assert len(trades) == 1
        assert not trades[0].is_open


class TestOpenPositions:
    def test_trailing_open_snapshot(self):
        trades = reconstruct([
            make_exec("buy", 100, 10, 0),
            make_exec("sell", 40, 11, 1),
        ])
        assert len(trades) == 1
        t = trades[0]
        assert t.is_open
        assert t.quantity == 60
        assert t.exit_price is None
        assert t.pnl is None
        assert t.entry_price == pytest.approx(10)

    def test_closed_then_open(self):
        trades = reconstruct([
            make_exec("buy", 10, 10, 0),
            make_exec("sell", 10, 11, 1),
            make_exec("sell", 5, 12, 2),
        ])
        assert [t.is_open for t in trades] == [False, True]
        assert trades[1].side == "short"
        assert trades[1].quantity == 5


class TestExistingPosition:
    SNAPSHOT = {
        "id": "trade-1",
        "symbol": "AAPL",
        "side": "long",
        "quantity": 50,
        "entry_price": 20,
        "entry_time": "2024-03-01T14:30:00",
    }

    def test_close_existing_position(self):
        trades = reconstruct([make_exec("sell", 50, 25, 0, commission=1)], existing=dict(self.SNAPSHOT))
        assert len(trades) == 1
        t = trades[0]
        assert t.is_update
        assert t.source_trade_id == "trade-1"
        assert t.pnl == pytest.approx((25 - 20) * 50 - 1)
        assert t.entry_price == pytest.approx(20)
        assert t.entry_time.day == 1

    def test_add_to_existing_position(self):
        trades = reconstruct([make_exec("buy", 50, 30, 0)], existing=dict(self.SNAPSHOT))
        t = trades[0]
        assert t.is_open
        assert t.is_update
        assert t.quantity == 100
        assert t.entry_price == pytest.approx(25)

    def test_untouched_existing_position_not_reemitted(self):
        assert reconstruct([], existing=dict(self.SNAPSHOT)) == []

    def test_existing_executions_not_reapplied(self):
        stored = make_exec("buy", 50, 20, -60, external_id="X1")
        snapshot = dict(self.SNAPSHOT, executions=[stored.to_dict()])
        trades = reconstruct([make_exec("buy", 50, 20, -60, external_id="X1")], existing=snapshot)
        assert trades == []

    def test_short_existing_position(self):
        snapshot = dict(self.SNAPSHOT, side="short")
        trades = reconstruct([make_exec("buy", 50, 15, 0)], existing=snapshot)
        assert trades[0].side == "short"
        assert trades[0].pnl == pytest.approx(250)


class TestFlip:
    def test_overshooting_fill_is_split(self):
        trades = reconstruct([
            make_exec("buy", 100, 10, 0, commission=1),
            make_exec("sell", 150, 12, 1, commission=3),
        ])
        assert len(trades) == 2
        closed, opened = trades
        assert not closed.is_open
        assert closed.quantity == 100
        assert closed.pnl == pytest.approx(1200 - 1000 - 1 - 2)
        assert opened.is_open
        assert opened.side == "short"
        assert opened.quantity == 50
        assert opened.commission == pytest.approx(1)
        assert opened.entry_price == pytest.approx(12)

    def test_split_parts_keep_parent_identity(self):
        parent = make_exec("sell", 150, 12, 1, commission=3, fees=0.3)
        head, tail = split_execution(parent, 100)
        assert head.quantity == 100
        assert tail.quantity == 50
        assert head.commission + tail.commission == pytest.approx(3)
        assert head.fees + tail.fees == pytest.approx(0.3)
        assert execution_identity(head) == execution_identity(parent)
        assert execution_identity(tail) == execution_identity(parent)

    def test_split_identity_survives_serialization(self):
        head, _ = split_execution(make_exec("sell", 150, 12, 1), 100)
        restored = ExecutionRecord.from_dict(head.to_dict())
        assert execution_identity(restored) == execution_identity(head)


class TestDedup:
    def test_duplicate_fill_in_same_run(self):
        reconstructor = PositionReconstructor()
        fill = make_exec("buy", 100, 10, 0)
        trades = reconstructor.reconstruct("AAPL", [
            fill,
            make_exec("buy", 100, 10, 0),
            make_exec("sell", 100, 11, 1),
        ])
        assert len(trades) == 1
        assert not trades[0].is_open
        assert reconstructor.duplicates_skipped == 1

    def test_external_id_dedup(self):
        trades = reconstruct([
            make_exec("buy", 100, 10, 0, external_id="E1"),
            make_exec("buy", 100, 10, 3, external_id="E1"),
            make_exec("sell", 100, 11, 5, external_id="E2"),
        ])
        assert len(trades) == 1
        assert len(trades[0].executions) == 2

    def test_seeded_with_closed_trade_executions(self):
        first = reconstruct([
            make_exec("buy", 100, 10, 0),
            make_exec("sell", 100, 11, 1),
        ])
        stored = [ex for t in first for ex in t.executions]
        again = reconstruct([
            make_exec("buy", 100, 10, 0),
            make_exec("sell", 100, 11, 1),
        ], existing_executions=stored)
        assert again == []

    def test_guard(self):
        a = make_exec("buy", 1, 10, 0)
        guard = DedupGuard([a])
        assert a in guard
        assert len(guard) == 1
        assert not guard.admit(make_exec("buy", 1, 10, 0))
        assert guard.admit(make_exec("sell", 1, 10, 0))


class TestPrefixInvariant:
    @pytest.mark.parametrize("seed", range(25))
    def test_open_quantity_matches_signed_sum(self, seed):
        rng = random.Random(seed)
        executions = [
            make_exec(rng.choice(["buy", "sell"]), rng.randint(1, 5), rng.randint(90, 110), minute)
            for minute in range(rng.randint(1, 30))
        ]
        for end in range(1, len(executions) + 1):
            prefix = executions[:end]
            net = sum(e.signed_quantity for e in prefix)
            trades = reconstruct(prefix)
            open_trades = [t for t in trades if t.is_open]
            assert len(open_trades) <= 1
            if net == 0:
                assert open_trades == []
            else:
                assert open_trades[0].quantity == abs(net)
                assert open_trades[0].side == ("long" if net > 0 else "short")
            for t in trades:
                if not t.is_open:
                    assert sum(e.signed_quantity for e in t.executions) == 0
                    assert abs(t.entry_price * t.quantity - t.entry_value) < 1e-6
