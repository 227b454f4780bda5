"""
Tests for robusta.engine
------------------------
End-to-end runs over synthetic daily bars:
- buy then sell round trip with realized PnL.
- dividend event on an open trade.
- short request without shorting rights.
- lookback, settlement locks, open_end liquidation.
- strategy errors, data gaps, stop requests and fatal errors.
"""

import threading

import pandas as pd
import pytest

from robusta.engine import Engine, RunPhase, group_slices
from robusta.errors import ConfigurationError, LedgerInvariantViolation
from robusta.models import Side


def test_buy_then_sell_round_trip(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})
        if ctx.bar == 2:
            ctx.sell_target({"X": 0})

    result = Engine(make_cfg(), strategy).run(make_stream({"X": [10, 11, 9]}))

    trades = result.trades
    assert len(trades) == 1
    row = trades.iloc[0]
    assert row["side"] == "B"
    assert row["open_volume"] == pytest.approx(10.0)
    assert row["open_price"] == pytest.approx(10.0)
    assert row["status"] == "closed"
    assert row["close_price"] == pytest.approx(9.0)
    assert row["pnl"] == pytest.approx(-10.0)

    assert result.bars == 3
    assert result.phase is RunPhase.DONE
    assert list(result.equity) == pytest.approx([100.0, 110.0, 90.0])
    assert result.summary["realized_pnl"] == pytest.approx(-10.0)
    assert result.summary["return_pct"] == pytest.approx(-0.1)


def test_dividend_adjusts_open_price_without_pnl(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})

    stream = make_stream({"X": [10, 10, 10]}, extras={("X", 1): {"dividend": 0.95}})
    engine = Engine(make_cfg(), strategy)
    result = engine.run(stream)

    held = engine.ledger.open_trades("X")[0]
    assert held.open_price == pytest.approx(9.5)
    assert held.pnl == 0.0

    events = result.trades[result.trades["side"] == "D"]
    assert len(events) == 1
    assert events.iloc[0]["pnl"] == 0.0
    assert engine.ledger.realized_pnl() == 0.0
    assert engine.ledger.cash == pytest.approx(5.0)  # 10 shares x 0.5


def test_short_without_rights_warns_and_continues(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.sell_target({"X": -1.0})

    result = Engine(make_cfg(), strategy).run(make_stream({"X": [10, 11, 9]}))

    assert result.trades.empty
    assert "OrderRejected" in list(result.warnings["kind"])
    assert result.bars == 3


def test_lookback_blocks_trading(make_cfg, make_stream):
    seen = []

    def strategy(ctx, state):
        seen.append((ctx.bar, ctx.is_lookback))
        ctx.order_target({"X": 0.5})

    engine = Engine(make_cfg(lookback=2), strategy)
    result = engine.run(make_stream({"X": [10, 10, 10, 10]}))

    assert seen == [(0, True), (1, True), (2, False), (3, False)]
    trades = result.trades
    assert len(trades) == 1
    assert pd.Timestamp(trades.iloc[0]["open_time"]).day == 4
    dropped = result.warnings[result.warnings["message"].str.contains("lookback")]
    assert list(dropped["bar"]) == [0, 1]


def test_lookback_longer_than_data_is_fatal(make_cfg, bars_frame):
    from robusta.data_io import BarStream, normalize_bars

    cfg = make_cfg(assets=("AAA",), lookback=50)
    stream = BarStream.from_config(normalize_bars(bars_frame), cfg)
    with pytest.raises(ConfigurationError, match="lookback"):
        Engine(cfg, lambda ctx, state: None).run(stream)


def test_settlement_lock_delays_close(make_cfg, make_stream):
    from robusta.config import BrokerCfg

    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})
        elif ctx.bar >= 1:
            ctx.sell_target({"X": 0})

    cfg = make_cfg(broker=BrokerCfg(settlement_days=2))
    result = Engine(cfg, strategy).run(make_stream({"X": [10, 10, 12, 12]}))

    row = result.trades.iloc[0]
    assert row["status"] == "closed"
    assert pd.Timestamp(row["close_time"]).day == 4  # bar 2, T+2
    assert row["pnl"] == pytest.approx(20.0)
    locked = result.warnings[result.warnings["message"].str.contains("T+2")]
    assert list(locked["bar"]) == [1]


def test_open_end_false_liquidates_on_last_bar(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})

    engine = Engine(make_cfg(open_end=False), strategy)
    result = engine.run(make_stream({"X": [10, 11, 9]}))

    assert engine.ledger.open_trades() == []
    assert result.trades.iloc[0]["pnl"] == pytest.approx(-10.0)
    assert result.summary["open_trades"] == 0


def test_open_end_true_keeps_positions(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})

    engine = Engine(make_cfg(), strategy)
    result = engine.run(make_stream({"X": [10, 11, 9]}))
    assert engine.ledger.position("X") == pytest.approx(10.0)
    assert result.summary["open_trades"] == 1


def test_strategy_error_is_recorded(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 1:
            ctx.buy_target({"X": 1.0})
            raise ValueError("boom")

    engine = Engine(make_cfg(), strategy)
    result = engine.run(make_stream({"X": [10, 11, 9]}))

    assert result.bars == 3
    errors = result.warnings[result.warnings["kind"] == "StrategyError"]
    assert len(errors) == 1
    assert "boom" in errors.iloc[0]["message"]
    # instructions queued by the failed callback are not executed
    assert result.trades.empty


def test_ledger_violation_propagates(make_cfg, make_stream):
    def strategy(ctx, state):
        ctx.trader.ledger.close(99, 10.0, ctx.date)

    with pytest.raises(LedgerInvariantViolation):
        Engine(make_cfg(), strategy).run(make_stream({"X": [10]}))


def test_missing_bar_is_forward_filled(make_cfg, make_stream):
    seen = {}

    def strategy(ctx, state):
        seen[ctx.bar] = ctx.data["Y"].c if "Y" in ctx.data else None

    stream = make_stream({"X": [10, 10, 10], "Y": [5, None, 7]})
    result = Engine(make_cfg(assets=("X", "Y")), strategy).run(stream)

    assert seen == {0: 5.0, 1: 5.0, 2: 7.0}
    gaps = result.warnings[result.warnings["kind"] == "DataGapError"]
    assert list(gaps["ticker"]) == ["Y"]
    assert list(gaps["bar"]) == [1]


def test_ticker_without_history_is_skipped(make_cfg, make_stream):
    seen = []

    def strategy(ctx, state):
        seen.append(sorted(ctx.data))

    stream = make_stream({"X": [10, 10], "Y": [None, 7]})
    result = Engine(make_cfg(assets=("X", "Y")), strategy).run(stream)
    assert seen == [["X"], ["X", "Y"]]
    assert "skipped" in result.warnings.iloc[0]["message"]


def test_stop_event_halts_between_bars(make_cfg, make_stream):
    stop = threading.Event()

    def strategy(ctx, state):
        if ctx.bar == 1:
            stop.set()

    result = Engine(make_cfg(), strategy).run(
        make_stream({"X": [10, 11, 12, 13]}), stop=stop
    )
    assert result.bars == 2


def test_end_date_and_start_date_bound_the_run(make_cfg, make_stream):
    bars = []
    cfg = make_cfg(start_date="2024-01-03", end_date="2024-01-04")
    Engine(cfg, lambda ctx, state: bars.append(ctx.date.day)).run(
        make_stream({"X": [1, 2, 3, 4, 5]})
    )
    assert bars == [3, 4]


def test_non_session_and_out_of_order_timestamps_are_skipped(make_cfg):
    from robusta.models import Bar

    engine = Engine(make_cfg(), lambda ctx, state: None)
    assert engine.step("2024-01-03", {"X": Bar(c=10.0)})
    assert not engine.step("2024-01-06", {"X": Bar(c=10.0)})  # Saturday
    assert not engine.step("2024-01-02", {"X": Bar(c=10.0)})
    assert engine.bar == 0
    assert "out-of-order" in engine.warnings.to_frame().iloc[0]["message"]


def test_hooks_and_state(make_cfg, make_stream):
    class Strategy:
        def on_start(self, ctx, state):
            state["calls"] = ["start"]

        def on_bar(self, ctx, state):
            state["calls"].append(ctx.bar)
            ctx.record(close=ctx.series("X", "c")[0])

        def on_end(self, ctx, state):
            state["calls"].append("end")

    engine = Engine(make_cfg(), Strategy())
    result = engine.run(make_stream({"X": [10, 11]}))
    assert engine.state["calls"] == ["start", 0, 1, "end"]
    assert list(result.records["close"]) == [10.0, 11.0]
    assert list(result.records["bar"]) == [0, 1]


def test_split_event_scales_volume(make_cfg, make_stream):
    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})

    stream = make_stream({"X": [10, 5]}, extras={("X", 1): {"split": 0.5}})
    engine = Engine(make_cfg(), strategy)
    result = engine.run(stream)
    assert engine.ledger.position("X") == pytest.approx(20.0)
    assert result.equity.iloc[-1] == pytest.approx(100.0)
    assert Side.SPLIT.value in set(result.trades["side"])


def test_empty_universe_is_fatal(make_cfg):
    with pytest.raises(ConfigurationError, match="empty universe"):
        Engine(make_cfg(assets=()), lambda ctx, state: None)


def test_group_slices_groups_by_timestamp(make_stream):
    items = make_stream({"A": [1, 2], "B": [3, 4]})
    slices = list(group_slices(items))
    assert len(slices) == 2
    assert sorted(slices[0][1]) == ["A", "B"]


def test_locked_long_is_not_flipped_into_a_hedge(make_cfg, make_stream):
    """
    Long 10 under a T+3 lock, target flipped to -1 on every later bar:
    nothing happens until the long can be closed, then the book flips.
    """
    from robusta.config import BrokerCfg

    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.buy_target({"X": 1.0})
        else:
            ctx.order_target({"X": -1.0})
        state.setdefault("lots", []).append(
            [(t.side, t.volume) for t in ctx.trader.open_trades("X")]
        )

    cfg = make_cfg(broker=BrokerCfg(settlement_days=3, allow_short=True))
    engine = Engine(cfg, strategy)
    result = engine.run(make_stream({"X": [10, 10, 10, 10]}))

    # bars 1 and 2: still only the long, never long and short together
    assert engine.state["lots"][2] == [(Side.BUY, pytest.approx(10.0))]
    lots = [(t.side, t.volume) for t in engine.ledger.open_trades("X")]
    assert lots == [(Side.SELL, pytest.approx(-10.0))]
    assert engine.ledger.position("X") == pytest.approx(-10.0)
    locked = result.warnings[result.warnings["message"].str.contains("T+3")]
    assert list(locked["bar"]) == [1, 2]


def test_event_field_is_seen_only_on_its_bar(make_cfg, make_stream):
    seen = []

    def strategy(ctx, state):
        seen.append(ctx.series("X", "dividend", 1))

    stream = make_stream({"X": [10, 10, 10]}, extras={("X", 0): {"dividend": 0.95}})
    Engine(make_cfg(), strategy).run(stream)
    assert seen == [[0.95], [None], [None]]


def test_unexpected_broker_error_skips_only_that_instruction(make_cfg, make_stream):
    """A broker crash on A cancels A's provisional trade; B still trades."""
    from robusta.broker import SimulatedBroker
    from robusta.models import TradeStatus

    class FlakyBroker(SimulatedBroker):
        def order(self, instruction, time):
            if instruction.symbol == "A":
                raise RuntimeError("gateway down")
            return super().order(instruction, time)

    def strategy(ctx, state):
        if ctx.bar == 0:
            ctx.order_target({"A": 0.4, "B": 0.4})

    cfg = make_cfg(assets=("A", "B"))
    engine = Engine(cfg, strategy, broker=FlakyBroker(cfg.broker))
    result = engine.run(make_stream({"A": [10, 10], "B": [10, 10]}))

    statuses = {t.symbol: t.status for t in engine.ledger.trades()}
    assert statuses == {"A": TradeStatus.CANCELED, "B": TradeStatus.OPEN}
    assert engine.ledger.position("B") == pytest.approx(4.0)
    errors = result.warnings[result.warnings["kind"] == "BrokerError"]
    assert list(errors["ticker"]) == ["A"]
    assert "gateway down" in errors.iloc[0]["message"]


def test_trader_needs_market_data_before_acting(make_cfg):
    engine = Engine(make_cfg(), lambda ctx, state: None)
    with pytest.raises(RuntimeError, match="set_market"):
        engine.trader.apply_event("X", Side.DIVIDEND, 0.9)
