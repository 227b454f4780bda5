"""
Tests for robusta.models / robusta.errors
-----------------------------------------
Field aliases and classification, Tick book access, snapshot
serialization and the warning log.
"""

import math

import pandas as pd

from robusta.errors import ConfigurationError, DataGapError, WarningLog
from robusta.models import (
    Bar,
    BookLevel,
    FieldKind,
    Side,
    Tick,
    TradeStatus,
    classify_field,
    snapshot_from_dict,
    snapshot_to_dict,
)


def test_bar_aliases_and_extras():
    bar = Bar.from_mapping({"open": 1, "close": 2.5, "volume": 10, "news": "x"})
    assert bar.get("o") == 1.0
    assert bar.get("close") == 2.5
    assert bar.v == 10.0
    assert bar.get("news") == "x"
    assert math.isnan(bar.h)
    assert bar.get("missing", "d") == "d"


def test_classify_field():
    assert classify_field(1.5) is FieldKind.NUMERIC
    assert classify_field(True) is FieldKind.NUMERIC
    assert classify_field("VN30") is FieldKind.TEXT
    assert classify_field({"k": 1}) is FieldKind.STRUCTURED


def test_tick_book_access():
    tick = Tick(
        last_price=10.0,
        bid=(BookLevel(9.9, 100), BookLevel(9.8, 300)),
        ask=(BookLevel(10.1, 50),),
    )
    assert tick.get("c") == 10.0
    assert tick.get("bid2") == 9.8
    assert tick.get("ask1_volume") == 50
    assert tick.get("ask2") is None


def test_snapshot_round_trip():
    bar = Bar(o=1.0, c=2.0, extra={"dividend": 0.9})
    back = snapshot_from_dict(snapshot_to_dict(bar))
    assert back.c == 2.0
    assert back.extra == {"dividend": 0.9}
    assert math.isnan(back.h)

    tick = Tick(last_price=5.0, bid=(BookLevel(4.9, 10.0),))
    again = snapshot_from_dict(snapshot_to_dict(tick))
    assert isinstance(again, Tick)
    assert again.bid == (BookLevel(4.9, 10.0),)


def test_side_and_status():
    assert Side.BUY.sign == 1 and Side.SELL.sign == -1 and Side.SPLIT.sign == 0
    assert TradeStatus.CLOSED.is_terminal
    assert TradeStatus.CLOSING.is_active
    assert TradeStatus.PENDING.rank < TradeStatus.OPEN.rank


def test_warning_log_frame_and_round_trip():
    """Errors are logged under their class name with their message."""
    log = WarningLog()
    log.add_error(DataGapError("X", "missing bar"), bar=3, ticker="X")
    log.add_error(ConfigurationError("lookback", "too long"), bar=4)

    frame = log.to_frame()
    assert list(frame["kind"]) == ["DataGapError", "ConfigurationError"]
    assert frame.loc[0, "message"] == "X: missing bar"
    assert list(frame.columns) == ["kind", "message", "bar", "date", "ticker"]
    assert len(frame) == 2

    log.add("OrderRejected", "x", date=pd.Timestamp("2024-01-02", tz="UTC"))
    again = WarningLog.from_list(log.to_list())
    assert len(again) == 3
    assert list(again)[2].date == pd.Timestamp("2024-01-02", tz="UTC")
