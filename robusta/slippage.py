"""
Slippage Model
--------------
Tick based slippage for simulated fills.
Uses a wider 'hot' spread for the first minutes after the market opens.
"""

from __future__ import annotations

from typing import Optional

import pandas as pd

from .clock import SessionClock
from .config import SlippageCfg
from .models import Side


def _is_hot_window(
    ts: pd.Timestamp, slip_cfg: SlippageCfg, clock: Optional[SessionClock]
) -> bool:
    if clock is None or slip_cfg.hot_minutes <= 0 or clock.session.is_daily:
        return False
    m = clock.minute_of_day(ts)
    start = clock.session.start_market
    return start <= m < start + slip_cfg.hot_minutes


def slippage_ticks(
    ts: pd.Timestamp, slip_cfg: SlippageCfg, clock: Optional[SessionClock] = None
) -> int:
    if _is_hot_window(ts, slip_cfg, clock):
        return slip_cfg.hot_ticks
    return slip_cfg.normal_ticks


def apply_slippage(
    side: Side,
    ts: pd.Timestamp,
    raw_price: float,
    slip_cfg: Optional[SlippageCfg] = None,
    clock: Optional[SessionClock] = None,
) -> float:
    """Returns the executed price: buys pay up, sells give up `ticks * tick_size`."""
    if slip_cfg is None:
        return float(raw_price)

    ticks = slippage_ticks(ts, slip_cfg, clock)
    if ticks == 0:
        return float(raw_price)

    side = Side(side)
    if side is Side.BUY:
        return float(raw_price + ticks * slip_cfg.tick_size)
    if side is Side.SELL:
        return max(float(raw_price - ticks * slip_cfg.tick_size), slip_cfg.tick_size)

    return float(raw_price)
