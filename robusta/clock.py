"""
Session Clock
-------------
Maps timestamps onto the trading session: which phase of the day a timestamp
falls in, and which bar it belongs to.
Boundaries are start-inclusive and end-exclusive.
"""

from __future__ import annotations

import math
from enum import Enum
from typing import NamedTuple, Optional

import pandas as pd

from .config import SessionCfg


class SessionPhase(str, Enum):
    PRE_MARKET = "pre_market"
    IN_SESSION = "in_session"
    IN_BREAK = "in_break"
    POST_MARKET = "post_market"
    NON_TRADING_DAY = "non_trading_day"


class BarKey(NamedTuple):
    session_date: pd.Timestamp
    slot: int


class SessionClock:
    def __init__(self, session: SessionCfg) -> None:
        self.session = session
        self._offset = pd.Timedelta(milliseconds=session.day_offset)

    def effective(self, ts: pd.Timestamp) -> pd.Timestamp:
        return pd.Timestamp(ts) + self._offset

    def minute_of_day(self, ts: pd.Timestamp) -> float:
        t = self.effective(ts)
        return (
            t.hour * 60
            + t.minute
            + t.second / 60.0
            + t.microsecond / 60_000_000.0
        )

    def is_trading_day(self, ts: pd.Timestamp) -> bool:
        if self.session.weekend_trading:
            return True
        return self.effective(ts).dayofweek < 5

    def classify(self, ts: pd.Timestamp) -> SessionPhase:
        if not self.is_trading_day(ts):
            return SessionPhase.NON_TRADING_DAY

        s = self.session
        if s.is_daily:
            return SessionPhase.IN_SESSION

        m = self.minute_of_day(ts)
        if m < s.start_market:
            return SessionPhase.PRE_MARKET
        if m >= s.end_market:
            return SessionPhase.POST_MARKET
        if s.start_break < s.end_break and s.start_break <= m < s.end_break:
            return SessionPhase.IN_BREAK
        return SessionPhase.IN_SESSION

    def is_tradable(self, ts: pd.Timestamp) -> bool:
        return self.classify(ts) is SessionPhase.IN_SESSION

    def session_date(self, ts: pd.Timestamp) -> pd.Timestamp:
        return self.effective(ts).normalize()

    def bar_key(self, ts: pd.Timestamp) -> BarKey:
        """Identifies the bar a timestamp belongs to.

        Daily bars have a single slot per session date. Intraday slots are
        aligned on `bar_offset`, so with a 15 minute period and an offset of
        465 the slot boundaries fall on ..., 14:30, 14:45, 15:00 (GMT+7).
        """
        day = self.session_date(ts)
        s = self.session
        if s.is_daily:
            return BarKey(day, 0)
        slot = math.floor((self.minute_of_day(ts) - s.bar_offset) / s.bar_period)
        return BarKey(day, int(slot))

    def is_new_day(self, prev: Optional[pd.Timestamp], ts: pd.Timestamp) -> bool:
        if prev is None:
            return True
        return self.session_date(prev) != self.session_date(ts)

    def bars_per_session(self) -> int:
        s = self.session
        if s.is_daily:
            return 1
        minutes = (s.end_market - s.start_market) - (s.end_break - s.start_break)
        return max(0, math.ceil(minutes / s.bar_period))
