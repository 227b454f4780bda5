"""
Trade Ledger
------------
Owns every Trade of a run: creation, fills, partial and full closes,
cancellation, bar/day counters and corporate events (dividends, splits).
Also keeps the cash balance implied by the fills, so that
realized + unrealized PnL always equals the cash-flow value of the fills.

Any request that would corrupt the ledger raises LedgerInvariantViolation.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Iterable, Mapping, Optional, Union

import pandas as pd

from .errors import LedgerInvariantViolation
from .models import Side, Trade, TradeStatus

logger = logging.getLogger(__name__)

EPS = 1e-9

_TRADE_COLS = [
    "id",
    "symbol",
    "side",
    "status",
    "requested",
    "open_volume",
    "open_price",
    "open_time",
    "volume",
    "close_volume",
    "close_price",
    "close_time",
    "bars",
    "days",
    "pnl",
    "update_time",
]

StatusFilter = Union[TradeStatus, str, Iterable[Union[TradeStatus, str]], None]


def _statuses(status: StatusFilter) -> Optional[set[TradeStatus]]:
    if status is None:
        return None
    if isinstance(status, (TradeStatus, str)):
        return {TradeStatus(status)}
    return {TradeStatus(s) for s in status}


class TradeLedger:
    def __init__(self, capital: float) -> None:
        self.capital = float(capital)
        self.cash = float(capital)
        self._trades: dict[int, Trade] = {}
        self._active: set[int] = set()
        self._next_id = 1

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def _transition(self, trade: Trade, new: TradeStatus) -> None:
        cur = trade.status
        if cur == new:
            return
        if cur.is_terminal or new.rank < cur.rank:
            raise LedgerInvariantViolation(
                trade.id, f"status cannot move from {cur.value} to {new.value}"
            )
        trade.status = new

    def get(self, trade_id: int) -> Trade:
        try:
            return self._trades[trade_id]
        except KeyError:
            raise LedgerInvariantViolation(trade_id, "unknown trade id") from None

    def create(
        self, symbol: str, side: Side, volume: float, time: pd.Timestamp
    ) -> Trade:
        """Registers a pending trade. No cash or position effect until filled."""
        side = Side(side)
        if side not in (Side.BUY, Side.SELL):
            raise ValueError(f"create expects side B or S, got {side.value!r}")
        if not volume or not math.isfinite(volume):
            raise ValueError(f"create expects a nonzero volume, got {volume!r}")

        trade = Trade(
            id=self._next_id,
            symbol=symbol,
            side=side,
            requested=side.sign * abs(float(volume)),
            open_time=pd.Timestamp(time),
            update_time=pd.Timestamp(time),
        )
        self._trades[trade.id] = trade
        self._next_id += 1
        return trade

    def apply_fill(
        self, trade_id: int, volume: float, price: float, time: pd.Timestamp
    ) -> Trade:
        """Applies an opening fill (volume as a magnitude) to a trade."""
        trade = self.get(trade_id)
        if trade.status not in (TradeStatus.PENDING, TradeStatus.OPEN):
            raise LedgerInvariantViolation(
                trade.id, f"cannot fill a trade in status {trade.status.value}"
            )

        v = abs(float(volume))
        trade.update_time = pd.Timestamp(time)
        if v <= EPS:
            return trade
        if not math.isfinite(price) or price <= 0:
            raise LedgerInvariantViolation(trade.id, f"invalid fill price {price!r}")

        filled = abs(trade.open_volume)
        if filled + v > abs(trade.requested) + EPS:
            raise LedgerInvariantViolation(
                trade.id,
                f"fill of {v} exceeds requested volume "
                f"({filled} of {abs(trade.requested)} already filled)",
            )

        new_filled = filled + v
        prev_price = 0.0 if filled <= EPS else trade.open_price
        trade.open_price = (prev_price * filled + price * v) / new_filled
        trade.open_volume = trade.sign * new_filled
        trade.volume += trade.sign * v
        self.cash -= trade.sign * v * price

        self._transition(trade, TradeStatus.OPEN)
        self._active.add(trade.id)
        return trade

    def close(
        self,
        trade_id: int,
        price: float,
        time: pd.Timestamp,
        volume: Optional[float] = None,
    ) -> Trade:
        """Closes `volume` (default: everything still open) and realizes its PnL."""
        trade = self.get(trade_id)
        if not trade.status.is_active:
            raise LedgerInvariantViolation(
                trade.id, f"cannot close a trade in status {trade.status.value}"
            )

        remaining = abs(trade.volume)
        v = remaining if volume is None else abs(float(volume))
        if v > remaining + EPS:
            raise LedgerInvariantViolation(
                trade.id, f"close of {v} exceeds open volume {remaining}"
            )
        trade.update_time = pd.Timestamp(time)
        if v <= EPS:
            return trade
        if not math.isfinite(price) or price <= 0:
            raise LedgerInvariantViolation(trade.id, f"invalid close price {price!r}")

        v = min(v, remaining)
        trade.pnl += (price - trade.open_price) * v * trade.sign
        prev_close = 0.0 if trade.close_volume <= EPS else trade.close_price
        trade.close_price = (prev_close * trade.close_volume + price * v) / (
            trade.close_volume + v
        )
        trade.close_volume += v
        trade.volume -= trade.sign * v
        self.cash += trade.sign * v * price

        if abs(trade.volume) <= EPS:
            trade.volume = 0.0
            trade.close_time = pd.Timestamp(time)
            self._transition(trade, TradeStatus.CLOSED)
            self._active.discard(trade.id)
        else:
            self._transition(trade, TradeStatus.CLOSING)
        return trade

    def close_ticker(
        self,
        symbol: str,
        price: float,
        time: pd.Timestamp,
        volume: Optional[float] = None,
        can_close: Optional[Callable[[Trade], bool]] = None,
    ) -> list[Trade]:
        """Closes a symbol's trades oldest first; returns the trades touched."""
        left = None if volume is None else abs(float(volume))
        touched: list[Trade] = []
        for trade in self.open_trades(symbol):
            if left is not None and left <= EPS:
                break
            if can_close is not None and not can_close(trade):
                continue
            take = abs(trade.volume) if left is None else min(left, abs(trade.volume))
            touched.append(self.close(trade.id, price, time, take))
            if left is not None:
                left -= take
        return touched

    def cancel(self, trade_id: int) -> Trade:
        """Cancels a pending trade, or drops the unfilled remainder of a filled one."""
        trade = self.get(trade_id)
        if trade.status is TradeStatus.PENDING:
            self._transition(trade, TradeStatus.CANCELED)
        elif trade.status.is_active:
            trade.requested = trade.open_volume
        return trade

    def cancel_ticker(self, symbol: str) -> list[Trade]:
        pending = [
            t
            for t in self._trades.values()
            if t.symbol == symbol and t.status is TradeStatus.PENDING
        ]
        return [self.cancel(t.id) for t in pending]

    def mark_bar(self, time: pd.Timestamp, new_day: bool) -> None:
        """Advances bars (and days on a session change) for every held trade."""
        for tid in self._active:
            trade = self._trades[tid]
            trade.bars += 1
            if new_day:
                trade.days += 1

    def apply_event(
        self, symbol: str, kind: Side, ratio: float, time: pd.Timestamp
    ) -> Trade:
        """
        Applies a dividend (D) or split (X) to the symbol's open trades.

        `ratio` is the price adjustment factor. A dividend scales the open
        price and pays the price drop on the held volume into cash (debits it
        for shorts); a split also divides volumes by the ratio so the cost
        basis is unchanged. No PnL is realized.
        """
        kind = Side(kind)
        if kind not in (Side.DIVIDEND, Side.SPLIT):
            raise ValueError(f"apply_event expects side D or X, got {kind.value!r}")
        if not math.isfinite(ratio) or ratio <= 0:
            raise ValueError(f"event ratio must be > 0, got {ratio!r}")

        for trade in self.open_trades(symbol):
            if kind is Side.DIVIDEND:
                self.cash += trade.volume * trade.open_price * (1.0 - ratio)
            trade.open_price *= ratio
            if kind is Side.SPLIT:
                trade.volume /= ratio
                trade.open_volume /= ratio
                trade.requested /= ratio
                trade.close_volume /= ratio
                if trade.close_volume > 0:
                    trade.close_price *= ratio
            trade.update_time = pd.Timestamp(time)

        event = Trade(
            id=self._next_id,
            symbol=symbol,
            side=kind,
            requested=0.0,
            open_time=pd.Timestamp(time),
            open_price=float(ratio),
            update_time=pd.Timestamp(time),
            close_time=pd.Timestamp(time),
            status=TradeStatus.CLOSED,
        )
        self._trades[event.id] = event
        self._next_id += 1
        logger.debug("%s event on %s ratio=%s", kind.value, symbol, ratio)
        return event

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------
    def open_trades(self, symbol: Optional[str] = None) -> list[Trade]:
        out = [self._trades[tid] for tid in sorted(self._active)]
        if symbol is not None:
            out = [t for t in out if t.symbol == symbol]
        return out

    def trades(
        self,
        trade_id: Optional[int] = None,
        symbol: Optional[str] = None,
        status: StatusFilter = None,
    ) -> list[Trade]:
        wanted = _statuses(status)
        out = []
        for t in self._trades.values():
            if trade_id is not None and t.id != trade_id:
                continue
            if symbol is not None and t.symbol != symbol:
                continue
            if wanted is not None and t.status not in wanted:
                continue
            out.append(t)
        return out

    def position(self, symbol: str) -> float:
        return float(sum(t.volume for t in self.open_trades(symbol)))

    def positions(self) -> dict[str, float]:
        out: dict[str, float] = {}
        for t in self.open_trades():
            out[t.symbol] = out.get(t.symbol, 0.0) + t.volume
        return {k: v for k, v in out.items() if abs(v) > EPS}

    def realized_pnl(self) -> float:
        return float(sum(t.pnl for t in self._trades.values()))

    def _mark(self, trade: Trade, prices: Mapping[str, float]) -> float:
        px = prices.get(trade.symbol)
        if px is None or not math.isfinite(px):
            return trade.open_price
        return float(px)

    def unrealized_pnl(self, prices: Mapping[str, float]) -> float:
        return float(
            sum(t.unrealized(self._mark(t, prices)) for t in self.open_trades())
        )

    def equity(self, prices: Mapping[str, float]) -> float:
        held = sum(t.volume * self._mark(t, prices) for t in self.open_trades())
        return float(self.cash + held)

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------
    def to_frame(self) -> pd.DataFrame:
        if not self._trades:
            return pd.DataFrame(columns=_TRADE_COLS)
        rows = []
        for t in self._trades.values():
            row = {c: getattr(t, c) for c in _TRADE_COLS}
            row["side"] = t.side.value
            row["status"] = t.status.value
            rows.append(row)
        return pd.DataFrame.from_records(rows)[_TRADE_COLS]

    def to_dict(self) -> dict[str, Any]:
        return {
            "capital": self.capital,
            "cash": self.cash,
            "next_id": self._next_id,
            "trades": [t.to_dict() for t in self._trades.values()],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TradeLedger":
        ledger = cls(float(d["capital"]))
        ledger.cash = float(d["cash"])
        ledger._next_id = int(d["next_id"])
        for item in d.get("trades", []):
            trade = Trade.from_dict(item)
            ledger._trades[trade.id] = trade
            if trade.status.is_active and trade.side in (Side.BUY, Side.SELL):
                ledger._active.add(trade.id)
        return ledger
