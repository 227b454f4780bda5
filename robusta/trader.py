"""
Trader
------
Strategy-facing facade over ledger, rebalancer and broker.

Target calls made during a strategy callback only queue instructions; the
engine drains the queue after the callback returns (closes before opens),
sends each instruction to the broker and applies the fills to the ledger.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Mapping, Optional

import pandas as pd

from .broker import Broker, FillNotice
from .config import RunConfig
from .errors import FATAL_ERRORS, BrokerUnavailable, OrderRejected, WarningLog
from .ledger import EPS, StatusFilter, TradeLedger
from .models import Fill, OrderInstruction, Side, Trade, Weights
from .rebalancer import Accept, accept_all, accept_buys, accept_sells, plan_rebalance

logger = logging.getLogger(__name__)


class Trader:
    def __init__(
        self,
        cfg: RunConfig,
        ledger: TradeLedger,
        broker: Broker,
        warnings: WarningLog,
    ) -> None:
        self.cfg = cfg
        self.ledger = ledger
        self.broker = broker
        self.warnings = warnings
        self._pending: list[OrderInstruction] = []
        self._prices: dict[str, float] = {}
        self._bar: Optional[int] = None
        self._time: Optional[pd.Timestamp] = None

    # ------------------------------------------------------------------
    # market state
    # ------------------------------------------------------------------
    def set_market(
        self, bar: int, time: pd.Timestamp, prices: Mapping[str, float]
    ) -> None:
        self._bar = bar
        self._time = time
        self._prices.update(prices)

    @property
    def prices(self) -> dict[str, float]:
        return dict(self._prices)

    @property
    def time(self) -> Optional[pd.Timestamp]:
        return self._time

    def _warn(self, kind: str, ticker: Optional[str], message: str) -> None:
        self.warnings.add(kind, message, bar=self._bar, date=self._time, ticker=ticker)

    # ------------------------------------------------------------------
    # target weights
    # ------------------------------------------------------------------
    def _queue_target(self, weights: Weights, accept: Accept) -> list[OrderInstruction]:
        instructions = plan_rebalance(
            weights,
            positions=self.ledger.positions(),
            prices=self._prices,
            equity=self.equity(),
            broker=self.broker,
            accept=accept,
            max_leverage=self.cfg.max_leverage,
            closable=self.closable_volumes(),
            warn=self._warn,
        )
        replaced = set(weights) | {i.symbol for i in instructions}
        self._pending = [p for p in self._pending if p.symbol not in replaced]
        self._pending.extend(instructions)
        return instructions

    def closable_volumes(self) -> dict[str, float]:
        """Held volume per symbol that the broker lets us close at this bar."""
        out: dict[str, float] = {}
        for symbol, held in self.ledger.positions().items():
            out[symbol] = sum(
                abs(t.volume)
                for t in self.ledger.open_trades(symbol)
                if t.volume * held > 0 and self.broker.can_close(t)
            )
        return out

    def order_target(self, weights: Weights) -> list[OrderInstruction]:
        return self._queue_target(weights, accept_all)

    def buy_target(self, weights: Weights) -> list[OrderInstruction]:
        return self._queue_target(weights, accept_buys)

    def sell_target(self, weights: Weights) -> list[OrderInstruction]:
        return self._queue_target(weights, accept_sells)

    def close(self, symbol: str) -> list[OrderInstruction]:
        """Queues a full close of `symbol`, leaving other holdings alone."""
        held = self.ledger.position(symbol)
        if abs(held) <= EPS:
            return []
        instr = OrderInstruction(
            symbol=symbol,
            side=Side.SELL if held > 0 else Side.BUY,
            volume=abs(held),
            price=self._prices.get(symbol, math.nan),
            action="close",
        )
        self._pending = [p for p in self._pending if p.symbol != symbol]
        self._pending.append(instr)
        return [instr]

    def cancel(self, symbol: str) -> list[Trade]:
        self._pending = [p for p in self._pending if p.symbol != symbol]
        return self.ledger.cancel_ticker(symbol)

    @property
    def pending(self) -> list[OrderInstruction]:
        return list(self._pending)

    def discard_pending(self, reason: str) -> int:
        n = len(self._pending)
        if n:
            self._warn("OrderRejected", None, f"{n} instruction(s) dropped: {reason}")
        self._pending = []
        return n

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------
    def _now(self) -> pd.Timestamp:
        if self._time is None:
            raise RuntimeError("no market data yet; call set_market() first")
        return self._time

    def _order(self, instr: OrderInstruction) -> Optional[Fill]:
        """One broker call. Failures become warnings; None means no fill."""
        time = self._now()
        try:
            return self.broker.order(instr, time)
        except OrderRejected as exc:
            self.warnings.add_error(exc, bar=self._bar, date=time, ticker=instr.symbol)
            return None
        except BrokerUnavailable as exc:
            self._warn(
                "BrokerUnavailable", instr.symbol, f"{exc}; treated as zero fill"
            )
            return Fill.zero(instr.price)
        except FATAL_ERRORS:
            raise
        except Exception as exc:
            logger.debug("broker failure on %s", instr.symbol, exc_info=True)
            self._warn("BrokerError", instr.symbol, f"{type(exc).__name__}: {exc}")
            return None

    def _execute_close(
        self, instr: OrderInstruction, force: bool = False
    ) -> list[Trade]:
        held_side = Side.BUY if instr.side is Side.SELL else Side.SELL
        candidates = [
            t for t in self.ledger.open_trades(instr.symbol) if t.side is held_side
        ]
        closable = [t for t in candidates if force or self.broker.can_close(t)]
        if candidates and not closable:
            self._warn(
                "OrderRejected",
                instr.symbol,
                f"position locked until T+{self.broker.cfg.settlement_days}",
            )
            return []

        touched: list[Trade] = []
        left = abs(instr.volume)
        for trade in closable:
            if left <= EPS:
                break
            take = min(left, abs(trade.volume))
            fill = self._order(replace(instr, volume=take, trade_id=trade.id))
            if fill is None:
                break
            if fill.volume <= EPS:
                continue
            touched.append(
                self.ledger.close(trade.id, fill.price, self._now(), fill.volume)
            )
            left -= fill.volume
        return touched

    def _execute_open(self, instr: OrderInstruction) -> Trade:
        trade = self.ledger.create(instr.symbol, instr.side, instr.volume, self._now())
        fill = self._order(replace(instr, trade_id=trade.id))
        if fill is None or fill.volume <= EPS:
            if fill is None or not self.broker.async_fills:
                self.ledger.cancel(trade.id)
            logger.debug("%s: no fill for trade %s", instr.symbol, trade.id)
            return trade

        self.ledger.apply_fill(trade.id, fill.volume, fill.price, self._now())
        if fill.volume + EPS < abs(instr.volume) and not self.broker.async_fills:
            self.ledger.cancel(trade.id)
        return trade

    def execute_pending(self) -> list[Trade]:
        """Sends queued instructions to the broker, closes first."""
        queued = sorted(self._pending, key=lambda i: 0 if i.is_close else 1)
        self._pending = []
        touched: list[Trade] = []
        for instr in queued:
            if instr.is_close:
                touched.extend(self._execute_close(instr))
            else:
                touched.append(self._execute_open(instr))
        return touched

    def liquidate(self) -> list[Trade]:
        """Closes every open trade now, ignoring settlement locks."""
        self._pending = []
        touched: list[Trade] = []
        for symbol, held in sorted(self.ledger.positions().items()):
            instr = OrderInstruction(
                symbol=symbol,
                side=Side.SELL if held > 0 else Side.BUY,
                volume=abs(held),
                price=self._prices.get(symbol, math.nan),
                action="close",
            )
            touched.extend(self._execute_close(instr, force=True))
        return touched

    def apply_notice(self, notice: FillNotice) -> Trade:
        """Applies an asynchronous fill or rejection from a live transport."""
        if notice.rejected:
            trade = self.ledger.get(notice.trade_id)
            self._warn(
                "OrderRejected", trade.symbol, notice.reason or "rejected by broker"
            )
            return self.ledger.cancel(notice.trade_id)
        if notice.action == "close":
            return self.ledger.close(
                notice.trade_id, notice.price, notice.time, notice.volume
            )
        return self.ledger.apply_fill(
            notice.trade_id, notice.volume, notice.price, notice.time
        )

    # ------------------------------------------------------------------
    # events and queries
    # ------------------------------------------------------------------
    def apply_event(self, symbol: str, kind: Side, ratio: float) -> Trade:
        return self.ledger.apply_event(symbol, kind, ratio, self._now())

    def open_trades(self, symbol: Optional[str] = None) -> list[Trade]:
        return self.ledger.open_trades(symbol)

    def trades(
        self,
        trade_id: Optional[int] = None,
        symbol: Optional[str] = None,
        status: StatusFilter = None,
    ) -> list[Trade]:
        return self.ledger.trades(trade_id=trade_id, symbol=symbol, status=status)

    def position(self, symbol: str) -> float:
        return self.ledger.position(symbol)

    def positions(self) -> dict[str, float]:
        return self.ledger.positions()

    @property
    def cash(self) -> float:
        return self.ledger.cash

    def equity(self) -> float:
        return self.ledger.equity(self._prices)
