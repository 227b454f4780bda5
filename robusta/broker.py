"""
Broker Adapter
--------------
Capability boundary between the trader and the market.
Both variants share the lot, shorting and settlement rules of BrokerCfg:
- SimulatedBroker fills from the current bar with slippage and an optional
  participation cap (backtests).
- LiveBroker delegates to an external transport with an explicit timeout and
  collects asynchronous fill/rejection notices.
"""

from __future__ import annotations

import logging
import math
import queue
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

import pandas as pd

from .clock import SessionClock
from .config import BrokerCfg
from .errors import BrokerUnavailable, OrderRejected
from .models import Fill, OrderInstruction, Snapshot, Trade
from .slippage import apply_slippage

logger = logging.getLogger(__name__)


class Broker(ABC):
    async_fills = False

    def __init__(self, cfg: BrokerCfg) -> None:
        self.cfg = cfg

    def lot_size(self, symbol: str) -> float:
        return float(self.cfg.lot_sizes.get(symbol, self.cfg.lot_size))

    def refine_volume(self, volume: float, price: float, symbol: str) -> float:
        """Rounds toward zero to a whole number of lots. Never rounds up."""
        if not math.isfinite(volume) or not math.isfinite(price) or price <= 0:
            return 0.0
        lot = self.lot_size(symbol)
        lots = math.floor(abs(volume) / lot + 1e-9)
        return math.copysign(lots * lot, volume) if lots else 0.0

    def can_short(self, symbol: str) -> bool:
        if not self.cfg.allow_short:
            return False
        return self.cfg.shortable is None or symbol in self.cfg.shortable

    def can_close(self, trade: Trade) -> bool:
        return trade.status.is_active and trade.days >= self.cfg.settlement_days

    def on_bar(self, time: pd.Timestamp, data: Mapping[str, Snapshot]) -> None:
        """Called once per step with the current data slice."""

    @abstractmethod
    def order(self, instruction: OrderInstruction, time: pd.Timestamp) -> Fill:
        """Attempts a fill; partial and zero fills are normal results."""


class SimulatedBroker(Broker):
    def __init__(self, cfg: BrokerCfg, clock: Optional[SessionClock] = None) -> None:
        super().__init__(cfg)
        self.clock = clock
        self._data: Mapping[str, Snapshot] = {}

    def on_bar(self, time: pd.Timestamp, data: Mapping[str, Snapshot]) -> None:
        self._data = data

    def order(self, instruction: OrderInstruction, time: pd.Timestamp) -> Fill:
        snap = self._data.get(instruction.symbol)
        raw = None if snap is None else snap.get(self.cfg.fill_field)
        try:
            raw_price = float(raw) if raw is not None else math.nan
        except (TypeError, ValueError):
            raw_price = math.nan
        if not math.isfinite(raw_price) or raw_price <= 0:
            raise OrderRejected(instruction.symbol, "no tradable price at this bar")

        price = apply_slippage(
            instruction.side, time, raw_price, self.cfg.slippage, self.clock
        )

        volume = abs(instruction.volume)
        if self.cfg.max_volume_pct > 0:
            bar_volume = float(snap.get("v") or 0.0) if snap is not None else 0.0
            cap = abs(
                self.refine_volume(
                    bar_volume * self.cfg.max_volume_pct, price, instruction.symbol
                )
            )
            if cap < volume:
                logger.debug(
                    "%s: participation cap %.4g < requested %.4g",
                    instruction.symbol,
                    cap,
                    volume,
                )
                volume = cap

        return Fill(volume=volume, price=price)


@dataclass(frozen=True)
class FillNotice:
    """Asynchronous fill or rejection reported by a live transport."""

    trade_id: int
    action: str  # "open" | "close"
    volume: float
    price: float
    time: pd.Timestamp
    rejected: bool = False
    reason: str = ""


class BrokerTransport(Protocol):
    def place_order(self, instruction: OrderInstruction) -> Fill: ...


class LiveBroker(Broker):
    async_fills = True

    def __init__(
        self,
        cfg: BrokerCfg,
        transport: BrokerTransport,
        clock: Optional[SessionClock] = None,
    ) -> None:
        super().__init__(cfg)
        self.transport = transport
        self.clock = clock
        self.notifications: "queue.Queue[FillNotice]" = queue.Queue()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="broker")

    def order(self, instruction: OrderInstruction, time: pd.Timestamp) -> Fill:
        future = self._pool.submit(self.transport.place_order, instruction)
        try:
            fill = future.result(timeout=self.cfg.timeout_s)
        except FutureTimeout:
            future.cancel()
            raise BrokerUnavailable(
                f"{instruction.symbol}: no broker response within {self.cfg.timeout_s}s"
            ) from None
        except (ConnectionError, OSError) as exc:
            raise BrokerUnavailable(f"{instruction.symbol}: {exc}") from exc
        return fill

    def notify(self, notice: FillNotice) -> None:
        """Thread-safe entry point for transport callbacks."""
        self.notifications.put(notice)

    def drain_notifications(self) -> list[FillNotice]:
        out: list[FillNotice] = []
        while True:
            try:
                out.append(self.notifications.get_nowait())
            except queue.Empty:
                return out

    def close(self) -> None:
        self._pool.shutdown(wait=False)
