"""
Execution Engine
----------------
Drives a run bar by bar:
clock -> data slice -> series buffer -> Context -> strategy -> trader/broker
-> ledger -> recorder.

Run phases: warmup (inside lookback, no trading) -> trading -> closing
(final bar liquidation when open_end is False) -> done.
Only configuration errors and ledger invariant violations stop a run;
everything else that goes wrong inside a bar becomes a run warning.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

import pandas as pd

from .broker import Broker, SimulatedBroker
from .clock import SessionClock
from .config import RunConfig
from .context import Context, State, custom_store
from .errors import FATAL_ERRORS, ConfigurationError, DataGapError, WarningLog
from .ledger import TradeLedger
from .metrics import summary
from .models import (
    DIVIDEND_FIELD,
    SPLIT_FIELD,
    Side,
    Snapshot,
    snapshot_from_dict,
    snapshot_to_dict,
)
from .recording import FrameRecorder, Recorder
from .series import SeriesBuffer
from .trader import Trader
from .universe import StaticUniverse, Universe

logger = logging.getLogger(__name__)

StreamItem = tuple[Any, str, Snapshot]
Slice = tuple[pd.Timestamp, dict[str, Snapshot]]

_EVENT_FIELDS = ((DIVIDEND_FIELD, Side.DIVIDEND), (SPLIT_FIELD, Side.SPLIT))


class RunPhase(str, Enum):
    WARMUP = "warmup"
    TRADING = "trading"
    CLOSING = "closing"
    DONE = "done"


@dataclass
class RunResult:
    trades: pd.DataFrame
    records: pd.DataFrame
    warnings: pd.DataFrame
    equity: pd.Series
    summary: dict[str, Any]
    bars: int
    phase: RunPhase = RunPhase.DONE
    extra: dict[str, Any] = field(default_factory=dict)


def to_timestamp(value: Any) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts


def group_slices(stream: Iterable[StreamItem]) -> Iterator[Slice]:
    """Groups consecutive stream items sharing a timestamp into one slice."""
    current: Optional[pd.Timestamp] = None
    data: dict[str, Snapshot] = {}
    for raw_ts, ticker, snap in stream:
        ts = to_timestamp(raw_ts)
        if current is not None and ts != current:
            yield current, data
            data = {}
        current = ts
        data[ticker] = snap
    if current is not None:
        yield current, data


def _end_bound(cfg: RunConfig) -> Optional[pd.Timestamp]:
    end = cfg.end_ts
    if end is None:
        return None
    if end == end.normalize():
        # a date without a time covers that whole day
        return end + pd.Timedelta(days=1) - pd.Timedelta(nanoseconds=1)
    return end


class Engine:
    def __init__(
        self,
        cfg: RunConfig,
        strategy: Any,
        *,
        broker: Optional[Broker] = None,
        universe: Optional[Universe] = None,
        recorder: Optional[Recorder] = None,
        state: Optional[State] = None,
    ) -> None:
        if universe is None:
            if not cfg.assets:
                raise ConfigurationError("assets", "empty universe")
            universe = StaticUniverse(cfg.assets)
        if not callable(strategy) and not hasattr(strategy, "on_bar"):
            raise ConfigurationError(
                "strategy", "expected a callable or an object with on_bar()"
            )

        self.cfg = cfg
        self.strategy = strategy
        self.universe = universe
        self.clock = SessionClock(cfg.session)
        self.buffer = SeriesBuffer(max(cfg.lookback, cfg.series_depth))
        self.ledger = TradeLedger(cfg.capital)
        self.warnings = WarningLog()
        self.broker = broker or SimulatedBroker(cfg.broker, self.clock)
        self.trader = Trader(cfg, self.ledger, self.broker, self.warnings)
        self.recorder = recorder if recorder is not None else FrameRecorder()
        self.state = state if state is not None else State()
        self.custom = custom_store()

        self.phase = RunPhase.WARMUP
        self.bar = -1
        self.last_ts: Optional[pd.Timestamp] = None
        self._start = cfg.start_ts
        self._end = _end_bound(cfg)
        self._last_bars: dict[str, Snapshot] = {}
        self._equity: list[tuple[pd.Timestamp, float]] = []
        self._last_ctx: Optional[Context] = None
        self._started = False
        self._result: Optional[RunResult] = None

        logger.debug(
            "engine ready: %d bar(s) per session, capital=%s, lookback=%d",
            self.clock.bars_per_session(),
            cfg.capital,
            cfg.lookback,
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    def _warn(self, kind: str, message: str, ticker: Optional[str] = None) -> None:
        self.warnings.add(
            kind, message, bar=self.bar, date=self.last_ts, ticker=ticker
        )

    def _gap(self, message: str, ticker: Optional[str] = None) -> None:
        exc = DataGapError(ticker, message)
        self.warnings.add_error(exc, bar=self.bar, date=self.last_ts, ticker=ticker)

    def _price(self, snap: Snapshot) -> float:
        raw = snap.get(self.cfg.broker.fill_field)
        try:
            return float(raw)
        except (TypeError, ValueError):
            return math.nan

    def _hook(self, name: str) -> Optional[Callable[..., Any]]:
        if name == "on_bar" and not hasattr(self.strategy, "on_bar"):
            return self.strategy
        return getattr(self.strategy, name, None)

    def _invoke(self, name: str, ctx: Context) -> bool:
        fn = self._hook(name)
        if fn is None:
            return True
        try:
            fn(ctx, self.state)
        except FATAL_ERRORS:
            raise
        except Exception as exc:
            logger.debug("strategy %s failed at bar %d", name, self.bar, exc_info=True)
            self._warn("StrategyError", f"{name}: {type(exc).__name__}: {exc}")
            return False
        return True

    def _build_slice(
        self, ts: pd.Timestamp, data: Mapping[str, Snapshot]
    ) -> tuple[tuple[str, ...], dict[str, Snapshot], dict[str, Snapshot]]:
        assets = tuple(self.universe.get_universe(ts))
        if not assets:
            self._gap("universe is empty at this date")
        held = [s for s in self.ledger.positions() if s not in assets]

        out: dict[str, Snapshot] = {}
        fresh: dict[str, Snapshot] = {}
        for ticker in list(assets) + sorted(held):
            snap = data.get(ticker)
            if snap is not None:
                out[ticker] = fresh[ticker] = snap
                self._last_bars[ticker] = snap
                continue
            last = self._last_bars.get(ticker)
            if last is not None:
                out[ticker] = last
                self._gap("missing bar, forward-filled", ticker)
            else:
                self._gap("missing bar, skipped", ticker)
        return assets, out, fresh

    def _apply_events(self, ts: pd.Timestamp, fresh: Mapping[str, Snapshot]) -> None:
        for ticker, snap in fresh.items():
            for name, kind in _EVENT_FIELDS:
                raw = snap.get(name)
                if raw is None:
                    continue
                try:
                    ratio = float(raw)
                except (TypeError, ValueError):
                    self._gap(f"unreadable {name} {raw!r}", ticker)
                    continue
                if not math.isfinite(ratio) or ratio <= 0:
                    self._gap(f"invalid {name} ratio {raw!r}", ticker)
                    continue
                if ratio != 1.0 and self.ledger.open_trades(ticker):
                    self.ledger.apply_event(ticker, kind, ratio, ts)

    # ------------------------------------------------------------------
    # stepping
    # ------------------------------------------------------------------
    def step(
        self, ts: Any, data: Mapping[str, Snapshot], *, is_last: bool = False
    ) -> bool:
        """Processes one slice. Returns False when the slice was skipped."""
        if self.phase is RunPhase.DONE:
            raise RuntimeError("run already finished")

        ts = to_timestamp(ts)
        if self.last_ts is not None and ts <= self.last_ts:
            self._gap(f"out-of-order timestamp {ts} skipped")
            return False
        if self._start is not None and ts < self._start:
            return False
        if not self.clock.is_tradable(ts):
            logger.debug("skipping %s (%s)", ts, self.clock.classify(ts).value)
            return False

        new_day = self.clock.is_new_day(self.last_ts, ts)
        self.bar += 1
        self.last_ts = ts
        self.ledger.mark_bar(ts, new_day)

        assets, current, fresh = self._build_slice(ts, data)
        self._apply_events(ts, fresh)
        for ticker, snap in current.items():
            self.buffer.append(ticker, snap)
        self.broker.on_bar(ts, current)

        prices = {t: self._price(s) for t, s in current.items()}
        self.trader.set_market(self.bar, ts, prices)

        is_lookback = self.bar < self.cfg.lookback
        self.phase = RunPhase.WARMUP if is_lookback else RunPhase.TRADING
        ctx = Context(
            self.cfg,
            trader=self.trader,
            buffer=self.buffer,
            custom=self.custom,
            bar=self.bar,
            date=ts,
            data=current,
            assets=assets,
            is_lookback=is_lookback,
        )

        if not self._started:
            self._started = True
            self._invoke("on_start", ctx)
        ok = self._invoke("on_bar", ctx)

        if not ok:
            self.trader.discard_pending("strategy callback failed")
        elif is_lookback:
            self.trader.discard_pending("no trading during lookback")
        else:
            self._execute()

        if is_last and not self.cfg.open_end:
            self._liquidate()

        if ctx.records:
            self.recorder.emit(self.bar, ts, ctx.records)
        self._equity.append((ts, self.trader.equity()))
        self._last_ctx = ctx
        return True

    def _execute(self) -> None:
        try:
            self.trader.execute_pending()
        except FATAL_ERRORS:
            raise
        except Exception as exc:
            logger.debug("broker failure at bar %d", self.bar, exc_info=True)
            self._warn("BrokerError", f"{type(exc).__name__}: {exc}")

    def _liquidate(self) -> None:
        self.phase = RunPhase.CLOSING
        try:
            self.trader.liquidate()
        except FATAL_ERRORS:
            raise
        except Exception as exc:
            self._warn("BrokerError", f"liquidation: {type(exc).__name__}: {exc}")

    def _check_availability(self, stream: Any) -> None:
        n_steps = getattr(stream, "n_steps", None)
        if n_steps is None:
            return
        n = n_steps()
        if self.cfg.lookback and n <= self.cfg.lookback:
            raise ConfigurationError(
                "lookback",
                f"lookback of {self.cfg.lookback} bars needs more data "
                f"than the {n} step(s) available",
            )

    def run(
        self,
        stream: Iterable[StreamItem],
        stop: Optional[threading.Event] = None,
    ) -> RunResult:
        """Backtest loop: consumes the whole stream, then finishes the run."""
        self._check_availability(stream)
        logger.info("run started: %s %s", self.cfg.market, self.cfg.data_type)

        slices = group_slices(stream)
        current = next(slices, None)
        stopped = False
        while current is not None:
            if stop is not None and stop.is_set():
                logger.info("stop requested after bar %d", self.bar)
                stopped = True
                break
            ts, data = current
            if self._end is not None and ts > self._end:
                break
            nxt = next(slices, None)
            is_last = nxt is None or (self._end is not None and nxt[0] > self._end)
            self.step(ts, data, is_last=is_last)
            current = nxt

        return self.finish(liquidate=not stopped)

    def finish(self, liquidate: bool = True) -> RunResult:
        if self._result is not None:
            return self._result

        if liquidate and not self.cfg.open_end and self.ledger.open_trades():
            self._liquidate()
            if self._equity:
                self._equity[-1] = (self._equity[-1][0], self.trader.equity())

        if self._last_ctx is not None:
            self._invoke("on_end", self._last_ctx)

        self.phase = RunPhase.DONE
        trades = self.ledger.to_frame()
        equity = pd.Series(
            [v for _, v in self._equity],
            index=pd.DatetimeIndex([t for t, _ in self._equity]),
            name="equity",
            dtype=float,
        )
        records = (
            self.recorder.to_frame()
            if isinstance(self.recorder, FrameRecorder)
            else pd.DataFrame()
        )
        self._result = RunResult(
            trades=trades,
            records=records,
            warnings=self.warnings.to_frame(),
            equity=equity,
            summary=summary(trades, equity, capital=self.cfg.capital),
            bars=self.bar + 1,
        )
        logger.info(
            "run finished: %d bar(s), %d trade(s), %d warning(s)",
            self._result.bars,
            len(trades),
            len(self.warnings),
        )
        return self._result

    # ------------------------------------------------------------------
    # resumable state
    # ------------------------------------------------------------------
    def checkpoint(self) -> dict[str, Any]:
        return {
            "bar": self.bar,
            "last_ts": None if self.last_ts is None else self.last_ts.isoformat(),
            "phase": self.phase.value,
            "started": self._started,
            "ledger": self.ledger.to_dict(),
            "buffer": self.buffer.to_dict(),
            "last_bars": {t: snapshot_to_dict(s) for t, s in self._last_bars.items()},
            "prices": self.trader.prices,
            "equity": [[t.isoformat(), v] for t, v in self._equity],
            "state": self.state.to_dict(),
            "custom": self.custom.to_dict(),
            "warnings": self.warnings.to_list(),
        }

    def restore(self, snap: Mapping[str, Any]) -> None:
        """Loads a checkpoint into a freshly built engine with the same config."""
        if self.bar != -1:
            raise RuntimeError("restore() needs an engine that has not stepped yet")
        self.bar = int(snap["bar"])
        last_ts = snap["last_ts"]
        self.last_ts = None if last_ts is None else pd.Timestamp(last_ts)
        self.phase = RunPhase(snap["phase"])
        self._started = bool(snap.get("started", self.bar >= 0))
        self.ledger = TradeLedger.from_dict(snap["ledger"])
        self.buffer = SeriesBuffer.from_dict(snap["buffer"])
        self._last_bars = {
            t: snapshot_from_dict(d) for t, d in snap.get("last_bars", {}).items()
        }
        self._equity = [(pd.Timestamp(t), float(v)) for t, v in snap.get("equity", [])]
        self.warnings = WarningLog.from_list(snap.get("warnings", []))
        self.trader = Trader(self.cfg, self.ledger, self.broker, self.warnings)
        if self.last_ts is not None:
            self.trader.set_market(self.bar, self.last_ts, snap.get("prices", {}))
        self.state.clear()
        self.state.update(snap.get("state", {}))
        self.custom = custom_store(snap.get("custom", {}))
