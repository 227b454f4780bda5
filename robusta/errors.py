"""
Error Kinds and Run Warnings
----------------------------
Fatal kinds (ConfigurationError, LedgerInvariantViolation) stop a run.
Recoverable kinds (DataGapError, OrderRejected, BrokerUnavailable) are
turned into entries of the per-run WarningLog and never interrupt bar
progression.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Iterator, Optional

import pandas as pd

logger = logging.getLogger(__name__)


class RobustaError(Exception):
    """Base class for engine errors."""


class ConfigurationError(RobustaError, ValueError):
    """Invalid run configuration. Raised before the first bar."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"Configuration Error [{field}]: {message}")


class DataGapError(RobustaError):
    """A tracked ticker has no bar at an expected step."""

    def __init__(self, ticker: Optional[str], message: str = "missing bar") -> None:
        self.ticker = ticker
        super().__init__(message if ticker is None else f"{ticker}: {message}")


class OrderRejected(RobustaError):
    """The broker declined an instruction."""

    def __init__(self, symbol: str, reason: str) -> None:
        self.symbol = symbol
        self.reason = reason
        super().__init__(f"{symbol}: {reason}")


class BrokerUnavailable(RobustaError):
    """Live transport timed out or is disconnected."""


class LedgerInvariantViolation(RobustaError):
    """The trade ledger was asked to do something that would corrupt it."""

    def __init__(self, trade_id: Optional[int], message: str) -> None:
        self.trade_id = trade_id
        super().__init__(f"trade {trade_id}: {message}")


FATAL_ERRORS = (ConfigurationError, LedgerInvariantViolation)


@dataclass(frozen=True)
class RunWarning:
    kind: str
    message: str
    bar: Optional[int] = None
    date: Optional[pd.Timestamp] = None
    ticker: Optional[str] = None


_WARNING_COLS = ["kind", "message", "bar", "date", "ticker"]


class WarningLog:
    """Append-only log of recoverable problems seen during a run."""

    def __init__(self) -> None:
        self._items: list[RunWarning] = []

    def add(
        self,
        kind: str,
        message: str,
        *,
        bar: Optional[int] = None,
        date: Optional[pd.Timestamp] = None,
        ticker: Optional[str] = None,
    ) -> RunWarning:
        item = RunWarning(kind=kind, message=message, bar=bar, date=date, ticker=ticker)
        self._items.append(item)
        logger.warning("[%s] bar=%s ticker=%s %s", kind, bar, ticker, message)
        return item

    def add_error(self, exc: BaseException, **where: Any) -> RunWarning:
        return self.add(type(exc).__name__, str(exc), **where)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[RunWarning]:
        return iter(list(self._items))

    def to_frame(self) -> pd.DataFrame:
        if not self._items:
            return pd.DataFrame(columns=_WARNING_COLS)
        return pd.DataFrame.from_records([asdict(w) for w in self._items])[
            _WARNING_COLS
        ]

    def to_list(self) -> list[dict[str, Any]]:
        out = []
        for w in self._items:
            d = asdict(w)
            d["date"] = None if w.date is None else pd.Timestamp(w.date).isoformat()
            out.append(d)
        return out

    @classmethod
    def from_list(cls, items: list[dict[str, Any]]) -> "WarningLog":
        log = cls()
        for d in items:
            date = pd.Timestamp(d["date"]) if d.get("date") else None
            log._items.append(
                RunWarning(
                    kind=d["kind"],
                    message=d["message"],
                    bar=d.get("bar"),
                    date=date,
                    ticker=d.get("ticker"),
                )
            )
        return log
