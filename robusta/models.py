"""
Data Model
----------
Immutable market snapshots (Bar, Tick), the mutable Trade record owned by the
ledger, and the small value types passed between rebalancer, broker and
ledger (OrderInstruction, Fill).
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from enum import Enum
from numbers import Number
from typing import Any, Mapping, Optional, Union

import pandas as pd

FieldValue = Union[float, int, str, Mapping[str, Any]]
Weights = Mapping[str, float]

BAR_FIELDS: tuple[str, ...] = ("o", "h", "l", "c", "v", "p", "a", "s", "u", "f")

FIELD_ALIASES: dict[str, str] = {
    "open": "o",
    "high": "h",
    "low": "l",
    "close": "c",
    "volume": "v",
    "put_through": "p",
    "adjust": "a",
    "shares": "s",
    "unadjusted_close": "u",
    "unadjusted_open": "f",
}

# Corporate action fields carried in Bar.extra, value = price adjustment ratio.
DIVIDEND_FIELD = "dividend"
SPLIT_FIELD = "split"


class FieldKind(str, Enum):
    NUMERIC = "numeric"
    TEXT = "text"
    STRUCTURED = "structured"


def classify_field(value: Any) -> FieldKind:
    """Tags a raw field value as numeric, text or structured."""
    if isinstance(value, bool):
        return FieldKind.NUMERIC
    if isinstance(value, Number):
        return FieldKind.NUMERIC
    if isinstance(value, str):
        return FieldKind.TEXT
    return FieldKind.STRUCTURED


def canonical_field(name: str) -> str:
    return FIELD_ALIASES.get(name, name)


@dataclass(frozen=True)
class Bar:
    """OHLCV(+) snapshot of one instrument over one period."""

    o: float = math.nan
    h: float = math.nan
    l: float = math.nan  # noqa: E741
    c: float = math.nan
    v: float = 0.0
    p: float = 0.0
    a: float = 0.0
    s: float = math.nan
    u: float = math.nan
    f: float = math.nan
    extra: Mapping[str, FieldValue] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        key = canonical_field(name)
        if key in BAR_FIELDS:
            return getattr(self, key)
        return self.extra.get(name, default)

    def fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {k: getattr(self, k) for k in BAR_FIELDS}
        out.update(self.extra)
        return out

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "Bar":
        core: dict[str, Any] = {}
        extra: dict[str, FieldValue] = {}
        for k, v in row.items():
            key = canonical_field(str(k))
            if key in BAR_FIELDS:
                core[key] = math.nan if v is None else float(v)
            elif v is not None and not (isinstance(v, float) and math.isnan(v)):
                extra[str(k)] = v
        return cls(**core, extra=extra)


@dataclass(frozen=True)
class BookLevel:
    price: float
    volume: float


@dataclass(frozen=True)
class Tick:
    """Order-book snapshot: three bid/ask levels and the last trade."""

    last_price: float
    last_volume: float = 0.0
    bid: tuple[BookLevel, ...] = ()
    ask: tuple[BookLevel, ...] = ()
    extra: Mapping[str, FieldValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.bid) > 3 or len(self.ask) > 3:
            raise ValueError("Tick carries at most three book levels per side")

    def get(self, name: str, default: Any = None) -> Any:
        key = canonical_field(name)
        if key in ("o", "h", "l", "c", "u", "f"):
            return self.last_price
        if key == "v":
            return self.last_volume
        if name in ("last_price", "last_volume"):
            return getattr(self, name)
        for side in ("bid", "ask"):
            for i, level in enumerate(getattr(self, side), start=1):
                if name == f"{side}{i}":
                    return level.price
                if name == f"{side}{i}_volume":
                    return level.volume
        return self.extra.get(name, default)

    def fields(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "c": self.last_price,
            "v": self.last_volume,
            "last_price": self.last_price,
            "last_volume": self.last_volume,
        }
        for side in ("bid", "ask"):
            for i, level in enumerate(getattr(self, side), start=1):
                out[f"{side}{i}"] = level.price
                out[f"{side}{i}_volume"] = level.volume
        out.update(self.extra)
        return out


Snapshot = Union[Bar, Tick]


def _num(value: float) -> Optional[float]:
    return None if isinstance(value, float) and math.isnan(value) else value


def snapshot_to_dict(snap: Snapshot) -> dict[str, Any]:
    """JSON-friendly form of a Bar or Tick; NaN becomes None."""
    if isinstance(snap, Tick):
        return {
            "kind": "tick",
            "last_price": _num(snap.last_price),
            "last_volume": snap.last_volume,
            "bid": [[lv.price, lv.volume] for lv in snap.bid],
            "ask": [[lv.price, lv.volume] for lv in snap.ask],
            "extra": dict(snap.extra),
        }
    out: dict[str, Any] = {"kind": "bar"}
    out.update({k: _num(getattr(snap, k)) for k in BAR_FIELDS})
    out["extra"] = dict(snap.extra)
    return out


def snapshot_from_dict(d: Mapping[str, Any]) -> Snapshot:
    if d.get("kind") == "tick":
        return Tick(
            last_price=math.nan if d["last_price"] is None else d["last_price"],
            last_volume=d.get("last_volume", 0.0),
            bid=tuple(BookLevel(p, v) for p, v in d.get("bid", [])),
            ask=tuple(BookLevel(p, v) for p, v in d.get("ask", [])),
            extra=dict(d.get("extra", {})),
        )
    core = {k: (math.nan if d.get(k) is None else float(d[k])) for k in BAR_FIELDS}
    return Bar(**core, extra=dict(d.get("extra", {})))


class Side(str, Enum):
    BUY = "B"
    SELL = "S"
    DIVIDEND = "D"
    SPLIT = "X"

    @property
    def sign(self) -> int:
        if self is Side.BUY:
            return 1
        if self is Side.SELL:
            return -1
        return 0


class TradeStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    CANCELED = "canceled"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TradeStatus.CLOSED, TradeStatus.CANCELED)

    @property
    def is_active(self) -> bool:
        return self in (TradeStatus.OPEN, TradeStatus.CLOSING)


_STATUS_RANK = {
    TradeStatus.PENDING: 0,
    TradeStatus.OPEN: 1,
    TradeStatus.CLOSING: 2,
    TradeStatus.CLOSED: 3,
    TradeStatus.CANCELED: 3,
}


@dataclass
class Trade:
    """A position lot. Volumes are signed (negative = short) except close_volume."""

    id: int
    symbol: str
    side: Side
    requested: float
    open_time: pd.Timestamp
    volume: float = 0.0
    open_volume: float = 0.0
    open_price: float = math.nan
    update_time: Optional[pd.Timestamp] = None
    bars: int = 0
    days: int = 0
    close_volume: float = 0.0
    close_price: float = math.nan
    close_time: Optional[pd.Timestamp] = None
    pnl: float = 0.0
    status: TradeStatus = TradeStatus.PENDING

    @property
    def sign(self) -> int:
        return self.side.sign

    @property
    def is_open(self) -> bool:
        return self.status.is_active

    def unrealized(self, price: float) -> float:
        if not self.status.is_active or self.volume == 0:
            return 0.0
        return (price - self.open_price) * self.volume

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["side"] = self.side.value
        d["status"] = self.status.value
        for k in ("open_time", "update_time", "close_time"):
            v = d[k]
            d[k] = None if v is None else pd.Timestamp(v).isoformat()
        for k in ("open_price", "close_price"):
            if isinstance(d[k], float) and math.isnan(d[k]):
                d[k] = None
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Trade":
        kw = dict(d)
        kw["side"] = Side(kw["side"])
        kw["status"] = TradeStatus(kw["status"])
        for k in ("open_time", "update_time", "close_time"):
            kw[k] = None if kw.get(k) is None else pd.Timestamp(kw[k])
        for k in ("open_price", "close_price"):
            if kw.get(k) is None:
                kw[k] = math.nan
        return cls(**kw)


@dataclass(frozen=True)
class OrderInstruction:
    """A concrete buy/sell request produced by the rebalancer."""

    symbol: str
    side: Side
    volume: float
    price: float
    action: str = "open"  # "open" | "close"
    weight: float = 0.0
    trade_id: Optional[int] = None

    @property
    def is_close(self) -> bool:
        return self.action == "close"


@dataclass(frozen=True)
class Fill:
    """Realized execution. Zero volume is a normal outcome, not an error."""

    volume: float
    price: float

    @classmethod
    def zero(cls, price: float = math.nan) -> "Fill":
        return cls(volume=0.0, price=price)
