"""
Strategy Context
----------------
The per-bar facade handed to strategy code, plus the key-value stores that
carry strategy data across bars.

Context exposes read-only run parameters, the current bar index/date/data
slice, warm-up flags, and the `series`, `record` and target-weight calls.
Strategy-defined values go through `ctx[key]`; names of Context attributes
are reserved and cannot be overwritten.
"""

from __future__ import annotations

from typing import Any, Iterator, Mapping, MutableMapping, Optional

import numpy as np
import pandas as pd

from .config import RunConfig
from .models import OrderInstruction, Snapshot, Weights
from .recording import normalize_record
from .series import SeriesBuffer
from .trader import Trader


class KeyValueStore(MutableMapping[str, Any]):
    """Plain string-keyed store that refuses a fixed set of reserved keys."""

    def __init__(
        self,
        data: Optional[Mapping[str, Any]] = None,
        reserved: frozenset[str] = frozenset(),
    ) -> None:
        self._reserved = frozenset(reserved)
        self._data: dict[str, Any] = {}
        for k, v in (data or {}).items():
            self[k] = v

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if not isinstance(key, str):
            raise TypeError(f"keys must be str, got {type(key).__name__}")
        if key in self._reserved:
            raise KeyError(f"{key!r} is a reserved key")
        self._data[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)


class State(KeyValueStore):
    """Strategy-owned mutable data. Supports `state.x` as well as `state["x"]`."""

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._data[name]
        except KeyError:
            raise AttributeError(name) from None

    def __setattr__(self, name: str, value: Any) -> None:
        if name.startswith("_"):
            object.__setattr__(self, name, value)
        else:
            self[name] = value


RESERVED_KEYS = frozenset(
    {
        "cfg",
        "params",
        "strategy",
        "mode",
        "start_date",
        "end_date",
        "start_market",
        "start_break",
        "end_break",
        "end_market",
        "bar_period",
        "bar_offset",
        "day_offset",
        "assets",
        "market",
        "data_type",
        "lookback",
        "bar_fields",
        "bar",
        "date",
        "data",
        "is_unstable",
        "is_lookback",
        "trader",
        "series",
        "record",
        "buy_target",
        "sell_target",
        "order_target",
    }
)


def custom_store(data: Optional[Mapping[str, Any]] = None) -> KeyValueStore:
    return KeyValueStore(data, reserved=RESERVED_KEYS)


class Context:
    def __init__(
        self,
        cfg: RunConfig,
        *,
        trader: Trader,
        buffer: SeriesBuffer,
        custom: KeyValueStore,
        bar: int,
        date: pd.Timestamp,
        data: Mapping[str, Snapshot],
        assets: tuple[str, ...],
        is_lookback: bool,
    ) -> None:
        self.cfg = cfg
        self.trader = trader
        self.bar = bar
        self.date = date
        self.data = dict(data)
        self.assets = assets
        self.is_lookback = is_lookback
        self._buffer = buffer
        self._custom = custom
        self._records: dict[str, Any] = {}

    # run parameters
    @property
    def params(self) -> Mapping[str, Any]:
        return self.cfg.params

    @property
    def strategy(self) -> str:
        return self.cfg.strategy

    @property
    def mode(self) -> str:
        return self.cfg.mode

    @property
    def start_date(self) -> Optional[str]:
        return self.cfg.start_date

    @property
    def end_date(self) -> Optional[str]:
        return self.cfg.end_date

    @property
    def market(self) -> str:
        return self.cfg.market

    @property
    def data_type(self) -> str:
        return self.cfg.data_type

    @property
    def lookback(self) -> int:
        return self.cfg.lookback

    @property
    def bar_fields(self) -> str:
        return self.cfg.bar_fields

    @property
    def start_market(self) -> int:
        return self.cfg.session.start_market

    @property
    def start_break(self) -> int:
        return self.cfg.session.start_break

    @property
    def end_break(self) -> int:
        return self.cfg.session.end_break

    @property
    def end_market(self) -> int:
        return self.cfg.session.end_market

    @property
    def bar_period(self) -> int:
        return self.cfg.session.bar_period

    @property
    def bar_offset(self) -> int:
        return self.cfg.session.bar_offset

    @property
    def day_offset(self) -> int:
        return self.cfg.session.day_offset

    # derived flags
    @property
    def is_unstable(self) -> bool:
        return self._buffer.is_unstable()

    # history
    def series(
        self, ticker: str, field: str, length: Optional[int] = None
    ) -> list[Any]:
        return self._buffer.series(ticker, field, length)

    def series_array(self, ticker: str, field: str, length: int) -> np.ndarray:
        return self._buffer.series_array(ticker, field, length)

    # recording
    def record(self, data: Any = None, **values: Any) -> None:
        normalize_record(data, self._records)
        self._records.update(values)

    @property
    def records(self) -> dict[str, Any]:
        return dict(self._records)

    # trading
    def buy_target(self, weights: Weights) -> list[OrderInstruction]:
        return self.trader.buy_target(weights)

    def sell_target(self, weights: Weights) -> list[OrderInstruction]:
        return self.trader.sell_target(weights)

    def order_target(self, weights: Weights) -> list[OrderInstruction]:
        return self.trader.order_target(weights)

    # strategy-defined values
    def __getitem__(self, key: str) -> Any:
        return self._custom[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self._custom[key] = value

    def __contains__(self, key: str) -> bool:
        return key in self._custom

    def get(self, key: str, default: Any = None) -> Any:
        return self._custom.get(key, default)
