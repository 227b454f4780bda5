"""
Configuration Schemas
---------------------
Frozen dataclasses describing one run: session boundaries, broker rules,
slippage and the strategy-facing run parameters.
A config value is built once per run and threaded through every component;
there is no module-level configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, get_type_hints

import pandas as pd
import yaml

from .errors import ConfigurationError
from .validator import validate_keys

MINUTES_PER_DAY = 1440
MODES = ("test", "trade", "train")
FILL_FIELDS = ("o", "h", "l", "c", "u", "f")


@dataclass(frozen=True)
class SessionCfg:
    """Trading session in minutes from midnight (UTC unless data says otherwise).

    Defaults are the Vietnamese equity session expressed in UTC:
    09:15 open, 11:31-13:00 lunch break, 14:45 close (GMT+7).
    """

    start_market: int = 135
    start_break: int = 271
    end_break: int = 360
    end_market: int = 465
    bar_period: int = MINUTES_PER_DAY
    bar_offset: int = 465
    day_offset: int = 0  # milliseconds, positive = run ahead
    weekend_trading: bool = False

    def __post_init__(self) -> None:
        for name in ("start_market", "start_break", "end_break", "end_market"):
            v = getattr(self, name)
            if not 0 <= v <= MINUTES_PER_DAY:
                raise ConfigurationError(
                    f"session.{name}", f"must be within [0, 1440], got {v}"
                )
        if self.start_market > self.end_market:
            raise ConfigurationError(
                "session.start_market",
                f"start_market ({self.start_market}) is after "
                f"end_market ({self.end_market})",
            )
        if self.start_break > self.end_break:
            raise ConfigurationError(
                "session.start_break",
                f"start_break ({self.start_break}) is after "
                f"end_break ({self.end_break})",
            )
        if self.start_break != self.end_break and not (
            self.start_market <= self.start_break
            and self.end_break <= self.end_market
        ):
            raise ConfigurationError(
                "session.start_break", "break must lie inside the market session"
            )
        if self.bar_period <= 0:
            raise ConfigurationError(
                "session.bar_period", f"must be > 0, got {self.bar_period}"
            )

    @property
    def is_daily(self) -> bool:
        return self.bar_period >= MINUTES_PER_DAY


@dataclass(frozen=True)
class SlippageCfg:
    """Tick based slippage; hot window = first `hot_minutes` after the open."""

    normal_ticks: int = 0
    hot_ticks: int = 0
    hot_minutes: int = 0
    tick_size: float = 0.01

    def __post_init__(self) -> None:
        if self.tick_size <= 0:
            raise ConfigurationError(
                "broker.slippage.tick_size", f"must be > 0, got {self.tick_size}"
            )
        if self.normal_ticks < 0 or self.hot_ticks < 0 or self.hot_minutes < 0:
            raise ConfigurationError(
                "broker.slippage", "ticks and hot_minutes must be >= 0"
            )


@dataclass(frozen=True)
class BrokerCfg:
    """Lot rules, shorting and settlement constraints for the broker adapter."""

    lot_size: float = 1.0
    lot_sizes: Mapping[str, float] = field(default_factory=dict)
    allow_short: bool = False
    shortable: Optional[tuple[str, ...]] = None
    settlement_days: int = 0
    fill_field: str = "c"
    max_volume_pct: float = 0.0
    timeout_s: float = 5.0
    slippage: SlippageCfg = field(default_factory=SlippageCfg)

    def __post_init__(self) -> None:
        if self.lot_size <= 0:
            raise ConfigurationError(
                "broker.lot_size", f"must be > 0, got {self.lot_size}"
            )
        for sym, lot in self.lot_sizes.items():
            if lot <= 0:
                raise ConfigurationError(
                    f"broker.lot_sizes.{sym}", f"must be > 0, got {lot}"
                )
        if self.shortable is not None:
            object.__setattr__(self, "shortable", tuple(self.shortable))
        object.__setattr__(self, "lot_sizes", dict(self.lot_sizes))
        if self.settlement_days < 0:
            raise ConfigurationError(
                "broker.settlement_days", "must be >= 0"
            )
        if self.fill_field not in FILL_FIELDS:
            raise ConfigurationError(
                "broker.fill_field",
                f"Invalid fill field {self.fill_field!r}; allowed {FILL_FIELDS}",
            )
        if not 0.0 <= self.max_volume_pct <= 1.0:
            raise ConfigurationError(
                "broker.max_volume_pct", "must be within [0, 1]"
            )
        if self.timeout_s <= 0:
            raise ConfigurationError("broker.timeout_s", "must be > 0")


@dataclass(frozen=True)
class RunConfig:
    """Root configuration object for one run."""

    mode: str = "test"
    strategy: str = ""
    market: str = "vn"
    data_type: str = "daily"
    assets: tuple[str, ...] = ()
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    lookback: int = 0
    bar_fields: str = "ohlcv"
    capital: float = 100_000.0
    max_leverage: Optional[float] = None
    open_end: bool = True
    series_depth: int = 250
    params: Mapping[str, Any] = field(default_factory=dict)
    session: SessionCfg = field(default_factory=SessionCfg)
    broker: BrokerCfg = field(default_factory=BrokerCfg)

    def __post_init__(self) -> None:
        object.__setattr__(self, "assets", tuple(str(a) for a in self.assets))
        object.__setattr__(self, "params", dict(self.params or {}))
        for name in ("start_date", "end_date"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                # YAML turns bare dates into datetime.date
                object.__setattr__(self, name, str(value))

        if self.mode not in MODES:
            raise ConfigurationError(
                "mode", f"must be one of {MODES}, got {self.mode!r}"
            )
        if self.lookback < 0:
            raise ConfigurationError("lookback", f"must be >= 0, got {self.lookback}")
        if self.series_depth < 1:
            raise ConfigurationError("series_depth", "must be >= 1")
        if self.capital <= 0:
            raise ConfigurationError("capital", f"must be > 0, got {self.capital}")
        if self.max_leverage is not None and self.max_leverage <= 0:
            raise ConfigurationError("max_leverage", "must be > 0 when set")
        if len(set(self.assets)) != len(self.assets):
            raise ConfigurationError("assets", "duplicate tickers")

        start = _parse_date("start_date", self.start_date)
        end = _parse_date("end_date", self.end_date)
        if start is not None and end is not None and start > end:
            raise ConfigurationError(
                "start_date",
                f"start_date {self.start_date} is after end_date {self.end_date}",
            )

    @property
    def start_ts(self) -> Optional[pd.Timestamp]:
        return _parse_date("start_date", self.start_date)

    @property
    def end_ts(self) -> Optional[pd.Timestamp]:
        return _parse_date("end_date", self.end_date)


def _parse_date(name: str, value: Optional[str]) -> Optional[pd.Timestamp]:
    if value is None or value == "":
        return None
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(name, f"not a date: {value!r}") from exc
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts


def _deep_merge(base: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in patch.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), Mapping):
            out[k] = _deep_merge(dict(out[k]), v)
        else:
            out[k] = v
    return out


def config_from_dict(cls: type, data: Mapping[str, Any]) -> Any:
    """Builds a (nested) config dataclass from a plain dictionary."""
    hints = get_type_hints(cls)
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        hint = hints.get(f.name)
        if is_dataclass(hint) and isinstance(value, Mapping):
            value = config_from_dict(hint, value)
        kwargs[f.name] = value
    return cls(**kwargs)


def load_config(
    path: str | Path, overrides: Optional[Mapping[str, Any]] = None
) -> RunConfig:
    """
    Loads a RunConfig from a YAML file.
    Unknown keys anywhere in the tree fail fast; `overrides` are merged on top
    of the file contents before validation.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(p, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError("root", "config file must contain a mapping")

    if overrides:
        data = _deep_merge(data, overrides)

    validate_keys(data, RunConfig)
    return config_from_dict(RunConfig, data)
