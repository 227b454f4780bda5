"""
Data IO Layer
-------------
Loading and normalization of long-format bar data (one row per timestamp
and ticker), plus `BarStream`, the replayable `(timestamp, ticker, snapshot)`
stream the engine consumes.

Accepted columns: a datetime column (`timestamp`, `ts_event`, `datetime`,
`time` or `date`), a ticker column (`ticker` or `symbol`), bar fields by
short (`o`, `h`, ...) or long (`open`, `high`, ...) name, and any extra
columns. Files that carry `last_price` produce Tick snapshots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence

import pandas as pd
from pandas.api.types import DatetimeTZDtype

from .config import RunConfig
from .models import (
    BAR_FIELDS,
    DIVIDEND_FIELD,
    SPLIT_FIELD,
    Bar,
    BookLevel,
    FieldKind,
    Snapshot,
    Tick,
    canonical_field,
    classify_field,
)

logger = logging.getLogger(__name__)

DT_COLS = ("timestamp", "ts_event", "datetime", "time", "date")
TICKER_COLS = ("ticker", "symbol")
EVENT_COLS = (DIVIDEND_FIELD, SPLIT_FIELD)


def _parse_index(s: pd.Series, tz: str, path: str) -> pd.DatetimeIndex:
    if isinstance(s.dtype, DatetimeTZDtype):
        idx = pd.DatetimeIndex(s)
    else:
        s_str = s.astype(str)
        looks_tz = (
            s_str.str.endswith("Z").any()
            or s_str.str.contains(r"[+-]\d{2}:\d{2}$", regex=True).any()
        )
        idx = pd.DatetimeIndex(pd.to_datetime(s, errors="coerce", utc=looks_tz))

    if bool(pd.isna(idx).any()):
        raise ValueError(f"load_bars: datetime parse failed in {path!r}")

    if idx.tz is None:
        idx = idx.tz_localize(tz)
    return idx.tz_convert("UTC")


def normalize_bars(
    df: pd.DataFrame, tz: str = "UTC", path: str = "<frame>"
) -> pd.DataFrame:
    """Returns a frame with `ts` (UTC), `ticker` and canonical field columns."""
    df = df.copy()
    df.columns = [str(c).strip().lower() for c in df.columns]

    dt_col = next((c for c in DT_COLS if c in df.columns), None)
    if dt_col is None:
        raise ValueError(
            f"load_bars: could not find datetime column in {path!r}; "
            f"got columns={list(df.columns)}"
        )
    tk_col = next((c for c in TICKER_COLS if c in df.columns), None)
    if tk_col is None:
        raise ValueError(
            f"load_bars: could not find ticker column in {path!r}; "
            f"got columns={list(df.columns)}"
        )

    ts = _parse_index(df[dt_col], tz, path)
    df = df.drop(columns=[dt_col]).rename(columns={tk_col: "ticker"})
    df = df.rename(columns={c: canonical_field(c) for c in df.columns})
    df.insert(0, "ts", ts)
    df["ticker"] = df["ticker"].astype(str)

    if "last_price" not in df.columns and "c" not in df.columns:
        raise ValueError(f"load_bars: no close or last_price column in {path!r}")

    df = df.drop_duplicates(subset=["ts", "ticker"], keep="last")
    return df.sort_values(["ts", "ticker"], kind="mergesort").reset_index(drop=True)


def load_bars(path: str, tz: str = "UTC") -> pd.DataFrame:
    """Reads a CSV or Parquet bar file into the normalized long format."""
    if path.lower().endswith(".parquet"):
        df = pd.read_parquet(path)
    else:
        df = pd.read_csv(path)
    out = normalize_bars(df, tz=tz, path=path)
    logger.info(
        "loaded %d row(s), %d ticker(s) from %s",
        len(out),
        out["ticker"].nunique(),
        path,
    )
    return out


def parse_bar_fields(bar_fields: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """'ohlcv,dividend' -> (('o', 'h', 'l', 'c', 'v'), ('dividend',))."""
    head, *rest = [p.strip() for p in bar_fields.split(",")]
    letters = tuple(ch for ch in head if ch in BAR_FIELDS)
    unknown = [ch for ch in head if ch not in BAR_FIELDS]
    if unknown:
        raise ValueError(f"unknown bar field letter(s): {unknown}")
    return letters, tuple(p for p in rest if p)


@dataclass(frozen=True)
class StreamKey:
    market: str
    data_type: str
    assets: tuple[str, ...]
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    bar_fields: str = "ohlcv"

    @classmethod
    def from_config(cls, cfg: RunConfig) -> "StreamKey":
        return cls(
            market=cfg.market,
            data_type=cfg.data_type,
            assets=tuple(cfg.assets),
            start_date=cfg.start_date,
            end_date=cfg.end_date,
            bar_fields=cfg.bar_fields,
        )


def _utc(value: str) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")


def _row_value(value: Any) -> Any:
    if value is None:
        return None
    if classify_field(value) is FieldKind.NUMERIC and pd.isna(value):
        return None
    return value


def _tick_from_row(row: dict[str, Any], extras: Sequence[str]) -> Tick:
    levels = {}
    for side in ("bid", "ask"):
        out = []
        for i in (1, 2, 3):
            price = _row_value(row.get(f"{side}{i}"))
            if price is None:
                break
            volume = _row_value(row.get(f"{side}{i}_volume")) or 0.0
            out.append(BookLevel(float(price), float(volume)))
        levels[side] = tuple(out)
    extra = {k: _row_value(row.get(k)) for k in extras}
    last = _row_value(row.get("last_price"))
    return Tick(
        last_price=float("nan") if last is None else float(last),
        last_volume=float(_row_value(row.get("last_volume")) or 0.0),
        bid=levels["bid"],
        ask=levels["ask"],
        extra={k: v for k, v in extra.items() if v is not None},
    )


class BarStream:
    """
    Replayable stream over a normalized bar frame.

    Iterating yields `(ts, ticker, snapshot)` ordered by timestamp; every new
    iteration starts from the beginning, so a backtest can be repeated.
    """

    def __init__(self, frame: pd.DataFrame, key: StreamKey) -> None:
        self.key = key
        self.fields, extras = parse_bar_fields(key.bar_fields)
        self.is_tick = "last_price" in frame.columns

        df = frame
        if key.assets:
            df = df[df["ticker"].isin(key.assets)]
        if key.start_date:
            df = df[df["ts"] >= _utc(key.start_date)]
        if key.end_date:
            end = _utc(key.end_date)
            if end == end.normalize():
                end = end + pd.Timedelta(days=1)
                df = df[df["ts"] < end]
            else:
                df = df[df["ts"] <= end]

        present = [c for c in (*extras, *EVENT_COLS) if c in df.columns]
        self.extras = tuple(dict.fromkeys(present))
        missing = [e for e in extras if e not in df.columns]
        if missing:
            logger.warning("requested field(s) not in data: %s", missing)
        self._frame = df.reset_index(drop=True)

    @classmethod
    def from_config(cls, frame: pd.DataFrame, cfg: RunConfig) -> "BarStream":
        return cls(frame, StreamKey.from_config(cfg))

    def __len__(self) -> int:
        return len(self._frame)

    def n_steps(self) -> int:
        return int(self._frame["ts"].nunique())

    def tickers(self) -> list[str]:
        return sorted(self._frame["ticker"].unique())

    def _snapshot(self, row: dict[str, Any]) -> Snapshot:
        if self.is_tick:
            return _tick_from_row(row, self.extras)
        data = {f: _row_value(row.get(f)) for f in self.fields}
        data.update({k: _row_value(row.get(k)) for k in self.extras})
        return Bar.from_mapping(data)

    def __iter__(self) -> Iterator[tuple[pd.Timestamp, str, Snapshot]]:
        for row in self._frame.to_dict("records"):
            yield row["ts"], row["ticker"], self._snapshot(row)
