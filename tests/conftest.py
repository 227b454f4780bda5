"""
Pytest Fixtures
---------------
Shared resources for testing.
- make_stream: builds (ts, ticker, Bar) items from close prices.
- make_cfg: RunConfig with small capital and a single default ticker.
- bars_frame / bars_csv: deterministic multi-ticker daily data for IO/CLI.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import numpy as np
import pandas as pd
import pytest

from robusta.config import RunConfig
from robusta.models import Bar


def _stream(
    prices: dict[str, list[float]],
    start: str = "2024-01-02",
    extras: dict[tuple[str, int], dict[str, Any]] | None = None,
) -> list[tuple[pd.Timestamp, str, Bar]]:
    n = max(len(v) for v in prices.values())
    days = pd.bdate_range(start, periods=n, tz="UTC")
    items = []
    for i, ts in enumerate(days):
        for ticker, closes in prices.items():
            if i >= len(closes) or closes[i] is None:
                continue
            px = float(closes[i])
            extra = (extras or {}).get((ticker, i), {})
            bar = Bar(o=px, h=px, l=px, c=px, v=1_000_000.0, extra=extra)
            items.append((ts, ticker, bar))
    return items


@pytest.fixture
def make_stream() -> Callable[..., list[tuple[pd.Timestamp, str, Bar]]]:
    return _stream


@pytest.fixture
def make_cfg() -> Callable[..., RunConfig]:
    def build(**kw: Any) -> RunConfig:
        kw.setdefault("assets", ("X",))
        kw.setdefault("capital", 100.0)
        return RunConfig(**kw)

    return build


@pytest.fixture
def bars_frame() -> pd.DataFrame:
    """30 business days of two tickers, long format with long column names."""
    days = pd.bdate_range("2024-01-02", periods=30)
    rng = np.random.default_rng(7)
    frames = []
    for ticker, base in (("AAA", 20.0), ("BBB", 50.0)):
        close = base + rng.standard_normal(len(days)).cumsum() * 0.3
        frames.append(
            pd.DataFrame(
                {
                    "date": days,
                    "ticker": ticker,
                    "open": close,
                    "high": close + 0.2,
                    "low": close - 0.2,
                    "close": close,
                    "volume": 10_000,
                }
            )
        )
    return pd.concat(frames, ignore_index=True)


@pytest.fixture
def bars_csv(tmp_path: Path, bars_frame: pd.DataFrame) -> Path:
    p = tmp_path / "bars.csv"
    bars_frame.to_csv(p, index=False)
    return p


@pytest.fixture
def config_yaml(tmp_path: Path) -> Path:
    p = tmp_path / "run.yaml"
    p.write_text(
        "\n".join(
            [
                "mode: test",
                "strategy: robusta.strategies:EqualWeight",
                "assets: [AAA, BBB]",
                "capital: 100000",
                "lookback: 5",
                "params:",
                "  window: 5",
                "broker:",
                "  lot_size: 10",
                "  slippage:",
                "    normal_ticks: 1",
                "    tick_size: 0.01",
            ]
        ),
        encoding="utf-8",
    )
    return p


@pytest.fixture(autouse=True)
def _reset_root_logging():
    """Detach root handlers a test installed (e.g. via cli.main) so they do not
    outlive the captured stream they were bound to."""
    import logging

    root = logging.getLogger()
    before = list(root.handlers)
    yield
    for handler in list(root.handlers):
        if handler not in before:
            root.removeHandler(handler)
