"""
Performance Metrics
-------------------
Summary statistics of a finished run: closed-trade PnL, win rate,
total return and drawdown of the equity curve.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd


def _closed_pnl(trades: pd.DataFrame | None) -> pd.Series:
    """PnL of closed B/S trades as floats, in ledger order."""
    if trades is None or len(trades) == 0 or "pnl" not in trades.columns:
        return pd.Series(dtype=float)
    mask = trades["side"].isin(["B", "S"]) & (trades["status"] == "closed")
    return pd.to_numeric(trades.loc[mask, "pnl"], errors="coerce").fillna(0.0)


def max_drawdown_pct(equity: pd.Series | np.ndarray | None) -> float:
    """Maximum percentage drawdown from peak equity."""
    if equity is None:
        return 0.0
    values = np.asarray(equity, dtype=float)
    if values.size <= 1:
        return 0.0

    peak = np.maximum.accumulate(values)
    with np.errstate(divide="ignore", invalid="ignore"):
        dd = np.where(peak > 0.0, (peak - values) / peak, 0.0)

    mdd = float(np.nanmax(dd)) if dd.size else 0.0
    if not np.isfinite(mdd):
        return 0.0
    return max(0.0, min(1.0, mdd))


def summary(
    trades: pd.DataFrame | None,
    equity: pd.Series | None = None,
    *,
    capital: float | None = None,
) -> dict[str, Any]:
    """Builds the result summary written next to a run's artifacts."""
    pnl = _closed_pnl(trades)
    n = int(len(pnl))

    start_eq = float(capital) if capital else None
    final_eq = None
    if equity is not None and len(equity):
        final_eq = float(equity.iloc[-1])
        if start_eq is None:
            start_eq = float(equity.iloc[0])

    ret = 0.0
    if start_eq and final_eq is not None:
        ret = final_eq / start_eq - 1.0

    open_trades = 0
    if trades is not None and len(trades) and "status" in trades.columns:
        open_trades = int(trades["status"].isin(["open", "closing"]).sum())

    if n == 0:
        wins = losses = pd.Series(dtype=float)
    else:
        wins = pnl[pnl > 0]
        losses = pnl[pnl < 0]

    return {
        "closed_trades": n,
        "open_trades": open_trades,
        "win_rate": float((pnl > 0).mean()) if n else 0.0,
        "avg_pnl": float(pnl.mean()) if n else 0.0,
        "avg_win": float(wins.mean()) if len(wins) else 0.0,
        "avg_loss": float(losses.mean()) if len(losses) else 0.0,
        "realized_pnl": float(pnl.sum()),
        "final_equity": final_eq,
        "return_pct": float(ret),
        "max_drawdown_pct": max_drawdown_pct(equity),
    }
