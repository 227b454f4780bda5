"""Universe membership: which tickers are tracked at a given date."""

from __future__ import annotations

from typing import Protocol, Sequence

import pandas as pd


class Universe(Protocol):
    def get_universe(self, date: pd.Timestamp) -> Sequence[str]: ...


class StaticUniverse:
    """Same ordered ticker list for every date."""

    def __init__(self, assets: Sequence[str]) -> None:
        self.assets = tuple(assets)

    def get_universe(self, date: pd.Timestamp) -> Sequence[str]:
        return self.assets
