"""
Recording Sink
--------------
Values passed to `Context.record` are emitted once per bar to a Recorder.
Emission is fire-and-forget: the engine never reads anything back.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Protocol

import pandas as pd


class Recorder(Protocol):
    def emit(self, bar: int, date: pd.Timestamp, data: Mapping[str, Any]) -> None: ...


class FrameRecorder:
    """Keeps emitted rows in memory and exposes them as a DataFrame."""

    def __init__(self) -> None:
        self._rows: list[dict[str, Any]] = []

    def emit(self, bar: int, date: pd.Timestamp, data: Mapping[str, Any]) -> None:
        row: dict[str, Any] = {"bar": bar, "date": date}
        row.update(data)
        self._rows.append(row)

    def to_frame(self) -> pd.DataFrame:
        if not self._rows:
            return pd.DataFrame(columns=["bar", "date"])
        return pd.DataFrame.from_records(self._rows)


def normalize_record(
    data: Any, into: Optional[dict[str, Any]] = None
) -> dict[str, Any]:
    """Merges a record payload into `into`; scalars are stored under 'value'."""
    out = into if into is not None else {}
    if data is None:
        return out
    if isinstance(data, Mapping):
        out.update({str(k): v for k, v in data.items()})
    else:
        out["value"] = data
    return out
