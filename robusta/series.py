"""
Series / Lookback Buffer
------------------------
Fixed-capacity rolling history per (ticker, field). Values are returned most
recent first, so element 0 is always the value of the current bar.

Every ring of a ticker advances once per appended bar: a field missing from
a bar is stored as None, and a field first seen late is back-filled with None
for the bars already held.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Optional

import numpy as np

from .models import Snapshot, canonical_field

Key = tuple[str, str]


class SeriesBuffer:
    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self._rings: dict[Key, deque[Any]] = {}
        self._requested: dict[Key, int] = {}
        self._fields: dict[str, list[str]] = {}
        self._counts: dict[str, int] = {}

    def _ring(self, key: Key) -> deque[Any]:
        ring = self._rings.get(key)
        if ring is None:
            maxlen = max(self.capacity, self._requested.get(key, 0))
            ring = deque(maxlen=maxlen)
            self._rings[key] = ring
        return ring

    def append(self, ticker: str, snapshot: Snapshot) -> None:
        """Absorbs every field of one bar/tick for `ticker`."""
        values = snapshot.fields()
        known = self._fields.setdefault(ticker, [])
        seen = self._counts.get(ticker, 0)
        for name in values:
            if name not in known:
                known.append(name)
                ring = self._ring((ticker, name))
                ring.extend([None] * min(seen, ring.maxlen or seen))
        for name in known:
            self._ring((ticker, name)).append(values.get(name))
        self._counts[ticker] = seen + 1

    def series(
        self, ticker: str, field: str, length: Optional[int] = None
    ) -> list[Any]:
        key = (ticker, canonical_field(field))
        ring = self._rings.get(key)

        if length is not None:
            if length < 1:
                raise ValueError("length must be >= 1")
            self._requested[key] = max(self._requested.get(key, 0), length)
            if ring is not None and ring.maxlen is not None and length > ring.maxlen:
                ring = deque(ring, maxlen=length)
                self._rings[key] = ring

        if ring is None:
            return []
        values = list(reversed(ring))
        return values if length is None else values[:length]

    def series_array(self, ticker: str, field: str, length: int) -> np.ndarray:
        """Numeric view of `series`; non-numeric entries become NaN."""
        values = self.series(ticker, field, length)
        out = np.full(len(values), np.nan)
        for i, v in enumerate(values):
            try:
                out[i] = float(v)
            except (TypeError, ValueError):
                continue
        return out

    def depth(self, ticker: str, field: str) -> int:
        ring = self._rings.get((ticker, canonical_field(field)))
        return 0 if ring is None else len(ring)

    def is_unstable(self) -> bool:
        for key, length in self._requested.items():
            ring = self._rings.get(key)
            if ring is None or len(ring) < length:
                return True
        return False

    def to_dict(self) -> dict[str, Any]:
        return {
            "capacity": self.capacity,
            "rings": [
                {"ticker": t, "field": f, "maxlen": r.maxlen, "values": list(r)}
                for (t, f), r in self._rings.items()
            ],
            "requested": [
                {"ticker": t, "field": f, "length": n}
                for (t, f), n in self._requested.items()
            ],
            "counts": dict(self._counts),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SeriesBuffer":
        buf = cls(int(d["capacity"]))
        for item in d.get("rings", []):
            ticker, name = item["ticker"], item["field"]
            ring = deque(item["values"], maxlen=item["maxlen"])
            buf._rings[(ticker, name)] = ring
            buf._fields.setdefault(ticker, []).append(name)
            buf._counts[ticker] = max(buf._counts.get(ticker, 0), len(ring))
        for item in d.get("requested", []):
            buf._requested[(item["ticker"], item["field"])] = int(item["length"])
        buf._counts.update({t: int(n) for t, n in d.get("counts", {}).items()})
        return buf
