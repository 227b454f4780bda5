"""
Live Runner
-----------
Event-driven wrapper around an Engine for live mode.

Any number of producer threads push slices into a single queue; exactly one
consumer thread steps the engine, one event at a time, under a lock. Broker
fill notices are applied by the consumer only. Other threads read state
through `snapshot()`, which returns copies.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Iterable, Mapping, Optional

from .engine import Engine, RunResult, StreamItem, group_slices, to_timestamp
from .models import Snapshot

logger = logging.getLogger(__name__)

_END = object()


class LiveRunner:
    def __init__(
        self, engine: Engine, *, poll_s: float = 0.1, maxsize: int = 0
    ) -> None:
        self.engine = engine
        self.poll_s = poll_s
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._consumer: Optional[threading.Thread] = None
        self._producers: list[threading.Thread] = []
        self._result: Optional[RunResult] = None
        self._error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # producer side
    # ------------------------------------------------------------------
    def submit(self, ts: Any, data: Mapping[str, Snapshot]) -> None:
        """Thread-safe: enqueue one slice for the consumer."""
        self._queue.put((to_timestamp(ts), dict(data)))

    def end_of_stream(self) -> None:
        self._queue.put(_END)

    def feed(
        self, source: Iterable[StreamItem], *, end: bool = False
    ) -> threading.Thread:
        """Starts a producer thread that groups `source` into slices."""

        def produce() -> None:
            for ts, data in group_slices(source):
                if self._stop.is_set():
                    return
                self.submit(ts, data)
            if end:
                self.end_of_stream()

        t = threading.Thread(target=produce, name="robusta-feed", daemon=True)
        self._producers.append(t)
        t.start()
        return t

    # ------------------------------------------------------------------
    # consumer side
    # ------------------------------------------------------------------
    def _drain_notices(self) -> int:
        drain = getattr(self.engine.broker, "drain_notifications", None)
        if drain is None:
            return 0
        notices = drain()
        with self._lock:
            for notice in notices:
                self.engine.trader.apply_notice(notice)
        return len(notices)

    def run(self, stop: Optional[threading.Event] = None) -> RunResult:
        """Consumer loop. Returns when the stream ends or a stop is requested."""
        if stop is not None:
            self._stop = stop
        reached_end = False
        while not self._stop.is_set():
            self._drain_notices()
            try:
                item = self._queue.get(timeout=self.poll_s)
            except queue.Empty:
                continue
            if item is _END:
                reached_end = True
                break
            ts, data = item
            with self._lock:
                self.engine.step(ts, data)

        self._drain_notices()
        with self._lock:
            self._result = self.engine.finish(liquidate=reached_end)
        logger.info("live run ended (%s)", "end of stream" if reached_end else "stop")
        return self._result

    def start(self) -> threading.Thread:
        def consume() -> None:
            try:
                self.run()
            except BaseException as exc:
                logger.exception("live consumer failed")
                self._error = exc

        self._consumer = threading.Thread(
            target=consume, name="robusta-consumer", daemon=True
        )
        self._consumer.start()
        return self._consumer

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        """Waits for the consumer; re-raises a fatal error it hit."""
        if self._consumer is not None:
            self._consumer.join(timeout)
        if self._error is not None:
            raise self._error
        return self._result

    # ------------------------------------------------------------------
    # cross-thread reads
    # ------------------------------------------------------------------
    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            engine = self.engine
            return {
                "bar": engine.bar,
                "time": engine.last_ts,
                "phase": engine.phase.value,
                "positions": engine.ledger.positions(),
                "cash": engine.ledger.cash,
                "equity": engine.trader.equity(),
                "trades": engine.ledger.to_frame(),
                "warnings": engine.warnings.to_frame(),
            }
