"""
Weight Rebalancer
-----------------
Turns a target-weight mapping into concrete order instructions.
`order_target`, `buy_target` and `sell_target` are the same operation with a
different side filter applied to the instruction list.
Closes are always emitted before opens.
"""

from __future__ import annotations

import math
from typing import Callable, Mapping, Optional

from .broker import Broker
from .models import OrderInstruction, Side, Weights

EPS = 1e-9

Accept = Callable[[OrderInstruction], bool]
Warn = Callable[[str, str, str], None]


def accept_all(instruction: OrderInstruction) -> bool:
    return True


def accept_buys(instruction: OrderInstruction) -> bool:
    return instruction.side is Side.BUY


def accept_sells(instruction: OrderInstruction) -> bool:
    return instruction.side is Side.SELL


def _noop_warn(kind: str, ticker: str, message: str) -> None:
    return None


def _close(
    symbol: str, held: float, volume: float, price: float, weight: float
) -> OrderInstruction:
    return OrderInstruction(
        symbol=symbol,
        side=Side.SELL if held > 0 else Side.BUY,
        volume=volume,
        price=price,
        action="close",
        weight=weight,
    )


def _ticker_instructions(
    symbol: str,
    weight: float,
    held: float,
    price: float,
    equity: float,
    broker: Broker,
    closable: float,
    accept: Accept,
    warn: Warn,
) -> tuple[list[OrderInstruction], list[OrderInstruction]]:
    closes: list[OrderInstruction] = []
    opens: list[OrderInstruction] = []
    desired = weight * equity / price
    free = min(abs(held), closable)
    locked = f"position locked until T+{broker.cfg.settlement_days}"
    reports = held != 0 and accept(_close(symbol, held, abs(held), price, weight))

    flips = held != 0 and (
        weight == 0 or math.copysign(1, desired) != math.copysign(1, held)
    )
    if flips:
        if free + EPS < abs(held):
            # the opposite side only opens once the old side is fully closed
            if reports:
                warn("OrderRejected", symbol, f"{locked}: {free:g} of {abs(held):g}")
            if free > EPS:
                closes.append(_close(symbol, held, free, price, weight))
            return closes, opens
        closes.append(_close(symbol, held, abs(held), price, weight))
        rest = desired if weight != 0 else 0.0
    elif held != 0 and abs(desired) < abs(held):
        want = abs(held) - abs(desired)
        if reports and want > free + EPS:
            warn("OrderRejected", symbol, f"{locked}: {free:g} of {want:g}")
        v = abs(broker.refine_volume(min(want, free), price, symbol))
        if v > 0:
            closes.append(_close(symbol, held, v, price, weight))
        rest = 0.0
    else:
        rest = desired - held

    if abs(rest) > EPS:
        v = abs(broker.refine_volume(rest, price, symbol))
        if v > 0:
            opens.append(
                OrderInstruction(
                    symbol=symbol,
                    side=Side.BUY if rest > 0 else Side.SELL,
                    volume=v,
                    price=price,
                    action="open",
                    weight=weight,
                )
            )
    return closes, opens


def plan_rebalance(
    weights: Weights,
    *,
    positions: Mapping[str, float],
    prices: Mapping[str, float],
    equity: float,
    broker: Broker,
    accept: Accept = accept_all,
    max_leverage: Optional[float] = None,
    closable: Optional[Mapping[str, float]] = None,
    warn: Optional[Warn] = None,
) -> list[OrderInstruction]:
    """
    Computes the instructions that move current holdings to `weights`.

    Every ticker in `weights` or currently held is considered; held tickers
    missing from `weights` target zero. Desired volume is
    `weight * equity / price`. Volumes are refined to the broker's lot size,
    except full closes which always close the whole held volume.

    `closable` maps a symbol to the held volume the broker lets us close now
    (settled trades); symbols missing from it are fully closable. A flip whose
    old side cannot be fully closed closes what it can and opens nothing.
    """
    warn = warn or _noop_warn
    closes: list[OrderInstruction] = []
    opens: list[OrderInstruction] = []

    for symbol in sorted(set(weights) | set(positions)):
        weight = float(weights.get(symbol, 0.0))
        if not math.isfinite(weight):
            warn("InvalidWeight", symbol, f"weight {weight!r} ignored")
            continue
        if max_leverage is not None and abs(weight) > max_leverage + EPS:
            warn(
                "LeverageLimit",
                symbol,
                f"|weight| {abs(weight):g} exceeds max_leverage {max_leverage:g}",
            )
            continue

        held = float(positions.get(symbol, 0.0))
        price = prices.get(symbol)
        if price is None or not math.isfinite(price) or price <= 0:
            if weight != 0 or held != 0:
                warn("DataGapError", symbol, "no price available for rebalance")
            continue

        free = math.inf if closable is None else closable.get(symbol, math.inf)
        c, o = _ticker_instructions(
            symbol, weight, held, float(price), equity, broker, free, accept, warn
        )

        for instr in c:
            if accept(instr):
                closes.append(instr)
        for instr in o:
            if not accept(instr):
                continue
            if instr.side is Side.SELL and not broker.can_short(symbol):
                warn("OrderRejected", symbol, "short selling not allowed")
                continue
            opens.append(instr)

    return closes + opens
