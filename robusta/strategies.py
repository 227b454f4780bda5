"""
Reference Strategies
--------------------
Small strategies used by the CLI and the test-suite. A strategy is either
a callable `(ctx, state)` or an object with `on_bar(ctx, state)` and the
optional `on_start` / `on_end` hooks.
"""

from __future__ import annotations

from .context import Context, State


def buy_and_hold(ctx: Context, state: State) -> None:
    """Spreads equity evenly over the universe on the first tradable bar."""
    if ctx.is_lookback or state.get("invested"):
        return
    n = len(ctx.assets)
    if n:
        ctx.order_target({t: 1.0 / n for t in ctx.assets})
        state["invested"] = True


class EqualWeight:
    """
    Equal weight over tickers whose close is above their `window`-bar mean,
    rebalanced every `every` bars. Parameters come from `ctx.params`.
    """

    def on_start(self, ctx: Context, state: State) -> None:
        state["rebalances"] = 0

    def on_bar(self, ctx: Context, state: State) -> None:
        window = int(ctx.params.get("window", 5))
        every = int(ctx.params.get("every", 1))
        if ctx.bar % every:
            return

        chosen = []
        for ticker in ctx.assets:
            closes = ctx.series_array(ticker, "c", window)
            if len(closes) < window or ctx.is_unstable:
                continue
            if closes[0] > closes.mean():
                chosen.append(ticker)

        ctx.record(n_chosen=len(chosen))
        if ctx.is_lookback:
            return
        weight = 1.0 / len(chosen) if chosen else 0.0
        ctx.order_target({t: weight for t in chosen})
        state["rebalances"] += 1

    def on_end(self, ctx: Context, state: State) -> None:
        state["finished_at"] = ctx.bar
