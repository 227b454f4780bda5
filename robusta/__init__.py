"""
Robusta
-------
A bar-stepping execution core for quantitative trading.
Steps through time-ordered bars/ticks, hands a Context to strategy code and
turns target portfolio weights into broker orders and a trade ledger.
"""
