"""
Forward simulation of a single signal over a close-only price path.

Starting one bar after the fill bar, each close is compared with the stop
first and with the first take-profit second:

    BUY   close <= stop -> LOSS,  close >= tp1 -> WIN
    SELL  close >= stop -> LOSS,  close <= tp1 -> WIN

The first bar meeting either condition resolves the trade; a close that
satisfies both counts as a loss. A path that ends without touching either
level leaves the trade UNRESOLVED.
"""

from typing import Sequence

from fxbacktest.core.models import Direction, Outcome, Signal, TradeOutcome
from fxbacktest.strategies.rsi_trend import TAKE_PROFIT_MULTIPLES

WIN_MULTIPLE = TAKE_PROFIT_MULTIPLES[0]
LOSS_MULTIPLE = -1.0


def _stop_hit(signal: Signal, close: float) -> bool:
    if signal.direction is Direction.BUY:
        return close <= signal.stop_loss
    return close >= signal.stop_loss


def _target_hit(signal: Signal, close: float) -> bool:
    if signal.direction is Direction.BUY:
        return close >= signal.take_profits[0]
    return close <= signal.take_profits[0]


def simulate_trade(signal: Signal, closes: Sequence[float]) -> TradeOutcome:
    """Resolve *signal* against the full close series it was generated from."""
    risk = abs(signal.entry_price - signal.stop_loss)

    for j in range(signal.entry_index + 1, len(closes)):
        close = closes[j]
        if _stop_hit(signal, close):
            return TradeOutcome(signal, Outcome.LOSS, j, risk, LOSS_MULTIPLE)
        if _target_hit(signal, close):
            return TradeOutcome(signal, Outcome.WIN, j, risk, WIN_MULTIPLE)

    return TradeOutcome(signal, Outcome.UNRESOLVED, None, risk, 0.0)


def simulate_trades(signals: Sequence[Signal], closes: Sequence[float]) -> list[TradeOutcome]:
    return [simulate_trade(s, closes) for s in signals]
