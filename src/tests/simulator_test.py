"""Tests for the forward trade simulator."""

import pytest

from fxbacktest.backtest.simulator import simulate_trade, simulate_trades
from fxbacktest.core.models import Direction, Outcome, Signal


def _buy(entry_index=0):
    return Signal("EURUSD", Direction.BUY, entry_index, 100.0, 98.5, (102.25, 103.0, 104.5), entry_index - 1)


def _sell(entry_index=0):
    return Signal("EURUSD", Direction.SELL, entry_index, 100.0, 101.5, (97.75, 97.0, 95.5), entry_index - 1)


@pytest.mark.parametrize(
    "signal, closes, outcome, exit_index",
    [
        (_buy(), [100.0, 101.0, 102.3], Outcome.WIN, 2),
        (_buy(), [100.0, 99.0, 98.5], Outcome.LOSS, 2),
        (_sell(), [100.0, 99.0, 97.7], Outcome.WIN, 2),
        (_sell(), [100.0, 100.5, 101.5], Outcome.LOSS, 2),
        (_buy(), [100.0, 100.5, 101.0, 99.0], Outcome.UNRESOLVED, None),
    ],
)
def test_outcomes(signal, closes, outcome, exit_index):
    trade = simulate_trade(signal, closes)
    assert trade.outcome is outcome
    assert trade.exit_index == exit_index
    assert trade.risk_amount == pytest.approx(1.5)


def test_reward_multiples():
    win = simulate_trade(_buy(), [100.0, 102.25])
    loss = simulate_trade(_buy(), [100.0, 98.0])
    open_ = simulate_trade(_buy(), [100.0])

    assert win.reward_multiple == 1.5 and win.pnl == pytest.approx(2.25)
    assert loss.reward_multiple == -1.0 and loss.pnl == pytest.approx(-1.5)
    assert open_.reward_multiple == 0.0 and not open_.is_resolved


def test_stop_checked_before_target():
    """A close satisfying both levels counts as a loss."""
    signal = Signal("EURUSD", Direction.BUY, 0, 100.0, 100.0, (100.0, 100.0, 100.0), -1)
    trade = simulate_trade(signal, [100.0, 100.0])
    assert trade.outcome is Outcome.LOSS
    assert trade.exit_index == 1


def test_bars_up_to_entry_are_ignored():
    closes = [90.0, 110.0, 100.0, 100.5, 102.5]
    trade = simulate_trade(_buy(entry_index=2), closes)
    assert trade.outcome is Outcome.WIN
    assert trade.exit_index == 4


def test_deterministic():
    closes = [100.0, 100.4, 99.7, 101.1, 98.9, 102.4]
    signals = [_buy(0), _sell(0), _buy(2)]
    assert simulate_trades(signals, closes) == simulate_trades(signals, closes)
