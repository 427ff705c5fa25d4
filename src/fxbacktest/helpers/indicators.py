"""Technical Indicator Functions

Pure functions over a close-price sequence (oldest -> newest):

- ema:        exponential moving average seeded with a simple average
- rsi:        RSI from simple trailing averages of gains and losses
- atr_approx: close-to-close approximation of the average true range

Every function returns a list with exactly one value per input price. The
warm-up positions hold placeholders (the seed, 50 or 0) instead of being
dropped, and short or empty inputs degrade to those placeholders rather than
raising. The signal rules rely on the placeholders never triggering an entry.
"""

from typing import Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

RSI_NEUTRAL = 50.0
# RS used when the trailing window has no losses (RSI ~ 99.9).
RSI_NO_LOSS_RS = 1000.0


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=float)


def _check_period(period: int) -> None:
    if int(period) != period or period < 1:
        raise ValueError(f"period must be a positive integer, got {period!r}")


def ema(values: Sequence[float], period: int) -> list[float]:
    """Calculate an EMA aligned with *values*.

    Args:
        values: Close prices, oldest first
        period: EMA period; smoothing constant is ``2 / (period + 1)``

    Returns:
        List of the same length as *values*. The first ``period`` entries all
        equal the seed (simple average of the first ``period`` values). With
        fewer than ``period`` values the seed is the average of what exists.
    """
    _check_period(period)
    prices = _as_array(values)
    if len(prices) == 0:
        return []

    seed = float(prices[:period].mean())
    if len(prices) <= period:
        return [seed] * len(prices)

    k = 2 / (period + 1)
    out = [seed] * period
    prev = seed
    for price in prices[period:]:
        prev = float(price) * k + prev * (1 - k)
        out.append(prev)
    return out


def rsi(values: Sequence[float], period: int = 14) -> list[float]:
    """Calculate RSI with simple trailing averages of gains and losses.

    Args:
        values: Close prices, oldest first
        period: Number of trailing price changes per window

    Returns:
        List of the same length as *values*, every value in ``[0, 100]``.
        All 50 when there are fewer than ``period + 1`` prices; otherwise the
        first ``period`` entries are 50.
    """
    _check_period(period)
    prices = _as_array(values)
    n = len(prices)
    if n < period + 1:
        return [RSI_NEUTRAL] * n

    changes = np.diff(prices)
    gains = np.where(changes > 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    # Window w covers changes[w : w + period], i.e. the changes ending at price w + period.
    avg_gain = sliding_window_view(gains, period).mean(axis=1)
    avg_loss = sliding_window_view(losses, period).mean(axis=1)

    with np.errstate(divide="ignore", invalid="ignore"):
        rs = np.where(avg_loss == 0, RSI_NO_LOSS_RS, avg_gain / avg_loss)
    values_rsi = 100.0 - 100.0 / (1.0 + rs)

    return [RSI_NEUTRAL] * period + values_rsi.tolist()


def atr_approx(values: Sequence[float], period: int = 14) -> list[float]:
    """Approximate ATR from absolute close-to-close changes.

    Only closes are available to the pipeline, so the true range of a bar is
    taken as ``|close[i] - close[i-1]|`` (0 for the first bar).

    Args:
        values: Close prices, oldest first
        period: Averaging window

    Returns:
        List of the same length as *values*. All zeros with fewer than
        ``period + 2`` prices; otherwise the first ``period`` entries are 0 and
        entry ``i`` is the mean of the ``period`` ranges ending at ``i``.
    """
    _check_period(period)
    prices = _as_array(values)
    n = len(prices)
    if n < period + 2:
        return [0.0] * n

    true_ranges = np.abs(np.diff(prices, prepend=prices[0]))
    # Window w covers ranges[w : w + period]; index i needs w = i - period + 1.
    averages = sliding_window_view(true_ranges, period).mean(axis=1)

    return [0.0] * period + averages[1:].tolist()
