"""
RSI pullback in an EMA trend: indicator annotation and signal generation.

Signal flow
-----------
1. ``compute_indicators(closes)`` — EMA50, EMA200, RSI14 and ATR14
   (close-to-close approximation), all aligned with *closes*.
2. ``generate_signals(symbol, closes, indicators, params)`` — scans every
   bar from the 200-bar warm-up to ``len - 3`` and emits a ``Signal`` when
   trend and oscillator agree:

   - BUY:  close > EMA50 > EMA200 and RSI < ``rsi_buy_threshold``
   - SELL: close < EMA50 < EMA200 and RSI > ``rsi_sell_threshold``

3. ``build_signal`` — fills at the *next* bar's close (no look-ahead on the
   signal bar), sizes the risk distance as 1.5 % of entry bounded to
   [0.5 × ATR, 3 × ATR] and places three targets at 1.5R, 2R and 3R.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from typing import Mapping, Optional, Sequence

from fxbacktest.core.errors import InvalidParameters
from fxbacktest.core.models import Direction, IndicatorSeries, Signal
from fxbacktest.helpers.indicators import atr_approx, ema, rsi


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMA_FAST_PERIOD = 50
EMA_SLOW_PERIOD = 200
RSI_PERIOD = 14
ATR_PERIOD = 14

WARMUP_BARS = 200                # first bar the rule is evaluated on
FORWARD_BARS = 2                 # fill bar + at least one bar to simulate

RISK_PCT = 0.015                 # risk distance as a fraction of entry
MIN_RISK_ATR = 0.5               # ... bounded below by 0.5 × ATR
MAX_RISK_ATR = 3.0               # ... and above by 3 × ATR
TAKE_PROFIT_MULTIPLES = (1.5, 2.0, 3.0)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

_PARAM_ALIASES = {
    "rsiBuy": "rsi_buy_threshold",
    "rsiBuyThreshold": "rsi_buy_threshold",
    "rsi_buy": "rsi_buy_threshold",
    "rsi_buy_threshold": "rsi_buy_threshold",
    "rsiSell": "rsi_sell_threshold",
    "rsiSellThreshold": "rsi_sell_threshold",
    "rsi_sell": "rsi_sell_threshold",
    "rsi_sell_threshold": "rsi_sell_threshold",
}


@dataclass(frozen=True)
class SignalParams:
    rsi_buy_threshold: float = 30.0
    rsi_sell_threshold: float = 70.0

    @classmethod
    def from_mapping(cls, params: Optional[Mapping] = None) -> "SignalParams":
        """
        Build parameters from a request/config mapping.

        Accepts the short keys used by stored configurations (``rsiBuy``,
        ``rsiSell``) as well as the explicit ``rsiBuyThreshold`` /
        ``rsiSellThreshold`` spellings. Unknown keys are ignored; missing or
        null keys fall back to the defaults.
        """
        if params is None:
            return cls()
        if not isinstance(params, Mapping):
            raise InvalidParameters("parameters must be an object")

        values: dict[str, float] = {}
        for key, raw in params.items():
            name = _PARAM_ALIASES.get(key)
            if name is None or raw is None:
                continue
            if isinstance(raw, bool):
                raise InvalidParameters(f"parameter '{key}' must be a number")
            try:
                value = float(raw)
            except (TypeError, ValueError):
                raise InvalidParameters(f"parameter '{key}' must be a number, got {raw!r}")
            if not math.isfinite(value):
                raise InvalidParameters(f"parameter '{key}' must be finite")
            values[name] = value

        return cls(**values)

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Indicator annotation
# ---------------------------------------------------------------------------

def compute_indicators(closes: Sequence[float]) -> IndicatorSeries:
    """Compute the indicator set the signal rule reads, once per series."""
    closes = list(closes)
    return IndicatorSeries(
        ema50=ema(closes, EMA_FAST_PERIOD),
        ema200=ema(closes, EMA_SLOW_PERIOD),
        rsi14=rsi(closes, RSI_PERIOD),
        atr14=atr_approx(closes, ATR_PERIOD),
    )


# ---------------------------------------------------------------------------
# Signal construction
# ---------------------------------------------------------------------------

def risk_distance(entry: float, atr: float) -> float:
    """1.5 % of *entry*, clamped to ``[0.5 × atr, 3 × atr]``."""
    return min(max(entry * RISK_PCT, MIN_RISK_ATR * atr), MAX_RISK_ATR * atr)


def build_signal(
    symbol: str,
    direction: Direction,
    index: int,
    closes: Sequence[float],
    atr: float,
) -> Signal:
    """Create the signal for a rule that fired on bar *index*."""
    entry = float(closes[index + 1])
    risk = risk_distance(entry, atr)
    sign = 1.0 if direction is Direction.BUY else -1.0

    return Signal(
        symbol=symbol,
        direction=direction,
        entry_index=index + 1,
        entry_price=entry,
        stop_loss=entry - sign * risk,
        take_profits=tuple(entry + sign * m * risk for m in TAKE_PROFIT_MULTIPLES),
        generated_at=index,
    )


def direction_at(
    i: int,
    closes: Sequence[float],
    indicators: IndicatorSeries,
    params: SignalParams,
) -> Optional[Direction]:
    """Return the direction the rule gives on bar *i*, or ``None``."""
    price = closes[i]
    fast = indicators.ema50[i]
    slow = indicators.ema200[i]
    osc = indicators.rsi14[i]

    trend_up = price > fast and fast > slow
    trend_down = price < fast and fast < slow

    if osc < params.rsi_buy_threshold and trend_up:
        return Direction.BUY
    if osc > params.rsi_sell_threshold and trend_down:
        return Direction.SELL
    return None


def generate_signals(
    symbol: str,
    closes: Sequence[float],
    indicators: IndicatorSeries,
    params: Optional[SignalParams] = None,
) -> list[Signal]:
    """
    Scan *closes* and return every signal in bar order.

    Bars ``WARMUP_BARS`` through ``len(closes) - 3`` are evaluated, which
    guarantees a fill bar and at least one more bar for the simulator.
    Series shorter than that produce no signals.
    """
    params = params or SignalParams()
    n = len(closes)
    if len(indicators) != n or any(
        len(arr) != n for arr in (indicators.ema200, indicators.rsi14, indicators.atr14)
    ):
        raise ValueError("indicator arrays must be aligned with closes")

    signals: list[Signal] = []
    for i in range(WARMUP_BARS, n - FORWARD_BARS):
        direction = direction_at(i, closes, indicators, params)
        if direction is None:
            continue
        signal = build_signal(symbol, direction, i, closes, indicators.atr14[i])
        logger.debug(
            f"[{symbol}] {direction.value} signal at bar {i}: "
            f"entry={signal.entry_price:.5f}, sl={signal.stop_loss:.5f}, "
            f"tp1={signal.take_profits[0]:.5f}"
        )
        signals.append(signal)

    return signals
