from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import pandas as pd


class Direction(Enum):
    BUY = "BUY"
    SELL = "SELL"


class Outcome(Enum):
    WIN = "WIN"
    LOSS = "LOSS"
    UNRESOLVED = "UNRESOLVED"


# Canonical timeframe -> bucket width. Aliases map onto the canonical keys.
TIMEFRAMES: dict[str, pd.Timedelta] = {
    "1H": pd.Timedelta(hours=1),
    "4H": pd.Timedelta(hours=4),
    "1D": pd.Timedelta(days=1),
    "W": pd.Timedelta(weeks=1),
}

_TIMEFRAME_ALIASES = {
    "H": "1H",
    "1H": "1H",
    "4H": "4H",
    "D": "1D",
    "1D": "1D",
    "W": "W",
    "1W": "W",
}


def normalize_timeframe(timeframe: str) -> str:
    """Return the canonical spelling of *timeframe* (``"d"`` -> ``"1D"``).

    Raises:
        ValueError: If the timeframe is not supported
    """
    key = str(timeframe).strip().upper()
    if key not in _TIMEFRAME_ALIASES:
        raise ValueError(
            f"Unsupported timeframe '{timeframe}'. Expected one of {sorted(TIMEFRAMES)}"
        )
    return _TIMEFRAME_ALIASES[key]


def to_utc(ts) -> pd.Timestamp:
    """Coerce *ts* to a UTC-aware Timestamp (naive inputs are taken as UTC)."""
    ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


@dataclass(frozen=True)
class PriceTick:
    symbol: str
    timestamp: pd.Timestamp  # UTC
    price: float


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: str           # canonical, e.g. "4H"
    bucket_start: pd.Timestamp  # UTC, inclusive start of the bucket
    open: float
    high: float
    low: float
    close: float
    volume: int = 0
    source: str = "live_price_history"


@dataclass(frozen=True)
class IndicatorSeries:
    """Indicator arrays aligned index-for-index with a close series."""
    ema50: list[float]
    ema200: list[float]
    rsi14: list[float]
    atr14: list[float]

    def __len__(self) -> int:
        return len(self.ema50)


@dataclass(frozen=True)
class Signal:
    symbol: str
    direction: Direction
    entry_index: int         # bar whose close is used as fill price
    entry_price: float
    stop_loss: float
    take_profits: tuple[float, ...]  # ascending distance from entry
    generated_at: int        # bar on which the rule fired

    @property
    def risk_distance(self) -> float:
        return abs(self.entry_price - self.stop_loss)


@dataclass(frozen=True)
class TradeOutcome:
    signal: Signal
    outcome: Outcome
    exit_index: Optional[int]
    risk_amount: float
    reward_multiple: float   # +1.5 for a win, -1.0 for a loss, 0.0 unresolved

    @property
    def is_resolved(self) -> bool:
        return self.outcome is not Outcome.UNRESOLVED

    @property
    def pnl(self) -> float:
        return self.reward_multiple * self.risk_amount

    def to_record(self) -> dict:
        s = self.signal
        return {
            "symbol": s.symbol,
            "direction": s.direction.value,
            "generated_at": s.generated_at,
            "entry_index": s.entry_index,
            "entry_price": s.entry_price,
            "stop_loss": s.stop_loss,
            "take_profit_1": s.take_profits[0],
            "take_profit_2": s.take_profits[1] if len(s.take_profits) > 1 else None,
            "take_profit_3": s.take_profits[2] if len(s.take_profits) > 2 else None,
            "outcome": self.outcome.value,
            "exit_index": self.exit_index,
            "risk_amount": self.risk_amount,
            "reward_multiple": self.reward_multiple,
        }


@dataclass(frozen=True)
class BacktestResult:
    config_name: str
    parameters: dict = field(hash=False)
    timeframe: str
    period_start: str        # ISO date
    period_end: str          # ISO date
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float          # 0-100
    profit_factor: float     # >= 0, may be inf

    def metrics(self) -> dict:
        """Metrics block of the invocation response."""
        return {
            "totalTrades": self.total_trades,
            "wins": self.winning_trades,
            "losses": self.losing_trades,
            "winRate": self.win_rate,
            "profitFactor": self.profit_factor,
        }
