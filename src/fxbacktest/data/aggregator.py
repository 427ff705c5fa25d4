"""
Tick -> candle aggregation.

Ticks for one symbol are walked in timestamp order and grouped into
fixed-width UTC buckets:

    1H  -> top of the hour
    4H  -> 00:00, 04:00, 08:00, 12:00, 16:00, 20:00 UTC
    1D  -> midnight UTC
    W   -> Monday 00:00 UTC

While a tick stays in the open bucket it updates high / low / close; the
first tick of a new bucket closes the previous candle and opens the next one.
Ticks carry no size, so every candle has ``volume == 0``.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

import pandas as pd

from fxbacktest.core.errors import DataUnavailable
from fxbacktest.core.models import TIMEFRAMES, Candle, PriceTick, normalize_timeframe, to_utc

DEFAULT_MIN_TICKS = 100
DEFAULT_SOURCE = "live_price_history"


def bucket_start(timestamp, timeframe: str) -> pd.Timestamp:
    """Floor *timestamp* to the start of its *timeframe* bucket (UTC)."""
    timeframe = normalize_timeframe(timeframe)
    ts = to_utc(timestamp)
    if timeframe == "W":
        day = ts.normalize()
        return day - pd.Timedelta(days=day.weekday())
    # Hour and day widths divide 24h, so flooring from the epoch lines up with midnight UTC.
    return ts.floor(TIMEFRAMES[timeframe])


def aggregate_ticks(
    symbol: str,
    ticks: Iterable[PriceTick],
    timeframe: str = "4H",
    source: str = DEFAULT_SOURCE,
) -> list[Candle]:
    """Aggregate *ticks* into candles, oldest first. No minimum is enforced."""
    timeframe = normalize_timeframe(timeframe)
    ordered = sorted(ticks, key=lambda t: to_utc(t.timestamp))

    candles: list[Candle] = []
    current: Optional[dict] = None

    for tick in ordered:
        price = float(tick.price)
        start = bucket_start(tick.timestamp, timeframe)

        if current is None or current["bucket_start"] != start:
            if current is not None:
                candles.append(Candle(**current))
            current = {
                "symbol": symbol,
                "timeframe": timeframe,
                "bucket_start": start,
                "open": price,
                "high": price,
                "low": price,
                "close": price,
                "volume": 0,
                "source": source,
            }
        else:
            current["high"] = max(current["high"], price)
            current["low"] = min(current["low"], price)
            current["close"] = price

    if current is not None:
        candles.append(Candle(**current))

    return candles


class CandleAggregator:
    """
    Aggregates one symbol at a time and refuses thin inputs.

    Parameters
    ----------
    timeframe : str
        Bucket width (default ``"4H"``).
    min_ticks : int
        Symbols with fewer ticks are skipped entirely rather than producing
        partial, noisy candles.
    source : str
        Recorded on every emitted candle.
    """

    def __init__(
        self,
        timeframe: str = "4H",
        min_ticks: int = DEFAULT_MIN_TICKS,
        source: str = DEFAULT_SOURCE,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.timeframe = normalize_timeframe(timeframe)
        self.min_ticks = min_ticks
        self.source = source
        self.logger = logger or logging.getLogger(__name__)

    def aggregate(self, symbol: str, ticks: list[PriceTick]) -> list[Candle]:
        """
        Return the candles for *symbol*.

        Raises
        ------
        DataUnavailable
            When fewer than ``min_ticks`` ticks were supplied.
        """
        if len(ticks) < self.min_ticks:
            raise DataUnavailable(symbol, len(ticks), self.min_ticks, what="ticks")

        candles = aggregate_ticks(symbol, ticks, self.timeframe, self.source)
        self.logger.debug(
            f"[{symbol}] {len(candles)} {self.timeframe} candles from {len(ticks)} ticks"
        )
        return candles
