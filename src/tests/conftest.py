"""Shared fixtures: synthetic close series and an in-memory history source."""

import numpy as np
import pandas as pd
import pytest

from fxbacktest.core.errors import UpstreamFetchFailure
from fxbacktest.data.sources import HistoricalDataSource


def trend_with_pullback(n: int = 300) -> list[float]:
    """Rising daily closes with a ten-bar dip at bars 260-269.

    The dip pushes RSI(14) below 30 while price stays above EMA50 > EMA200,
    so the default rule fires BUY signals that later reach their first target.
    """
    closes = []
    price = 100.0
    for i in range(n):
        if i == 0:
            closes.append(price)
            continue
        price += -0.75 if 260 <= i <= 269 else 0.5
        closes.append(price)
    return closes


class InMemorySource(HistoricalDataSource):
    """History source backed by a dict of ``symbol -> closes``."""

    def __init__(self, series: dict, failures: dict | None = None):
        self.series = series
        self.failures = failures or {}
        self.calls = []

    def fetch_closes(self, symbol, timeframe, start, end):
        self.calls.append((symbol, timeframe, start, end))
        if symbol in self.failures:
            raise self.failures[symbol]
        closes = self.series.get(symbol, [])
        return pd.DataFrame(
            {
                "timestamp": pd.date_range("2020-01-01", periods=len(closes), freq="D", tz="UTC"),
                "close": np.asarray(closes, dtype=float),
            }
        )


@pytest.fixture
def rising_closes():
    return trend_with_pullback()


@pytest.fixture
def make_source():
    def _make(series, failures=None):
        return InMemorySource(series, failures)
    return _make


@pytest.fixture
def upstream_error():
    return UpstreamFetchFailure("connection reset", "BADUSD")
