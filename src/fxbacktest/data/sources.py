"""
Read-only market-data collaborators of the engine.

Historical closes (``HistoricalDataSource.fetch_closes``) return a DataFrame
with columns ``timestamp`` (UTC) and ``close``, sorted ascending, covering
``start 00:00:00`` to ``end 23:59:59`` UTC inclusive:

- ``CandleStoreSource``  — local Parquet candles written by the aggregation job
- ``RestHistorySource``  — ``historical_market_data`` table over REST
- ``YahooFinanceSource`` — yfinance download, forex pairs as ``EURUSD=X``

Raw ticks (``TickSource.fetch_ticks``) come from ``live_price_history``
through ``RestTickSource``.

Any failure of the underlying service is raised as ``UpstreamFetchFailure``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date
from pathlib import Path
from typing import Optional

import pandas as pd
import yfinance as yf

from fxbacktest.core.errors import UpstreamFetchFailure
from fxbacktest.core.models import PriceTick, normalize_timeframe, to_utc
from fxbacktest.data.rest_client import PostgrestClient
from fxbacktest.data.storage import CandleStore

HISTORY_COLUMNS = ["timestamp", "close"]


def _window(start, end) -> tuple[pd.Timestamp, pd.Timestamp]:
    """Inclusive UTC window from the first second of *start* to the last of *end*."""
    lo = to_utc(start).normalize()
    hi = to_utc(end).normalize() + pd.Timedelta(days=1) - pd.Timedelta(seconds=1)
    return lo, hi


def _empty_history() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "timestamp": pd.Series([], dtype="datetime64[ns, UTC]"),
            "close": pd.Series([], dtype=float),
        }
    )


def _tidy(df: pd.DataFrame) -> pd.DataFrame:
    df = df[HISTORY_COLUMNS].copy()
    df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
    df["close"] = pd.to_numeric(df["close"], errors="coerce")
    df.dropna(subset=["close"], inplace=True)
    df.sort_values("timestamp", inplace=True)
    df.reset_index(drop=True, inplace=True)
    return df


# ---------------------------------------------------------------------------
# Historical closes
# ---------------------------------------------------------------------------

class HistoricalDataSource(ABC):

    @abstractmethod
    def fetch_closes(self, symbol: str, timeframe: str, start: date, end: date) -> pd.DataFrame:
        pass


class CandleStoreSource(HistoricalDataSource):
    """Closes from the local candle store."""

    def __init__(self, store: CandleStore) -> None:
        self.store = store

    def fetch_closes(self, symbol: str, timeframe: str, start: date, end: date) -> pd.DataFrame:
        lo, hi = _window(start, end)
        try:
            df = self.store.read_frame(symbol, timeframe, lo, hi)
        except Exception as exc:
            raise UpstreamFetchFailure(f"candle store read failed: {exc}", symbol) from exc
        if df.empty:
            return _empty_history()
        return _tidy(df.rename(columns={"bucket_start": "timestamp"}))


class RestHistorySource(HistoricalDataSource):
    """Closes from the ``historical_market_data`` table."""

    TABLE = "historical_market_data"

    def __init__(self, client: PostgrestClient) -> None:
        self.client = client

    def fetch_closes(self, symbol: str, timeframe: str, start: date, end: date) -> pd.DataFrame:
        lo, hi = _window(start, end)
        params = [
            ("select", "timestamp,close_price"),
            ("symbol", f"eq.{symbol}"),
            ("timeframe", f"eq.{normalize_timeframe(timeframe)}"),
            ("timestamp", f"gte.{lo.strftime('%Y-%m-%dT%H:%M:%SZ')}"),
            ("timestamp", f"lte.{hi.strftime('%Y-%m-%dT%H:%M:%SZ')}"),
            ("order", "timestamp.asc"),
        ]
        rows = self.client.fetch_rows(self.TABLE, params, symbol=symbol)
        if not rows:
            return _empty_history()
        try:
            df = pd.DataFrame(rows).rename(columns={"close_price": "close"})
            return _tidy(df)
        except (KeyError, ValueError, TypeError) as exc:
            raise UpstreamFetchFailure(f"malformed {self.TABLE} rows: {exc}", symbol) from exc


class YahooFinanceSource(HistoricalDataSource):
    """
    Closes downloaded from Yahoo Finance.

    Yahoo has no 4-hour interval, so ``4H`` is built from hourly closes
    resampled onto the same UTC buckets the aggregator uses.
    """

    _INTERVALS = {"1H": "1h", "4H": "1h", "1D": "1d", "W": "1wk"}

    @staticmethod
    def yahoo_ticker(symbol: str) -> str:
        """``EURUSD`` -> ``EURUSD=X``; anything else is passed through."""
        if len(symbol) == 6 and symbol.isalpha():
            return f"{symbol.upper()}=X"
        return symbol

    def fetch_closes(self, symbol: str, timeframe: str, start: date, end: date) -> pd.DataFrame:
        timeframe = normalize_timeframe(timeframe)
        lo, hi = _window(start, end)
        try:
            data = yf.download(
                self.yahoo_ticker(symbol),
                start=lo.strftime("%Y-%m-%d"),
                # yfinance treats ``end`` as exclusive
                end=(hi.normalize() + pd.Timedelta(days=1)).strftime("%Y-%m-%d"),
                interval=self._INTERVALS[timeframe],
                progress=False,
                auto_adjust=True,
            )
        except Exception as exc:
            raise UpstreamFetchFailure(f"Yahoo Finance download failed: {exc}", symbol) from exc

        if data is None or data.empty:
            return _empty_history()

        # Flatten multi-level columns to remove ticker from column names
        if isinstance(data.columns, pd.MultiIndex):
            data.columns = data.columns.get_level_values(0)

        close = data["Close"].astype(float)
        index = pd.DatetimeIndex(close.index)
        close.index = index.tz_localize("UTC") if index.tz is None else index.tz_convert("UTC")
        if timeframe == "4H":
            close = close.resample("4h").last()
        close = close.dropna()
        close = close[(close.index >= lo) & (close.index <= hi)]

        df = pd.DataFrame({"timestamp": close.index, "close": close.values})
        return _tidy(df)


# ---------------------------------------------------------------------------
# Raw ticks
# ---------------------------------------------------------------------------

class TickSource(ABC):

    @abstractmethod
    def fetch_ticks(self, symbol: str, since: pd.Timestamp) -> list[PriceTick]:
        pass


class RestTickSource(TickSource):
    """Ticks from the ``live_price_history`` table, oldest first."""

    TABLE = "live_price_history"

    def __init__(self, client: PostgrestClient) -> None:
        self.client = client

    def fetch_ticks(self, symbol: str, since: pd.Timestamp) -> list[PriceTick]:
        since = to_utc(since)
        params = [
            ("select", "timestamp,price"),
            ("symbol", f"eq.{symbol}"),
            ("timestamp", f"gte.{since.strftime('%Y-%m-%dT%H:%M:%SZ')}"),
            ("order", "timestamp.asc"),
        ]
        rows = self.client.fetch_rows(self.TABLE, params, symbol=symbol)
        try:
            return [
                PriceTick(symbol=symbol, timestamp=to_utc(row["timestamp"]), price=float(row["price"]))
                for row in rows
            ]
        except (KeyError, ValueError, TypeError) as exc:
            raise UpstreamFetchFailure(f"malformed {self.TABLE} rows: {exc}", symbol) from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_history_source(
    source_config: dict,
    candle_dir: Path,
    api_key: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> HistoricalDataSource:
    """
    Build the historical source named by ``source_config["type"]``:
    ``"store"`` (default), ``"rest"`` or ``"yahoo"``.
    """
    kind = (source_config.get("type") or "store").lower()
    if kind == "store":
        return CandleStoreSource(CandleStore(candle_dir, logger=logger))
    if kind == "rest":
        client = PostgrestClient(source_config["base_url"], api_key=api_key)
        return RestHistorySource(client)
    if kind == "yahoo":
        return YahooFinanceSource()
    raise ValueError(f"Unknown history source type '{kind}'")
