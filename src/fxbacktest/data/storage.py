"""
Local persistence for candles and backtest results.

``CandleStore``
    One Parquet file per ``(symbol, timeframe)`` under *data_dir*. Writes
    are upserts keyed on ``bucket_start``: re-aggregating an overlapping
    window overwrites the candles it covers and never duplicates them.

``ResultStore``
    Append-only Parquet table of ``BacktestResult`` rows (one per completed
    invocation) plus an optional per-run trade log.

Both stores write to a temporary file and atomically replace the target, so a
failed write never leaves a half-written table behind.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from fxbacktest.core.errors import PersistenceFailure
from fxbacktest.core.models import BacktestResult, Candle, TradeOutcome, normalize_timeframe, to_utc

# ---------------------------------------------------------------------------
# Column definitions
# ---------------------------------------------------------------------------
CANDLE_COLUMNS = [
    "symbol",
    "timeframe",
    "bucket_start",
    "open",
    "high",
    "low",
    "close",
    "volume",
    "source",
]

RESULT_COLUMNS = [
    "config_name",
    "parameters",
    "timeframe",
    "test_period_start",
    "test_period_end",
    "total_trades",
    "winning_trades",
    "losing_trades",
    "win_rate",
    "profit_factor",
    "testing_status",
    "created_at",
]

TRADE_COLUMNS = [
    "symbol",
    "direction",
    "generated_at",
    "entry_index",
    "entry_price",
    "stop_loss",
    "take_profit_1",
    "take_profit_2",
    "take_profit_3",
    "outcome",
    "exit_index",
    "risk_amount",
    "reward_multiple",
]


def _atomic_write(df: pd.DataFrame, path: Path) -> None:
    tmp = path.with_suffix(".tmp")
    df.to_parquet(tmp, index=False)
    tmp.replace(path)


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", name)


# ---------------------------------------------------------------------------
# CandleStore
# ---------------------------------------------------------------------------
class CandleStore:
    """
    Per-symbol, per-timeframe Parquet candle files.

    Parameters
    ----------
    data_dir : str | Path
        Directory for parquet files (e.g. ``data/candles/``).
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(self, data_dir: str | Path, logger: Optional[logging.Logger] = None) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)

    def _parquet_path(self, symbol: str, timeframe: str) -> Path:
        return self.data_dir / f"{_safe_name(symbol)}_{normalize_timeframe(timeframe)}.parquet"

    def read_frame(
        self,
        symbol: str,
        timeframe: str,
        start=None,
        end=None,
    ) -> pd.DataFrame:
        """Return stored candles in ``[start, end]`` sorted by ``bucket_start``."""
        path = self._parquet_path(symbol, timeframe)
        if not path.exists():
            return pd.DataFrame(columns=CANDLE_COLUMNS)

        df = pd.read_parquet(path)
        if start is not None:
            df = df[df["bucket_start"] >= to_utc(start)]
        if end is not None:
            df = df[df["bucket_start"] <= to_utc(end)]
        return df.sort_values("bucket_start").reset_index(drop=True)

    def read_candles(self, symbol: str, timeframe: str, start=None, end=None) -> list[Candle]:
        df = self.read_frame(symbol, timeframe, start, end)
        return [
            Candle(
                symbol=row.symbol,
                timeframe=row.timeframe,
                bucket_start=to_utc(row.bucket_start),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=int(row.volume),
                source=row.source,
            )
            for row in df.itertuples(index=False)
        ]

    def upsert(self, candles: Iterable[Candle]) -> int:
        """
        Insert or overwrite *candles* keyed on ``(symbol, timeframe, bucket_start)``.

        Returns the number of candles written.

        Raises
        ------
        PersistenceFailure
            When a parquet file cannot be written.
        """
        rows = [
            {
                "symbol": c.symbol,
                "timeframe": normalize_timeframe(c.timeframe),
                "bucket_start": to_utc(c.bucket_start),
                "open": float(c.open),
                "high": float(c.high),
                "low": float(c.low),
                "close": float(c.close),
                "volume": int(c.volume),
                "source": c.source,
            }
            for c in candles
        ]
        if not rows:
            return 0

        incoming = pd.DataFrame(rows, columns=CANDLE_COLUMNS)
        incoming["bucket_start"] = pd.to_datetime(incoming["bucket_start"], utc=True)

        for (symbol, timeframe), group in incoming.groupby(["symbol", "timeframe"], sort=False):
            existing = self.read_frame(symbol, timeframe)
            merged = self._merge(existing, group)
            try:
                _atomic_write(merged, self._parquet_path(symbol, timeframe))
            except Exception as exc:
                raise PersistenceFailure(
                    f"[{symbol}] failed to write {timeframe} candles: {exc}"
                ) from exc
            self.logger.debug(
                f"[{symbol}] upserted {len(group)} {timeframe} candles ({len(merged)} stored)"
            )

        return len(rows)

    @staticmethod
    def _merge(existing: pd.DataFrame, new: pd.DataFrame) -> pd.DataFrame:
        """Concatenate, de-duplicate on ``bucket_start`` (keep newest), and sort."""
        if existing is None or existing.empty:
            combined = new.copy()
        else:
            existing = existing.copy()
            existing["bucket_start"] = pd.to_datetime(existing["bucket_start"], utc=True)
            combined = pd.concat([existing, new], ignore_index=True)
        combined.drop_duplicates(subset=["bucket_start"], keep="last", inplace=True)
        combined.sort_values("bucket_start", inplace=True)
        combined.reset_index(drop=True, inplace=True)
        return combined[CANDLE_COLUMNS]


# ---------------------------------------------------------------------------
# ResultStore
# ---------------------------------------------------------------------------
class ResultStore:
    """
    Append-only results table.

    File layout (``data/backtests/``)::

        backtest_results.parquet          one row per completed run
        trades/<config_name>.parquet      trade log of a run (optional)
    """

    RESULTS_FILE = "backtest_results.parquet"

    def __init__(self, data_dir: str | Path, logger: Optional[logging.Logger] = None) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)
        # Grid runs share one store across threads; appends are read-modify-write.
        self._lock = threading.Lock()

    @property
    def results_path(self) -> Path:
        return self.data_dir / self.RESULTS_FILE

    def trades_path(self, config_name: str) -> Path:
        return self.data_dir / "trades" / f"{_safe_name(config_name)}.parquet"

    def delete_trades(self, config_name: str) -> bool:
        """Remove the trade log of *config_name*; returns whether one existed."""
        path = self.trades_path(config_name)
        if not path.exists():
            return False
        path.unlink()
        return True

    def load_results(self) -> pd.DataFrame:
        if not self.results_path.exists():
            return pd.DataFrame(columns=RESULT_COLUMNS)
        return pd.read_parquet(self.results_path)

    def save_result(self, result: BacktestResult) -> None:
        """
        Append *result* as a completed row.

        Raises
        ------
        PersistenceFailure
            When the table cannot be read back or written.
        """
        row = pd.DataFrame(
            [
                {
                    "config_name": result.config_name,
                    "parameters": json.dumps(result.parameters, sort_keys=True),
                    "timeframe": result.timeframe,
                    "test_period_start": result.period_start,
                    "test_period_end": result.period_end,
                    "total_trades": result.total_trades,
                    "winning_trades": result.winning_trades,
                    "losing_trades": result.losing_trades,
                    "win_rate": float(result.win_rate),
                    "profit_factor": float(result.profit_factor),
                    "testing_status": "completed",
                    "created_at": pd.Timestamp.now(tz="UTC"),
                }
            ],
            columns=RESULT_COLUMNS,
        )
        try:
            with self._lock:
                existing = self.load_results()
                table = row if existing.empty else pd.concat([existing, row], ignore_index=True)
                _atomic_write(table, self.results_path)
        except Exception as exc:
            raise PersistenceFailure(
                f"failed to persist backtest result '{result.config_name}': {exc}"
            ) from exc

        self.logger.info(f"Stored backtest result '{result.config_name}' -> {self.results_path}")

    def save_trades(self, config_name: str, trades: Iterable[TradeOutcome]) -> Path:
        """Write the trade log of a run; returns the parquet path."""
        path = self.trades_path(config_name)
        path.parent.mkdir(parents=True, exist_ok=True)

        df = pd.DataFrame([t.to_record() for t in trades], columns=TRADE_COLUMNS)
        try:
            _atomic_write(df, path)
        except Exception as exc:
            raise PersistenceFailure(f"failed to persist trades of '{config_name}': {exc}") from exc
        return path
