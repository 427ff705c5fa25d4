"""Tests for the Parquet candle and result stores

Tests cover:
- Idempotent candle upserts
- Window filtering on read
- Result rows and trade logs
- Write failures surfacing as PersistenceFailure
"""

import json
from unittest.mock import patch

import pandas as pd
import pytest

from fxbacktest.core.errors import PersistenceFailure
from fxbacktest.core.models import BacktestResult, Candle, Direction, Outcome, Signal, TradeOutcome
from fxbacktest.data.storage import CandleStore, ResultStore, TRADE_COLUMNS


def _candle(ts, close, symbol="EURUSD", timeframe="4H"):
    return Candle(
        symbol=symbol,
        timeframe=timeframe,
        bucket_start=pd.Timestamp(ts, tz="UTC"),
        open=close - 0.001,
        high=close + 0.002,
        low=close - 0.002,
        close=close,
    )


def _result(name="grid-1", total=4, wins=3):
    return BacktestResult(
        config_name=name,
        parameters={"rsi_buy_threshold": 30.0, "rsi_sell_threshold": 70.0},
        timeframe="1D",
        period_start="2018-01-01",
        period_end="2024-12-31",
        total_trades=total,
        winning_trades=wins,
        losing_trades=total - wins,
        win_rate=wins / total * 100 if total else 0.0,
        profit_factor=1.5,
    )


class TestCandleStore:
    """Test candle persistence."""

    def test_missing_file_reads_empty(self, tmp_path):
        store = CandleStore(tmp_path)
        assert store.read_frame("EURUSD", "4H").empty
        assert store.read_candles("EURUSD", "4H") == []

    def test_upsert_is_idempotent(self, tmp_path):
        store = CandleStore(tmp_path)
        candles = [_candle(f"2024-01-01 {h:02d}:00", 1.1 + h / 1000) for h in (0, 4, 8)]

        assert store.upsert(candles) == 3
        first = store.read_candles("EURUSD", "4H")
        store.upsert(candles)
        second = store.read_candles("EURUSD", "4H")

        assert first == second == candles

    def test_overlapping_upsert_overwrites(self, tmp_path):
        store = CandleStore(tmp_path)
        store.upsert([_candle("2024-01-01 00:00", 1.10), _candle("2024-01-01 04:00", 1.11)])
        store.upsert([_candle("2024-01-01 04:00", 1.20), _candle("2024-01-01 08:00", 1.21)])

        df = store.read_frame("EURUSD", "4H")
        assert df["close"].tolist() == [1.10, 1.20, 1.21]
        assert df["bucket_start"].is_monotonic_increasing

    def test_symbols_and_timeframes_kept_apart(self, tmp_path):
        store = CandleStore(tmp_path)
        store.upsert([
            _candle("2024-01-01 00:00", 1.10),
            _candle("2024-01-01 00:00", 1.27, symbol="GBPUSD"),
            _candle("2024-01-01 00:00", 1.09, timeframe="1D"),
        ])
        assert len(store.read_frame("EURUSD", "4H")) == 1
        assert len(store.read_frame("GBPUSD", "4H")) == 1
        assert store.read_frame("EURUSD", "D")["close"].tolist() == [1.09]

    def test_read_window(self, tmp_path):
        store = CandleStore(tmp_path)
        store.upsert([_candle(f"2024-01-0{d} 00:00", 1.0 + d / 100) for d in range(1, 6)])
        df = store.read_frame("EURUSD", "4H", "2024-01-02", "2024-01-04")
        assert df["close"].tolist() == pytest.approx([1.02, 1.03, 1.04])

    def test_write_failure(self, tmp_path):
        store = CandleStore(tmp_path)
        with patch("fxbacktest.data.storage._atomic_write", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceFailure, match="disk full"):
                store.upsert([_candle("2024-01-01 00:00", 1.1)])

    def test_empty_upsert(self, tmp_path):
        assert CandleStore(tmp_path).upsert([]) == 0


class TestResultStore:
    """Test result persistence."""

    def test_save_result_appends_completed_rows(self, tmp_path):
        store = ResultStore(tmp_path)
        store.save_result(_result("grid-1"))
        store.save_result(_result("grid-2", total=0, wins=0))

        df = store.load_results()
        assert df["config_name"].tolist() == ["grid-1", "grid-2"]
        assert (df["testing_status"] == "completed").all()
        assert json.loads(df["parameters"].iloc[0]) == {
            "rsi_buy_threshold": 30.0,
            "rsi_sell_threshold": 70.0,
        }
        assert df["win_rate"].tolist() == [75.0, 0.0]

    def test_save_result_failure(self, tmp_path):
        store = ResultStore(tmp_path)
        with patch("fxbacktest.data.storage._atomic_write", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceFailure):
                store.save_result(_result())
        assert store.load_results().empty

    def test_save_trades(self, tmp_path):
        signal = Signal("EURUSD", Direction.BUY, 201, 1.1, 1.09, (1.115, 1.12, 1.13), 200)
        trade = TradeOutcome(signal, Outcome.WIN, 210, 0.01, 1.5)

        path = ResultStore(tmp_path).save_trades("grid/1", [trade])

        assert path == tmp_path / "trades" / "grid_1.parquet"
        df = pd.read_parquet(path)
        assert df["outcome"].tolist() == ["WIN"]
        assert df["take_profit_3"].iloc[0] == pytest.approx(1.13)

    def test_save_no_trades(self, tmp_path):
        path = ResultStore(tmp_path).save_trades("grid-1", [])
        assert list(pd.read_parquet(path).columns) == TRADE_COLUMNS

    def test_delete_trades(self, tmp_path):
        store = ResultStore(tmp_path)
        store.save_trades("grid-1", [])

        assert store.delete_trades("grid-1") is True
        assert not store.trades_path("grid-1").exists()
        assert store.delete_trades("grid-1") is False
