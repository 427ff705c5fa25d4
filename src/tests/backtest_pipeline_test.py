"""Tests for the Backtest Pipeline

Tests cover:
- Payload defaults and normalisation
- Status codes for every error kind
- Response body shape and JSON rendering
- The config-driven main entry point
"""

import json
import math
from datetime import date
from unittest.mock import Mock

import pandas as pd
import pytest

from fxbacktest.backtest.engine import BacktestEngine
from fxbacktest.core.errors import InvalidParameters, PersistenceFailure
from fxbacktest.data.storage import ResultStore
from fxbacktest.pipelines.backtest_pipeline import (
    DEFAULT_SYMBOLS,
    handle_backtest_request,
    main,
    parse_request,
    to_json,
)


class TestParseRequest:
    """Test payload defaults."""

    def test_defaults(self):
        req = parse_request({})

        assert list(req.symbols) == DEFAULT_SYMBOLS
        assert req.timeframe == "1D"
        assert req.params.as_dict() == {"rsi_buy_threshold": 30.0, "rsi_sell_threshold": 70.0}
        assert req.config_name.startswith("grid-")
        assert req.period_start == date(2018, 1, 1)
        assert req.period_end == pd.Timestamp.now(tz="UTC").date()

    def test_explicit_values(self):
        req = parse_request(
            {
                "symbols": ["eurusd"],
                "timeframe": "4h",
                "parameters": {"rsiBuyThreshold": 20, "rsiSellThreshold": 80},
                "configName": "manual-1",
                "testStart": "2022-01-01",
                "testEnd": "2022-06-30",
            }
        )
        assert req.symbols == ("EURUSD",)
        assert req.timeframe == "4H"
        assert (req.params.rsi_buy_threshold, req.params.rsi_sell_threshold) == (20.0, 80.0)
        assert req.config_name == "manual-1"
        assert req.period_end == date(2022, 6, 30)

    @pytest.mark.parametrize(
        "payload",
        ["not an object", {"parameters": [30, 70]}, {"testStart": "2030-01-01", "testEnd": "2020-01-01"}],
    )
    def test_invalid(self, payload):
        with pytest.raises(InvalidParameters):
            parse_request(payload)


class TestHandleBacktestRequest:
    """Test the response contract."""

    def test_success_body(self, make_source, rising_closes):
        engine = BacktestEngine(make_source({"TESTUSD": rising_closes}))

        status, body = handle_backtest_request(
            {"symbols": ["TESTUSD"], "testStart": "2020-01-01", "testEnd": "2020-12-31"}, engine
        )

        assert status == 200
        assert body["status"] == "ok"
        assert body["timeframe"] == "1D"
        assert body["symbols"] == ["TESTUSD"]
        assert set(body["metrics"]) == {"totalTrades", "wins", "losses", "winRate", "profitFactor"}
        assert body["metrics"]["totalTrades"] >= 1
        assert body["metrics"]["profitFactor"] == math.inf

    def test_empty_symbols_rejected_before_fetching(self, make_source):
        source = make_source({"EURUSD": [1.1] * 300})
        engine = BacktestEngine(source)

        status, body = handle_backtest_request({"symbols": []}, engine)

        assert status == 400
        assert "symbols" in body["error"]
        assert source.calls == []

    def test_null_symbols_use_defaults(self):
        assert list(parse_request({"symbols": None}).symbols) == DEFAULT_SYMBOLS

    def test_invalid_parameters_400(self, make_source):
        engine = BacktestEngine(make_source({}))
        status, body = handle_backtest_request({"timeframe": "15M"}, engine)
        assert status == 400
        assert "15M" in body["error"]

    def test_upstream_failure_502(self, make_source, upstream_error):
        engine = BacktestEngine(make_source({}, failures={"BADUSD": upstream_error}))
        status, body = handle_backtest_request({"symbols": ["BADUSD"]}, engine)
        assert status == 502
        assert body == {"error": "[BADUSD] connection reset"}

    def test_persistence_failure_500(self, make_source):
        store = Mock(spec=ResultStore)
        store.save_result.side_effect = PersistenceFailure("disk full")
        engine = BacktestEngine(make_source({}), result_store=store)

        status, body = handle_backtest_request({"symbols": ["EURUSD"]}, engine)

        assert status == 500
        assert body == {"error": "disk full"}

    def test_unexpected_error_500(self):
        engine = Mock()
        engine.run.side_effect = RuntimeError("boom")
        status, body = handle_backtest_request({}, engine)
        assert (status, body) == (500, {"error": "boom"})


def test_to_json_renders_infinite_profit_factor():
    body = {"status": "ok", "metrics": {"profitFactor": math.inf}}
    assert json.loads(to_json(body))["metrics"]["profitFactor"] == math.inf


def test_main_runs_from_config(tmp_path):
    config = {
        "config_name": "from-config",
        "symbols": ["EURUSD"],
        "timeframe": "1D",
        "test_start": "2020-01-01",
        "test_end": "2020-12-31",
        "parameters": {"rsiBuy": 30, "rsiSell": 70},
        "source": {"type": "store"},
        "data_paths": {
            "candle_path": str(tmp_path / "candles"),
            "results_path": str(tmp_path / "results"),
            "log_path": str(tmp_path / "logs"),
        },
        "log_level": "DEBUG",
    }
    config_file = tmp_path / "backtest.json"
    config_file.write_text(json.dumps(config))

    status, body = main(str(config_file))

    assert status == 200
    assert body["metrics"]["totalTrades"] == 0
    stored = ResultStore(tmp_path / "results").load_results()
    assert stored["config_name"].tolist() == ["from-config"]
