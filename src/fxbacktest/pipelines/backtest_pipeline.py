"""
Backtest Pipeline — main entry point.

Turns a request payload into one backtest run:

    [1] INIT     — Load config, setup logger, build data source + result store
    [2] REQUEST  — Apply defaults, validate symbols / timeframe / dates / params
    [3] BACKTEST — Run the engine over every symbol and persist one result
    [4] RESPONSE — ``{status, timeframe, symbols, metrics}`` or ``{error}``

Payload keys (all optional)::

    {
        "symbols":    ["EURUSD", "GBPUSD"],
        "timeframe":  "1D",
        "parameters": {"rsiBuy": 30, "rsiSell": 70},
        "configName": "grid-1700000000000",
        "testStart":  "2018-01-01",
        "testEnd":    "2024-12-31"
    }

Usage::

    python -m fxbacktest.pipelines.backtest_pipeline
"""

import json
import logging
from typing import Any, Mapping, Optional

import pandas as pd

from fxbacktest.backtest.engine import BacktestEngine, BacktestRequest
from fxbacktest.core.errors import BacktestError, InvalidParameters
from fxbacktest.data.sources import build_history_source
from fxbacktest.data.storage import ResultStore
from fxbacktest.utils.config import default_config_path, get_data_path, load_config, read_secret
from fxbacktest.utils.logger import level_from_name, setup_logger

DEFAULT_SYMBOLS = ["EURUSD", "GBPUSD", "USDJPY", "AUDUSD", "USDCAD"]
DEFAULT_TIMEFRAME = "1D"
DEFAULT_PARAMETERS = {"rsiBuy": 30, "rsiSell": 70}
DEFAULT_TEST_START = "2018-01-01"


# ═══════════════════════════════════════════════════════════════════════════
# REQUEST
# ═══════════════════════════════════════════════════════════════════════════

def parse_request(payload: Optional[Mapping[str, Any]]) -> BacktestRequest:
    """
    Apply defaults to *payload* and validate it into a ``BacktestRequest``.

    Raises
    ------
    InvalidParameters
        The payload is not an object, or any field fails validation.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, Mapping):
        raise InvalidParameters("request body must be a JSON object")

    symbols = payload.get("symbols")
    if symbols is None:
        symbols = DEFAULT_SYMBOLS
    timeframe = str(payload.get("timeframe") or DEFAULT_TIMEFRAME).upper()

    parameters = payload.get("parameters")
    if parameters is None:
        parameters = DEFAULT_PARAMETERS
    if not isinstance(parameters, Mapping):
        raise InvalidParameters("parameters must be an object")

    test_start = payload.get("testStart") or DEFAULT_TEST_START
    test_end = payload.get("testEnd") or pd.Timestamp.now(tz="UTC").date()

    return BacktestRequest.build(
        symbols,
        timeframe,
        test_start,
        test_end,
        params=parameters,
        config_name=payload.get("configName"),
    )


def handle_backtest_request(
    payload: Optional[Mapping[str, Any]],
    engine: BacktestEngine,
    logger: Optional[logging.Logger] = None,
) -> tuple[int, dict]:
    """
    Run one backtest for *payload*.

    Returns
    -------
    status_code : int
        200 on success, otherwise the error's ``status_code``.
    body : dict
        ``{status, timeframe, symbols, metrics}`` or ``{error}``.
    """
    logger = logger or engine.logger
    try:
        request = parse_request(payload)
        report = engine.run(request)
    except BacktestError as exc:
        logger.error(f"Backtest request failed ({exc.status_code}): {exc}")
        return exc.status_code, {"error": str(exc)}
    except Exception as exc:
        logger.error("Backtest request failed with an unexpected error", exc_info=True)
        return 500, {"error": str(exc) or "unknown error"}

    return 200, {
        "status": "ok",
        "timeframe": request.timeframe,
        "symbols": list(request.symbols),
        "metrics": report.result.metrics(),
    }


def to_json(body: dict) -> str:
    """Serialise a response body; an infinite profit factor renders as ``Infinity``."""
    return json.dumps(body)


# ═══════════════════════════════════════════════════════════════════════════
# INIT
# ═══════════════════════════════════════════════════════════════════════════

def build_engine(config: dict, logger: logging.Logger) -> BacktestEngine:
    """Wire the configured history source and result store into an engine."""
    source_cfg = config.get("source", {})
    source = build_history_source(
        source_cfg,
        get_data_path(config, "candle_path"),
        api_key=read_secret(source_cfg.get("api_key_env")),
        logger=logger,
    )
    return BacktestEngine(
        source,
        result_store=ResultStore(get_data_path(config, "results_path"), logger=logger),
        max_workers=config.get("max_workers", 1),
        save_trades=config.get("save_trades", False),
        logger=logger,
    )


def init(config_path: Optional[str] = None) -> tuple[dict, logging.Logger]:
    """
    Load configuration and setup the logger.

    Returns
    -------
    config : dict
        Parsed contents of ``backtest.json``.
    logger : logging.Logger
        Configured rotating logger.
    """
    if config_path is None:
        config_path = default_config_path("backtest.json")
    config = load_config(str(config_path))

    logger = setup_logger(
        "fxbacktest.backtest_pipeline",
        get_data_path(config, "log_path") / "backtest_pipeline.log",
        level=level_from_name(config.get("log_level")),
    )
    logger.info("=" * 60)
    logger.info("Backtest Pipeline starting")
    logger.info("=" * 60)
    logger.info(f"Config loaded from: {config_path}")
    return config, logger


def payload_from_config(config: dict) -> dict:
    """Map the snake_case config keys onto a request payload."""
    return {
        "symbols": config.get("symbols"),
        "timeframe": config.get("timeframe"),
        "parameters": config.get("parameters"),
        "configName": config.get("config_name"),
        "testStart": config.get("test_start"),
        "testEnd": config.get("test_end"),
    }


def main(config_path: Optional[str] = None) -> tuple[int, dict]:
    config, logger = init(config_path)
    engine = build_engine(config, logger)

    status, body = handle_backtest_request(payload_from_config(config), engine, logger)
    logger.info(f"Response {status}: {to_json(body)}")
    return status, body


if __name__ == "__main__":
    main()
