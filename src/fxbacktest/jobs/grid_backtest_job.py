"""Grid Backtest Job

Runs one backtest invocation per parameter combination and ranks them.

The job:
1. Reads configuration from config/grid_backtest.json
2. Expands ``parameter_grid`` into every threshold combination
3. Runs the combinations in fixed-size batches on a bounded thread pool,
   sleeping between batches to respect upstream rate limits
4. Persists one result per successful combination (via the engine)
5. Logs the combinations ranked by win rate, then profit factor

A failing combination is logged and reported with its error; the other
combinations keep running.
"""

import itertools
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Mapping, Optional

import pandas as pd

from fxbacktest.backtest.engine import BacktestEngine, BacktestRequest
from fxbacktest.core.errors import BacktestError
from fxbacktest.data.sources import build_history_source
from fxbacktest.data.storage import ResultStore
from fxbacktest.utils.config import default_config_path, get_data_path, load_config, read_secret
from fxbacktest.utils.logger import level_from_name, setup_logger


def build_parameter_grid(grid: Mapping[str, list]) -> list[dict]:
    """Expand ``{"rsiBuy": [25, 30], "rsiSell": [70]}`` into every combination.

    Args:
        grid: Mapping of parameter name to candidate values

    Returns:
        List of parameter dicts in lexicographic order of the inputs

    Raises:
        ValueError: If a parameter has no candidate values
    """
    keys = list(grid)
    for key in keys:
        if not grid[key]:
            raise ValueError(f"parameter '{key}' has no candidate values")
    return [dict(zip(keys, combo)) for combo in itertools.product(*(grid[k] for k in keys))]


def _summary(name: str, params: dict, result=None, error: Optional[str] = None) -> dict:
    row = {"config_name": name, "parameters": params, "status": "ok" if error is None else "error"}
    if result is not None:
        row.update(result.metrics())
    if error is not None:
        row["error"] = error
    return row


def rank_results(summaries: list[dict]) -> list[dict]:
    """Successful runs first, by win rate then profit factor (descending)."""
    ok = [s for s in summaries if s["status"] == "ok"]
    errors = [s for s in summaries if s["status"] != "ok"]
    ok.sort(key=lambda s: (s["winRate"], s["profitFactor"]), reverse=True)
    return ok + errors


def run_grid_backtest(
    grid: list[dict],
    symbols: list[str],
    timeframe: str,
    period_start,
    period_end,
    engine: BacktestEngine,
    config_prefix: str = "grid",
    batch_size: int = 4,
    batch_delay: float = 1.0,
    max_workers: int = 4,
    sleep: Callable[[float], None] = time.sleep,
    logger: Optional[logging.Logger] = None,
) -> list[dict]:
    """Run every parameter set of *grid* through *engine*.

    Args:
        grid: Parameter dicts (see build_parameter_grid)
        symbols: Symbols of every invocation
        timeframe: Timeframe of every invocation
        period_start: Test window start
        period_end: Test window end
        engine: Engine shared by all invocations (read-only data source)
        config_prefix: Config names are '<prefix>-<n>'
        batch_size: Invocations per batch
        batch_delay: Seconds slept between batches
        max_workers: Thread pool size within a batch
        sleep: Injected sleep function
        logger: Optional logger

    Returns:
        Ranked summaries (see rank_results)
    """
    logger = logger or logging.getLogger(__name__)
    if batch_size < 1:
        raise ValueError("batch_size must be positive")

    # Validate every combination up front so a typo fails before any run.
    requests_ = [
        BacktestRequest.build(
            symbols, timeframe, period_start, period_end, params, f"{config_prefix}-{n}"
        )
        for n, params in enumerate(grid, 1)
    ]
    logger.info(f"Testing {len(requests_)} parameter combinations in batches of {batch_size}")

    summaries: list[dict] = []
    for b, offset in enumerate(range(0, len(requests_), batch_size)):
        if b > 0 and batch_delay > 0:
            sleep(batch_delay)
        batch = requests_[offset:offset + batch_size]
        logger.info(f"Batch {b + 1}: combinations {offset + 1}-{offset + len(batch)}/{len(requests_)}")

        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(batch)))) as pool:
            future_to_request = {pool.submit(engine.run, req): req for req in batch}
            for future in as_completed(future_to_request):
                req = future_to_request[future]
                params = req.params.as_dict()
                try:
                    report = future.result()
                    summaries.append(_summary(req.config_name, params, result=report.result))
                except BacktestError as exc:
                    logger.error(f"{req.config_name} failed: {exc}")
                    summaries.append(_summary(req.config_name, params, error=str(exc)))
                except Exception as exc:
                    logger.error(f"{req.config_name} failed unexpectedly: {exc!r}", exc_info=True)
                    summaries.append(_summary(req.config_name, params, error=repr(exc)))

    ranked = rank_results(summaries)
    for row in ranked[:10]:
        if row["status"] == "ok":
            logger.info(
                f"{row['config_name']} {row['parameters']}: win_rate={row['winRate']:.2f}% "
                f"profit_factor={row['profitFactor']:.2f} trades={row['totalTrades']}"
            )
    return ranked


def run_grid_backtest_job(config_path: Optional[str] = None) -> list[dict]:
    """Main job execution function.

    Args:
        config_path: Path to configuration file (defaults to config/grid_backtest.json)
    """
    if config_path is None:
        config_path = default_config_path("grid_backtest.json")
    config = load_config(str(config_path))

    logger = setup_logger(
        "fxbacktest.grid_backtest",
        get_data_path(config, "log_path") / "grid_backtest.log",
        level=level_from_name(config.get("log_level")),
    )
    logger.info(f"Config loaded from: {config_path}")

    source_cfg = config.get("source", {})
    source = build_history_source(
        source_cfg,
        get_data_path(config, "candle_path"),
        api_key=read_secret(source_cfg.get("api_key_env")),
        logger=logger,
    )
    engine = BacktestEngine(
        source,
        result_store=ResultStore(get_data_path(config, "results_path"), logger=logger),
        logger=logger,
    )

    return run_grid_backtest(
        grid=build_parameter_grid(config["parameter_grid"]),
        symbols=config["symbols"],
        timeframe=config.get("timeframe", "1D"),
        period_start=config.get("test_start", "2018-01-01"),
        period_end=config.get("test_end") or pd.Timestamp.now(tz="UTC").date(),
        engine=engine,
        config_prefix=config.get("config_prefix", "grid"),
        batch_size=config.get("batch_size", 4),
        batch_delay=config.get("batch_delay_sec", 1.0),
        max_workers=config.get("max_workers", 4),
        logger=logger,
    )


if __name__ == "__main__":
    run_grid_backtest_job()
