"""Candle Aggregation Job

This job turns raw price ticks into fixed-width candles and upserts them into
the local candle store.

The job:
1. Reads configuration from config/candle_aggregation.json
2. For each symbol, fetches ticks from the lookback start (default 180 days)
3. Skips symbols with fewer than ``min_ticks`` ticks (no partial candles)
4. Aggregates the rest into 4H candles aligned to 00/04/08/12/16/20 UTC
5. Upserts candles keyed on (symbol, timeframe, bucket_start)

Re-running over an overlapping window is idempotent. Designed to run every
few hours via scheduled task/cron.
"""

import logging
from typing import Optional

import pandas as pd

from fxbacktest.core.errors import DataUnavailable, PersistenceFailure, UpstreamFetchFailure
from fxbacktest.data.aggregator import DEFAULT_MIN_TICKS, CandleAggregator
from fxbacktest.data.rest_client import PostgrestClient
from fxbacktest.data.sources import RestTickSource, TickSource
from fxbacktest.data.storage import CandleStore
from fxbacktest.utils.config import default_config_path, get_data_path, load_config, read_secret
from fxbacktest.utils.logger import level_from_name, setup_logger

DEFAULT_LOOKBACK_DAYS = 180


def run_candle_aggregation(
    symbols: list[str],
    tick_source: TickSource,
    store: CandleStore,
    timeframe: str = "4H",
    lookback_days: int = DEFAULT_LOOKBACK_DAYS,
    min_ticks: int = DEFAULT_MIN_TICKS,
    now: Optional[pd.Timestamp] = None,
    logger: Optional[logging.Logger] = None,
) -> dict:
    """Aggregate and store candles for every symbol.

    Args:
        symbols: Symbols to aggregate
        tick_source: Raw tick collaborator
        store: Candle store receiving the upserts
        timeframe: Candle width (default '4H')
        lookback_days: How far back ticks are read
        min_ticks: Minimum ticks required to aggregate a symbol
        now: Reference time (defaults to the current UTC time)
        logger: Optional logger

    Returns:
        Summary dict with total_candles, processed_symbols, total_symbols,
        symbols (processed), skipped and failed symbol lists
    """
    logger = logger or logging.getLogger(__name__)
    now = pd.Timestamp.now(tz="UTC") if now is None else pd.Timestamp(now)
    since = now - pd.Timedelta(days=lookback_days)
    aggregator = CandleAggregator(timeframe=timeframe, min_ticks=min_ticks, logger=logger)

    logger.info(f"Aggregating {aggregator.timeframe} candles for {len(symbols)} symbols since {since}")

    total_candles = 0
    processed: list[str] = []
    skipped: list[str] = []
    failed: list[str] = []

    for symbol in symbols:
        try:
            ticks = tick_source.fetch_ticks(symbol, since)
            candles = aggregator.aggregate(symbol, ticks)
            total_candles += store.upsert(candles)
            processed.append(symbol)
            logger.info(f"[{symbol}] {len(candles)} {aggregator.timeframe} candles (from {len(ticks)} ticks)")
        except DataUnavailable as exc:
            skipped.append(symbol)
            logger.warning(f"[{symbol}] Insufficient data — {exc}")
        except UpstreamFetchFailure as exc:
            failed.append(symbol)
            logger.error(f"[{symbol}] Tick fetch failed: {exc}")
        except PersistenceFailure as exc:
            failed.append(symbol)
            logger.error(f"[{symbol}] Candle upsert failed: {exc}")

    logger.info(
        f"Summary: {total_candles} {aggregator.timeframe} candles for "
        f"{len(processed)}/{len(symbols)} symbols ({len(skipped)} skipped, {len(failed)} failed)"
    )
    return {
        "total_candles": total_candles,
        "processed_symbols": len(processed),
        "total_symbols": len(symbols),
        "symbols": processed,
        "skipped": skipped,
        "failed": failed,
    }


def run_candle_aggregation_job(config_path: Optional[str] = None) -> dict:
    """Main job execution function.

    Args:
        config_path: Path to configuration file (defaults to config/candle_aggregation.json)
    """
    if config_path is None:
        config_path = default_config_path("candle_aggregation.json")
    config = load_config(str(config_path))

    logger = setup_logger(
        "fxbacktest.candle_aggregation",
        get_data_path(config, "log_path") / "candle_aggregation.log",
        level=level_from_name(config.get("log_level")),
    )
    logger.info(f"Config loaded from: {config_path}")

    source_cfg = config["source"]
    client = PostgrestClient(source_cfg["base_url"], api_key=read_secret(source_cfg.get("api_key_env")))
    store = CandleStore(get_data_path(config, "candle_path"), logger=logger)

    return run_candle_aggregation(
        symbols=config.get("symbols", []),
        tick_source=RestTickSource(client),
        store=store,
        timeframe=config.get("timeframe", "4H"),
        lookback_days=config.get("lookback_days", DEFAULT_LOOKBACK_DAYS),
        min_ticks=config.get("min_ticks", DEFAULT_MIN_TICKS),
        logger=logger,
    )


if __name__ == "__main__":
    run_candle_aggregation_job()
