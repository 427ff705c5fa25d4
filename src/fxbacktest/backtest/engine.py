"""
Backtest aggregator: the top-level entry point of one backtest run.

For each requested symbol the engine

    1. fetches the close series for ``[period_start, period_end]``,
    2. skips the symbol when fewer than ``min_bars`` (260) bars exist,
    3. computes indicators once, scans for signals and simulates each one,
    4. folds the resolved trades into a ``TradeTally``.

The per-symbol tallies are summed into one ``BacktestResult``, which is
persisted only after every symbol has completed. An upstream failure on any
symbol aborts the whole run before anything is written; a short history only
skips that symbol.

Symbols are independent, so ``max_workers > 1`` processes them on a thread
pool. Tallies are merged by summation and trades are re-ordered to the
request's symbol order, so the result does not depend on completion order.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Mapping, Optional, Sequence

import pandas as pd

from fxbacktest.backtest.simulator import simulate_trades
from fxbacktest.core.errors import (
    BacktestError,
    DataUnavailable,
    InvalidParameters,
    PersistenceFailure,
    UpstreamFetchFailure,
)
from fxbacktest.core.models import BacktestResult, Outcome, TradeOutcome, normalize_timeframe
from fxbacktest.data.sources import HistoricalDataSource
from fxbacktest.data.storage import ResultStore
from fxbacktest.helpers.performance import calculate_profit_factor, calculate_win_rate
from fxbacktest.strategies.rsi_trend import SignalParams, compute_indicators, generate_signals

# 200 bars of EMA warm-up plus room to simulate forward.
DEFAULT_MIN_BARS = 260


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def _parse_date(value, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if value is None or not str(value).strip():
        raise InvalidParameters(f"{name} is required")
    try:
        ts = pd.Timestamp(str(value).strip())
    except (ValueError, TypeError) as exc:
        raise InvalidParameters(f"{name} is not a valid date: {value!r}") from exc
    if pd.isna(ts):
        raise InvalidParameters(f"{name} is not a valid date: {value!r}")
    return ts.date()


def _clean_symbols(symbols) -> tuple[str, ...]:
    if isinstance(symbols, str):
        symbols = [symbols]
    if symbols is None:
        raise InvalidParameters("symbols must not be empty")
    try:
        items = list(symbols)
    except TypeError as exc:
        raise InvalidParameters("symbols must be a list of strings") from exc

    cleaned: list[str] = []
    for sym in items:
        if not isinstance(sym, str) or not sym.strip():
            raise InvalidParameters(f"invalid symbol {sym!r}")
        sym = sym.strip().upper()
        if sym not in cleaned:
            cleaned.append(sym)
    if not cleaned:
        raise InvalidParameters("symbols must not be empty")
    return tuple(cleaned)


def default_config_name() -> str:
    return f"grid-{int(time.time() * 1000)}"


@dataclass(frozen=True)
class BacktestRequest:
    symbols: tuple[str, ...]
    timeframe: str
    period_start: date
    period_end: date
    params: SignalParams = field(default_factory=SignalParams)
    config_name: str = ""

    @classmethod
    def build(
        cls,
        symbols: Iterable[str],
        timeframe: str,
        period_start,
        period_end,
        params: Optional[SignalParams | Mapping] = None,
        config_name: Optional[str] = None,
    ) -> "BacktestRequest":
        """
        Validate raw arguments into a request.

        Raises
        ------
        InvalidParameters
            Empty symbol set, unknown timeframe, unparsable dates, a start
            after the end, or non-numeric thresholds.
        """
        cleaned = _clean_symbols(symbols)
        try:
            tf = normalize_timeframe(timeframe)
        except ValueError as exc:
            raise InvalidParameters(str(exc)) from exc

        start = _parse_date(period_start, "period_start")
        end = _parse_date(period_end, "period_end")
        if start > end:
            raise InvalidParameters(f"period_start {start} is after period_end {end}")

        if not isinstance(params, SignalParams):
            params = SignalParams.from_mapping(params)

        name = (config_name or "").strip() or default_config_name()
        return cls(cleaned, tf, start, end, params, name)


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

@dataclass
class TradeTally:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    gross_win: float = 0.0
    gross_loss: float = 0.0

    def add(self, trade: TradeOutcome) -> None:
        """Count a resolved trade; unresolved trades are ignored."""
        if trade.outcome is Outcome.WIN:
            self.total_trades += 1
            self.winning_trades += 1
            self.gross_win += trade.reward_multiple * trade.risk_amount
        elif trade.outcome is Outcome.LOSS:
            self.total_trades += 1
            self.losing_trades += 1
            self.gross_loss += trade.risk_amount

    def merge(self, other: "TradeTally") -> "TradeTally":
        return TradeTally(
            total_trades=self.total_trades + other.total_trades,
            winning_trades=self.winning_trades + other.winning_trades,
            losing_trades=self.losing_trades + other.losing_trades,
            gross_win=self.gross_win + other.gross_win,
            gross_loss=self.gross_loss + other.gross_loss,
        )

    @property
    def win_rate(self) -> float:
        return calculate_win_rate(self.winning_trades, self.total_trades)

    @property
    def profit_factor(self) -> float:
        return calculate_profit_factor(self.gross_win, self.gross_loss, self.winning_trades)


@dataclass(frozen=True)
class SymbolRun:
    symbol: str
    bars: int
    trades: tuple[TradeOutcome, ...] = ()
    tally: TradeTally = field(default_factory=TradeTally)
    skipped: Optional[str] = None


@dataclass(frozen=True)
class BacktestReport:
    """The persisted result plus the trade log and per-symbol bookkeeping."""
    result: BacktestResult
    trades: tuple[TradeOutcome, ...]
    processed_symbols: tuple[str, ...]
    skipped_symbols: dict[str, str]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class BacktestEngine:
    """
    Parameters
    ----------
    source : HistoricalDataSource
        Read-only close-price collaborator.
    result_store : ResultStore, optional
        Receives exactly one result per completed run. ``None`` disables
        persistence (dry runs, grid previews).
    min_bars : int
        Symbols with fewer bars are skipped (default 260).
    max_workers : int
        Per-symbol parallelism within one run (default 1, sequential).
    save_trades : bool
        Also persist the trade log next to the result.
    logger : logging.Logger, optional
        Falls back to a module-level logger.
    """

    def __init__(
        self,
        source: HistoricalDataSource,
        result_store: Optional[ResultStore] = None,
        min_bars: int = DEFAULT_MIN_BARS,
        max_workers: int = 1,
        save_trades: bool = False,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.source = source
        self.result_store = result_store
        self.min_bars = min_bars
        self.max_workers = max(1, int(max_workers))
        self.save_trades = save_trades
        self.logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, request: BacktestRequest) -> BacktestReport:
        """Run *request* end to end and persist its result."""
        self.logger.info(
            f"Backtest '{request.config_name}': {len(request.symbols)} symbols, "
            f"{request.timeframe}, {request.period_start} -> {request.period_end}, "
            f"params={request.params.as_dict()}"
        )

        runs = self._run_symbols(request)

        tally = TradeTally()
        trades: list[TradeOutcome] = []
        processed: list[str] = []
        skipped: dict[str, str] = {}
        for run in runs:
            if run.skipped is not None:
                skipped[run.symbol] = run.skipped
                continue
            processed.append(run.symbol)
            tally = tally.merge(run.tally)
            trades.extend(run.trades)

        result = BacktestResult(
            config_name=request.config_name,
            parameters=request.params.as_dict(),
            timeframe=request.timeframe,
            period_start=request.period_start.isoformat(),
            period_end=request.period_end.isoformat(),
            total_trades=tally.total_trades,
            winning_trades=tally.winning_trades,
            losing_trades=tally.losing_trades,
            win_rate=tally.win_rate,
            profit_factor=tally.profit_factor,
        )

        self.logger.info(
            f"Backtest '{request.config_name}' complete — "
            f"{len(processed)}/{len(request.symbols)} symbols processed "
            f"({len(skipped)} skipped), trades={result.total_trades}, "
            f"win_rate={result.win_rate:.2f}%, profit_factor={result.profit_factor:.2f}"
        )

        if self.result_store is not None:
            self._persist(result, trades)

        return BacktestReport(
            result=result,
            trades=tuple(trades),
            processed_symbols=tuple(processed),
            skipped_symbols=skipped,
        )

    def run_symbol(self, symbol: str, request: BacktestRequest) -> SymbolRun:
        """Fetch, annotate, scan and simulate a single symbol."""
        closes = self._fetch_closes(symbol, request)
        try:
            self._require_bars(symbol, closes)
        except DataUnavailable as exc:
            self.logger.warning(f"[{symbol}] Skipped — {exc}")
            return SymbolRun(symbol=symbol, bars=len(closes), skipped=str(exc))

        indicators = compute_indicators(closes)
        signals = generate_signals(symbol, closes, indicators, request.params)
        trades = simulate_trades(signals, closes)

        tally = TradeTally()
        for trade in trades:
            tally.add(trade)

        self.logger.info(
            f"[{symbol}] {len(closes)} bars, {len(signals)} signals, "
            f"{tally.winning_trades} wins / {tally.losing_trades} losses "
            f"({len(trades) - tally.total_trades} unresolved)"
        )
        return SymbolRun(symbol=symbol, bars=len(closes), trades=tuple(trades), tally=tally)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run_symbols(self, request: BacktestRequest) -> list[SymbolRun]:
        symbols = request.symbols
        if self.max_workers == 1 or len(symbols) == 1:
            return [self.run_symbol(sym, request) for sym in symbols]

        results: dict[str, SymbolRun] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(symbols))) as pool:
            future_to_symbol = {pool.submit(self.run_symbol, sym, request): sym for sym in symbols}
            for future in as_completed(future_to_symbol):
                results[future_to_symbol[future]] = future.result()
        return [results[sym] for sym in symbols]

    def _fetch_closes(self, symbol: str, request: BacktestRequest) -> list[float]:
        try:
            df = self.source.fetch_closes(
                symbol, request.timeframe, request.period_start, request.period_end
            )
        except BacktestError:
            raise
        except Exception as exc:
            raise UpstreamFetchFailure(f"history fetch failed: {exc}", symbol) from exc

        if df is None or df.empty:
            return []
        try:
            return df["close"].astype(float).tolist()
        except (KeyError, ValueError, TypeError) as exc:
            raise UpstreamFetchFailure(f"malformed history frame: {exc!r}", symbol) from exc

    def _require_bars(self, symbol: str, closes: Sequence[float]) -> None:
        if len(closes) < self.min_bars:
            raise DataUnavailable(symbol, len(closes), self.min_bars)

    def _persist(self, result: BacktestResult, trades: list[TradeOutcome]) -> None:
        trades_saved = False
        try:
            # Trade log first: a stored result row always has its trades.
            if self.save_trades:
                self.result_store.save_trades(result.config_name, trades)
                trades_saved = True
            self.result_store.save_result(result)
        except Exception as exc:
            self.logger.error(f"Failed to persist backtest '{result.config_name}'", exc_info=True)
            if trades_saved:
                self._discard_trades(result.config_name)
            if isinstance(exc, PersistenceFailure):
                raise
            raise PersistenceFailure(str(exc)) from exc

    def _discard_trades(self, config_name: str) -> None:
        # No trade log without its result row.
        try:
            self.result_store.delete_trades(config_name)
        except Exception:
            self.logger.warning(f"Could not remove trade log of '{config_name}'", exc_info=True)


def run_backtest(
    symbols: Iterable[str],
    timeframe: str,
    period_start,
    period_end,
    params: Optional[SignalParams | Mapping] = None,
    *,
    source: HistoricalDataSource,
    result_store: Optional[ResultStore] = None,
    config_name: Optional[str] = None,
    logger: Optional[logging.Logger] = None,
) -> BacktestResult:
    """Validate the arguments, run one backtest and return its result."""
    request = BacktestRequest.build(
        symbols, timeframe, period_start, period_end, params, config_name
    )
    engine = BacktestEngine(source, result_store=result_store, logger=logger)
    return engine.run(request).result
