"""
Error taxonomy of the backtest engine.

Every error carries the HTTP-style ``status_code`` that the invocation
surface reports alongside ``{"error": message}``.

- ``InvalidParameters``     — rejected before any computation starts.
- ``DataUnavailable``       — not enough bars / ticks for one symbol; the
                              engine and jobs catch it and skip the symbol.
- ``UpstreamFetchFailure``  — the historical-data or tick collaborator
                              failed; fatal for the whole invocation.
- ``PersistenceFailure``    — writing candles or the final result failed.
"""

from typing import Optional


class BacktestError(Exception):
    status_code = 500


class InvalidParameters(BacktestError, ValueError):
    status_code = 400


class DataUnavailable(BacktestError):
    status_code = 422

    def __init__(self, symbol: str, available: int, required: int, what: str = "bars") -> None:
        self.symbol = symbol
        self.available = available
        self.required = required
        self.what = what
        super().__init__(
            f"{symbol}: {available} {what} available, at least {required} required"
        )


class UpstreamFetchFailure(BacktestError):
    status_code = 502

    def __init__(self, message: str, symbol: Optional[str] = None) -> None:
        self.symbol = symbol
        prefix = f"[{symbol}] " if symbol else ""
        super().__init__(f"{prefix}{message}")


class PersistenceFailure(BacktestError):
    status_code = 500
