import io
import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S.%f"


class MillisecondFormatter(logging.Formatter):
    """Formatter whose ``%f`` directive renders milliseconds, not microseconds."""

    def formatTime(self, record, datefmt=None):
        ct = datetime.fromtimestamp(record.created)
        ms = f"{int(record.msecs):03d}"
        if datefmt:
            return ct.strftime(datefmt.replace("%f", ms))
        return f"{ct.strftime('%Y-%m-%d %H:%M:%S')}.{ms}"


def _console_stream():
    # Pair names are ASCII but log messages may not be; keep Windows consoles happy.
    if hasattr(sys.stdout, "buffer"):
        return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
    return sys.stdout


def setup_logger(
    name: str,
    log_path: Optional[str | Path] = None,
    level: int = logging.INFO,
) -> logging.Logger:
    """Configure *name* with a console handler and an optional rotating file.

    Repeated calls for the same logger only update the level, so jobs that
    call each other do not stack duplicate handlers.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = MillisecondFormatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    ch = logging.StreamHandler(_console_stream())
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    if log_path is not None:
        log_path = Path(log_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5, encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger


def level_from_name(name: Optional[str], default: int = logging.INFO) -> int:
    """Map a config string such as ``"debug"`` onto a logging level."""
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)
