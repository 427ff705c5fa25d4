"""Tests for logging and configuration helpers."""

import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from fxbacktest.utils.config import get_data_path, load_config, read_secret, resolve_path
from fxbacktest.utils.logger import level_from_name, setup_logger


class TestConfig:

    def test_load_config(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"symbols": ["EURUSD"]}))
        assert load_config(str(path)) == {"symbols": ["EURUSD"]}

    def test_load_config_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "missing.json"))

    def test_resolve_path(self, tmp_path):
        assert resolve_path("data/candles", tmp_path) == tmp_path / "data" / "candles"
        assert resolve_path(tmp_path / "abs", tmp_path / "other") == tmp_path / "abs"

    def test_get_data_path(self, tmp_path):
        config = {"data_paths": {"log_path": "logs"}}
        assert get_data_path(config, "log_path", tmp_path) == tmp_path / "logs"
        with pytest.raises(KeyError):
            get_data_path(config, "candle_path", tmp_path)

    def test_read_secret(self, monkeypatch):
        monkeypatch.setenv("FX_TEST_KEY", "  abc  ")
        monkeypatch.setenv("FX_EMPTY_KEY", " ")
        assert read_secret("FX_TEST_KEY") == "abc"
        assert read_secret("FX_EMPTY_KEY") is None
        assert read_secret(None) is None


class TestLogger:

    def test_file_and_console_handlers(self, tmp_path):
        log_file = tmp_path / "logs" / "job.log"
        logger = setup_logger("fxbacktest.test.file", log_file, level=logging.DEBUG)

        logger.info("[EURUSD] hello")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert any(isinstance(h, RotatingFileHandler) for h in logger.handlers)
        assert "[EURUSD] hello" in log_file.read_text(encoding="utf-8")

    def test_repeated_setup_does_not_duplicate_handlers(self, tmp_path):
        first = setup_logger("fxbacktest.test.repeat", tmp_path / "a.log")
        count = len(first.handlers)
        second = setup_logger("fxbacktest.test.repeat", tmp_path / "a.log", level=logging.WARNING)

        assert second is first
        assert len(second.handlers) == count
        assert second.level == logging.WARNING

    def test_console_only(self):
        logger = setup_logger("fxbacktest.test.console")
        assert not any(isinstance(h, RotatingFileHandler) for h in logger.handlers)

    def test_level_from_name(self):
        assert level_from_name("debug") == logging.DEBUG
        assert level_from_name(None) == logging.INFO
        assert level_from_name("nonsense", logging.ERROR) == logging.ERROR
