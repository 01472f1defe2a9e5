"""
Unit tests for logging setup.
"""

import logging
import os
import time

import pytest

from thermologger.utils.logger import cleanup_old_logs, is_silent, setup_logger


@pytest.fixture
def restore_root_logger():
    """setup_logger replaces root handlers; put the originals back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestSetupLogger:
    """Tests for handler installation."""

    def test_creates_log_files(self, tmp_path, restore_root_logger):
        log_file = setup_logger(logging.INFO, log_dir=tmp_path, console=False)

        logging.getLogger("thermologger.test").error("disk on fire")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert log_file == tmp_path / "thermologger.log"
        assert "disk on fire" in log_file.read_text()
        assert "disk on fire" in (tmp_path / "thermologger_errors.log").read_text()

    def test_error_log_only_has_errors(self, tmp_path, restore_root_logger):
        setup_logger(logging.DEBUG, log_dir=tmp_path, console=False)

        logging.getLogger("thermologger.test").info("routine")
        for handler in restore_root_logger.handlers:
            handler.flush()

        assert "routine" not in (tmp_path / "thermologger_errors.log").read_text()

    def test_reinit_replaces_handlers(self, tmp_path, restore_root_logger):
        setup_logger(log_dir=tmp_path, console=True)
        setup_logger(log_dir=tmp_path, console=True)

        assert len(restore_root_logger.handlers) == 3

    def test_silent_disables_console(self, tmp_path, monkeypatch, restore_root_logger):
        monkeypatch.setenv("SILENT", "true")

        setup_logger(log_dir=tmp_path)

        stream_handlers = [
            h for h in restore_root_logger.handlers
            if type(h) is logging.StreamHandler
        ]
        assert stream_handlers == []
        assert len(restore_root_logger.handlers) == 2


class TestIsSilent:
    @pytest.mark.parametrize("value, expected", [("true", True), ("TRUE", True), ("1", False), ("", False)])
    def test_values(self, monkeypatch, value, expected):
        monkeypatch.setenv("SILENT", value)
        assert is_silent() is expected


class TestCleanupOldLogs:
    def test_removes_only_old_files(self, tmp_path):
        old = tmp_path / "thermologger.log.3"
        fresh = tmp_path / "thermologger.log"
        old.write_text("old")
        fresh.write_text("fresh")
        stale = time.time() - 40 * 24 * 60 * 60
        os.utime(old, (stale, stale))

        assert cleanup_old_logs(tmp_path, days=30) == 1
        assert not old.exists()
        assert fresh.exists()
