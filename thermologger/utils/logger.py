"""
Logging configuration for the thermocouple logger.
"""

import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
SILENT_ENV_VAR = "SILENT"


def default_log_dir() -> Path:
    return Path.home() / ".thermologger" / "logs"


def is_silent() -> bool:
    """Console output is suppressed when SILENT=true."""
    return os.environ.get(SILENT_ENV_VAR, "").lower() == "true"


def setup_logger(
    log_level=logging.INFO,
    log_dir: Optional[Path] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    console: Optional[bool] = None,
) -> Path:
    """
    Setup application logger with rotating file handlers.

    Args:
        log_level: Logging level (default: INFO)
        log_dir: Directory for log files (default: ~/.thermologger/logs)
        max_size_mb: Maximum log file size in MB before rotation (default: 10)
        backup_count: Number of backup files to keep (default: 5)
        console: Log to stdout; defaults to on unless SILENT=true

    Returns:
        Path of the main log file
    """
    log_dir = Path(log_dir) if log_dir else default_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    log_file = log_dir / "thermologger.log"
    error_log_file = log_dir / "thermologger_errors.log"

    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Re-initialization replaces previous handlers
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    error_handler = RotatingFileHandler(
        error_log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MB for errors
        backupCount=3,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    root_logger.addHandler(error_handler)

    if console is None:
        console = not is_silent()
    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)

    cleanup_old_logs(log_dir, days=30)

    logger = logging.getLogger(__name__)
    logger.info(f"Logger initialized. Log file: {log_file}")
    return log_file


def cleanup_old_logs(log_dir: Path, days: int = 30) -> int:
    """
    Remove log files older than the given number of days.

    Returns:
        Number of files removed
    """
    cutoff_time = time.time() - (days * 24 * 60 * 60)
    removed = 0

    for log_file in log_dir.glob("*.log*"):
        try:
            if log_file.stat().st_mtime < cutoff_time:
                log_file.unlink()
                removed += 1
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not remove old log {log_file}: {e}")
    return removed
