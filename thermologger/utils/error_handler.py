"""
Centralized Error Handler

Collects error records from the acquisition pipeline, logs them at the
matching level and keeps per-category counters for health reporting.
"""

import logging
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels."""
    DEBUG = auto()      # Diagnostic detail
    INFO = auto()       # Expected condition
    WARNING = auto()    # Recoverable issue
    ERROR = auto()      # Operation failed
    CRITICAL = auto()   # Acquisition cannot continue


class ErrorCategory(Enum):
    """Where an error originated."""
    TRANSPORT = "transport"     # Port open/read/write, utility process
    PROTOCOL = "protocol"       # Malformed frames
    RESOURCE = "resource"       # Buffer limits
    DISCOVERY = "discovery"     # Auto-detection
    CONFIG = "config"           # Configuration loading
    INTERNAL = "internal"       # Programming errors


_LOG_LEVELS = {
    ErrorSeverity.DEBUG: logging.DEBUG,
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class ErrorInfo:
    """Container for error information."""
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    exception: Optional[Exception] = None
    details: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = ""
    recoverable: bool = True
    user_action: str = ""

    def __str__(self):
        prefix = f"[{self.source}] " if self.source else ""
        return f"{prefix}{self.category.value}: {self.message}"


ErrorCallback = Callable[[ErrorInfo], None]


class ErrorHandler:
    """
    Error sink shared by the supervisor and its collaborators.

    Features:
    - Logging at the severity's level
    - Bounded error history
    - Per-category and per-source counters
    - Category callbacks
    """

    def __init__(self, max_history: int = 100):
        self._history: deque = deque(maxlen=max_history)
        self._category_counts: Counter = Counter()
        self._source_counts: Counter = Counter()
        self._callbacks: Dict[ErrorCategory, List[ErrorCallback]] = {}

    def handle(self, error: ErrorInfo) -> None:
        """Record, log and dispatch an error."""
        self._history.append(error)
        self._category_counts[error.category] += 1
        if error.source:
            self._source_counts[(error.source, error.category)] += 1

        self._log_error(error)

        for callback in self._callbacks.get(error.category, []):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def handle_exception(
        self,
        exception: Exception,
        message: str = "",
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        source: str = "",
        recoverable: bool = True,
    ) -> ErrorInfo:
        """
        Handle an exception.

        A `user_action` attribute on the exception is carried over as the
        suggested remediation.
        """
        error = ErrorInfo(
            message=message or str(exception),
            severity=severity,
            category=category,
            exception=exception,
            details="".join(traceback.format_exception(type(exception), exception, exception.__traceback__)),
            source=source or exception.__class__.__name__,
            recoverable=recoverable,
            user_action=getattr(exception, "user_action", "") or "",
        )
        self.handle(error)
        return error

    def _log_error(self, error: ErrorInfo) -> None:
        level = _LOG_LEVELS[error.severity]
        logger.log(level, str(error))
        if error.user_action and level >= logging.WARNING:
            logger.log(level, f"  Suggested action: {error.user_action}")
        if error.details and error.severity is ErrorSeverity.CRITICAL:
            logger.debug(error.details)

    def register_callback(self, category: ErrorCategory, callback: ErrorCallback) -> None:
        """Register a callback for a specific error category."""
        self._callbacks.setdefault(category, []).append(callback)

    def count(self, category: Optional[ErrorCategory] = None, source: Optional[str] = None) -> int:
        """Number of errors handled, optionally filtered."""
        if source is not None:
            return sum(
                n for (src, cat), n in self._source_counts.items()
                if src == source and (category is None or cat == category)
            )
        if category is not None:
            return self._category_counts[category]
        return sum(self._category_counts.values())

    def get_history(self, category: Optional[ErrorCategory] = None) -> List[ErrorInfo]:
        if category is None:
            return list(self._history)
        return [e for e in self._history if e.category == category]

    def get_last_error(self) -> Optional[ErrorInfo]:
        return self._history[-1] if self._history else None

    def clear_history(self) -> None:
        self._history.clear()
        self._category_counts.clear()
        self._source_counts.clear()
