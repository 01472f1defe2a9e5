"""
Unit tests for the centralized error handler.
"""

import logging
from unittest.mock import MagicMock

from thermologger.communication.transport_base import DeviceBusyError
from thermologger.utils.error_handler import (
    ErrorCategory,
    ErrorHandler,
    ErrorInfo,
    ErrorSeverity,
)


class TestErrorInfo:
    def test_str_with_source(self):
        error = ErrorInfo("Invalid data", category=ErrorCategory.PROTOCOL, source="primary")
        assert str(error) == "[primary] protocol: Invalid data"

    def test_str_without_source(self):
        assert str(ErrorInfo("boom")) == "internal: boom"


class TestErrorHandler:
    """Tests for recording, counting and dispatch."""

    def test_handle_records_history(self):
        handler = ErrorHandler()
        error = ErrorInfo("first", category=ErrorCategory.TRANSPORT)

        handler.handle(error)

        assert handler.get_history() == [error]
        assert handler.get_last_error() is error

    def test_history_bounded(self):
        handler = ErrorHandler(max_history=3)
        for i in range(5):
            handler.handle(ErrorInfo(f"error {i}"))

        assert [e.message for e in handler.get_history()] == ["error 2", "error 3", "error 4"]
        assert handler.count() == 5

    def test_counts_by_category_and_source(self):
        handler = ErrorHandler()
        handler.handle(ErrorInfo("a", category=ErrorCategory.PROTOCOL, source="primary"))
        handler.handle(ErrorInfo("b", category=ErrorCategory.PROTOCOL, source="primary"))
        handler.handle(ErrorInfo("c", category=ErrorCategory.PROTOCOL, source="datalogger2"))
        handler.handle(ErrorInfo("d", category=ErrorCategory.TRANSPORT, source="primary"))

        assert handler.count(ErrorCategory.PROTOCOL) == 3
        assert handler.count(ErrorCategory.PROTOCOL, source="primary") == 2
        assert handler.count(source="primary") == 3
        assert handler.count(ErrorCategory.CONFIG) == 0

    def test_history_filter(self):
        handler = ErrorHandler()
        handler.handle(ErrorInfo("a", category=ErrorCategory.PROTOCOL))
        handler.handle(ErrorInfo("b", category=ErrorCategory.TRANSPORT))
        assert [e.message for e in handler.get_history(ErrorCategory.TRANSPORT)] == ["b"]

    def test_clear_history(self):
        handler = ErrorHandler()
        handler.handle(ErrorInfo("a", source="x"))
        handler.clear_history()
        assert handler.get_last_error() is None
        assert handler.count() == 0
        assert handler.count(source="x") == 0

    def test_callbacks_by_category(self):
        handler = ErrorHandler()
        transport = MagicMock()
        protocol = MagicMock()
        handler.register_callback(ErrorCategory.TRANSPORT, transport)
        handler.register_callback(ErrorCategory.PROTOCOL, protocol)

        error = ErrorInfo("lost", category=ErrorCategory.TRANSPORT)
        handler.handle(error)

        transport.assert_called_once_with(error)
        protocol.assert_not_called()

    def test_failing_callback_does_not_propagate(self, caplog):
        handler = ErrorHandler()
        handler.register_callback(ErrorCategory.INTERNAL, MagicMock(side_effect=RuntimeError("oops")))

        handler.handle(ErrorInfo("boom"))

        assert "Error callback failed: oops" in caplog.text

    def test_logged_at_severity(self, caplog):
        handler = ErrorHandler()
        with caplog.at_level(logging.DEBUG, logger="thermologger.utils.error_handler"):
            handler.handle(ErrorInfo("quiet", severity=ErrorSeverity.DEBUG))
            handler.handle(ErrorInfo("loud", severity=ErrorSeverity.CRITICAL))

        levels = {record.getMessage(): record.levelno for record in caplog.records}
        assert levels["internal: quiet"] == logging.DEBUG
        assert levels["internal: loud"] == logging.CRITICAL


class TestHandleException:
    """Tests for wrapping exceptions."""

    def test_carries_user_action(self):
        handler = ErrorHandler()
        exception = DeviceBusyError("Port is in use: /dev/ttyUSB0", path="/dev/ttyUSB0")

        error = handler.handle_exception(
            exception,
            category=ErrorCategory.TRANSPORT,
            severity=ErrorSeverity.WARNING,
            source="primary",
        )

        assert error.message == "Port is in use: /dev/ttyUSB0"
        assert error.user_action == "Close other programs using the serial port"
        assert error.exception is exception
        assert handler.count(ErrorCategory.TRANSPORT, source="primary") == 1

    def test_defaults(self):
        handler = ErrorHandler()
        try:
            raise ValueError("bad value")
        except ValueError as e:
            error = handler.handle_exception(e, "Could not parse")

        assert error.message == "Could not parse"
        assert error.source == "ValueError"
        assert error.user_action == ""
        assert "ValueError: bad value" in error.details

    def test_suggested_action_logged(self, caplog):
        handler = ErrorHandler()
        with caplog.at_level(logging.WARNING):
            handler.handle_exception(
                DeviceBusyError("busy"), severity=ErrorSeverity.WARNING, category=ErrorCategory.TRANSPORT
            )
        assert "Suggested action: Close other programs using the serial port" in caplog.text
