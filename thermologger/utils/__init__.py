"""
Utils Package

Logging setup and error handling.
"""

from .error_handler import ErrorCategory, ErrorHandler, ErrorInfo, ErrorSeverity
from .logger import setup_logger

__all__ = [
    'ErrorCategory',
    'ErrorHandler',
    'ErrorInfo',
    'ErrorSeverity',
    'setup_logger',
]
