"""
Error classification and exception hierarchy.

Provides:
- ErrorCategory enum for classifying errors
- DownloadError hierarchy for typed exceptions
- Classification utilities for error handling
"""

from resumable_fetch.errors.exceptions import (
    # Enums
    ErrorCategory,
    # Base class
    DownloadError,
    # Network errors
    TransientNetworkError,
    PermanentNetworkError,
    ResourceNotFoundError,
    # Local file errors
    OpenFileError,
    TempFileWriteError,
    FinalizationError,
    ConfigurationError,
    # Classification utilities
    classify_exception,
)

__all__ = [
    # Enums
    "ErrorCategory",
    # Base class
    "DownloadError",
    # Network errors
    "TransientNetworkError",
    "PermanentNetworkError",
    "ResourceNotFoundError",
    # Local file errors
    "OpenFileError",
    "TempFileWriteError",
    "FinalizationError",
    "ConfigurationError",
    # Classification utilities
    "classify_exception",
]
