#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Dict, Any, Optional


class TickerError(Exception):
    """Base class for feed ticker errors.

    Attributes:
        details: Optional payload for diagnostics (status codes, urls, ...).
    """

    def __init__(self, message: str = "Feed ticker error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class FetchError(TickerError):
    """Raised when the feed cannot be retrieved (network, timeout, HTTP status)."""


class ConfigurationError(FetchError):
    """Raised when the feed URL is missing or invalid."""


class ParseError(TickerError):
    """Raised when a whole feed payload is unusable.

    Individual malformed entries never raise; they are dropped by the parser.
    """


class PersistenceError(TickerError):
    """Raised by low-level cache file reads/writes; always caught by the store."""


__all__ = ["TickerError", "FetchError", "ConfigurationError", "ParseError", "PersistenceError"]
