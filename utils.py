#!/usr/bin/env python3
"""
Utility functions for the feed ticker.

This module contains shared helpers used by the parser, selector and debug
log: URL scheme validation, exponential decay, and small formatting helpers.
"""

import math
from urllib.parse import urlparse

# Import config to use unified logging
from config import get_logger

# Module-specific logger
logger = get_logger("utils")

LN2 = math.log(2)

ALLOWED_URL_SCHEMES = ("http", "https")


def exponential_decay(elapsed: float, half_life: float) -> float:
    """Return ``exp(-ln2 * elapsed / half_life)``.

    Negative elapsed values (timestamps from the future) are clamped to zero so
    the result never exceeds 1.0.
    """
    if half_life <= 0:
        raise ValueError("half_life must be positive")
    if elapsed == math.inf:
        return 0.0
    return math.exp(-LN2 * max(0.0, elapsed) / half_life)


def validate_url(url: str) -> bool:
    """Validate if a string is an http(s) URL with a host.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL uses an allowed scheme and has a network location
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme.lower() in ALLOWED_URL_SCHEMES and bool(parsed.netloc)


def sanitize_url(url: str) -> str:
    """Return the trimmed URL if it passes the scheme allow-list, else ''."""
    if not url:
        return ""
    trimmed = str(url).strip()
    if validate_url(trimmed):
        return trimmed
    logger.warning(f"Invalid URL scheme rejected: {trimmed[:120]}")
    return ""



_AGE_UNITS = (("d", 86400), ("h", 3600), ("m", 60), ("s", 1))


def format_age(seconds: float) -> str:
    """Render an age with its two most significant units ("2d 5h", "3m 10s")."""
    remaining = int(max(0, seconds))
    parts = []
    for suffix, size in _AGE_UNITS:
        value, remaining = divmod(remaining, size)
        if value or parts:
            parts.append(f"{value}{suffix}")
        if len(parts) == 2:
            break
    return " ".join(parts) or "0s"


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Shorten ``text`` to ``max_length`` characters, preferring a word boundary."""
    if not text or len(text) <= max_length:
        return text
    if len(suffix) >= max_length:
        return text[:max_length]
    cut = text[:max_length - len(suffix)]
    # Only back off to a space if that keeps most of the snippet
    space = cut.rfind(" ")
    if space > len(cut) // 2:
        cut = cut[:space]
    return cut.rstrip() + suffix
