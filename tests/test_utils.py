import math

import pytest

from utils import exponential_decay, format_age, sanitize_url, truncate_string, validate_url


def test_exponential_decay_half_life():
    assert exponential_decay(0, 100) == 1.0
    assert exponential_decay(100, 100) == pytest.approx(0.5)
    assert exponential_decay(math.inf, 100) == 0.0


def test_exponential_decay_rejects_bad_half_life():
    with pytest.raises(ValueError):
        exponential_decay(10, 0)


@pytest.mark.parametrize(
    "url, expected",
    [
        ("https://example.com/a", True),
        ("http://example.com", True),
        ("javascript:alert(1)", False),
        ("file:///etc/passwd", False),
        ("ftp://example.com/x", False),
        ("https://", False),
        ("", False),
    ],
)
def test_validate_url(url, expected):
    assert validate_url(url) is expected


def test_sanitize_url_trims_or_blanks():
    assert sanitize_url("  https://example.com/a  ") == "https://example.com/a"
    assert sanitize_url("data:text/html,hi") == ""


def test_format_age():
    assert format_age(0) == "0s"
    assert format_age(3725) == "1h 2m"
    assert format_age(2 * 86400 + 5 * 3600 + 59) == "2d 5h"
    assert format_age(70) == "1m 10s"
    assert format_age(-5) == "0s"


def test_truncate_string():
    assert truncate_string("short", 10) == "short"
    assert truncate_string("a" * 20, 10) == "aaaaaaa..."
    assert truncate_string("breaking news from the city hall", 20) == "breaking news..."
