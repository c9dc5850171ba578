#!/usr/bin/env python3
"""
Feed payload parser.

Turns a raw feed payload into canonical ``Article`` records. Two payload
shapes are understood:

- RSS/Atom XML, parsed with feedparser (CDATA sections and HTML entities are
  handled there);
- Google Reader style JSON (``{"items": [...]}``) as served by FreshRSS and
  similar aggregators.

Parsing is tolerant: an entry missing its title or link is dropped, a bad
publish date falls back to "now", and a link with a disallowed scheme becomes
an empty URL while the article itself is kept.
"""

import calendar
import html
import json
import math
import re
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import feedparser
from bs4 import BeautifulSoup

from config import get_logger
from errors import ParseError
from models import Article
from telemetry import trace_span
from utils import exponential_decay, sanitize_url

logger = get_logger("parser")

# Recency half-life used for article weights (3 hours)
HALF_LIFE = 3 * 3600

HN_ITEM_PATTERN = re.compile(r"https://news\.ycombinator\.com/item\?id=\d+")


def compute_weight(age_seconds: float, half_life: float = HALF_LIFE) -> float:
    """Recency weight ``exp(-ln2 * age / half_life)``; 1.0 at age 0, 0.5 at one half-life."""
    return exponential_decay(age_seconds, half_life)


class FeedParser:
    """Parse feed payloads into ``Article`` lists."""

    def __init__(self, half_life: float = HALF_LIFE, skip_unopenable: bool = False) -> None:
        self.half_life = half_life
        self.skip_unopenable = skip_unopenable

    @trace_span(
        "parse_feed",
        tracer_name="parser",
        attr_from_args=lambda self, payload, content_type=None, now=None: {
            "feed.payload.bytes": len(payload) if payload else 0,
            "feed.content_type": content_type or "",
        },
    )
    def parse(self, payload, content_type: Optional[str] = None, now: Optional[int] = None) -> List[Article]:
        """Parse a payload (bytes or str) into articles.

        Raises:
            ParseError: if the payload as a whole cannot be interpreted.
        """
        if now is None:
            now = int(time.time())
        if not payload:
            return []

        text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else str(payload)
        if self._looks_like_json(text, content_type):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise ParseError(f"Invalid JSON feed payload: {e}") from e
            return self.parse_json(data, now)
        return self.parse_xml(payload if isinstance(payload, bytes) else text.encode("utf-8"), now)

    def _looks_like_json(self, text: str, content_type: Optional[str]) -> bool:
        if content_type and "json" in content_type.lower():
            return True
        return text.lstrip()[:1] in ("{", "[")

    # ------------------------------------------------------------------
    # Google Reader JSON
    # ------------------------------------------------------------------
    def parse_json(self, data: Any, now: int) -> List[Article]:
        if isinstance(data, dict):
            items = data.get("items") or []
        elif isinstance(data, list):
            items = data
        else:
            raise ParseError("JSON feed payload must be an object or a list")
        if not isinstance(items, list):
            raise ParseError("JSON feed 'items' must be a list")

        articles = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                article = self._article_from_json(item, now)
            except Exception as e:
                logger.debug(f"Dropping malformed JSON item {item.get('id')!r}: {e}")
                continue
            if article is not None:
                articles.append(article)
        self._log_result("json", len(items), len(articles))
        return articles

    def _article_from_json(self, item: Dict[str, Any], now: int) -> Optional[Article]:
        title = self._clean_text(item.get("title"))
        origin = item.get("origin") if isinstance(item.get("origin"), dict) else {}
        source = self._clean_text(origin.get("title")) or "Feed"

        summary = item.get("summary") if isinstance(item.get("summary"), dict) else {}
        raw_link = self._hn_comment_link(source, summary.get("content")) or \
            self._first_href(item.get("alternate")) or self._first_href(item.get("canonical"))

        published = self._to_timestamp(item.get("published"))
        return self._build_article(item.get("id"), title, source, raw_link, published, now)

    def _first_href(self, links: Any) -> str:
        if isinstance(links, list):
            for link in links:
                if isinstance(link, dict) and link.get("href"):
                    return str(link["href"])
        return ""

    # ------------------------------------------------------------------
    # RSS / Atom
    # ------------------------------------------------------------------
    def parse_xml(self, payload, now: int) -> List[Article]:
        feed = feedparser.parse(payload, sanitize_html=True)

        if feed.bozo and getattr(feed, "bozo_exception", None) is not None:
            if not feed.entries:
                raise ParseError(f"Unparseable feed payload: {feed.bozo_exception}")
            logger.warning(f"Feed parsing warning (continuing with {len(feed.entries)} entries): {feed.bozo_exception}")

        feed_title = self._clean_text(feed.feed.get("title")) if "feed" in feed else ""
        articles = []
        for entry in feed.entries:
            try:
                article = self._article_from_entry(entry, feed_title, now)
            except Exception as e:
                logger.debug(f"Dropping malformed feed entry {entry.get('id')!r}: {e}")
                continue
            if article is not None:
                articles.append(article)
        self._log_result(feed.get("version") or "xml", len(feed.entries), len(articles))
        return articles

    def _article_from_entry(self, entry, feed_title: str, now: int) -> Optional[Article]:
        title = self._clean_text(entry.get("title"))
        link = (entry.get("link") or "").strip()
        source = self._entry_source(entry, feed_title, link)
        raw_link = self._hn_comment_link(source, entry.get("summary")) or link
        published = self.parse_entry_date(entry)
        return self._build_article(entry.get("id"), title, source, raw_link, published, now)

    def _entry_source(self, entry, feed_title: str, link: str) -> str:
        src = entry.get("source") or {}
        if isinstance(src, dict):
            title = self._clean_text(src.get("title"))
            if title:
                return title
        if feed_title:
            return feed_title
        try:
            host = urlparse(link).netloc
        except ValueError:
            host = ""
        return host or "Feed"

    def parse_entry_date(self, entry) -> Optional[int]:
        """Return the entry's publish timestamp, or None if no date can be parsed."""
        for field in ("published_parsed", "updated_parsed", "created_parsed"):
            value = entry.get(field)
            if isinstance(value, time.struct_time):
                try:
                    return calendar.timegm(value)
                except (OverflowError, ValueError):
                    continue
        for field in ("published", "updated", "created", "pubDate", "date"):
            timestamp = self._to_timestamp(entry.get(field))
            if timestamp is not None:
                return timestamp
        return None

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------
    def _build_article(self, raw_id: Any, title: str, source: str, raw_link: str, published: Optional[int], now: int) -> Optional[Article]:
        if not title or not raw_link:
            return None

        url = sanitize_url(raw_link)
        if not url and self.skip_unopenable:
            logger.debug(f"Dropping article with unopenable link: {title[:60]}")
            return None

        if published is None:
            published = now
        article_id = str(raw_id).strip() if raw_id else ""
        return Article(
            id=article_id or raw_link.strip(),
            title=title,
            source=source,
            url=url,
            published=published,
            weight=compute_weight(now - published, self.half_life),
        )

    def _hn_comment_link(self, source: str, summary_html: Optional[str]) -> str:
        """Prefer the Hacker News discussion page over the submitted link."""
        if "Hacker News" not in (source or "") or not summary_html:
            return ""
        soup = BeautifulSoup(summary_html, "html.parser")
        for anchor in soup.find_all("a", href=True):
            if HN_ITEM_PATTERN.fullmatch(anchor["href"].strip()):
                return anchor["href"].strip()
        match = HN_ITEM_PATTERN.search(soup.get_text(" "))
        return match.group(0) if match else ""

    def _clean_text(self, value: Any) -> str:
        if not value:
            return ""
        return " ".join(html.unescape(str(value)).split())

    def _to_timestamp(self, value: Any) -> Optional[int]:
        """Convert assorted date representations into a Unix timestamp."""
        if value in (None, ""):
            return None
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            if not math.isfinite(value) or value <= 0:
                return None
            return int(value)
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.isdigit():
                return int(stripped) or None
            return self._parse_date_string(stripped)
        return None

    def _parse_date_string(self, date_str: str) -> Optional[int]:
        try:
            time_struct = feedparser._parse_date(date_str)
            if time_struct:
                return calendar.timegm(time_struct)
        except (ValueError, TypeError, AttributeError, OverflowError):
            pass
        try:
            dt = parsedate_to_datetime(date_str)
            if dt:
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
        except (TypeError, ValueError, OverflowError):
            pass
        for fmt in ("%d %b %Y %H:%M:%S %z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d"):
            try:
                dt = datetime.strptime(date_str, fmt)
                if dt.tzinfo is None:
                    dt = dt.replace(tzinfo=timezone.utc)
                return int(dt.timestamp())
            except (ValueError, TypeError):
                continue
        return None

    def _log_result(self, kind: str, total: int, kept: int) -> None:
        dropped = total - kept
        if dropped:
            logger.info(f"Parsed {kept} articles from {kind} payload ({dropped} malformed entries dropped)")
        else:
            logger.debug(f"Parsed {kept} articles from {kind} payload")


def parse_payload(payload, content_type: Optional[str] = None, now: Optional[int] = None, skip_unopenable: bool = False) -> List[Article]:
    """Convenience wrapper around ``FeedParser.parse``."""
    return FeedParser(skip_unopenable=skip_unopenable).parse(payload, content_type=content_type, now=now)
