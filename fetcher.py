#!/usr/bin/env python3
"""
Feed fetcher.

This module retrieves the feed payload over HTTP. Before fetching it can ask
an upstream aggregator to "actualize" (refresh) a list of its feeds, one
request at a time. Requests carry the Google Reader style window parameters
(``n``, ``ot``, ``output=json``) sized by the fetch mode, an optional
``GoogleLogin`` authorization header, and conditional headers from the last
successful response.
"""

import time
from asyncio import TimeoutError, sleep
from dataclasses import dataclass
from email.utils import parsedate_to_datetime, format_datetime
from datetime import timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from aiohttp import ClientSession, ClientError, ClientTimeout

from cache import fetch_window
from config import ConfigSnapshot, get_logger
from errors import ConfigurationError, FetchError
from models import FetchMode
from telemetry import trace_span

logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200
HTTP_NOT_MODIFIED = 304


@dataclass(frozen=True)
class FetchResult:
    """Outcome of a successful fetch; ``content`` is None on 304 Not Modified."""

    mode: FetchMode
    url: str
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    not_modified: bool = False


def has_header_injection(value: str) -> bool:
    return "\r" in value or "\n" in value


class FeedFetcher:
    """Fetch the configured feed with aiohttp."""

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None
        # feed url -> (etag, last_modified) of the last 200 response
        self._validators: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
        self._sleep = sleep

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        logger.debug("FeedFetcher closed")

    def build_request_url(self, snapshot: ConfigSnapshot, mode: FetchMode, now: Optional[int] = None) -> str:
        """Add the time window and item count for ``mode`` to the feed URL."""
        if not snapshot.feed_url:
            raise ConfigurationError("No feed URL configured")
        if now is None:
            now = int(time.time())
        hours, max_items = fetch_window(snapshot, mode)
        return self._with_query(snapshot.feed_url, {
            "n": str(max_items),
            "ot": str(now - hours * 3600),
            "output": "json",
        })

    def _with_query(self, url: str, params: Dict[str, str]) -> str:
        parsed = urlparse(url)
        query = dict(parse_qsl(parsed.query, keep_blank_values=True))
        query.update(params)
        return urlunparse(parsed._replace(query=urlencode(query)))

    def build_headers(self, snapshot: ConfigSnapshot) -> Dict[str, str]:
        """Base request headers; a token containing CR/LF is dropped with a warning."""
        headers = {"User-Agent": snapshot.user_agent}
        token = snapshot.auth_token
        if token:
            if has_header_injection(token):
                logger.warning("Auth token contains CR/LF characters; omitting Authorization header")
            else:
                headers["Authorization"] = f"GoogleLogin auth={token}"
        return headers

    def _conditional_headers(self, feed_url: str) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        etag, last_modified = self._validators.get(feed_url, (None, None))
        if etag:
            # Quote unquoted ETags
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers["If-None-Match"] = etag
        if last_modified:
            normalized = self._normalize_http_date(last_modified)
            if normalized:
                headers["If-Modified-Since"] = normalized
        return headers

    def _normalize_http_date(self, date_value: Optional[str]) -> Optional[str]:
        """Normalize HTTP date strings to RFC 7231 format (GMT)."""
        if not date_value:
            return None
        try:
            dt = parsedate_to_datetime(date_value)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return format_datetime(dt.astimezone(timezone.utc), usegmt=True)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
            return None

    @trace_span(
        "actualize_feeds",
        tracer_name="fetcher",
        attr_from_args=lambda self, snapshot: {"actualize.count": len(snapshot.actualize_feed_ids)},
    )
    async def actualize(self, snapshot: ConfigSnapshot) -> int:
        """Trigger upstream refreshes one identifier at a time.

        Individual failures are logged and skipped. Returns the number of
        successful triggers; waits the settle delay once the batch is done.
        """
        if not snapshot.actualize_url or not snapshot.actualize_feed_ids:
            return 0

        session = await self._get_session()
        headers = self.build_headers(snapshot)
        timeout = ClientTimeout(total=snapshot.actualize_timeout)
        succeeded = 0
        # Sequential: some upstreams require ordered processing
        for feed_id in snapshot.actualize_feed_ids:
            url = self._with_query(snapshot.actualize_url, {"id": feed_id})
            try:
                async with session.get(url, headers=headers, timeout=timeout) as response:
                    if response.status < 400:
                        succeeded += 1
                    else:
                        logger.warning(f"Actualize for feed {feed_id} returned HTTP {response.status}")
            except TimeoutError:
                logger.warning(f"Actualize for feed {feed_id} timed out after {snapshot.actualize_timeout}s")
            except ClientError as e:
                logger.warning(f"Actualize for feed {feed_id} failed: {self._format_client_error(e)}")

        logger.info(f"Actualized {succeeded}/{len(snapshot.actualize_feed_ids)} upstream feeds")
        if snapshot.actualize_settle_seconds > 0:
            await self._sleep(snapshot.actualize_settle_seconds)
        return succeeded

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, snapshot, mode, now=None: {"fetch.mode": mode.value},
    )
    async def fetch(self, snapshot: ConfigSnapshot, mode: FetchMode, now: Optional[int] = None) -> FetchResult:
        """Actualize (if configured) and fetch the feed.

        Raises:
            ConfigurationError: if no valid feed URL is configured.
            FetchError: on network failure, timeout or a non-success status.
        """
        url = self.build_request_url(snapshot, mode, now)
        await self.actualize(snapshot)

        session = await self._get_session()
        headers = self.build_headers(snapshot)
        headers.update(self._conditional_headers(snapshot.feed_url))
        logger.info(f"Fetching feed ({mode.value} mode)")
        try:
            async with session.get(url, headers=headers, timeout=ClientTimeout(total=snapshot.http_timeout)) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.info("Feed not modified since last fetch")
                    return FetchResult(mode=mode, url=url, not_modified=True)
                if response.status != HTTP_OK:
                    raise FetchError(f"HTTP {response.status}", details={"status": response.status})

                content = await response.read()
                self._store_validators(snapshot.feed_url, response.headers.get("ETag"), response.headers.get("Last-Modified"))
                return FetchResult(
                    mode=mode,
                    url=url,
                    content=content,
                    content_type=response.headers.get("Content-Type"),
                )
        except TimeoutError as e:
            raise FetchError(f"Timed out after {snapshot.http_timeout}s") from e
        except ClientError as e:
            raise FetchError(f"Network error: {self._format_client_error(e)}") from e

    def _store_validators(self, feed_url: str, etag: Optional[str], last_modified: Optional[str]) -> None:
        if etag or last_modified:
            self._validators[feed_url] = (etag, last_modified)
            logger.debug(f"Stored cache validators (etag={etag}, last_modified={last_modified})")

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
