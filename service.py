#!/usr/bin/env python3
"""
Feed service: the single owner of ticker state.

``FeedService`` wires the fetcher, parser, cache store and selector together
and publishes an immutable ``FeedState`` snapshot after every mutation.
Consumers subscribe for change notifications and read ``service.state``.

Refreshes are single-flight: a refresh requested while another is in flight
waits for and shares that refresh instead of starting a second fetch.
"""

import asyncio
import time
from typing import Callable, List, Optional, Tuple

from article_parser import FeedParser
from cache import CacheStore, decide_fetch_mode, merge, prune
from config import Config, ConfigSnapshot, get_logger
from debug_log import DebugLog
from errors import FetchError, ParseError
from fetcher import FeedFetcher
from models import Article, ArticleCache, FeedState, FeedStatus, FetchMode
from selector import Selection, Selector
from telemetry import trace_span

logger = get_logger("service")

Listener = Callable[[FeedState], None]


class FeedService:
    """Feed cache and selection engine exposed to the display layer."""

    def __init__(self, config: Config, fetcher: Optional[FeedFetcher] = None, store: Optional[CacheStore] = None,
                 selector: Optional[Selector] = None, debug_log: Optional[DebugLog] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self.config = config
        snapshot = config.snapshot()
        self.fetcher = fetcher or FeedFetcher()
        self.store = store or CacheStore(snapshot.cache_path)
        self.selector = selector or Selector()
        self.debug_log = debug_log or DebugLog(snapshot.debug_log_path, snapshot.debug_log)
        self._clock = clock
        self._cache: Optional[ArticleCache] = None
        self._state = FeedState()
        self._listeners: List[Listener] = []
        self._inflight: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # State publication
    # ------------------------------------------------------------------
    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._state.paused

    def subscribe(self, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for state changes; returns an unsubscribe function."""
        self._listeners.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Listener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _publish(self, **changes) -> FeedState:
        self._state = self._state.evolve(**changes)
        for callback in list(self._listeners):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Subscriber {callback!r} failed: {e}")
        return self._state

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def load_cache(self) -> ArticleCache:
        """Load the persisted cache once and publish its articles."""
        if self._cache is None:
            self._cache = self.store.load()
            self._publish(articles=self._cache.articles)
        return self._cache

    def load_offline(self) -> FeedState:
        """Serve the persisted cache as READY without fetching."""
        self.load_cache()
        if self._state.status is FeedStatus.LOADING and self._inflight is None:
            return self._publish(status=FeedStatus.READY)
        return self._state

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------
    async def refresh(self) -> FeedState:
        """Run one fetch, merge, prune and persist cycle (single-flight)."""
        if self._inflight is not None and not self._inflight.done():
            logger.info("Refresh already in flight; waiting for it")
            return await asyncio.shield(self._inflight)
        self._inflight = asyncio.ensure_future(self._refresh())
        try:
            return await asyncio.shield(self._inflight)
        finally:
            if self._inflight is not None and self._inflight.done():
                self._inflight = None

    @trace_span("refresh", tracer_name="service")
    async def _refresh(self) -> FeedState:
        snapshot = self.config.snapshot()
        self.debug_log.configure(snapshot.debug_log_path, snapshot.debug_log)
        cache = self.load_cache()
        self._publish(status=FeedStatus.LOADING)

        mode = decide_fetch_mode(len(cache), snapshot.cache_size, snapshot.incremental_enabled)
        logger.info(f"Refreshing feed: {len(cache)}/{snapshot.cache_size} cached, {mode.value} fetch")
        try:
            fresh, now = await self._fetch_articles(snapshot, mode)
        except (FetchError, ParseError) as e:
            logger.error(f"Feed refresh failed: {e}")
            return self._publish(status=FeedStatus.ERROR, error=str(e) or e.__class__.__name__)
        except Exception as e:
            logger.error(f"Unexpected error during feed refresh: {e.__class__.__name__}: {e}")
            return self._publish(status=FeedStatus.ERROR, error=str(e) or e.__class__.__name__)

        merged = merge(cache, fresh, now) if fresh else cache
        if fresh or len(merged) > snapshot.cache_size or not self.store.exists():
            cache = prune(merged, snapshot.cache_size, now)
            self._cache = cache
            self.store.save(cache)
        self.selector.prune_recently_shown(cache.articles, snapshot, now)
        logger.info(f"Refresh complete: {len(fresh)} fetched, {len(cache)} cached")

        state = self._publish(status=FeedStatus.READY, error="", articles=cache.articles, last_refresh=now)
        self.debug_log.log_refresh(cache.articles, now)
        if state.current is None and cache.articles:
            self.select_next(snapshot)
        return self._state

    async def _fetch_articles(self, snapshot: ConfigSnapshot, mode: FetchMode) -> Tuple[List[Article], int]:
        result = await self.fetcher.fetch(snapshot, mode, self._now())
        now = self._now()
        if result.not_modified:
            return [], now
        parser = FeedParser(skip_unopenable=snapshot.skip_unopenable)
        return parser.parse(result.content, content_type=result.content_type, now=now), now

    # ------------------------------------------------------------------
    # Selection and controls
    # ------------------------------------------------------------------
    def select_next(self, snapshot: Optional[ConfigSnapshot] = None) -> Optional[Selection]:
        """Pick the next article; leaves ``current`` unchanged when the cache is empty."""
        snapshot = snapshot or self.config.snapshot()
        now = self._now()
        selection = self.selector.select(self._state.articles, snapshot, now)
        if selection is None:
            return None
        self._publish(current=selection.article)
        self.debug_log.log_selection(selection, now)
        return selection

    def pause(self) -> None:
        if not self._state.paused:
            self._publish(paused=True)

    def resume(self) -> None:
        if self._state.paused:
            self._publish(paused=False)

    async def open_current(self) -> bool:
        """Open the current article's URL with the configured opener."""
        article = self._state.current
        if article is None or not article.url:
            return False
        command = self.config.snapshot().open_command
        try:
            process = await asyncio.create_subprocess_exec(command, article.url)
            await process.wait()
        except OSError as e:
            logger.error(f"Failed to open URL: {e}")
            return False
        return process.returncode == 0

    def display_text(self) -> str:
        state = self._state
        if state.status is FeedStatus.LOADING and state.current is None:
            return "Loading feed..."
        if state.status is FeedStatus.ERROR and state.current is None:
            return f"Feed error: {state.error}"
        if state.current is None:
            return "No articles"
        return f"{state.current.source} | {state.current.title}"

    async def close(self) -> None:
        await self.fetcher.close()
