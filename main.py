#!/usr/bin/env python3
"""
Feed Ticker Orchestrator

Command line entry point for the ticker engine:

- ``run``: start the refresh and display-cycle loops and print the ticker
  line whenever it changes. ``SIGUSR1`` toggles pause, ``SIGUSR2`` opens the
  current article.
- ``refresh``: run a single refresh tick (exit status reflects success).
- ``next``: load the cached articles and select one.
- ``status``: print a cache and configuration summary.
"""

import asyncio
import signal
import sys
import time
from datetime import datetime, timezone
from typing import Optional
import argparse

from cache import CacheStore, decide_fetch_mode
from config import config, get_logger
from debug_log import DebugLog
from fetcher import FeedFetcher
from models import CHANNELS, FeedState
from scheduler import TickerScheduler
from selector import Selector
from service import FeedService
from telemetry import init_telemetry, trace_span
from utils import format_age

# Module-specific logger
logger = get_logger("orchestrator")


class TickerOrchestrator:
    """Builds the feed service and runs it in the requested mode."""

    def __init__(self, service: Optional[FeedService] = None) -> None:
        if service is None:
            snapshot = config.snapshot()
            service = FeedService(
                config,
                fetcher=FeedFetcher(),
                store=CacheStore(snapshot.cache_path),
                selector=Selector(),
                debug_log=DebugLog(snapshot.debug_log_path, snapshot.debug_log),
            )
        self.service = service
        self._last_line: Optional[str] = None

    def _print_line(self, state: FeedState) -> None:
        line = self.service.display_text()
        if line != self._last_line:
            self._last_line = line
            print(line, flush=True)

    @trace_span("orchestrator.refresh_once", tracer_name="orchestrator")
    async def refresh_once(self) -> bool:
        """Single refresh tick; True when the feed ended up READY."""
        start_time = time.time()
        try:
            state = await self.service.refresh()
        finally:
            await self.service.close()
        elapsed = time.time() - start_time
        if state.error:
            logger.error(f"Refresh failed after {elapsed:.1f}s: {state.error}")
            return False
        logger.info(f"Refresh completed in {elapsed:.1f}s with {len(state.articles)} cached articles")
        print(self.service.display_text())
        return True

    async def select_once(self, open_link: bool = False) -> bool:
        self.service.load_offline()
        selection = self.service.select_next()
        print(self.service.display_text())
        if selection is None:
            return False
        if selection.article.url:
            print(selection.article.url)
        if open_link:
            return await self.service.open_current()
        return True

    async def run_forever(self) -> None:
        scheduler = TickerScheduler(self.service)
        unsubscribe = self.service.subscribe(self._print_line)
        self._install_signal_handlers(scheduler)
        logger.info("Feed ticker starting")
        try:
            await scheduler.run()
        finally:
            unsubscribe()
            await self.service.close()

    def _install_signal_handlers(self, scheduler: TickerScheduler) -> None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGUSR1, scheduler.toggle_pause)
            loop.add_signal_handler(
                signal.SIGUSR2, lambda: asyncio.ensure_future(self.service.open_current())
            )
        except (NotImplementedError, AttributeError):
            logger.debug("Signal handlers unavailable on this platform")

    def check_status(self) -> dict:
        """Collect cache and configuration details."""
        snapshot = config.snapshot()
        cache = self.service.store.load()
        now = int(time.time())
        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'cache': {
                'path': snapshot.cache_path,
                'articles': len(cache),
                'capacity': snapshot.cache_size,
                'next_fetch_mode': decide_fetch_mode(len(cache), snapshot.cache_size, snapshot.incremental_enabled).value,
                'last_pruned': cache.last_pruned,
                'channels': {
                    c.name: sum(1 for a in cache.articles if c.contains(now - a.published)) for c in CHANNELS
                },
            },
        }
        if cache.articles:
            newest = max(a.published for a in cache.articles)
            oldest = min(a.published for a in cache.articles)
            status['cache']['newest_age'] = format_age(max(0, now - newest))
            status['cache']['oldest_age'] = format_age(max(0, now - oldest))
        status['overall_status'] = 'healthy' if status['config']['feed_url_configured'] else 'issues_detected'
        return status

    def print_status(self, status: dict) -> None:
        cache = status['cache']
        cfg = status['config']
        print("\nFeed Ticker Status")
        print(f"Time: {status['timestamp']}")
        print(f"Overall: {status['overall_status'].upper()}")
        print("\nCache:")
        print(f"   Path: {cache['path']}")
        print(f"   Articles: {cache['articles']}/{cache['capacity']}")
        print(f"   Next fetch: {cache['next_fetch_mode']}")
        if 'newest_age' in cache:
            print(f"   Age span: {cache['newest_age']} - {cache['oldest_age']}")
        for name, count in cache['channels'].items():
            print(f"   {name}: {count}")
        print("\nConfiguration:")
        print(f"   Feed URL configured: {cfg['feed_url_configured']}")
        print(f"   Refresh interval: {cfg['refresh_interval_seconds']}s")
        print(f"   Epsilon: {cfg['epsilon']}")
        print(f"   Display bounds: {cfg['display_bounds'][0]}s - {cfg['display_bounds'][1]}s")
        print(f"   Debug log: {cfg['debug_log']}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Ticker')
    parser.add_argument('mode', choices=['run', 'refresh', 'next', 'status'], nargs='?', default='run',
                        help='Operation mode')
    parser.add_argument('--open', action='store_true',
                        help='With "next": open the selected article')

    args = parser.parse_args()

    init_telemetry("feed-ticker")
    orchestrator = TickerOrchestrator()

    try:
        if args.mode == 'run':
            asyncio.run(orchestrator.run_forever())

        elif args.mode == 'refresh':
            success = asyncio.run(orchestrator.refresh_once())
            sys.exit(0 if success else 1)

        elif args.mode == 'next':
            success = asyncio.run(orchestrator.select_once(open_link=args.open))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            orchestrator.print_status(orchestrator.check_status())

    except KeyboardInterrupt:
        logger.info("Feed ticker shutting down")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
