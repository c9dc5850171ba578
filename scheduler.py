#!/usr/bin/env python3
"""
Ticker Scheduler

Drives the feed service with two independent asyncio loops:

- Refresh loop: fixed cadence (``REFRESH_INTERVAL_SECONDS``, minimum 30s).
  Failures are logged and the next tick happens at the same cadence; there is
  no backoff.
- Cycle loop: a single-shot timer re-armed after every firing. Its duration
  comes from the word count of the current title, clamped to the configured
  display bounds.

The cycle loop is a two-state machine. While ``PAUSED`` a firing parks the
timer instead of selecting; ``resume()`` re-arms it with a full fresh duration.
The remainder of an interrupted period is never carried over.

Configuration is re-read from a fresh snapshot on every loop iteration.
"""

import asyncio
from enum import Enum
from typing import Optional

from config import MIN_REFRESH_INTERVAL_SECONDS, ConfigSnapshot, get_logger
from models import Article, FeedState
from service import FeedService
from telemetry import trace_span

# Module-specific logger
logger = get_logger("scheduler")

# Used when nothing is selected yet
DEFAULT_CYCLE_SECONDS = 8.0
# ~250 words per minute, doubled to leave time to glance at the source
READING_WORDS_PER_SECOND = 4.17
SECONDS_PER_WORD = 2.0


class CyclePhase(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"


def compute_display_duration(article: Optional[Article], snapshot: ConfigSnapshot) -> float:
    """Seconds to keep ``article`` on screen.

    ``words * 2 / 4.17`` clamped to ``[display_min, display_max]``; the
    default cycle length when no article is selected.
    """
    if article is None:
        return DEFAULT_CYCLE_SECONDS
    words = len(article.title.split())
    seconds = words * SECONDS_PER_WORD / READING_WORDS_PER_SECOND
    return min(snapshot.display_max, max(snapshot.display_min, seconds))


class TickerScheduler:
    """Runs the refresh and display-cycle loops for a ``FeedService``."""

    def __init__(self, service: FeedService, config=None):
        self.service = service
        self.config = config or service.config
        # Set when the service leaves the paused state; re-arms a sleeping or parked timer
        self._rearm = asyncio.Event()
        self._was_paused = service.paused
        self._tasks: list = []

    @property
    def phase(self) -> CyclePhase:
        return CyclePhase.PAUSED if self.service.paused else CyclePhase.RUNNING

    def pause(self) -> None:
        """Stop selecting at the next firing; the in-flight period is not preserved."""
        if self.phase is CyclePhase.RUNNING:
            self.service.pause()
            logger.info("Cycle paused")

    def resume(self) -> None:
        """Restart the cycle timer with a full fresh duration."""
        if self.phase is CyclePhase.PAUSED:
            self.service.resume()

    def _on_state(self, state: FeedState) -> None:
        if self._was_paused and not state.paused:
            logger.info("Cycle resumed")
            self._rearm.set()
        self._was_paused = state.paused

    def toggle_pause(self) -> CyclePhase:
        if self.phase is CyclePhase.PAUSED:
            self.resume()
        else:
            self.pause()
        return self.phase

    # ------------------------------------------------------------------
    # Refresh loop
    # ------------------------------------------------------------------
    @trace_span("scheduler.refresh_tick", tracer_name="scheduler")
    async def refresh_tick(self) -> bool:
        """Run one refresh; returns True when the feed ended up READY."""
        try:
            state = await self.service.refresh()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error during refresh: {e}")
            return False
        return state.error == ""

    async def run_refresh_loop(self) -> None:
        logger.info("Starting refresh loop")
        while True:
            snapshot = self.config.snapshot()
            await self.refresh_tick()
            interval = max(MIN_REFRESH_INTERVAL_SECONDS, snapshot.refresh_interval)
            logger.debug(f"Next refresh in {interval}s")
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Cycle loop
    # ------------------------------------------------------------------
    def cycle_tick(self, snapshot: ConfigSnapshot) -> float:
        """Handle one timer firing while running; returns the next duration."""
        if self.service.state.articles:
            self.service.select_next(snapshot)
        return compute_display_duration(self.service.state.current, snapshot)

    async def _wait(self, duration: float) -> bool:
        """Sleep ``duration`` seconds; False if a resume re-armed the timer first."""
        self._rearm.clear()
        try:
            await asyncio.wait_for(self._rearm.wait(), timeout=duration)
        except asyncio.TimeoutError:
            return True
        return False

    async def run_cycle_loop(self) -> None:
        logger.info("Starting display cycle loop")
        self._was_paused = self.service.paused
        unsubscribe = self.service.subscribe(self._on_state)
        try:
            await self._cycle(compute_display_duration(self.service.state.current, self.config.snapshot()))
        finally:
            unsubscribe()

    async def _cycle(self, duration: float) -> None:
        while True:
            fired = await self._wait(duration)
            snapshot = self.config.snapshot()
            if not fired:
                duration = compute_display_duration(self.service.state.current, snapshot)
                continue
            if self.phase is CyclePhase.PAUSED:
                logger.debug("Cycle timer parked while paused")
                self._rearm.clear()
                await self._rearm.wait()
                duration = compute_display_duration(self.service.state.current, self.config.snapshot())
                continue
            duration = self.cycle_tick(snapshot)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def run(self) -> None:
        """Run both loops until cancelled."""
        self._tasks = [
            asyncio.create_task(self.run_refresh_loop(), name="refresh-loop"),
            asyncio.create_task(self.run_cycle_loop(), name="cycle-loop"),
        ]
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled - shutting down")
            raise
        finally:
            await self.stop()

    async def stop(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
