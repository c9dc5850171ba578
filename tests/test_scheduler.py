import asyncio
import random

import pytest

from cache import CacheStore
from config import ConfigSnapshot
from debug_log import DebugLog
from models import ArticleCache, CachedArticle, FeedState, FeedStatus
from scheduler import DEFAULT_CYCLE_SECONDS, CyclePhase, TickerScheduler, compute_display_duration
from selector import Selector
from service import FeedService

NOW = 1_700_000_000


def _article(title: str, article_id: str = "a") -> CachedArticle:
    return CachedArticle(
        id=article_id,
        title=title,
        source="Example",
        url="https://example.com/",
        published=NOW,
        weight=1.0,
        first_seen=NOW,
    )


class StubConfig:
    def __init__(self, snapshot: ConfigSnapshot):
        self.current = snapshot

    def snapshot(self) -> ConfigSnapshot:
        return self.current


class FakeService:
    """Minimal service double tracking selections and refreshes."""

    def __init__(self, config, articles=(), refresh_error=None):
        self.config = config
        self.state = FeedState(status=FeedStatus.READY, articles=tuple(articles))
        self.selections = 0
        self.refreshes = 0
        self.refresh_error = refresh_error
        self.rng = random.Random(0)
        self.listeners = []

    @property
    def paused(self):
        return self.state.paused

    def subscribe(self, callback):
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    def _set(self, **changes):
        self.state = self.state.evolve(**changes)
        for callback in list(self.listeners):
            callback(self.state)

    def pause(self):
        self._set(paused=True)

    def resume(self):
        self._set(paused=False)

    def select_next(self, snapshot=None):
        self.selections += 1
        self._set(current=self.rng.choice(self.state.articles))

    async def refresh(self):
        self.refreshes += 1
        if self.refresh_error:
            raise self.refresh_error
        return self.state


def test_duration_scales_with_word_count():
    snapshot = ConfigSnapshot(display_min=6, display_max=15)
    title = " ".join(["word"] * 20)

    assert compute_display_duration(_article(title), snapshot) == pytest.approx(20 * 2 / 4.17)


def test_duration_is_clamped():
    snapshot = ConfigSnapshot(display_min=6, display_max=15)

    assert compute_display_duration(_article("Short"), snapshot) == 6
    assert compute_display_duration(_article(" ".join(["w"] * 100)), snapshot) == 15


def test_duration_without_article_uses_default():
    assert compute_display_duration(None, ConfigSnapshot()) == DEFAULT_CYCLE_SECONDS


def test_pause_and_resume_toggle_phase():
    config = StubConfig(ConfigSnapshot())
    scheduler = TickerScheduler(FakeService(config), config)

    assert scheduler.phase is CyclePhase.RUNNING
    assert scheduler.toggle_pause() is CyclePhase.PAUSED
    assert scheduler.toggle_pause() is CyclePhase.RUNNING


def test_cycle_tick_skips_selection_on_empty_cache():
    config = StubConfig(ConfigSnapshot())
    service = FakeService(config)
    scheduler = TickerScheduler(service, config)

    duration = scheduler.cycle_tick(config.snapshot())

    assert service.selections == 0
    assert duration == DEFAULT_CYCLE_SECONDS


@pytest.mark.asyncio
async def test_cycle_loop_selects_on_each_firing():
    config = StubConfig(ConfigSnapshot(display_min=0.01, display_max=0.01))
    service = FakeService(config, articles=[_article("One", "1"), _article("Two", "2")])
    service.state = service.state.evolve(current=service.state.articles[0])
    scheduler = TickerScheduler(service, config)

    task = asyncio.create_task(scheduler.run_cycle_loop())
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert service.selections >= 3


@pytest.mark.asyncio
async def test_paused_cycle_parks_until_resumed():
    config = StubConfig(ConfigSnapshot(display_min=0.01, display_max=0.01))
    service = FakeService(config, articles=[_article("One", "1")])
    service.state = service.state.evolve(current=service.state.articles[0])
    scheduler = TickerScheduler(service, config)
    scheduler.pause()

    task = asyncio.create_task(scheduler.run_cycle_loop())
    await asyncio.sleep(0.1)
    assert service.selections == 0

    scheduler.resume()
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert service.selections >= 1


@pytest.mark.asyncio
async def test_refresh_tick_survives_unexpected_errors():
    config = StubConfig(ConfigSnapshot())
    service = FakeService(config, refresh_error=RuntimeError("kaboom"))
    scheduler = TickerScheduler(service, config)

    assert await scheduler.refresh_tick() is False
    assert service.refreshes == 1


@pytest.mark.asyncio
async def test_run_starts_both_loops_and_stops_cleanly():
    config = StubConfig(ConfigSnapshot(display_min=0.01, display_max=0.01))
    service = FakeService(config, articles=[_article("One", "1")])
    service.state = service.state.evolve(current=service.state.articles[0])
    scheduler = TickerScheduler(service, config)

    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert service.refreshes == 1
    assert service.selections >= 1


class IdleFetcher:
    async def fetch(self, snapshot, mode, now=None):  # pragma: no cover - the cycle loop never fetches
        raise AssertionError("unexpected fetch")

    async def close(self):
        pass


def _feed_service(tmp_path, config):
    store = CacheStore(str(tmp_path / "cache.json"))
    store.save(ArticleCache(articles=(_article("One", "1"), _article("Two", "2"))))
    service = FeedService(
        config,
        fetcher=IdleFetcher(),
        store=store,
        selector=Selector(rng=random.Random(3)),
        debug_log=DebugLog(str(tmp_path / "debug.log")),
        clock=lambda: NOW,
    )
    service.load_cache()
    service.select_next()
    return service


@pytest.mark.asyncio
async def test_service_resume_wakes_parked_cycle(tmp_path):
    config = StubConfig(ConfigSnapshot(display_min=0.05, display_max=0.05))
    service = _feed_service(tmp_path, config)
    selections = []
    select_next = service.select_next

    def counting_select(snapshot=None):
        selections.append(snapshot)
        return select_next(snapshot)

    service.select_next = counting_select
    scheduler = TickerScheduler(service, config)
    service.pause()

    task = asyncio.create_task(scheduler.run_cycle_loop())
    await asyncio.sleep(0.2)
    assert selections == []
    assert scheduler.phase is CyclePhase.PAUSED

    service.resume()
    await asyncio.sleep(0.3)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(selections) >= 2
    assert service.state.paused is False


@pytest.mark.asyncio
async def test_cycle_loop_unsubscribes_when_cancelled(tmp_path):
    config = StubConfig(ConfigSnapshot(display_min=0.05, display_max=0.05))
    service = _feed_service(tmp_path, config)
    scheduler = TickerScheduler(service, config)

    task = asyncio.create_task(scheduler.run_cycle_loop())
    await asyncio.sleep(0.01)
    assert len(service._listeners) == 1
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert service._listeners == []
