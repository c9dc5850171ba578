import math
import random
from collections import Counter

import pytest

from config import ConfigSnapshot
from models import CHANNELS, CachedArticle
from selector import (
    MODE_EXPLOIT,
    MODE_EXPLORE,
    RecentlyShown,
    Selector,
    base_threshold,
    diversity_multiplier,
    draw_channel,
)

NOW = 1_700_000_000
HOUR = 3600


def _article(article_id: str, age: int = 0, weight: float = 1.0) -> CachedArticle:
    return CachedArticle(
        id=article_id,
        title=f"Title {article_id}",
        source="Example",
        url=f"https://example.com/{article_id}",
        published=NOW - age,
        weight=weight,
        first_seen=NOW - age,
    )


class FixedRandom(random.Random):
    """Random whose ``random()`` replays a fixed sequence."""

    def __init__(self, values):
        super().__init__(0)
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


def test_diversity_multiplier_bounds():
    assert diversity_multiplier(0, 1200) == pytest.approx(0.01)
    assert diversity_multiplier(1200, 1200) == pytest.approx(0.505)
    assert diversity_multiplier(math.inf, 1200) == 1.0


def test_diversity_multiplier_recovers_monotonically():
    values = [diversity_multiplier(t, 1200) for t in range(0, 20000, 600)]
    assert all(a < b for a, b in zip(values, values[1:]))


@pytest.mark.parametrize(
    "draw, expected",
    [(0.0, "breaking"), (0.39, "breaking"), (0.4, "recent"), (0.75, "week"), (0.95, "archive"), (0.9999, "archive")],
)
def test_draw_channel_uses_cumulative_probabilities(draw, expected):
    assert draw_channel(FixedRandom([draw])).name == expected


def test_channel_draw_frequencies():
    rng = random.Random(1234)
    counts = Counter(draw_channel(rng).name for _ in range(20000))

    for channel in CHANNELS:
        assert counts[channel.name] / 20000 == pytest.approx(channel.prob, abs=0.02)


def test_channels_partition_the_first_thirty_days():
    assert CHANNELS[0].contains(0)
    assert CHANNELS[0].contains(3 * HOUR - 1)
    assert CHANNELS[1].contains(3 * HOUR)
    assert CHANNELS[3].contains(30 * 24 * HOUR - 1)
    assert not any(c.contains(30 * 24 * HOUR) for c in CHANNELS)
    assert sum(c.prob for c in CHANNELS) == pytest.approx(1.0)


def test_base_threshold_uses_average_display_time():
    snapshot = ConfigSnapshot(display_min=6, display_max=15)
    assert base_threshold(100, snapshot) == pytest.approx(1.5 * 100 * 10.5)


def test_select_on_empty_cache_returns_none():
    assert Selector(rng=random.Random(1)).select([], ConfigSnapshot(), NOW) is None


def test_candidates_relax_until_enough_qualify():
    shown = RecentlyShown()
    articles = [_article(str(i)) for i in range(10)]
    for article in articles[:6]:
        shown.mark(article.id, NOW)
    selector = Selector(recently_shown=shown, rng=random.Random(1))

    candidates = selector.candidates(articles, ConfigSnapshot(), NOW)

    # only 4 never-shown articles pass any positive threshold, so factor 0 admits all
    assert len(candidates) == 10


def test_candidates_stop_at_first_sufficient_factor():
    shown = RecentlyShown()
    articles = [_article(str(i)) for i in range(10)]
    for article in articles[:5]:
        shown.mark(article.id, NOW)
    selector = Selector(recently_shown=shown, rng=random.Random(1))

    candidates = selector.candidates(articles, ConfigSnapshot(), NOW)

    assert [a.id for a in candidates] == ["5", "6", "7", "8", "9"]


def test_selection_comes_from_candidates_and_is_recorded():
    shown = RecentlyShown()
    articles = [_article(str(i)) for i in range(10)]
    for article in articles[:5]:
        shown.mark(article.id, NOW - 1)
    selector = Selector(recently_shown=shown, rng=random.Random(7))

    selection = selector.select(articles, ConfigSnapshot(), NOW)

    assert selection.article.id in {"5", "6", "7", "8", "9"}
    assert selection.candidate_count == 5
    assert shown.get(selection.article.id) == NOW


def test_exploration_is_uniform_over_candidates():
    articles = [_article(str(i), age=i * HOUR, weight=0.5 ** i) for i in range(10)]
    selector = Selector(rng=random.Random(42))
    snapshot = ConfigSnapshot(epsilon=1.0)
    draws = 5000
    counts = Counter()
    now = NOW
    for _ in range(draws):
        # advance far enough that every article is a candidate again
        now += 10 ** 6
        selection = selector.select(articles, snapshot, now)
        assert selection.mode == MODE_EXPLORE
        counts[selection.article.id] += 1

    expected = draws / len(articles)
    chi_square = sum((counts[a.id] - expected) ** 2 / expected for a in articles)
    # chi-square critical value for 9 degrees of freedom at p=0.001
    assert chi_square < 27.88


def test_exploitation_favours_heavier_articles():
    heavy = _article("heavy", weight=1.0)
    light = _article("light", weight=0.01)
    articles = [heavy, light] + [_article(f"zero-{i}", weight=0.0) for i in range(3)]
    selector = Selector(rng=random.Random(3))
    snapshot = ConfigSnapshot(epsilon=0.0)
    counts = Counter()
    now = NOW
    for _ in range(500):
        now += 10 ** 6
        selection = selector.select(articles, snapshot, now)
        assert selection.mode == MODE_EXPLOIT
        counts[selection.article.id] += 1

    assert counts["heavy"] > counts["light"] * 10
    assert not any(counts[f"zero-{i}"] for i in range(3))


def test_zero_total_score_falls_back_to_first_candidate():
    articles = [_article(str(i), weight=0.0) for i in range(5)]
    selector = Selector(rng=random.Random(9))

    selection = selector.select(articles, ConfigSnapshot(epsilon=0.0), NOW)

    assert selection.article.id == "0"


def test_score_combines_weight_diversity_and_channel_boost():
    selector = Selector(rng=random.Random(1))
    snapshot = ConfigSnapshot()
    breaking, recent = CHANNELS[0], CHANNELS[1]
    article = _article("a", age=HOUR, weight=0.8)

    assert selector.score(article, breaking, snapshot, NOW) == pytest.approx(2.4)
    assert selector.score(article, recent, snapshot, NOW) == pytest.approx(0.8)

    selector.recently_shown.mark("a", NOW)
    assert selector.score(article, recent, snapshot, NOW) == pytest.approx(0.8 * 0.01)


def test_weights_are_frozen_unless_redecay_enabled():
    selector = Selector(rng=random.Random(1))
    article = _article("a", age=3 * HOUR, weight=1.0)
    archive = CHANNELS[3]

    assert selector.score(article, archive, ConfigSnapshot(), NOW) == pytest.approx(1.0)
    assert selector.score(article, archive, ConfigSnapshot(redecay_weights=True), NOW) == pytest.approx(0.5)


def test_selection_reports_raw_and_decayed_weight():
    article = _article("a", age=3 * HOUR, weight=1.0)
    selection = Selector(rng=random.Random(1)).select([article], ConfigSnapshot(), NOW)

    assert selection.raw_weight == pytest.approx(1.0)
    assert selection.decayed_weight == pytest.approx(0.5)


def test_recently_shown_pruning():
    shown = RecentlyShown()
    shown.mark("old", NOW - 10_000)
    shown.mark("fresh", NOW - 10)
    shown.mark("gone", NOW - 10)

    removed = shown.prune(NOW, 7200, keep_ids=["old", "fresh"])

    assert removed == 2
    assert "fresh" in shown
    assert "old" not in shown
    assert "gone" not in shown
    assert shown.elapsed("fresh", NOW) == 10
    assert shown.elapsed("never", NOW) == math.inf


def test_selector_prunes_with_larger_of_ttl_and_threshold():
    articles = [_article(str(i)) for i in range(1000)]
    selector = Selector(rng=random.Random(1))
    snapshot = ConfigSnapshot(recently_shown_ttl=7200)
    # 2 * 1.5 * 1000 * 10.5 = 31500s keeps this entry alive past the TTL
    selector.recently_shown.mark("0", NOW - 20_000)
    selector.recently_shown.mark("1", NOW - 40_000)

    selector.prune_recently_shown(articles, snapshot, NOW)

    assert "0" in selector.recently_shown
    assert "1" not in selector.recently_shown
