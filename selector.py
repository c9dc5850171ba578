#!/usr/bin/env python3
"""
Article selection for the ticker.

Each selection:

1. filters candidates with an adaptive diversity threshold (articles never
   shown, or not shown for long enough, relaxed until at least five qualify);
2. draws one age channel from the static channel table;
3. with probability epsilon picks a candidate uniformly (explore), otherwise
   draws proportionally to ``weight * diversity * channel`` (exploit);
4. records the pick in the recently-shown map.

The drawn channel only biases the odds (3x for articles whose age falls inside
it); it never filters candidates.
"""

import math
import random
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from article_parser import compute_weight
from config import ConfigSnapshot, get_logger
from models import CHANNELS, CachedArticle, Channel
from telemetry import trace_span
from utils import exponential_decay

logger = get_logger("selector")

RELAXATION_FACTORS = (1.0, 0.67, 0.33, 0.0)
MIN_CANDIDATES = 5
THRESHOLD_FACTOR = 1.5
CHANNEL_BOOST = 3.0
DIVERSITY_PENALTY = 0.99

MODE_EXPLORE = "explore"
MODE_EXPLOIT = "exploit"


def diversity_multiplier(elapsed: float, half_life: float) -> float:
    """Score factor for an article last shown ``elapsed`` seconds ago.

    ~0.01 right after showing, recovering towards 1.0; ``math.inf`` (never
    shown) gives exactly 1.0.
    """
    return 1.0 - DIVERSITY_PENALTY * exponential_decay(elapsed, half_life)


def draw_channel(rng: random.Random, channels: Sequence[Channel] = CHANNELS) -> Channel:
    """Cumulative-distribution draw over the static channel table."""
    pick = rng.random()
    cumulative = 0.0
    for channel in channels:
        cumulative += channel.prob
        if pick < cumulative:
            return channel
    return channels[-1]


def base_threshold(article_count: int, snapshot: ConfigSnapshot) -> float:
    """Seconds an article should rest before qualifying again (before relaxation)."""
    return THRESHOLD_FACTOR * article_count * snapshot.avg_display_time


class RecentlyShown:
    """In-memory map of article id to last-shown timestamp."""

    def __init__(self) -> None:
        self._shown: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._shown)

    def __contains__(self, article_id: str) -> bool:
        return article_id in self._shown

    def get(self, article_id: str) -> Optional[int]:
        return self._shown.get(article_id)

    def mark(self, article_id: str, now: int) -> None:
        self._shown[article_id] = now

    def elapsed(self, article_id: str, now: int) -> float:
        last = self._shown.get(article_id)
        if last is None:
            return math.inf
        return max(0, now - last)

    def prune(self, now: int, max_age: float, keep_ids: Optional[Iterable[str]] = None) -> int:
        """Drop entries older than ``max_age`` and, if given, ids not in ``keep_ids``."""
        keep = set(keep_ids) if keep_ids is not None else None
        stale = [
            article_id for article_id, shown_at in self._shown.items()
            if now - shown_at > max_age or (keep is not None and article_id not in keep)
        ]
        for article_id in stale:
            del self._shown[article_id]
        return len(stale)


@dataclass(frozen=True)
class Selection:
    """Outcome of one selection, kept for the debug log."""

    article: CachedArticle
    channel: Channel
    mode: str
    raw_weight: float
    decayed_weight: float
    candidate_count: int


class Selector:
    """Epsilon-greedy article selector."""

    def __init__(self, recently_shown: Optional[RecentlyShown] = None, rng: Optional[random.Random] = None,
                 channels: Sequence[Channel] = CHANNELS) -> None:
        self.recently_shown = recently_shown if recently_shown is not None else RecentlyShown()
        self.rng = rng or random.Random()
        self.channels = tuple(channels)

    def candidates(self, articles: Sequence[CachedArticle], snapshot: ConfigSnapshot, now: int) -> List[CachedArticle]:
        """Apply the relaxing diversity threshold; factor 0 admits every article."""
        base = base_threshold(len(articles), snapshot)
        eligible: List[CachedArticle] = list(articles)
        for factor in RELAXATION_FACTORS:
            threshold = base * factor
            eligible = [a for a in articles if self.recently_shown.elapsed(a.id, now) >= threshold]
            if len(eligible) >= MIN_CANDIDATES:
                logger.debug(f"{len(eligible)} candidates at relaxation factor {factor}")
                break
        return eligible

    def score(self, article: CachedArticle, channel: Channel, snapshot: ConfigSnapshot, now: int) -> float:
        weight = self._effective_weight(article, snapshot, now)
        diversity = diversity_multiplier(self.recently_shown.elapsed(article.id, now), snapshot.diversity_half_life)
        boost = CHANNEL_BOOST if channel.contains(now - article.published) else 1.0
        return weight * diversity * boost

    def _effective_weight(self, article: CachedArticle, snapshot: ConfigSnapshot, now: int) -> float:
        if snapshot.redecay_weights:
            return compute_weight(now - article.published)
        return article.weight

    def _roulette(self, candidates: List[CachedArticle], scores: List[float]) -> CachedArticle:
        total = sum(scores)
        if total <= 0:
            return candidates[0]
        pick = self.rng.random() * total
        cumulative = 0.0
        for article, score in zip(candidates, scores):
            cumulative += score
            if pick < cumulative:
                return article
        return candidates[-1]

    @trace_span(
        "select_article",
        tracer_name="selector",
        attr_from_args=lambda self, articles, snapshot, now=None: {"selector.articles": len(articles)},
    )
    def select(self, articles: Sequence[CachedArticle], snapshot: ConfigSnapshot, now: int) -> Optional[Selection]:
        """Pick the next article, or None when there is nothing to pick from."""
        if not articles:
            return None

        candidates = self.candidates(articles, snapshot, now)
        if not candidates:
            return None
        channel = draw_channel(self.rng, self.channels)

        if self.rng.random() < snapshot.epsilon:
            mode = MODE_EXPLORE
            chosen = self.rng.choice(candidates)
        else:
            mode = MODE_EXPLOIT
            scores = [self.score(a, channel, snapshot, now) for a in candidates]
            chosen = self._roulette(candidates, scores)

        self.recently_shown.mark(chosen.id, now)
        logger.debug(f"Selected {chosen.id} ({mode}, channel={channel.name}, candidates={len(candidates)})")
        return Selection(
            article=chosen,
            channel=channel,
            mode=mode,
            raw_weight=chosen.weight,
            decayed_weight=compute_weight(now - chosen.published),
            candidate_count=len(candidates),
        )

    def prune_recently_shown(self, articles: Sequence[CachedArticle], snapshot: ConfigSnapshot, now: int) -> int:
        """Bound the recently-shown map to cached ids and a few cycle-times of history."""
        max_age = max(snapshot.recently_shown_ttl, 2 * base_threshold(len(articles), snapshot))
        removed = self.recently_shown.prune(now, max_age, keep_ids=(a.id for a in articles))
        if removed:
            logger.debug(f"Pruned {removed} recently-shown entries")
        return removed
