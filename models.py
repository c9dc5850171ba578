#!/usr/bin/env python3
"""
Data models for the Feed Ticker.

This module contains the article records, the persisted cache document, the
static age channels used to bias selection, and the immutable state snapshot
published to consumers.
"""

from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

CACHE_VERSION = 1

HOUR = 3600
DAY = 24 * HOUR


@dataclass(frozen=True)
class Article:
    """A canonical feed item.

    ``weight`` is the recency-decay score computed once at parse time.
    """

    id: str
    title: str
    source: str
    url: str
    published: int
    weight: float


@dataclass(frozen=True)
class CachedArticle(Article):
    """An article plus the moment it first entered the cache."""

    first_seen: int = 0

    @classmethod
    def from_article(cls, article: Article, first_seen: int) -> "CachedArticle":
        return cls(
            id=article.id,
            title=article.title,
            source=article.source,
            url=article.url,
            published=article.published,
            weight=article.weight,
            first_seen=first_seen,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["firstSeen"] = data.pop("first_seen")
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CachedArticle":
        """Build from a persisted mapping; raises KeyError/TypeError/ValueError on bad input."""
        return cls(
            id=str(data["id"]),
            title=str(data["title"]),
            source=str(data.get("source") or "Feed"),
            url=str(data.get("url") or ""),
            published=int(data["published"]),
            weight=float(data["weight"]),
            first_seen=int(data["firstSeen"]),
        )


@dataclass(frozen=True)
class ArticleCache:
    """The bounded persistent collection of cached articles.

    Invariant: ``id`` is unique across ``articles``.
    """

    version: int = CACHE_VERSION
    articles: Tuple[CachedArticle, ...] = ()
    last_pruned: int = 0

    def __len__(self) -> int:
        return len(self.articles)

    def ids(self) -> List[str]:
        return [a.id for a in self.articles]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "articles": [a.to_dict() for a in self.articles],
            "lastPruned": self.last_pruned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ArticleCache":
        if not isinstance(data, dict):
            raise TypeError("cache document must be a mapping")
        raw_articles = data.get("articles") or []
        if not isinstance(raw_articles, list):
            raise TypeError("cache 'articles' must be a list")
        articles: List[CachedArticle] = []
        seen = set()
        for raw in raw_articles:
            article = CachedArticle.from_dict(raw)
            if article.id in seen:
                continue
            seen.add(article.id)
            articles.append(article)
        return cls(
            version=int(data.get("version", CACHE_VERSION)),
            articles=tuple(articles),
            last_pruned=int(data.get("lastPruned") or 0),
        )


@dataclass(frozen=True)
class Channel:
    """A static age bucket; ``min_age`` inclusive, ``max_age`` exclusive (seconds)."""

    name: str
    min_age: int
    max_age: int
    prob: float

    def contains(self, age: float) -> bool:
        return self.min_age <= age < self.max_age


# Partition of the age axis with fixed draw probabilities summing to 1.0
CHANNELS: Tuple[Channel, ...] = (
    Channel("breaking", 0, 3 * HOUR, 0.40),
    Channel("recent", 3 * HOUR, DAY, 0.30),
    Channel("week", DAY, 7 * DAY, 0.20),
    Channel("archive", 7 * DAY, 30 * DAY, 0.10),
)


class FeedStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class FetchMode(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class FeedState:
    """Immutable snapshot of everything consumers may read."""

    status: FeedStatus = FeedStatus.LOADING
    current: Optional[CachedArticle] = None
    error: str = ""
    articles: Tuple[CachedArticle, ...] = field(default_factory=tuple)
    paused: bool = False
    last_refresh: Optional[int] = None

    def evolve(self, **changes: Any) -> "FeedState":
        return replace(self, **changes)
