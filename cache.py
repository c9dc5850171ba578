#!/usr/bin/env python3
"""
Article cache: merge, prune and persistence.

The cache is a bounded sliding window over previously seen articles. Fresh
articles are unioned in by id (first-seen timestamps are preserved), the
result is trimmed to the configured size keeping the most recently published
entries, and the whole document is rewritten to disk after every successful
merge/prune.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from config import ConfigSnapshot, get_logger
from errors import PersistenceError
from models import Article, ArticleCache, CachedArticle, FetchMode
from telemetry import trace_span

logger = get_logger("cache")

# Below this fraction of cache_size the next fetch is an initial (full) load
INITIAL_LOAD_FILL_RATIO = 0.5
INCREMENTAL_MAX_ITEMS = 100


def merge(cache: ArticleCache, fresh: Iterable[Article], now: int) -> ArticleCache:
    """Union ``fresh`` into ``cache`` keyed by id.

    Ids already cached keep their ``first_seen`` but take every other field
    (weight included) from the fresh article. New ids get ``first_seen = now``.
    Cached entries keep their relative order; new ids are appended in the order
    they were fetched.
    """
    merged: Dict[str, CachedArticle] = {a.id: a for a in cache.articles}
    for article in fresh:
        existing = merged.get(article.id)
        first_seen = existing.first_seen if existing is not None else now
        merged[article.id] = CachedArticle.from_article(article, first_seen)
    return ArticleCache(version=cache.version, articles=tuple(merged.values()), last_pruned=cache.last_pruned)


def prune(cache: ArticleCache, max_size: int, now: int) -> ArticleCache:
    """Trim to the ``max_size`` most recently published articles.

    Ties on ``published`` keep their original relative order. The cache is
    returned unchanged when it is within bounds.
    """
    if len(cache.articles) <= max_size:
        return cache
    kept = sorted(cache.articles, key=lambda a: a.published, reverse=True)[:max_size]
    logger.info(f"Pruned {len(cache.articles) - len(kept)} articles (kept newest {max_size})")
    return ArticleCache(version=cache.version, articles=tuple(kept), last_pruned=now)


def decide_fetch_mode(cached_count: int, cache_size: int, incremental_enabled: bool = True) -> FetchMode:
    """Initial load while the cache is under half full, incremental afterwards."""
    if not incremental_enabled:
        return FetchMode.INITIAL
    if cached_count < cache_size * INITIAL_LOAD_FILL_RATIO:
        return FetchMode.INITIAL
    return FetchMode.INCREMENTAL


def fetch_window(snapshot: ConfigSnapshot, mode: FetchMode) -> Tuple[int, int]:
    """Return ``(hours, max_items)`` to request for the given mode."""
    if mode is FetchMode.INITIAL:
        return snapshot.initial_load_days * 24, snapshot.cache_size
    return snapshot.incremental_hours, min(INCREMENTAL_MAX_ITEMS, snapshot.cache_size)


class CacheStore:
    """Durable JSON storage for the article cache.

    Loading never fails: a missing file is an empty cache and an unreadable or
    malformed file is logged and also treated as empty. Saving replaces the
    whole file atomically and reports failure by returning False.
    """

    def __init__(self, cache_path: str):
        self.cache_path = Path(cache_path)

    @trace_span("cache.load", tracer_name="cache", attr_from_args=lambda self: {"cache.path": str(self.cache_path)})
    def load(self) -> ArticleCache:
        if not self.cache_path.exists():
            logger.info(f"Cache file {self.cache_path} does not exist. A new cache will be created.")
            return ArticleCache()
        try:
            cache = self._read()
        except PersistenceError as e:
            logger.warning(f"Ignoring unusable cache file {self.cache_path}: {e}")
            return ArticleCache()
        logger.info(f"Loaded {len(cache)} cached articles from {self.cache_path}")
        return cache

    def _read(self) -> ArticleCache:
        try:
            with open(self.cache_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return ArticleCache.from_dict(data)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceError(f"cannot read cache: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"malformed cache document: {e!r}") from e

    @trace_span("cache.save", tracer_name="cache", attr_from_args=lambda self, cache: {"cache.articles": len(cache)})
    def exists(self) -> bool:
        return self.cache_path.exists()

    def save(self, cache: ArticleCache) -> bool:
        try:
            self._write(cache)
        except PersistenceError as e:
            logger.error(f"Failed to persist cache to {self.cache_path}: {e}")
            return False
        logger.debug(f"Persisted {len(cache)} articles to {self.cache_path}")
        return True

    def _write(self, cache: ArticleCache) -> None:
        tmp_name: Optional[str] = None
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".feed-cache-", suffix=".tmp", dir=str(self.cache_path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(cache.to_dict(), f, ensure_ascii=False)
            os.replace(tmp_name, self.cache_path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"cannot write cache: {e}") from e
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
