#!/usr/bin/env python3
"""
Structured debug log for refresh and selection events.

Lines are append-only and pipe-delimited::

    <unix-timestamp>|R|breaking=12|recent=40|week=96|archive=302|span=0.2h-719.5h|size=452
    <unix-timestamp>|S|recent|exploit|<id>|<title snippet>|raw=0.5000|decayed=0.4204

The file is rotated once it exceeds 5 MB; rotated files older than 7 days are
deleted. Failures to write are logged and never interrupt the ticker.
"""

import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

from config import get_logger
from models import CHANNELS, CachedArticle, Channel
from selector import Selection
from utils import truncate_string

logger = get_logger("debug_log")

MAX_LOG_BYTES = 5 * 1024 * 1024
MAX_LOG_AGE_DAYS = 7
TITLE_SNIPPET_LENGTH = 40


def _field(value: str) -> str:
    """Make a value safe for a single pipe-delimited field."""
    return " ".join(str(value).replace("|", "/").split())


def format_refresh_event(articles: Sequence[CachedArticle], now: int, channels: Sequence[Channel] = CHANNELS) -> str:
    counts = [sum(1 for a in articles if c.contains(now - a.published)) for c in channels]
    fields = [f"{c.name}={n}" for c, n in zip(channels, counts)]
    if articles:
        ages = [max(0, now - a.published) / 3600 for a in articles]
        fields.append(f"span={min(ages):.1f}h-{max(ages):.1f}h")
    else:
        fields.append("span=-")
    fields.append(f"size={len(articles)}")
    return "|".join([str(now), "R"] + fields)


def format_selection_event(selection: Selection, now: int) -> str:
    article = selection.article
    fields = [
        str(now),
        "S",
        selection.channel.name,
        selection.mode,
        _field(article.id),
        _field(truncate_string(article.title, TITLE_SNIPPET_LENGTH)),
        f"raw={selection.raw_weight:.4f}",
        f"decayed={selection.decayed_weight:.4f}",
    ]
    return "|".join(fields)


class DebugLog:
    """Append-only event log, active only while ``enabled`` is set."""

    def __init__(self, path: str, enabled: bool = False, max_bytes: int = MAX_LOG_BYTES,
                 max_age_days: int = MAX_LOG_AGE_DAYS) -> None:
        self.path = Path(path)
        self.enabled = enabled
        self.max_bytes = max_bytes
        self.max_age_days = max_age_days

    def configure(self, path: str, enabled: bool) -> None:
        """Apply the latest configuration snapshot."""
        self.path = Path(path)
        self.enabled = enabled

    def log_refresh(self, articles: Sequence[CachedArticle], now: Optional[int] = None) -> None:
        if self.enabled:
            self._append(format_refresh_event(articles, int(now if now is not None else time.time())))

    def log_selection(self, selection: Selection, now: Optional[int] = None) -> None:
        if self.enabled:
            self._append(format_selection_event(selection, int(now if now is not None else time.time())))

    def _append(self, line: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._rotate_if_needed()
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.warning(f"Could not write debug log {self.path}: {e}")

    def _rotate_if_needed(self) -> None:
        if self.path.exists() and self.path.stat().st_size > self.max_bytes:
            rotated = self._rotation_target()
            self.path.rename(rotated)
            logger.info(f"Rotated debug log to {rotated}")
        self._delete_expired()

    def _rotation_target(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        rotated = self.path.with_name(f"{self.path.name}.{stamp}")
        counter = 1
        while rotated.exists():
            rotated = self.path.with_name(f"{self.path.name}.{stamp}-{counter}")
            counter += 1
        return rotated

    def _delete_expired(self) -> None:
        cutoff = time.time() - self.max_age_days * 86400
        for old in self.path.parent.glob(f"{self.path.name}.*"):
            if old.stat().st_mtime < cutoff:
                old.unlink()
                logger.info(f"Deleted expired debug log {old}")
