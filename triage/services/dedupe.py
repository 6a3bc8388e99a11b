from __future__ import annotations

import logging
import re
import threading
import unicodedata
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable

from triage.schemas.items import CandidateItem

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[^\W_]+")
_FINGERPRINT_SEPARATOR = "|"


def normalize_text(value: str | None) -> str:
    if not value:
        return ""
    folded = unicodedata.normalize("NFKC", value).casefold()
    return " ".join(_TOKEN_RE.findall(folded))


def normalize_date(value: str | None) -> str:
    if not value:
        return ""
    raw = value.strip()
    try:
        return date.fromisoformat(raw[:10]).isoformat()
    except ValueError:
        return normalize_text(raw)


def fingerprint(item: CandidateItem) -> str | None:
    """Dedup key from normalized title, occurrence date and location; None if the title normalizes away."""
    title = normalize_text(item.title)
    if not title:
        return None
    return _FINGERPRINT_SEPARATOR.join(
        (title, normalize_date(item.occurrence_date), normalize_text(item.location))
    )


class RecentFingerprintCache:
    """Bounded sliding window of fingerprints, evicted by age and then by size (oldest first)."""

    def __init__(
        self,
        *,
        max_size: int = 5000,
        window: timedelta = timedelta(hours=72),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_size = max(1, max_size)
        self.window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._seen: OrderedDict[str, datetime] = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    def contains(self, key: str) -> bool:
        self._expire(self._clock())
        return key in self._seen

    def discard(self, key: str) -> None:
        self._seen.pop(key, None)

    def add(self, key: str) -> None:
        now = self._clock()
        self._expire(now)
        self._seen[key] = now
        self._seen.move_to_end(key)
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)

    def _expire(self, now: datetime) -> None:
        cutoff = now - self.window
        while self._seen:
            oldest_key, seen_at = next(iter(self._seen.items()))
            if seen_at > cutoff:
                break
            del self._seen[oldest_key]


@dataclass(slots=True)
class DedupeResult:
    kept: list[tuple[str, CandidateItem]] = field(default_factory=list)
    duplicates: list[CandidateItem] = field(default_factory=list)
    malformed: list[CandidateItem] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return len(self.duplicates) + len(self.malformed)

    @property
    def kept_items(self) -> list[CandidateItem]:
        return [item for _, item in self.kept]


class Deduplicator:
    def __init__(self, cache: RecentFingerprintCache) -> None:
        self.cache = cache
        self._lock = threading.Lock()

    def dedupe(self, batch: list[CandidateItem]) -> DedupeResult:
        result = DedupeResult()
        with self._lock:
            batch_seen: set[str] = set()
            for item in batch:
                key = fingerprint(item)
                if key is None:
                    result.malformed.append(item)
                    continue
                if key in batch_seen or self.cache.contains(key):
                    result.duplicates.append(item)
                    continue
                batch_seen.add(key)
                result.kept.append((key, item))

            for key, _ in result.kept:
                self.cache.add(key)

        if result.skipped:
            logger.info(
                "dedupe skipped items duplicates=%s malformed=%s kept=%s",
                len(result.duplicates),
                len(result.malformed),
                len(result.kept),
            )
        return result

    def release(self, key: str) -> None:
        """Forget a kept fingerprint whose item was never stored, so a retry is not a duplicate."""
        with self._lock:
            self.cache.discard(key)
        logger.info("released fingerprint key=%r", key)
