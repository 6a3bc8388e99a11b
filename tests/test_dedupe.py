from datetime import datetime, timedelta, timezone

from triage.schemas.items import CandidateItem
from triage.services.dedupe import Deduplicator, RecentFingerprintCache, fingerprint, normalize_text


def _item(title: str, *, date: str | None = "2026-06-01", location: str | None = "Hackney, London") -> CandidateItem:
    return CandidateItem(
        title=title,
        description="Community gathering",
        occurrence_date=date,
        location=location,
        source_url="https://example.org/events/1",
    )


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_normalize_text_casefolds_and_drops_punctuation() -> None:
    assert normalize_text("  Black Joy: Summer BBQ!! ") == "black joy summer bbq"
    assert normalize_text(None) == ""


def test_fingerprint_ignores_case_whitespace_and_punctuation() -> None:
    first = _item("QTIPOC Picnic")
    second = _item("  qtipoc   picnic! ", location="hackney london")
    assert fingerprint(first) == fingerprint(second)


def test_fingerprint_is_none_when_title_has_no_text() -> None:
    assert fingerprint(_item("!!!")) is None


def test_identical_items_in_one_batch_keep_only_first() -> None:
    deduplicator = Deduplicator(RecentFingerprintCache())
    first = _item("Trans Joy Social")
    second = _item("Trans Joy Social")

    result = deduplicator.dedupe([first, second])

    assert result.kept_items == [first]
    assert result.duplicates == [second]
    assert result.skipped == 1


def test_dedupe_output_has_unique_fingerprints() -> None:
    deduplicator = Deduplicator(RecentFingerprintCache())
    batch = [
        _item("Film Night"),
        _item("film night"),
        _item("Film Night", date="2026-06-02"),
        _item("Film Night", location="Brixton"),
        _item("Poetry Open Mic"),
        _item("POETRY open mic."),
    ]

    result = deduplicator.dedupe(batch)

    keys = [key for key, _ in result.kept]
    assert len(keys) == len(set(keys)) == 4
    assert result.skipped == 2


def test_malformed_items_are_counted_as_skipped() -> None:
    deduplicator = Deduplicator(RecentFingerprintCache())
    result = deduplicator.dedupe([_item("???"), _item("Book Club")])

    assert len(result.malformed) == 1
    assert len(result.kept) == 1
    assert result.skipped == 1


def test_cache_drops_items_seen_in_earlier_batches() -> None:
    deduplicator = Deduplicator(RecentFingerprintCache())
    deduplicator.dedupe([_item("Healing Circle")])

    result = deduplicator.dedupe([_item("Healing Circle"), _item("Dance Class")])

    assert [item.title for item in result.kept_items] == ["Dance Class"]
    assert len(result.duplicates) == 1


def test_cache_forgets_fingerprints_outside_window() -> None:
    clock = _Clock()
    cache = RecentFingerprintCache(window=timedelta(hours=1), clock=clock)
    deduplicator = Deduplicator(cache)
    deduplicator.dedupe([_item("Healing Circle")])

    clock.now += timedelta(hours=2)
    result = deduplicator.dedupe([_item("Healing Circle")])

    assert len(result.kept) == 1


def test_cache_evicts_oldest_when_full() -> None:
    cache = RecentFingerprintCache(max_size=2)
    cache.add("a")
    cache.add("b")
    cache.add("c")

    assert len(cache) == 2
    assert not cache.contains("a")
    assert cache.contains("b")
    assert cache.contains("c")


def test_normalize_text_keeps_non_latin_and_accented_letters() -> None:
    assert normalize_text("Черная вечеринка!") == "черная вечеринка"
    assert normalize_text("Ça va") == "ça va"
    assert normalize_text("ＱＴＩＰＯＣ Night") == "qtipoc night"


def test_non_latin_titles_are_kept_and_accents_distinguish_events() -> None:
    deduplicator = Deduplicator(RecentFingerprintCache())
    batch = [_item("Ça va"), _item("A va"), _item("Черная вечеринка")]

    result = deduplicator.dedupe(batch)

    assert [item.title for item in result.kept_items] == ["Ça va", "A va", "Черная вечеринка"]
    assert result.duplicates == []
    assert result.malformed == []


def test_released_fingerprint_can_be_kept_again() -> None:
    deduplicator = Deduplicator(RecentFingerprintCache())
    first = deduplicator.dedupe([_item("Healing Circle")])
    key, _ = first.kept[0]

    deduplicator.release(key)
    retry = deduplicator.dedupe([_item("Healing Circle")])

    assert len(retry.kept) == 1
    assert retry.duplicates == []
