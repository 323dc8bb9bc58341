"""Tests for model helpers and enums."""

from datetime import UTC, datetime, timedelta, timezone

from rewardlink.db.models import EntryOutcome, from_iso, to_iso


class TestTimestamps:
    """ISO timestamp helpers."""

    def test_to_iso_is_fixed_width_utc(self):
        value = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert to_iso(value) == "2026-03-01T12:00:00.000000+00:00"

    def test_to_iso_converts_offsets(self):
        value = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(value) == "2026-03-01T12:00:00.000000+00:00"

    def test_naive_assumed_utc(self):
        assert to_iso(datetime(2026, 3, 1, 12, 0)) == "2026-03-01T12:00:00.000000+00:00"

    def test_lexicographic_order_is_chronological(self):
        early = datetime(2026, 3, 1, 9, 59, 59, 999999, tzinfo=UTC)
        late = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
        assert to_iso(early) < to_iso(late)

    def test_from_iso_accepts_z_suffix(self):
        assert from_iso("2026-03-01T12:00:00Z") == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def test_from_iso_empty(self):
        assert from_iso(None) is None
        assert from_iso("") is None


class TestEntryOutcome:
    """EntryOutcome success classification."""

    def test_success_outcomes(self):
        successes = {o for o in EntryOutcome if o.is_success}
        assert successes == {EntryOutcome.accepted, EntryOutcome.already_entered}
