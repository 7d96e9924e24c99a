"""
Unit tests for conflict resolution
"""

from datetime import datetime

from app.modules.conflict import (
    ConflictDecision, compare_revisions, parse_revision, resolve_conflict
)

EARLY = datetime(2024, 3, 1, 8, 0, 0)
LATE = datetime(2024, 3, 1, 10, 0, 0)


class TestRevisions:
    """Test CouchDB revision handling"""

    def test_parse(self):
        """Generation and hash"""
        assert parse_revision("3-abc") == (3, "abc")
        assert parse_revision("abc") is None
        assert parse_revision("x-1") is None
        assert parse_revision(None) is None

    def test_generation_compares_numerically(self):
        """2 is older than 10"""
        assert compare_revisions("2-a", "10-b") < 0
        assert compare_revisions("10-b", "2-a") > 0

    def test_equal_and_incomparable(self):
        """Equal or malformed revisions compare as 0"""
        assert compare_revisions("2-a", "2-a") == 0
        assert compare_revisions(None, "2-a") == 0
        assert compare_revisions("bogus", "2-a") == 0


class TestResolveConflict:
    """Test last-writer-wins"""

    def test_new_row(self):
        """Nothing stored yet"""
        verdict = resolve_conflict(None, None, exists=False)
        assert verdict.decision == ConflictDecision.APPLY
        assert verdict.reason == "new"

    def test_stale_write_is_skipped(self):
        """Older incoming time never overwrites"""
        verdict = resolve_conflict(EARLY, LATE, "5-a", "1-b")
        assert verdict.decision == ConflictDecision.SKIP
        assert not verdict.should_write

    def test_newer_write_applies(self):
        """Newer incoming time wins regardless of revision"""
        verdict = resolve_conflict(LATE, EARLY, "1-a", "5-b")
        assert verdict.decision == ConflictDecision.APPLY
        assert verdict.reason == "newer"

    def test_same_time_uses_revision(self):
        """Equal times fall back to the revision generation"""
        assert resolve_conflict(LATE, LATE, "1-a", "2-b").decision == ConflictDecision.SKIP
        assert resolve_conflict(LATE, LATE, "3-a", "2-b").decision == ConflictDecision.APPLY
        assert resolve_conflict(LATE, LATE, "2-b", "2-b").decision == ConflictDecision.APPLY

    def test_missing_incoming_timestamp_is_flagged(self):
        """Applied, but flagged for review"""
        verdict = resolve_conflict(None, LATE)
        assert verdict.decision == ConflictDecision.FLAG
        assert verdict.should_write
        assert verdict.reason == "missing_timestamp"

    def test_neither_timestamped(self):
        """Revision decides when neither side has a time"""
        assert resolve_conflict(None, None, "1-a", "2-b").decision == ConflictDecision.SKIP
        assert resolve_conflict(None, None, "3-a", "2-b").decision == ConflictDecision.APPLY

    def test_stored_untimestamped(self):
        """A timestamped write replaces an untimestamped row"""
        verdict = resolve_conflict(EARLY, None, "1-a", "9-b")
        assert verdict.decision == ConflictDecision.APPLY
        assert verdict.reason == "stored_untimestamped"
