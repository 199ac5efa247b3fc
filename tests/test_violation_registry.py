"""Tests for the deduplicating violation registry."""

import threading

from simharness.models import Severity, Violation, ViolationCategory
from simharness.violations.fingerprint import fingerprint


def _violation(name="Wolf", severity=Severity.HIGH, message=None):
    return Violation(
        kind="zombie-entity",
        severity=severity,
        message=message or f"{name} is a zombie",
        details={"creature": name, "hp": 0},
    )


CONTEXT = {"action": "DECLARE_ATTACK", "phase": "Combat", "turn": 2, "activePlayer": 0}


class TestRecord:
    """record() is the only write path and deduplicates by fingerprint."""

    def test_first_occurrence_creates_record(self, violation_registry, clock):
        """Test that a new fingerprint starts at count 1."""
        record = violation_registry.record(_violation(), CONTEXT, report_id="VIO-1")

        assert record.occurrence_count == 1
        assert record.fingerprint == fingerprint(_violation(), CONTEXT)
        assert record.category == ViolationCategory.STATE_CORRUPTION
        assert record.first_seen == record.last_seen == clock.now
        assert record.sample_reports[0]["reportId"] == "VIO-1"
        assert record.sample_reports[0]["context"]["phase"] == "Combat"
        assert not record.synced_to_remote

    def test_repeat_occurrences_increment(self, violation_registry, clock):
        """Test dedup: the same defect three times is one record with count 3."""
        first = violation_registry.record(_violation(), CONTEXT)
        clock.advance(10)
        violation_registry.record(_violation(), {**CONTEXT, "turn": 5})
        clock.advance(10)
        third = violation_registry.record(_violation(message="latest"), CONTEXT)

        assert len(violation_registry.get_all()) == 1
        assert third.occurrence_count == 3
        assert third.first_seen == first.first_seen
        assert third.last_seen == first.first_seen + 20
        assert third.message == "latest"

    def test_sample_ring_is_bounded_newest_first(self, violation_registry):
        """Test that only the five newest samples are kept."""
        for i in range(7):
            violation_registry.record(_violation(message=f"m{i}"), CONTEXT, report_id=f"r{i}")

        record = violation_registry.get(fingerprint(_violation(), CONTEXT))

        assert [s["reportId"] for s in record.sample_reports] == ["r6", "r5", "r4", "r3", "r2"]

    def test_severity_never_decreases(self, violation_registry):
        """Test that a repeat at lower severity keeps the higher one."""
        violation_registry.record(_violation(severity=Severity.CRITICAL), CONTEXT)
        record = violation_registry.record(_violation(severity=Severity.LOW), CONTEXT)
        assert record.severity == Severity.CRITICAL

    def test_different_cards_are_distinct(self, violation_registry):
        """Test that different subjects make different records."""
        violation_registry.record(_violation("Wolf"), CONTEXT)
        violation_registry.record(_violation("Bear"), CONTEXT)
        assert len(violation_registry.get_all()) == 2

    def test_subject_involvement_counted(self, violation_registry, store):
        """Test that each occurrence bumps the card's violation involvement."""
        violation_registry.record(_violation("Alpha Wolf"), CONTEXT)
        violation_registry.record(_violation("Alpha Wolf"), CONTEXT)
        violation_registry.record(Violation(kind="turn-decreased", message="m"), CONTEXT)

        stats = store.get_subject_stats("alpha_wolf")
        assert stats.violation_involvements == 2
        assert store.get_subject_stats("NO_CARD") is None

    def test_concurrent_records_are_not_lost(self, violation_registry):
        """Test that the read-modify-write is serialized under the lock."""
        threads = [
            threading.Thread(target=lambda: [violation_registry.record(_violation(), CONTEXT) for _ in range(5)])
            for _ in range(4)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert violation_registry.get_all()[0].occurrence_count == 20


class TestQueries:
    """Tests for sync bookkeeping and statistics."""

    def test_mark_synced(self, violation_registry):
        """Test that a synced record leaves the unsynced list."""
        record = violation_registry.record(_violation(), CONTEXT)
        assert [r.fingerprint for r in violation_registry.get_unsynced()] == [record.fingerprint]

        assert violation_registry.mark_synced(record.fingerprint, "remote-7")

        synced = violation_registry.get(record.fingerprint)
        assert synced.synced_to_remote
        assert synced.remote_id == "remote-7"
        assert violation_registry.get_unsynced() == []

    def test_mark_synced_unknown_fingerprint(self, violation_registry):
        """Test that marking a missing record reports False."""
        assert violation_registry.mark_synced("0" * 16, "x") is False

    def test_get_top_orders_by_occurrences(self, violation_registry):
        """Test that the most frequent record comes first."""
        violation_registry.record(_violation("Wolf"), CONTEXT)
        for _ in range(3):
            violation_registry.record(_violation("Bear"), CONTEXT)

        top = violation_registry.get_top(1)

        assert len(top) == 1
        assert top[0].sample_reports[0]["details"]["creature"] == "Bear"
        assert top[0].occurrence_count == 3

    def test_stats(self, violation_registry):
        """Test unique, total and per-category/severity breakdowns."""
        violation_registry.record(_violation("Wolf"), CONTEXT)
        violation_registry.record(_violation("Wolf"), CONTEXT)
        violation_registry.record(
            Violation(kind="lure-bypass", severity=Severity.MEDIUM, message="m", details={"attacker": "Hawk"}),
            CONTEXT,
        )

        stats = violation_registry.get_stats()

        assert stats["uniqueViolations"] == 2
        assert stats["totalOccurrences"] == 3
        assert stats["byCategory"]["state-corruption"] == {"count": 1, "occurrences": 2}
        assert stats["byCategory"]["combat-error"] == {"count": 1, "occurrences": 1}
        assert stats["bySeverity"]["high"] == 2
        assert stats["bySeverity"]["medium"] == 1
        assert len(stats["mostFrequent"]) == 2
