"""Deduplicating violation registry.

``ViolationRegistry.record`` is the only path that writes violation records.
The first occurrence of a fingerprint creates a record with count 1; every
later occurrence increments the count, refreshes ``last_seen`` and the
message, and pushes a sample onto a small newest-first ring.

The read-modify-write runs under the store's violations lock, which the
background syncer also takes when it marks records synced.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from simharness.db.simulation_store import SimulationStore
from simharness.models import Severity, Violation, ViolationRecord
from simharness.violations.fingerprint import (
    NO_SUBJECT,
    categorize,
    describe_fingerprint_components,
    extract_subject,
    fingerprint,
)

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_SIZE = 5


def _context_action(context: Mapping[str, Any]) -> str | None:
    action = context.get("action")
    if isinstance(action, Mapping):
        return action.get("type")
    return action


class ViolationRegistry:
    """Records violations into a SimulationStore keyed by fingerprint."""

    def __init__(
        self,
        store: SimulationStore,
        sample_size: int = DEFAULT_SAMPLE_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sample_size = sample_size
        self._clock = clock

    @property
    def lock(self):
        return self.store.violations_lock

    def record(
        self,
        violation: Violation,
        context: Mapping[str, Any] | None = None,
        report_id: str | None = None,
    ) -> ViolationRecord:
        """Record one occurrence and return the updated record.

        Args:
            violation: The violation that was detected.
            context: ``action`` (type or action dict), ``phase``, ``turn``
                and ``activePlayer`` at detection time.
            report_id: Id of the full report, kept in the sample.
        """
        context = context or {}
        fp = fingerprint(violation, context)
        components = describe_fingerprint_components(violation, context)
        category = categorize(violation.kind)
        now = self._clock()

        sample = {
            "reportId": report_id,
            "type": violation.kind,
            "severity": violation.severity.value,
            "message": violation.message,
            "details": violation.details,
            "category": category.value,
            "context": {
                "action": _context_action(context),
                "phase": context.get("phase"),
                "turn": context.get("turn"),
                "activePlayer": context.get("activePlayer"),
            },
            "timestamp": now,
            "fingerprintComponents": components,
        }

        with self.lock:
            existing = self.store.get_violation(fp)
            if existing is None:
                record = ViolationRecord(
                    fingerprint=fp,
                    type=violation.kind,
                    category=category,
                    severity=violation.severity,
                    message=violation.message,
                    first_seen=now,
                    last_seen=now,
                    occurrence_count=1,
                    sample_reports=[sample],
                    fingerprint_components=components,
                )
            else:
                record = existing.model_copy(update={
                    "message": violation.message,
                    "severity": max(existing.severity, violation.severity),
                    "last_seen": now,
                    "occurrence_count": existing.occurrence_count + 1,
                    "sample_reports": [sample, *existing.sample_reports][: self.sample_size],
                })
            self.store.upsert_violation(record)

        subject = extract_subject(violation.details)
        if subject != NO_SUBJECT:
            self.store.increment_subject_violation_count(subject)

        logger.debug(
            f"Recorded {violation.kind} [{fp}] occurrence {record.occurrence_count}"
        )
        return record

    def get(self, fp: str) -> ViolationRecord | None:
        return self.store.get_violation(fp)

    def get_all(self) -> list[ViolationRecord]:
        return self.store.get_all_violations()

    def get_unsynced(self) -> list[ViolationRecord]:
        return self.store.get_unsynced_violations()

    def get_top(self, limit: int = 10) -> list[ViolationRecord]:
        return self.get_all()[:limit]

    def mark_synced(self, fp: str, remote_id: str | None) -> bool:
        with self.lock:
            return self.store.mark_violation_synced(fp, remote_id)

    def get_stats(self) -> dict[str, Any]:
        """Unique count, total occurrences, and breakdowns by category and severity."""
        records = self.get_all()
        by_category: dict[str, dict[str, int]] = {}
        by_severity = {s.value: 0 for s in sorted(Severity, reverse=True)}
        for record in records:
            bucket = by_category.setdefault(record.category.value, {"count": 0, "occurrences": 0})
            bucket["count"] += 1
            bucket["occurrences"] += record.occurrence_count
            by_severity[record.severity.value] += record.occurrence_count
        return {
            "uniqueViolations": len(records),
            "totalOccurrences": sum(r.occurrence_count for r in records),
            "byCategory": by_category,
            "bySeverity": by_severity,
            "mostFrequent": records[:5],
        }
