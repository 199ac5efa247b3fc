"""Background sync of violation records to the remote reporting sink.

A daemon thread wakes every ``interval_seconds`` (after an initial delay)
and pushes every unsynced record that has been seen at least
``min_occurrences`` times. Records that hit the orchestrator's immediate
threshold are queued and pushed on the next wake-up instead of waiting for
the interval.

Failures never raise out of the syncer: the record simply stays unsynced and
is retried on the next pass.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Any

from simharness.errors import SyncError
from simharness.metrics import SYNC_ATTEMPTS
from simharness.models import ViolationRecord
from simharness.reporting.client import (
    ReportingClient,
    build_create_payload,
    build_update_payload,
)
from simharness.violations.registry import ViolationRegistry

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL_SECONDS = 30.0
DEFAULT_INITIAL_DELAY_SECONDS = 5.0
DEFAULT_MIN_OCCURRENCES = 2
DEFAULT_SUBMISSION_DELAY_SECONDS = 0.1


class ViolationSyncer:
    """Pushes deduplicated violations to a ReportingClient.

    With ``client=None`` the syncer still runs but every sync is a no-op,
    which keeps the orchestrator free of "is reporting configured" checks.
    """

    def __init__(
        self,
        violations: ViolationRegistry,
        client: ReportingClient | None = None,
        interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS,
        initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
        min_occurrences: int = DEFAULT_MIN_OCCURRENCES,
        submission_delay_seconds: float = DEFAULT_SUBMISSION_DELAY_SECONDS,
    ):
        self.violations = violations
        self.client = client
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.min_occurrences = min_occurrences
        self.submission_delay_seconds = submission_delay_seconds

        self._sync_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._immediate: queue.Queue[str] = queue.Queue()
        self._pending: set[str] = set()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Worker lifecycle
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def start(self) -> bool:
        """Start the background worker. Returns False if already running."""
        if self.is_running():
            logger.info("Violation sync already running")
            return False
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="simharness-violation-sync",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Violation sync started (every {self.interval_seconds:g}s)")
        return True

    def stop(self, flush: bool = False, timeout: float = 5.0) -> None:
        """Stop the worker, optionally running one last sync pass."""
        thread, self._thread = self._thread, None
        self._stop.set()
        self._wake.set()
        if thread is not None:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Violation sync worker did not stop within the timeout")
            else:
                logger.info("Violation sync stopped")
        if flush:
            self.sync_now()

    def _run(self) -> None:
        next_sync = time.monotonic() + self.initial_delay_seconds
        while not self._stop.is_set():
            self._drain_immediate()
            remaining = next_sync - time.monotonic()
            if remaining <= 0:
                self.sync_now()
                next_sync = time.monotonic() + self.interval_seconds
                continue
            self._wake.wait(remaining)
            # Queued records are drained at the top of the loop, so a wake-up
            # arriving between wait() and clear() is not lost.
            self._wake.clear()

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _submit(self, record: ViolationRecord) -> str:
        """Create or update the remote report; returns its remote id."""
        existing = self.client.find_by_fingerprint(record.fingerprint)
        if existing:
            remote_id = str(existing["id"])
            self.client.update_report(remote_id, build_update_payload(record))
            logger.info(
                f"Updated remote report {remote_id} for {record.fingerprint} "
                f"({record.occurrence_count} occurrences)"
            )
            return remote_id
        created = self.client.create_report(build_create_payload(record))
        remote_id = str(created["id"])
        logger.info(f"Created remote report {remote_id} for {record.fingerprint}")
        return remote_id

    def _push(self, record: ViolationRecord, mode: str) -> bool:
        try:
            remote_id = self._submit(record)
            self.violations.mark_synced(record.fingerprint, remote_id)
        except SyncError as e:
            logger.warning(f"Could not sync violation {record.fingerprint}: {e}")
            SYNC_ATTEMPTS.labels(mode, "failed").inc()
            return False
        except Exception:
            logger.exception(f"Unexpected error syncing violation {record.fingerprint}")
            SYNC_ATTEMPTS.labels(mode, "failed").inc()
            return False
        SYNC_ATTEMPTS.labels(mode, "synced").inc()
        return True

    def sync_now(self) -> dict[str, int]:
        """Push every significant unsynced record once.

        Returns ``{"synced": n, "failed": m}``. A call made while another
        pass is running returns zeros immediately.
        """
        result = {"synced": 0, "failed": 0}
        if self.client is None:
            return result
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Violation sync already in progress, skipping")
            return result
        try:
            try:
                candidates = [
                    record for record in self.violations.get_unsynced()
                    if record.occurrence_count >= self.min_occurrences
                ]
            except Exception:
                logger.exception("Could not load unsynced violations")
                return result

            if candidates:
                logger.info(f"Syncing {len(candidates)} violations")
            for index, record in enumerate(candidates):
                if self._push(record, "periodic"):
                    result["synced"] += 1
                else:
                    result["failed"] += 1
                if self.submission_delay_seconds and index < len(candidates) - 1:
                    time.sleep(self.submission_delay_seconds)
            if candidates:
                logger.info(
                    f"Sync complete: {result['synced']} synced, {result['failed']} failed"
                )
        finally:
            self._sync_lock.release()
        return result

    def report_immediately(self, record: ViolationRecord | None) -> bool:
        """Push one record right now, on the calling thread."""
        if record is None or self.client is None:
            return False
        with self._sync_lock:
            return self._push(record, "immediate")

    def queue_immediate(self, record: ViolationRecord) -> None:
        """Hand a record to the worker for immediate reporting.

        Without a running worker the record is pushed synchronously.
        """
        if record.synced_to_remote or self.client is None:
            return
        if not self.is_running():
            self.report_immediately(record)
            return
        if record.fingerprint in self._pending:
            return
        self._pending.add(record.fingerprint)
        self._immediate.put(record.fingerprint)
        self._wake.set()

    def _drain_immediate(self) -> None:
        while True:
            try:
                fp = self._immediate.get_nowait()
            except queue.Empty:
                return
            self._pending.discard(fp)
            try:
                record = self.violations.get(fp)
            except Exception:
                logger.exception(f"Could not load violation {fp} for immediate report")
                continue
            if record is not None and not record.synced_to_remote:
                self.report_immediately(record)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_sync_status(self) -> dict[str, Any]:
        records = self.violations.get_all()
        unsynced = [r for r in records if not r.synced_to_remote]
        return {
            "totalViolations": len(records),
            "syncedCount": len(records) - len(unsynced),
            "unsyncedCount": len(unsynced),
            "pendingSync": sum(1 for r in unsynced if r.occurrence_count >= self.min_occurrences),
            "autoSyncRunning": self.is_running(),
            "isSyncing": self.is_syncing(),
        }
