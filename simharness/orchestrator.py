"""Session orchestrator: drives many runs back to back.

The driver (the simulated engine) owns the game loop. It calls the
orchestrator's hooks:

    on_run_start(initial_state)
    before_action(state, action, context)   # right before each mutation
    after_action(state)                     # right after it
    on_run_end(final_state)

and the orchestrator asks the driver for the next run through the
``start_new_run`` callback given to ``start``. Between runs it waits
``settle_delay_seconds`` on a timer thread.

States::

    STOPPED --start--> RUNNING <--pause/resume--> PAUSED
    RUNNING/PAUSED --stop--> STOPPED

Pausing the orchestrator only stops it from requesting the next run; the
run in progress finishes normally. Pausing on a violation is the monitor's
job (see ``RunMonitor.pause``).
"""

from __future__ import annotations

import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping

from simharness.collector import RunDataCollector
from simharness.config.harness_config import HarnessConfig
from simharness.db.simulation_store import SimulationStore
from simharness.errors import StorageError, StoreUnavailableError, ValidationError
from simharness.invariants.checks import build_default_registry
from simharness.metrics import HARNESS_INTERNAL_ERRORS, SESSION_RUNS, observe_run_completed
from simharness.models import Report, RunRecord, ViolationRecord
from simharness.monitor import RunMonitor
from simharness.reporting.client import HttpReportingClient, ReportingClient
from simharness.reporting.sync import ViolationSyncer
from simharness.reports import action_type, run_position, to_base36
from simharness.violations.registry import ViolationRegistry

logger = logging.getLogger(__name__)

DEFAULT_SETTLE_DELAY_SECONDS = 1.0
DEFAULT_IMMEDIATE_REPORT_THRESHOLD = 3

_SESSION_SUFFIX_CHARS = string.digits + string.ascii_lowercase


class SessionState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


def new_session_id(clock: Callable[[], float] = time.time) -> str:
    suffix = "".join(secrets.choice(_SESSION_SUFFIX_CHARS) for _ in range(4))
    return f"sim_{to_base36(int(clock() * 1000))}_{suffix}"


def format_duration(seconds: float) -> str:
    """``3725`` -> ``1h 2m``, ``125`` -> ``2m 5s``, ``9`` -> ``9s``."""
    seconds = int(seconds)
    minutes, hours = seconds // 60, seconds // 3600
    if hours:
        return f"{hours}h {minutes % 60}m"
    if minutes:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"


@dataclass
class _SessionStats:
    wins: list[int] = field(default_factory=lambda: [0, 0])
    draws: int = 0
    total_turns: int = 0
    total_violations: int = 0
    fastest_run: int | None = None
    longest_run: int = 0


class SessionOrchestrator:
    """Runs a session of simulation runs against one harness instance.

    Args:
        store: Persistent store for runs, card stats and violations.
        monitor: Run monitor wired to the violation registry.
        collector: Per-run statistics collector writing to ``store``.
        syncer: Background reporter for violation records.
        settle_delay_seconds: Wait between the end of one run and the
            request for the next. Zero requests it synchronously.
        immediate_report_threshold: Occurrence count at which an unsynced
            violation is pushed without waiting for the periodic sync.
    """

    def __init__(
        self,
        store: SimulationStore,
        monitor: RunMonitor,
        collector: RunDataCollector,
        syncer: ViolationSyncer,
        settle_delay_seconds: float = DEFAULT_SETTLE_DELAY_SECONDS,
        immediate_report_threshold: int = DEFAULT_IMMEDIATE_REPORT_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.monitor = monitor
        self.collector = collector
        self.syncer = syncer
        self.settle_delay_seconds = settle_delay_seconds
        self.immediate_report_threshold = immediate_report_threshold
        self._clock = clock

        self._lock = threading.RLock()
        self._state = SessionState.STOPPED
        self._timer: threading.Timer | None = None
        self._awaiting_resume = False

        self.session_id: str | None = None
        self.runs_target: int | None = None
        self.runs_completed = 0
        self._start_time: float | None = None
        self._run_started_at: float | None = None
        self._run_violations = 0
        self._stats = _SessionStats()
        self._last_action_type: str | None = None

        self._start_new_run: Callable[[], Any] | None = None
        self._on_run_start: Callable[[int, Any], None] | None = None
        self._on_run_end: Callable[[dict[str, Any]], None] | None = None
        self._on_session_end: Callable[[dict[str, Any], str], None] | None = None
        self._on_stats_update: Callable[[dict[str, Any]], None] | None = None

        self.monitor.add_listener(self._on_violations)

    @classmethod
    def from_config(
        cls,
        config: HarnessConfig,
        client: ReportingClient | None = None,
    ) -> "SessionOrchestrator":
        """Wire a complete harness from configuration.

        A ``remote_url`` in the config builds an HttpReportingClient unless
        ``client`` is given explicitly.
        """
        config.validate()
        store = SimulationStore(config.db_path, max_runs=config.max_runs)
        violations = ViolationRegistry(store, sample_size=config.sample_reports)
        monitor = RunMonitor(
            build_default_registry(
                include_conservation=config.check_card_conservation,
                include_effects=config.check_effects,
            ),
            violations,
            history_size=config.history_size,
            report_history_window=config.report_history_window,
            unattended=config.unattended,
        )
        if client is None and config.remote_url:
            client = HttpReportingClient(
                config.remote_url,
                api_key=config.remote_api_key,
                timeout=config.remote_timeout_seconds,
            )
        syncer = ViolationSyncer(
            violations,
            client,
            interval_seconds=config.sync_interval_seconds,
            initial_delay_seconds=config.initial_sync_delay_seconds,
            min_occurrences=config.min_occurrences_to_sync,
            submission_delay_seconds=config.sync_submission_delay_seconds,
        )
        return cls(
            store,
            monitor,
            RunDataCollector(store),
            syncer,
            settle_delay_seconds=config.settle_delay_seconds,
            immediate_report_threshold=config.immediate_report_threshold,
        )

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def violations(self) -> ViolationRegistry:
        return self.monitor.violations

    def is_running(self) -> bool:
        return self._state != SessionState.STOPPED

    def is_paused(self) -> bool:
        return self._state == SessionState.PAUSED

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    def start(
        self,
        target_runs: int | None = None,
        start_new_run: Callable[[], Any] | None = None,
        on_run_start: Callable[[int, Any], None] | None = None,
        on_run_end: Callable[[dict[str, Any]], None] | None = None,
        on_session_end: Callable[[dict[str, Any], str], None] | None = None,
        on_stats_update: Callable[[dict[str, Any]], None] | None = None,
    ) -> bool:
        """Begin a session and request the first run.

        ``target_runs=None`` runs until stopped. Returns False if a session
        is already running.

        Raises:
            ValidationError: If ``target_runs`` is given and not positive.
        """
        if target_runs is not None and target_runs < 1:
            raise ValidationError(
                f"target_runs must be positive, got {target_runs}",
                context={"target_runs": target_runs},
            )
        with self._lock:
            if self._state != SessionState.STOPPED:
                logger.warning("Session already running")
                return False

            self.session_id = new_session_id(self._clock)
            self.runs_target = target_runs
            self.runs_completed = 0
            self._start_time = self._clock()
            self._stats = _SessionStats()
            self._awaiting_resume = False
            self._start_new_run = start_new_run
            self._on_run_start = on_run_start
            self._on_run_end = on_run_end
            self._on_session_end = on_session_end
            self._on_stats_update = on_stats_update
            SESSION_RUNS.set(0)

            self.store.metadata("lastSessionId", self.session_id)
            self.store.metadata("lastSessionStart", self._start_time)
            self._state = SessionState.RUNNING

        self.syncer.start()
        logger.info(
            f"Session {self.session_id} started "
            f"(target: {self.runs_target or 'unlimited'} runs)"
        )
        self._request_next_run()
        return True

    def stop(self, reason: str = "manual") -> bool:
        """End the session. Safe to call at any point, and more than once."""
        with self._lock:
            if self._state == SessionState.STOPPED:
                return False
            self._state = SessionState.STOPPED
            self._awaiting_resume = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

        logger.info(f"Stopping session {self.session_id}: {reason}")
        self.collector.discard()
        self.syncer.stop(flush=True)

        try:
            self.store.metadata("lastSessionEnd", self._clock())
            self.store.metadata("lastSessionRuns", self.runs_completed)
        except StorageError as e:
            logger.error(f"Could not record session end: {e}")

        summary = self.get_session_summary()
        if self._on_session_end:
            self._on_session_end(summary, reason)
        logger.info(f"Session complete: {self.runs_completed} runs")
        return True

    def pause(self) -> bool:
        """Stop requesting new runs until ``resume``."""
        with self._lock:
            if self._state != SessionState.RUNNING:
                return False
            self._state = SessionState.PAUSED
        logger.info("Session paused")
        return True

    def resume(self) -> bool:
        with self._lock:
            if self._state != SessionState.PAUSED:
                return False
            self._state = SessionState.RUNNING
            awaiting, self._awaiting_resume = self._awaiting_resume, False
        logger.info("Session resumed")
        if awaiting:
            self._schedule_next_run()
        return True

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    def on_run_start(self, initial_state: Any) -> None:
        if not self.is_running():
            return
        self._run_started_at = self._clock()
        self._run_violations = 0
        self._last_action_type = None
        self.collector.start_run(initial_state)
        self.monitor.clear_reports()
        self.monitor.record_initial_state(initial_state)
        run_number = self.runs_completed + 1
        logger.info(f"Run {run_number} started")
        if self._on_run_start:
            self._on_run_start(run_number, initial_state)

    def before_action(
        self,
        state: Any,
        action: Mapping[str, Any] | None,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Count the action and arm the monitor. Returns True if armed."""
        if not self.is_running():
            return False
        self._last_action_type = action_type(action)
        try:
            self.collector.record_action(action, state)
        except Exception:
            logger.exception("Could not record action statistics")
            HARNESS_INTERNAL_ERRORS.labels("collect").inc()
        return self.monitor.before_action(state, action, context)

    def after_action(self, state: Any) -> bool:
        """Evaluate the post-action state. Returns True if violations were found."""
        if not self.is_running():
            return False
        if self._last_action_type == "END_TURN":
            self.collector.record_turn_end(run_position(state)["turn"] or 0)
        return self.monitor.after_action(state)

    def on_run_end(self, final_state: Any) -> RunRecord | None:
        """Persist the run, update session aggregates, then move on.

        StoreUnavailableError propagates after the session is stopped: a run
        that cannot be stored must not be silently dropped. Any other
        persistence failure is logged and the session carries on.
        """
        if not self.is_running():
            return None
        if not isinstance(final_state, Mapping):
            final_state = {}

        record = None
        try:
            record = self.collector.end_run(final_state, session_id=self.session_id)
        except StoreUnavailableError as e:
            logger.critical(f"Simulation store unavailable, run not saved: {e}")
            self.stop("store_unavailable")
            raise
        except StorageError:
            logger.exception("Could not save run; continuing the session")
            HARNESS_INTERNAL_ERRORS.labels("run_end").inc()
        except Exception:
            logger.exception("Unexpected error closing the run; continuing the session")
            HARNESS_INTERNAL_ERRORS.labels("run_end").inc()

        turns = run_position(final_state)["turn"] or 0
        winner = final_state.get("winner")
        if winner not in (0, 1):
            winner = None
        self._update_stats(winner, turns)

        duration = self._clock() - (self._run_started_at or self._clock())
        logger.info(f"Run {self.runs_completed} ended: winner={winner}, turns={turns}")
        if self._on_run_end:
            self._on_run_end({
                "runNumber": self.runs_completed,
                "runId": record.id if record else None,
                "winner": winner,
                "turns": turns,
                "durationSeconds": round(duration, 3),
                "violations": self._run_violations,
            })
        if self._on_stats_update:
            self._on_stats_update(self.get_session_summary())

        with self._lock:
            if self._state == SessionState.STOPPED:
                return record
            if self.runs_target is not None and self.runs_completed >= self.runs_target:
                target_reached = True
            else:
                target_reached = False
                if self._state == SessionState.PAUSED:
                    self._awaiting_resume = True
                    logger.info("Session paused; next run starts on resume")
                    return record

        if target_reached:
            self.stop("target_reached")
        else:
            self._schedule_next_run()
        return record

    def _update_stats(self, winner: int | None, turns: int) -> None:
        self.runs_completed += 1
        stats = self._stats
        stats.total_turns += turns
        if winner is None:
            stats.draws += 1
        else:
            stats.wins[winner] += 1
        if turns > 0:
            stats.fastest_run = turns if stats.fastest_run is None else min(stats.fastest_run, turns)
            stats.longest_run = max(stats.longest_run, turns)
        SESSION_RUNS.set(self.runs_completed)
        observe_run_completed(winner, turns)

    def _on_violations(self, reports: list[Report], records: list[ViolationRecord]) -> None:
        if not self.is_running():
            return
        self._stats.total_violations += len(reports)
        self._run_violations += len(reports)
        self.collector.record_violation(len(reports))
        for record in records:
            if (
                record.occurrence_count >= self.immediate_report_threshold
                and not record.synced_to_remote
            ):
                self.syncer.queue_immediate(record)

    # ------------------------------------------------------------------
    # Run scheduling
    # ------------------------------------------------------------------

    def _schedule_next_run(self) -> None:
        if self.settle_delay_seconds <= 0:
            self._request_next_run()
            return
        with self._lock:
            if self._state != SessionState.RUNNING:
                return
            timer = threading.Timer(self.settle_delay_seconds, self._request_next_run)
            timer.daemon = True
            self._timer = timer
        timer.start()

    def _request_next_run(self) -> None:
        with self._lock:
            self._timer = None
            if self._state == SessionState.PAUSED:
                self._awaiting_resume = True
                return
            if self._state != SessionState.RUNNING:
                return
        if self._start_new_run is None:
            logger.error("No start_new_run callback provided")
            self.stop("no_run_starter")
            return
        logger.info(f"Requesting run {self.runs_completed + 1}")
        try:
            self._start_new_run()
        except Exception:
            logger.exception("Driver failed to start the next run")
            HARNESS_INTERNAL_ERRORS.labels("start_run").inc()
            self.stop("run_start_failed")

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def _runtime(self) -> float:
        return self._clock() - self._start_time if self._start_time else 0.0

    def get_status(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "isRunning": self.is_running(),
            "isPaused": self.is_paused(),
            "sessionId": self.session_id,
            "runsCompleted": self.runs_completed,
            "runsTarget": self.runs_target,
            "runtimeSeconds": round(self._runtime(), 3),
            "currentRun": self.collector.get_current_run_summary(),
        }

    def get_session_summary(self) -> dict[str, Any]:
        stats = self._stats
        completed = self.runs_completed
        runtime = self._runtime()
        return {
            "sessionId": self.session_id,
            "isRunning": self.is_running(),
            "isPaused": self.is_paused(),
            "runsCompleted": completed,
            "runsTarget": self.runs_target,
            "progress": round(completed / self.runs_target * 100) if self.runs_target else None,
            "wins": {
                "player0": stats.wins[0],
                "player1": stats.wins[1],
                "draws": stats.draws,
                "winRate0": round(stats.wins[0] / completed * 100) if completed else 0,
            },
            "averageTurns": round(stats.total_turns / completed) if completed else 0,
            "fastestRun": stats.fastest_run or 0,
            "longestRun": stats.longest_run,
            "violationsDetected": stats.total_violations,
            "runtime": round(runtime, 3),
            "runtimeFormatted": format_duration(runtime),
            "runsPerHour": round(completed / runtime * 3600) if runtime > 0 else 0,
        }

    def get_full_statistics(self) -> dict[str, Any]:
        """Session summary plus everything the store knows historically."""
        violation_stats = self.violations.get_stats()
        violation_stats["mostFrequent"] = [
            record.model_dump(mode="json", by_alias=True)
            for record in violation_stats["mostFrequent"]
        ]
        return {
            "currentSession": self.get_session_summary(),
            "historical": self.store.get_simulation_stats(),
            "violations": violation_stats,
            "sync": self.syncer.get_sync_status(),
            "synergies": {
                "top": self.collector.get_top_synergies(5),
                "worst": self.collector.get_worst_synergies(5),
            },
        }
