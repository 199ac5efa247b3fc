"""Prometheus metrics for the simulation harness.

This module centralises counters, gauges and histograms so the monitor,
store, sync reporter and orchestrator can record lightweight telemetry
without each component managing its own metric instances. Labels are kept
low-cardinality (violation kind, severity, outcome) so the series can be
scraped from long unattended fuzzing sessions.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Gauge, Histogram

ACTIONS_CHECKED: Final[Counter] = Counter(
    "simharness_actions_checked_total",
    "Total number of monitored actions whose after-state was evaluated.",
)

INVARIANT_VIOLATIONS: Final[Counter] = Counter(
    "simharness_invariant_violations_total",
    (
        "Total invariant violations detected by the run monitor, labeled by "
        "violation kind and severity."
    ),
    labelnames=("kind", "severity"),
)

PREDICATE_ERRORS: Final[Counter] = Counter(
    "simharness_predicate_errors_total",
    "Invariant predicates that raised instead of returning violations.",
    labelnames=("invariant",),
)

SNAPSHOT_FALLBACKS: Final[Counter] = Counter(
    "simharness_snapshot_fallbacks_total",
    "Snapshots that had to fall back to a JSON round trip.",
)

HARNESS_INTERNAL_ERRORS: Final[Counter] = Counter(
    "simharness_internal_errors_total",
    (
        "Harness-internal failures swallowed at an operation boundary, "
        "labeled by the stage that failed."
    ),
    labelnames=("stage",),
)

MONITOR_PAUSED: Final[Gauge] = Gauge(
    "simharness_monitor_paused",
    "1 while a run monitor is paused waiting for an operator resume.",
)

RUNS_COMPLETED: Final[Counter] = Counter(
    "simharness_runs_completed_total",
    "Completed simulation runs, labeled by outcome (player0/player1/draw).",
    labelnames=("outcome",),
)

RUN_TURNS: Final[Histogram] = Histogram(
    "simharness_run_turns",
    "Distribution of turns per completed run.",
    buckets=(5, 10, 15, 20, 30, 40, 60, 100),
)

RUNS_EVICTED: Final[Counter] = Counter(
    "simharness_runs_evicted_total",
    "Run records removed by FIFO eviction once the store is at capacity.",
)

SYNC_ATTEMPTS: Final[Counter] = Counter(
    "simharness_sync_attempts_total",
    (
        "Attempts to push a violation record to the remote reporting sink, "
        "labeled by mode (periodic/immediate) and outcome (synced/failed)."
    ),
    labelnames=("mode", "outcome"),
)

SESSION_RUNS: Final[Gauge] = Gauge(
    "simharness_session_runs_completed",
    "Runs completed in the current orchestrated session.",
)


def outcome_label(winner: int | None) -> str:
    """Map a run winner to the RUNS_COMPLETED outcome label."""
    if winner == 0:
        return "player0"
    if winner == 1:
        return "player1"
    return "draw"


def observe_run_completed(winner: int | None, turns: int) -> None:
    """Record a completed run in the outcome counter and turns histogram."""
    RUNS_COMPLETED.labels(outcome_label(winner)).inc()
    if turns > 0:
        RUN_TURNS.observe(turns)
