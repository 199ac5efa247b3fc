"""Invariant-based regression harness for the creature card game simulation.

The harness brackets every action a simulation driver performs, checks a
registry of invariants against the before/after states, deduplicates the
violations it finds and keeps a bounded history of runs in SQLite. The
recommended entry point wires everything from configuration:

    from simharness import HarnessConfig, SessionOrchestrator

    harness = SessionOrchestrator.from_config(HarnessConfig.from_env())
    harness.start(target_runs=100, start_new_run=driver.new_game)

    # inside the driver loop
    harness.on_run_start(state)
    harness.before_action(state, action, context)
    ...apply action...
    harness.after_action(state)
    harness.on_run_end(state)

Architecture:
- state/: snapshots, state diffs and keyword helpers
- invariants/: predicate registry and the card game checks
- violations/: fingerprinting and the deduplicating registry
- db/: bounded SQLite store for runs, card stats, violations and metadata
- monitor.py: before/after action monitor with pause/resume
- collector.py: per-run statistics and card synergies
- reporting/: remote reporting client and background sync
- orchestrator.py: multi-run sessions
"""

from simharness.config.harness_config import HarnessConfig
from simharness.db.simulation_store import SimulationStore
from simharness.errors import SimHarnessError, StorageError, StoreUnavailableError
from simharness.invariants import InvariantRegistry, build_default_registry
from simharness.models import Report, Severity, Violation, ViolationRecord
from simharness.monitor import RunMonitor
from simharness.orchestrator import SessionOrchestrator
from simharness.violations.registry import ViolationRegistry

__version__ = "0.1.0"

__all__ = [
    "HarnessConfig",
    "InvariantRegistry",
    "Report",
    "RunMonitor",
    "SessionOrchestrator",
    "Severity",
    "SimHarnessError",
    "SimulationStore",
    "StorageError",
    "StoreUnavailableError",
    "Violation",
    "ViolationRecord",
    "ViolationRegistry",
    "build_default_registry",
]
