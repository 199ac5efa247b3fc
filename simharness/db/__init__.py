"""Persistent storage for the simulation harness."""

from simharness.db.simulation_store import DEFAULT_MAX_RUNS, SimulationStore

__all__ = ["DEFAULT_MAX_RUNS", "SimulationStore"]
