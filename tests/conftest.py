"""
Shared pytest fixtures for simharness tests.

Game state fixtures are plain dicts shaped like the simulation driver's
state: two players, each with hand/deck/field/carrion/exile/traps zones and a
three-slot field. All fixtures are function-scoped so tests never share a
store or a mutable state.
"""

from itertools import count
from pathlib import Path
import sys
from typing import Any, Callable, Dict, List, Optional

import pytest


# =============================================================================
# PROMETHEUS REGISTRY FIX
# =============================================================================
# Metrics are registered at import time in simharness/metrics.py. Importing
# the module through different paths during collection would otherwise raise
# "Duplicated timeseries in CollectorRegistry".


def _patch_prometheus_registry():
    """Make re-registration of identical metrics a no-op instead of an error."""
    try:
        from prometheus_client.registry import CollectorRegistry

        _original_register = CollectorRegistry.register

        def _safe_register(self, collector):
            """Register collector, ignoring duplicates."""
            try:
                return _original_register(self, collector)
            except ValueError as e:
                if "Duplicated timeseries" in str(e):
                    pass
                else:
                    raise

        if not getattr(CollectorRegistry, '_patched_for_tests', False):
            CollectorRegistry.register = _safe_register
            CollectorRegistry._patched_for_tests = True

    except ImportError:
        pass


_patch_prometheus_registry()

# Ensure the repository root is on sys.path so `import simharness` and
# `import scripts` work without an editable install.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from simharness.db.simulation_store import SimulationStore
from simharness.invariants.checks import build_default_registry
from simharness.monitor import RunMonitor
from simharness.violations.registry import ViolationRegistry


# =============================================================================
# CLOCK
# =============================================================================


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# GAME STATE FACTORIES
# =============================================================================


@pytest.fixture
def creature_factory() -> Callable[..., Dict[str, Any]]:
    """Factory for field creatures with unique instance ids."""
    ids = count(1)

    def _create_creature(
        name: str = "Wolf",
        hp: int = 3,
        atk: int = 2,
        creature_type: str = "Prey",
        keywords: Optional[List[str]] = None,
        summoned_turn: int = 1,
        instance_id: Optional[str] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        creature = {
            "instanceId": instance_id or f"inst-{next(ids)}",
            "id": name.lower().replace(" ", "-"),
            "name": name,
            "type": creature_type,
            "hp": hp,
            "atk": atk,
            "currentHp": hp,
            "currentAtk": atk,
            "keywords": list(keywords or []),
            "summonedTurn": summoned_turn,
            "dryDropped": False,
            "hasBarrier": False,
        }
        creature.update(extra)
        return creature

    return _create_creature


@pytest.fixture
def player_factory() -> Callable[..., Dict[str, Any]]:
    """Factory for players; ``field`` is padded to three slots."""

    def _create_player(
        hp: int = 10,
        hand: Optional[List[Dict[str, Any]]] = None,
        deck: Optional[List[Dict[str, Any]]] = None,
        field: Optional[List[Optional[Dict[str, Any]]]] = None,
        carrion: Optional[List[Dict[str, Any]]] = None,
        exile: Optional[List[Dict[str, Any]]] = None,
        traps: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        slots = list(field or [])
        slots += [None] * (3 - len(slots))
        return {
            "hp": hp,
            "hand": list(hand or []),
            "deck": list(deck or []),
            "field": slots,
            "carrion": list(carrion or []),
            "exile": list(exile or []),
            "traps": list(traps or []),
        }

    return _create_player


@pytest.fixture
def state_factory(player_factory) -> Callable[..., Dict[str, Any]]:
    """Factory for a two-player game state."""

    def _create_state(
        turn: int = 1,
        phase: str = "Combat",
        active_player: int = 0,
        players: Optional[List[Dict[str, Any]]] = None,
        winner: Optional[int] = None,
    ) -> Dict[str, Any]:
        return {
            "turn": turn,
            "phase": phase,
            "activePlayerIndex": active_player,
            "winner": winner,
            "players": players if players is not None else [player_factory(), player_factory()],
        }

    return _create_state


@pytest.fixture
def attack_action() -> Callable[..., Dict[str, Any]]:
    """Factory for DECLARE_ATTACK actions; no target card means a direct attack."""

    def _create_attack(
        attacker: Dict[str, Any],
        target_card: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if target_card is None:
            target = {"type": "player"}
        else:
            target = {"type": "creature", "card": target_card}
        return {"type": "DECLARE_ATTACK", "payload": {"attacker": attacker, "target": target}}

    return _create_attack


# =============================================================================
# HARNESS COMPONENTS
# =============================================================================


@pytest.fixture
def store(tmp_path) -> SimulationStore:
    """A fresh store in a temporary directory."""
    return SimulationStore(tmp_path / "simulation.db")


@pytest.fixture
def violation_registry(store, clock) -> ViolationRegistry:
    return ViolationRegistry(store, clock=clock)


@pytest.fixture
def monitor(violation_registry, clock) -> RunMonitor:
    """Attended monitor loaded with every default invariant."""
    return RunMonitor(build_default_registry(), violation_registry, clock=clock)
