"""Tests for the session orchestrator, driven by a scripted fake engine."""

import re
import threading
from unittest.mock import MagicMock, patch

import pytest
from prometheus_client import REGISTRY

from simharness.collector import RunDataCollector
from simharness.config.harness_config import HarnessConfig
from simharness.errors import StorageError, StoreUnavailableError, ValidationError
from simharness.invariants.checks import build_default_registry
from simharness.monitor import RunMonitor
from simharness.orchestrator import (
    SessionOrchestrator,
    SessionState,
    format_duration,
    new_session_id,
)
from simharness.reporting.client import HttpReportingClient
from simharness.reporting.sync import ViolationSyncer


class ScriptedDriver:
    """Plays the same three-action run every time it is asked for one.

    PLAY_CARD puts a Wolf on the field, the Wolf attacks the opponent, then
    END_TURN advances to turn 2 and player 0 wins.
    """

    def __init__(self, orchestrator, state_factory, player_factory, creature_factory, zombie=False):
        self.orchestrator = orchestrator
        self.state_factory = state_factory
        self.player_factory = player_factory
        self.creature_factory = creature_factory
        self.zombie = zombie
        self.runs_started = 0

    def _states(self):
        wolf = self.creature_factory("Wolf", hp=3, summoned_turn=0, instance_id="wolf-1")
        deer = self.creature_factory("Deer", hp=2, instance_id="deer-1")
        start = self.state_factory(players=[
            self.player_factory(hand=[wolf], deck=[deer]),
            self.player_factory(),
        ])
        placed = dict(wolf, currentHp=0) if self.zombie else wolf
        on_field = self.state_factory(players=[
            self.player_factory(field=[placed], deck=[deer]),
            self.player_factory(),
        ])
        attacked = self.state_factory(players=[
            self.player_factory(field=[placed], deck=[deer]),
            self.player_factory(hp=8),
        ])
        ended = self.state_factory(turn=2, phase="Main", active_player=1, winner=0, players=[
            self.player_factory(field=[placed], deck=[deer]),
            self.player_factory(hp=8),
        ])
        return wolf, start, on_field, attacked, ended

    def play_run(self):
        self.runs_started += 1
        wolf, start, on_field, attacked, ended = self._states()
        orchestrator = self.orchestrator
        orchestrator.on_run_start(start)
        script = [
            ({"type": "PLAY_CARD", "payload": {"card": wolf}}, start, on_field),
            (
                {"type": "DECLARE_ATTACK", "payload": {"attacker": wolf, "target": {"type": "player"}}},
                on_field,
                attacked,
            ),
            ({"type": "END_TURN", "payload": {}}, attacked, ended),
        ]
        for action, before, after in script:
            orchestrator.before_action(before, action)
            orchestrator.after_action(after)
        orchestrator.on_run_end(ended)


@pytest.fixture
def syncer():
    return MagicMock(spec=ViolationSyncer)


@pytest.fixture
def orchestrator(store, violation_registry, syncer, clock):
    monitor = RunMonitor(build_default_registry(), violation_registry, unattended=True, clock=clock)
    return SessionOrchestrator(
        store,
        monitor,
        RunDataCollector(store, clock=clock),
        syncer,
        settle_delay_seconds=0,
        clock=clock,
    )


@pytest.fixture
def driver(orchestrator, state_factory, player_factory, creature_factory):
    return ScriptedDriver(orchestrator, state_factory, player_factory, creature_factory)


class TestSessionLifecycle:
    """start, stop, pause and resume."""

    def test_runs_until_target(self, orchestrator, driver, store):
        """Test that a 3-run session plays 3 runs and stops itself."""
        on_run_end = MagicMock()
        on_session_end = MagicMock()

        assert orchestrator.start(
            target_runs=3,
            start_new_run=driver.play_run,
            on_run_end=on_run_end,
            on_session_end=on_session_end,
        )

        assert driver.runs_started == 3
        assert orchestrator.state == SessionState.STOPPED
        assert [c.args[0]["runNumber"] for c in on_run_end.call_args_list] == [1, 2, 3]
        summary, reason = on_session_end.call_args.args
        assert reason == "target_reached"
        assert summary["runsCompleted"] == 3
        assert summary["progress"] == 100
        assert summary["wins"] == {"player0": 3, "player1": 0, "draws": 0, "winRate0": 100}
        assert summary["averageTurns"] == 2
        assert summary["violationsDetected"] == 0
        assert store.get_run_count() == 3
        assert store.metadata("lastSessionRuns") == 3
        assert store.metadata("lastSessionId") == orchestrator.session_id

    def test_runs_are_persisted_with_stats(self, orchestrator, driver, store):
        """Test that run records and card stats reach the store."""
        orchestrator.start(target_runs=1, start_new_run=driver.play_run)

        run = store.get_recent_runs()[0]
        assert run.winner == 0
        assert run.turns == 2
        assert run.session_id == orchestrator.session_id
        assert run.action_counts["PLAY_CARD"] == 1
        assert run.action_counts["DECLARE_ATTACK"] == 1
        assert run.action_counts["END_TURN"] == 1
        assert run.participants[0].cards_played == ["wolf"]
        wolf = store.get_subject_stats("wolf")
        assert wolf.play_count == 1
        assert wolf.win_count == 1

    def test_run_start_callback(self, orchestrator, driver):
        """Test that on_run_start gets the run number and state."""
        on_run_start = MagicMock()
        orchestrator.start(target_runs=2, start_new_run=driver.play_run, on_run_start=on_run_start)
        assert [c.args[0] for c in on_run_start.call_args_list] == [1, 2]

    def test_start_twice_refused(self, orchestrator):
        """Test that a running session cannot be started again."""
        assert orchestrator.start(start_new_run=lambda: None)
        assert orchestrator.start(start_new_run=lambda: None) is False
        assert orchestrator.is_running()

    def test_stop_is_idempotent(self, orchestrator, syncer):
        """Test that stop only acts once and flushes the syncer."""
        on_session_end = MagicMock()
        orchestrator.start(start_new_run=lambda: None, on_session_end=on_session_end)

        assert orchestrator.stop() is True
        assert orchestrator.stop() is False

        on_session_end.assert_called_once()
        assert on_session_end.call_args.args[1] == "manual"
        syncer.start.assert_called_once_with()
        syncer.stop.assert_called_once_with(flush=True)

    def test_pause_holds_next_run_until_resume(self, orchestrator, driver):
        """Test that pausing after run 1 waits, and resume finishes the session."""
        def pause_after_first(info):
            if info["runNumber"] == 1:
                orchestrator.pause()

        orchestrator.start(target_runs=3, start_new_run=driver.play_run, on_run_end=pause_after_first)

        assert driver.runs_started == 1
        assert orchestrator.is_paused()
        assert orchestrator.pause() is False

        assert orchestrator.resume() is True

        assert driver.runs_started == 3
        assert orchestrator.state == SessionState.STOPPED

    def test_resume_when_not_paused(self, orchestrator):
        """Test that resume only acts on a paused session."""
        assert orchestrator.resume() is False

    def test_settle_delay_uses_timer(self, store, violation_registry, syncer, driver):
        """Test that a positive settle delay still reaches the next run."""
        monitor = RunMonitor(build_default_registry(), violation_registry, unattended=True)
        orchestrator = SessionOrchestrator(
            store, monitor, RunDataCollector(store), syncer, settle_delay_seconds=0.01,
        )
        driver.orchestrator = orchestrator
        done = threading.Event()

        orchestrator.start(
            target_runs=2,
            start_new_run=driver.play_run,
            on_session_end=lambda summary, reason: done.set(),
        )

        assert done.wait(5.0)
        assert driver.runs_started == 2


class TestFailures:
    """Driver and store failures."""

    def test_missing_run_starter(self, orchestrator):
        """Test that a session without start_new_run stops at once."""
        on_session_end = MagicMock()
        orchestrator.start(target_runs=1, on_session_end=on_session_end)

        assert not orchestrator.is_running()
        assert on_session_end.call_args.args[1] == "no_run_starter"

    def test_run_start_failure(self, orchestrator):
        """Test that a raising start_new_run stops the session."""
        on_session_end = MagicMock()
        orchestrator.start(
            target_runs=2,
            start_new_run=MagicMock(side_effect=RuntimeError("engine crashed")),
            on_session_end=on_session_end,
        )

        assert not orchestrator.is_running()
        assert on_session_end.call_args.args[1] == "run_start_failed"

    def test_store_unavailable_propagates(self, orchestrator, state_factory):
        """Test that an unstorable run stops the session and re-raises."""
        on_session_end = MagicMock()
        orchestrator.start(start_new_run=lambda: None, on_session_end=on_session_end)
        orchestrator.on_run_start(state_factory())

        with patch.object(
            orchestrator.collector, "end_run", side_effect=StoreUnavailableError("disk gone")
        ):
            with pytest.raises(StoreUnavailableError):
                orchestrator.on_run_end(state_factory(winner=0))

        assert not orchestrator.is_running()
        assert on_session_end.call_args.args[1] == "store_unavailable"
        assert orchestrator.runs_completed == 0

    def test_storage_error_on_run_end_continues(self, orchestrator, driver, store):
        """Test that a run the store refuses is counted and the session goes on."""
        real_save = store.save_run
        saved = []

        def locked_on_second_run(record):
            saved.append(record)
            if len(saved) == 2:
                raise StorageError("database is locked", table="runs")
            return real_save(record)

        on_run_end = MagicMock()
        on_session_end = MagicMock()
        errors_before = REGISTRY.get_sample_value(
            "simharness_internal_errors_total", {"stage": "run_end"}
        ) or 0

        with patch.object(store, "save_run", side_effect=locked_on_second_run):
            orchestrator.start(
                target_runs=3,
                start_new_run=driver.play_run,
                on_run_end=on_run_end,
                on_session_end=on_session_end,
            )

        assert driver.runs_started == 3
        assert orchestrator.runs_completed == 3
        assert on_session_end.call_args.args[1] == "target_reached"
        run_ids = [c.args[0]["runId"] for c in on_run_end.call_args_list]
        assert run_ids[1] is None
        assert run_ids[0] is not None and run_ids[2] is not None
        assert store.get_run_count() == 2
        assert REGISTRY.get_sample_value(
            "simharness_internal_errors_total", {"stage": "run_end"}
        ) == errors_before + 1

    def test_unexpected_error_on_run_end_continues(self, orchestrator, driver, store):
        """Test that a non-storage failure while closing a run is not fatal."""
        with patch.object(store, "update_subject_stats", side_effect=RuntimeError("bad delta")):
            orchestrator.start(target_runs=2, start_new_run=driver.play_run)

        assert driver.runs_started == 2
        assert orchestrator.runs_completed == 2
        assert orchestrator.state == SessionState.STOPPED
        assert orchestrator.get_session_summary()["wins"]["player0"] == 2

    def test_non_positive_target_rejected(self, orchestrator):
        """Test that 0 or a negative target is an error, not an endless session."""
        start_new_run = MagicMock()
        for target in (0, -1):
            with pytest.raises(ValidationError):
                orchestrator.start(target_runs=target, start_new_run=start_new_run)

        start_new_run.assert_not_called()
        assert not orchestrator.is_running()
        assert orchestrator.runs_target is None

    def test_hooks_ignored_without_session(self, orchestrator, state_factory):
        """Test that driver hooks are no-ops while stopped."""
        state = state_factory()
        assert orchestrator.before_action(state, {"type": "END_TURN"}) is False
        assert orchestrator.after_action(state) is False
        assert orchestrator.on_run_end(state) is None


class TestViolations:
    """Violation counting and immediate reporting."""

    def test_immediate_report_at_threshold(
        self, orchestrator, syncer, state_factory, player_factory, creature_factory
    ):
        """Test that each defect is queued once it is seen a third time.

        The zombie Wolf is reported after each of the three actions, and each
        action gives its own fingerprint, so all three reach the threshold on
        the third run.
        """
        driver = ScriptedDriver(orchestrator, state_factory, player_factory, creature_factory, zombie=True)
        on_run_end = MagicMock()
        orchestrator.start(target_runs=3, start_new_run=driver.play_run, on_run_end=on_run_end)

        queued = [c.args[0] for c in syncer.queue_immediate.call_args_list]
        assert len(queued) == 3
        assert {r.type for r in queued} == {"zombie-entity"}
        assert {r.occurrence_count for r in queued} == {3}
        assert len({r.fingerprint for r in queued}) == 3

        assert [c.args[0]["violations"] for c in on_run_end.call_args_list] == [3, 3, 3]
        assert orchestrator.get_session_summary()["violationsDetected"] == 9
        assert orchestrator.store.get_recent_runs()[0].violations_detected == 3

    def test_only_the_violating_action_counts(
        self, orchestrator, store, state_factory, player_factory, creature_factory
    ):
        """Test a run where only the second of three actions breaks an invariant.

        The attack leaves the Wolf at 0 HP on the field; END_TURN moves it to
        carrion, so the third action is clean again.
        """
        wolf = creature_factory("Wolf", hp=3, summoned_turn=0, instance_id="wolf-1")
        start = state_factory(players=[player_factory(hand=[wolf]), player_factory()])
        on_field = state_factory(players=[player_factory(field=[wolf]), player_factory()])
        zombie = state_factory(players=[
            player_factory(field=[dict(wolf, currentHp=0)]),
            player_factory(hp=8),
        ])
        cleared = state_factory(turn=2, phase="Main", active_player=1, winner=0, players=[
            player_factory(carrion=[dict(wolf, currentHp=0)]),
            player_factory(hp=8),
        ])
        script = [
            ({"type": "PLAY_CARD", "payload": {"card": wolf}}, start, on_field),
            (
                {"type": "DECLARE_ATTACK", "payload": {"attacker": wolf, "target": {"type": "player"}}},
                on_field,
                zombie,
            ),
            ({"type": "END_TURN", "payload": {}}, zombie, cleared),
        ]
        on_run_end = MagicMock()
        orchestrator.start(target_runs=1, start_new_run=lambda: None, on_run_end=on_run_end)
        orchestrator.on_run_start(start)

        results = []
        for action, before, after in script:
            orchestrator.before_action(before, action)
            results.append(orchestrator.after_action(after))
        orchestrator.on_run_end(cleared)

        assert results == [False, True, False]
        records = store.get_all_violations()
        assert len(records) == 1
        assert records[0].type == "zombie-entity"
        assert records[0].occurrence_count == 1
        assert records[0].sample_reports[0]["context"]["action"] == "DECLARE_ATTACK"
        assert orchestrator.get_session_summary()["violationsDetected"] == 1
        assert on_run_end.call_args.args[0]["violations"] == 1
        assert store.get_recent_runs()[0].violations_detected == 1

    def test_string_actions_and_int_phases(self, orchestrator, store, state_factory):
        """Test that a driver using bare action names and int phases is supported."""
        state = state_factory(phase=1)
        orchestrator.start(target_runs=1, start_new_run=lambda: None)
        orchestrator.on_run_start(state)

        assert orchestrator.before_action(state, "END_TURN") is True
        assert orchestrator.after_action(state_factory(turn=2, phase=2)) is False
        orchestrator.on_run_end(state_factory(turn=2, phase=2, winner=1))

        run = store.get_recent_runs()[0]
        assert run.action_counts["END_TURN"] == 1
        assert run.action_counts["other"] == 0
        assert run.turns == 2
        assert run.winner == 1

    def test_full_statistics(self, orchestrator, driver):
        """Test that the combined view carries every section."""
        orchestrator.start(target_runs=1, start_new_run=driver.play_run)

        stats = orchestrator.get_full_statistics()

        assert set(stats) == {"currentSession", "historical", "violations", "sync", "synergies"}
        assert stats["historical"]["totalRuns"] == 1
        assert set(stats["synergies"]) == {"top", "worst"}


class TestHelpers:
    """Session ids, durations and wiring from config."""

    def test_session_id_format(self, clock):
        """Test the sim_<base36 ms>_<suffix> shape."""
        session_id = new_session_id(clock)
        assert re.fullmatch(r"sim_[0-9a-z]+_[0-9a-z]{4}", session_id)

    @pytest.mark.parametrize("seconds,expected", [
        (9, "9s"),
        (125, "2m 5s"),
        (3725, "1h 2m"),
    ])
    def test_format_duration(self, seconds, expected):
        """Test human-readable runtimes."""
        assert format_duration(seconds) == expected

    def test_from_config_builds_http_client(self, tmp_path):
        """Test that a remote_url wires an HttpReportingClient into the syncer."""
        config = HarnessConfig(
            db_path=str(tmp_path / "sim.db"),
            max_runs=10,
            remote_url="http://tracker.local/api",
            settle_delay_seconds=0,
        )

        orchestrator = SessionOrchestrator.from_config(config)

        assert isinstance(orchestrator.syncer.client, HttpReportingClient)
        assert orchestrator.store.max_runs == 10
        assert orchestrator.settle_delay_seconds == 0

    def test_from_config_without_remote(self, tmp_path):
        """Test that no remote_url leaves the syncer without a client."""
        orchestrator = SessionOrchestrator.from_config(HarnessConfig(db_path=str(tmp_path / "sim.db")))
        assert orchestrator.syncer.client is None

    def test_from_config_opt_in_invariants(self, tmp_path):
        """Test that config flags add card conservation and the effect checks."""
        config = HarnessConfig(
            db_path=str(tmp_path / "sim.db"),
            check_card_conservation=True,
            check_effects=True,
        )

        invariants = SessionOrchestrator.from_config(config).monitor.invariants

        assert "card-conservation" in invariants
        assert "combat-damage" in invariants
