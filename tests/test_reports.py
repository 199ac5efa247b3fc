"""Tests for violation report construction and formatting."""

import re
from enum import Enum

import pytest

from simharness.models import ActionHistoryEntry, Severity, Violation, ViolationCategory
from simharness.reports import (
    action_type,
    create_minimal_report,
    create_report,
    fix_suggestion_for,
    format_report,
    new_report_id,
    run_position,
    summarize_context,
    summarize_payload,
    to_base36,
)


def _history(n):
    return [ActionHistoryEntry(type="END_TURN", summary=f"step {i}", timestamp=float(i)) for i in range(n)]


class TestHelpers:
    """Ids, suggestions and payload summaries."""

    def test_base36(self):
        """Test base-36 encoding."""
        assert to_base36(0) == "0"
        assert to_base36(35) == "z"
        assert to_base36(36) == "10"

    def test_report_id_format(self):
        """Test the VIO-<time>-<random> shape."""
        assert re.fullmatch(r"VIO-[0-9A-Z]+-[0-9A-F]{4}", new_report_id())

    def test_fix_suggestion_fallback(self):
        """Test known and unknown kinds."""
        assert "cleanupDestroyed" in fix_suggestion_for("zombie-entity").hint
        assert fix_suggestion_for("something-new").files == []

    def test_summarize_payload(self):
        """Test that cards reduce to names."""
        payload = {
            "attacker": {"name": "Wolf", "instanceId": "a"},
            "target": {"type": "creature", "card": {"name": "Deer"}},
            "slotIndex": 0,
        }
        assert summarize_payload(payload) == {"attacker": "Wolf", "target": "Deer", "slot": 0}
        assert summarize_payload({"target": {"type": "player"}}) == {"target": "player (direct)"}
        assert summarize_payload({}) is None

    def test_summarize_context(self):
        """Test consumed prey and player index."""
        context = {"predator": {"name": "Bear"}, "consumedPrey": [{"name": "Deer"}], "playerIndex": 1}
        assert summarize_context(context) == {"predator": "Bear", "consumedPrey": ["Deer"], "playerIndex": 1}
        assert summarize_context(None) is None


class TestCreateReport:
    """create_report() and format_report()."""

    def test_report_fields(self, state_factory, player_factory):
        """Test context, diff, history window and category."""
        before = state_factory(turn=3)
        after = state_factory(turn=3, players=[player_factory(), player_factory(hp=7)])
        violation = Violation(
            kind="zombie-entity", severity=Severity.HIGH, message="Wolf at 0 HP", details={"creature": "Wolf"}
        )

        report = create_report(
            violation,
            step=12,
            before=before,
            after=after,
            action={"type": "DECLARE_ATTACK", "payload": {"attacker": {"name": "Wolf"}}},
            action_history=_history(15),
            history_window=10,
        )

        assert report.id.startswith("VIO-")
        assert report.category == ViolationCategory.STATE_CORRUPTION
        assert report.step == 12
        assert report.turn == 3
        assert report.phase == "Combat"
        assert report.active_player == 0
        assert report.action == "DECLARE_ATTACK"
        assert report.action_payload == {"attacker": "Wolf"}
        assert "Player 2 HP: 10 -> 7" in report.state_diff.changes
        assert [e.summary for e in report.action_history] == [f"step {i}" for i in range(5, 15)]
        assert report.to_violation() == violation

    def test_report_without_before(self):
        """Test that a report without a before state has no diff."""
        report = create_report(Violation(kind="x", message="m"), step=1, after={"turn": 1})
        assert report.state_diff is None
        assert report.action is None

    def test_format_report(self, state_factory, player_factory):
        """Test the console rendering."""
        report = create_report(
            Violation(kind="zombie-entity", severity=Severity.HIGH, message="Wolf at 0 HP", details={"hp": 0}),
            step=2,
            before=state_factory(),
            after=state_factory(players=[player_factory(), player_factory(hp=7)]),
            action={"type": "DECLARE_ATTACK", "payload": {}},
            action_history=_history(2),
        )
        report.occurrence_count = 3
        report.fingerprint = "abc"

        text = format_report(report)

        assert f"VIOLATION DETECTED: {report.id}" in text
        assert "Severity: HIGH" in text
        assert "Occurrences: 3 (fingerprint abc)" in text
        assert "Action: DECLARE_ATTACK" in text
        assert "  * Player 2 HP: 10 -> 7" in text
        assert "  hp: 0" in text
        assert "  -> js/game/combat.js" in text
        assert "  2. END_TURN: step 1" in text


class Phase(Enum):
    MAIN = "Main"


class TestDriverInput:
    """Coercion of whatever the driver hands over."""

    @pytest.mark.parametrize("action,expected", [
        ({"type": "END_TURN"}, "END_TURN"),
        ({"type": 3}, "3"),
        ({"payload": {}}, None),
        ("END_TURN", "END_TURN"),
        ("", None),
        (None, None),
        (42, None),
    ])
    def test_action_type(self, action, expected):
        """Test the type of dict, string and unusable actions."""
        assert action_type(action) == expected

    def test_run_position(self):
        """Test int and enum phases and unusable states."""
        assert run_position({"turn": "4", "phase": 2, "activePlayerIndex": 1}) == {
            "turn": 4, "phase": "2", "active_player": 1,
        }
        assert run_position({"turn": "soon", "phase": Phase.MAIN})["phase"] == "Main"
        assert run_position({"turn": "soon"})["turn"] is None
        assert run_position(["not", "a", "state"]) == {"turn": None, "phase": None, "active_player": None}

    def test_create_report_with_loose_input(self):
        """Test a report for an int phase and a string action."""
        report = create_report(
            Violation(kind="zombie-entity", message="m"),
            step=1,
            after={"turn": 2, "phase": 1, "activePlayerIndex": 0},
            action="END_TURN",
        )
        assert report.phase == "1"
        assert report.action == "END_TURN"
        assert report.action_payload is None

    def test_minimal_report(self):
        """Test the fallback report keeps the violation and its id."""
        violation = Violation(kind="zombie-entity", severity=Severity.HIGH, message="Wolf at 0 HP")

        report = create_minimal_report(
            violation, step=4, report_id="r1", after={"turn": 3, "phase": "Combat"}, action={"type": "PLAY_CARD"}
        )

        assert report.id == "r1"
        assert report.category == ViolationCategory.STATE_CORRUPTION
        assert report.turn == 3
        assert report.action == "PLAY_CARD"
        assert report.state_diff is None
        assert report.action_history == []
        assert report.to_violation() == violation
