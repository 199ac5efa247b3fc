"""Violation reports.

A report wraps a violation with everything needed to reproduce it: the
action that triggered it, the run position, a before/after state diff, the
recent action history and a pointer to where the fix most likely lives.
"""

from __future__ import annotations

import json
import secrets
import string
import time
from enum import Enum
from typing import Any, Iterable, Mapping

from simharness.models import (
    ActionHistoryEntry,
    FixSuggestion,
    Report,
    StateDiff,
    Violation,
)
from simharness.state.snapshot import describe_diff, diff_snapshots
from simharness.violations.fingerprint import categorize

REPORT_HISTORY_WINDOW = 10

_BASE36 = string.digits + string.ascii_lowercase

FIX_SUGGESTIONS: dict[str, FixSuggestion] = {
    "zombie-entity": FixSuggestion(
        hint="Check cleanupDestroyed() calls after damage is dealt",
        files=["js/game/combat.js", "js/game/controller.js"],
    ),
    "duplicate-ids": FixSuggestion(
        hint="Check createCardInstance() and card cloning",
        files=["js/cardTypes.js", "js/game/controller.js"],
    ),
    "summoning-sickness": FixSuggestion(
        hint="Check canAttack() validation and summonedTurn tracking",
        files=["js/game/combat.js", "js/ai/AIController.js"],
    ),
    "barrier-bypass": FixSuggestion(
        hint="Check the hasBarrier branch in resolveCreatureCombat()",
        files=["js/game/combat.js", "js/keywords.js"],
    ),
    "passive-attack": FixSuggestion(
        hint="Check cantAttack(); Passive creatures must never be offered as attackers",
        files=["js/keywords.js", "js/ai/MoveGenerator.js", "js/ai/AIController.js"],
    ),
    "lure-bypass": FixSuggestion(
        hint="Check Lure filtering in getValidTargets()",
        files=["js/game/combat.js"],
    ),
    "lure-bypass-direct": FixSuggestion(
        hint="Check Lure filtering in getValidTargets() for direct attacks",
        files=["js/game/combat.js"],
    ),
    "hidden-targeted": FixSuggestion(
        hint="Check Hidden/Acuity handling in getValidTargets()",
        files=["js/game/combat.js", "js/keywords.js"],
    ),
    "invisible-targeted": FixSuggestion(
        hint="Check Invisible/Acuity handling in getValidTargets()",
        files=["js/game/combat.js", "js/keywords.js"],
    ),
    "dry-drop-keyword-retained": FixSuggestion(
        hint="Check the dryDropped flag in areAbilitiesActive()",
        files=["js/keywords.js", "js/game/consumption.js"],
    ),
    "card-count-mismatch": FixSuggestion(
        hint="Check card zone transitions (hand -> field, field -> carrion)",
        files=["js/game/controller.js", "js/game/effects.js"],
    ),
    "hp-underflow": FixSuggestion(
        hint="Check damage and healing clamping",
        files=["js/game/combat.js", "js/game/effects.js"],
    ),
    "hp-overflow": FixSuggestion(
        hint="Check damage and healing clamping",
        files=["js/game/combat.js", "js/game/effects.js"],
    ),
    "negative-attack": FixSuggestion(
        hint="Check buff/debuff calculations for a floor at 0",
        files=["js/game/effects.js", "js/cards/effectLibrary.js"],
    ),
    "turn-decreased": FixSuggestion(
        hint="Check turn advancement in endTurn()",
        files=["js/game/turnManager.js"],
    ),
    "turn-skipped": FixSuggestion(
        hint="Check turn advancement in endTurn()",
        files=["js/game/turnManager.js"],
    ),
}

DEFAULT_FIX_SUGGESTION = FixSuggestion(hint="Review the related game logic", files=[])


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def new_report_id() -> str:
    stamp = to_base36(int(time.time() * 1000)).upper()
    return f"VIO-{stamp}-{secrets.token_hex(2).upper()}"


def fix_suggestion_for(kind: str) -> FixSuggestion:
    return FIX_SUGGESTIONS.get(kind, DEFAULT_FIX_SUGGESTION)


def action_type(action: Any) -> str | None:
    """Type of an action dict. A bare string action is its own type."""
    if isinstance(action, Mapping):
        kind = action.get("type")
        return None if kind is None else str(kind)
    if isinstance(action, str):
        return action or None
    return None


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        value = value.value
    return str(value)


def run_position(state: Any) -> dict[str, Any]:
    """Turn, phase and active player of ``state`` coerced to report types.

    Drivers are free to use ints or enums for phases; anything that is not
    a mapping has no position.
    """
    if not isinstance(state, Mapping):
        return {"turn": None, "phase": None, "active_player": None}
    return {
        "turn": _as_int(state.get("turn")),
        "phase": _as_str(state.get("phase")),
        "active_player": _as_int(state.get("activePlayerIndex")),
    }


def _name(card: Any) -> Any:
    if isinstance(card, Mapping):
        return card.get("name") or card.get("id")
    return card


def summarize_payload(payload: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Reduce an action payload to card names and slot numbers."""
    if not payload:
        return None
    summary: dict[str, Any] = {}
    if payload.get("card"):
        summary["card"] = _name(payload["card"])
    if payload.get("trap"):
        summary["trap"] = _name(payload["trap"])
    if payload.get("attacker"):
        summary["attacker"] = _name(payload["attacker"])
    target = payload.get("target")
    if isinstance(target, Mapping):
        if target.get("type") == "player":
            summary["target"] = "player (direct)"
        elif target.get("card"):
            summary["target"] = _name(target["card"])
    if payload.get("slotIndex") is not None:
        summary["slot"] = payload["slotIndex"]
    return summary or None


def summarize_context(context: Mapping[str, Any] | None) -> dict[str, Any] | None:
    if not context:
        return None
    summary: dict[str, Any] = {}
    for key in ("card", "predator", "attacker"):
        if context.get(key):
            summary[key] = _name(context[key])
    if context.get("consumedPrey"):
        summary["consumedPrey"] = [_name(p) for p in context["consumedPrey"]]
    if context.get("playerIndex") is not None:
        summary["playerIndex"] = context["playerIndex"]
    target = context.get("target")
    if isinstance(target, Mapping):
        summary["target"] = "player" if target.get("type") == "player" else _name(target.get("card"))
    return summary or None


def create_report(
    violation: Violation,
    *,
    step: int,
    before: Any = None,
    after: Any = None,
    action: Mapping[str, Any] | None = None,
    action_context: Mapping[str, Any] | None = None,
    action_history: Iterable[ActionHistoryEntry] = (),
    history_window: int = REPORT_HISTORY_WINDOW,
    report_id: str | None = None,
) -> Report:
    """Build a Report for one violation detected after ``action``."""
    state_diff = None
    if before is not None and after is not None:
        raw = diff_snapshots(before, after)
        state_diff = StateDiff(changes=describe_diff(raw), raw=raw)

    payload = action.get("payload") if isinstance(action, Mapping) else None
    if not isinstance(payload, Mapping):
        payload = None
    history = list(action_history)
    return Report(
        id=report_id or new_report_id(),
        type=violation.kind,
        severity=violation.severity,
        category=categorize(violation.kind),
        message=violation.message,
        details=dict(violation.details),
        step=step,
        **run_position(after),
        action=action_type(action),
        action_payload=summarize_payload(payload),
        action_context=summarize_context(action_context),
        state_diff=state_diff,
        action_history=history[-history_window:] if history_window else [],
        fix_suggestion=fix_suggestion_for(violation.kind),
    )


def create_minimal_report(
    violation: Violation,
    *,
    step: int,
    report_id: str | None = None,
    after: Any = None,
    action: Any = None,
) -> Report:
    """Report without diff, payload or history, used when the full build fails."""
    return Report(
        id=report_id or new_report_id(),
        type=violation.kind,
        severity=violation.severity,
        category=categorize(violation.kind),
        message=violation.message,
        details=dict(violation.details),
        step=step,
        **run_position(after),
        action=action_type(action),
        fix_suggestion=fix_suggestion_for(violation.kind),
    )


def format_report(report: Report) -> str:
    """Multi-line plain-text rendering of a report for logs and consoles."""
    rule = "=" * 47
    lines = [
        rule,
        f"VIOLATION DETECTED: {report.id}",
        rule,
        "",
        f"Type: {report.type}",
        f"Category: {report.category.value}",
        f"Severity: {report.severity.value.upper()}",
    ]
    if report.occurrence_count:
        lines.append(f"Occurrences: {report.occurrence_count} (fingerprint {report.fingerprint})")
    lines += [
        "",
        f"Message: {report.message}",
        "",
        "-- Run Context --",
        f"Step: {report.step}, Turn: {report.turn}, Phase: {report.phase}",
        f"Active Player: {report.active_player}",
    ]
    if report.action:
        lines.append(f"Action: {report.action}")
    lines.append("")

    if report.state_diff and report.state_diff.changes:
        lines.append("-- State Changes --")
        lines.extend(f"  * {change}" for change in report.state_diff.changes)
        lines.append("")

    if report.details:
        lines.append("-- Details --")
        for key, value in report.details.items():
            lines.append(f"  {key}: {json.dumps(value, default=str)}")
        lines.append("")

    lines.append("-- Suggested Fix --")
    lines.append(f"Hint: {report.fix_suggestion.hint}")
    if report.fix_suggestion.files:
        lines.append("Check files:")
        lines.extend(f"  -> {path}" for path in report.fix_suggestion.files)
    lines.append("")

    if report.action_history:
        lines.append(f"-- Recent Actions (last {len(report.action_history)}) --")
        for i, entry in enumerate(report.action_history[-5:], start=1):
            lines.append(f"  {i}. {entry.type}: {entry.summary}")

    lines.append(rule)
    return "\n".join(lines)
