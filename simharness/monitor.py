"""Run monitor: brackets every driver action with invariant evaluation.

The driver calls ``before_action`` right before it mutates state and
``after_action`` right after. The monitor snapshots the state on both sides,
evaluates the invariant registry, records each violation through the
violation registry and, unless running unattended, pauses until an operator
calls ``resume``.

States::

    IDLE --before_action--> ARMED --after_action--> IDLE

``paused`` sits on top of that: while paused, ``before_action`` is refused.
The monitor never raises into the driver. Harness-internal failures are
logged and counted, and the monitor drops back to IDLE.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from simharness.errors import StoreUnavailableError
from simharness.invariants.registry import InvariantRegistry
from simharness.metrics import (
    ACTIONS_CHECKED,
    HARNESS_INTERNAL_ERRORS,
    INVARIANT_VIOLATIONS,
    MONITOR_PAUSED,
)
from simharness.models import (
    ActionHistoryEntry,
    Report,
    Severity,
    Violation,
    ViolationRecord,
)
from simharness.reports import (
    REPORT_HISTORY_WINDOW,
    action_type,
    create_minimal_report,
    create_report,
    format_report,
    new_report_id,
    run_position,
    summarize_payload,
)
from simharness.state.snapshot import get_total_card_count, snapshot
from simharness.violations.registry import ViolationRegistry

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50

ViolationListener = Callable[[list[Report], list[ViolationRecord]], None]


class MonitorState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"


def describe_action(action: Mapping[str, Any] | None, context: Mapping[str, Any] | None = None) -> str:
    """Short human description of an action, e.g. ``Wolf attacks player``."""
    if not action:
        return ""
    if not isinstance(action, Mapping):
        return str(action)
    if not isinstance(context, Mapping):
        context = {}
    kind = action.get("type")
    payload = action.get("payload")
    if not isinstance(payload, Mapping):
        payload = {}

    def name(card, fallback=""):
        if not isinstance(card, Mapping):
            return str(card) if card else fallback
        return card.get("name") or fallback

    if kind == "PLAY_CARD":
        return f"Play {name(payload.get('card'), 'card')}"
    if kind == "PLAY_CREATURE":
        return f"Play creature {name(context.get('card')) or name(payload.get('card'))}"
    if kind == "PLAY_PREDATOR":
        prey = context.get("consumedPrey") or []
        how = "consuming " + ", ".join(name(p) for p in prey) if prey else "dry drop"
        return f"Play predator {name(context.get('predator')) or name(payload.get('card'))} ({how})"
    if kind == "DECLARE_ATTACK":
        target = payload.get("target")
        if not isinstance(target, Mapping):
            target = {}
        target_name = "player" if target.get("type") == "player" else name(target.get("card"), "target")
        return f"{name(payload.get('attacker'), 'creature')} attacks {target_name}"
    if kind == "ACTIVATE_TRAP":
        return f"Activate trap {name(payload.get('trap'))}"
    summary = summarize_payload(payload)
    return ", ".join(f"{k}={v}" for k, v in summary.items()) if summary else ""


class RunMonitor:
    """Before/after invariant monitor for one driver.

    Args:
        invariants: Registry evaluated after every action.
        violations: Registry every detected violation is recorded through.
        history_size: Length of the action history ring.
        report_history_window: How many history entries each report carries.
        unattended: When True, violations are recorded but never pause.
        on_pause / on_resume: Called when the monitor pauses or resumes.
        on_store_failure: Called with the StoreUnavailableError when the
            violation store cannot be written.
    """

    def __init__(
        self,
        invariants: InvariantRegistry,
        violations: ViolationRegistry,
        history_size: int = DEFAULT_HISTORY_SIZE,
        report_history_window: int = REPORT_HISTORY_WINDOW,
        unattended: bool = False,
        on_pause: Callable[[], None] | None = None,
        on_resume: Callable[[], None] | None = None,
        on_store_failure: Callable[[StoreUnavailableError], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.invariants = invariants
        self.violations = violations
        self.report_history_window = report_history_window
        self.on_pause = on_pause
        self.on_resume = on_resume
        self.on_store_failure = on_store_failure
        self._clock = clock

        self._guard = threading.Lock()
        self._state = MonitorState.IDLE
        self._enabled = True
        self._paused = False
        self._unattended = unattended
        self._resume_callback: Callable[[], None] | None = None
        self._listeners: list[ViolationListener] = []

        self._before: Any = None
        self._action: Mapping[str, Any] | None = None
        self._action_context: Mapping[str, Any] | None = None
        self._step = 0
        self._history: deque[ActionHistoryEntry] = deque(maxlen=history_size)
        self._reports: list[Report] = []
        self.initial_card_count: int | None = None
        self._reset_stats()

    # ------------------------------------------------------------------
    # Mode switches
    # ------------------------------------------------------------------

    def _reset_stats(self) -> None:
        self._stats = {
            "actionsChecked": 0,
            "violationsFound": 0,
            "violationsByCategory": {},
            "violationsBySeverity": {s.value: 0 for s in sorted(Severity, reverse=True)},
            "startTime": self._clock(),
        }

    @property
    def state(self) -> MonitorState:
        return self._state

    def is_enabled(self) -> bool:
        return self._enabled

    def enable(self, unattended: bool | None = None) -> None:
        """Re-enable monitoring with fresh stats, history and reports."""
        self._enabled = True
        self._set_paused(False)
        if unattended is not None:
            self._unattended = unattended
        self._disarm()
        self._history.clear()
        self._reports = []
        self._step = 0
        self._reset_stats()
        logger.info(f"Run monitor enabled (unattended: {self._unattended})")

    def disable(self) -> None:
        self._enabled = False
        self._set_paused(False)
        self._disarm()
        logger.info("Run monitor disabled")

    def enable_unattended_mode(self) -> None:
        self._unattended = True
        logger.info("Unattended mode enabled: violations are recorded without pausing")

    def disable_unattended_mode(self) -> None:
        self._unattended = False
        logger.info("Unattended mode disabled: the monitor pauses on violations")

    def is_unattended(self) -> bool:
        return self._unattended

    # ------------------------------------------------------------------
    # Pause / resume
    # ------------------------------------------------------------------

    def _set_paused(self, paused: bool) -> None:
        self._paused = paused
        MONITOR_PAUSED.set(1 if paused else 0)

    def is_paused(self) -> bool:
        return self._paused

    def pause(self) -> None:
        if self._paused:
            return
        self._set_paused(True)
        logger.warning("Run monitor paused; call resume() to continue")
        if self.on_pause:
            self.on_pause()

    def set_resume_callback(self, callback: Callable[[], None] | None) -> None:
        """Store the continuation fired by the next resume().

        Only one continuation is held; setting a new one replaces the old.
        """
        self._resume_callback = callback

    def resume(self) -> bool:
        """Clear the pause and fire the stored continuation once.

        Returns False when the monitor was not paused.
        """
        if not self._paused:
            return False
        self._set_paused(False)
        logger.info("Run monitor resumed")
        if self.on_resume:
            self.on_resume()
        callback, self._resume_callback = self._resume_callback, None
        if callback is not None:
            callback()
        return True

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ViolationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ViolationListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, reports: list[Report], records: list[ViolationRecord]) -> None:
        for listener in list(self._listeners):
            try:
                listener(reports, records)
            except Exception:
                logger.exception("Violation listener failed")
                HARNESS_INTERNAL_ERRORS.labels("listener").inc()

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    def record_initial_state(self, state: Any) -> None:
        try:
            self.initial_card_count = get_total_card_count(state)
        except Exception:
            logger.exception("Could not count cards in the initial state")
            HARNESS_INTERNAL_ERRORS.labels("initial_state").inc()
            self.initial_card_count = None
            return
        logger.debug(f"Initial card count: {self.initial_card_count}")

    def _disarm(self) -> None:
        self._state = MonitorState.IDLE
        self._before = None
        self._action = None
        self._action_context = None

    def before_action(
        self,
        state: Any,
        action: Mapping[str, Any] | None,
        context: Mapping[str, Any] | None = None,
    ) -> bool:
        """Snapshot the pre-action state. Returns True if the monitor armed."""
        if not self._enabled or self._paused or self._state != MonitorState.IDLE:
            return False
        if not self._guard.acquire(blocking=False):
            logger.debug("before_action re-entered while monitor busy; ignoring")
            return False
        try:
            try:
                self._before = snapshot(state)
            except Exception:
                logger.exception("Could not snapshot state before action")
                HARNESS_INTERNAL_ERRORS.labels("snapshot").inc()
                self._disarm()
                return False
            self._action = action
            self._action_context = dict(context) if isinstance(context, Mapping) else {}
            self._step += 1
            self._record_history(state, action, context)
            self._state = MonitorState.ARMED
            return True
        finally:
            self._guard.release()

    def _record_history(self, state: Any, action: Any, context: Any) -> None:
        """Append to the history ring. A bad entry is dropped, not raised."""
        try:
            summary = describe_action(action, context)
        except Exception:
            logger.exception("Could not describe action")
            HARNESS_INTERNAL_ERRORS.labels("history").inc()
            summary = ""
        try:
            entry = ActionHistoryEntry(
                type=action_type(action) or "UNKNOWN",
                summary=summary,
                timestamp=self._clock(),
                **run_position(state),
            )
        except Exception:
            logger.exception("Could not build action history entry")
            HARNESS_INTERNAL_ERRORS.labels("history").inc()
            return
        self._history.append(entry)

    def after_action(self, state: Any) -> bool:
        """Evaluate invariants on the post-action state.

        Returns True iff at least one violation was found.
        """
        if not self._enabled or self._state != MonitorState.ARMED:
            return False
        if not self._guard.acquire(blocking=False):
            logger.debug("after_action re-entered while monitor busy; ignoring")
            return False

        reports: list[Report] = []
        records: list[ViolationRecord] = []
        try:
            reports, records = self._evaluate(state)
        except Exception:
            logger.exception("Post-action evaluation failed")
            HARNESS_INTERNAL_ERRORS.labels("evaluate").inc()
        finally:
            self._disarm()
            self._guard.release()

        if not reports:
            return False

        self._notify(reports, records)
        if not self._unattended:
            self.pause()
        return True

    def _evaluate(self, state: Any) -> tuple[list[Report], list[ViolationRecord]]:
        reports: list[Report] = []
        records: list[ViolationRecord] = []
        before, action = self._before, self._action

        try:
            after = snapshot(state)
            found = self.invariants.evaluate(after, before, action)
        except Exception:
            logger.exception("Invariant evaluation failed")
            HARNESS_INTERNAL_ERRORS.labels("evaluate").inc()
            return reports, records

        ACTIONS_CHECKED.inc()
        self._stats["actionsChecked"] += 1
        if not found:
            return reports, records

        position = run_position(after)
        context = {
            "action": action_type(action),
            "phase": position["phase"],
            "turn": position["turn"],
            "activePlayer": position["active_player"],
        }
        store_ok = True
        for violation in found:
            # Recorded before the report is built: the report is diagnostic,
            # the record is not.
            report_id = new_report_id()
            record = None
            if store_ok:
                try:
                    record = self.violations.record(violation, context, report_id=report_id)
                    records.append(record)
                except StoreUnavailableError as e:
                    store_ok = False
                    logger.critical(f"Violation store unavailable, violations are not being persisted: {e}")
                    HARNESS_INTERNAL_ERRORS.labels("store_unavailable").inc()
                    if self.on_store_failure:
                        self.on_store_failure(e)
                except Exception:
                    logger.exception(f"Could not record {violation.kind}")
                    HARNESS_INTERNAL_ERRORS.labels("record").inc()

            report = self._build_report(violation, report_id, before, after, action)
            if record is not None:
                report.occurrence_count = record.occurrence_count
                report.fingerprint = record.fingerprint
            reports.append(report)
            self._count(report)
            count = f" (x{report.occurrence_count})" if report.occurrence_count else ""
            logger.warning(f"Invariant violated [{report.type}]: {report.message}{count}")
            logger.debug(format_report(report))

        self._reports.extend(reports)
        return reports, records

    def _build_report(
        self,
        violation: Violation,
        report_id: str,
        before: Any,
        after: Any,
        action: Any,
    ) -> Report:
        try:
            return create_report(
                violation,
                step=self._step,
                before=before,
                after=after,
                action=action,
                action_context=self._action_context,
                action_history=self._history,
                history_window=self.report_history_window,
                report_id=report_id,
            )
        except Exception:
            logger.exception(f"Could not build full report for {violation.kind}; using a minimal one")
            HARNESS_INTERNAL_ERRORS.labels("report").inc()
        return create_minimal_report(
            violation, step=self._step, report_id=report_id, after=after, action=action
        )

    def _count(self, report: Report) -> None:
        INVARIANT_VIOLATIONS.labels(report.type, report.severity.value).inc()
        self._stats["violationsFound"] += 1
        by_category = self._stats["violationsByCategory"]
        by_category[report.category.value] = by_category.get(report.category.value, 0) + 1
        self._stats["violationsBySeverity"][report.severity.value] += 1

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def get_reports(self) -> list[Report]:
        return list(self._reports)

    def clear_reports(self) -> None:
        """Forget reports and action history, e.g. when a new run starts."""
        self._reports = []
        self._history.clear()

    def get_action_history(self) -> list[ActionHistoryEntry]:
        return list(self._history)

    def get_stats(self) -> dict[str, Any]:
        stats = dict(self._stats)
        stats["violationsByCategory"] = dict(stats["violationsByCategory"])
        stats["violationsBySeverity"] = dict(stats["violationsBySeverity"])
        stats["runtimeSeconds"] = round(self._clock() - stats["startTime"], 3)
        checked = stats["actionsChecked"]
        stats["violationsPerAction"] = round(stats["violationsFound"] / checked, 4) if checked else 0.0
        return stats

    def format_report(self, report: Report) -> str:
        return format_report(report)

    def generate_summary_report(self) -> str:
        """Plain-text summary of everything seen since the monitor was enabled."""
        stats = self.get_stats()
        rule = "+" + "=" * 47 + "+"

        def row(text: str) -> str:
            return f"| {text:<45} |"

        lines = [
            rule,
            row("VIOLATION DETECTION SUMMARY"),
            rule,
            row(f"Runtime: {int(stats['runtimeSeconds'])}s"),
            row(f"Actions Checked: {stats['actionsChecked']}"),
            row(f"Violations Found: {stats['violationsFound']}"),
            rule,
            row("BY SEVERITY:"),
        ]
        for severity, count in stats["violationsBySeverity"].items():
            lines.append(row(f"  {severity.capitalize()}: {count}"))
        lines += [rule, row("BY CATEGORY:")]
        for category, count in stats["violationsByCategory"].items():
            lines.append(row(f"  {category.replace('-', ' ')}: {count}"))
        lines.append(rule)

        if self._reports:
            counts: dict[str, int] = {}
            for report in self._reports:
                counts[report.type] = counts.get(report.type, 0) + 1
            lines += ["", "UNIQUE VIOLATION TYPES:"]
            lines.extend(f"  * {kind}: {count}x" for kind, count in counts.items())
        return "\n".join(lines)

    def export_violations_as_json(self) -> str:
        """Stats, reports and action history as an indented JSON document."""
        return json.dumps(
            {
                "stats": self.get_stats(),
                "violations": [r.model_dump(mode="json", by_alias=True) for r in self._reports],
                "actionHistory": [
                    e.model_dump(mode="json", by_alias=True) for e in self._history
                ],
                "exportedAt": datetime.now(timezone.utc).isoformat(),
            },
            indent=2,
        )
