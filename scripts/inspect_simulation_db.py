#!/usr/bin/env python
"""
inspect_simulation_db.py
========================

Lightweight CLI for inspecting a simulation harness SQLite store.

Features:
- Aggregated stats (runs, win distribution, average turns, violation totals).
- Deduplicated violations ordered by occurrence count.
- Most recent runs.
- Per-card statistics, best and worst by win rate.
- Export of the whole store as JSON, and clearing it.

Usage:

  python scripts/inspect_simulation_db.py --db data/simulation/simulation.db --stats

  python scripts/inspect_simulation_db.py --violations --limit 20

  python scripts/inspect_simulation_db.py --export-json violations.json
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from simharness.config.harness_config import DEFAULT_DB_PATH
from simharness.core.logging_config import configure_third_party_loggers, setup_logging
from simharness.db.simulation_store import SimulationStore


def _format_time(epoch: Optional[float]) -> str:
    if not epoch:
        return ""
    return datetime.fromtimestamp(epoch).strftime("%Y-%m-%d %H:%M:%S")


def _format_row(cols: List[str], widths: List[int]) -> str:
    return "  ".join(col.ljust(w) for col, w in zip(cols, widths))


def _print_table(headers: List[str], rows: List[List[str]], empty: str) -> None:
    if not rows:
        print(empty)
        return

    widths = [len(h) for h in headers]
    for row in rows:
        for i, val in enumerate(row):
            if len(val) > widths[i]:
                widths[i] = len(val)

    print(_format_row(headers, widths))
    print(_format_row(["-" * len(h) for h in headers], widths))
    for row in rows:
        print(_format_row(row, widths))
    print(f"\nTotal listed: {len(rows)}")


def _print_stats(store: SimulationStore) -> None:
    stats = store.get_simulation_stats()
    wins = stats["winDistribution"]
    violations = stats["violations"]

    print("=== Simulation Store Stats ===")
    print(f"Total runs:      {stats['totalRuns']}")
    print(f"Recent runs:     {stats['recentRuns']}")
    print(f"Average turns:   {stats['averageTurns']}")
    print()
    print("Win distribution (recent runs):")
    print(f"  player 0: {wins['player0']}")
    print(f"  player 1: {wins['player1']}")
    print(f"  draw:     {wins['draw']}")
    print()
    print(f"Unique violations:  {violations['unique']}")
    print(f"Total occurrences:  {violations['totalOccurrences']}")
    print(f"Cards tracked:      {stats['subjects']['tracked']}")
    session = store.metadata("lastSessionId")
    if session:
        print(f"Last session:       {session} ({store.metadata('lastSessionRuns') or 0} runs)")
    print()


def _print_violations(store: SimulationStore, limit: int) -> None:
    rows = [
        [
            record.fingerprint,
            record.type,
            record.severity.value,
            str(record.occurrence_count),
            "yes" if record.synced_to_remote else "no",
            _format_time(record.last_seen),
            record.message[:60],
        ]
        for record in store.get_all_violations()[:limit]
    ]
    print("=== Violations ===")
    _print_table(
        ["fingerprint", "type", "severity", "count", "synced", "last_seen", "message"],
        rows,
        "No violations recorded.",
    )
    print()


def _print_runs(store: SimulationStore, limit: int) -> None:
    rows = [
        [
            str(run.id),
            _format_time(run.timestamp),
            str(run.turns),
            str(run.steps),
            "draw" if run.winner is None else str(run.winner),
            str(run.violations_detected),
            run.session_id or "",
        ]
        for run in store.get_recent_runs(limit)
    ]
    print("=== Recent Runs ===")
    _print_table(
        ["id", "timestamp", "turns", "steps", "winner", "violations", "session"],
        rows,
        "No runs recorded.",
    )
    print()


def _print_subjects(store: SimulationStore, limit: int) -> None:
    def rows_for(subjects) -> List[List[str]]:
        return [
            [
                s.subject_id,
                str(s.runs_in_deck),
                str(s.play_count),
                f"{s.win_rate}%",
                str(s.total_kills),
                str(s.violation_involvements),
            ]
            for s in subjects
        ]

    headers = ["card", "runs", "plays", "win_rate", "kills", "violations"]
    print("=== Best Cards by Win Rate ===")
    _print_table(headers, rows_for(store.get_top_subjects_by_win_rate(limit)), "Not enough data.")
    print()
    print("=== Worst Cards by Win Rate ===")
    _print_table(headers, rows_for(store.get_worst_subjects_by_win_rate(limit)), "Not enough data.")
    print()


def _export(store: SimulationStore, path: str) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "exportedAt": datetime.now().isoformat(),
        "stats": store.get_simulation_stats(),
        "violations": [
            v.model_dump(mode="json", by_alias=True) for v in store.get_all_violations()
        ],
        "runs": [
            r.model_dump(mode="json", by_alias=True)
            for r in store.get_recent_runs(store.max_runs)
        ],
        "subjects": [
            s.model_dump(mode="json", by_alias=True) for s in store.get_all_subject_stats()
        ],
    }
    with open(path, "w") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
    return payload


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Inspect a simulation harness SQLite store.",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=os.getenv("SIMHARNESS_DB_PATH", DEFAULT_DB_PATH),
        help=f"Path to the store (default: SIMHARNESS_DB_PATH or {DEFAULT_DB_PATH}).",
    )
    parser.add_argument(
        "--stats",
        action="store_true",
        help="Print aggregated store stats.",
    )
    parser.add_argument(
        "--violations",
        action="store_true",
        help="List deduplicated violations, most frequent first.",
    )
    parser.add_argument(
        "--runs",
        action="store_true",
        help="List the most recent runs.",
    )
    parser.add_argument(
        "--subjects",
        action="store_true",
        help="List the best and worst cards by win rate.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum rows per listing (default: 20).",
    )
    parser.add_argument(
        "--export-json",
        metavar="PATH",
        help="Write stats, violations, runs and card stats to PATH as JSON.",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Delete everything in the store. Runs after any listing or export.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Log store activity at DEBUG level.",
    )

    args = parser.parse_args(argv)

    logger = setup_logging(
        "simharness",
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format_style="compact",
    )
    configure_third_party_loggers()

    if not os.path.exists(args.db):
        raise SystemExit(f"Database not found: {args.db}")

    store = SimulationStore(args.db)

    if not any([args.stats, args.violations, args.runs, args.subjects, args.export_json, args.clear]):
        args.stats = True

    if args.stats:
        _print_stats(store)
    if args.violations:
        _print_violations(store, args.limit)
    if args.runs:
        _print_runs(store, args.limit)
    if args.subjects:
        _print_subjects(store, args.limit)
    if args.export_json:
        payload = _export(store, args.export_json)
        print(
            f"Exported {len(payload['violations'])} violations and "
            f"{len(payload['runs'])} runs to {args.export_json}"
        )
    if args.clear:
        logger.info(f"Clearing store at {args.db}")
        store.clear_all()
        print(f"Cleared {args.db}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
