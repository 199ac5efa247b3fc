"""Snapshot, diff and keyword helpers over driver game state."""

from simharness.state.snapshot import (
    describe_diff,
    diff_snapshots,
    find_creature_by_id,
    get_all_instance_ids,
    get_total_card_count,
    snapshot,
    summarize_diff,
)

__all__ = [
    "describe_diff",
    "diff_snapshots",
    "find_creature_by_id",
    "get_all_instance_ids",
    "get_total_card_count",
    "snapshot",
    "summarize_diff",
]
