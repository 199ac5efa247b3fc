"""State snapshots and before/after diffs.

A snapshot is an independent deep copy of the driver's game state: mutating
the live state after the snapshot was taken never changes the snapshot.
Snapshots are plain dict/list data, so they can also be serialized into
reports and sample records.
"""

from __future__ import annotations

import copy
import json
import logging
from typing import Any, Iterator, Mapping

from simharness.errors import SnapshotError
from simharness.metrics import SNAPSHOT_FALLBACKS

logger = logging.getLogger(__name__)

ZONES = ("hand", "field", "deck", "carrion", "exile", "traps")

# Size fields compared per player, in report order.
_SIZE_FIELDS = (
    ("hand", "handSize"),
    ("deck", "deckSize"),
    ("carrion", "carrionSize"),
    ("exile", "exileSize"),
)


def snapshot(state: Any) -> Any:
    """Return an independent deep copy of ``state``.

    Falls back to a JSON round trip (which loses non-JSON types) when the
    state cannot be deep-copied, and raises SnapshotError when neither
    works.
    """
    try:
        return copy.deepcopy(state)
    except Exception as exc:  # deepcopy surfaces arbitrary errors from __deepcopy__/__reduce__
        logger.warning(
            f"Deep copy of state failed ({type(exc).__name__}: {exc}); "
            "falling back to JSON round trip, snapshot fidelity is degraded"
        )
    try:
        clone = json.loads(json.dumps(state, default=str))
    except (TypeError, ValueError) as exc:
        raise SnapshotError(
            "State cannot be snapshotted",
            context={"error": f"{type(exc).__name__}: {exc}"},
        ) from exc
    SNAPSHOT_FALLBACKS.inc()
    return clone


def players(state: Mapping[str, Any] | None) -> list[dict[str, Any]]:
    if not isinstance(state, Mapping):
        return []
    value = state.get("players")
    return value if isinstance(value, list) else []


def zone(player: Mapping[str, Any] | None, name: str) -> list[Any]:
    """A player's zone as a list; missing or malformed zones read as empty."""
    if not isinstance(player, Mapping):
        return []
    value = player.get(name)
    return value if isinstance(value, list) else []


def field_creatures(state) -> Iterator[tuple[int, int, dict[str, Any]]]:
    """Yield ``(player_index, slot_index, creature)`` for occupied slots."""
    for player_index, player in enumerate(players(state)):
        for slot_index, creature in enumerate(zone(player, "field")):
            if creature:
                yield player_index, slot_index, creature


def creature_hp(creature: Mapping[str, Any]) -> Any:
    hp = creature.get("currentHp")
    return creature.get("hp") if hp is None else hp


def creature_atk(creature: Mapping[str, Any]) -> Any:
    atk = creature.get("currentAtk")
    return creature.get("atk") if atk is None else atk


def get_all_instance_ids(state) -> list[str]:
    """Instance ids of every card in every zone, duplicates included."""
    ids = []
    for player in players(state):
        for name in ZONES:
            for card in zone(player, name):
                if isinstance(card, Mapping) and card.get("instanceId"):
                    ids.append(card["instanceId"])
    return ids


def get_total_card_count(state) -> int:
    count = 0
    for player in players(state):
        for name in ZONES:
            count += sum(1 for card in zone(player, name) if card is not None)
    return count


def find_creature_by_id(state, instance_id) -> dict[str, Any] | None:
    if not instance_id:
        return None
    for _, _, creature in field_creatures(state):
        if creature.get("instanceId") == instance_id:
            return creature
    return None


def find_creature_owner(state, instance_id) -> int | None:
    if not instance_id:
        return None
    for player_index, _, creature in field_creatures(state):
        if creature.get("instanceId") == instance_id:
            return player_index
    return None


def _change(before: Any, after: Any) -> dict[str, Any]:
    return {"before": before, "after": after}


def diff_snapshots(before, after) -> dict[str, Any]:
    """Raw structural diff between two snapshots.

    Returns ``{"players": {index: {...}}, "global": {...}}`` where only
    changed fields appear. Creature hp/atk changes are reported for slots
    that hold the same instance before and after.
    """
    diff: dict[str, Any] = {"players": {}, "global": {}}

    before_players = players(before)
    after_players = players(after)
    for index in range(min(len(before_players), len(after_players))):
        player_before = before_players[index]
        player_after = after_players[index]
        player_diff: dict[str, Any] = {}

        if player_before.get("hp") != player_after.get("hp"):
            player_diff["hp"] = _change(player_before.get("hp"), player_after.get("hp"))

        for zone_name, key in _SIZE_FIELDS[:2]:
            size_before = len(zone(player_before, zone_name))
            size_after = len(zone(player_after, zone_name))
            if size_before != size_after:
                player_diff[key] = _change(size_before, size_after)

        field_before = zone(player_before, "field")
        field_after = zone(player_after, "field")
        count_before = sum(1 for c in field_before if c)
        count_after = sum(1 for c in field_after if c)
        if count_before != count_after:
            player_diff["fieldCount"] = _change(count_before, count_after)

        for zone_name, key in _SIZE_FIELDS[2:]:
            size_before = len(zone(player_before, zone_name))
            size_after = len(zone(player_after, zone_name))
            if size_before != size_after:
                player_diff[key] = _change(size_before, size_after)

        creature_changes = []
        for slot in range(min(len(field_before), len(field_after))):
            creature_before = field_before[slot]
            creature_after = field_after[slot]
            if not (creature_before and creature_after):
                continue
            if creature_before.get("instanceId") != creature_after.get("instanceId"):
                continue
            changes = {}
            if creature_before.get("currentHp") != creature_after.get("currentHp"):
                changes["hp"] = _change(
                    creature_before.get("currentHp"), creature_after.get("currentHp")
                )
            if creature_before.get("currentAtk") != creature_after.get("currentAtk"):
                changes["atk"] = _change(
                    creature_before.get("currentAtk"), creature_after.get("currentAtk")
                )
            if changes:
                creature_changes.append(
                    {"name": creature_after.get("name"), "slot": slot, **changes}
                )
        if creature_changes:
            player_diff["creatureChanges"] = creature_changes

        if player_diff:
            diff["players"][index] = player_diff

    before = before or {}
    after = after or {}
    for key in ("turn", "phase", "activePlayerIndex"):
        if before.get(key) != after.get(key):
            diff["global"][key] = _change(before.get(key), after.get(key))

    return diff


_SIZE_LABELS = {
    "handSize": "hand",
    "deckSize": "deck",
    "fieldCount": "field",
    "carrionSize": "carrion",
    "exileSize": "exile",
}


def describe_diff(diff: Mapping[str, Any]) -> list[str]:
    """Render a raw diff as human-readable lines."""
    lines = []
    for index, player_diff in sorted(diff.get("players", {}).items(), key=lambda kv: int(kv[0])):
        label = f"Player {int(index) + 1}"
        if "hp" in player_diff:
            hp = player_diff["hp"]
            lines.append(f"{label} HP: {hp['before']} -> {hp['after']}")
        for key, zone_label in _SIZE_LABELS.items():
            if key in player_diff:
                size = player_diff[key]
                lines.append(f"{label} {zone_label}: {size['before']} -> {size['after']} cards")
        for change in player_diff.get("creatureChanges", []):
            name = change.get("name") or "creature"
            where = f"{name} ({label} slot {change['slot']})"
            if "hp" in change:
                lines.append(f"{where} HP: {change['hp']['before']} -> {change['hp']['after']}")
            if "atk" in change:
                lines.append(f"{where} ATK: {change['atk']['before']} -> {change['atk']['after']}")

    global_diff = diff.get("global", {})
    if "turn" in global_diff:
        lines.append(f"Turn: {global_diff['turn']['before']} -> {global_diff['turn']['after']}")
    if "phase" in global_diff:
        lines.append(f"Phase: {global_diff['phase']['before']} -> {global_diff['phase']['after']}")
    if "activePlayerIndex" in global_diff:
        active = global_diff["activePlayerIndex"]
        lines.append(f"Active player: {active['before']} -> {active['after']}")
    return lines


def summarize_diff(before, after) -> list[str]:
    """Human-readable deltas between two snapshots, e.g. ``Player 2 HP: 10 -> 7``."""
    return describe_diff(diff_snapshots(before, after))
