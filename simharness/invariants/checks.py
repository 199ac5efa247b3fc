"""Card-game invariants.

Every predicate takes plain dict state as handed over by the simulation
driver (players with hand/field/deck/carrion/exile/traps zones, field slots
that may be ``None``) and returns a list of Violations. Violation details
always name the card involved under ``creature``, ``card``, ``attacker`` or
``target`` so recurring violations on the same card share a fingerprint.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Mapping

from simharness.invariants.effects import register_effect_validators
from simharness.invariants.registry import InvariantRegistry
from simharness.models import InvariantKind, Severity, Violation
from simharness.state import keywords as kw
from simharness.state.snapshot import (
    ZONES,
    creature_atk,
    creature_hp,
    field_creatures,
    find_creature_by_id,
    find_creature_owner,
    get_all_instance_ids,
    get_total_card_count,
    players,
    zone,
)

ATTACK = "DECLARE_ATTACK"

EXPECTED_FIELD_SLOTS = 3
HP_UNDERFLOW = -50
HP_OVERFLOW = 100
SUSPICIOUS_HAND_SIZE = 30
MAX_NUTRITION = 20
MAX_REASONABLE_STAT = 99

VALID_CARRION_TYPES = ("Prey", "Predator", "Field Spell")

CONFLICTING_KEYWORDS = (
    (kw.PASSIVE, kw.AGGRESSIVE),
    (kw.HIDDEN, kw.LURE),
    (kw.INVISIBLE, kw.LURE),
)


def _mapping(value) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def _attack_payload(action) -> tuple[dict | None, dict | None]:
    """(attacker, target) for an attack action, else (None, None)."""
    action = _mapping(action)
    if action.get("type") != ATTACK:
        return None, None
    payload = _mapping(action.get("payload"))
    attacker, target = payload.get("attacker"), payload.get("target")
    return (
        attacker if isinstance(attacker, Mapping) else None,
        target if isinstance(target, Mapping) else None,
    )


def _target_card(target) -> dict | None:
    if not target or target.get("type") != "creature":
        return None
    card = target.get("card")
    return card if isinstance(card, Mapping) and card.get("instanceId") else None


# =============================================================================
# Absolute invariants
# =============================================================================


def check_zombie_creatures(after) -> list[Violation]:
    """No creature with hp <= 0 remains on the field."""
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        hp = creature_hp(creature)
        if hp is not None and hp <= 0:
            violations.append(Violation(
                kind="zombie-entity",
                severity=Severity.HIGH,
                message=(
                    f'"{creature.get("name")}" is still on the field at {hp} HP '
                    f"(Player {player_index + 1} slot {slot_index}); it should have "
                    "been destroyed and moved to carrion"
                ),
                details={
                    "creature": creature.get("name"),
                    "instanceId": creature.get("instanceId"),
                    "hp": hp,
                    "playerIndex": player_index,
                    "slotIndex": slot_index,
                    "expected": "Creature destroyed and moved to carrion when HP <= 0",
                    "actual": f"Creature still on the field with {hp} HP",
                },
            ))
    return violations


def _card_locations(state, instance_id) -> list[str]:
    locations = []
    for player_index, player in enumerate(players(state)):
        for name in ZONES:
            for index, card in enumerate(zone(player, name)):
                if isinstance(card, dict) and card.get("instanceId") == instance_id:
                    locations.append(f"P{player_index + 1} {name}[{index}]")
    return locations


def check_duplicate_ids(after) -> list[Violation]:
    """Every card instance id is unique across all zones."""
    counts = Counter(get_all_instance_ids(after))
    duplicates = [instance_id for instance_id, n in counts.items() if n > 1]
    if not duplicates:
        return []
    locations = {instance_id: _card_locations(after, instance_id) for instance_id in duplicates}
    first = duplicates[0]
    return [Violation(
        kind="duplicate-ids",
        severity=Severity.HIGH,
        message=(
            f"{len(duplicates)} duplicate instance id(s); "
            f'"{first}" appears in: {", ".join(locations[first])}'
        ),
        details={
            "duplicateIds": duplicates,
            "locations": locations,
            "expected": "Every card instance has a unique instanceId",
            "actual": f"{len(duplicates)} id(s) shared between cards",
        },
    )]


def check_hp_bounds(after) -> list[Violation]:
    violations = []
    for player_index, player in enumerate(players(after)):
        hp = player.get("hp")
        if not isinstance(hp, (int, float)):
            continue
        if hp < HP_UNDERFLOW:
            violations.append(Violation(
                kind="hp-underflow",
                severity=Severity.MEDIUM,
                message=f"Player {player_index + 1} HP is extremely low ({hp})",
                details={"playerIndex": player_index, "hp": hp},
            ))
        if hp > HP_OVERFLOW:
            violations.append(Violation(
                kind="hp-overflow",
                severity=Severity.LOW,
                message=f"Player {player_index + 1} HP is very high ({hp})",
                details={"playerIndex": player_index, "hp": hp},
            ))
    return violations


def check_field_slot_count(after) -> list[Violation]:
    """Each player's field is a list of exactly three slots."""
    violations = []
    for player_index, player in enumerate(players(after)):
        field = player.get("field")
        if not isinstance(field, list):
            violations.append(Violation(
                kind="field-not-list",
                severity=Severity.CRITICAL,
                message=f"Player {player_index + 1} field is not a list",
                details={"playerIndex": player_index},
            ))
        elif len(field) != EXPECTED_FIELD_SLOTS:
            violations.append(Violation(
                kind="field-slot-count",
                severity=Severity.HIGH,
                message=(
                    f"Player {player_index + 1} has {len(field)} field slots "
                    f"instead of {EXPECTED_FIELD_SLOTS}"
                ),
                details={
                    "playerIndex": player_index,
                    "slotCount": len(field),
                    "expected": EXPECTED_FIELD_SLOTS,
                },
            ))
    return violations


def check_hand_size(after) -> list[Violation]:
    # There is no hand limit in the rules; only absurd sizes are flagged.
    violations = []
    for player_index, player in enumerate(players(after)):
        size = len(zone(player, "hand"))
        if size > SUSPICIOUS_HAND_SIZE:
            violations.append(Violation(
                kind="hand-overflow",
                severity=Severity.LOW,
                message=f"Player {player_index + 1} holds {size} cards",
                details={"playerIndex": player_index, "handSize": size},
            ))
    return violations


def check_creature_stats(after) -> list[Violation]:
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        atk = creature_atk(creature)
        if isinstance(atk, (int, float)) and atk < 0:
            violations.append(Violation(
                kind="negative-attack",
                severity=Severity.LOW,
                message=f"{creature.get('name')} has negative ATK ({atk})",
                details={
                    "creature": creature.get("name"),
                    "instanceId": creature.get("instanceId"),
                    "atk": atk,
                    "playerIndex": player_index,
                    "slotIndex": slot_index,
                },
            ))
    return violations


def check_dry_drop_keywords(after) -> list[Violation]:
    """A dry-dropped creature has no active Haste or Free Play."""
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        if not creature.get("dryDropped"):
            continue
        retained = [
            name for name, active in (
                (kw.HASTE, kw.has_haste(creature)),
                (kw.FREE_PLAY, kw.is_free_play(creature)),
            )
            if active
        ]
        if retained:
            violations.append(Violation(
                kind="dry-drop-keyword-retained",
                severity=Severity.HIGH,
                message=(
                    f'"{creature.get("name")}" was dry-dropped but still has active '
                    f"keywords: {', '.join(retained)}"
                ),
                details={
                    "creature": creature.get("name"),
                    "instanceId": creature.get("instanceId"),
                    "retainedKeywords": retained,
                    "expected": "Dry-dropped creature has no active abilities",
                    "actual": f"Keywords {', '.join(retained)} are still active",
                    "playerIndex": player_index,
                    "slotIndex": slot_index,
                },
            ))
    return violations


def check_conflicting_keywords(after) -> list[Violation]:
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        keywords = kw.all_keywords(creature)
        for first, second in CONFLICTING_KEYWORDS:
            if first in keywords and second in keywords:
                violations.append(Violation(
                    kind="conflicting-keywords",
                    severity=Severity.MEDIUM,
                    message=f"{creature.get('name')} has conflicting keywords: {first} and {second}",
                    details={
                        "creature": creature.get("name"),
                        "instanceId": creature.get("instanceId"),
                        "keywords": keywords,
                        "conflict": [first, second],
                        "playerIndex": player_index,
                        "slotIndex": slot_index,
                    },
                ))
    return violations


def check_nutrition(after) -> list[Violation]:
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        nutrition = creature.get("nutrition")
        if not isinstance(nutrition, (int, float)):
            continue
        details = {
            "creature": creature.get("name"),
            "instanceId": creature.get("instanceId"),
            "nutrition": nutrition,
            "playerIndex": player_index,
            "slotIndex": slot_index,
        }
        if nutrition < 0:
            violations.append(Violation(
                kind="negative-nutrition",
                severity=Severity.LOW,
                message=f"{creature.get('name')} has negative nutrition ({nutrition})",
                details=details,
            ))
        if nutrition > MAX_NUTRITION:
            violations.append(Violation(
                kind="excessive-nutrition",
                severity=Severity.LOW,
                message=f"{creature.get('name')} has unusually high nutrition ({nutrition})",
                details=details,
            ))
    return violations


def check_impossible_stats(after) -> list[Violation]:
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        for stat, label, value in (
            ("attack", "ATK", creature_atk(creature)),
            ("hp", "HP", creature_hp(creature)),
        ):
            if isinstance(value, (int, float)) and value > MAX_REASONABLE_STAT:
                violations.append(Violation(
                    kind="stat-overflow",
                    severity=Severity.MEDIUM,
                    message=f"{creature.get('name')} has unreasonably high {label} ({value})",
                    details={
                        "creature": creature.get("name"),
                        "instanceId": creature.get("instanceId"),
                        "stat": stat,
                        "value": value,
                        "playerIndex": player_index,
                        "slotIndex": slot_index,
                    },
                ))
    return violations


def check_creature_integrity(after) -> list[Violation]:
    """Field creatures carry an instance id, a name and a type."""
    violations = []
    for player_index, slot_index, creature in field_creatures(after):
        where = f"Player {player_index + 1} slot {slot_index}"
        if not creature.get("instanceId"):
            violations.append(Violation(
                kind="missing-instance-id",
                severity=Severity.HIGH,
                message=f"Creature in {where} is missing instanceId",
                details={
                    "creature": creature.get("name") or "unknown",
                    "playerIndex": player_index,
                    "slotIndex": slot_index,
                },
            ))
        if not creature.get("name"):
            violations.append(Violation(
                kind="missing-name",
                severity=Severity.MEDIUM,
                message=f"Creature in {where} is missing name",
                details={
                    "instanceId": creature.get("instanceId"),
                    "playerIndex": player_index,
                    "slotIndex": slot_index,
                },
            ))
        if not creature.get("type"):
            violations.append(Violation(
                kind="missing-type",
                severity=Severity.MEDIUM,
                message=f"{creature.get('name') or 'Creature'} is missing type",
                details={
                    "creature": creature.get("name"),
                    "instanceId": creature.get("instanceId"),
                    "playerIndex": player_index,
                    "slotIndex": slot_index,
                },
            ))
    return violations


def check_carrion_integrity(after) -> list[Violation]:
    """Carrion holds only creatures, tokens and replaced field spells."""
    violations = []
    for player_index, player in enumerate(players(after)):
        for index, card in enumerate(zone(player, "carrion")):
            if not card:
                continue
            if card.get("type") in VALID_CARRION_TYPES or card.get("isToken"):
                continue
            violations.append(Violation(
                kind="invalid-carrion-card",
                severity=Severity.MEDIUM,
                message=f"Invalid card type in carrion: {card.get('name')} ({card.get('type')})",
                details={
                    "card": card.get("name"),
                    "cardType": card.get("type"),
                    "playerIndex": player_index,
                    "carrionIndex": index,
                    "validTypes": list(VALID_CARRION_TYPES),
                },
            ))
    return violations


def check_exile_integrity(after) -> list[Violation]:
    violations = []
    for player_index, player in enumerate(players(after)):
        for index, card in enumerate(zone(player, "exile")):
            if card and not card.get("instanceId"):
                violations.append(Violation(
                    kind="exile-missing-id",
                    severity=Severity.LOW,
                    message=f"Card in exile missing instanceId: {card.get('name') or 'unknown'}",
                    details={
                        "card": card.get("name"),
                        "playerIndex": player_index,
                        "exileIndex": index,
                    },
                ))
    return violations


def check_active_player(after) -> list[Violation]:
    if not isinstance(after, Mapping):
        return []
    active = after.get("activePlayerIndex")
    # bool is an int subclass; True/False are not player indices.
    if isinstance(active, bool) or active not in (0, 1):
        return [Violation(
            kind="invalid-active-player",
            severity=Severity.HIGH,
            message=f"Invalid active player index: {active}",
            details={"activePlayerIndex": active},
        )]
    return []


# =============================================================================
# Transitional invariants
# =============================================================================


def check_turn_counter(after, before, action) -> list[Violation]:
    """The turn counter never goes back and advances at most one per action."""
    turn_before = _mapping(before).get("turn")
    turn_after = _mapping(after).get("turn")
    if not isinstance(turn_before, int) or not isinstance(turn_after, int):
        return []
    details = {
        "turnBefore": turn_before,
        "turnAfter": turn_after,
        "action": _mapping(action).get("type"),
    }
    if turn_after < turn_before:
        return [Violation(
            kind="turn-decreased",
            severity=Severity.HIGH,
            message=f"Turn counter decreased: {turn_before} -> {turn_after}",
            details=details,
        )]
    if turn_after > turn_before + 1:
        return [Violation(
            kind="turn-skipped",
            severity=Severity.MEDIUM,
            message=f"Turn counter jumped unexpectedly: {turn_before} -> {turn_after}",
            details=details,
        )]
    return []


def check_summoning_sickness(after, before, action) -> list[Violation]:
    """A creature without Haste cannot hit the player on the turn it was summoned.

    Attacks on creatures are always allowed on the summoning turn.
    """
    attacker, target = _attack_payload(action)
    if not attacker or not target or target.get("type") != "player":
        return []
    creature = find_creature_by_id(after, attacker.get("instanceId"))
    if creature is None:
        return []
    turn = _mapping(after).get("turn")
    if creature.get("summonedTurn") != turn or kw.has_haste(creature):
        return []
    return [Violation(
        kind="summoning-sickness",
        severity=Severity.HIGH,
        message=(
            f'"{creature.get("name")}" attacked the player directly on the turn it was '
            f"summoned (turn {turn}) without Haste"
        ),
        details={
            "creature": creature.get("name"),
            "instanceId": creature.get("instanceId"),
            "summonedTurn": creature.get("summonedTurn"),
            "currentTurn": turn,
            "hasHaste": False,
            "targetType": "player",
            "expected": "Direct attack blocked on the summoning turn without Haste",
            "actual": "Direct attack on the player was executed",
        },
    )]


def check_barrier_bypass(after, before, action) -> list[Violation]:
    """A creature with Barrier loses the barrier, not hp, on the first hit."""
    _, target = _attack_payload(action)
    card = _target_card(target)
    if card is None:
        return []
    instance_id = card["instanceId"]
    target_before = find_creature_by_id(before, instance_id)
    if not target_before or not target_before.get("hasBarrier"):
        return []
    target_after = find_creature_by_id(after, instance_id)
    if target_after is None:
        return []
    hp_before = creature_hp(target_before)
    hp_after = creature_hp(target_after)
    if not isinstance(hp_before, (int, float)) or not isinstance(hp_after, (int, float)):
        return []
    damage = hp_before - hp_after
    if damage <= 0:
        return []
    return [Violation(
        kind="barrier-bypass",
        severity=Severity.HIGH,
        message=(
            f'"{target_before.get("name")}" had Barrier but took {damage} damage '
            f"(HP: {hp_before} -> {hp_after})"
        ),
        details={
            "creature": target_before.get("name"),
            "instanceId": instance_id,
            "hpBefore": hp_before,
            "hpAfter": hp_after,
            "damageTaken": damage,
            "expected": "Barrier absorbs the damage and is consumed",
            "actual": f"Creature took {damage} damage through Barrier",
        },
    )]


def check_passive_attack(after, before, action) -> list[Violation]:
    attacker, _ = _attack_payload(action)
    if not attacker:
        return []
    attacker_before = find_creature_by_id(before, attacker.get("instanceId"))
    if not attacker_before or not kw.is_passive(attacker_before):
        return []
    return [Violation(
        kind="passive-attack",
        severity=Severity.HIGH,
        message=f'"{attacker_before.get("name")}" attacked despite having Passive',
        details={
            "creature": attacker_before.get("name"),
            "instanceId": attacker.get("instanceId"),
            "expected": "Passive creatures cannot attack",
            "actual": "Attack was allowed to execute",
        },
    )]


def check_hidden_targeting(after, before, action) -> list[Violation]:
    """Hidden and Invisible creatures cannot be attacked except by Acuity."""
    attacker, target = _attack_payload(action)
    card = _target_card(target)
    if card is None or kw.has_acuity(attacker):
        return []
    target_before = find_creature_by_id(before, card["instanceId"])
    if not target_before:
        return []
    attacker_name = (attacker or {}).get("name")
    violations = []
    for kind, label, applies in (
        ("hidden-targeted", "Hidden", kw.is_hidden(target_before)),
        ("invisible-targeted", "Invisible", kw.is_invisible(target_before)),
    ):
        if applies:
            violations.append(Violation(
                kind=kind,
                severity=Severity.HIGH,
                message=(
                    f'"{target_before.get("name")}" was attacked despite {label} '
                    f'(attacker "{attacker_name}" lacks Acuity)'
                ),
                details={
                    "creature": target_before.get("name"),
                    "attacker": attacker_name,
                    "instanceId": card["instanceId"],
                    "attackerHasAcuity": False,
                    "expected": f"{label} creature is untargetable by attacks",
                    "actual": f"Attack was allowed to target a {label} creature",
                },
            ))
    return violations


def check_lure_bypass(after, before, action) -> list[Violation]:
    """While the defender has a Lure creature, every attack must target it."""
    attacker, target = _attack_payload(action)
    if not attacker or not target:
        return []
    owner = find_creature_owner(before, attacker.get("instanceId"))
    if owner is None:
        return []
    before_players = players(before)
    defender = 1 - owner
    if not 0 <= defender < len(before_players):
        return []
    lures = [c for c in zone(before_players[defender], "field") if c and kw.has_lure(c)]
    if not lures:
        return []
    lure_name = lures[0].get("name")

    if target.get("type") == "player":
        return [Violation(
            kind="lure-bypass-direct",
            severity=Severity.HIGH,
            message=(
                f'"{attacker.get("name")}" attacked the player directly while '
                f'"{lure_name}" has Lure'
            ),
            details={
                "attacker": attacker.get("name"),
                "lureCreature": lure_name,
                "expected": f'Attack forced to target "{lure_name}" (has Lure)',
                "actual": "Direct attack on the player was allowed",
            },
        )]

    card = target.get("card")
    if target.get("type") == "creature" and isinstance(card, Mapping):
        lure_ids = {c.get("instanceId") for c in lures}
        if card.get("instanceId") not in lure_ids:
            return [Violation(
                kind="lure-bypass",
                severity=Severity.HIGH,
                message=(
                    f'"{attacker.get("name")}" attacked "{card.get("name")}" while '
                    f'"{lure_name}" has Lure'
                ),
                details={
                    "attacker": attacker.get("name"),
                    "target": card.get("name"),
                    "lureCreature": lure_name,
                    "expected": f'All attacks target "{lure_name}" (has Lure)',
                    "actual": f'Attack targeted "{card.get("name")}" instead',
                },
            )]
    return []


def _expected_card_delta(action) -> int:
    trap = _mapping(_mapping(_mapping(action).get("payload")).get("trap"))
    effect = _mapping(trap.get("effects")).get("effect") or trap.get("effect") or {}
    if isinstance(effect, Mapping) and effect.get("type") in ("summonTokens", "createToken"):
        return len(_mapping(effect.get("params")).get("tokenIds") or [])
    return 0


def check_card_conservation(after, before, action) -> list[Violation]:
    """Cards only move between zones; only token summons add cards."""
    count_before = get_total_card_count(before)
    count_after = get_total_card_count(after)
    expected = _expected_card_delta(action)
    actual = count_after - count_before
    if actual == expected:
        return []
    return [Violation(
        kind="card-count-mismatch",
        severity=Severity.MEDIUM,
        message=(
            f"Card count changed unexpectedly: {count_before} -> {count_after} "
            f"(expected {expected:+d}, got {actual:+d})"
        ),
        details={
            "countBefore": count_before,
            "countAfter": count_after,
            "expectedChange": expected,
            "actualChange": actual,
            "action": _mapping(action).get("type"),
        },
    )]


ABSOLUTE_CHECKS = (
    ("zombie-entity", check_zombie_creatures),
    ("duplicate-ids", check_duplicate_ids),
    ("hp-bounds", check_hp_bounds),
    ("field-slot-count", check_field_slot_count),
    ("hand-size", check_hand_size),
    ("creature-stats", check_creature_stats),
    ("dry-drop-keywords", check_dry_drop_keywords),
    ("conflicting-keywords", check_conflicting_keywords),
    ("nutrition", check_nutrition),
    ("impossible-stats", check_impossible_stats),
    ("creature-integrity", check_creature_integrity),
    ("carrion-integrity", check_carrion_integrity),
    ("exile-integrity", check_exile_integrity),
    ("active-player", check_active_player),
)

TRANSITIONAL_CHECKS = (
    ("summoning-sickness", check_summoning_sickness),
    ("turn-counter", check_turn_counter),
    ("barrier-bypass", check_barrier_bypass),
    ("passive-attack", check_passive_attack),
    ("hidden-targeting", check_hidden_targeting),
    ("lure-bypass", check_lure_bypass),
)


def build_default_registry(
    include_conservation: bool = False,
    include_effects: bool = False,
) -> InvariantRegistry:
    """Registry loaded with every card-game invariant.

    Card conservation and the card effect validators are only registered
    when asked for.
    """
    registry = InvariantRegistry()
    for name, predicate in ABSOLUTE_CHECKS:
        registry.register(name, predicate, InvariantKind.ABSOLUTE)
    for name, predicate in TRANSITIONAL_CHECKS:
        registry.register(name, predicate, InvariantKind.TRANSITIONAL)
    if include_conservation:
        registry.register("card-conservation", check_card_conservation, InvariantKind.TRANSITIONAL)
    if include_effects:
        register_effect_validators(registry)
    return registry

