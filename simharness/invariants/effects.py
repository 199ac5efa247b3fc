"""Card effect validators.

These compare the before/after states of one action with what the card's
effect definition says should have happened: tokens summoned, cards drawn,
damage dealt, stats buffed, keywords granted, creatures destroyed.

They re-derive game rules from card data, so they are noisier than the
invariants in ``checks`` (a second effect on the same action can mask or
fake a change) and are only registered when asked for::

    registry = build_default_registry(include_effects=True)

Low-level validators take ``(before, after, effect_data)`` and are looked up
by effect type through ``EFFECT_VALIDATORS``. The ``check_*`` functions are
transitional predicates that read the effect definition off the action.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from simharness.invariants.registry import InvariantRegistry
from simharness.models import InvariantKind, Severity, Violation
from simharness.state.snapshot import (
    creature_atk,
    creature_hp,
    find_creature_by_id,
    players,
    zone,
)

logger = logging.getLogger(__name__)

PLAY_CARD = "PLAY_CARD"
ATTACK = "DECLARE_ATTACK"
ACTIVATE_TRAP = "ACTIVATE_TRAP"

ON_PLAY = "on-play"
ON_CONSUME = "on-consume"
TRAP = "trap"

EffectValidator = Callable[[Any, Any, Mapping[str, Any]], list[Violation]]


def _player(state, index) -> dict[str, Any] | None:
    plist = players(state)
    if isinstance(index, int) and 0 <= index < len(plist) and isinstance(plist[index], dict):
        return plist[index]
    return None


def _field(state, index) -> list[dict[str, Any]]:
    return [c for c in zone(_player(state, index), "field") if isinstance(c, dict)]


def _token_count(state, index) -> int:
    return sum(1 for c in _field(state, index) if c.get("isToken"))


def _number(value, default=0):
    return value if isinstance(value, (int, float)) and not isinstance(value, bool) else default


def _raw_keywords(creature: Mapping[str, Any]) -> list[str]:
    return list(creature.get("keywords") or []) + list(creature.get("grantedKeywords") or [])


def _effect_params(effect: Mapping[str, Any]) -> Mapping[str, Any]:
    params = effect.get("params")
    return params if isinstance(params, Mapping) else {}


# =============================================================================
# Effect validators by type
# =============================================================================


def validate_summon_tokens(before, after, effect_data) -> list[Violation]:
    expected = _number(effect_data.get("expectedTokens"))
    if expected <= 0:
        return []
    player_index = effect_data.get("playerIndex")
    added = _token_count(after, player_index) - _token_count(before, player_index)
    if added >= expected:
        return []
    return [Violation(
        kind="token-summon-failed",
        severity=Severity.HIGH,
        message=f"Token summon failed: expected {expected} tokens, got {added}",
        details={
            "expectedTokens": expected,
            "actualTokensAdded": added,
            "tokenNames": effect_data.get("tokenNames"),
            "playerIndex": player_index,
        },
    )]


def validate_damage(before, after, effect_data) -> list[Violation]:
    """Damage on a creature or a player matches the effect's amount.

    Overkill (all remaining hp lost) and a consumed Barrier both count as
    the damage having been applied.
    """
    target_type = effect_data.get("targetType")
    expected = _number(effect_data.get("expectedDamage"))
    if not expected:
        return []

    if target_type == "creature":
        instance_id = effect_data.get("targetInstanceId")
        creature_before = find_creature_by_id(before, instance_id)
        creature_after = find_creature_by_id(after, instance_id)
        if not creature_before or not creature_after:
            return []
        if creature_before.get("hasBarrier") and not creature_after.get("hasBarrier"):
            return []
        hp_before = _number(creature_hp(creature_before))
        hp_after = _number(creature_hp(creature_after))
        actual = hp_before - hp_after
        if actual in (expected, hp_before):
            return []
        return [Violation(
            kind="damage-mismatch",
            severity=Severity.MEDIUM,
            message=(
                f"Damage mismatch on {creature_before.get('name')}: "
                f"expected {expected}, dealt {actual}"
            ),
            details={
                "creature": creature_before.get("name"),
                "expectedDamage": expected,
                "actualDamage": actual,
                "hpBefore": hp_before,
                "hpAfter": hp_after,
            },
        )]

    if target_type == "player":
        player_index = effect_data.get("playerIndex")
        player_before, player_after = _player(before, player_index), _player(after, player_index)
        if player_before is None or player_after is None:
            return []
        hp_before = _number(player_before.get("hp"))
        hp_after = _number(player_after.get("hp"))
        actual = hp_before - hp_after
        if actual == expected:
            return []
        return [Violation(
            kind="player-damage-mismatch",
            severity=Severity.MEDIUM,
            message=f"Player damage mismatch: expected {expected}, dealt {actual}",
            details={
                "playerIndex": player_index,
                "expectedDamage": expected,
                "actualDamage": actual,
                "hpBefore": hp_before,
                "hpAfter": hp_after,
            },
        )]
    return []


def validate_draw(before, after, effect_data) -> list[Violation]:
    """At least ``expectedCards`` were drawn, or the whole deck if it was smaller."""
    player_index = effect_data.get("playerIndex")
    expected = _number(effect_data.get("expectedCards"))
    player_before, player_after = _player(before, player_index), _player(after, player_index)
    if not expected or player_before is None or player_after is None:
        return []
    drawn = len(zone(player_after, "hand")) - len(zone(player_before, "hand"))
    deck_before = len(zone(player_before, "deck"))
    if drawn >= min(expected, deck_before):
        return []
    return [Violation(
        kind="draw-failed",
        severity=Severity.MEDIUM,
        message=f"Draw effect failed: expected {expected} cards, drew {drawn}",
        details={
            "playerIndex": player_index,
            "expectedCards": expected,
            "actualCardsDrawn": drawn,
            "deckSizeBefore": deck_before,
        },
    )]


def validate_buff(before, after, effect_data) -> list[Violation]:
    instance_id = effect_data.get("targetInstanceId")
    creature_before = find_creature_by_id(before, instance_id)
    creature_after = find_creature_by_id(after, instance_id)
    if not creature_before or not creature_after:
        return []
    name = creature_before.get("name")
    violations = []
    for stat, label, read in (("Atk", "ATK", creature_atk), ("Hp", "HP", creature_hp)):
        expected = effect_data.get(f"expected{stat}Change")
        if expected is None:
            continue
        actual = _number(read(creature_after)) - _number(read(creature_before))
        if actual != expected:
            violations.append(Violation(
                kind=f"buff-{stat.lower()}-mismatch",
                severity=Severity.MEDIUM,
                message=f"Buff {label} mismatch on {name}: expected {expected:+}, got {actual:+}",
                details={
                    "creature": name,
                    f"expected{stat}Change": expected,
                    f"actual{stat}Change": actual,
                },
            ))
    return violations


def validate_keyword_grant(before, after, effect_data) -> list[Violation]:
    keyword = effect_data.get("keyword")
    creature = find_creature_by_id(after, effect_data.get("targetInstanceId"))
    if not keyword or not creature or keyword in _raw_keywords(creature):
        return []
    return [Violation(
        kind="keyword-grant-failed",
        severity=Severity.MEDIUM,
        message=f"Failed to grant {keyword} to {creature.get('name')}",
        details={
            "creature": creature.get("name"),
            "keyword": keyword,
            "currentKeywords": creature.get("keywords"),
            "grantedKeywords": creature.get("grantedKeywords"),
        },
    )]


def validate_destroy(before, after, effect_data) -> list[Violation]:
    instance_id = effect_data.get("targetInstanceId")
    still_there = find_creature_by_id(after, instance_id)
    if not still_there:
        return []
    hp = _number(creature_hp(still_there))
    if hp <= 0:
        # A zombie; check_zombie_creatures reports that.
        return []
    name = effect_data.get("targetName") or still_there.get("name")
    return [Violation(
        kind="destroy-failed",
        severity=Severity.HIGH,
        message=f"Destroy effect failed: {name or 'creature'} is still on the field with {hp} HP",
        details={"creature": name, "instanceId": instance_id, "remainingHp": hp},
    )]


EFFECT_VALIDATORS: dict[str, EffectValidator] = {
    "summonTokens": validate_summon_tokens,
    "dealDamage": validate_damage,
    "damageOpponent": validate_damage,
    "draw": validate_draw,
    "buffStats": validate_buff,
    "buffCreature": validate_buff,
    "grantKeyword": validate_keyword_grant,
    "destroyCreature": validate_destroy,
}


def validate_effect(effect_type: str, before, after, effect_data: Mapping[str, Any]) -> list[Violation]:
    """Run the validator registered for ``effect_type``; unknown types pass."""
    validator = EFFECT_VALIDATORS.get(effect_type)
    if validator is None:
        return []
    return validator(before, after, effect_data)


# =============================================================================
# Trigger validation
# =============================================================================


def _prefixed(violations: list[Violation], trigger: str) -> list[Violation]:
    return [
        v.model_copy(update={"kind": f"{trigger}-{v.kind}", "message": f"{trigger}: {v.message}"})
        for v in violations
    ]


def validate_effect_by_type(
    effect: Mapping[str, Any] | None,
    before,
    after,
    player_index: int,
    opponent_index: int,
    trigger: str,
) -> list[Violation]:
    """Check a triggered effect by its type, without knowing its target.

    Summons and draws are checked for the acting player and damage for the
    opponent. For buffs, keyword grants and destroys it is enough that any
    friendly (or, for destroys, enemy) creature changed. Kinds are prefixed
    with the trigger, e.g. ``on-play-draw-failed``.
    """
    if not isinstance(effect, Mapping) or not effect.get("type"):
        return []
    effect_type = effect["type"]
    params = _effect_params(effect)

    if effect_type == "summonTokens":
        token_ids = params.get("tokenIds") or []
        return _prefixed(validate_summon_tokens(before, after, {
            "playerIndex": player_index,
            "expectedTokens": len(token_ids),
            "tokenNames": token_ids,
        }), trigger)

    if effect_type == "draw":
        return _prefixed(validate_draw(before, after, {
            "playerIndex": player_index,
            "expectedCards": params.get("count") or 1,
        }), trigger)

    if effect_type in ("dealDamage", "damageOpponent"):
        amount = _number(params.get("amount") or params.get("damage"))
        if amount <= 0:
            return []
        return _prefixed(validate_damage(before, after, {
            "targetType": "player",
            "playerIndex": opponent_index,
            "expectedDamage": amount,
        }), trigger)

    if effect_type in ("buffStats", "buffCreature", "buffAllAllies"):
        atk = _number(params.get("atk") or params.get("attack"))
        hp = _number(params.get("hp") or params.get("health"))
        if not atk and not hp:
            return []
        previous = {c.get("instanceId"): c for c in _field(before, player_index)}
        for creature in _field(after, player_index):
            old = previous.get(creature.get("instanceId"))
            if old is None:
                continue
            if atk and _number(creature_atk(creature)) != _number(creature_atk(old)):
                return []
            if hp and _number(creature_hp(creature)) != _number(creature_hp(old)):
                return []
        return [Violation(
            kind=f"{trigger}-buff-failed",
            severity=Severity.MEDIUM,
            message=f"{trigger}: Buff effect ({atk:+}/{hp:+}) did not apply to any creature",
            details={"expectedAtkChange": atk, "expectedHpChange": hp, "playerIndex": player_index},
        )]

    if effect_type == "grantKeyword":
        keyword = params.get("keyword")
        if not keyword:
            return []
        if any(keyword in _raw_keywords(c) for c in _field(after, player_index)):
            return []
        return [Violation(
            kind=f"{trigger}-keyword-grant-failed",
            severity=Severity.MEDIUM,
            message=f"{trigger}: Failed to grant {keyword} to any creature",
            details={"keyword": keyword, "playerIndex": player_index},
        )]

    if effect_type in ("destroyCreature", "destroy"):
        count_before = len(_field(before, opponent_index))
        count_after = len(_field(after, opponent_index))
        if count_before == 0 or count_after < count_before:
            return []
        return [Violation(
            kind=f"{trigger}-destroy-failed",
            severity=Severity.MEDIUM,
            message=f"{trigger}: Destroy effect did not remove any creature",
            details={"creaturesBefore": count_before, "creaturesAfter": count_after},
        )]
    return []


def validate_on_play_triggered(before, after, action_data: Mapping[str, Any]) -> list[Violation]:
    card = action_data.get("card")
    if not isinstance(card, Mapping):
        return []
    effects = card.get("effects") or {}
    if not effects.get("onPlay"):
        return []
    player_index = action_data.get("playerIndex")
    if player_index not in (0, 1):
        return []
    return validate_effect_by_type(
        effects["onPlay"], before, after, player_index, 1 - player_index, ON_PLAY
    )


def validate_on_consume_triggered(before, after, action_data: Mapping[str, Any]) -> list[Violation]:
    """A predator that ate prey fires its onConsume effect. Dry drops don't."""
    predator = action_data.get("predator")
    if not isinstance(predator, Mapping):
        return []
    effects = predator.get("effects") or {}
    if not effects.get("onConsume"):
        return []
    player_index = action_data.get("playerIndex")
    if player_index not in (0, 1):
        return []
    if predator.get("dryDropped") or not action_data.get("consumedPrey"):
        return []
    return validate_effect_by_type(
        effects["onConsume"], before, after, player_index, 1 - player_index, ON_CONSUME
    )


def validate_dry_drop_no_consume(before, after, action_data: Mapping[str, Any]) -> list[Violation]:
    """A dry-dropped predator must not fire a token-summoning onConsume."""
    predator = action_data.get("predator")
    if not isinstance(predator, Mapping) or not predator.get("dryDropped"):
        return []
    on_consume = (predator.get("effects") or {}).get("onConsume") or {}
    if on_consume.get("type") != "summonTokens":
        return []
    player_index = action_data.get("playerIndex")
    tokens_before = _token_count(before, player_index)
    tokens_after = _token_count(after, player_index)
    if tokens_after <= tokens_before:
        return []
    return [Violation(
        kind="dry-drop-consumed",
        severity=Severity.HIGH,
        message=(
            f"Dry-dropped {predator.get('name')} incorrectly triggered onConsume "
            "(tokens were summoned)"
        ),
        details={
            "creature": predator.get("name"),
            "tokensBefore": tokens_before,
            "tokensAfter": tokens_after,
        },
    )]


def validate_trap_effect(before, after, action_data: Mapping[str, Any]) -> list[Violation]:
    card, effect = action_data.get("card"), action_data.get("effect")
    if not card or not isinstance(effect, Mapping):
        return []
    reacting = action_data.get("reactingPlayerIndex")
    triggering = action_data.get("triggeringPlayerIndex")
    reacting = 0 if reacting is None else reacting
    triggering = 1 if triggering is None else triggering
    violations = validate_effect_by_type(effect, before, after, reacting, triggering, TRAP)

    if effect.get("type") != "negateAttack":
        return violations
    target = (action_data.get("eventContext") or {}).get("target") or {}
    if target.get("type") != "creature":
        return violations
    instance_id = (target.get("card") or {}).get("instanceId")
    target_before = find_creature_by_id(before, instance_id)
    target_after = find_creature_by_id(after, instance_id)
    if not target_before or not target_after:
        return violations
    hp_before = _number(creature_hp(target_before))
    hp_after = _number(creature_hp(target_after))
    if hp_after < hp_before:
        violations.append(Violation(
            kind="trap-negate-attack-failed",
            severity=Severity.HIGH,
            message=(
                f"{card.get('name')} failed to negate attack: "
                f"{target_before.get('name')} lost {hp_before - hp_after} HP"
            ),
            details={
                "trap": card.get("name"),
                "target": target_before.get("name"),
                "hpBefore": hp_before,
                "hpAfter": hp_after,
            },
        ))
    return violations


def validate_combat_damage(before, after, action_data: Mapping[str, Any]) -> list[Violation]:
    """Attack damage equals the attacker's ATK, unless it was overkill.

    Barrier targets are left to check_barrier_bypass.
    """
    attacker, target = action_data.get("attacker"), action_data.get("target")
    if not isinstance(attacker, Mapping) or not isinstance(target, Mapping):
        return []
    attacker_atk = _number(creature_atk(attacker))
    name = attacker.get("name")

    if target.get("type") == "creature" and isinstance(target.get("card"), Mapping):
        instance_id = target["card"].get("instanceId")
        target_before = find_creature_by_id(before, instance_id)
        target_after = find_creature_by_id(after, instance_id)
        if not target_before or target_before.get("hasBarrier") or not target_after:
            return []
        hp_before = _number(creature_hp(target_before))
        actual = hp_before - _number(creature_hp(target_after))
        if actual <= 0 or actual in (attacker_atk, hp_before):
            return []
        return [Violation(
            kind="combat-damage-mismatch",
            severity=Severity.MEDIUM,
            message=(
                f"Combat damage mismatch: {name} ({attacker_atk} ATK) dealt {actual} "
                f"damage to {target_before.get('name')}"
            ),
            details={
                "attacker": name,
                "attackerAtk": attacker_atk,
                "target": target_before.get("name"),
                "expectedDamage": attacker_atk,
                "actualDamage": actual,
            },
        )]

    if target.get("type") == "player":
        defender = action_data.get("defenderIndex")
        player_before, player_after = _player(before, defender), _player(after, defender)
        if player_before is None or player_after is None:
            return []
        actual = _number(player_before.get("hp")) - _number(player_after.get("hp"))
        if actual <= 0 or actual == attacker_atk:
            return []
        return [Violation(
            kind="direct-damage-mismatch",
            severity=Severity.MEDIUM,
            message=(
                f"Direct attack damage mismatch: {name} ({attacker_atk} ATK) dealt "
                f"{actual} damage to player"
            ),
            details={
                "attacker": name,
                "attackerAtk": attacker_atk,
                "expectedDamage": attacker_atk,
                "actualDamage": actual,
            },
        )]
    return []


# =============================================================================
# Transitional predicates
# =============================================================================


def _payload(action, action_type: str) -> Mapping[str, Any] | None:
    if not isinstance(action, Mapping) or action.get("type") != action_type:
        return None
    payload = action.get("payload")
    return payload if isinstance(payload, Mapping) else None


def _acting_player(payload, before) -> int | None:
    index = payload.get("player")
    if index is None:
        index = payload.get("playerIndex")
    if index is None and isinstance(before, Mapping):
        index = before.get("activePlayerIndex")
    return index if index in (0, 1) else None


def _played_predator(payload, after) -> dict[str, Any] | None:
    """The predator as it landed on the field, so ``dryDropped`` is current."""
    card = payload.get("card")
    if not isinstance(card, Mapping) or card.get("type") != "Predator":
        return None
    placed = find_creature_by_id(after, card.get("instanceId"))
    return {**card, **placed} if placed else dict(card)


def check_on_play_effects(after, before, action) -> list[Violation]:
    payload = _payload(action, PLAY_CARD)
    if payload is None:
        return []
    return validate_on_play_triggered(before, after, {
        "card": payload.get("card"),
        "playerIndex": _acting_player(payload, before),
    })


def check_on_consume_effects(after, before, action) -> list[Violation]:
    """Consumption data comes from ``payload.consumedPrey``."""
    payload = _payload(action, PLAY_CARD)
    if payload is None:
        return []
    predator = _played_predator(payload, after)
    if predator is None:
        return []
    data = {
        "predator": predator,
        "consumedPrey": payload.get("consumedPrey") or [],
        "playerIndex": _acting_player(payload, before),
    }
    return validate_on_consume_triggered(before, after, data) + validate_dry_drop_no_consume(
        before, after, data
    )


def check_trap_effects(after, before, action) -> list[Violation]:
    payload = _payload(action, ACTIVATE_TRAP)
    if payload is None or not isinstance(payload.get("trap"), Mapping):
        return []
    trap = payload["trap"]
    effect = (trap.get("effects") or {}).get("effect") or trap.get("effect")
    return validate_trap_effect(before, after, {
        "card": trap,
        "effect": effect,
        "eventContext": payload.get("eventContext"),
        "reactingPlayerIndex": payload.get("reactingPlayerIndex"),
        "triggeringPlayerIndex": payload.get("triggeringPlayerIndex"),
    })


def check_combat_damage(after, before, action) -> list[Violation]:
    payload = _payload(action, ATTACK)
    if payload is None:
        return []
    attacker = payload.get("attacker")
    if not isinstance(attacker, Mapping):
        return []
    # Use the attacker's ATK at the time of the attack, not the action's copy.
    current = find_creature_by_id(before, attacker.get("instanceId"))
    attacking_player = _acting_player(payload, before)
    return validate_combat_damage(before, after, {
        "attacker": current or attacker,
        "target": payload.get("target"),
        "defenderIndex": None if attacking_player is None else 1 - attacking_player,
    })


EFFECT_CHECKS = (
    ("on-play-effects", check_on_play_effects),
    ("on-consume-effects", check_on_consume_effects),
    ("trap-effects", check_trap_effects),
    ("combat-damage", check_combat_damage),
)


def register_effect_validators(registry: InvariantRegistry) -> InvariantRegistry:
    for name, predicate in EFFECT_CHECKS:
        registry.register(name, predicate, InvariantKind.TRANSITIONAL)
    logger.debug(f"Registered {len(EFFECT_CHECKS)} effect validators")
    return registry
