"""Stable fingerprints for violations.

A fingerprint identifies the underlying defect, not one occurrence of it. It
is built from:

* the violation kind
* the type of the action that triggered it
* the phase the game was in
* the card involved, by normalized name (never by instance id)

Hp values, slot and player indices, instance ids and timestamps are left out,
so the same defect seen in different runs collapses onto one record. The
digest is sha1 based and therefore identical across processes and hosts.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any, Mapping

from simharness.models import Violation, ViolationCategory

FINGERPRINT_LENGTH = 16
NO_SUBJECT = "NO_CARD"
NO_ACTION = "NO_ACTION"
UNKNOWN_PHASE = "UNKNOWN_PHASE"

# Detail keys that may name the card a violation is about, in priority order.
SUBJECT_FIELDS = ("creature", "card", "attacker", "target", "cardName")

CATEGORY_BY_KIND: dict[str, ViolationCategory] = {
    "zombie-entity": ViolationCategory.STATE_CORRUPTION,
    "duplicate-ids": ViolationCategory.STATE_CORRUPTION,
    "field-not-list": ViolationCategory.STATE_CORRUPTION,
    "field-slot-count": ViolationCategory.STATE_CORRUPTION,
    "missing-instance-id": ViolationCategory.STATE_CORRUPTION,
    "missing-name": ViolationCategory.STATE_CORRUPTION,
    "missing-type": ViolationCategory.STATE_CORRUPTION,
    "summoning-sickness": ViolationCategory.RULE_VIOLATION,
    "turn-decreased": ViolationCategory.RULE_VIOLATION,
    "turn-skipped": ViolationCategory.RULE_VIOLATION,
    "invalid-active-player": ViolationCategory.RULE_VIOLATION,
    "dry-drop-keyword-retained": ViolationCategory.KEYWORD_VIOLATION,
    "conflicting-keywords": ViolationCategory.KEYWORD_VIOLATION,
    "barrier-bypass": ViolationCategory.COMBAT_ERROR,
    "passive-attack": ViolationCategory.COMBAT_ERROR,
    "lure-bypass": ViolationCategory.COMBAT_ERROR,
    "lure-bypass-direct": ViolationCategory.COMBAT_ERROR,
    "hidden-targeted": ViolationCategory.COMBAT_ERROR,
    "invisible-targeted": ViolationCategory.COMBAT_ERROR,
    "hp-underflow": ViolationCategory.CALCULATION_ERROR,
    "hp-overflow": ViolationCategory.CALCULATION_ERROR,
    "negative-attack": ViolationCategory.CALCULATION_ERROR,
    "stat-overflow": ViolationCategory.CALCULATION_ERROR,
    "negative-nutrition": ViolationCategory.CALCULATION_ERROR,
    "excessive-nutrition": ViolationCategory.CALCULATION_ERROR,
    "invalid-carrion-card": ViolationCategory.DATA_INTEGRITY,
    "exile-missing-id": ViolationCategory.DATA_INTEGRITY,
    "hand-overflow": ViolationCategory.DATA_INTEGRITY,
    "card-count-mismatch": ViolationCategory.CARD_CONSERVATION,
    "token-summon-failed": ViolationCategory.EFFECT_ERROR,
    "damage-mismatch": ViolationCategory.EFFECT_ERROR,
    "player-damage-mismatch": ViolationCategory.EFFECT_ERROR,
    "draw-failed": ViolationCategory.EFFECT_ERROR,
    "buff-atk-mismatch": ViolationCategory.EFFECT_ERROR,
    "buff-hp-mismatch": ViolationCategory.EFFECT_ERROR,
    "buff-failed": ViolationCategory.EFFECT_ERROR,
    "keyword-grant-failed": ViolationCategory.EFFECT_ERROR,
    "destroy-failed": ViolationCategory.EFFECT_ERROR,
    "dry-drop-consumed": ViolationCategory.EFFECT_ERROR,
    "trap-negate-attack-failed": ViolationCategory.EFFECT_ERROR,
    "combat-damage-mismatch": ViolationCategory.COMBAT_ERROR,
    "direct-damage-mismatch": ViolationCategory.COMBAT_ERROR,
}

# Effect validator kinds carry the trigger as a prefix, e.g. on-play-draw-failed.
TRIGGER_PREFIXES = ("on-play-", "on-consume-", "trap-")


def categorize(kind: str) -> ViolationCategory:
    category = CATEGORY_BY_KIND.get(kind)
    if category is not None:
        return category
    for prefix in TRIGGER_PREFIXES:
        if kind.startswith(prefix):
            return CATEGORY_BY_KIND.get(kind[len(prefix):], ViolationCategory.OTHER)
    return ViolationCategory.OTHER


def normalize_subject(value: Any) -> str | None:
    """Lowercase a card name and collapse whitespace runs to underscores."""
    if isinstance(value, Mapping):
        value = value.get("name")
    if not isinstance(value, str) or not value.strip():
        return None
    return re.sub(r"\s+", "_", value.strip().lower())


def extract_subject(details: Mapping[str, Any] | None) -> str:
    """Normalized name of the card a violation is about, or ``NO_CARD``."""
    if not details:
        return NO_SUBJECT
    for key in SUBJECT_FIELDS:
        subject = normalize_subject(details.get(key))
        if subject:
            return subject
    return NO_SUBJECT


def _action_type(context: Mapping[str, Any]) -> str | None:
    action = context.get("action")
    if isinstance(action, Mapping):
        action = action.get("type")
    return action if isinstance(action, str) and action else None


def fingerprint_components(
    violation: Violation,
    context: Mapping[str, Any] | None = None,
) -> tuple[str, str, str, str]:
    context = context or {}
    return (
        violation.kind or "unknown_type",
        _action_type(context) or NO_ACTION,
        context.get("phase") or UNKNOWN_PHASE,
        extract_subject(violation.details),
    )


def fingerprint(violation: Violation, context: Mapping[str, Any] | None = None) -> str:
    """Deterministic hex digest identifying the defect behind a violation.

    Args:
        violation: The detected violation.
        context: Run context with ``action`` (type string or action dict)
            and ``phase``. Other keys are ignored.
    """
    key = "|".join(str(part) for part in fingerprint_components(violation, context)).lower()
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def describe_fingerprint_components(
    violation: Violation,
    context: Mapping[str, Any] | None = None,
) -> str:
    kind, action, phase, subject = fingerprint_components(violation, context)
    return (
        f"Type: {kind}, "
        f"Action: {action if action != NO_ACTION else 'none'}, "
        f"Phase: {phase if phase != UNKNOWN_PHASE else 'unknown'}, "
        f"Card: {subject}"
    )
