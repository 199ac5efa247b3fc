"""Keyword lookups on card dicts.

Creatures are plain dicts as produced by the simulation driver. A Predator
that was dry-dropped has no active keyword abilities until its owner's turn
ends, so every keyword test goes through :func:`are_abilities_active`.
"""

from __future__ import annotations

from typing import Any, Mapping

HASTE = "Haste"
FREE_PLAY = "Free Play"
HIDDEN = "Hidden"
LURE = "Lure"
INVISIBLE = "Invisible"
PASSIVE = "Passive"
AGGRESSIVE = "Aggressive"
BARRIER = "Barrier"
ACUITY = "Acuity"


def are_abilities_active(card: Mapping[str, Any] | None) -> bool:
    if not card:
        return False
    if card.get("type") == "Predator" and card.get("dryDropped") is True:
        return False
    return True


def has_keyword(card: Mapping[str, Any] | None, keyword: str) -> bool:
    """True if the card lists ``keyword`` and its abilities are active."""
    if not are_abilities_active(card):
        return False
    keywords = card.get("keywords")
    if not isinstance(keywords, (list, tuple)):
        return False
    return keyword in keywords


def all_keywords(card: Mapping[str, Any]) -> list[str]:
    """Printed plus granted keywords, ignoring ability suppression."""
    printed = card.get("keywords")
    granted = card.get("grantedKeywords")
    return [
        *(printed if isinstance(printed, list) else []),
        *(granted if isinstance(granted, list) else []),
    ]


def has_haste(card):
    return has_keyword(card, HASTE)


def has_lure(card):
    return has_keyword(card, LURE)


def has_acuity(card):
    return has_keyword(card, ACUITY)


def has_barrier(card):
    return has_keyword(card, BARRIER)


def is_hidden(card):
    return has_keyword(card, HIDDEN)


def is_invisible(card):
    return has_keyword(card, INVISIBLE)


def is_passive(card):
    return has_keyword(card, PASSIVE)


def is_free_play(card):
    return has_keyword(card, FREE_PLAY)
