"""Invariant predicates and the registry that evaluates them."""

from simharness.invariants.checks import build_default_registry
from simharness.invariants.effects import (
    EFFECT_VALIDATORS,
    register_effect_validators,
    validate_effect,
)
from simharness.invariants.registry import Invariant, InvariantRegistry, coerce_violation

__all__ = [
    "EFFECT_VALIDATORS",
    "Invariant",
    "InvariantRegistry",
    "build_default_registry",
    "coerce_violation",
    "register_effect_validators",
    "validate_effect",
]
