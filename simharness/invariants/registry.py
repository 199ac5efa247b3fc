"""Typed registry of invariant predicates.

Two kinds of predicate are supported:

* absolute: ``predicate(after)`` must hold for every reachable state.
* transitional: ``predicate(after, before, action)`` must hold for every
  before/action/after triple.

Predicates return an iterable of :class:`~simharness.models.Violation` (or
mappings with ``kind``/``type``, ``severity``, ``message`` and ``details``
keys); an empty result means the invariant holds. Registrations are checked
up front so a malformed predicate fails at startup, not mid-run.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

from simharness.errors import InvariantError, InvariantRegistrationError
from simharness.metrics import PREDICATE_ERRORS
from simharness.models import InvariantKind, Severity, Violation

logger = logging.getLogger(__name__)

_ARITY = {
    InvariantKind.ABSOLUTE: 1,
    InvariantKind.TRANSITIONAL: 3,
}


@dataclass(frozen=True)
class Invariant:
    name: str
    kind: InvariantKind
    predicate: Callable[..., Any]
    description: str = ""


def coerce_violation(value: Any, invariant: str) -> Violation:
    """Turn a predicate result item into a Violation."""
    if isinstance(value, Violation):
        return value
    if isinstance(value, Mapping):
        kind = value.get("kind") or value.get("type")
        message = value.get("message")
        if not kind or not message:
            raise InvariantError(
                "Violation mapping needs a kind/type and a message",
                invariant=invariant,
            )
        details = value.get("details") or {}
        return Violation(
            kind=str(kind),
            severity=Severity.parse(value.get("severity", Severity.MEDIUM)),
            message=str(message),
            details=dict(details),
        )
    raise InvariantError(
        f"Predicate returned {type(value).__name__}, expected a violation",
        invariant=invariant,
    )


class InvariantRegistry:
    """Ordered collection of named invariants.

    Example:
        registry = InvariantRegistry()

        @registry.absolute("non-negative-hp")
        def non_negative_hp(after):
            ...
    """

    def __init__(self):
        self._invariants: dict[str, Invariant] = {}

    def __len__(self) -> int:
        return len(self._invariants)

    def __contains__(self, name: str) -> bool:
        return name in self._invariants

    def names(self, kind: InvariantKind | None = None) -> list[str]:
        return [
            inv.name for inv in self._invariants.values()
            if kind is None or inv.kind == kind
        ]

    def get(self, name: str) -> Invariant | None:
        return self._invariants.get(name)

    def register(
        self,
        name: str,
        predicate: Callable[..., Any],
        kind: InvariantKind | str = InvariantKind.ABSOLUTE,
        description: str = "",
    ) -> Invariant:
        """Validate and add a predicate.

        Raises:
            InvariantRegistrationError: empty or duplicate name, unknown
                kind, non-callable predicate, or a signature that cannot
                accept the arguments its kind is called with.
        """
        if not isinstance(name, str) or not name.strip():
            raise InvariantRegistrationError("Invariant name must be a non-empty string")
        if name in self._invariants:
            raise InvariantRegistrationError(
                "Invariant already registered", context={"name": name}
            )
        try:
            kind = InvariantKind(kind)
        except ValueError as exc:
            raise InvariantRegistrationError(
                f"Unknown invariant kind: {kind!r}", context={"name": name}
            ) from exc
        if not callable(predicate):
            raise InvariantRegistrationError(
                "Invariant predicate must be callable", context={"name": name}
            )
        self._check_arity(name, predicate, kind)

        invariant = Invariant(
            name=name,
            kind=kind,
            predicate=predicate,
            description=description or (inspect.getdoc(predicate) or "").split("\n")[0],
        )
        self._invariants[name] = invariant
        return invariant

    @staticmethod
    def _check_arity(name: str, predicate: Callable[..., Any], kind: InvariantKind) -> None:
        try:
            signature = inspect.signature(predicate)
        except (TypeError, ValueError):
            # Some builtins expose no signature; accept them as-is.
            return
        arity = _ARITY[kind]
        try:
            signature.bind(*([None] * arity))
        except TypeError as exc:
            raise InvariantRegistrationError(
                f"{kind.value} invariant must accept {arity} positional argument(s)",
                context={"name": name, "signature": str(signature)},
            ) from exc

    def absolute(self, name: str, description: str = ""):
        def decorator(fn):
            self.register(name, fn, InvariantKind.ABSOLUTE, description)
            return fn
        return decorator

    def transitional(self, name: str, description: str = ""):
        def decorator(fn):
            self.register(name, fn, InvariantKind.TRANSITIONAL, description)
            return fn
        return decorator

    def evaluate(self, after: Any, before: Any = None, action: Any = None) -> list[Violation]:
        """Run predicates against a state and return every violation found.

        Absolute predicates always run. Transitional predicates run only
        when both ``before`` and ``action`` are given. A predicate that
        raises is logged and skipped; the others still run.
        """
        transitional = before is not None and action is not None
        violations: list[Violation] = []
        for invariant in self._invariants.values():
            if invariant.kind == InvariantKind.TRANSITIONAL and not transitional:
                continue
            try:
                if invariant.kind == InvariantKind.ABSOLUTE:
                    result = invariant.predicate(after)
                else:
                    result = invariant.predicate(after, before, action)
                violations.extend(self._collect(invariant.name, result))
            except Exception:
                logger.exception(f"Invariant predicate {invariant.name} failed; skipping")
                PREDICATE_ERRORS.labels(invariant.name).inc()
        return violations

    @staticmethod
    def _collect(name: str, result: Any) -> list[Violation]:
        if result is None:
            return []
        if isinstance(result, (Violation, Mapping)):
            return [coerce_violation(result, name)]
        if not isinstance(result, Iterable) or isinstance(result, (str, bytes)):
            raise InvariantError(
                f"Predicate returned {type(result).__name__}, expected a list of violations",
                invariant=name,
            )
        return [coerce_violation(item, name) for item in result]
