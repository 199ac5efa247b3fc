"""Per-run statistics collection.

The collector follows one run at a time: what each player had in their deck,
which cards they played, combat outcomes and deaths, and how many actions of
each type happened. When the run ends it writes a RunRecord plus per-card
stat deltas to the store. It also derives card-pair synergies from the
stored runs.

Cards are keyed by normalized name (``"Alpha Wolf"`` -> ``"alpha_wolf"``),
the same key violation fingerprints use for the card involved.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Callable, Mapping

from simharness.db.simulation_store import SimulationStore
from simharness.models import ParticipantSummary, RunRecord, SubjectStatDelta
from simharness.reports import action_type
from simharness.state.snapshot import players, zone
from simharness.violations.fingerprint import normalize_subject

logger = logging.getLogger(__name__)

TRACKED_ACTIONS = ("PLAY_CARD", "DECLARE_ATTACK", "END_TURN")
SYNERGY_RUN_WINDOW = 200


def subject_id(card: Mapping[str, Any] | None) -> str | None:
    """Stable per-card key: normalized name, falling back to the card id."""
    if not card:
        return None
    subject = normalize_subject(card.get("name"))
    if subject:
        return subject
    card_id = card.get("id")
    return str(card_id) if card_id is not None else None


@dataclass
class _CardActivity:
    plays: int = 0
    kills: int = 0
    deaths: int = 0
    damage: int = 0


@dataclass
class _RunData:
    start_time: float
    participants: list[ParticipantSummary] = field(default_factory=list)
    cards: dict[str, _CardActivity] = field(default_factory=dict)
    action_counts: dict[str, int] = field(
        default_factory=lambda: {**{name: 0 for name in TRACKED_ACTIONS}, "other": 0}
    )
    turns: int = 0
    violations: int = 0

    def card(self, key: str) -> _CardActivity:
        return self.cards.setdefault(key, _CardActivity())


class RunDataCollector:
    """Collects statistics for the run in progress."""

    def __init__(self, store: SimulationStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock
        self._run: _RunData | None = None

    def is_collecting(self) -> bool:
        return self._run is not None

    def start_run(self, state: Any) -> None:
        """Begin a run, capturing each player's deck and opening hand."""
        if self._run is not None:
            logger.warning("start_run called with a run in progress; discarding it")
        run = _RunData(start_time=self._clock())
        for player in players(state)[:2]:
            deck: list[str] = []
            for card in zone(player, "deck") + zone(player, "hand"):
                key = subject_id(card)
                if key and key not in deck:
                    deck.append(key)
            run.participants.append(ParticipantSummary(deck=deck))
        while len(run.participants) < 2:
            run.participants.append(ParticipantSummary())
        self._run = run

    def discard(self) -> None:
        """Drop the run in progress without writing anything."""
        if self._run is not None:
            logger.info("Discarding in-progress run data")
        self._run = None

    def record_action(self, action: Mapping[str, Any] | None, state: Any = None) -> None:
        if self._run is None:
            return
        kind = action_type(action) or "unknown"
        counts = self._run.action_counts
        if kind in TRACKED_ACTIONS:
            counts[kind] += 1
        else:
            counts["other"] += 1
        if kind == "PLAY_CARD":
            payload = action.get("payload") if isinstance(action, Mapping) else None
            self._record_card_play(payload if isinstance(payload, Mapping) else {}, state)

    def _record_card_play(self, payload: Mapping[str, Any], state: Any) -> None:
        key = subject_id(payload.get("card"))
        if key is None:
            return
        player_index = payload.get("player")
        if player_index is None:
            player_index = (state or {}).get("activePlayerIndex")
        if player_index in (0, 1):
            played = self._run.participants[player_index].cards_played
            if key not in played:
                played.append(key)
        self._run.card(key).plays += 1

    def record_combat_result(self, result: Mapping[str, Any] | None) -> None:
        """Fold one combat into per-card damage, kills and deaths.

        ``result`` carries ``attacker``, ``defender`` (a card, or a mapping
        with ``type: "player"``), ``attackerDamage``, ``defenderDamage``,
        ``attackerDied`` and ``defenderDied``.
        """
        if self._run is None or not result:
            return
        attacker = subject_id(result.get("attacker"))
        defender_card = result.get("defender") or {}
        defender = None if defender_card.get("type") == "player" else subject_id(defender_card)

        if attacker:
            activity = self._run.card(attacker)
            activity.damage += result.get("defenderDamage") or 0
            activity.kills += 1 if result.get("defenderDied") else 0
            activity.deaths += 1 if result.get("attackerDied") else 0
        if defender:
            activity = self._run.card(defender)
            activity.damage += result.get("attackerDamage") or 0
            activity.kills += 1 if result.get("attackerDied") else 0
            activity.deaths += 1 if result.get("defenderDied") else 0

    def record_death(self, creature: Mapping[str, Any] | None, owner_index: int) -> None:
        if self._run is None or not creature:
            return
        key = subject_id(creature)
        if key:
            self._run.card(key).deaths += 1
        if owner_index in (0, 1):
            owner = self._run.participants[owner_index]
            owner.deaths += 1
            self._run.participants[1 - owner_index].kills += 1

    def record_violation(self, count: int = 1) -> None:
        if self._run is not None:
            self._run.violations += count

    def record_turn_end(self, turn: int) -> None:
        if self._run is not None:
            self._run.turns = turn

    def get_current_run_summary(self) -> dict[str, Any] | None:
        if self._run is None:
            return None
        return {
            "durationSeconds": round(self._clock() - self._run.start_time, 3),
            "turns": self._run.turns,
            "actions": dict(self._run.action_counts),
            "violationsDetected": self._run.violations,
            "cardsPlayed": [len(p.cards_played) for p in self._run.participants],
        }

    def end_run(self, state: Any, session_id: str | None = None) -> RunRecord | None:
        """Persist the finished run and its per-card deltas.

        Returns the stored record (with its id), or None if no run was in
        progress. Store errors propagate; the run data is dropped either way.
        """
        run, self._run = self._run, None
        if run is None:
            logger.warning("end_run called but no run in progress")
            return None

        if not isinstance(state, Mapping):
            state = {}
        turns = state.get("turn") or run.turns or 0
        winner = state.get("winner")
        if winner not in (0, 1):
            winner = None

        for participant in run.participants:
            participant.damage_dealt = sum(
                run.cards[key].damage for key in participant.cards_played if key in run.cards
            )

        record = RunRecord(
            timestamp=run.start_time,
            duration_seconds=round(self._clock() - run.start_time, 3),
            turns=turns,
            steps=sum(run.action_counts.values()),
            winner=winner,
            participants=run.participants,
            action_counts=run.action_counts,
            violations_detected=run.violations,
            session_id=session_id,
        )
        run_id = self.store.save_run(record)
        self.store.update_subject_stats(self._subject_deltas(run, winner))
        logger.info(f"Run saved (id {run_id}, {turns} turns, winner {winner})")
        return record.model_copy(update={"id": run_id})

    @staticmethod
    def _subject_deltas(run: _RunData, winner: int | None) -> list[SubjectStatDelta]:
        deltas: dict[str, SubjectStatDelta] = {}
        for index, participant in enumerate(run.participants):
            is_winner = index == winner
            played = set(participant.cards_played)
            for key in participant.deck:
                if key in deltas:
                    continue
                was_played = key in played
                activity = run.cards.get(key, _CardActivity())
                deltas[key] = SubjectStatDelta(
                    subject_id=key,
                    was_played=was_played,
                    was_in_winning_deck=is_winner,
                    was_in_losing_deck=not is_winner and winner is not None,
                    kills=activity.kills if was_played else 0,
                    deaths=activity.deaths if was_played else 0,
                    damage_dealt=activity.damage if was_played else 0,
                )
        return list(deltas.values())

    # ------------------------------------------------------------------
    # Synergy analysis
    # ------------------------------------------------------------------

    def analyze_synergies(self, min_runs: int = 5) -> list[dict[str, Any]]:
        """Card pairs ranked by how much their win rate beats 50%.

        Draws are skipped. ``synergyScore`` runs from -100 (never wins) to
        100 (always wins).
        """
        pairs: dict[tuple[str, str], dict[str, int]] = {}
        for run in self.store.get_recent_runs(SYNERGY_RUN_WINDOW):
            if run.winner not in (0, 1) or len(run.participants) < 2:
                continue
            for index, participant in enumerate(run.participants[:2]):
                won = index == run.winner
                for pair in combinations(sorted(set(participant.deck)), 2):
                    stats = pairs.setdefault(pair, {"wins": 0, "losses": 0, "total": 0})
                    stats["wins" if won else "losses"] += 1
                    stats["total"] += 1

        synergies = []
        for (first, second), stats in pairs.items():
            if stats["total"] < min_runs:
                continue
            win_rate = stats["wins"] / stats["total"]
            synergies.append({
                "cards": [first, second],
                "wins": stats["wins"],
                "losses": stats["losses"],
                "total": stats["total"],
                "winRate": round(win_rate * 100),
                "synergyScore": round((win_rate - 0.5) * 200),
            })
        synergies.sort(key=lambda s: (-s["synergyScore"], s["cards"]))
        return synergies

    def get_top_synergies(self, limit: int = 10) -> list[dict[str, Any]]:
        return self.analyze_synergies(min_runs=3)[:limit]

    def get_worst_synergies(self, limit: int = 10) -> list[dict[str, Any]]:
        return list(reversed(self.analyze_synergies(min_runs=3)))[:limit]
