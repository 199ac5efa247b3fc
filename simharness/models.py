"""
Pydantic Models for the Simulation Harness
Violations, reports, persisted records and run statistics.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    """Violation severity, ordered low < medium < high < critical"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self.value]

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        """Lenient conversion; unknown values become MEDIUM."""
        if isinstance(value, Severity):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MEDIUM

    def __lt__(self, other: Any) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other: Any) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other: Any) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other: Any) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self.rank >= other.rank


_SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


class ViolationCategory(str, Enum):
    """Derived category for a violation kind"""
    STATE_CORRUPTION = "state-corruption"
    RULE_VIOLATION = "rule-violation"
    KEYWORD_VIOLATION = "keyword-violation"
    COMBAT_ERROR = "combat-error"
    CALCULATION_ERROR = "calculation-error"
    DATA_INTEGRITY = "data-integrity"
    CARD_CONSERVATION = "card-conservation"
    EFFECT_ERROR = "effect-error"
    OTHER = "other"


class InvariantKind(str, Enum):
    """Predicate class: absolute (after only) or transitional (after, before, action)"""
    ABSOLUTE = "absolute"
    TRANSITIONAL = "transitional"


class Violation(BaseModel):
    """A single failed invariant, as produced by one predicate call."""
    kind: str
    severity: Severity = Severity.MEDIUM
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        frozen = True


class FixSuggestion(BaseModel):
    """Where to look when a violation kind shows up"""
    hint: str
    files: List[str] = Field(default_factory=list)


class StateDiff(BaseModel):
    """Human-readable before -> after deltas plus the raw diff"""
    changes: List[str] = Field(default_factory=list)
    raw: Dict[str, Any] = Field(default_factory=dict)


class ActionHistoryEntry(BaseModel):
    """One monitored action, kept for reproduction"""
    type: str
    summary: str = ""
    turn: Optional[int] = None
    phase: Optional[str] = None
    active_player: Optional[int] = Field(None, alias="activePlayer")
    timestamp: float

    class Config:
        populate_by_name = True


class Report(BaseModel):
    """A violation enriched with the run context it was detected in.

    Created once per violation per action. Only `occurrence_count` and
    `fingerprint` are filled in afterwards, once the violation registry has
    recorded it.
    """

    id: str
    type: str
    severity: Severity
    category: ViolationCategory
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    step: int
    turn: Optional[int] = None
    phase: Optional[str] = None
    active_player: Optional[int] = Field(None, alias="activePlayer")
    action: Optional[str] = None
    action_payload: Optional[Dict[str, Any]] = Field(None, alias="actionPayload")
    action_context: Optional[Dict[str, Any]] = Field(None, alias="actionContext")
    state_diff: Optional[StateDiff] = Field(None, alias="stateDiff")
    action_history: List[ActionHistoryEntry] = Field(
        default_factory=list, alias="actionHistory"
    )
    fix_suggestion: FixSuggestion = Field(alias="fixSuggestion")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    occurrence_count: Optional[int] = Field(None, alias="occurrenceCount")
    fingerprint: Optional[str] = None

    class Config:
        populate_by_name = True

    def to_violation(self) -> Violation:
        return Violation(
            kind=self.type,
            severity=self.severity,
            message=self.message,
            details=self.details,
        )


class ViolationRecord(BaseModel):
    """Persisted, deduplicated violation keyed by fingerprint"""
    fingerprint: str
    type: str
    category: ViolationCategory = ViolationCategory.OTHER
    severity: Severity = Severity.MEDIUM
    message: str
    first_seen: float = Field(alias="firstSeen")
    last_seen: float = Field(alias="lastSeen")
    occurrence_count: int = Field(1, ge=1, alias="occurrenceCount")
    sample_reports: List[Dict[str, Any]] = Field(
        default_factory=list, alias="sampleReports"
    )
    synced_to_remote: bool = Field(False, alias="syncedToRemote")
    remote_id: Optional[str] = Field(None, alias="remoteId")
    fingerprint_components: Optional[str] = Field(
        None, alias="fingerprintComponents"
    )

    class Config:
        populate_by_name = True


class ParticipantSummary(BaseModel):
    """Per-player statistics for one run"""
    deck: List[str] = Field(default_factory=list)
    cards_played: List[str] = Field(default_factory=list, alias="cardsPlayed")
    kills: int = 0
    deaths: int = 0
    damage_dealt: int = Field(0, alias="damageDealt")

    class Config:
        populate_by_name = True


class RunRecord(BaseModel):
    """One completed simulation run. Immutable once stored."""
    id: Optional[int] = None
    timestamp: float
    duration_seconds: float = Field(0.0, alias="durationSeconds")
    turns: int = 0
    steps: int = 0
    winner: Optional[int] = None
    participants: List[ParticipantSummary] = Field(default_factory=list)
    action_counts: Dict[str, int] = Field(default_factory=dict, alias="actionCounts")
    violations_detected: int = Field(0, alias="violationsDetected")
    session_id: Optional[str] = Field(None, alias="sessionId")

    class Config:
        populate_by_name = True
        frozen = True


class SubjectStatDelta(BaseModel):
    """One run's contribution to a card's aggregated statistics"""
    subject_id: str = Field(alias="subjectId")
    was_played: bool = Field(False, alias="wasPlayed")
    was_in_winning_deck: bool = Field(False, alias="wasInWinningDeck")
    was_in_losing_deck: bool = Field(False, alias="wasInLosingDeck")
    kills: int = 0
    deaths: int = 0
    damage_dealt: int = Field(0, alias="damageDealt")

    class Config:
        populate_by_name = True


class SubjectStats(BaseModel):
    """Aggregated per-card statistics across all stored runs"""
    subject_id: str = Field(alias="subjectId")
    play_count: int = Field(0, alias="playCount")
    win_count: int = Field(0, alias="winCount")
    loss_count: int = Field(0, alias="lossCount")
    total_kills: int = Field(0, alias="totalKills")
    total_deaths: int = Field(0, alias="totalDeaths")
    total_damage_dealt: int = Field(0, alias="totalDamageDealt")
    runs_in_deck: int = Field(0, alias="runsInDeck")
    win_rate: int = Field(0, alias="winRate")
    violation_involvements: int = Field(0, alias="violationInvolvements")

    class Config:
        populate_by_name = True
