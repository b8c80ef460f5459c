"""
Pydantic v2 domain models shared across the sync engine.
These are the canonical internal representations, NOT ORM models.
Feed adapters produce them from loosely-typed upstream JSON; everything
downstream of normalization works with these types only.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.enums import InjuryStatus, JobOutcome, JobState
from shared.utils.timeutil import utcnow


# ── Base ────────────────────────────────────────────────────────────────
class DomainModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


# ── Reference entities ──────────────────────────────────────────────────
class TeamRef(DomainModel):
    id: int
    name: str
    external_id: Optional[str] = None
    abbreviation: Optional[str] = None


class FixtureView(DomainModel):
    """Read-side projection of a fixture row with participant names resolved."""
    id: int
    external_id: Optional[str] = None
    period: str
    scheduled_at: datetime
    home_team_id: int
    away_team_id: int
    home_team_name: str = ""
    away_team_name: str = ""
    home_team_external_id: Optional[str] = None
    away_team_external_id: Optional[str] = None
    is_final: bool = False
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    is_locked: bool = False
    is_rivalry: bool = False
    spread: Optional[float] = None
    odds_updated_at: Optional[datetime] = None
    scores_updated_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None

    @property
    def has_result(self) -> bool:
        return self.is_final and self.home_score is not None and self.away_score is not None


# ── Feed entities ───────────────────────────────────────────────────────
class GameStatusUpdate(DomainModel):
    """One scoreboard observation for a contest between two participants."""
    home_team_external_id: str
    away_team_external_id: str
    home_score: Optional[int] = None
    away_score: Optional[int] = None
    completed: bool = False
    external_id: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    broadcast: Optional[str] = None
    observed_at: datetime = Field(default_factory=utcnow)


class InjuryEntry(DomainModel):
    injury_id: str
    player_name: str
    position: str
    status: InjuryStatus = InjuryStatus.UNKNOWN
    short_comment: str = ""
    long_comment: str = ""
    injury_type: str = "Unknown"
    injury_location: str = "Unknown"
    injury_detail: str = "Not Specified"
    side: str = "Not Specified"
    type_abbreviation: str = "O"
    player_id: Optional[str] = None
    return_date: Optional[str] = None
    fantasy_status: Optional[str] = None
    reported_at: Optional[datetime] = None


class OddsSnapshot(DomainModel):
    home_team_name: str
    away_team_name: str
    provider: str
    updated_at: datetime
    external_id: Optional[str] = None
    spread: Optional[float] = None
    total: Optional[float] = None
    home_moneyline: Optional[int] = None
    away_moneyline: Optional[int] = None
    broadcast: Optional[str] = None


class WeatherReport(DomainModel):
    location: str
    temperature: int
    conditions: str
    wind_speed: int
    observed_at: datetime = Field(default_factory=utcnow)


class TeamRecord(DomainModel):
    team_id: int
    wins: int = 0
    losses: int = 0
    ties: int = 0

    @property
    def record(self) -> str:
        if self.ties > 0:
            return f"{self.wins}-{self.losses}-{self.ties}"
        return f"{self.wins}-{self.losses}"


# ── Scoring ─────────────────────────────────────────────────────────────
class PredictionView(DomainModel):
    id: int
    subject_id: str
    fixture_id: int
    picked_team_id: int
    weight: int = 1
    is_correct: Optional[bool] = None
    points_earned: int = 0


class PredictionScore(DomainModel):
    prediction_id: int
    is_correct: Optional[bool] = None
    points: int = 0


# ── Settlement / leaderboard ───────────────────────────────────────────
class PeriodSummary(DomainModel):
    period: str
    fixture_count: int
    final_count: int
    last_finalized_at: Optional[datetime] = None
    first_scheduled_at: Optional[datetime] = None
    settled: bool = False

    @property
    def all_final(self) -> bool:
        return self.fixture_count > 0 and self.final_count == self.fixture_count


class ScoredPick(DomainModel):
    """Flattened prediction + fixture row consumed by the leaderboard aggregator."""
    subject_id: str
    period: str
    picked_team_id: int
    picked_team_name: str = ""
    is_correct: Optional[bool] = None
    points_earned: int = 0


class LeaderboardEntry(DomainModel):
    rank: int
    subject_id: str
    total_points: int
    total_predictions: int
    correct_predictions: int
    accuracy_percentage: float
    periods_participated: int = 0


class PeriodBreakdown(DomainModel):
    period: str
    points: int
    predictions: int
    correct: int
    accuracy: float


class FavoriteParticipant(DomainModel):
    team_id: int
    name: str
    pick_count: int
    correct_count: int
    accuracy: float


class SubjectStats(DomainModel):
    subject_id: str
    total_points: int = 0
    total_predictions: int = 0
    correct_predictions: int = 0
    accuracy_percentage: float = 0.0
    periods_participated: int = 0
    weekly_breakdown: list[PeriodBreakdown] = Field(default_factory=list)
    favorite_teams: list[FavoriteParticipant] = Field(default_factory=list)


# ── Job log ─────────────────────────────────────────────────────────────
class JobRecord(DomainModel):
    job_name: str
    queue: str
    outcome: JobOutcome
    error_message: Optional[str] = None
    attempts: int = 1
    executed_at: datetime = Field(default_factory=utcnow)
    detail: dict[str, Any] = Field(default_factory=dict)


class QueuedJob(DomainModel):
    """Persisted queue entry: a job that has not completed, or one that failed."""
    id: str
    name: str
    queue: str
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState
    attempts_made: int = 0
    max_attempts: int
    backoff_s: float
    timeout_s: Optional[float] = None
    error: Optional[str] = None
    created_at: datetime
    retry_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
