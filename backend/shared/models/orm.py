"""
SQLAlchemy 2.0 ORM models for the pick'em sync engine.
Portable column types only, so the same schema runs on PostgreSQL (asyncpg)
and on SQLite (aiosqlite) for local runs and tests.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class TeamORM(Base):
    __tablename__ = "teams"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    abbreviation: Mapped[Optional[str]] = mapped_column(String(10))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class FixtureORM(Base):
    __tablename__ = "fixtures"
    __table_args__ = (
        CheckConstraint("home_team_id != away_team_id", name="chk_different_teams"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(50), unique=True)
    period: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    home_team_id: Mapped[int] = mapped_column(Integer, ForeignKey("teams.id"), nullable=False)
    away_team_id: Mapped[int] = mapped_column(Integer, ForeignKey("teams.id"), nullable=False)
    is_rivalry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Result
    is_final: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    home_score: Mapped[Optional[int]] = mapped_column(Integer)
    away_score: Mapped[Optional[int]] = mapped_column(Integer)
    scores_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Odds snapshot
    spread: Mapped[Optional[float]] = mapped_column(Float)
    over_under: Mapped[Optional[float]] = mapped_column(Float)
    home_moneyline: Mapped[Optional[int]] = mapped_column(Integer)
    away_moneyline: Mapped[Optional[int]] = mapped_column(Integer)
    odds_provider: Mapped[Optional[str]] = mapped_column(String(100))
    broadcast: Mapped[Optional[str]] = mapped_column(String(100))
    odds_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Weather
    weather_temp: Mapped[Optional[int]] = mapped_column(Integer)
    weather_conditions: Mapped[Optional[str]] = mapped_column(String(100))
    weather_wind: Mapped[Optional[int]] = mapped_column(Integer)
    weather_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Records as of the last records run
    home_team_record: Mapped[Optional[str]] = mapped_column(String(20))
    away_team_record: Mapped[Optional[str]] = mapped_column(String(20))

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    home_team: Mapped["TeamORM"] = relationship(foreign_keys=[home_team_id])
    away_team: Mapped["TeamORM"] = relationship(foreign_keys=[away_team_id])


class InjuryORM(Base):
    __tablename__ = "injuries"

    injury_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    team_id: Mapped[int] = mapped_column(Integer, ForeignKey("teams.id"), nullable=False, index=True)
    player_id: Mapped[Optional[str]] = mapped_column(String(50))
    player_name: Mapped[str] = mapped_column(String(200), nullable=False)
    position: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    short_comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    long_comment: Mapped[str] = mapped_column(Text, nullable=False, default="")
    injury_type: Mapped[str] = mapped_column(String(100), nullable=False)
    injury_location: Mapped[str] = mapped_column(String(100), nullable=False)
    injury_detail: Mapped[str] = mapped_column(String(100), nullable=False)
    side: Mapped[str] = mapped_column(String(50), nullable=False)
    return_date: Mapped[Optional[str]] = mapped_column(String(50))
    fantasy_status: Mapped[Optional[str]] = mapped_column(String(100))
    type_abbreviation: Mapped[str] = mapped_column(String(10), nullable=False, default="O")
    reported_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class PredictionORM(Base):
    __tablename__ = "predictions"
    __table_args__ = (
        UniqueConstraint("subject_id", "fixture_id", name="uq_prediction_subject_fixture"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    fixture_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("fixtures.id", ondelete="CASCADE"), nullable=False, index=True
    )
    picked_team_id: Mapped[int] = mapped_column(Integer, ForeignKey("teams.id"), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_correct: Mapped[Optional[bool]] = mapped_column(Boolean)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    scored_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SettlementWindowORM(Base):
    __tablename__ = "settlement_windows"

    period: Mapped[str] = mapped_column(String(20), primary_key=True)
    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class JobRecordORM(Base):
    """Append-only job outcome log; rows are never updated after insert."""
    __tablename__ = "job_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    queue: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    detail: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class QueuedJobORM(Base):
    """Queue journal: waiting, active, delayed and failed jobs survive a restart."""
    __tablename__ = "queued_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    queue: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    state: Mapped[str] = mapped_column(String(20), nullable=False)
    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    backoff_s: Mapped[float] = mapped_column(Float, nullable=False)
    timeout_s: Mapped[Optional[float]] = mapped_column(Float)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class LeaderboardRunORM(Base):
    """Single-row marker of the last settlement/leaderboard run, for observability."""
    __tablename__ = "leaderboard_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    ran_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    settled_periods: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    predictions_scored: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
