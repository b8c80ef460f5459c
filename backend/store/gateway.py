"""
Persisted store gateway.

Every write runs in its own transaction and is keyed, so re-applying the same
input leaves the same rows behind. Read-compare-write merges lock the row
(SELECT ... FOR UPDATE, or BEGIN IMMEDIATE on SQLite) so concurrent merges of
the same fixture serialize instead of losing an update. SQLAlchemy errors
raised by a write are wrapped in StoreWriteFailure, which the job queue retries.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional, Sequence

from sqlalchemy import delete, desc, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.errors import StoreWriteFailure
from shared.models.domain import (
    FixtureView,
    GameStatusUpdate,
    InjuryEntry,
    JobRecord,
    OddsSnapshot,
    PeriodSummary,
    PredictionScore,
    PredictionView,
    QueuedJob,
    ScoredPick,
    TeamRef,
    WeatherReport,
)
from shared.models.enums import MergeOutcome
from shared.models.orm import (
    FixtureORM,
    InjuryORM,
    JobRecordORM,
    LeaderboardRunORM,
    PredictionORM,
    QueuedJobORM,
    SettlementWindowORM,
    TeamORM,
)
from shared.utils.database import DatabaseManager
from shared.utils.logging import get_logger
from shared.utils.timeutil import ensure_utc, utcnow

logger = get_logger(__name__)


def _fixture_view(row: FixtureORM) -> FixtureView:
    return FixtureView(
        id=row.id,
        external_id=row.external_id,
        period=row.period,
        scheduled_at=ensure_utc(row.scheduled_at),
        home_team_id=row.home_team_id,
        away_team_id=row.away_team_id,
        home_team_name=row.home_team.name if row.home_team else "",
        away_team_name=row.away_team.name if row.away_team else "",
        home_team_external_id=row.home_team.external_id if row.home_team else None,
        away_team_external_id=row.away_team.external_id if row.away_team else None,
        is_final=row.is_final,
        home_score=row.home_score,
        away_score=row.away_score,
        is_locked=row.is_locked,
        is_rivalry=row.is_rivalry,
        spread=row.spread,
        odds_updated_at=ensure_utc(row.odds_updated_at),
        scores_updated_at=ensure_utc(row.scores_updated_at),
        finalized_at=ensure_utc(row.finalized_at),
    )


def _fixture_query():
    return select(FixtureORM).options(
        selectinload(FixtureORM.home_team),
        selectinload(FixtureORM.away_team),
    )


class StoreGateway:
    """Idempotent reads and writes against the canonical tables."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    @asynccontextmanager
    async def _write(self, op: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.write_session() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.error("store_write_failed", op=op, error=str(exc))
            raise StoreWriteFailure(f"{op} failed: {exc}") from exc

    # ── Provisioning (schedule import / pick submission collaborators) ──

    async def upsert_team(self, name: str, external_id: str | None = None, abbreviation: str | None = None) -> int:
        async with self._write("upsert_team") as session:
            row = None
            if external_id is not None:
                result = await session.execute(select(TeamORM).where(TeamORM.external_id == external_id))
                row = result.scalar_one_or_none()
            if row is None:
                result = await session.execute(select(TeamORM).where(TeamORM.name == name))
                row = result.scalars().first()
            if row is None:
                row = TeamORM(name=name, external_id=external_id, abbreviation=abbreviation)
                session.add(row)
            else:
                row.name = name
                row.external_id = external_id or row.external_id
                row.abbreviation = abbreviation or row.abbreviation
            await session.flush()
            return row.id

    async def upsert_fixture(
        self,
        *,
        period: str,
        scheduled_at: datetime,
        home_team_id: int,
        away_team_id: int,
        external_id: str | None = None,
        is_rivalry: bool = False,
    ) -> int:
        """Create or update a fixture's schedule fields; result and odds fields are untouched."""
        async with self._write("upsert_fixture") as session:
            row = None
            if external_id is not None:
                result = await session.execute(select(FixtureORM).where(FixtureORM.external_id == external_id))
                row = result.scalar_one_or_none()
            if row is None:
                row = FixtureORM(external_id=external_id, period=period, scheduled_at=ensure_utc(scheduled_at),
                                 home_team_id=home_team_id, away_team_id=away_team_id, is_rivalry=is_rivalry)
                session.add(row)
            else:
                row.period = period
                row.scheduled_at = ensure_utc(scheduled_at)
                row.home_team_id = home_team_id
                row.away_team_id = away_team_id
                row.is_rivalry = is_rivalry
                row.updated_at = utcnow()
            await session.flush()
            return row.id

    async def upsert_prediction(self, subject_id: str, fixture_id: int, picked_team_id: int, weight: int = 1) -> int:
        """Record a subject's pick; scoring fields belong to the scoring engine."""
        async with self._write("upsert_prediction") as session:
            result = await session.execute(
                select(PredictionORM).where(
                    PredictionORM.subject_id == subject_id,
                    PredictionORM.fixture_id == fixture_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = PredictionORM(subject_id=subject_id, fixture_id=fixture_id,
                                    picked_team_id=picked_team_id, weight=weight)
                session.add(row)
            else:
                row.picked_team_id = picked_team_id
                row.weight = weight
            await session.flush()
            return row.id

    # ── Reads ───────────────────────────────────────────────────────────

    async def list_teams(self) -> list[TeamRef]:
        async with self._db.read_session() as session:
            result = await session.execute(select(TeamORM).order_by(TeamORM.id))
            return [TeamRef.model_validate(row) for row in result.scalars()]

    async def get_fixture(self, fixture_id: int) -> Optional[FixtureView]:
        async with self._db.read_session() as session:
            result = await session.execute(_fixture_query().where(FixtureORM.id == fixture_id))
            row = result.scalar_one_or_none()
            return _fixture_view(row) if row else None

    async def list_fixtures(self, fixture_ids: Iterable[int] | None = None) -> list[FixtureView]:
        stmt = _fixture_query().order_by(FixtureORM.scheduled_at, FixtureORM.id)
        if fixture_ids is not None:
            stmt = stmt.where(FixtureORM.id.in_(list(fixture_ids)))
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [_fixture_view(row) for row in result.scalars()]

    async def fixtures_between(self, start: datetime, end: datetime) -> list[FixtureView]:
        stmt = (
            _fixture_query()
            .where(FixtureORM.scheduled_at >= ensure_utc(start), FixtureORM.scheduled_at <= ensure_utc(end))
            .order_by(FixtureORM.scheduled_at, FixtureORM.id)
        )
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [_fixture_view(row) for row in result.scalars()]

    async def open_fixtures(self) -> list[FixtureView]:
        """Fixtures that are not final yet."""
        stmt = _fixture_query().where(FixtureORM.is_final.is_(False)).order_by(FixtureORM.scheduled_at)
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [_fixture_view(row) for row in result.scalars()]

    async def final_fixtures(self) -> list[FixtureView]:
        stmt = _fixture_query().where(FixtureORM.is_final.is_(True)).order_by(FixtureORM.scheduled_at)
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [_fixture_view(row) for row in result.scalars()]

    async def list_injuries(self, team_id: int) -> list[InjuryEntry]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(InjuryORM).where(InjuryORM.team_id == team_id).order_by(InjuryORM.injury_id)
            )
            return [InjuryEntry.model_validate(row) for row in result.scalars()]

    # ── Feed writes ─────────────────────────────────────────────────────

    async def apply_game_status(self, fixture_id: int, update: GameStatusUpdate) -> MergeOutcome:
        """
        Merge one scoreboard observation into a fixture, monotonically.

        A final fixture never returns to non-final. Between observations of the
        same finality the newer one wins; equal timestamps resolve to the larger
        score pair so the stored state does not depend on arrival order.
        """
        observed = ensure_utc(update.observed_at)
        completed = update.completed and update.home_score is not None and update.away_score is not None

        async with self._write("apply_game_status") as session:
            row = await session.get(FixtureORM, fixture_id, with_for_update=True)
            if row is None:
                raise StoreWriteFailure(f"fixture {fixture_id} does not exist")

            last = ensure_utc(row.scores_updated_at)
            incoming = (update.home_score, update.away_score)
            stored = (row.home_score, row.away_score)

            if row.is_final:
                if not completed:
                    return MergeOutcome.REJECTED_UNFINALIZE
                if incoming == stored:
                    # Same result seen again; keep the earliest confirmation.
                    if last is None or observed < last:
                        row.scores_updated_at = observed
                        row.finalized_at = observed
                    return MergeOutcome.UNCHANGED
                if last is not None and (observed < last or (observed == last and incoming < stored)):
                    return MergeOutcome.STALE
                row.home_score, row.away_score = incoming
                row.scores_updated_at = observed
                row.finalized_at = observed
                row.updated_at = utcnow()
                return MergeOutcome.CORRECTED

            if completed:
                row.is_final = True
                row.home_score, row.away_score = incoming
                row.scores_updated_at = observed
                row.finalized_at = observed
                row.updated_at = utcnow()
                return MergeOutcome.FINALIZED

            if last is not None and observed < last:
                return MergeOutcome.STALE
            new_home = update.home_score if update.home_score is not None else row.home_score
            new_away = update.away_score if update.away_score is not None else row.away_score
            merged = (new_home, new_away)
            if last is not None and observed == last and merged != stored and _lt(merged, stored):
                return MergeOutcome.STALE
            row.scores_updated_at = observed
            if update.broadcast:
                row.broadcast = update.broadcast
            if merged == stored:
                return MergeOutcome.UNCHANGED
            row.home_score, row.away_score = merged
            row.updated_at = utcnow()
            return MergeOutcome.UPDATED

    async def replace_injuries(self, team_id: int, entries: Sequence[InjuryEntry]) -> int:
        """Wholesale-replace one team's injury list inside a single transaction."""
        unique = {entry.injury_id: entry for entry in entries}
        async with self._write("replace_injuries") as session:
            await session.execute(delete(InjuryORM).where(InjuryORM.team_id == team_id))
            for entry in unique.values():
                await session.merge(
                    InjuryORM(
                        team_id=team_id,
                        **entry.model_dump(mode="python", exclude={"status"}),
                        status=entry.status.value,
                        updated_at=utcnow(),
                    )
                )
        return len(unique)

    async def apply_odds(self, fixture_id: int, snapshot: OddsSnapshot) -> bool:
        """Overwrite the odds snapshot only with strictly newer data on a non-final fixture."""
        updated_at = ensure_utc(snapshot.updated_at)
        async with self._write("apply_odds") as session:
            row = await session.get(FixtureORM, fixture_id, with_for_update=True)
            if row is None or row.is_final:
                return False
            current = ensure_utc(row.odds_updated_at)
            if current is not None and updated_at <= current:
                return False
            row.spread = snapshot.spread
            row.over_under = snapshot.total
            row.home_moneyline = snapshot.home_moneyline
            row.away_moneyline = snapshot.away_moneyline
            row.odds_provider = snapshot.provider
            if snapshot.broadcast:
                row.broadcast = snapshot.broadcast
            row.odds_updated_at = updated_at
            row.updated_at = utcnow()
            return True

    async def apply_weather(self, fixture_id: int, report: WeatherReport) -> bool:
        async with self._write("apply_weather") as session:
            row = await session.get(FixtureORM, fixture_id, with_for_update=True)
            if row is None or row.is_final:
                return False
            row.weather_temp = report.temperature
            row.weather_conditions = report.conditions
            row.weather_wind = report.wind_speed
            row.weather_updated_at = ensure_utc(report.observed_at)
            return True

    async def write_team_records(self, records: dict[int, str]) -> int:
        """Fan record strings out to every fixture row, past and future. Returns rows touched."""
        touched = 0
        async with self._write("write_team_records") as session:
            result = await session.execute(select(FixtureORM))
            for row in result.scalars():
                home = records.get(row.home_team_id, "0-0")
                away = records.get(row.away_team_id, "0-0")
                if row.home_team_record != home or row.away_team_record != away:
                    row.home_team_record = home
                    row.away_team_record = away
                    touched += 1
        return touched

    async def lock_started_fixtures(self, now: datetime) -> int:
        cutoff = ensure_utc(now)
        locked = 0
        async with self._write("lock_started_fixtures") as session:
            result = await session.execute(
                select(FixtureORM).where(
                    FixtureORM.is_locked.is_(False),
                    FixtureORM.scheduled_at <= cutoff,
                )
            )
            for row in result.scalars():
                row.is_locked = True
                locked += 1
        return locked

    # ── Scoring ─────────────────────────────────────────────────────────

    async def predictions_for_fixtures(self, fixture_ids: Iterable[int] | None = None) -> list[PredictionView]:
        stmt = select(PredictionORM).order_by(PredictionORM.id)
        if fixture_ids is not None:
            stmt = stmt.where(PredictionORM.fixture_id.in_(list(fixture_ids)))
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [PredictionView.model_validate(row) for row in result.scalars()]

    async def save_prediction_scores(self, scores: Sequence[PredictionScore], scored_at: datetime) -> int:
        """Write correctness and points; rows already holding the same values are left alone."""
        if not scores:
            return 0
        by_id = {score.prediction_id: score for score in scores}
        changed = 0
        async with self._write("save_prediction_scores") as session:
            result = await session.execute(select(PredictionORM).where(PredictionORM.id.in_(list(by_id))))
            for row in result.scalars():
                score = by_id[row.id]
                if row.is_correct == score.is_correct and row.points_earned == score.points:
                    continue
                row.is_correct = score.is_correct
                row.points_earned = score.points
                row.scored_at = ensure_utc(scored_at) if score.is_correct is not None else None
                changed += 1
        return changed

    # ── Settlement ──────────────────────────────────────────────────────

    async def period_summaries(self) -> list[PeriodSummary]:
        async with self._db.read_session() as session:
            fixtures = (await session.execute(select(FixtureORM))).scalars().all()
            windows = {
                w.period: w for w in (await session.execute(select(SettlementWindowORM))).scalars()
            }

        grouped: dict[str, dict[str, Any]] = {}
        for row in fixtures:
            bucket = grouped.setdefault(
                row.period,
                {"fixture_count": 0, "final_count": 0, "last_finalized_at": None, "first_scheduled_at": None},
            )
            bucket["fixture_count"] += 1
            scheduled = ensure_utc(row.scheduled_at)
            if bucket["first_scheduled_at"] is None or scheduled < bucket["first_scheduled_at"]:
                bucket["first_scheduled_at"] = scheduled
            if row.is_final:
                bucket["final_count"] += 1
                finalized = ensure_utc(row.finalized_at)
                if finalized is not None and (
                    bucket["last_finalized_at"] is None or finalized > bucket["last_finalized_at"]
                ):
                    bucket["last_finalized_at"] = finalized

        summaries = []
        for period in sorted(grouped, key=lambda p: grouped[p]["first_scheduled_at"]):
            window = windows.get(period)
            summaries.append(
                PeriodSummary(period=period, settled=bool(window and window.settled), **grouped[period])
            )
        return summaries

    async def upsert_window(
        self, period: str, last_finalized_at: datetime | None, settled: bool, now: datetime
    ) -> bool:
        """
        Record a period's window. ``settled`` is sticky: a settled window is never
        reverted. Returns True when this call flipped the period to settled.
        """
        async with self._write("upsert_window") as session:
            row = await session.get(SettlementWindowORM, period, with_for_update=True)
            if row is None:
                row = SettlementWindowORM(period=period, settled=False)
                session.add(row)
            if row.settled:
                return False
            row.last_finalized_at = ensure_utc(last_finalized_at)
            if settled:
                row.settled = True
                row.settled_at = ensure_utc(now)
                return True
            return False

    async def settled_periods(self) -> list[str]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(SettlementWindowORM.period)
                .where(SettlementWindowORM.settled.is_(True))
                .order_by(SettlementWindowORM.settled_at, SettlementWindowORM.period)
            )
            return list(result.scalars())

    async def is_settled(self, period: str) -> bool:
        async with self._db.read_session() as session:
            row = await session.get(SettlementWindowORM, period)
            return bool(row and row.settled)

    # ── Aggregation ─────────────────────────────────────────────────────

    async def scored_picks(self, periods: Iterable[str]) -> list[ScoredPick]:
        period_list = list(periods)
        if not period_list:
            return []
        stmt = (
            select(PredictionORM, FixtureORM.period, TeamORM.name)
            .join(FixtureORM, PredictionORM.fixture_id == FixtureORM.id)
            .join(TeamORM, PredictionORM.picked_team_id == TeamORM.id)
            .where(FixtureORM.period.in_(period_list))
            .order_by(PredictionORM.id)
        )
        async with self._db.read_session() as session:
            result = await session.execute(stmt)
            return [
                ScoredPick(
                    subject_id=pred.subject_id,
                    period=period,
                    picked_team_id=pred.picked_team_id,
                    picked_team_name=team_name,
                    is_correct=pred.is_correct,
                    points_earned=pred.points_earned,
                )
                for pred, period, team_name in result.all()
            ]

    # ── Queue journal ───────────────────────────────────────────────────

    async def save_queued_job(self, job: QueuedJob) -> None:
        async with self._write("save_queued_job") as session:
            await session.merge(
                QueuedJobORM(
                    **job.model_dump(mode="python", exclude={"state", "created_at", "retry_at", "failed_at"}),
                    state=job.state.value,
                    created_at=ensure_utc(job.created_at),
                    retry_at=ensure_utc(job.retry_at),
                    failed_at=ensure_utc(job.failed_at),
                )
            )

    async def delete_queued_job(self, job_id: str) -> None:
        async with self._write("delete_queued_job") as session:
            await session.execute(delete(QueuedJobORM).where(QueuedJobORM.id == job_id))

    async def load_queued_jobs(self) -> list[QueuedJob]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(QueuedJobORM).order_by(QueuedJobORM.created_at, QueuedJobORM.id)
            )
            return [
                QueuedJob.model_validate(row).model_copy(
                    update={
                        "created_at": ensure_utc(row.created_at),
                        "retry_at": ensure_utc(row.retry_at),
                        "failed_at": ensure_utc(row.failed_at),
                    }
                )
                for row in result.scalars()
            ]

    # ── Job log / run marker ────────────────────────────────────────────

    async def append_job_record(self, record: JobRecord) -> None:
        async with self._write("append_job_record") as session:
            session.add(
                JobRecordORM(
                    job_name=record.job_name,
                    queue=record.queue,
                    outcome=record.outcome.value,
                    error_message=record.error_message,
                    attempts=record.attempts,
                    detail=record.detail,
                    executed_at=ensure_utc(record.executed_at),
                )
            )

    async def recent_job_records(self, limit: int = 50) -> list[JobRecord]:
        async with self._db.read_session() as session:
            result = await session.execute(
                select(JobRecordORM)
                .order_by(desc(JobRecordORM.executed_at), desc(JobRecordORM.id))
                .limit(limit)
            )
            return [
                JobRecord(
                    job_name=row.job_name,
                    queue=row.queue,
                    outcome=row.outcome,
                    error_message=row.error_message,
                    attempts=row.attempts,
                    executed_at=ensure_utc(row.executed_at),
                    detail=row.detail or {},
                )
                for row in result.scalars()
            ]

    async def record_leaderboard_run(self, ran_at: datetime, settled_periods: int, predictions_scored: int) -> None:
        async with self._write("record_leaderboard_run") as session:
            await session.merge(
                LeaderboardRunORM(
                    id=1,
                    ran_at=ensure_utc(ran_at),
                    settled_periods=settled_periods,
                    predictions_scored=predictions_scored,
                )
            )

    async def last_leaderboard_run(self) -> Optional[dict[str, Any]]:
        async with self._db.read_session() as session:
            row = await session.get(LeaderboardRunORM, 1)
            if row is None:
                return None
            return {
                "ran_at": ensure_utc(row.ran_at).isoformat(),
                "settled_periods": row.settled_periods,
                "predictions_scored": row.predictions_scored,
            }


def _lt(a: tuple[Optional[int], Optional[int]], b: tuple[Optional[int], Optional[int]]) -> bool:
    """Order score pairs with None below every number."""
    def key(pair: tuple[Optional[int], Optional[int]]) -> tuple[int, int]:
        return tuple(-1 if v is None else v for v in pair)  # type: ignore[return-value]
    return key(a) < key(b)
