"""
Store gateway tests against a file-backed SQLite database.

Run: pytest backend/tests/test_store.py -v
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from shared.config import Settings
from shared.errors import StoreWriteFailure
from shared.models.domain import GameStatusUpdate, InjuryEntry, JobRecord, OddsSnapshot
from shared.models.enums import InjuryStatus, JobOutcome, MergeOutcome
from shared.utils.database import DatabaseManager
from store.gateway import StoreGateway
from tests.helpers import KICKOFF, hours, seed_matchup


def status(home, away, completed, at, broadcast=None) -> GameStatusUpdate:
    return GameStatusUpdate(
        home_team_external_id="12",
        away_team_external_id="2",
        home_score=home,
        away_score=away,
        completed=completed,
        observed_at=at,
        broadcast=broadcast,
    )


def injury(injury_id: str, name: str = "Player") -> InjuryEntry:
    return InjuryEntry(injury_id=injury_id, player_name=name, position="WR", status=InjuryStatus.OUT)


# ── Game status merge ───────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_final_never_reverts_to_non_final(gateway: StoreGateway) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    assert await gateway.apply_game_status(fixture_id, status(21, 14, True, KICKOFF + hours(3))) == MergeOutcome.FINALIZED

    outcome = await gateway.apply_game_status(fixture_id, status(21, 10, False, KICKOFF + hours(4)))

    assert outcome == MergeOutcome.REJECTED_UNFINALIZE
    fixture = await gateway.get_fixture(fixture_id)
    assert fixture.is_final is True
    assert (fixture.home_score, fixture.away_score) == (21, 14)


@pytest.mark.asyncio
async def test_older_observation_is_stale(gateway: StoreGateway) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    await gateway.apply_game_status(fixture_id, status(14, 7, False, KICKOFF + hours(2)))

    assert await gateway.apply_game_status(fixture_id, status(7, 7, False, KICKOFF + hours(1))) == MergeOutcome.STALE
    fixture = await gateway.get_fixture(fixture_id)
    assert (fixture.home_score, fixture.away_score) == (14, 7)


@pytest.mark.asyncio
async def test_in_progress_update_keeps_broadcast(gateway: StoreGateway) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    outcome = await gateway.apply_game_status(fixture_id, status(3, 0, False, KICKOFF + hours(1), broadcast="CBS"))
    assert outcome == MergeOutcome.UPDATED
    fixture = await gateway.get_fixture(fixture_id)
    assert fixture.home_score == 3


async def _open_gateway(settings: Settings, name: str) -> tuple[DatabaseManager, StoreGateway]:
    other = settings.model_copy(update={"database_url": settings.database_url.replace("test.db", f"{name}.db")})
    manager = DatabaseManager(other)
    await manager.connect()
    await manager.create_schema()
    return manager, StoreGateway(manager)


async def _final_state(gateway: StoreGateway, fixture_id: int) -> tuple:
    f = await gateway.get_fixture(fixture_id)
    return f.is_final, f.home_score, f.away_score, f.scores_updated_at, f.finalized_at


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "updates",
    [
        # in-progress then final
        [status(14, 10, False, KICKOFF + hours(2)), status(21, 14, True, KICKOFF + hours(3))],
        # final then a later correction
        [status(21, 14, True, KICKOFF + hours(3)), status(21, 17, True, KICKOFF + hours(4))],
        # the same final result observed twice
        [status(21, 14, True, KICKOFF + hours(3)), status(21, 14, True, KICKOFF + hours(3, ) + timedelta(minutes=30))],
        # conflicting finals observed at the same instant
        [status(21, 14, True, KICKOFF + hours(3)), status(24, 14, True, KICKOFF + hours(3))],
        # late final observed before a newer in-progress report
        [status(28, 3, True, KICKOFF + hours(3)), status(14, 3, False, KICKOFF + hours(5))],
    ],
)
async def test_game_status_converges_regardless_of_order(settings: Settings, updates) -> None:
    db_ab, gw_ab = await _open_gateway(settings, "ab")
    db_ba, gw_ba = await _open_gateway(settings, "ba")
    try:
        fx_ab, _, _ = await seed_matchup(gw_ab)
        fx_ba, _, _ = await seed_matchup(gw_ba)
        for update in updates:
            await gw_ab.apply_game_status(fx_ab, update)
        for update in reversed(updates):
            await gw_ba.apply_game_status(fx_ba, update)

        assert await _final_state(gw_ab, fx_ab) == await _final_state(gw_ba, fx_ba)
    finally:
        await db_ab.disconnect()
        await db_ba.disconnect()


@pytest.mark.asyncio
async def test_concurrent_merges_on_one_fixture_keep_the_newest_final(gateway: StoreGateway) -> None:
    fixture_ids = []
    for n in range(10):
        fixture_id, _, _ = await seed_matchup(gateway, external_id=f"ev-{n}")
        fixture_ids.append(fixture_id)

    await asyncio.gather(*(
        merge
        for fixture_id in fixture_ids
        for merge in (
            gateway.apply_game_status(fixture_id, status(21, 17, True, KICKOFF + hours(4))),
            gateway.apply_game_status(fixture_id, status(21, 14, True, KICKOFF + hours(3))),
        )
    ))

    fixtures = await gateway.list_fixtures(fixture_ids)
    assert len(fixtures) == 10
    assert {(f.home_score, f.away_score) for f in fixtures} == {(21, 17)}
    assert {f.scores_updated_at for f in fixtures} == {KICKOFF + hours(4)}


@pytest.mark.asyncio
async def test_concurrent_odds_writes_keep_the_newest_snapshot(gateway: StoreGateway) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    older = OddsSnapshot(home_team_name="Kansas City Chiefs", away_team_name="Buffalo Bills",
                         provider="FanDuel", updated_at=KICKOFF - hours(30), spread=-3.0)
    newer = older.model_copy(update={"spread": -6.5, "updated_at": KICKOFF - hours(20)})

    await asyncio.gather(*(gateway.apply_odds(fixture_id, snap) for snap in (newer, older, newer, older)))

    fixture = await gateway.get_fixture(fixture_id)
    assert fixture.spread == -6.5
    assert fixture.odds_updated_at == KICKOFF - hours(20)


# ── Injuries ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_replace_injuries_is_wholesale(gateway: StoreGateway) -> None:
    _, home_id, away_id = await seed_matchup(gateway)
    await gateway.replace_injuries(home_id, [injury("1"), injury("2")])
    await gateway.replace_injuries(away_id, [injury("9")])

    await gateway.replace_injuries(home_id, [injury("2"), injury("3")])
    assert [i.injury_id for i in await gateway.list_injuries(home_id)] == ["2", "3"]

    await gateway.replace_injuries(home_id, [])
    assert await gateway.list_injuries(home_id) == []
    assert [i.injury_id for i in await gateway.list_injuries(away_id)] == ["9"]


# ── Odds / weather / locks / records ────────────────────────────────────

@pytest.mark.asyncio
async def test_odds_only_strictly_newer_and_never_on_final(gateway: StoreGateway) -> None:
    fixture_id, _, _ = await seed_matchup(gateway)
    snap = OddsSnapshot(
        home_team_name="Kansas City Chiefs",
        away_team_name="Buffalo Bills",
        provider="DraftKings",
        updated_at=KICKOFF - hours(10),
        spread=-3.5,
        total=47.5,
    )
    assert await gateway.apply_odds(fixture_id, snap) is True
    assert await gateway.apply_odds(fixture_id, snap.model_copy(update={"spread": -1.0})) is False
    assert await gateway.apply_odds(
        fixture_id, snap.model_copy(update={"spread": -2.5, "updated_at": KICKOFF - hours(5)})
    ) is True
    assert (await gateway.get_fixture(fixture_id)).spread == -2.5

    await gateway.apply_game_status(fixture_id, status(21, 14, True, KICKOFF + hours(3)))
    assert await gateway.apply_odds(
        fixture_id, snap.model_copy(update={"spread": 7.0, "updated_at": KICKOFF + hours(4)})
    ) is False
    assert (await gateway.get_fixture(fixture_id)).spread == -2.5


@pytest.mark.asyncio
async def test_lock_started_fixtures_is_idempotent(gateway: StoreGateway) -> None:
    started, _, _ = await seed_matchup(gateway)
    later, _, _ = await seed_matchup(
        gateway, scheduled_at=KICKOFF + hours(48), home=("Detroit Lions", "8"), away=("Chicago Bears", "3")
    )

    assert await gateway.lock_started_fixtures(KICKOFF + hours(1)) == 1
    assert await gateway.lock_started_fixtures(KICKOFF + hours(1)) == 0
    assert (await gateway.get_fixture(started)).is_locked is True
    assert (await gateway.get_fixture(later)).is_locked is False


# ── Job log / failures ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_job_records_newest_first(gateway: StoreGateway) -> None:
    for minute in range(3):
        await gateway.append_job_record(
            JobRecord(job_name=f"job-{minute}", queue="odds", outcome=JobOutcome.SUCCESS,
                      executed_at=KICKOFF + timedelta(minutes=minute))
        )
    records = await gateway.recent_job_records(limit=2)
    assert [r.job_name for r in records] == ["job-2", "job-1"]
    assert records[0].executed_at.tzinfo is not None


@pytest.mark.asyncio
async def test_sqlalchemy_error_surfaces_as_store_write_failure() -> None:
    db = MagicMock(spec=DatabaseManager)

    @asynccontextmanager
    async def broken_session():
        raise OperationalError("UPDATE fixtures", {}, Exception("database is locked"))
        yield  # pragma: no cover

    db.write_session = broken_session
    with pytest.raises(StoreWriteFailure) as exc_info:
        await StoreGateway(db).lock_started_fixtures(KICKOFF)
    assert exc_info.value.retryable is True


def test_database_manager_exposes_only_explicit_read_and_write_sessions() -> None:
    assert hasattr(DatabaseManager, "read_session")
    assert hasattr(DatabaseManager, "write_session")
    assert not hasattr(DatabaseManager, "session")
